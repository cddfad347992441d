# scripts/init_db.py
import argparse
import logging

from anistream.repo import SqliteRepo
from anistream.security import PasswordHasher
from anistream.service import AnimeService

DEMO_ANIMES = [
    {"title": "Demon Slayer", "slug": "demon-slayer", "release_year": 2019, "status": "completed",
     "description": "A boy becomes a demon slayer after his family is slaughtered and his sister is turned into a demon."},
    {"title": "Attack on Titan", "slug": "attack-on-titan", "release_year": 2013, "status": "completed",
     "description": "Humans fight against giant humanoid creatures called Titans."},
    {"title": "My Hero Academia", "slug": "my-hero-academia", "release_year": 2016, "status": "ongoing",
     "description": "A boy born without superpowers in a world where they are common dreams of becoming a hero."},
]
DEMO_GENRES = ["Action", "Fantasy", "Drama"]
DEMO_EPISODES = 3


def seed(svc: AnimeService) -> None:
    genres = [svc.create_genre(name) for name in DEMO_GENRES]
    for i, data in enumerate(DEMO_ANIMES):
        anime = svc.create_anime(type="tv", **data)
        svc.set_anime_genres(anime.id, [genres[0].id, genres[1 + i % 2].id])
        for n in range(1, DEMO_EPISODES + 1):
            ep = svc.create_episode(anime.id, n, title=f"Episode {n}", duration=24 * 60)
            svc.add_video_source(ep.id, "1080p", "sub", "jp", f"https://example.com/{anime.slug}/{n}.mp4")
            svc.add_video_source(ep.id, "720p", "sub", "jp", f"https://example.com/{anime.slug}/{n}-720.mp4")
    admin = svc.register("admin", "admin@example.com", "admin")
    svc.grant_admin(admin.id)
    print("seeded", len(DEMO_ANIMES), "animes and admin user admin@example.com / admin")


def main():
    parser = argparse.ArgumentParser(description="Create the anistream schema")
    parser.add_argument("--db", default="data/anistream.db")
    parser.add_argument("--seed", action="store_true", help="insert demo animes, episodes and an admin user")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    repo = SqliteRepo(args.db)
    repo.init_schema()
    print("initialized db at", args.db)
    if args.seed:
        seed(AnimeService(repo))


if __name__ == "__main__":
    main()
