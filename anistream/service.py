# anistream/service.py
import math
import re
import logging
from dataclasses import asdict
from typing import List, Optional, Tuple

from anistream.models import (
    Anime, AnimeUpdate, Comment, Episode, EpisodeUpdate, Genre, Studio, User, UserUpdate,
    VideoSource, ANIME_STATUSES, ANIME_TYPES, SOURCE_TYPES, SQLITE_MAX_INTEGER, VIDEO_QUALITIES, VIDEO_TYPES,
)
from anistream.security import PasswordHasher

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
DEFAULT_SHOWCASE_SIZE = 10
MAX_PAGE_SIZE = 100
SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


# Exceptions
class ValidationError(Exception):
    """Raised when input or business validation fails."""
    pass


class NotFoundError(Exception):
    """Raised when an entity is not found."""
    pass


class AuthError(Exception):
    """Raised when a request cannot be authenticated."""
    pass


class ForbiddenError(Exception):
    """Raised when an authenticated user lacks the required role."""
    pass


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _fits_integer(value: int) -> bool:
    return -SQLITE_MAX_INTEGER - 1 <= value <= SQLITE_MAX_INTEGER


def _as_int(value, name: str) -> int:
    """Accept ints and integral floats (JSON 9.0) that sqlite can store; reject everything else."""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not _is_int(value):
        raise ValidationError(f"{name} must be an integer")
    if not _fits_integer(value):
        raise ValidationError(f"{name} is out of range")
    return value


def _blank(value) -> bool:
    return not isinstance(value, str) or not value.strip()


def _check_text(name: str, value) -> None:
    """Optional text fields: None or a string."""
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")


def _showcase_limit(limit: int) -> int:
    if not limit or limit <= 0:
        return DEFAULT_SHOWCASE_SIZE
    return min(limit, MAX_PAGE_SIZE)


def _navigation_link(ep: Optional[Episode]) -> Optional[dict]:
    if ep is None:
        return None
    return {"id": ep.id, "number": ep.number, "title": ep.title}


class AnimeService:
    """
    Business logic for the streaming catalog.
    The repository (SqliteRepo) is injected; this layer validates input,
    turns missing rows into NotFoundError and shapes response payloads.
    """

    def __init__(self, repo, passwords: Optional[PasswordHasher] = None):
        self.repo = repo
        self.passwords = passwords or PasswordHasher()
        logger.debug("AnimeService initialized with repo %s", type(repo).__name__)

    # ---- Catalog ----
    def list_animes(self, page: int = 1, limit: int = DEFAULT_PAGE_SIZE, sort: str = "title",
                    order: str = "ASC", genre: Optional[int] = None, search: Optional[str] = None) -> dict:
        """
        One catalog page with its pagination block. Non-positive page/limit fall
        back to defaults and limit is capped at MAX_PAGE_SIZE.
        """
        page = page if page and page > 0 else 1
        limit = min(limit, MAX_PAGE_SIZE) if limit and limit > 0 else DEFAULT_PAGE_SIZE
        if genre is not None and not _fits_integer(genre):
            # no row can carry this id
            animes, total = [], 0
        else:
            animes, total = self.repo.list_animes(page=page, limit=limit, sort=sort or "title",
                                                  order=(order or "ASC").upper(), genre=genre, search=search)
        return {
            "animes": animes,
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        }

    def popular_animes(self, limit: int = DEFAULT_SHOWCASE_SIZE) -> List[Anime]:
        return self.repo.popular_animes(_showcase_limit(limit))

    def latest_animes(self, limit: int = DEFAULT_SHOWCASE_SIZE) -> List[Anime]:
        return self.repo.latest_animes(_showcase_limit(limit))

    def get_anime(self, anime_id: int) -> Anime:
        a = self.repo.get_anime(anime_id)
        if not a:
            logger.debug("get_anime: anime %s not found", anime_id)
            raise NotFoundError("Anime not found")
        return a

    def get_anime_by_slug(self, slug: str) -> Anime:
        a = self.repo.get_anime_by_slug(slug)
        if not a:
            logger.debug("get_anime_by_slug: %s not found", slug)
            raise NotFoundError("Anime not found")
        return a

    def anime_details(self, slug: str, user_id: Optional[int] = None) -> dict:
        """Detail page payload; counts as a view."""
        anime = self.get_anime_by_slug(slug)
        self.repo.increment_views(anime.id)
        anime.views += 1
        is_favorite = False
        rating = None
        if user_id is not None:
            is_favorite = self.repo.is_favorite(user_id, anime.id)
            rating = self.repo.user_rating(user_id, anime.id)
        return {
            "anime": anime,
            "genres": self.repo.anime_genres(anime.id),
            "studios": self.repo.anime_studios(anime.id),
            "episodes": self.repo.episodes_for_anime(anime.id),
            "user_data": {"is_favorite": is_favorite, "rating": rating},
        }

    def navigation(self, anime_id: int, number: int) -> dict:
        """Neighbouring episodes by number; a link is None when no episode has that number."""
        previous = self.repo.get_episode_by_number(anime_id, number - 1) if number > 1 else None
        nxt = self.repo.get_episode_by_number(anime_id, number + 1)
        return {"previous": _navigation_link(previous), "next": _navigation_link(nxt)}

    def episode_page(self, slug: str, number: int, user_id: Optional[int] = None) -> dict:
        anime = self.get_anime_by_slug(slug)
        episode = self.repo.get_episode_by_number(anime.id, number)
        if not episode:
            logger.debug("episode_page: %s has no episode %s", slug, number)
            raise NotFoundError("Episode not found")
        progress = self.repo.watch_progress(user_id, episode.id) if user_id is not None else None
        return {
            "anime": anime,
            "episode": episode,
            "video_sources": self.repo.video_sources(episode.id),
            "comments": self.repo.episode_comments(episode.id),
            "navigation": self.navigation(anime.id, episode.number),
            "user_data": {"watch_progress": progress},
        }

    def list_genres(self) -> List[Genre]:
        return self.repo.list_genres()

    def list_studios(self) -> List[Studio]:
        return self.repo.list_studios()

    # ---- Catalog administration ----
    def _check_anime_fields(self, status=None, type_=None, release_year=None, original_title=None,
                            description=None, poster=None):
        if status is not None and status not in ANIME_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(ANIME_STATUSES)}")
        if type_ is not None and type_ not in ANIME_TYPES:
            raise ValidationError(f"type must be one of {', '.join(ANIME_TYPES)}")
        if release_year is not None:
            _as_int(release_year, "release_year")
        _check_text("original_title", original_title)
        _check_text("description", description)
        _check_text("poster", poster)

    def create_anime(self, title: str, slug: str, status: str = "announced", type: str = "tv",
                     original_title: Optional[str] = None, description: Optional[str] = None,
                     release_year: Optional[int] = None, poster: Optional[str] = None) -> Anime:
        """
        Create an anime. Title required; slug must be a lowercase-hyphenated, unused key.
        episodes_count starts at 0 and follows the episodes table from then on.
        """
        if _blank(title):
            logger.warning("create_anime: missing title")
            raise ValidationError("title required")
        if not isinstance(slug, str) or not SLUG_RE.match(slug):
            raise ValidationError("slug must contain lowercase letters, digits and single hyphens")
        self._check_anime_fields(status, type, release_year, original_title, description, poster)
        if self.repo.get_anime_by_slug(slug):
            raise ValidationError("slug already in use")
        a = Anime(id=None, title=title.strip(), slug=slug, status=status, type=type,
                  original_title=original_title, description=description,
                  release_year=None if release_year is None else _as_int(release_year, "release_year"),
                  poster=poster)
        created = self.repo.create_anime(a)
        logger.info("Created anime id=%s slug=%s", created.id, created.slug)
        return created

    def update_anime(self, anime_id: int, update: AnimeUpdate) -> Anime:
        if update.title is not None and _blank(update.title):
            raise ValidationError("title required")
        self._check_anime_fields(update.status, update.type, update.release_year, update.original_title,
                                 update.description, update.poster)
        updated = self.repo.update_anime(anime_id, update)
        if not updated:
            raise NotFoundError("Anime not found")
        logger.info("Updated anime id=%s fields=%s", anime_id, sorted(update.changes()))
        return updated

    def delete_anime(self, anime_id: int) -> None:
        if not self.repo.delete_anime(anime_id):
            raise NotFoundError("Anime not found")
        logger.info("Deleted anime id=%s", anime_id)

    def create_genre(self, name: str, description: Optional[str] = None) -> Genre:
        if _blank(name):
            raise ValidationError("genre name required")
        _check_text("description", description)
        created = self.repo.create_genre(Genre(id=None, name=name.strip(), description=description))
        logger.info("Created genre id=%s name=%s", created.id, created.name)
        return created

    def create_studio(self, name: str, description: Optional[str] = None) -> Studio:
        if _blank(name):
            raise ValidationError("studio name required")
        _check_text("description", description)
        created = self.repo.create_studio(Studio(id=None, name=name.strip(), description=description))
        logger.info("Created studio id=%s name=%s", created.id, created.name)
        return created

    def set_anime_genres(self, anime_id: int, genre_ids: List[int]) -> List[Genre]:
        self.get_anime(anime_id)
        known = {g.id for g in self.repo.list_genres()}
        ids = [_as_int(g, "genre id") for g in genre_ids]
        missing = [g for g in ids if g not in known]
        if missing:
            raise ValidationError(f"unknown genre ids: {missing}")
        self.repo.set_anime_genres(anime_id, ids)
        return self.repo.anime_genres(anime_id)

    def set_anime_studios(self, anime_id: int, studio_ids: List[int]) -> List[Studio]:
        self.get_anime(anime_id)
        known = {s.id for s in self.repo.list_studios()}
        ids = [_as_int(s, "studio id") for s in studio_ids]
        missing = [s for s in ids if s not in known]
        if missing:
            raise ValidationError(f"unknown studio ids: {missing}")
        self.repo.set_anime_studios(anime_id, ids)
        return self.repo.anime_studios(anime_id)

    # ---- Episodes ----
    def _check_episode_fields(self, title=None, description=None, duration=None, thumbnail=None,
                              release_date=None):
        if duration is not None and _as_int(duration, "duration") < 0:
            raise ValidationError("duration must be >= 0")
        _check_text("title", title)
        _check_text("description", description)
        _check_text("thumbnail", thumbnail)
        _check_text("release_date", release_date)

    def create_episode(self, anime_id: int, number: int, title: Optional[str] = None,
                       description: Optional[str] = None, duration: Optional[int] = None,
                       thumbnail: Optional[str] = None, release_date: Optional[str] = None) -> Episode:
        """Add an episode; the parent's episodes_count is rewritten in the same transaction."""
        if anime_id is None or number is None:
            raise ValidationError("Anime ID and episode number are required")
        number = _as_int(number, "number")
        if number < 1:
            raise ValidationError("episode number must be >= 1")
        self._check_episode_fields(title, description, duration, thumbnail, release_date)
        anime = self.get_anime(_as_int(anime_id, "anime_id"))
        if self.repo.get_episode_by_number(anime.id, number):
            logger.warning("create_episode: duplicate number %s for anime %s", number, anime.id)
            raise ValidationError("Episode with this number already exists")
        ep = Episode(id=None, anime_id=anime.id, number=number, title=title, description=description,
                     duration=duration, thumbnail=thumbnail, release_date=release_date)
        created = self.repo.create_episode(ep)
        logger.info("Created episode id=%s anime=%s number=%s", created.id, anime.id, number)
        return created

    def get_episode(self, episode_id: int) -> Episode:
        ep = self.repo.get_episode(episode_id)
        if not ep:
            logger.debug("get_episode: episode %s not found", episode_id)
            raise NotFoundError("Episode not found")
        return ep

    def update_episode(self, episode_id: int, update: EpisodeUpdate) -> Episode:
        self._check_episode_fields(update.title, update.description, update.duration, update.thumbnail,
                                   update.release_date)
        updated = self.repo.update_episode(episode_id, update)
        if not updated:
            raise NotFoundError("Episode not found")
        logger.info("Updated episode id=%s", episode_id)
        return updated

    def delete_episode(self, episode_id: int) -> None:
        if not self.repo.delete_episode(episode_id):
            raise NotFoundError("Episode not found")
        logger.info("Deleted episode id=%s", episode_id)

    def add_video_source(self, episode_id: int, quality: str, type: str, language: str,
                         source_url: str, source_type: str = "video") -> VideoSource:
        self.get_episode(episode_id)
        if quality not in VIDEO_QUALITIES:
            raise ValidationError(f"quality must be one of {', '.join(VIDEO_QUALITIES)}")
        if type not in VIDEO_TYPES:
            raise ValidationError("type must be sub or dub")
        if source_type not in SOURCE_TYPES:
            raise ValidationError(f"source_type must be one of {', '.join(SOURCE_TYPES)}")
        if _blank(language) or _blank(source_url):
            raise ValidationError("language and source_url are required")
        src = self.repo.add_video_source(VideoSource(None, episode_id, quality, type, language.strip(),
                                                     source_url.strip(), source_type))
        logger.info("Added video source id=%s episode=%s", src.id, episode_id)
        return src

    def delete_video_source(self, source_id: int) -> None:
        if not self.repo.delete_video_source(source_id):
            raise NotFoundError("Video source not found")
        logger.info("Deleted video source id=%s", source_id)

    # ---- Users ----
    def register(self, username: str, email: str, password: str) -> User:
        if _blank(username) or _blank(email) or _blank(password):
            logger.warning("register: missing fields")
            raise ValidationError("All fields are required")
        username, email = username.strip(), email.strip().lower()
        if "@" not in email:
            raise ValidationError("invalid email")
        if self.repo.get_user_by_email(email):
            raise ValidationError("Email already in use")
        if self.repo.get_user_by_username(username):
            raise ValidationError("Username already taken")
        u = User(id=None, username=username, email=email, password=self.passwords.hash(password))
        created = self.repo.create_user(u)
        logger.info("Registered user id=%s username=%s", created.id, created.username)
        return created

    def authenticate(self, email: str, password: str) -> User:
        if _blank(email) or _blank(password):
            raise ValidationError("Email and password are required")
        user = self.repo.get_user_by_email(email.strip().lower())
        if not user or not self.passwords.verify(password, user.password):
            logger.info("authenticate: rejected login for %s", email)
            raise AuthError("Invalid email or password")
        return user

    def get_user(self, user_id: int) -> User:
        u = self.repo.get_user(user_id)
        if not u:
            logger.debug("get_user: user %s not found", user_id)
            raise NotFoundError("User not found")
        return u

    def update_profile(self, user_id: int, username: Optional[str] = None, email: Optional[str] = None,
                       password: Optional[str] = None, avatar: Optional[str] = None) -> User:
        """Update own profile; empty values are ignored, username/email must stay unique."""
        for name, value in (("username", username), ("email", email), ("password", password), ("avatar", avatar)):
            _check_text(name, value)
        update = UserUpdate()
        if username:
            existing = self.repo.get_user_by_username(username.strip())
            if existing and existing.id != user_id:
                raise ValidationError("Username already taken")
            update.username = username.strip()
        if email:
            email = email.strip().lower()
            if "@" not in email:
                raise ValidationError("invalid email")
            existing = self.repo.get_user_by_email(email)
            if existing and existing.id != user_id:
                raise ValidationError("Email already in use")
            update.email = email
        if password:
            update.password = self.passwords.hash(password)
        if avatar:
            update.avatar = avatar
        updated = self.repo.update_user(user_id, update)
        if not updated:
            raise NotFoundError("User not found")
        logger.info("Updated profile user=%s fields=%s", user_id, sorted(update.changes()))
        return updated

    def grant_admin(self, user_id: int) -> User:
        if not self.repo.set_admin(user_id, True):
            raise NotFoundError("User not found")
        logger.info("Granted admin to user id=%s", user_id)
        return self.get_user(user_id)

    def watched_animes(self, user_id: int) -> List[dict]:
        return [dict(asdict(a), last_watched=ts) for a, ts in self.repo.watched_animes(user_id)]

    def favorite_animes(self, user_id: int) -> List[dict]:
        return [dict(asdict(a), added_at=ts) for a, ts in self.repo.favorites(user_id)]

    # ---- Interactions ----
    def record_progress(self, user_id: int, episode_id, progress) -> None:
        """Store the playback position in seconds; not checked against the episode duration."""
        if episode_id is None or progress is None:
            raise ValidationError("Episode ID and progress are required")
        if isinstance(progress, bool) or not isinstance(progress, (int, float)) or not progress >= 0:
            raise ValidationError("progress must be a non-negative number of seconds")
        if _is_int(progress) and not _fits_integer(progress) or isinstance(progress, float) and not math.isfinite(progress):
            raise ValidationError("progress is out of range")
        episode = self.get_episode(_as_int(episode_id, "episodeId"))
        self.repo.record_progress(user_id, episode.id, progress)
        logger.info("Recorded progress user=%s episode=%s seconds=%s", user_id, episode.id, progress)

    def toggle_favorite(self, user_id: int, anime_id, action: str) -> Tuple[str, bool]:
        """Returns (message, changed). Re-adding or removing an absent favorite reports False."""
        if anime_id is None or not action:
            raise ValidationError("Anime ID and action are required")
        if action not in ("add", "remove"):
            raise ValidationError('Invalid action. Use "add" or "remove"')
        anime = self.get_anime(_as_int(anime_id, "animeId"))
        if action == "add":
            changed = self.repo.add_favorite(user_id, anime.id)
            logger.info("Favorite add user=%s anime=%s changed=%s", user_id, anime.id, changed)
            return "Added to favorites", changed
        changed = self.repo.remove_favorite(user_id, anime.id)
        logger.info("Favorite remove user=%s anime=%s changed=%s", user_id, anime.id, changed)
        return "Removed from favorites", changed

    def rate_anime(self, user_id: int, anime_id, score) -> float:
        """Upsert a 1-10 score and return the recomputed aggregate rating."""
        if anime_id is None or score is None:
            raise ValidationError("Anime ID and score are required")
        if isinstance(score, bool) or not isinstance(score, (int, float)) or not 1 <= score <= 10:
            logger.warning("rate_anime: rejected score %r from user %s", score, user_id)
            raise ValidationError("Score must be between 1 and 10")
        score = _as_int(score, "score")
        anime = self.get_anime(_as_int(anime_id, "animeId"))
        new_rating = self.repo.rate_anime(user_id, anime.id, score)
        logger.info("Rated anime=%s user=%s score=%s new_rating=%s", anime.id, user_id, score, new_rating)
        return new_rating

    def add_comment(self, user_id: int, text: str, anime_id=None, episode_id=None, parent_id=None) -> Comment:
        """Comment on exactly one of an anime or an episode; returns it with author fields."""
        if _blank(text):
            raise ValidationError("Comment text is required")
        if anime_id is None and episode_id is None:
            raise ValidationError("Either anime ID or episode ID is required")
        if anime_id is not None and episode_id is not None:
            raise ValidationError("Provide anime ID or episode ID, not both")
        if anime_id is not None:
            anime_id = self.get_anime(_as_int(anime_id, "animeId")).id
        else:
            episode_id = self.get_episode(_as_int(episode_id, "episodeId")).id
        if parent_id is not None:
            parent = self.repo.get_comment(_as_int(parent_id, "parentId"))
            if not parent:
                raise NotFoundError("Parent comment not found")
            if parent.anime_id != anime_id or parent.episode_id != episode_id:
                raise ValidationError("Reply must target the same anime or episode as its parent")
            parent_id = parent.id
        comment = self.repo.add_comment(Comment(id=None, user_id=user_id, text=text.strip(),
                                                anime_id=anime_id, episode_id=episode_id, parent_id=parent_id))
        logger.info("Added comment id=%s user=%s", comment.id, user_id)
        return comment

    def anime_comments(self, slug: str) -> List[Comment]:
        return self.repo.anime_comments(self.get_anime_by_slug(slug).id)
