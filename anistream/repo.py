# anistream/repo.py
import os
import sqlite3
from contextlib import contextmanager
from typing import List, Optional, Tuple

from anistream.models import (
    Anime, AnimeUpdate, Comment, Episode, EpisodeUpdate, Genre, Studio, User,
    UserUpdate, VideoSource, SQLITE_MAX_INTEGER, VIDEO_QUALITIES, now_iso,
)
from anistream.schema import init_db

# columns of animes except the cached rating, which reads replace with the live aggregate
ANIME_COLUMNS = (
    "id", "title", "original_title", "slug", "description", "release_year", "status",
    "type", "episodes_count", "poster", "views", "created_at", "updated_at",
)
_ANIME_SELECT = ", ".join(f"a.{c}" for c in ANIME_COLUMNS)
_RATING_AGG = "COALESCE(AVG(r.score), 0) AS rating"

SORTABLE_COLUMNS = set(ANIME_COLUMNS) | {"rating"}
_TEXT_COLUMNS = {"title", "original_title", "slug"}

_QUALITY_RANK = "CASE quality " + " ".join(
    f"WHEN '{q}' THEN {i}" for i, q in enumerate(VIDEO_QUALITIES)) + " END"


def _anime(r) -> Anime:
    return Anime(
        id=r["id"], title=r["title"], slug=r["slug"], status=r["status"], type=r["type"],
        original_title=r["original_title"], description=r["description"],
        release_year=r["release_year"], episodes_count=r["episodes_count"], poster=r["poster"],
        rating=float(r["rating"]), views=r["views"],
        created_at=r["created_at"], updated_at=r["updated_at"])


def _episode(r) -> Episode:
    return Episode(
        id=r["id"], anime_id=r["anime_id"], number=r["number"], title=r["title"],
        description=r["description"], duration=r["duration"], thumbnail=r["thumbnail"],
        release_date=r["release_date"], created_at=r["created_at"], updated_at=r["updated_at"])


def _user(r) -> User:
    return User(
        id=r["id"], username=r["username"], email=r["email"], password=r["password"],
        avatar=r["avatar"], is_admin=bool(r["is_admin"]),
        created_at=r["created_at"], updated_at=r["updated_at"])


def _comment(r) -> Comment:
    return Comment(
        id=r["id"], user_id=r["user_id"], text=r["text"], anime_id=r["anime_id"],
        episode_id=r["episode_id"], parent_id=r["parent_id"], created_at=r["created_at"],
        username=r["username"], avatar=r["avatar"])


def _video_source(r) -> VideoSource:
    return VideoSource(r["id"], r["episode_id"], r["quality"], r["type"], r["language"],
                       r["source_url"], r["source_type"])


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


class SqliteRepo:
    """
    Data access for the streaming catalog.

    One connection per operation: ``conn()`` commits when the block finishes
    and rolls back when anything inside it raises, so every method body that
    issues several statements is a single transaction. sqlite3 errors are not
    translated here.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        parent = os.path.dirname(db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)

    def init_schema(self) -> None:
        init_db(self.db_path)

    @contextmanager
    def conn(self):
        con = sqlite3.connect(self.db_path)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON")
        # sqlite's own LIKE/lower() only fold ASCII
        con.create_function("casefold", 1, _casefold, deterministic=True)
        try:
            yield con
            con.commit()
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    # -- Animes --
    def list_animes(self, page: int = 1, limit: int = 20, sort: str = "title", order: str = "ASC",
                    genre: Optional[int] = None, search: Optional[str] = None) -> Tuple[List[Anime], int]:
        """
        One page of animes plus the total number of matches.
        Unknown sort keys fall back to title; order is ASC unless 'DESC' (any case).
        """
        sort_col = sort if sort in SORTABLE_COLUMNS else "title"
        direction = "DESC" if (order or "").upper() == "DESC" else "ASC"
        order_expr = "rating" if sort_col == "rating" else f"a.{sort_col}"
        if sort_col in _TEXT_COLUMNS:
            order_expr += " COLLATE NOCASE"

        where_clauses = []
        params: list = []
        if genre is not None:
            where_clauses.append("a.id IN (SELECT anime_id FROM anime_genres WHERE genre_id = ?)")
            params.append(genre)
        if search:
            where_clauses.append("(instr(casefold(a.title), ?) > 0 OR instr(casefold(a.original_title), ?) > 0)")
            params.extend([search.casefold(), search.casefold()])
        where = (" WHERE " + " AND ".join(where_clauses)) if where_clauses else ""

        sql = (f"SELECT {_ANIME_SELECT}, {_RATING_AGG} FROM animes a"
               f" LEFT JOIN ratings r ON a.id = r.anime_id{where}"
               f" GROUP BY a.id ORDER BY {order_expr} {direction}, a.id ASC LIMIT ? OFFSET ?")
        offset = (page - 1) * limit
        with self.conn() as c:
            total = c.execute(f"SELECT COUNT(*) AS total FROM animes a{where}", tuple(params)).fetchone()["total"]
            if offset > SQLITE_MAX_INTEGER:
                # past any reachable row
                return [], total
            rows = c.execute(sql, tuple(params) + (limit, offset)).fetchall()
            return [_anime(r) for r in rows], total

    def _select_one_anime(self, column: str, value) -> Optional[Anime]:
        sql = (f"SELECT {_ANIME_SELECT}, {_RATING_AGG} FROM animes a"
               f" LEFT JOIN ratings r ON a.id = r.anime_id WHERE a.{column} = ? GROUP BY a.id")
        with self.conn() as c:
            r = c.execute(sql, (value,)).fetchone()
            return _anime(r) if r else None

    def get_anime(self, anime_id: int) -> Optional[Anime]:
        return self._select_one_anime("id", anime_id)

    def get_anime_by_slug(self, slug: str) -> Optional[Anime]:
        return self._select_one_anime("slug", slug)

    def popular_animes(self, limit: int = 10) -> List[Anime]:
        sql = (f"SELECT {_ANIME_SELECT}, {_RATING_AGG} FROM animes a"
               " LEFT JOIN ratings r ON a.id = r.anime_id"
               " GROUP BY a.id ORDER BY a.views DESC, rating DESC, a.id ASC LIMIT ?")
        with self.conn() as c:
            return [_anime(r) for r in c.execute(sql, (limit,)).fetchall()]

    def latest_animes(self, limit: int = 10) -> List[Anime]:
        sql = (f"SELECT {_ANIME_SELECT}, {_RATING_AGG} FROM animes a"
               " LEFT JOIN ratings r ON a.id = r.anime_id"
               " GROUP BY a.id ORDER BY a.created_at DESC, a.id DESC LIMIT ?")
        with self.conn() as c:
            return [_anime(r) for r in c.execute(sql, (limit,)).fetchall()]

    def increment_views(self, anime_id: int) -> None:
        with self.conn() as c:
            c.execute("UPDATE animes SET views = views + 1 WHERE id = ?", (anime_id,))

    def create_anime(self, anime: Anime) -> Anime:
        with self.conn() as c:
            cur = c.execute(
                "INSERT INTO animes (title, original_title, slug, description, release_year, status, type,"
                " episodes_count, poster, rating, views, created_at, updated_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, 0, 0, ?, ?)",
                (anime.title, anime.original_title, anime.slug, anime.description, anime.release_year,
                 anime.status, anime.type, anime.poster, anime.created_at, anime.updated_at))
            anime.id = cur.lastrowid
            # episodes_count is only ever derived from the episodes table
            anime.episodes_count = 0
            return anime

    def update_anime(self, anime_id: int, update: AnimeUpdate) -> Optional[Anime]:
        changes = update.changes()
        with self.conn() as c:
            if not c.execute("SELECT id FROM animes WHERE id = ?", (anime_id,)).fetchone():
                return None
            if changes:
                assignments = ", ".join(f"{col} = ?" for col in changes)
                c.execute(f"UPDATE animes SET {assignments}, updated_at = ? WHERE id = ?",
                          tuple(changes.values()) + (now_iso(), anime_id))
        return self.get_anime(anime_id)

    def delete_anime(self, anime_id: int) -> bool:
        with self.conn() as c:
            return c.execute("DELETE FROM animes WHERE id = ?", (anime_id,)).rowcount > 0

    # -- Genres / Studios --
    def create_genre(self, genre: Genre) -> Genre:
        with self.conn() as c:
            cur = c.execute("INSERT INTO genres (name, description) VALUES (?, ?)",
                            (genre.name, genre.description))
            genre.id = cur.lastrowid
            return genre

    def list_genres(self) -> List[Genre]:
        with self.conn() as c:
            rows = c.execute("SELECT * FROM genres ORDER BY name").fetchall()
            return [Genre(r["id"], r["name"], r["description"]) for r in rows]

    def create_studio(self, studio: Studio) -> Studio:
        with self.conn() as c:
            cur = c.execute("INSERT INTO studios (name, description) VALUES (?, ?)",
                            (studio.name, studio.description))
            studio.id = cur.lastrowid
            return studio

    def list_studios(self) -> List[Studio]:
        with self.conn() as c:
            rows = c.execute("SELECT * FROM studios ORDER BY name").fetchall()
            return [Studio(r["id"], r["name"], r["description"]) for r in rows]

    def anime_genres(self, anime_id: int) -> List[Genre]:
        with self.conn() as c:
            rows = c.execute(
                "SELECT g.id, g.name, g.description FROM genres g"
                " JOIN anime_genres ag ON g.id = ag.genre_id WHERE ag.anime_id = ? ORDER BY g.name",
                (anime_id,)).fetchall()
            return [Genre(r["id"], r["name"], r["description"]) for r in rows]

    def anime_studios(self, anime_id: int) -> List[Studio]:
        with self.conn() as c:
            rows = c.execute(
                "SELECT s.id, s.name, s.description FROM studios s"
                " JOIN anime_studios ast ON s.id = ast.studio_id WHERE ast.anime_id = ? ORDER BY s.name",
                (anime_id,)).fetchall()
            return [Studio(r["id"], r["name"], r["description"]) for r in rows]

    def set_anime_genres(self, anime_id: int, genre_ids: List[int]) -> None:
        with self.conn() as c:
            c.execute("DELETE FROM anime_genres WHERE anime_id = ?", (anime_id,))
            for gid in dict.fromkeys(genre_ids):
                c.execute("INSERT INTO anime_genres (anime_id, genre_id) VALUES (?, ?)", (anime_id, gid))

    def set_anime_studios(self, anime_id: int, studio_ids: List[int]) -> None:
        with self.conn() as c:
            c.execute("DELETE FROM anime_studios WHERE anime_id = ?", (anime_id,))
            for sid in dict.fromkeys(studio_ids):
                c.execute("INSERT INTO anime_studios (anime_id, studio_id) VALUES (?, ?)", (anime_id, sid))

    # -- Episodes --
    def episodes_for_anime(self, anime_id: int) -> List[Episode]:
        with self.conn() as c:
            rows = c.execute("SELECT * FROM episodes WHERE anime_id = ? ORDER BY number ASC",
                             (anime_id,)).fetchall()
            return [_episode(r) for r in rows]

    def get_episode(self, episode_id: int) -> Optional[Episode]:
        with self.conn() as c:
            r = c.execute("SELECT * FROM episodes WHERE id = ?", (episode_id,)).fetchone()
            return _episode(r) if r else None

    def get_episode_by_number(self, anime_id: int, number: int) -> Optional[Episode]:
        with self.conn() as c:
            r = c.execute("SELECT * FROM episodes WHERE anime_id = ? AND number = ?",
                          (anime_id, number)).fetchone()
            return _episode(r) if r else None

    @staticmethod
    def _sync_episodes_count(c, anime_id: int) -> None:
        c.execute("UPDATE animes SET episodes_count = (SELECT COUNT(*) FROM episodes WHERE anime_id = ?)"
                  " WHERE id = ?", (anime_id, anime_id))

    def create_episode(self, ep: Episode) -> Episode:
        with self.conn() as c:
            cur = c.execute(
                "INSERT INTO episodes (anime_id, number, title, description, duration, thumbnail,"
                " release_date, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (ep.anime_id, ep.number, ep.title, ep.description, ep.duration, ep.thumbnail,
                 ep.release_date, ep.created_at, ep.updated_at))
            ep.id = cur.lastrowid
            self._sync_episodes_count(c, ep.anime_id)
            return ep

    def update_episode(self, episode_id: int, update: EpisodeUpdate) -> Optional[Episode]:
        changes = update.changes()
        with self.conn() as c:
            if not c.execute("SELECT id FROM episodes WHERE id = ?", (episode_id,)).fetchone():
                return None
            if changes:
                assignments = ", ".join(f"{col} = ?" for col in changes)
                c.execute(f"UPDATE episodes SET {assignments}, updated_at = ? WHERE id = ?",
                          tuple(changes.values()) + (now_iso(), episode_id))
        return self.get_episode(episode_id)

    def delete_episode(self, episode_id: int) -> bool:
        with self.conn() as c:
            r = c.execute("SELECT anime_id FROM episodes WHERE id = ?", (episode_id,)).fetchone()
            if not r:
                return False
            deleted = c.execute("DELETE FROM episodes WHERE id = ?", (episode_id,)).rowcount
            self._sync_episodes_count(c, r["anime_id"])
            return deleted > 0

    # -- Video sources --
    def video_sources(self, episode_id: int) -> List[VideoSource]:
        with self.conn() as c:
            rows = c.execute(
                f"SELECT * FROM video_sources WHERE episode_id = ? ORDER BY {_QUALITY_RANK} DESC, language",
                (episode_id,)).fetchall()
            return [_video_source(r) for r in rows]

    def add_video_source(self, src: VideoSource) -> VideoSource:
        with self.conn() as c:
            cur = c.execute(
                "INSERT INTO video_sources (episode_id, quality, type, language, source_url, source_type)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (src.episode_id, src.quality, src.type, src.language, src.source_url, src.source_type))
            src.id = cur.lastrowid
            return src

    def delete_video_source(self, source_id: int) -> bool:
        with self.conn() as c:
            return c.execute("DELETE FROM video_sources WHERE id = ?", (source_id,)).rowcount > 0

    # -- Users --
    def create_user(self, user: User) -> User:
        with self.conn() as c:
            cur = c.execute(
                "INSERT INTO users (username, email, password, avatar, is_admin, created_at, updated_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                (user.username, user.email, user.password, user.avatar, int(user.is_admin),
                 user.created_at, user.updated_at))
            user.id = cur.lastrowid
            return user

    def _select_one_user(self, column: str, value) -> Optional[User]:
        with self.conn() as c:
            r = c.execute(f"SELECT * FROM users WHERE {column} = ?", (value,)).fetchone()
            return _user(r) if r else None

    def get_user(self, user_id: int) -> Optional[User]:
        return self._select_one_user("id", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._select_one_user("username", username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._select_one_user("email", email)

    def update_user(self, user_id: int, update: UserUpdate) -> Optional[User]:
        changes = update.changes()
        with self.conn() as c:
            if not c.execute("SELECT id FROM users WHERE id = ?", (user_id,)).fetchone():
                return None
            if changes:
                assignments = ", ".join(f"{col} = ?" for col in changes)
                c.execute(f"UPDATE users SET {assignments}, updated_at = ? WHERE id = ?",
                          tuple(changes.values()) + (now_iso(), user_id))
        return self.get_user(user_id)

    def set_admin(self, user_id: int, is_admin: bool) -> bool:
        with self.conn() as c:
            cur = c.execute("UPDATE users SET is_admin = ?, updated_at = ? WHERE id = ?",
                            (int(is_admin), now_iso(), user_id))
            return cur.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Delete a user; their ratings cascade away, so the cached rating of each rated anime is recomputed."""
        with self.conn() as c:
            rated = [r["anime_id"] for r in
                     c.execute("SELECT anime_id FROM ratings WHERE user_id = ?", (user_id,)).fetchall()]
            if c.execute("DELETE FROM users WHERE id = ?", (user_id,)).rowcount == 0:
                return False
            for anime_id in rated:
                self._sync_cached_rating(c, anime_id)
            return True

    # -- Favorites --
    def add_favorite(self, user_id: int, anime_id: int) -> bool:
        with self.conn() as c:
            cur = c.execute(
                "INSERT INTO favorites (user_id, anime_id, added_at) VALUES (?, ?, ?)"
                " ON CONFLICT (user_id, anime_id) DO NOTHING",
                (user_id, anime_id, now_iso()))
            return cur.rowcount > 0

    def remove_favorite(self, user_id: int, anime_id: int) -> bool:
        with self.conn() as c:
            cur = c.execute("DELETE FROM favorites WHERE user_id = ? AND anime_id = ?", (user_id, anime_id))
            return cur.rowcount > 0

    def is_favorite(self, user_id: int, anime_id: int) -> bool:
        with self.conn() as c:
            r = c.execute("SELECT 1 FROM favorites WHERE user_id = ? AND anime_id = ?",
                          (user_id, anime_id)).fetchone()
            return r is not None

    def favorites(self, user_id: int) -> List[Tuple[Anime, str]]:
        with self.conn() as c:
            rows = c.execute(
                f"SELECT {_ANIME_SELECT}, a.rating, f.added_at FROM animes a"
                " JOIN favorites f ON a.id = f.anime_id WHERE f.user_id = ? ORDER BY f.added_at DESC",
                (user_id,)).fetchall()
            return [(_anime(r), r["added_at"]) for r in rows]

    # -- Ratings --
    @staticmethod
    def _sync_cached_rating(c, anime_id: int) -> None:
        c.execute(
            "UPDATE animes SET rating = COALESCE((SELECT ROUND(AVG(score), 1) FROM ratings WHERE anime_id = ?), 0)"
            " WHERE id = ?", (anime_id, anime_id))

    def rate_anime(self, user_id: int, anime_id: int, score: int) -> float:
        """Upsert the user's score and recompute the cached anime rating in one transaction."""
        with self.conn() as c:
            c.execute(
                "INSERT INTO ratings (user_id, anime_id, score, created_at) VALUES (?, ?, ?, ?)"
                " ON CONFLICT (user_id, anime_id) DO UPDATE SET score = excluded.score,"
                " created_at = excluded.created_at",
                (user_id, anime_id, score, now_iso()))
            self._sync_cached_rating(c, anime_id)
            return float(c.execute("SELECT rating FROM animes WHERE id = ?", (anime_id,)).fetchone()["rating"])

    def user_rating(self, user_id: int, anime_id: int) -> Optional[int]:
        with self.conn() as c:
            r = c.execute("SELECT score FROM ratings WHERE user_id = ? AND anime_id = ?",
                          (user_id, anime_id)).fetchone()
            return r["score"] if r else None

    def cached_rating(self, anime_id: int) -> Optional[float]:
        with self.conn() as c:
            r = c.execute("SELECT rating FROM animes WHERE id = ?", (anime_id,)).fetchone()
            return float(r["rating"]) if r else None

    # -- Comments --
    _COMMENT_SELECT = ("SELECT c.id, c.user_id, c.anime_id, c.episode_id, c.text, c.parent_id, c.created_at,"
                       " u.username, u.avatar FROM comments c JOIN users u ON c.user_id = u.id")

    def add_comment(self, comment: Comment) -> Comment:
        with self.conn() as c:
            cur = c.execute(
                "INSERT INTO comments (user_id, anime_id, episode_id, text, parent_id, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (comment.user_id, comment.anime_id, comment.episode_id, comment.text,
                 comment.parent_id, comment.created_at))
            r = c.execute(f"{self._COMMENT_SELECT} WHERE c.id = ?", (cur.lastrowid,)).fetchone()
            return _comment(r)

    def episode_comments(self, episode_id: int) -> List[Comment]:
        with self.conn() as c:
            rows = c.execute(
                f"{self._COMMENT_SELECT} WHERE c.episode_id = ? AND c.parent_id IS NULL"
                " ORDER BY c.created_at DESC, c.id DESC", (episode_id,)).fetchall()
            return [_comment(r) for r in rows]

    def anime_comments(self, anime_id: int) -> List[Comment]:
        with self.conn() as c:
            rows = c.execute(
                f"{self._COMMENT_SELECT} WHERE c.anime_id = ? AND c.parent_id IS NULL"
                " ORDER BY c.created_at DESC, c.id DESC", (anime_id,)).fetchall()
            return [_comment(r) for r in rows]

    def get_comment(self, comment_id: int) -> Optional[Comment]:
        with self.conn() as c:
            r = c.execute(f"{self._COMMENT_SELECT} WHERE c.id = ?", (comment_id,)).fetchone()
            return _comment(r) if r else None

    # -- Watch progress --
    def record_progress(self, user_id: int, episode_id: int, progress: float) -> None:
        with self.conn() as c:
            c.execute(
                "INSERT INTO watched_episodes (user_id, episode_id, watch_progress, watched_at)"
                " VALUES (?, ?, ?, ?) ON CONFLICT (user_id, episode_id) DO UPDATE SET"
                " watch_progress = excluded.watch_progress, watched_at = excluded.watched_at",
                (user_id, episode_id, progress, now_iso()))

    def watch_progress(self, user_id: int, episode_id: int) -> Optional[float]:
        with self.conn() as c:
            r = c.execute("SELECT watch_progress FROM watched_episodes WHERE user_id = ? AND episode_id = ?",
                          (user_id, episode_id)).fetchone()
            return r["watch_progress"] if r else None

    def watched_animes(self, user_id: int) -> List[Tuple[Anime, str]]:
        with self.conn() as c:
            rows = c.execute(
                f"SELECT {_ANIME_SELECT}, a.rating, MAX(we.watched_at) AS last_watched FROM animes a"
                " JOIN episodes e ON a.id = e.anime_id"
                " JOIN watched_episodes we ON e.id = we.episode_id"
                " WHERE we.user_id = ? GROUP BY a.id ORDER BY last_watched DESC",
                (user_id,)).fetchall()
            return [(_anime(r), r["last_watched"]) for r in rows]
