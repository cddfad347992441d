# anistream/models.py
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Optional

ANIME_STATUSES = ("ongoing", "completed", "announced")
ANIME_TYPES = ("tv", "movie", "ova", "ona", "special")
VIDEO_QUALITIES = ("240p", "360p", "480p", "720p", "1080p", "4k")
VIDEO_TYPES = ("sub", "dub")
SOURCE_TYPES = ("video", "iframe", "m3u8")

# largest integer sqlite3 can bind
SQLITE_MAX_INTEGER = 2 ** 63 - 1


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Anime:
    id: Optional[int]
    title: str
    slug: str
    status: str = "announced"
    type: str = "tv"
    original_title: Optional[str] = None
    description: Optional[str] = None
    release_year: Optional[int] = None
    episodes_count: int = 0
    poster: Optional[str] = None
    rating: float = 0
    views: int = 0
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)


@dataclass
class Episode:
    id: Optional[int]
    anime_id: int
    number: int
    title: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[int] = None
    thumbnail: Optional[str] = None
    release_date: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)


@dataclass
class VideoSource:
    id: Optional[int]
    episode_id: int
    quality: str
    type: str
    language: str
    source_url: str
    source_type: str = "video"


@dataclass
class Genre:
    id: Optional[int]
    name: str
    description: Optional[str] = None


@dataclass
class Studio:
    id: Optional[int]
    name: str
    description: Optional[str] = None


@dataclass
class User:
    id: Optional[int]
    username: str
    email: str
    password: str  # hash, never serialized
    avatar: Optional[str] = None
    is_admin: bool = False
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def public(self) -> dict:
        """Serializable view of the user without the password hash."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "avatar": self.avatar,
            "is_admin": self.is_admin,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Comment:
    id: Optional[int]
    user_id: int
    text: str
    anime_id: Optional[int] = None
    episode_id: Optional[int] = None
    parent_id: Optional[int] = None
    created_at: str = field(default_factory=now_iso)
    # author fields, filled by joined reads
    username: Optional[str] = None
    avatar: Optional[str] = None


# --- Update structures ---
# Only the fields declared here can reach an UPDATE statement; None means "leave as is".

@dataclass
class AnimeUpdate:
    title: Optional[str] = None
    original_title: Optional[str] = None
    description: Optional[str] = None
    release_year: Optional[int] = None
    status: Optional[str] = None
    type: Optional[str] = None
    poster: Optional[str] = None

    def changes(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


@dataclass
class EpisodeUpdate:
    title: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[int] = None
    thumbnail: Optional[str] = None
    release_date: Optional[str] = None

    def changes(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


@dataclass
class UserUpdate:
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None  # already hashed when it reaches the repo
    avatar: Optional[str] = None

    def changes(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}
