from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Optional, Union

from ..errors import CatalogError, ConfigurationError


class SourceKind(str, enum.Enum):
    YOUTUBE_CHANNEL = "youtube_channel"
    YOUTUBE_PLAYLIST = "youtube_playlist"
    LOCAL = "local"
    # Derived lists are never stored in the sources table
    DOWNLOADED = "downloaded"
    FAVORITES = "favorites"
    WISHLIST = "wishlist"

    @property
    def is_remote(self) -> bool:
        return self in (SourceKind.YOUTUBE_CHANNEL, SourceKind.YOUTUBE_PLAYLIST)

    @property
    def is_derived(self) -> bool:
        return self in DERIVED_KINDS


DERIVED_KINDS = (SourceKind.DOWNLOADED, SourceKind.FAVORITES, SourceKind.WISHLIST)

DERIVED_TITLES = {
    SourceKind.DOWNLOADED: "Downloaded",
    SourceKind.FAVORITES: "Favorites",
    SourceKind.WISHLIST: "Approved Wishlist",
}


@dataclass
class RemoteFields:
    url: str
    channel_id: Optional[str] = None  # UC... id or playlist id once known


@dataclass
class LocalFields:
    path: str
    max_depth: int = 2


@dataclass
class Source:
    """A configured catalog origin.

    Exactly one of ``remote`` / ``local`` is set for stored kinds; derived
    kinds carry neither. ``total_videos``, ``thumbnail`` and ``updated_at``
    are cache fields written only after a successful fetch.
    """

    id: str
    kind: SourceKind
    title: str
    remote: Optional[RemoteFields] = None
    local: Optional[LocalFields] = None
    total_videos: Optional[int] = None
    thumbnail: Optional[str] = None
    updated_at: Optional[str] = None
    position: int = 0

    def __post_init__(self):
        self.kind = SourceKind(self.kind)
        if self.kind.is_remote and self.remote is None:
            raise ConfigurationError(f"Source {self.id}: remote source needs a url")
        if self.kind == SourceKind.LOCAL and self.local is None:
            raise ConfigurationError(f"Source {self.id}: local source needs a path")

    @property
    def payload(self) -> Union[RemoteFields, LocalFields, None]:
        if self.kind.is_remote:
            return self.remote
        if self.kind == SourceKind.LOCAL:
            return self.local
        return None

    @classmethod
    def derived(cls, kind: SourceKind, position: int = 0) -> Source:
        return cls(id=kind.value, kind=kind, title=DERIVED_TITLES[kind], position=position)

    @classmethod
    def from_row(cls, row: dict) -> Source:
        kind = SourceKind(row["type"])
        remote = local = None
        if kind.is_remote:
            remote = RemoteFields(url=row["url"], channel_id=row.get("channel_id"))
        elif kind == SourceKind.LOCAL:
            max_depth = row.get("max_depth")
            local = LocalFields(
                path=row["path"], max_depth=max_depth if max_depth is not None else 2
            )
        return cls(
            id=row["id"],
            kind=kind,
            title=row["title"],
            remote=remote,
            local=local,
            total_videos=row.get("total_videos"),
            thumbnail=row.get("thumbnail"),
            updated_at=row.get("updated_at"),
            position=row.get("position") or 0,
        )

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "type": self.kind.value,
            "title": self.title,
            "position": self.position,
            "url": self.remote.url if self.remote else None,
            "channel_id": self.remote.channel_id if self.remote else None,
            "path": self.local.path if self.local else None,
            "max_depth": self.local.max_depth if self.local else None,
        }


@dataclass
class VideoRecord:
    id: str
    title: str
    source_id: str
    thumbnail: Optional[str] = None
    duration_seconds: int = 0
    url: Optional[str] = None
    path: Optional[str] = None  # local files only
    published_at: Optional[str] = None
    description: Optional[str] = None
    depth: Optional[int] = None
    flattened: bool = False
    relative_path: Optional[str] = None
    source_kind: Optional[str] = None
    source_title: Optional[str] = None

    def tagged(self, source: Source) -> VideoRecord:
        """Copy of this record labelled with the source it was listed under."""
        return replace(
            self,
            source_id=source.id,
            source_kind=source.kind.value,
            source_title=source.title,
        )

    @classmethod
    def from_row(cls, row: dict) -> VideoRecord:
        return cls(
            id=row["id"],
            title=row.get("title") or "",
            source_id=row.get("source_id") or "",
            thumbnail=row.get("thumbnail"),
            duration_seconds=row.get("duration") or 0,
            url=row.get("url"),
            published_at=row.get("published_at"),
            description=row.get("description"),
        )

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "published_at": self.published_at,
            "thumbnail": self.thumbnail,
            "duration": self.duration_seconds or 0,
            "url": self.url or self.path,
            "description": self.description,
            "source_id": self.source_id,
        }


def unique_videos(videos: list[VideoRecord]) -> list[VideoRecord]:
    """First occurrence of each video id, in listing order."""
    seen: set[str] = set()
    unique = []
    for video in videos:
        if video.id not in seen:
            seen.add(video.id)
            unique.append(video)
    return unique


@dataclass
class CacheEntry:
    source_id: str
    videos: list[VideoRecord] = field(default_factory=list)
    total_videos: int = 0
    title: Optional[str] = None
    thumbnail: Optional[str] = None
    using_cached_data: bool = False
    fetched_new_data: bool = False


@dataclass
class RefreshRecord:
    source_id: str
    updated_at: Optional[str] = None

    def is_stale(self, threshold: str) -> bool:
        # Timestamps are fixed-width UTC strings, so text order is time order
        return self.updated_at is None or self.updated_at < threshold


@dataclass
class PaginationState:
    current_page: int
    total_pages: int
    total_videos: int
    page_size: int


@dataclass
class SourceError:
    source_id: str
    category: str
    message: str

    @classmethod
    def from_exception(cls, source_id: str, exc: Exception) -> SourceError:
        category = exc.category if isinstance(exc, CatalogError) else "error"
        return cls(source_id=source_id, category=category, message=str(exc))


@dataclass
class AggregatedSource:
    source: Source
    videos: list[VideoRecord]
    pagination: PaginationState
    error: Optional[SourceError] = None
    using_cached_data: bool = False
    fetched_new_data: bool = False

    @property
    def video_count(self) -> int:
        return self.pagination.total_videos


@dataclass
class AggregatedCatalog:
    sources: list[AggregatedSource] = field(default_factory=list)
    errors: list[SourceError] = field(default_factory=list)
    videos_written: int = 0
    cancelled: bool = False

    def all_videos(self) -> list[VideoRecord]:
        return [v for s in self.sources for v in s.videos]

    def get(self, source_id: str) -> Optional[AggregatedSource]:
        for entry in self.sources:
            if entry.source.id == source_id:
                return entry
        return None


@dataclass
class RefreshReport:
    skipped_reason: Optional[str] = None
    refreshed: list[str] = field(default_factory=list)
    resolved: list[str] = field(default_factory=list)
    failed: list[SourceError] = field(default_factory=list)
    cancelled: bool = False
