from __future__ import annotations

import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional

from ..errors import ConfigurationError, StoreError
from .connection import init_database
from .models import CacheEntry, Source, SourceKind, VideoRecord

logger = logging.getLogger(__name__)

# Fixed-width UTC so that string comparison in SQL orders by time
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Stay well below SQLite's bound-parameter limit
_CHUNK = 500

_REMOTE_TYPES = (SourceKind.YOUTUBE_CHANNEL.value, SourceKind.YOUTUBE_PLAYLIST.value)


def format_timestamp(dt: datetime) -> str:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(TIMESTAMP_FORMAT)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _chunks(items: list, size: int = _CHUNK) -> Iterator[list]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _placeholders(n: int) -> str:
    return ",".join("?" * n)


class Repository:
    """Persistent store for sources, videos, cached pages and derived lists.

    One instance owns one sqlite connection and must stay on the thread
    that created it.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._tx_depth = 0

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = init_database(self.db_path)
        return self._conn

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    @contextmanager
    def transaction(self):
        """BEGIN / COMMIT around the block, ROLLBACK on any exception.

        Nested use joins the outer transaction.
        """
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self.conn
            finally:
                self._tx_depth -= 1
            return

        conn = self.conn
        if conn.in_transaction:
            conn.commit()
        conn.execute("BEGIN")
        self._tx_depth = 1
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()
        finally:
            self._tx_depth = 0

    def _commit(self):
        if not self._tx_depth:
            self.conn.commit()

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def get_source(self, source_id: str) -> Optional[Source]:
        row = self.conn.execute(
            "SELECT * FROM sources WHERE id = ?", (source_id,)
        ).fetchone()
        return Source.from_row(dict(row)) if row else None

    def list_sources(self, kinds: Optional[Iterable[SourceKind]] = None) -> list[Source]:
        sql = "SELECT * FROM sources"
        params: list = []
        if kinds is not None:
            values = [SourceKind(k).value for k in kinds]
            sql += f" WHERE type IN ({_placeholders(len(values))})"
            params.extend(values)
        sql += " ORDER BY position, title"
        rows = self.conn.execute(sql, params).fetchall()
        return [Source.from_row(dict(r)) for r in rows]

    def upsert_source(self, source: Source) -> Source:
        """Insert or update a source's configuration.

        Cache fields (thumbnail, total_videos, updated_at) are kept unless the
        source now points somewhere else, in which case they are cleared along
        with its cached pages and resolved channel id.
        """
        if source.kind.is_derived:
            raise ConfigurationError(f"Derived source {source.id} cannot be stored")
        if source.local is not None and source.local.max_depth < 1:
            raise ConfigurationError(
                f"Source {source.id}: max_depth must be >= 1, got {source.local.max_depth}"
            )

        data = source.to_row()
        with self.transaction() as conn:
            existing = conn.execute(
                "SELECT type, url, path FROM sources WHERE id = ?", (source.id,)
            ).fetchone()
            if existing is None:
                conn.execute(
                    """INSERT INTO sources (id, type, title, position, url, channel_id,
                                            path, max_depth)
                       VALUES (:id, :type, :title, :position, :url, :channel_id,
                               :path, :max_depth)""",
                    data,
                )
            else:
                moved = (
                    existing["type"] != data["type"]
                    or existing["url"] != data["url"]
                    or existing["path"] != data["path"]
                )
                if moved:
                    logger.info(f"Source {source.id} changed origin, clearing its cache")
                    conn.execute(
                        """UPDATE sources SET type = :type, title = :title,
                                              position = :position, url = :url,
                                              channel_id = :channel_id, path = :path,
                                              max_depth = :max_depth, thumbnail = NULL,
                                              total_videos = NULL, updated_at = NULL
                           WHERE id = :id""",
                        data,
                    )
                    self.clear_cached_pages(source.id)
                else:
                    conn.execute(
                        """UPDATE sources SET title = :title, position = :position,
                                              channel_id = COALESCE(:channel_id, channel_id),
                                              max_depth = :max_depth
                           WHERE id = :id""",
                        data,
                    )
        return self.get_source(source.id)

    def delete_source(self, source_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
        self._commit()
        return cur.rowcount > 0

    def find_stale_sources(self, threshold: str) -> list[Source]:
        """Remote sources never refreshed or last refreshed before ``threshold``."""
        rows = self.conn.execute(
            f"""SELECT * FROM sources
                WHERE type IN ({_placeholders(len(_REMOTE_TYPES))})
                  AND (updated_at IS NULL OR updated_at < ?)
                ORDER BY position, title""",
            (*_REMOTE_TYPES, threshold),
        ).fetchall()
        return [Source.from_row(dict(r)) for r in rows]

    def update_source_metadata(
        self,
        source_id: str,
        total_videos: Optional[int] = None,
        thumbnail: Optional[str] = None,
        title: Optional[str] = None,
        updated_at: Optional[str] = None,
    ) -> bool:
        """Write cache fields after a successful fetch. None leaves a field as is."""
        cur = self.conn.execute(
            """UPDATE sources SET total_videos = COALESCE(?, total_videos),
                                  thumbnail = COALESCE(?, thumbnail),
                                  title = COALESCE(?, title),
                                  updated_at = COALESCE(?, updated_at)
               WHERE id = ?""",
            (total_videos, thumbnail, title, updated_at, source_id),
        )
        self._commit()
        return cur.rowcount > 0

    def set_channel_id(self, source_id: str, channel_id: str):
        self.conn.execute(
            "UPDATE sources SET channel_id = ? WHERE id = ?", (channel_id, source_id)
        )
        self._commit()

    def record_source_fetch(
        self,
        source_id: str,
        updated_at: Optional[str] = None,
        total_videos: Optional[int] = None,
        thumbnail: Optional[str] = None,
        channel_id: Optional[str] = None,
        page_number: int = 1,
        page_video_ids: Optional[list[str]] = None,
    ):
        """Persist the result of a successful remote fetch in one transaction.

        A resolved channel id and the new ``updated_at`` are written together,
        so a source never ends up with one but not the other.
        """
        try:
            with self.transaction():
                if channel_id:
                    self.set_channel_id(source_id, channel_id)
                self.update_source_metadata(
                    source_id,
                    total_videos=total_videos,
                    thumbnail=thumbnail,
                    updated_at=updated_at,
                )
                if page_video_ids is not None:
                    self.save_cached_page(
                        source_id, page_number, page_video_ids, fetched_at=updated_at
                    )
        except sqlite3.Error as e:
            raise StoreError(f"Saving fetch result for {source_id} failed: {e}") from e

    def batch_get_basic_info(self, source_ids: list[str]) -> dict[str, CacheEntry]:
        """Cached title/thumbnail/count plus page 1 for every source that has them.

        Two queries per chunk of ids regardless of how many sources are asked
        for. Sources never fetched are absent from the result.
        """
        entries: dict[str, CacheEntry] = {}
        for chunk in _chunks(list(source_ids)):
            marks = _placeholders(len(chunk))
            rows = self.conn.execute(
                f"""SELECT id, title, thumbnail, total_videos FROM sources
                    WHERE id IN ({marks}) AND total_videos IS NOT NULL""",
                chunk,
            ).fetchall()
            for r in rows:
                entries[r["id"]] = CacheEntry(
                    source_id=r["id"],
                    total_videos=r["total_videos"],
                    title=r["title"],
                    thumbnail=r["thumbnail"],
                    using_cached_data=True,
                )

            video_rows = self.conn.execute(
                f"""SELECT c.source_id AS cache_source_id, v.*
                    FROM source_page_cache c
                    JOIN videos v ON v.id = c.video_id
                    WHERE c.source_id IN ({marks}) AND c.page_number = 1
                    ORDER BY c.source_id, c.position""",
                chunk,
            ).fetchall()
            for r in video_rows:
                entry = entries.get(r["cache_source_id"])
                if entry is None:
                    continue
                video = VideoRecord.from_row(dict(r))
                video.source_id = r["cache_source_id"]
                entry.videos.append(video)

        # A count without a stored first page is a miss
        return {
            source_id: entry
            for source_id, entry in entries.items()
            if entry.videos or not entry.total_videos
        }

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------

    def batch_upsert_videos(self, videos: list[VideoRecord]) -> int:
        """Insert or update videos in one transaction.

        Empty incoming values never replace stored ones, a zero duration keeps
        the stored duration, and rows whose values would not change are left
        untouched. Returns the number of rows inserted or changed.
        """
        if not videos:
            return 0
        rows = []
        for v in videos:
            row = v.to_row()
            row["title"] = row["title"] or ""
            rows.append(row)

        try:
            with self.transaction() as conn:
                before = conn.total_changes
                conn.executemany(
                    """INSERT INTO videos (id, title, published_at, thumbnail, duration,
                                           url, description, source_id)
                       VALUES (:id, :title, :published_at, :thumbnail, :duration,
                               :url, :description, :source_id)
                       ON CONFLICT(id) DO UPDATE SET
                           title = COALESCE(NULLIF(excluded.title, ''), videos.title),
                           published_at = COALESCE(NULLIF(excluded.published_at, ''),
                                                   videos.published_at),
                           thumbnail = COALESCE(NULLIF(excluded.thumbnail, ''),
                                                videos.thumbnail),
                           duration = CASE WHEN excluded.duration > 0
                                           THEN excluded.duration ELSE videos.duration END,
                           url = COALESCE(NULLIF(excluded.url, ''), videos.url),
                           description = COALESCE(NULLIF(excluded.description, ''),
                                                  videos.description),
                           source_id = excluded.source_id,
                           is_available = 1,
                           updated_at = datetime('now')
                       WHERE videos.title IS NOT COALESCE(NULLIF(excluded.title, ''),
                                                          videos.title)
                          OR videos.published_at IS NOT COALESCE(
                                 NULLIF(excluded.published_at, ''), videos.published_at)
                          OR videos.thumbnail IS NOT COALESCE(
                                 NULLIF(excluded.thumbnail, ''), videos.thumbnail)
                          OR (excluded.duration > 0
                              AND videos.duration IS NOT excluded.duration)
                          OR videos.url IS NOT COALESCE(NULLIF(excluded.url, ''), videos.url)
                          OR videos.description IS NOT COALESCE(
                                 NULLIF(excluded.description, ''), videos.description)
                          OR videos.source_id IS NOT excluded.source_id
                          OR videos.is_available != 1""",
                    rows,
                )
                changed = conn.total_changes - before
        except sqlite3.Error as e:
            raise StoreError(f"Batch upsert of {len(rows)} videos failed: {e}") from e

        logger.debug(f"Upserted videos: {changed} of {len(rows)} changed")
        return changed

    def get_videos_by_source(self, source_id: str) -> list[VideoRecord]:
        rows = self.conn.execute(
            """SELECT * FROM videos WHERE source_id = ? AND is_available = 1
               ORDER BY published_at DESC, id""",
            (source_id,),
        ).fetchall()
        return [VideoRecord.from_row(dict(r)) for r in rows]

    def get_videos_by_ids(self, video_ids: list[str]) -> list[VideoRecord]:
        """Stored videos for the given ids, in the order the ids were given."""
        found: dict[str, VideoRecord] = {}
        for chunk in _chunks(list(video_ids)):
            rows = self.conn.execute(
                f"SELECT * FROM videos WHERE id IN ({_placeholders(len(chunk))})", chunk
            ).fetchall()
            for r in rows:
                found[r["id"]] = VideoRecord.from_row(dict(r))
        return [found[vid] for vid in video_ids if vid in found]

    # ------------------------------------------------------------------
    # Cached pages
    # ------------------------------------------------------------------

    def save_cached_page(
        self,
        source_id: str,
        page_number: int,
        video_ids: list[str],
        fetched_at: Optional[str] = None,
    ):
        fetched_at = fetched_at or format_timestamp(utc_now())
        with self.transaction() as conn:
            conn.execute(
                "DELETE FROM source_page_cache WHERE source_id = ? AND page_number = ?",
                (source_id, page_number),
            )
            conn.executemany(
                """INSERT INTO source_page_cache (source_id, page_number, position,
                                                  video_id, fetched_at)
                   VALUES (?, ?, ?, ?, ?)""",
                [
                    (source_id, page_number, pos, vid, fetched_at)
                    for pos, vid in enumerate(video_ids)
                ],
            )

    def get_cached_page(self, source_id: str, page_number: int) -> list[VideoRecord]:
        rows = self.conn.execute(
            """SELECT v.* FROM source_page_cache c
               JOIN videos v ON v.id = c.video_id
               WHERE c.source_id = ? AND c.page_number = ?
               ORDER BY c.position""",
            (source_id, page_number),
        ).fetchall()
        videos = []
        for r in rows:
            video = VideoRecord.from_row(dict(r))
            video.source_id = source_id
            videos.append(video)
        return videos

    def clear_cached_pages(self, source_id: str):
        self.conn.execute(
            "DELETE FROM source_page_cache WHERE source_id = ?", (source_id,)
        )
        self._commit()

    def reset_source_cache(self, source_id: str) -> bool:
        """Forget a source's cached pages, count, thumbnail and refresh time.

        The next catalog load fetches the source live again. The resolved
        channel id is kept. Returns False if the source does not exist.
        """
        try:
            with self.transaction() as conn:
                cur = conn.execute(
                    """UPDATE sources SET total_videos = NULL, thumbnail = NULL,
                                          updated_at = NULL
                       WHERE id = ?""",
                    (source_id,),
                )
                if cur.rowcount == 0:
                    return False
                self.clear_cached_pages(source_id)
        except sqlite3.Error as e:
            raise StoreError(f"Resetting cache for {source_id} failed: {e}") from e
        logger.info(f"Cleared cached data for source {source_id}")
        return True

    # ------------------------------------------------------------------
    # Derived lists
    # ------------------------------------------------------------------

    def add_downloaded_video(self, data: dict) -> int:
        cur = self.conn.execute(
            """INSERT INTO downloaded_videos (video_id, source_id, title, file_path,
                                              thumbnail_path, duration)
               VALUES (:video_id, :source_id, :title, :file_path,
                       :thumbnail_path, :duration)
               ON CONFLICT(file_path) DO UPDATE SET
                   title = excluded.title,
                   thumbnail_path = COALESCE(excluded.thumbnail_path,
                                             downloaded_videos.thumbnail_path),
                   duration = COALESCE(excluded.duration, downloaded_videos.duration)""",
            {
                "video_id": data.get("video_id"),
                "source_id": data["source_id"],
                "title": data["title"],
                "file_path": data["file_path"],
                "thumbnail_path": data.get("thumbnail_path"),
                "duration": data.get("duration"),
            },
        )
        self._commit()
        return cur.lastrowid

    def get_downloaded_videos(self) -> list[VideoRecord]:
        rows = self.conn.execute(
            """SELECT * FROM downloaded_videos ORDER BY downloaded_at DESC, id DESC"""
        ).fetchall()
        return [
            VideoRecord(
                id=r["video_id"] or f"local:{r['file_path']}",
                title=r["title"],
                source_id=r["source_id"],
                thumbnail=r["thumbnail_path"],
                duration_seconds=r["duration"] or 0,
                url=r["file_path"],
                path=r["file_path"],
            )
            for r in rows
        ]

    def add_favorite(self, video_id: str, source_id: str, date_added: Optional[str] = None):
        self.conn.execute(
            """INSERT OR REPLACE INTO favorites (video_id, source_id, date_added)
               VALUES (?, ?, ?)""",
            (video_id, source_id, date_added or format_timestamp(utc_now())),
        )
        self._commit()

    def remove_favorite(self, video_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM favorites WHERE video_id = ?", (video_id,))
        self._commit()
        return cur.rowcount > 0

    def get_favorite_videos(self) -> list[VideoRecord]:
        """Favorites joined with whatever video metadata is stored for them."""
        rows = self.conn.execute(
            """SELECT f.video_id, f.source_id, f.date_added,
                      v.title, v.thumbnail, v.duration, v.url, v.published_at,
                      v.description,
                      s.title AS source_title, s.type AS source_type
               FROM favorites f
               LEFT JOIN videos v ON f.video_id = v.id
               LEFT JOIN sources s ON f.source_id = s.id
               ORDER BY f.date_added DESC"""
        ).fetchall()
        return [
            VideoRecord(
                id=r["video_id"],
                title=r["title"] or r["video_id"],
                source_id=r["source_id"],
                thumbnail=r["thumbnail"],
                duration_seconds=r["duration"] or 0,
                url=r["url"],
                published_at=r["published_at"],
                description=r["description"],
                source_kind=r["source_type"],
                source_title=r["source_title"],
            )
            for r in rows
        ]

    def upsert_wishlist_item(self, data: dict, status: str = "pending"):
        self.conn.execute(
            """INSERT INTO wishlist (video_id, title, thumbnail, description, channel_id,
                                     channel_name, url, duration, published_at, status)
               VALUES (:video_id, :title, :thumbnail, :description, :channel_id,
                       :channel_name, :url, :duration, :published_at, :status)
               ON CONFLICT(video_id) DO UPDATE SET
                   title = excluded.title,
                   thumbnail = COALESCE(excluded.thumbnail, wishlist.thumbnail),
                   status = excluded.status,
                   reviewed_at = CASE WHEN excluded.status != wishlist.status
                                      THEN datetime('now') ELSE wishlist.reviewed_at END,
                   updated_at = datetime('now')""",
            {
                "video_id": data["video_id"],
                "title": data["title"],
                "thumbnail": data.get("thumbnail"),
                "description": data.get("description"),
                "channel_id": data.get("channel_id"),
                "channel_name": data.get("channel_name"),
                "url": data.get("url"),
                "duration": data.get("duration"),
                "published_at": data.get("published_at"),
                "status": status,
            },
        )
        self._commit()

    def get_approved_wishlist_videos(self) -> list[VideoRecord]:
        rows = self.conn.execute(
            """SELECT * FROM wishlist WHERE status = 'approved'
               ORDER BY reviewed_at DESC, id DESC"""
        ).fetchall()
        return [
            VideoRecord(
                id=r["video_id"],
                title=r["title"],
                source_id=SourceKind.WISHLIST.value,
                thumbnail=r["thumbnail"],
                duration_seconds=r["duration"] or 0,
                url=r["url"] or f"https://www.youtube.com/watch?v={r['video_id']}",
                published_at=r["published_at"],
                description=r["description"],
            )
            for r in rows
        ]
