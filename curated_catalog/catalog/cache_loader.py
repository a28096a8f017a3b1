from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from ..database.models import CacheEntry, Source, unique_videos
from ..database.repository import Repository, format_timestamp, utc_now
from ..errors import ConfigurationError, StoreError
from ..sources.youtube_client import YouTubeClient
from .pagination import DEFAULT_PAGE_SIZE

logger = logging.getLogger(__name__)


class CacheLoader:
    """Loads basic info for remote sources: store first, remote API on a miss."""

    def __init__(
        self,
        repo: Repository,
        client: Optional[YouTubeClient] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repo = repo
        self.client = client
        self.page_size = page_size
        self.clock = clock

    def batch_load_basic_info(self, sources: list[Source]) -> dict[str, CacheEntry]:
        """Cached entries for every remote source the store already knows.

        Sources missing from the result have never been fetched and need
        :meth:`load_source_basic_info`.
        """
        ids = [s.id for s in sources if s.kind.is_remote]
        if not ids:
            return {}
        entries = self.repo.batch_get_basic_info(ids)
        logger.debug(f"Batch cache: {len(entries)} of {len(ids)} remote sources cached")
        return entries

    def load_source_basic_info(
        self, source: Source, api_available: bool = True
    ) -> CacheEntry:
        """Live fetch of basic info and the first page for one source.

        The fetched metadata and page order are saved; the videos themselves
        are left to the caller, which writes every entry marked
        ``fetched_new_data`` in one batch.
        """
        if not api_available or self.client is None:
            raise ConfigurationError(
                f"Source {source.id} has no cached data and no API key is configured"
            )

        info = self.client.get_basic_info(source)
        page = self.client.get_video_page(source, 1, self.page_size)
        videos = unique_videos(page.videos)
        fetched_at = format_timestamp(self.clock())

        channel_id = None
        if info.channel_id and info.channel_id != source.remote.channel_id:
            channel_id = info.channel_id
        try:
            self.repo.record_source_fetch(
                source.id,
                updated_at=fetched_at,
                total_videos=info.total_count,
                thumbnail=info.thumbnail,
                channel_id=channel_id,
                page_video_ids=[v.id for v in videos],
            )
        except StoreError as e:
            logger.warning(f"Could not cache basic info for {source.id}: {e}")

        return CacheEntry(
            source_id=source.id,
            videos=videos,
            total_videos=info.total_count,
            title=info.title,
            thumbnail=info.thumbnail,
            using_cached_data=False,
            fetched_new_data=True,
        )
