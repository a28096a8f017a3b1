from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from ..database.models import (
    DERIVED_KINDS,
    AggregatedCatalog,
    AggregatedSource,
    CacheEntry,
    Source,
    SourceError,
    SourceKind,
    VideoRecord,
    unique_videos,
)
from ..database.repository import Repository, utc_now
from ..errors import NotFoundError, OperationCancelled, StoreError
from ..sources.folder_scanner import FolderScanner, paginate
from ..sources.youtube_client import YouTubeClient
from .cache_loader import CacheLoader
from .pagination import DEFAULT_MAX_PAGES, DEFAULT_PAGE_SIZE, build_pagination

logger = logging.getLogger(__name__)


class CatalogAggregator:
    """Builds the unified, paginated catalog from every configured source.

    Remote sources come from the store when cached and from the API on a
    miss; local sources contribute only a count; derived lists are read from
    the store. Only videos fetched live during the pass are written back.
    """

    def __init__(
        self,
        repo: Repository,
        scanner: FolderScanner,
        client: Optional[YouTubeClient] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repo = repo
        self.scanner = scanner
        self.client = client
        self.page_size = page_size
        self.max_pages = max_pages
        self.cache_loader = CacheLoader(repo, client, page_size=page_size, clock=clock)

    # ------------------------------------------------------------------
    # Whole catalog
    # ------------------------------------------------------------------

    def load_all(
        self,
        api_available: bool = True,
        cancel_event: Optional[threading.Event] = None,
    ) -> AggregatedCatalog:
        catalog = AggregatedCatalog()
        sources = self.repo.list_sources()
        cached = self.cache_loader.batch_load_basic_info(sources)

        for source in sources:
            if cancel_event is not None and cancel_event.is_set():
                catalog.cancelled = True
                break
            try:
                entry = self._load_source(source, cached, api_available, cancel_event)
            except OperationCancelled:
                catalog.cancelled = True
                break
            except Exception as e:
                entry = self._failed(source, e)
                catalog.errors.append(entry.error)
            catalog.sources.append(entry)

        if catalog.cancelled:
            logger.info(f"Catalog load cancelled after {len(catalog.sources)} sources")
        else:
            for position, kind in enumerate(DERIVED_KINDS, start=len(sources)):
                source = Source.derived(kind, position=position)
                try:
                    entry = self._load_derived(source)
                except Exception as e:
                    entry = self._failed(source, e)
                    catalog.errors.append(entry.error)
                catalog.sources.append(entry)

        catalog.videos_written = self._persist_fresh(catalog)
        return catalog

    def _load_source(
        self,
        source: Source,
        cached: dict[str, CacheEntry],
        api_available: bool,
        cancel_event: Optional[threading.Event],
    ) -> AggregatedSource:
        if source.kind.is_remote:
            entry = cached.get(source.id)
            if entry is None:
                entry = self.cache_loader.load_source_basic_info(source, api_available)
            return self._from_cache_entry(source, entry)

        if source.kind == SourceKind.LOCAL:
            count = self.scanner.count_videos(
                source.local.path, source.local.max_depth, cancel_event=cancel_event
            )
            return AggregatedSource(
                source=source,
                videos=[],
                pagination=build_pagination(count, self.page_size, self.max_pages),
            )

        return self._load_derived(source)

    def _from_cache_entry(self, source: Source, entry: CacheEntry) -> AggregatedSource:
        if entry.thumbnail:
            source.thumbnail = entry.thumbnail
        source.total_videos = entry.total_videos
        return AggregatedSource(
            source=source,
            videos=[v.tagged(source) for v in unique_videos(entry.videos)],
            pagination=build_pagination(entry.total_videos, self.page_size, self.max_pages),
            using_cached_data=entry.using_cached_data,
            fetched_new_data=entry.fetched_new_data,
        )

    def _derived_videos(self, kind: SourceKind) -> list[VideoRecord]:
        if kind == SourceKind.DOWNLOADED:
            return self.repo.get_downloaded_videos()
        if kind == SourceKind.FAVORITES:
            return self.repo.get_favorite_videos()
        return self.repo.get_approved_wishlist_videos()

    def _load_derived(self, source: Source, page: int = 1) -> AggregatedSource:
        videos = self._derived_videos(source.kind)
        tagged = [v.tagged(source) for v in unique_videos(videos)]
        return AggregatedSource(
            source=source,
            videos=paginate(tagged, page, self.page_size),
            pagination=build_pagination(len(tagged), self.page_size, self.max_pages, page),
            using_cached_data=True,
        )

    def _failed(self, source: Source, exc: Exception) -> AggregatedSource:
        error = SourceError.from_exception(source.id, exc)
        logger.warning(f"Source {source.id} failed ({error.category}): {exc}")
        return AggregatedSource(
            source=source,
            videos=[],
            pagination=build_pagination(0, self.page_size, self.max_pages),
            error=error,
        )

    def _persist_fresh(self, catalog: AggregatedCatalog) -> int:
        """Write videos from live fetches only. Cached entries are never rewritten."""
        fresh = [v for s in catalog.sources if s.fetched_new_data for v in s.videos]
        if not fresh:
            return 0
        try:
            written = self.repo.batch_upsert_videos(fresh)
        except StoreError as e:
            logger.warning(f"Could not persist {len(fresh)} fetched videos: {e}")
            return 0
        logger.info(f"Persisted {written} of {len(fresh)} freshly fetched videos")
        return written

    # ------------------------------------------------------------------
    # Single source
    # ------------------------------------------------------------------

    def load_one(
        self,
        source_id: str,
        page: int = 1,
        cancel_event: Optional[threading.Event] = None,
    ) -> AggregatedSource:
        """One page of one source's videos.

        Remote pages are always fetched live when a client is configured; the
        stored page is served only when that fails or no client exists.
        """
        page = max(1, page)
        derived = {k.value: k for k in DERIVED_KINDS}
        if source_id in derived:
            return self._load_derived(Source.derived(derived[source_id]), page)

        source = self.repo.get_source(source_id)
        if source is None:
            raise NotFoundError(f"Source {source_id} not found")

        if source.kind == SourceKind.LOCAL:
            videos = self.scanner.scan(
                source.local.path,
                source.local.max_depth,
                source_id=source.id,
                cancel_event=cancel_event,
            )
            tagged = [v.tagged(source) for v in videos]
            return AggregatedSource(
                source=source,
                videos=paginate(tagged, page, self.page_size),
                pagination=build_pagination(
                    len(tagged), self.page_size, self.max_pages, page
                ),
            )

        return self._load_remote_page(source, page)

    def _load_remote_page(self, source: Source, page: int) -> AggregatedSource:
        error = None
        if self.client is not None:
            try:
                return self._fetch_remote_page(source, page)
            except OperationCancelled:
                raise
            except Exception as e:
                error = SourceError.from_exception(source.id, e)
                logger.warning(
                    f"Live fetch of {source.id} page {page} failed, using stored page: {e}"
                )

        videos = unique_videos(self.repo.get_cached_page(source.id, page))
        total = source.total_videos if source.total_videos is not None else len(videos)
        return AggregatedSource(
            source=source,
            videos=[v.tagged(source) for v in videos],
            pagination=build_pagination(total, self.page_size, self.max_pages, page),
            error=error,
            using_cached_data=True,
        )

    def _fetch_remote_page(self, source: Source, page: int) -> AggregatedSource:
        result = self.client.get_video_page(source, page, self.page_size)
        videos = [v.tagged(source) for v in unique_videos(result.videos)]
        past_end = page > 1 and not videos

        try:
            with self.repo.transaction():
                self.repo.batch_upsert_videos(videos)
                self.repo.record_source_fetch(
                    source.id,
                    total_videos=result.total_count or None,
                    page_number=page,
                    page_video_ids=None if past_end else [v.id for v in videos],
                )
        except StoreError as e:
            logger.warning(f"Could not persist page {page} of {source.id}: {e}")

        if result.total_count:
            total = result.total_count
        elif page > 1 and source.total_videos is not None:
            total = source.total_videos
        else:
            total = len(videos)
        source.total_videos = total
        return AggregatedSource(
            source=source,
            videos=videos,
            pagination=build_pagination(total, self.page_size, self.max_pages, page),
            fetched_new_data=True,
        )
