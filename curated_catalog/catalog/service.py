from __future__ import annotations

import logging
import threading
from typing import Optional

from ..config import get_catalog_config, get_refresh_config, get_youtube_config
from ..database.models import (
    AggregatedCatalog,
    AggregatedSource,
    RefreshRecord,
    RefreshReport,
    Source,
    VideoRecord,
)
from ..database.repository import Repository
from ..sources.folder_scanner import FolderContents, FolderScanner
from ..sources.thumbnails import ThumbnailResolver
from ..sources.youtube_client import YouTubeClient
from ..utils.rate_limiter import RateLimiter
from .aggregator import CatalogAggregator
from .refresh import RefreshScheduler, RefreshTask

logger = logging.getLogger(__name__)


class CatalogService:
    """Operations the host process calls. Owns one Repository; not thread-safe."""

    def __init__(
        self,
        repo: Repository,
        scanner: FolderScanner,
        aggregator: CatalogAggregator,
        scheduler: RefreshScheduler,
        api_key: Optional[str] = None,
        default_max_depth: int = 2,
    ):
        self.repo = repo
        self.scanner = scanner
        self.aggregator = aggregator
        self.scheduler = scheduler
        self.api_key = api_key
        self.default_max_depth = default_max_depth

    def close(self):
        self.repo.close()

    # Sources

    def list_sources(self) -> list[Source]:
        return self.repo.list_sources()

    def is_stale(self, source: Source) -> bool:
        if not source.kind.is_remote:
            return False
        record = RefreshRecord(source.id, source.updated_at)
        return record.is_stale(self.scheduler.stale_threshold())

    def add_source(self, source: Source) -> Source:
        saved = self.repo.upsert_source(source)
        logger.info(f"Saved source {saved.id} ({saved.kind.value})")
        return saved

    def remove_source(self, source_id: str) -> bool:
        return self.repo.delete_source(source_id)

    def reset_source_cache(self, source_id: str) -> bool:
        return self.repo.reset_source_cache(source_id)

    # Catalog

    def load_all_sources(
        self,
        api_available: Optional[bool] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> AggregatedCatalog:
        if api_available is None:
            api_available = self.api_key is not None
        return self.aggregator.load_all(api_available, cancel_event)

    def load_source_videos(self, source_id: str, page: int = 1) -> AggregatedSource:
        return self.aggregator.load_one(source_id, page)

    def refresh_stale_sources(
        self,
        credential: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RefreshReport:
        return self.scheduler.refresh_stale(credential or self.api_key, cancel_event)

    def start_background_refresh(self, credential: Optional[str] = None) -> RefreshTask:
        return self.scheduler.start(credential or self.api_key)

    # Local folders

    def _depth(self, max_depth: Optional[int]) -> int:
        return self.default_max_depth if max_depth is None else max_depth

    def scan_local_folder(
        self, path: str, max_depth: Optional[int] = None
    ) -> list[VideoRecord]:
        return self.scanner.scan(path, self._depth(max_depth))

    def count_videos_in_folder(
        self, path: str, max_depth: Optional[int] = None, current_depth: int = 1
    ) -> int:
        return self.scanner.count_videos(
            path, self._depth(max_depth), current_depth
        )

    def count_all_videos_in_folder(self, path: str) -> int:
        return self.scanner.count_recursively(path)

    def folder_contents(
        self, path: str, max_depth: Optional[int] = None, current_depth: int = 1
    ) -> FolderContents:
        return self.scanner.contents_at(
            path, self._depth(max_depth), current_depth
        )


def build_service(config: dict) -> CatalogService:
    """Wire the catalog engine from a loaded config dict."""
    yt = get_youtube_config(config)
    cat = get_catalog_config(config)
    rc = get_refresh_config(config)

    rate_limiter = RateLimiter(yt["requests_per_minute"])

    def make_client(api_key: str) -> YouTubeClient:
        return YouTubeClient(
            api_key,
            timeout=yt["timeout_seconds"],
            rate_limiter=rate_limiter,
            max_retries=yt["max_retries"],
            retry_base_delay=yt["retry_base_delay"],
        )

    client = make_client(yt["api_key"]) if yt["api_key"] else None
    repo = Repository(config["db_path"])
    scanner = FolderScanner(ThumbnailResolver(cat["thumbnail_cache_dir"]))
    aggregator = CatalogAggregator(
        repo,
        scanner,
        client,
        page_size=cat["page_size"],
        max_pages=cat["max_pages"],
    )
    scheduler = RefreshScheduler(
        config["db_path"],
        make_client,
        ttl_hours=rc["ttl_hours"],
        max_concurrency=rc["max_concurrency"],
        start_delay_seconds=rc["start_delay_seconds"],
    )
    return CatalogService(
        repo,
        scanner,
        aggregator,
        scheduler,
        api_key=yt["api_key"],
        default_max_depth=cat["default_max_depth"],
    )
