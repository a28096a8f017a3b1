from __future__ import annotations

"""Background refresh of remote source metadata.

A source is stale when it was never refreshed or its ``updated_at`` is older
than the TTL. Each pass re-fetches title, count and thumbnail for stale
sources only; a source that fails simply stays stale until the next pass.
"""

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..config import MAX_REFRESH_CONCURRENCY
from ..database.models import RefreshReport, RemoteFields, Source, SourceError, SourceKind
from ..database.repository import Repository, format_timestamp, utc_now
from ..errors import NotFoundError, OperationCancelled, StoreError
from ..sources.identifiers import extract_handle, is_handle
from ..sources.youtube_client import BasicInfo, YouTubeClient

logger = logging.getLogger(__name__)


@dataclass
class _FetchResult:
    source: Source
    info: Optional[BasicInfo] = None
    resolved_id: Optional[str] = None
    error: Optional[Exception] = None


class RefreshTask:
    """Handle for a refresh pass running on a background thread."""

    def __init__(self):
        self.cancel_event = threading.Event()
        self.thread: Optional[threading.Thread] = None
        self.report: Optional[RefreshReport] = None
        self.error: Optional[Exception] = None

    def cancel(self):
        self.cancel_event.set()

    def join(self, timeout: Optional[float] = None) -> Optional[RefreshReport]:
        if self.thread is not None:
            self.thread.join(timeout)
        return self.report

    @property
    def done(self) -> bool:
        return self.thread is not None and not self.thread.is_alive()


class RefreshScheduler:
    """Refreshes stale remote sources with bounded concurrency.

    Opens its own Repository per pass so it can run on any thread. Remote
    calls go to a worker pool; every store write happens on the pass's thread.
    """

    def __init__(
        self,
        db_path: str,
        client_factory: Callable[[str], YouTubeClient],
        ttl_hours: float = 6,
        max_concurrency: int = MAX_REFRESH_CONCURRENCY,
        start_delay_seconds: float = 2.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db_path = db_path
        self.client_factory = client_factory
        self.ttl = timedelta(hours=ttl_hours)
        self.max_concurrency = max(1, min(max_concurrency, MAX_REFRESH_CONCURRENCY))
        self.start_delay_seconds = start_delay_seconds
        self.clock = clock

    def stale_threshold(self) -> str:
        return format_timestamp(self.clock() - self.ttl)

    def refresh_stale(
        self, api_key: Optional[str], cancel_event: Optional[threading.Event] = None
    ) -> RefreshReport:
        report = RefreshReport()
        if not api_key:
            logger.info("No YouTube API key configured, skipping source refresh")
            report.skipped_reason = "no_api_key"
            return report

        client = self.client_factory(api_key)
        repo = Repository(self.db_path)
        try:
            try:
                stale = repo.find_stale_sources(self.stale_threshold())
            except (StoreError, sqlite3.Error) as e:
                logger.error(f"Store unavailable, skipping source refresh: {e}")
                report.skipped_reason = "store_unavailable"
                return report
            if not stale:
                logger.info("All remote sources are fresh")
                return report

            logger.info(f"Refreshing {len(stale)} stale sources")
            workers = min(self.max_concurrency, len(stale))
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="refresh"
            ) as pool:
                futures = [
                    pool.submit(self._fetch, client, source, cancel_event)
                    for source in stale
                ]
                for future in as_completed(futures):
                    self._record(repo, future.result(), report)
        finally:
            repo.close()

        logger.info(
            f"Refresh done: {len(report.refreshed)} refreshed, "
            f"{len(report.resolved)} handles resolved, {len(report.failed)} failed"
            + (" (cancelled)" if report.cancelled else "")
        )
        return report

    def _fetch(
        self,
        client: YouTubeClient,
        source: Source,
        cancel_event: Optional[threading.Event],
    ) -> _FetchResult:
        """Worker-thread half of a refresh: remote calls only, no store access."""
        result = _FetchResult(source=source)
        try:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled(f"Refresh of {source.id} cancelled")

            if source.kind == SourceKind.YOUTUBE_CHANNEL:
                handle = extract_handle(source.remote.url)
                known = source.remote.channel_id
                if handle and (not known or is_handle(known)):
                    channel_id = client.resolve_handle_to_id(handle)
                    if not channel_id:
                        raise NotFoundError(f"No channel found for handle @{handle}")
                    result.resolved_id = channel_id
                    remote = RemoteFields(url=source.remote.url, channel_id=channel_id)
                    source = replace(source, remote=remote)

            result.info = client.get_basic_info(source)
        except Exception as e:
            result.error = e
        return result

    def _record(self, repo: Repository, result: _FetchResult, report: RefreshReport):
        source_id = result.source.id

        if isinstance(result.error, OperationCancelled):
            report.cancelled = True
            if result.resolved_id:
                self._save_resolution(repo, source_id, result.resolved_id, report)
            return

        if result.error is not None:
            error = SourceError.from_exception(source_id, result.error)
            logger.warning(f"Refresh of {source_id} failed ({error.category}): {result.error}")
            report.failed.append(error)
            if result.resolved_id:
                self._save_resolution(repo, source_id, result.resolved_id, report)
            return

        try:
            repo.record_source_fetch(
                source_id,
                updated_at=format_timestamp(self.clock()),
                total_videos=result.info.total_count,
                thumbnail=result.info.thumbnail,
                channel_id=result.resolved_id,
            )
        except StoreError as e:
            logger.warning(f"Refresh of {source_id} not saved: {e}")
            report.failed.append(SourceError.from_exception(source_id, e))
            return

        report.refreshed.append(source_id)
        if result.resolved_id:
            report.resolved.append(source_id)
        logger.debug(f"Refreshed {source_id}: {result.info.total_count} videos")

    def _save_resolution(
        self, repo: Repository, source_id: str, channel_id: str, report: RefreshReport
    ):
        """Keep a resolved handle even when the metadata fetch after it failed."""
        try:
            repo.set_channel_id(source_id, channel_id)
        except sqlite3.Error as e:
            logger.warning(f"Could not save channel id for {source_id}: {e}")
            return
        report.resolved.append(source_id)

    def start(self, api_key: Optional[str]) -> RefreshTask:
        """Run :meth:`refresh_stale` on a daemon thread after the start delay."""
        task = RefreshTask()

        def run():
            if task.cancel_event.wait(self.start_delay_seconds):
                logger.info("Background refresh cancelled before it started")
                task.report = RefreshReport(skipped_reason="cancelled", cancelled=True)
                return
            try:
                task.report = self.refresh_stale(api_key, task.cancel_event)
            except Exception as e:
                task.error = e
                logger.exception(f"Background refresh failed: {e}")

        task.thread = threading.Thread(target=run, name="catalog-refresh", daemon=True)
        task.thread.start()
        return task
