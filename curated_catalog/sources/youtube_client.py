from __future__ import annotations

import re
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

import requests

from ..database.models import Source, SourceKind, VideoRecord
from ..errors import (
    CatalogError,
    ConfigurationError,
    NotFoundError,
    QuotaExceededError,
    TransientError,
)
from ..utils.rate_limiter import RateLimiter
from ..utils.retry import retry_with_backoff
from .identifiers import extract_channel_ref, extract_playlist_id, is_handle

logger = logging.getLogger(__name__)

API_BASE = "https://www.googleapis.com/youtube/v3"
WATCH_URL = "https://www.youtube.com/watch?v={}"

# The API refuses maxResults above 50
MAX_PAGE_SIZE = 50

QUOTA_REASONS = {"quotaExceeded", "dailyLimitExceeded"}
RATE_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}

_DURATION_RE = re.compile(
    r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?)?$"
)


@dataclass
class BasicInfo:
    title: str
    thumbnail: Optional[str]
    total_count: int
    channel_id: Optional[str] = None


@dataclass
class VideoPage:
    videos: list[VideoRecord] = field(default_factory=list)
    total_count: int = 0
    page: int = 1


def parse_duration(value: Optional[str]) -> int:
    """ISO-8601 duration (PT1H2M3S) to whole seconds; 0 when unparseable."""
    if not value:
        return 0
    match = _DURATION_RE.match(value)
    if not match:
        return 0
    days, hours, minutes, seconds = match.groups()
    total = (
        int(days or 0) * 86400
        + int(hours or 0) * 3600
        + int(minutes or 0) * 60
        + float(seconds or 0)
    )
    return int(total)


def best_thumbnail(thumbnails: Optional[dict]) -> Optional[str]:
    thumbnails = thumbnails or {}
    for size in ("high", "medium", "default"):
        url = (thumbnails.get(size) or {}).get("url")
        if url:
            return url
    return None


def _error_details(resp: requests.Response) -> tuple[str, str]:
    try:
        error = resp.json().get("error", {})
    except ValueError:
        return "", resp.text[:200]
    errors = error.get("errors") or [{}]
    return errors[0].get("reason", ""), error.get("message", "")


def map_http_error(resp: requests.Response) -> CatalogError:
    """Translate a failed API response into the catalog error taxonomy."""
    status = resp.status_code
    reason, message = _error_details(resp)
    text = f"YouTube API {status} {reason}: {message}".strip()

    if status == 429 or reason in RATE_REASONS:
        retry_after = resp.headers.get("Retry-After")
        try:
            retry_after = float(retry_after) if retry_after else None
        except ValueError:
            retry_after = None
        return TransientError(text, status_code=status, retry_after=retry_after)
    if status >= 500:
        return TransientError(text, status_code=status)
    if status == 403 and reason in QUOTA_REASONS:
        return QuotaExceededError(text, status_code=status)
    if status == 404:
        return NotFoundError(text)
    if status in (400, 401, 403):
        return ConfigurationError(text)
    return CatalogError(text)


class YouTubeClient:
    """YouTube Data API v3 client for channel and playlist sources.

    Every request carries ``timeout`` and goes through the shared rate
    limiter. Transient failures are retried with backoff; quota errors are not.
    """

    def __init__(
        self,
        api_key: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
        max_retries: int = 2,
        retry_base_delay: float = 1.0,
    ):
        if not api_key:
            raise ConfigurationError("YouTube API key is not configured")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

        self._lock = threading.Lock()
        # (playlist id, page size) -> {page number: pageToken}
        self._page_tokens: dict[tuple[str, int], dict[int, Optional[str]]] = {}
        self._uploads: dict[str, str] = {}

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _request(self, endpoint: str, params: dict) -> dict:
        if self.rate_limiter is not None:
            self.rate_limiter.wait_if_needed()
        url = f"{API_BASE}/{endpoint}"
        try:
            resp = self.session.get(
                url, params={**params, "key": self.api_key}, timeout=self.timeout
            )
        except requests.Timeout as e:
            raise TransientError(f"Timed out after {self.timeout}s calling {endpoint}") from e
        except requests.ConnectionError as e:
            raise TransientError(f"Connection error calling {endpoint}: {e}") from e
        except requests.RequestException as e:
            raise TransientError(f"Request to {endpoint} failed: {e}") from e

        if resp.status_code >= 400:
            raise map_http_error(resp)
        return resp.json()

    def _get(self, endpoint: str, params: dict) -> dict:
        call = retry_with_backoff(self.max_retries, self.retry_base_delay)(self._request)
        return call(endpoint, params)

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    def resolve_handle_to_id(self, handle: str) -> Optional[str]:
        """Channel id for an @handle, or None when no channel has it."""
        handle = handle if handle.startswith("@") else f"@{handle}"
        try:
            data = self._get("channels", {"part": "id", "forHandle": handle})
        except NotFoundError:
            return None
        items = data.get("items") or []
        return items[0]["id"] if items else None

    def channel_id_for(self, source: Source) -> str:
        """Stable channel id for a channel source, resolving a handle if needed."""
        if source.remote.channel_id and not is_handle(source.remote.channel_id):
            return source.remote.channel_id
        ref = extract_channel_ref(source.remote.url)
        if not is_handle(ref):
            return ref
        channel_id = self.resolve_handle_to_id(ref)
        if not channel_id:
            raise NotFoundError(f"No channel found for handle {ref}")
        logger.info(f"Resolved {ref} to channel {channel_id}")
        return channel_id

    def _playlist_id_for(self, source: Source) -> str:
        if source.kind == SourceKind.YOUTUBE_PLAYLIST:
            return source.remote.channel_id or extract_playlist_id(source.remote.url)

        channel_id = self.channel_id_for(source)
        with self._lock:
            uploads = self._uploads.get(channel_id)
        if uploads:
            return uploads

        data = self._get("channels", {"part": "contentDetails", "id": channel_id})
        items = data.get("items") or []
        if not items:
            raise NotFoundError(f"Channel {channel_id} not found")
        uploads = items[0]["contentDetails"]["relatedPlaylists"]["uploads"]
        with self._lock:
            self._uploads[channel_id] = uploads
        return uploads

    # ------------------------------------------------------------------
    # Source metadata
    # ------------------------------------------------------------------

    def get_basic_info(self, source: Source) -> BasicInfo:
        """Title, thumbnail and total video count for a remote source."""
        if source.kind == SourceKind.YOUTUBE_CHANNEL:
            channel_id = self.channel_id_for(source)
            data = self._get(
                "channels",
                {"part": "snippet,statistics,contentDetails", "id": channel_id},
            )
            items = data.get("items") or []
            if not items:
                raise NotFoundError(f"Channel {channel_id} not found")
            item = items[0]
            uploads = (
                item.get("contentDetails", {}).get("relatedPlaylists", {}).get("uploads")
            )
            if uploads:
                with self._lock:
                    self._uploads[channel_id] = uploads
            snippet = item.get("snippet", {})
            return BasicInfo(
                title=snippet.get("title", ""),
                thumbnail=best_thumbnail(snippet.get("thumbnails")),
                total_count=int(item.get("statistics", {}).get("videoCount", 0)),
                channel_id=channel_id,
            )

        if source.kind == SourceKind.YOUTUBE_PLAYLIST:
            playlist_id = self._playlist_id_for(source)
            data = self._get(
                "playlists", {"part": "snippet,contentDetails", "id": playlist_id}
            )
            items = data.get("items") or []
            if not items:
                raise NotFoundError(f"Playlist {playlist_id} not found")
            item = items[0]
            snippet = item.get("snippet", {})
            return BasicInfo(
                title=snippet.get("title", ""),
                thumbnail=best_thumbnail(snippet.get("thumbnails")),
                total_count=int(item.get("contentDetails", {}).get("itemCount", 0)),
                channel_id=playlist_id,
            )

        raise ConfigurationError(f"Source {source.id} is not a YouTube source")

    # ------------------------------------------------------------------
    # Video pages
    # ------------------------------------------------------------------

    def _token_for_page(
        self, playlist_id: str, page: int, page_size: int
    ) -> tuple[bool, Optional[str]]:
        """(exists, pageToken) for ``page``, walking forward from the last known token."""
        key = (playlist_id, page_size)
        with self._lock:
            tokens = self._page_tokens.setdefault(key, {1: None})
            if page in tokens:
                return True, tokens[page]
            known = max(p for p in tokens if p < page)
            token = tokens[known]

        for p in range(known, page):
            data = self._get(
                "playlistItems",
                {
                    "part": "id",
                    "playlistId": playlist_id,
                    "maxResults": page_size,
                    **({"pageToken": token} if token else {}),
                },
            )
            token = data.get("nextPageToken")
            if not token:
                return False, None
            with self._lock:
                self._page_tokens[key][p + 1] = token
        return True, token

    def get_video_page(
        self, source: Source, page: int = 1, page_size: int = MAX_PAGE_SIZE
    ) -> VideoPage:
        """One page of a source's videos, newest first for channels."""
        page = max(1, page)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        playlist_id = self._playlist_id_for(source)

        exists, token = self._token_for_page(playlist_id, page, page_size)
        if not exists:
            return VideoPage(videos=[], total_count=0, page=page)

        params = {
            "part": "snippet,contentDetails",
            "playlistId": playlist_id,
            "maxResults": page_size,
        }
        if token:
            params["pageToken"] = token
        data = self._get("playlistItems", params)

        next_token = data.get("nextPageToken")
        if next_token:
            with self._lock:
                self._page_tokens[(playlist_id, page_size)][page + 1] = next_token

        videos = []
        for item in data.get("items", []):
            video_id = item.get("contentDetails", {}).get("videoId")
            if not video_id:
                continue
            snippet = item.get("snippet", {})
            videos.append(
                VideoRecord(
                    id=video_id,
                    title=snippet.get("title", ""),
                    source_id=source.id,
                    thumbnail=best_thumbnail(snippet.get("thumbnails")),
                    url=WATCH_URL.format(video_id),
                    published_at=item.get("contentDetails", {}).get("videoPublishedAt")
                    or snippet.get("publishedAt"),
                    description=snippet.get("description"),
                )
            )

        durations = self.get_durations([v.id for v in videos])
        for v in videos:
            v.duration_seconds = durations.get(v.id, 0)

        total = int(data.get("pageInfo", {}).get("totalResults", len(videos)))
        logger.debug(f"Fetched page {page} of {source.id}: {len(videos)} videos")
        return VideoPage(videos=videos, total_count=total, page=page)

    def get_durations(self, video_ids: list[str]) -> dict[str, int]:
        """Durations in seconds for up to 50 videos per request."""
        durations: dict[str, int] = {}
        for i in range(0, len(video_ids), MAX_PAGE_SIZE):
            chunk = video_ids[i : i + MAX_PAGE_SIZE]
            data = self._get("videos", {"part": "contentDetails", "id": ",".join(chunk)})
            for item in data.get("items", []):
                durations[item["id"]] = parse_duration(
                    item.get("contentDetails", {}).get("duration")
                )
        return durations
