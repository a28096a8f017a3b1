from __future__ import annotations

"""Helpers for turning configured URLs and file paths into stable ids."""

import re
from typing import Optional

from ..errors import ConfigurationError

_HANDLE_RE = re.compile(r"/@([^/?]+)")
_CHANNEL_RE = re.compile(r"/channel/([\w-]+)")
_PLAYLIST_RE = re.compile(r"[?&]list=([\w-]+)")
_UNSAFE_CHARS_RE = re.compile(r'[/\\:*?"<>|]')

LOCAL_ID_PREFIX = "local:"


def extract_channel_ref(url: str) -> str:
    """Return the channel id for /channel/ URLs, or "@handle" for /@ URLs."""
    match = _HANDLE_RE.search(url)
    if match:
        return f"@{match.group(1)}"
    match = _CHANNEL_RE.search(url)
    if match:
        return match.group(1)
    raise ConfigurationError(f"Unsupported channel URL: {url}")


def extract_handle(url: str) -> Optional[str]:
    match = _HANDLE_RE.search(url)
    return match.group(1) if match else None


def is_handle(ref: str) -> bool:
    return ref.startswith("@")


def extract_playlist_id(url: str) -> str:
    match = _PLAYLIST_RE.search(url)
    if match:
        return match.group(1)
    raise ConfigurationError(f"Invalid playlist URL: {url}")


def create_local_video_id(file_path: str) -> str:
    return f"{LOCAL_ID_PREFIX}{file_path}"


def thumbnail_cache_key(video_id: str, kind: str = "local") -> str:
    """File-name-safe key for a generated thumbnail, without extension."""
    return f"thumbnail_{kind}_{_UNSAFE_CHARS_RE.sub('_', video_id)}"
