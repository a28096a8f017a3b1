from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional

from .identifiers import thumbnail_cache_key

logger = logging.getLogger(__name__)

THUMBNAIL_EXTENSIONS = (".webp", ".jpg", ".jpeg", ".png")


class ThumbnailResolver:
    """Finds an existing thumbnail for a local video file.

    Generation is not done here: when nothing is found, ``schedule`` (if given)
    is called with the video id and path and the video is listed without one.
    """

    def __init__(
        self,
        cache_dir: Optional[str] = None,
        schedule: Optional[Callable[[str, str], None]] = None,
    ):
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.schedule = schedule

    def resolve(self, video_id: str, video_path: str) -> Optional[str]:
        found = self.find_colocated(video_path)
        if found:
            return found

        cached = self.cached_path(video_id)
        if cached is not None and cached.exists():
            return cached.as_uri()

        if self.schedule is not None:
            try:
                self.schedule(video_id, video_path)
            except Exception as e:
                logger.warning(f"Thumbnail scheduling failed for {video_path}: {e}")
        return None

    def find_colocated(self, video_path: str) -> Optional[str]:
        """Image beside the video with the same base name, as a file:// URL."""
        base = Path(video_path).with_suffix("")
        for ext in THUMBNAIL_EXTENSIONS:
            candidate = base.with_name(base.name + ext)
            if candidate.is_file():
                return candidate.resolve().as_uri()
        return None

    def cached_path(self, video_id: str) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        return self.cache_dir / f"{thumbnail_cache_key(video_id, 'local')}.jpg"
