from __future__ import annotations

import os
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..database.models import VideoRecord
from ..errors import ConfigurationError, OperationCancelled
from .duplicates import filter_duplicates
from .identifiers import create_local_video_id
from .thumbnails import ThumbnailResolver

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {".mp4", ".mkv", ".webm", ".avi", ".mov", ".m4v"}


@dataclass
class FolderNode:
    name: str
    path: str
    depth: int


@dataclass
class FolderContents:
    folders: list[FolderNode] = field(default_factory=list)
    videos: list[VideoRecord] = field(default_factory=list)
    depth: int = 1


def is_video_file(path: Path) -> bool:
    return path.suffix.lower() in VIDEO_EXTENSIONS


def paginate(videos: list, page: int, page_size: int) -> list:
    """1-based page slice of a listing. Out-of-range pages are empty."""
    if page < 1 or page_size < 1:
        return []
    start = (page - 1) * page_size
    return videos[start : start + page_size]


def _resolve_root(path: str) -> Path:
    p = Path(path)
    if not p.is_absolute():
        p = Path.cwd() / p
    return p


def _check_depth(max_depth: int, current_depth: int = 1):
    if not isinstance(max_depth, int) or max_depth < 1:
        raise ConfigurationError(f"max_depth must be an integer >= 1, got {max_depth!r}")
    if not isinstance(current_depth, int) or not 1 <= current_depth <= max_depth:
        raise ConfigurationError(
            f"current_depth must be between 1 and {max_depth}, got {current_depth!r}"
        )


class _Walk:
    """State for one traversal: emitted records and directories already entered."""

    def __init__(
        self,
        scanner: FolderScanner,
        root: Path,
        source_id: str,
        cancel_event,
        with_thumbnails: bool = True,
    ):
        self.scanner = scanner
        self.with_thumbnails = with_thumbnails
        self.root = root
        self.source_id = source_id
        self.cancel_event = cancel_event
        self.visited: set[str] = set()
        self.videos: list[VideoRecord] = []

    def list_dir(self, directory: Path) -> list[Path]:
        """Sorted entries of ``directory``, or [] when unreadable or a revisit."""
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise OperationCancelled(f"Scan cancelled at {directory}")

        real = os.path.realpath(directory)
        if real in self.visited:
            logger.debug(f"Skipping already visited directory {directory}")
            return []
        self.visited.add(real)

        try:
            return sorted(directory.iterdir(), key=lambda p: p.name)
        except OSError as e:
            logger.warning(f"Cannot read directory {directory}: {e}")
            return []

    def emit(self, file_path: Path, depth: int, flattened: bool):
        self.videos.append(
            self.scanner.make_record(
                file_path,
                depth,
                flattened,
                self.root,
                self.source_id,
                with_thumbnail=self.with_thumbnails,
            )
        )

    def walk(self, directory: Path, depth: int, max_depth: int):
        for entry in self.list_dir(directory):
            if entry.is_dir():
                if depth < max_depth:
                    self.walk(entry, depth + 1, max_depth)
                elif depth == max_depth:
                    self.flatten(entry, max_depth)
            elif entry.is_file() and is_video_file(entry):
                self.emit(entry, depth, flattened=False)

    def flatten(self, directory: Path, max_depth: int):
        for entry in self.list_dir(directory):
            if entry.is_dir():
                self.flatten(entry, max_depth)
            elif entry.is_file() and is_video_file(entry):
                self.emit(entry, max_depth, flattened=True)


class FolderScanner:
    """Depth-limited media discovery for local library folders.

    Directories below ``max_depth`` are navigable folders. A directory found
    at ``max_depth`` is flattened: every video anywhere beneath it is reported
    at ``max_depth`` with ``flattened=True``. All listings and counts pass
    through :func:`filter_duplicates`, so counts always equal list lengths.
    """

    def __init__(self, thumbnails: Optional[ThumbnailResolver] = None):
        self.thumbnails = thumbnails or ThumbnailResolver()

    def make_record(
        self,
        file_path: Path,
        depth: int,
        flattened: bool,
        root: Path,
        source_id: str,
        with_thumbnail: bool = True,
    ) -> VideoRecord:
        path_str = str(file_path)
        video_id = create_local_video_id(path_str)
        thumbnail = self.thumbnails.resolve(video_id, path_str) if with_thumbnail else None
        return VideoRecord(
            id=video_id,
            title=file_path.stem,
            source_id=source_id,
            thumbnail=thumbnail,
            duration_seconds=0,
            url=path_str,
            path=path_str,
            depth=depth,
            flattened=flattened,
            relative_path=os.path.relpath(path_str, root),
        )

    def scan(
        self,
        root_path: str,
        max_depth: int,
        source_id: str = "",
        cancel_event: Optional[threading.Event] = None,
    ) -> list[VideoRecord]:
        """Every video under ``root_path``, flattened below ``max_depth``."""
        _check_depth(max_depth)
        root = _resolve_root(root_path)
        if not root.is_dir():
            logger.warning(f"Local folder does not exist: {root}")
            return []

        walk = _Walk(self, root, source_id, cancel_event)
        walk.walk(root, 1, max_depth)
        videos = filter_duplicates(walk.videos)
        logger.debug(
            f"Scanned {root}: {len(walk.videos)} files, {len(videos)} after filtering"
        )
        return videos

    def contents_at(
        self,
        path: str,
        max_depth: int,
        current_depth: int = 1,
        source_id: str = "",
        cancel_event: Optional[threading.Event] = None,
    ) -> FolderContents:
        """One navigation level: sub-folders while above ``max_depth``, videos here.

        At ``current_depth == max_depth`` sub-folders are not listed; their
        videos are flattened into this level instead.
        """
        _check_depth(max_depth, current_depth)
        directory = _resolve_root(path)
        contents = FolderContents(depth=current_depth)
        if not directory.is_dir():
            logger.warning(f"Local folder does not exist: {directory}")
            return contents

        walk = _Walk(self, directory, source_id, cancel_event)
        for entry in walk.list_dir(directory):
            if entry.is_dir():
                if current_depth < max_depth:
                    contents.folders.append(
                        FolderNode(name=entry.name, path=str(entry), depth=current_depth + 1)
                    )
                else:
                    walk.flatten(entry, max_depth)
            elif entry.is_file() and is_video_file(entry):
                walk.emit(entry, current_depth, flattened=False)

        contents.videos = filter_duplicates(walk.videos)
        return contents

    def count_videos(
        self,
        path: str,
        max_depth: int,
        current_depth: int = 1,
        cancel_event: Optional[threading.Event] = None,
    ) -> int:
        """Number of videos a scan of ``path`` from ``current_depth`` would list."""
        _check_depth(max_depth, current_depth)
        directory = _resolve_root(path)
        if not directory.is_dir():
            logger.warning(f"Local folder does not exist: {directory}")
            return 0

        walk = _Walk(self, directory, "", cancel_event, with_thumbnails=False)
        walk.walk(directory, current_depth, max_depth)
        return len(filter_duplicates(walk.videos))

    def count_recursively(
        self, path: str, cancel_event: Optional[threading.Event] = None
    ) -> int:
        """Every video at any depth below ``path``, after duplicate filtering."""
        directory = _resolve_root(path)
        if not directory.is_dir():
            return 0
        walk = _Walk(self, directory, "", cancel_event, with_thumbnails=False)
        walk.flatten(directory, 1)
        return len(filter_duplicates(walk.videos))
