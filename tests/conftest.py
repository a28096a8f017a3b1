"""Shared test fixtures for catalog tests."""
from __future__ import annotations

import threading
from pathlib import Path

import pytest

from curated_catalog.database.connection import init_database
from curated_catalog.database.models import (
    LocalFields,
    RemoteFields,
    Source,
    SourceKind,
    VideoRecord,
)
from curated_catalog.database.repository import Repository
from curated_catalog.errors import TransientError
from curated_catalog.sources.youtube_client import BasicInfo, VideoPage


@pytest.fixture
def tmp_db(tmp_path):
    """Create a temporary SQLite database with full schema + migrations."""
    db_path = str(tmp_path / "test.db")
    conn = init_database(db_path)
    conn.close()
    return db_path


@pytest.fixture
def repo(tmp_db):
    """Create a Repository backed by the temp database."""
    r = Repository(tmp_db)
    yield r
    r.close()


@pytest.fixture
def seeded_repo(repo):
    """Repository with a channel, a playlist and a handle-only channel, in that order."""
    repo.upsert_source(Source(
        id="chan", kind=SourceKind.YOUTUBE_CHANNEL, title="Science Channel",
        remote=RemoteFields(url="https://www.youtube.com/channel/UCscience0000000000000"),
        position=0,
    ))
    repo.upsert_source(Source(
        id="pl", kind=SourceKind.YOUTUBE_PLAYLIST, title="Bedtime Playlist",
        remote=RemoteFields(url="https://www.youtube.com/playlist?list=PLbedtime"),
        position=1,
    ))
    repo.upsert_source(Source(
        id="handle", kind=SourceKind.YOUTUBE_CHANNEL, title="Kids Fun",
        remote=RemoteFields(url="https://www.youtube.com/@kidsfun"),
        position=2,
    ))
    return repo


@pytest.fixture
def make_tree(tmp_path):
    """Build a media tree under tmp_path from relative file paths."""

    def _make(files, root="lib") -> Path:
        base = tmp_path / root
        base.mkdir(parents=True, exist_ok=True)
        for rel in files:
            p = base / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(b"")
        return base

    return _make


@pytest.fixture
def local_source(make_tree):
    """A stored-shape local source over the /lib example library."""
    root = make_tree([
        "ShowA/S1/e1.mp4",
        "ShowA/S1/e1.converted/e1.mp4",
        "ShowB/b.mp4",
    ])
    return Source(
        id="lib", kind=SourceKind.LOCAL, title="Library",
        local=LocalFields(path=str(root), max_depth=2), position=3,
    )


class FakeClient:
    """Stands in for YouTubeClient. Records calls, never touches the network."""

    def __init__(self, total=3, fail_ids=(), handles=None):
        self.total = total
        self.fail_ids = set(fail_ids)
        self.handles = handles or {}
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def count(self, name) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    def resolve_handle_to_id(self, handle):
        self._record("resolve", handle)
        return self.handles.get(handle.lstrip("@"))

    def get_basic_info(self, source):
        self._record("basic", source.id)
        if source.id in self.fail_ids:
            raise TransientError(f"{source.id} unreachable")
        return BasicInfo(
            title=f"{source.title} (remote)",
            thumbnail=f"https://img.example/{source.id}.jpg",
            total_count=self.total,
            channel_id=source.remote.channel_id,
        )

    def get_video_page(self, source, page=1, page_size=50):
        self._record("page", source.id, page)
        if source.id in self.fail_ids:
            raise TransientError(f"{source.id} unreachable")
        videos = [
            VideoRecord(
                id=f"{source.id}-p{page}-{i}",
                title=f"{source.title} video {i}",
                source_id=source.id,
                thumbnail=f"https://img.example/{source.id}/{i}.jpg",
                duration_seconds=60 * (i + 1),
                url=f"https://www.youtube.com/watch?v={source.id}-p{page}-{i}",
                published_at=f"2024-01-{i + 1:02d}T00:00:00Z",
            )
            for i in range(min(self.total, page_size))
        ]
        return VideoPage(videos=videos, total_count=self.total, page=page)


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def make_client():
    """Factory for FakeClient with custom totals, failures or handles."""
    return FakeClient
