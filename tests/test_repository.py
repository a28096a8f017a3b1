"""Tests for the Repository data access layer."""
from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

import pytest

from curated_catalog.database.models import (
    LocalFields,
    RemoteFields,
    Source,
    SourceKind,
    VideoRecord,
)
from curated_catalog.database.repository import format_timestamp
from curated_catalog.errors import ConfigurationError, StoreError


def _video(vid, source_id="chan", **kwargs):
    data = {"title": f"Video {vid}", "url": f"https://www.youtube.com/watch?v={vid}"}
    data.update(kwargs)
    return VideoRecord(id=vid, source_id=source_id, **data)


# ------------------------------------------------------------------
# Sources
# ------------------------------------------------------------------


class TestSources:
    def test_upsert_and_get(self, seeded_repo):
        source = seeded_repo.get_source("chan")
        assert source.kind == SourceKind.YOUTUBE_CHANNEL
        assert source.title == "Science Channel"
        assert source.remote.url.endswith("UCscience0000000000000")
        assert source.total_videos is None
        assert source.updated_at is None

    def test_get_missing(self, repo):
        assert repo.get_source("nope") is None

    def test_list_ordered_by_position(self, seeded_repo):
        assert [s.id for s in seeded_repo.list_sources()] == ["chan", "pl", "handle"]

    def test_list_filtered_by_kind(self, seeded_repo):
        playlists = seeded_repo.list_sources([SourceKind.YOUTUBE_PLAYLIST])
        assert [s.id for s in playlists] == ["pl"]

    def test_local_source_roundtrip(self, repo, tmp_path):
        repo.upsert_source(Source(
            id="lib", kind=SourceKind.LOCAL, title="Library",
            local=LocalFields(path=str(tmp_path), max_depth=3),
        ))
        source = repo.get_source("lib")
        assert source.local.path == str(tmp_path)
        assert source.local.max_depth == 3
        assert source.remote is None

    def test_invalid_max_depth_rejected(self, repo, tmp_path):
        with pytest.raises(ConfigurationError):
            repo.upsert_source(Source(
                id="lib", kind=SourceKind.LOCAL, title="Library",
                local=LocalFields(path=str(tmp_path), max_depth=0),
            ))
        assert repo.get_source("lib") is None

    def test_derived_source_rejected(self, repo):
        with pytest.raises(ConfigurationError):
            repo.upsert_source(Source.derived(SourceKind.FAVORITES))

    def test_remote_source_needs_url(self):
        with pytest.raises(ConfigurationError):
            Source(id="x", kind=SourceKind.YOUTUBE_CHANNEL, title="X")

    def test_retitle_keeps_cache_fields(self, seeded_repo):
        seeded_repo.update_source_metadata(
            "pl", total_videos=12, thumbnail="https://img/pl.jpg",
            updated_at="2024-01-01T00:00:00.000000Z",
        )
        seeded_repo.save_cached_page("pl", 1, ["v1"])

        seeded_repo.upsert_source(Source(
            id="pl", kind=SourceKind.YOUTUBE_PLAYLIST, title="Renamed",
            remote=RemoteFields(url="https://www.youtube.com/playlist?list=PLbedtime"),
            position=1,
        ))

        source = seeded_repo.get_source("pl")
        assert source.title == "Renamed"
        assert source.total_videos == 12
        assert source.thumbnail == "https://img/pl.jpg"
        assert source.updated_at == "2024-01-01T00:00:00.000000Z"

    def test_new_url_clears_cache(self, seeded_repo):
        seeded_repo.set_channel_id("pl", "PLbedtime")
        seeded_repo.update_source_metadata(
            "pl", total_videos=12, updated_at="2024-01-01T00:00:00.000000Z"
        )
        seeded_repo.batch_upsert_videos([_video("v1", source_id="pl")])
        seeded_repo.save_cached_page("pl", 1, ["v1"])

        seeded_repo.upsert_source(Source(
            id="pl", kind=SourceKind.YOUTUBE_PLAYLIST, title="Bedtime Playlist",
            remote=RemoteFields(url="https://www.youtube.com/playlist?list=PLother"),
        ))

        source = seeded_repo.get_source("pl")
        assert source.total_videos is None
        assert source.updated_at is None
        assert source.remote.channel_id is None
        assert seeded_repo.get_cached_page("pl", 1) == []

    def test_delete_cascades_to_videos(self, seeded_repo):
        seeded_repo.batch_upsert_videos([_video("v1")])
        assert seeded_repo.delete_source("chan") is True
        assert seeded_repo.get_videos_by_ids(["v1"]) == []
        assert seeded_repo.delete_source("chan") is False


class TestStaleSources:
    def test_never_refreshed_is_stale(self, seeded_repo):
        stale = seeded_repo.find_stale_sources("2024-01-01T00:00:00.000000Z")
        assert {s.id for s in stale} == {"chan", "pl", "handle"}

    def test_threshold_comparison(self, seeded_repo):
        old = format_timestamp(datetime(2024, 1, 1, 5, 59, 59, tzinfo=timezone.utc))
        fresh = format_timestamp(datetime(2024, 1, 1, 6, 0, 1, tzinfo=timezone.utc))
        seeded_repo.update_source_metadata("chan", updated_at=old)
        seeded_repo.update_source_metadata("pl", updated_at=fresh)
        seeded_repo.update_source_metadata("handle", updated_at=fresh)

        threshold = format_timestamp(datetime(2024, 1, 1, 6, 0, 0, tzinfo=timezone.utc))
        assert [s.id for s in seeded_repo.find_stale_sources(threshold)] == ["chan"]

    def test_local_sources_never_stale(self, repo, tmp_path):
        repo.upsert_source(Source(
            id="lib", kind=SourceKind.LOCAL, title="Library",
            local=LocalFields(path=str(tmp_path)),
        ))
        assert repo.find_stale_sources("9999-01-01T00:00:00.000000Z") == []


class TestRecordSourceFetch:
    def test_writes_metadata_channel_and_page(self, seeded_repo):
        seeded_repo.batch_upsert_videos([_video("a", source_id="handle"), _video("b", source_id="handle")])
        seeded_repo.record_source_fetch(
            "handle",
            updated_at="2024-02-01T00:00:00.000000Z",
            total_videos=40,
            thumbnail="https://img/h.jpg",
            channel_id="UCkids",
            page_video_ids=["b", "a"],
        )
        source = seeded_repo.get_source("handle")
        assert source.remote.channel_id == "UCkids"
        assert source.updated_at == "2024-02-01T00:00:00.000000Z"
        assert source.total_videos == 40
        assert [v.id for v in seeded_repo.get_cached_page("handle", 1)] == ["b", "a"]

    def test_failure_leaves_nothing_behind(self, seeded_repo, monkeypatch):
        def broken_save(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(seeded_repo, "save_cached_page", broken_save)
        with pytest.raises(StoreError):
            seeded_repo.record_source_fetch(
                "handle",
                updated_at="2024-02-01T00:00:00.000000Z",
                channel_id="UCkids",
                page_video_ids=["a"],
            )
        source = seeded_repo.get_source("handle")
        assert source.remote.channel_id is None
        assert source.updated_at is None


# ------------------------------------------------------------------
# Videos
# ------------------------------------------------------------------


class TestBatchUpsertVideos:
    def test_insert_counts_rows(self, seeded_repo):
        written = seeded_repo.batch_upsert_videos([_video("v1"), _video("v2")])
        assert written == 2

    def test_unchanged_rows_not_rewritten(self, seeded_repo):
        videos = [_video("v1", duration_seconds=30), _video("v2")]
        seeded_repo.batch_upsert_videos(videos)
        assert seeded_repo.batch_upsert_videos(videos) == 0

    def test_changed_row_counted(self, seeded_repo):
        seeded_repo.batch_upsert_videos([_video("v1"), _video("v2")])
        written = seeded_repo.batch_upsert_videos([_video("v1", title="New"), _video("v2")])
        assert written == 1
        assert seeded_repo.get_videos_by_ids(["v1"])[0].title == "New"

    def test_empty_values_do_not_overwrite(self, seeded_repo):
        seeded_repo.batch_upsert_videos([
            _video("v1", thumbnail="https://img/1.jpg", description="About", duration_seconds=90)
        ])
        seeded_repo.batch_upsert_videos([
            _video("v1", title="", thumbnail=None, description="", duration_seconds=0)
        ])
        video = seeded_repo.get_videos_by_ids(["v1"])[0]
        assert video.title == "Video v1"
        assert video.thumbnail == "https://img/1.jpg"
        assert video.description == "About"
        assert video.duration_seconds == 90

    def test_failure_rolls_back_batch(self, seeded_repo):
        with pytest.raises(StoreError):
            seeded_repo.batch_upsert_videos([_video("ok"), _video("orphan", source_id="missing")])
        assert seeded_repo.get_videos_by_ids(["ok"]) == []

    def test_empty_batch(self, repo):
        assert repo.batch_upsert_videos([]) == 0

    def test_get_by_ids_keeps_order(self, seeded_repo):
        seeded_repo.batch_upsert_videos([_video("a"), _video("b"), _video("c")])
        found = seeded_repo.get_videos_by_ids(["c", "missing", "a"])
        assert [v.id for v in found] == ["c", "a"]

    def test_get_by_source(self, seeded_repo):
        seeded_repo.batch_upsert_videos([
            _video("old", published_at="2023-01-01T00:00:00Z"),
            _video("new", published_at="2024-01-01T00:00:00Z"),
            _video("other", source_id="pl"),
        ])
        assert [v.id for v in seeded_repo.get_videos_by_source("chan")] == ["new", "old"]


class TestTransaction:
    def test_rollback_on_error(self, seeded_repo):
        with pytest.raises(RuntimeError):
            with seeded_repo.transaction():
                seeded_repo.update_source_metadata("chan", total_videos=5)
                raise RuntimeError("boom")
        assert seeded_repo.get_source("chan").total_videos is None

    def test_nested_joins_outer(self, seeded_repo):
        with pytest.raises(RuntimeError):
            with seeded_repo.transaction():
                seeded_repo.batch_upsert_videos([_video("v1")])
                seeded_repo.save_cached_page("chan", 1, ["v1"])
                raise RuntimeError("boom")
        assert seeded_repo.get_videos_by_ids(["v1"]) == []
        assert seeded_repo.get_cached_page("chan", 1) == []

    def test_commit(self, seeded_repo):
        with seeded_repo.transaction():
            seeded_repo.update_source_metadata("chan", total_videos=5)
        assert seeded_repo.get_source("chan").total_videos == 5


# ------------------------------------------------------------------
# Cached pages
# ------------------------------------------------------------------


class TestCachedPages:
    def test_page_order_preserved(self, seeded_repo):
        seeded_repo.batch_upsert_videos([_video("a"), _video("b"), _video("c")])
        seeded_repo.save_cached_page("chan", 2, ["c", "a", "b"])
        page = seeded_repo.get_cached_page("chan", 2)
        assert [v.id for v in page] == ["c", "a", "b"]
        assert all(v.source_id == "chan" for v in page)

    def test_save_replaces_page(self, seeded_repo):
        seeded_repo.batch_upsert_videos([_video("a"), _video("b")])
        seeded_repo.save_cached_page("chan", 1, ["a", "b"])
        seeded_repo.save_cached_page("chan", 1, ["b"])
        assert [v.id for v in seeded_repo.get_cached_page("chan", 1)] == ["b"]

    def test_batch_basic_info(self, seeded_repo):
        seeded_repo.batch_upsert_videos([_video("a"), _video("b")])
        seeded_repo.update_source_metadata("chan", total_videos=2, thumbnail="https://img/c.jpg")
        seeded_repo.save_cached_page("chan", 1, ["b", "a"])
        seeded_repo.update_source_metadata("pl", total_videos=0)

        entries = seeded_repo.batch_get_basic_info(["chan", "pl", "handle"])

        assert set(entries) == {"chan", "pl"}
        chan = entries["chan"]
        assert chan.using_cached_data is True
        assert chan.total_videos == 2
        assert chan.thumbnail == "https://img/c.jpg"
        assert [v.id for v in chan.videos] == ["b", "a"]
        assert entries["pl"].videos == []

    def test_reset_source_cache(self, seeded_repo):
        seeded_repo.batch_upsert_videos([_video("a")])
        seeded_repo.record_source_fetch(
            "handle", updated_at="2024-01-01T00:00:00.000000Z", total_videos=1,
            thumbnail="https://img/h.jpg", channel_id="UCkids", page_video_ids=["a"],
        )

        assert seeded_repo.reset_source_cache("handle") is True

        source = seeded_repo.get_source("handle")
        assert (source.total_videos, source.thumbnail, source.updated_at) == (None, None, None)
        assert source.remote.channel_id == "UCkids"
        assert seeded_repo.get_cached_page("handle", 1) == []
        assert seeded_repo.reset_source_cache("missing") is False

    def test_count_without_cached_page_is_miss(self, seeded_repo):
        seeded_repo.update_source_metadata("chan", total_videos=5, updated_at="2024-01-01")
        assert seeded_repo.batch_get_basic_info(["chan"]) == {}

    def test_batch_basic_info_empty(self, repo):
        assert repo.batch_get_basic_info([]) == {}


# ------------------------------------------------------------------
# Derived lists
# ------------------------------------------------------------------


class TestDerivedLists:
    def test_favorites_join_stored_metadata(self, seeded_repo):
        seeded_repo.batch_upsert_videos([_video("v1", duration_seconds=120)])
        seeded_repo.add_favorite("v1", "chan", "2024-01-02T00:00:00.000000Z")
        seeded_repo.add_favorite("gone", "chan", "2024-01-01T00:00:00.000000Z")

        favorites = seeded_repo.get_favorite_videos()

        assert [v.id for v in favorites] == ["v1", "gone"]
        assert favorites[0].title == "Video v1"
        assert favorites[0].duration_seconds == 120
        assert favorites[0].source_title == "Science Channel"
        assert favorites[1].title == "gone"

    def test_remove_favorite(self, seeded_repo):
        seeded_repo.add_favorite("v1", "chan")
        assert seeded_repo.remove_favorite("v1") is True
        assert seeded_repo.get_favorite_videos() == []

    def test_downloaded(self, repo):
        repo.add_downloaded_video({
            "video_id": "abc", "source_id": "chan", "title": "Saved",
            "file_path": "/media/saved.mp4", "duration": 61,
        })
        repo.add_downloaded_video({
            "source_id": "lib", "title": "Ripped", "file_path": "/media/ripped.mkv",
        })
        by_id = {v.id: v for v in repo.get_downloaded_videos()}
        assert by_id["abc"].path == "/media/saved.mp4"
        assert by_id["abc"].duration_seconds == 61
        assert "local:/media/ripped.mkv" in by_id

    def test_downloaded_upsert_on_path(self, repo):
        item = {"source_id": "lib", "title": "One", "file_path": "/media/a.mp4"}
        repo.add_downloaded_video(item)
        repo.add_downloaded_video({**item, "title": "Two"})
        videos = repo.get_downloaded_videos()
        assert len(videos) == 1
        assert videos[0].title == "Two"

    def test_only_approved_wishlist(self, repo):
        repo.upsert_wishlist_item({"video_id": "w1", "title": "Pending"})
        repo.upsert_wishlist_item({"video_id": "w2", "title": "Approved"}, status="approved")
        repo.upsert_wishlist_item({"video_id": "w3", "title": "Denied"}, status="denied")

        approved = repo.get_approved_wishlist_videos()

        assert [v.id for v in approved] == ["w2"]
        assert approved[0].url == "https://www.youtube.com/watch?v=w2"

    def test_wishlist_approval_later(self, repo):
        repo.upsert_wishlist_item({"video_id": "w1", "title": "Later"})
        assert repo.get_approved_wishlist_videos() == []
        repo.upsert_wishlist_item({"video_id": "w1", "title": "Later"}, status="approved")
        assert [v.id for v in repo.get_approved_wishlist_videos()] == ["w1"]
