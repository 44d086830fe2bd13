"""Tests for pending-update bookkeeping."""

import asyncio
import json

import pytest

from liveupdate.service.update import (
    MalformedSettingsError,
    SettingsStoreError,
    UpdateSettingsStore,
)


@pytest.fixture
def settings_file(tmp_path):
    return tmp_path / "settings.json"


@pytest.fixture
def store(settings_file):
    return UpdateSettingsStore(str(settings_file))


def run(coro):
    return asyncio.run(coro)


class TestPendingUpdate:
    def test_nothing_pending_initially(self, store):
        assert run(store.get_pending_update("/app")) is None
        assert run(store.is_pending_update(None, "/app")) is False

    def test_pending_update_matches_hash(self, store):
        run(store.save_pending_update("abc123", False, "/app"))

        assert run(store.is_pending_update(None, "/app")) is True
        assert run(store.is_pending_update("abc123", "/app")) is True
        assert run(store.is_pending_update("other", "/app")) is False

    def test_loading_update_is_not_pending(self, store):
        run(store.save_pending_update("abc123", True, "/app"))

        assert run(store.is_pending_update(None, "/app")) is False
        assert run(store.get_pending_update("/app")) == {
            "hash": "abc123",
            "isLoading": True,
        }

    def test_prefixes_are_isolated(self, store, settings_file):
        run(store.save_pending_update("abc123", False, "/one"))

        assert run(store.is_pending_update(None, "/two")) is False
        assert "/one_PENDING_UPDATE" in json.loads(settings_file.read_text())

    def test_remove_pending_update(self, store):
        run(store.save_pending_update("abc123", False, "/app"))
        run(store.remove_pending_update("/app"))

        assert run(store.get_pending_update("/app")) is None

    def test_incomplete_pending_entry_raises(self, store, settings_file):
        settings_file.write_text(json.dumps({"/app_PENDING_UPDATE": {"hash": "x"}}))

        with pytest.raises(MalformedSettingsError):
            run(store.is_pending_update(None, "/app"))

    def test_unparseable_pending_entry_is_ignored(self, store, settings_file):
        settings_file.write_text(json.dumps({"/app_PENDING_UPDATE": "garbage"}))

        assert run(store.get_pending_update("/app")) is None


class TestFailedUpdates:
    def test_failed_updates_are_deduplicated(self, store):
        run(store.save_failed_update({"packageHash": "bad"}, "/app"))
        run(store.save_failed_update({"packageHash": "bad"}, "/app"))

        assert run(store.get_failed_updates("/app")) == [{"packageHash": "bad"}]
        assert run(store.is_failed_hash("bad", "/app")) is True
        assert run(store.is_failed_hash("good", "/app")) is False
        assert run(store.is_failed_hash(None, "/app")) is False

    def test_package_without_hash_raises(self, store):
        with pytest.raises(MalformedSettingsError):
            run(store.save_failed_update({"label": "v3"}, "/app"))

    def test_unrecognized_failed_list_is_reset(self, store, settings_file):
        settings_file.write_text(json.dumps({"/app_FAILED_UPDATES": "garbage"}))

        assert run(store.get_failed_updates("/app")) == []
        assert json.loads(settings_file.read_text())["/app_FAILED_UPDATES"] == []

    def test_clear_updates(self, store):
        run(store.save_pending_update("abc123", False, "/app"))
        run(store.save_failed_update({"packageHash": "bad"}, "/app"))

        run(store.clear_updates("/app"))

        assert run(store.get_pending_update("/app")) is None
        assert run(store.get_failed_updates("/app")) == []


class TestLifecycle:
    def test_initialize_without_pending_update(self, store):
        assert run(store.initialize_update_after_restart("/app")) is None
        assert store.need_to_report_rollback("/app") is False

    def test_first_launch_marks_update_loading(self, store):
        run(store.save_pending_update("abc123", False, "/app"))

        assert run(store.initialize_update_after_restart("/app")) == "loading"
        assert run(store.get_pending_update("/app"))["isLoading"] is True
        assert run(store.is_pending_update(None, "/app")) is False

    def test_unconfirmed_update_is_rolled_back(self, store):
        run(store.save_pending_update("abc123", False, "/app"))
        run(store.initialize_update_after_restart("/app"))

        assert run(store.initialize_update_after_restart("/app")) == "rolled_back"
        assert run(store.get_pending_update("/app")) is None
        assert run(store.is_failed_hash("abc123", "/app")) is True
        assert store.need_to_report_rollback("/app") is True

        info = run(store.get_latest_rollback_info("/app"))
        assert info["packageHash"] == "abc123"
        assert info["count"] == 1

    def test_confirmed_update_is_kept(self, store):
        run(store.save_pending_update("abc123", False, "/app"))
        run(store.initialize_update_after_restart("/app"))
        run(store.notify_app_ready("/app"))

        assert run(store.initialize_update_after_restart("/app")) is None
        assert run(store.is_failed_hash("abc123", "/app")) is False

    def test_rollback_count_tracks_same_hash(self, store):
        run(store.set_latest_rollback_info("abc123", "/app"))
        run(store.set_latest_rollback_info("abc123", "/app"))
        assert run(store.get_latest_rollback_info("/app"))["count"] == 2

        run(store.set_latest_rollback_info("def456", "/app"))
        assert run(store.get_latest_rollback_info("/app"))["count"] == 1


def test_corrupt_settings_file_raises(store, settings_file):
    settings_file.write_text("{not json")

    with pytest.raises(SettingsStoreError):
        run(store.get_pending_update("/app"))


def test_statistics(store):
    store.set_need_to_report_rollback(True, "/app")

    stats = store.get_statistics()

    assert stats["exists"] is False
    assert stats["rollbacks_to_report"] == ["/app"]
