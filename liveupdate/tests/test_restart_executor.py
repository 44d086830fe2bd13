"""Tests for the process restart executor."""

import asyncio
import json

import pytest

from liveupdate.service.restart import ProcessRestartExecutor, RestartCoordinator
from liveupdate.service.update import UpdateSettingsStore


@pytest.fixture
def store(tmp_path):
    return UpdateSettingsStore(str(tmp_path / "settings.json"))


@pytest.fixture
def restarts():
    return []


@pytest.fixture
def executor(tmp_path, store, restarts):
    return ProcessRestartExecutor(
        settings_store=store,
        data_dir=str(tmp_path / "restart"),
        restart_delay=0,
        restart_fn=lambda: restarts.append("restart"),
    )


async def run_and_settle(coro):
    result = await coro
    for _ in range(3):
        await asyncio.sleep(0)
    return result


class TestExecuteRestart:
    def test_skips_when_no_update_pending(self, executor, restarts, tmp_path):
        restarted = asyncio.run(run_and_settle(executor.execute_restart(True, "/app")))

        assert restarted is False
        assert restarts == []
        assert not (tmp_path / "restart" / "restart_marker").exists()
        assert executor.restart_scheduled is False

    def test_restarts_when_update_pending(self, executor, store, restarts, tmp_path):
        async def scenario():
            await store.save_pending_update("abc123", False, "/app")
            return await run_and_settle(executor.execute_restart(True, "/app"))

        assert asyncio.run(scenario()) is True
        assert restarts == ["restart"]

        marker = json.loads((tmp_path / "restart" / "restart_marker").read_text())
        assert marker["path_prefix"] == "/app"
        assert marker["only_if_update_pending"] is True
        assert "pid" in marker

    def test_loading_update_is_not_pending(self, executor, store, restarts):
        async def scenario():
            await store.save_pending_update("abc123", True, "/app")
            return await run_and_settle(executor.execute_restart(True, "/app"))

        assert asyncio.run(scenario()) is False
        assert restarts == []

    def test_unconditional_restart_ignores_pending_state(self, executor, restarts):
        restarted = asyncio.run(run_and_settle(executor.execute_restart(False, "")))

        assert restarted is True
        assert restarts == ["restart"]

    def test_pre_restart_hooks_run_and_errors_are_contained(self, executor, restarts):
        ran = []

        def failing_hook():
            raise ValueError("hook failed")

        async def async_hook():
            ran.append("async")

        executor.add_pre_restart_hook(failing_hook)
        executor.add_pre_restart_hook(async_hook)
        executor.add_pre_restart_hook(lambda: ran.append("sync"))

        assert asyncio.run(run_and_settle(executor.execute_restart(False, "/app")))
        assert ran == ["async", "sync"]
        assert restarts == ["restart"]


class TestHistory:
    def test_history_is_persisted_and_reloaded(self, executor, store, tmp_path):
        asyncio.run(run_and_settle(executor.execute_restart(False, "/one")))
        asyncio.run(run_and_settle(executor.execute_restart(False, "/two")))

        history = executor.get_history()
        assert [entry["path_prefix"] for entry in history] == ["/two", "/one"]

        reloaded = ProcessRestartExecutor(
            settings_store=store,
            data_dir=str(tmp_path / "restart"),
            restart_fn=lambda: None,
        )
        asyncio.run(reloaded.load_history())
        assert reloaded.get_history(limit=1)[0]["path_prefix"] == "/two"

    def test_read_marker(self, executor):
        assert asyncio.run(executor.read_marker()) is None

        asyncio.run(run_and_settle(executor.execute_restart(False, "/app")))
        marker = asyncio.run(executor.read_marker())

        assert marker["path_prefix"] == "/app"

    def test_status(self, executor):
        status = executor.get_status()

        assert status["restart_scheduled"] is False
        assert status["recent_restarts"] == 0


def test_coordinator_with_process_executor(executor, store, restarts):
    """A restarting executor ends the cycle; later requests only queue."""
    coordinator = RestartCoordinator(executor)

    async def scenario():
        assert await coordinator.request_restart(True, "/app") is False
        assert coordinator.restart_in_progress is False

        await store.save_pending_update("abc123", False, "/app")
        assert await run_and_settle(coordinator.request_restart(True, "/app")) is True

        assert await coordinator.request_restart(False, "/app") is False

    asyncio.run(scenario())

    assert restarts == ["restart"]
    assert coordinator.restart_in_progress is True
    assert coordinator.pending_count == 1


class TestLaunch:
    def test_relaunch_initializes_prefix_from_marker(self, executor, store, tmp_path):
        async def scenario():
            await store.save_pending_update("h", False, "/b")
            assert await run_and_settle(executor.execute_restart(True, "/b"))
            return await executor.initialize_after_launch("")

        outcomes = asyncio.run(scenario())

        assert outcomes == {"": None, "/b": "loading"}
        # The relaunched update no longer counts as pending, so no restart loop
        assert asyncio.run(store.is_pending_update(None, "/b")) is False
        assert not (tmp_path / "restart" / "restart_marker").exists()

    def test_unconfirmed_relaunch_rolls_back_on_next_launch(self, executor, store):
        async def scenario():
            await store.save_pending_update("h", False, "/b")
            await run_and_settle(executor.execute_restart(True, "/b"))
            await executor.initialize_after_launch("")
            await run_and_settle(executor.execute_restart(False, "/b"))
            return await executor.initialize_after_launch("")

        assert asyncio.run(scenario()) == {"": None, "/b": "rolled_back"}
        assert asyncio.run(store.is_failed_hash("h", "/b")) is True

    def test_cold_start_without_marker_uses_configured_prefix(self, executor, store):
        async def scenario():
            await store.save_pending_update("h", False, "/app")
            return await executor.initialize_after_launch("/app")

        assert asyncio.run(scenario()) == {"/app": "loading"}

    def test_marker_is_consumed_once(self, executor):
        asyncio.run(run_and_settle(executor.execute_restart(False, "/app")))

        assert asyncio.run(executor.consume_marker())["path_prefix"] == "/app"
        assert asyncio.run(executor.consume_marker()) is None
