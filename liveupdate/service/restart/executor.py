"""
Process Restart Executor.

Tears down and relaunches the daemon so an installed update takes effect.
Invoked only by the RestartCoordinator.
"""

import asyncio
import json
import logging
import os
import signal
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiofiles

from liveupdate.service.update.settings_store import (
    UpdateSettingsStore,
    get_settings_store,
)

logger = logging.getLogger(__name__)


@dataclass
class RestartRecord:
    """A restart handed to the operating system."""

    path_prefix: str
    only_if_update_pending: bool
    pid: int = field(default_factory=os.getpid)
    requested_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


def exec_self() -> None:
    """Replace the current process with a fresh copy of itself."""
    logger.info("Performing restart...")

    # Option 1: Exec new process (preserves PID)
    if sys.platform != "win32":
        try:
            os.execv(sys.executable, [sys.executable] + sys.argv)
        except OSError as e:
            logger.error(f"Exec failed: {e}")

    # Option 2: Signal ourselves so systemd/launchd relaunches us
    os.kill(os.getpid(), signal.SIGTERM)


class ProcessRestartExecutor:
    """
    Restarts the process when asked by the coordinator.

    Features:
    - Skips the restart when no update is pending (if requested)
    - Pre-restart hooks
    - Restart marker for the next launch
    - Restart history
    """

    def __init__(
        self,
        settings_store: UpdateSettingsStore,
        data_dir: str = "/var/lib/liveupdate/restart",
        restart_delay: float = 0.0,
        restart_fn: Callable[[], None] = exec_self,
        max_history: int = 100,
    ):
        self.data_dir = Path(data_dir)
        self.restart_delay = restart_delay

        self._settings_store = settings_store
        self._restart_fn = restart_fn
        self._max_history = max_history
        self._history: List[RestartRecord] = []
        self._pre_restart_hooks: List[Callable] = []
        self._restart_handle: Optional[asyncio.TimerHandle] = None

        logger.info("ProcessRestartExecutor initialized")

    @property
    def restart_scheduled(self) -> bool:
        return self._restart_handle is not None

    async def execute_restart(
        self, only_if_update_pending: bool, path_prefix: str
    ) -> bool:
        """
        Restart the process.

        Returns True once the restart is scheduled, False if it was skipped.
        """
        if only_if_update_pending and not await self._settings_store.is_pending_update(
            None, path_prefix
        ):
            logger.info(f"No pending update for '{path_prefix}', skipping restart")
            return False

        await self._run_hooks()

        record = RestartRecord(
            path_prefix=path_prefix,
            only_if_update_pending=only_if_update_pending,
        )
        self.data_dir.mkdir(parents=True, exist_ok=True)
        await self._write_marker(record)

        self._history.append(record)
        self._history = self._history[-self._max_history :]
        await self._save_history()

        loop = asyncio.get_running_loop()
        self._restart_handle = loop.call_later(self.restart_delay, self._restart_fn)

        logger.info(f"Restart scheduled in {self.restart_delay}s (prefix '{path_prefix}')")
        return True

    async def _run_hooks(self):
        for hook in self._pre_restart_hooks:
            try:
                if asyncio.iscoroutinefunction(hook):
                    await hook()
                else:
                    hook()
            except Exception as e:
                logger.error(f"Pre-restart hook error: {e}")

    async def _write_marker(self, record: RestartRecord):
        marker_file = self.data_dir / "restart_marker"
        async with aiofiles.open(marker_file, "w") as f:
            await f.write(json.dumps(asdict(record)))

    async def read_marker(self) -> Optional[Dict[str, Any]]:
        """Read the marker left by the previous restart, if any."""
        marker_file = self.data_dir / "restart_marker"
        if not marker_file.exists():
            return None

        try:
            async with aiofiles.open(marker_file, "r") as f:
                return json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error reading restart marker: {e}")
            return None

    async def consume_marker(self) -> Optional[Dict[str, Any]]:
        """Read and delete the marker so it only describes one relaunch."""
        marker = await self.read_marker()
        (self.data_dir / "restart_marker").unlink(missing_ok=True)
        return marker

    async def initialize_after_launch(
        self, path_prefix: str
    ) -> Dict[str, Optional[str]]:
        """
        Advance pending updates after the process starts.

        Covers the configured prefix and, after a relaunch, the prefix the
        restart was requested for.

        Returns:
            Outcome of initialize_update_after_restart() per prefix
        """
        prefixes = [path_prefix]

        marker = await self.consume_marker()
        if marker:
            logger.info(
                f"Relaunched after restart requested at {marker.get('requested_at')}"
            )
            marker_prefix = marker.get("path_prefix")
            if isinstance(marker_prefix, str) and marker_prefix not in prefixes:
                prefixes.append(marker_prefix)

        outcomes = {}
        for prefix in prefixes:
            outcomes[prefix] = await self._settings_store.initialize_update_after_restart(
                prefix
            )
        return outcomes

    # Hooks

    def add_pre_restart_hook(self, hook: Callable):
        """Add hook to run before restart."""
        self._pre_restart_hooks.append(hook)

    # History

    def get_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        return [asdict(r) for r in reversed(self._history[-limit:])]

    async def load_history(self):
        """Load restart history."""
        history_file = self.data_dir / "restart_history.json"

        if history_file.exists():
            try:
                async with aiofiles.open(history_file, "r") as f:
                    content = await f.read()

                data = json.loads(content)

                for entry in data.get("history", []):
                    self._history.append(RestartRecord(**entry))

                self._history = self._history[-self._max_history :]

            except Exception as e:
                logger.error(f"Error loading restart history: {e}")

    async def _save_history(self):
        history_file = self.data_dir / "restart_history.json"

        try:
            data = {
                "history": [asdict(r) for r in self._history],
                "saved_at": datetime.now(timezone.utc).isoformat(),
            }

            async with aiofiles.open(history_file, "w") as f:
                await f.write(json.dumps(data, indent=2))

        except Exception as e:
            logger.error(f"Error saving restart history: {e}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "data_dir": str(self.data_dir),
            "restart_delay": self.restart_delay,
            "restart_scheduled": self.restart_scheduled,
            "recent_restarts": len(self._history),
        }


# Singleton
_executor: Optional[ProcessRestartExecutor] = None


def get_restart_executor() -> ProcessRestartExecutor:
    global _executor
    if _executor is None:
        from liveupdate.config import get_config

        config = get_config()
        _executor = ProcessRestartExecutor(
            settings_store=get_settings_store(),
            data_dir=str(config.restart_dir),
            restart_delay=config.restart_delay,
        )
    return _executor


def reset_restart_executor(**kwargs) -> ProcessRestartExecutor:
    """Replace the global executor; kwargs go to ProcessRestartExecutor."""
    global _executor
    kwargs.setdefault("settings_store", get_settings_store())
    _executor = ProcessRestartExecutor(**kwargs)
    return _executor
