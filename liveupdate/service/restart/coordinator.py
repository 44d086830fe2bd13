"""
Restart Coordinator
===================

Arbitrates when a restart request is handed to the restart executor so a
live update can take effect without restarting at an unsafe moment.

Rules:
- A request issued while restarts are allowed and none is in flight invokes
  the executor immediately.
- A request issued while a restart is in flight, or while restarts are
  disallowed, is queued (FIFO) instead.
- When the executor reports that no restart happened, the head of the queue
  is replayed. When it reports that the process is going down, the queue is
  abandoned.
- Re-allowing restarts replays the head of the queue.

All state lives on the event loop thread. The executor await is the only
suspension point, so the coordinator needs no locks.

Usage:
    from liveupdate.service.restart import RestartCoordinator

    coordinator = RestartCoordinator(executor)

    coordinator.disallow()                            # entering a transaction
    await coordinator.request_restart(True, "/app")   # queued
    task = coordinator.allow()                        # replays the request
    await task
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Optional,
    Protocol,
    Set,
    Union,
)

logger = logging.getLogger(__name__)


class RestartExecutor(Protocol):
    """Anything that can tear down and relaunch the application."""

    async def execute_restart(
        self, only_if_update_pending: bool, path_prefix: str
    ) -> bool:
        """Return True if the process is restarting, False if nothing happened."""
        ...


# A bare coroutine function works as an executor too
ExecutorCallable = Callable[[bool, str], Awaitable[bool]]


@dataclass(frozen=True)
class RestartIntent:
    """A deferred restart request."""

    only_if_update_pending: bool = False


@dataclass
class CoordinatorState:
    """Mutable state owned by one coordinator."""

    restarts_allowed: bool = True
    restart_in_progress: bool = False
    pending_queue: Deque[RestartIntent] = field(default_factory=deque)
    last_path_prefix: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "restarts_allowed": self.restarts_allowed,
            "restart_in_progress": self.restart_in_progress,
            "pending": [
                intent.only_if_update_pending for intent in self.pending_queue
            ],
            "last_path_prefix": self.last_path_prefix,
        }


class RestartCoordinator:
    """
    Serializes and coalesces restart requests.

    Features:
    - Allow/disallow gate for critical sections
    - At most one executor call in flight
    - FIFO replay of deferred requests
    - Cancellation of deferred requests
    """

    def __init__(self, executor: Union[RestartExecutor, ExecutorCallable]):
        """
        Initialize the coordinator.

        Args:
            executor: Object with an ``execute_restart`` coroutine method, or
                a coroutine function with the same signature
        """
        if hasattr(executor, "execute_restart"):
            self._execute: ExecutorCallable = executor.execute_restart
        else:
            self._execute = executor

        self._state = CoordinatorState()
        self._drain_tasks: Set[asyncio.Task] = set()

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def restarts_allowed(self) -> bool:
        return self._state.restarts_allowed

    @property
    def restart_in_progress(self) -> bool:
        return self._state.restart_in_progress

    @property
    def pending_count(self) -> int:
        return len(self._state.pending_queue)

    def allow(self) -> Optional["asyncio.Task[bool]"]:
        """
        Re-allow restarts and replay the head of the queue, if any.

        The replayed request runs its decision synchronously. If it reaches
        the executor, the remainder runs as a task on the running loop and
        that task is returned; otherwise None is returned. Without a running
        loop the replay runs to completion before allow() returns.
        """
        logger.info("Re-allowing restarts")
        self._state.restarts_allowed = True

        if not self._state.pending_queue:
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        logger.info("Executing pending restart")
        intent = self._state.pending_queue.popleft()
        path_prefix = self._state.last_path_prefix

        if not self._admit(intent.only_if_update_pending, path_prefix):
            return None

        if loop is None:
            try:
                asyncio.run(self._run(intent.only_if_update_pending, path_prefix))
            except Exception as e:
                logger.error(f"Pending restart failed: {e}")
            return None

        task = loop.create_task(
            self._run(intent.only_if_update_pending, path_prefix)
        )
        self._drain_tasks.add(task)
        task.add_done_callback(self._on_drain_done)
        return task

    def disallow(self) -> None:
        """Block restarts until allow() is called."""
        logger.info("Disallowing restarts")
        self._state.restarts_allowed = False

    def clear_pending(self) -> None:
        """Drop every deferred request."""
        self._state.pending_queue.clear()

    async def request_restart(
        self, only_if_update_pending: bool = False, path_prefix: str = ""
    ) -> bool:
        """
        Request a restart.

        Args:
            only_if_update_pending: Only restart when an update is waiting
            path_prefix: Bundle namespace handed to the executor

        Returns:
            True if the process is restarting, False if the request was
            queued or no restart took place.
        """
        if not self._admit(only_if_update_pending, path_prefix):
            return False
        return await self._run(only_if_update_pending, path_prefix)

    def _admit(self, only_if_update_pending: bool, path_prefix: str) -> bool:
        """Queue the request or claim the in-progress slot for it."""
        self._state.last_path_prefix = path_prefix

        if self._state.restart_in_progress:
            logger.info(
                "Restart request queued until the current restart is completed"
            )
            self._state.pending_queue.append(RestartIntent(only_if_update_pending))
            return False

        if not self._state.restarts_allowed:
            logger.info("Restart request queued until restarts are re-allowed")
            self._state.pending_queue.append(RestartIntent(only_if_update_pending))
            return False

        self._state.restart_in_progress = True
        return True

    async def _run(self, only_if_update_pending: bool, path_prefix: str) -> bool:
        """Invoke the executor, then drain the queue while nothing restarts."""
        while True:
            restarted = False
            try:
                restarted = await self._execute(only_if_update_pending, path_prefix)
            finally:
                if not restarted:
                    self._state.restart_in_progress = False

            if restarted:
                # Remaining queued requests are moot once the process goes down
                logger.info("Restarting app")
                return True

            if not self._state.pending_queue:
                return False

            # Replays use this call's prefix, not the one the intent was queued with
            intent = self._state.pending_queue.popleft()
            only_if_update_pending = intent.only_if_update_pending
            if not self._admit(only_if_update_pending, path_prefix):
                return False

    def _on_drain_done(self, task: "asyncio.Task[bool]") -> None:
        self._drain_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Pending restart failed: {error}")

    def get_status(self) -> Dict[str, Any]:
        """Get coordinator status."""
        status = self._state.to_dict()
        status["pending_count"] = len(self._state.pending_queue)
        status["drain_tasks"] = len(self._drain_tasks)
        return status


# Singleton
_coordinator: Optional[RestartCoordinator] = None


def get_restart_coordinator() -> RestartCoordinator:
    """Get or create the process-wide coordinator."""
    global _coordinator
    if _coordinator is None:
        from .executor import get_restart_executor

        _coordinator = RestartCoordinator(get_restart_executor())
    return _coordinator


def reset_restart_coordinator(
    executor: Optional[Union[RestartExecutor, ExecutorCallable]] = None,
) -> RestartCoordinator:
    """Replace the process-wide coordinator with a fresh one."""
    global _coordinator
    if executor is None:
        from .executor import get_restart_executor

        executor = get_restart_executor()
    _coordinator = RestartCoordinator(executor)
    return _coordinator


def create_restart_routes():
    """Create FastAPI routes for restart coordination."""
    from fastapi import APIRouter
    from pydantic import BaseModel

    router = APIRouter(prefix="/api/v1/liveupdate/restart", tags=["restart"])

    class RestartRequest(BaseModel):
        only_if_update_pending: bool = False
        path_prefix: str = ""

    @router.get("/status")
    async def get_status():
        """Get coordinator status."""
        return get_restart_coordinator().get_status()

    @router.post("/allow")
    async def allow_restarts():
        """Re-allow restarts, replaying a deferred request if one is queued."""
        coordinator = get_restart_coordinator()
        task = coordinator.allow()
        return {"allowed": True, "replaying": task is not None}

    @router.post("/disallow")
    async def disallow_restarts():
        """Block restarts."""
        get_restart_coordinator().disallow()
        return {"allowed": False}

    @router.post("/clear")
    async def clear_pending():
        """Drop deferred restart requests."""
        coordinator = get_restart_coordinator()
        dropped = coordinator.pending_count
        coordinator.clear_pending()
        return {"cleared": dropped}

    @router.post("/request")
    async def request_restart(request: RestartRequest):
        """Request a restart."""
        coordinator = get_restart_coordinator()
        restarting = await coordinator.request_restart(
            request.only_if_update_pending, request.path_prefix
        )
        return {"restarting": restarting, "status": coordinator.get_status()}

    @router.get("/history")
    async def get_history(limit: int = 10):
        """Get recent restarts."""
        from .executor import get_restart_executor

        return {"restarts": get_restart_executor().get_history(limit)}

    return router
