"""
Restart coordination module for live updates.

Decides when a restart may run and performs it.
"""

from .coordinator import (
    RestartCoordinator,
    RestartExecutor,
    RestartIntent,
    CoordinatorState,
    get_restart_coordinator,
    reset_restart_coordinator,
    create_restart_routes,
)
from .executor import (
    ProcessRestartExecutor,
    RestartRecord,
    get_restart_executor,
    reset_restart_executor,
)

__all__ = [
    "RestartCoordinator",
    "RestartExecutor",
    "RestartIntent",
    "CoordinatorState",
    "get_restart_coordinator",
    "reset_restart_coordinator",
    "create_restart_routes",
    "ProcessRestartExecutor",
    "RestartRecord",
    "get_restart_executor",
    "reset_restart_executor",
]
