"""
Live Update Daemon - Restart Coordination for Live Updates

Architecture:
- Coordinator: decides when a restart may run, queues the rest
- Executor: relaunches the process once an update is pending
- Settings store: per-bundle pending/failed update bookkeeping

Key Properties:
- No restart during a disallowed (critical) section
- At most one restart attempt in flight
- Deferred requests replay in arrival order
"""

__version__ = "0.1.0"
