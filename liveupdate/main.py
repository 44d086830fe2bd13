"""
Live Update Daemon - Main Entry Point

Runs the restart-coordination HTTP API.

Endpoints:
- GET  /health                                 - Health check
- GET  /api/v1/liveupdate/restart/status       - Coordinator state
- POST /api/v1/liveupdate/restart/allow        - Re-allow restarts
- POST /api/v1/liveupdate/restart/disallow     - Block restarts
- POST /api/v1/liveupdate/restart/clear        - Drop deferred requests
- POST /api/v1/liveupdate/restart/request      - Request a restart
- GET  /api/v1/liveupdate/restart/history      - Recent restarts
- GET  /api/v1/liveupdate/update/pending       - Pending update for a prefix
- POST /api/v1/liveupdate/update/pending       - Record a pending update
- POST /api/v1/liveupdate/update/ready         - Confirm the running update
- POST /api/v1/liveupdate/update/clear         - Forget updates for a prefix
"""

import logging

import uvicorn
from fastapi import FastAPI

from liveupdate.config import get_config, get_version
from liveupdate.service.restart import (
    create_restart_routes,
    get_restart_coordinator,
    get_restart_executor,
)
from liveupdate.service.update import (
    SettingsStoreError,
    create_update_routes,
)

config = get_config()

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("liveupdate.daemon")

app = FastAPI(
    title="Live Update Daemon",
    description="Restart coordination for live updates",
    version=get_version(),
)

app.include_router(create_restart_routes())
app.include_router(create_update_routes())


@app.get("/health")
async def health():
    """Health check."""
    coordinator = get_restart_coordinator()
    return {
        "status": "healthy",
        "version": get_version(),
        "restarts_allowed": coordinator.restarts_allowed,
        "restart_in_progress": coordinator.restart_in_progress,
    }


# === App Lifecycle Events ===


@app.on_event("startup")
async def on_startup():
    """Initialize components on startup."""
    logger.info("Live update daemon starting up...")

    executor = get_restart_executor()
    await executor.load_history()

    try:
        outcomes = await executor.initialize_after_launch(config.path_prefix)
        for prefix, outcome in outcomes.items():
            if outcome:
                logger.info(f"Pending update for '{prefix}': {outcome}")
    except SettingsStoreError as e:
        logger.warning(f"Could not initialize pending update: {e}")

    # Wire the coordinator to the executor
    get_restart_coordinator()


@app.on_event("shutdown")
async def on_shutdown():
    """Cleanup on shutdown."""
    coordinator = get_restart_coordinator()
    if coordinator.pending_count:
        logger.warning(
            f"Shutting down with {coordinator.pending_count} deferred restart request(s)"
        )
    logger.info("Live update daemon shutting down...")


# === Main Entry Point ===


def main():
    """Run the live update daemon."""
    logger.info(f"Starting Live Update Daemon v{get_version()}")
    logger.info(f"   Listening on http://{config.host}:{config.port}")

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        access_log=False,
    )


if __name__ == "__main__":
    main()
