"""
Live Update Daemon - Configuration

Environment Variables:
  LIVEUPDATE_HOST           - Interface the HTTP API binds to
  LIVEUPDATE_PORT           - HTTP API port
  LIVEUPDATE_DATA_DIR       - Directory for settings, restart marker and history
  LIVEUPDATE_PATH_PREFIX    - Bundle path prefix initialized at startup
  LIVEUPDATE_RESTART_DELAY  - Seconds between accepting a restart and exec
  LIVEUPDATE_LOG_LEVEL      - Logging level (INFO, DEBUG, ...)
"""

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765
DEFAULT_DATA_DIR = "/var/lib/liveupdate"


@dataclass
class DaemonConfig:
    """Daemon configuration."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    data_dir: str = DEFAULT_DATA_DIR
    path_prefix: str = ""
    restart_delay: float = 0.5
    log_level: str = "INFO"

    @property
    def settings_file(self) -> Path:
        return Path(self.data_dir) / "settings.json"

    @property
    def restart_dir(self) -> Path:
        return Path(self.data_dir) / "restart"

    @classmethod
    def from_env(cls) -> "DaemonConfig":
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("LIVEUPDATE_HOST", DEFAULT_HOST),
            port=int(os.getenv("LIVEUPDATE_PORT", str(DEFAULT_PORT))),
            data_dir=os.getenv("LIVEUPDATE_DATA_DIR", DEFAULT_DATA_DIR),
            path_prefix=os.getenv("LIVEUPDATE_PATH_PREFIX", ""),
            restart_delay=float(os.getenv("LIVEUPDATE_RESTART_DELAY", "0.5")),
            log_level=os.getenv("LIVEUPDATE_LOG_LEVEL", "INFO").upper(),
        )


def get_version() -> str:
    """Get daemon version from VERSION file or fallback."""
    version_file = Path(__file__).parent.parent / "VERSION"
    if version_file.exists():
        return version_file.read_text().strip()

    from liveupdate import __version__

    return __version__


def get_config() -> DaemonConfig:
    """Get the daemon configuration."""
    return DaemonConfig.from_env()
