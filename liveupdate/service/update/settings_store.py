"""
Update Settings Store
=====================

Persists live-update bookkeeping per bundle path prefix:
- The pending update (installed, not yet activated)
- Hashes of updates that failed and were rolled back
- Latest rollback info

Entries are namespaced as ``"{path_prefix}_{KEY}"`` in a single JSON file,
so several bundles can share one store.

Usage:
    from liveupdate.service.update import UpdateSettingsStore

    store = UpdateSettingsStore("/var/lib/liveupdate/settings.json")
    await store.save_pending_update("abc123", is_loading=False, path_prefix="/app")

    if await store.is_pending_update(None, "/app"):
        ...
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

logger = logging.getLogger(__name__)

PENDING_UPDATE_KEY = "PENDING_UPDATE"
PENDING_UPDATE_HASH_KEY = "hash"
PENDING_UPDATE_IS_LOADING_KEY = "isLoading"
FAILED_UPDATES_KEY = "FAILED_UPDATES"
PACKAGE_HASH_KEY = "packageHash"
LATEST_ROLLBACK_INFO_KEY = "LATEST_ROLLBACK_INFO"
LATEST_ROLLBACK_PACKAGE_HASH_KEY = "packageHash"
LATEST_ROLLBACK_TIME_KEY = "time"
LATEST_ROLLBACK_COUNT_KEY = "count"


class SettingsStoreError(Exception):
    """Raised when the settings file cannot be read or written."""

    pass


class MalformedSettingsError(SettingsStoreError):
    """Raised when a stored entry is missing required fields."""

    pass


class UpdateSettingsStore:
    """JSON-backed key/value store for live-update state."""

    def __init__(self, settings_file: str):
        self._settings_file = Path(settings_file)
        self._lock = asyncio.Lock()

        # Not persisted: only meaningful for the current process
        self._need_to_report_rollback: Dict[str, bool] = {}

    @property
    def settings_file(self) -> Path:
        return self._settings_file

    @staticmethod
    def _key(path_prefix: str, key: str) -> str:
        return f"{path_prefix}_{key}"

    async def _load(self) -> Dict[str, Any]:
        if not self._settings_file.exists():
            return {}

        try:
            async with aiofiles.open(self._settings_file, "r") as f:
                content = await f.read()
        except OSError as e:
            raise SettingsStoreError(f"Unable to read {self._settings_file}: {e}")

        if not content.strip():
            return {}

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise SettingsStoreError(
                f"Unable to parse settings file {self._settings_file}: {e}"
            )

        if not isinstance(data, dict):
            raise SettingsStoreError(
                f"Settings file {self._settings_file} does not hold an object"
            )
        return data

    async def _save(self, data: Dict[str, Any]) -> None:
        self._settings_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self._settings_file.with_suffix(".tmp")

        try:
            async with aiofiles.open(tmp_file, "w") as f:
                await f.write(json.dumps(data, indent=2, sort_keys=True))
            tmp_file.replace(self._settings_file)
        except OSError as e:
            raise SettingsStoreError(f"Unable to write {self._settings_file}: {e}")

    async def _get(self, key: str) -> Any:
        async with self._lock:
            data = await self._load()
        return data.get(key)

    async def _put(self, key: str, value: Any) -> None:
        async with self._lock:
            data = await self._load()
            data[key] = value
            await self._save(data)

    async def _remove(self, key: str) -> None:
        async with self._lock:
            data = await self._load()
            if key in data:
                del data[key]
                await self._save(data)

    # Pending update

    async def get_pending_update(self, path_prefix: str) -> Optional[Dict[str, Any]]:
        """Return the pending update for a prefix, or None."""
        pending = await self._get(self._key(path_prefix, PENDING_UPDATE_KEY))
        if pending is None:
            return None

        if not isinstance(pending, dict):
            logger.warning(
                f"Unable to parse pending update metadata {pending!r} "
                f"stored for prefix '{path_prefix}'"
            )
            return None
        return pending

    async def save_pending_update(
        self, package_hash: str, is_loading: bool, path_prefix: str
    ) -> None:
        await self._put(
            self._key(path_prefix, PENDING_UPDATE_KEY),
            {
                PENDING_UPDATE_HASH_KEY: package_hash,
                PENDING_UPDATE_IS_LOADING_KEY: is_loading,
            },
        )

    async def remove_pending_update(self, path_prefix: str) -> None:
        await self._remove(self._key(path_prefix, PENDING_UPDATE_KEY))

    async def is_pending_update(
        self, package_hash: Optional[str], path_prefix: str
    ) -> bool:
        """
        Check whether an update is waiting to be activated.

        Args:
            package_hash: Only match this hash; None matches any pending update
            path_prefix: Bundle namespace

        Returns:
            True if a pending update exists that is not already loading
        """
        pending = await self.get_pending_update(path_prefix)
        if pending is None:
            return False

        try:
            is_loading = pending[PENDING_UPDATE_IS_LOADING_KEY]
            pending_hash = pending[PENDING_UPDATE_HASH_KEY]
        except KeyError as e:
            raise MalformedSettingsError(
                f"Pending update for prefix '{path_prefix}' is missing {e}"
            )

        return not is_loading and (package_hash is None or pending_hash == package_hash)

    # Failed updates

    async def get_failed_updates(self, path_prefix: str) -> List[Dict[str, Any]]:
        key = self._key(path_prefix, FAILED_UPDATES_KEY)
        failed = await self._get(key)
        if failed is None:
            return []

        if not isinstance(failed, list):
            # Unrecognized format, replace with an empty list
            logger.warning(f"Resetting unrecognized failed updates for '{path_prefix}'")
            await self._put(key, [])
            return []
        return failed

    async def is_failed_hash(self, package_hash: Optional[str], path_prefix: str) -> bool:
        if package_hash is None:
            return False

        for failed_package in await self.get_failed_updates(path_prefix):
            try:
                if failed_package[PACKAGE_HASH_KEY] == package_hash:
                    return True
            except (KeyError, TypeError):
                raise MalformedSettingsError(
                    f"Failed update entry without {PACKAGE_HASH_KEY} "
                    f"for prefix '{path_prefix}'"
                )
        return False

    async def save_failed_update(
        self, failed_package: Dict[str, Any], path_prefix: str
    ) -> None:
        if PACKAGE_HASH_KEY not in failed_package:
            raise MalformedSettingsError(
                f"Unable to read {PACKAGE_HASH_KEY} from package"
            )

        if await self.is_failed_hash(failed_package[PACKAGE_HASH_KEY], path_prefix):
            return

        failed_updates = await self.get_failed_updates(path_prefix)
        failed_updates.append(failed_package)
        await self._put(self._key(path_prefix, FAILED_UPDATES_KEY), failed_updates)

    async def remove_failed_updates(self, path_prefix: str) -> None:
        await self._remove(self._key(path_prefix, FAILED_UPDATES_KEY))

    # Rollback info

    async def get_latest_rollback_info(self, path_prefix: str) -> Optional[Dict[str, Any]]:
        info = await self._get(self._key(path_prefix, LATEST_ROLLBACK_INFO_KEY))
        if info is not None and not isinstance(info, dict):
            logger.warning(
                f"Unable to parse latest rollback metadata {info!r} "
                f"stored for prefix '{path_prefix}'"
            )
            return None
        return info

    async def set_latest_rollback_info(self, package_hash: str, path_prefix: str) -> None:
        """Record a rollback, counting repeats of the same hash."""
        info = await self.get_latest_rollback_info(path_prefix) or {}

        count = 0
        if info.get(LATEST_ROLLBACK_PACKAGE_HASH_KEY) == package_hash:
            count = int(info.get(LATEST_ROLLBACK_COUNT_KEY, 0))

        await self._put(
            self._key(path_prefix, LATEST_ROLLBACK_INFO_KEY),
            {
                LATEST_ROLLBACK_PACKAGE_HASH_KEY: package_hash,
                LATEST_ROLLBACK_TIME_KEY: int(time.time() * 1000),
                LATEST_ROLLBACK_COUNT_KEY: count + 1,
            },
        )

    # Post-restart lifecycle

    def need_to_report_rollback(self, path_prefix: str) -> bool:
        return self._need_to_report_rollback.get(path_prefix, False)

    def set_need_to_report_rollback(self, value: bool, path_prefix: str) -> None:
        self._need_to_report_rollback[path_prefix] = value

    async def initialize_update_after_restart(self, path_prefix: str) -> Optional[str]:
        """
        Advance the pending update after a launch.

        A pending update still flagged as loading means the previous launch
        never confirmed it, so it is rolled back. Otherwise it is flagged as
        loading until notify_app_ready() confirms it.

        Returns:
            "rolled_back", "loading", or None when nothing is pending
        """
        self._need_to_report_rollback[path_prefix] = False

        pending = await self.get_pending_update(path_prefix)
        if pending is None:
            return None

        try:
            package_hash = pending[PENDING_UPDATE_HASH_KEY]
            is_loading = pending[PENDING_UPDATE_IS_LOADING_KEY]
        except KeyError as e:
            raise MalformedSettingsError(
                f"Unable to read pending update metadata for '{path_prefix}': missing {e}"
            )

        if is_loading:
            logger.warning(
                f"Update {package_hash} did not confirm launch, rolling back "
                f"(prefix '{path_prefix}')"
            )
            await self.save_failed_update({PACKAGE_HASH_KEY: package_hash}, path_prefix)
            await self.set_latest_rollback_info(package_hash, path_prefix)
            await self.remove_pending_update(path_prefix)
            self._need_to_report_rollback[path_prefix] = True
            return "rolled_back"

        logger.info(f"Loading pending update {package_hash} (prefix '{path_prefix}')")
        await self.save_pending_update(package_hash, True, path_prefix)
        return "loading"

    async def notify_app_ready(self, path_prefix: str) -> None:
        """Confirm the running update so it is not rolled back."""
        await self.remove_pending_update(path_prefix)

    async def clear_updates(self, path_prefix: str) -> None:
        await self.remove_pending_update(path_prefix)
        await self.remove_failed_updates(path_prefix)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "settings_file": str(self._settings_file),
            "exists": self._settings_file.exists(),
            "rollbacks_to_report": sorted(
                prefix for prefix, flag in self._need_to_report_rollback.items() if flag
            ),
        }


# Global singleton instance
_settings_store: Optional[UpdateSettingsStore] = None


def get_settings_store() -> UpdateSettingsStore:
    """Get or create the global settings store."""
    global _settings_store
    if _settings_store is None:
        from liveupdate.config import get_config

        _settings_store = UpdateSettingsStore(str(get_config().settings_file))
    return _settings_store


def reset_settings_store(settings_file: str) -> UpdateSettingsStore:
    """Reset the global settings store."""
    global _settings_store
    _settings_store = UpdateSettingsStore(settings_file)
    return _settings_store


# FastAPI integration
def create_update_routes():
    """Create FastAPI routes for pending-update bookkeeping."""
    from fastapi import APIRouter, HTTPException
    from pydantic import BaseModel

    router = APIRouter(prefix="/api/v1/liveupdate/update", tags=["update"])

    class PendingUpdateRequest(BaseModel):
        package_hash: str
        path_prefix: str = ""
        is_loading: bool = False

    class PrefixRequest(BaseModel):
        path_prefix: str = ""

    @router.get("/pending")
    async def get_pending(path_prefix: str = ""):
        """Get the pending update for a prefix."""
        store = get_settings_store()
        try:
            pending = await store.get_pending_update(path_prefix)
            is_pending = await store.is_pending_update(None, path_prefix)
        except SettingsStoreError as e:
            raise HTTPException(status_code=400, detail=str(e))

        if pending is None:
            raise HTTPException(status_code=404, detail="No pending update")

        return {
            "path_prefix": path_prefix,
            "pending_update": pending,
            "is_pending": is_pending,
            "need_to_report_rollback": store.need_to_report_rollback(path_prefix),
        }

    @router.post("/pending")
    async def save_pending(request: PendingUpdateRequest):
        """Record an installed update awaiting restart."""
        store = get_settings_store()
        try:
            await store.save_pending_update(
                request.package_hash, request.is_loading, request.path_prefix
            )
        except SettingsStoreError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"saved": True}

    @router.post("/ready")
    async def notify_ready(request: PrefixRequest):
        """Confirm the running update."""
        try:
            await get_settings_store().notify_app_ready(request.path_prefix)
        except SettingsStoreError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"confirmed": True}

    @router.post("/clear")
    async def clear_updates(request: PrefixRequest):
        """Forget pending and failed updates for a prefix."""
        try:
            await get_settings_store().clear_updates(request.path_prefix)
        except SettingsStoreError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"cleared": True}

    return router
