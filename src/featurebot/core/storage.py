"""
Persistent store implementations.

The runtime core only relies on the ``IStore`` load/save contract. Two
implementations ship with the package: an in-memory store used by tests and
embedded setups, and a JSON file store that writes one file per key.
"""

import asyncio
import copy
import json
import os
import re
import threading
from pathlib import Path

from featurebot.core.interfaces import IStore, JSONValue
from featurebot.utils.errors import StorageError
from featurebot.utils.logging import setup_logging

logger = setup_logging(__name__)

_KEY_PART = re.compile(r"^[A-Za-z0-9_.-]+$")


class MemoryStore(IStore):
    """In-memory store. Values are deep-copied on the way in and out."""

    def __init__(self, initial: dict[str, JSONValue] | None = None):
        self._data: dict[str, JSONValue] = copy.deepcopy(initial) if initial else {}
        self._lock = threading.Lock()

    async def load(self, key: str) -> JSONValue:
        with self._lock:
            return copy.deepcopy(self._data.get(key))

    async def save(self, key: str, value: JSONValue) -> None:
        # Reject values the file store could not persist either
        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for key {key} is not JSON serializable: {e}") from e

        with self._lock:
            self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data.keys())


class JsonFileStore(IStore):
    """Stores each key as a JSON file below a base directory.

    Writes go to a temporary file that is atomically moved into place; the
    previous version is kept as ``.bak`` and used when the main file is
    unreadable.
    """

    def __init__(self, base_dir: Path, create_backup: bool = True):
        """Initialize the file store.

        Args:
            base_dir: Directory holding the JSON files
            create_backup: Keep the previous version of each file as .bak
        """
        self.base_dir = Path(base_dir)
        self.create_backup = create_backup
        self._lock = threading.Lock()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"JSON file store initialized at {self.base_dir}")

    async def load(self, key: str) -> JSONValue:
        return await asyncio.to_thread(self._load_sync, key)

    async def save(self, key: str, value: JSONValue) -> None:
        await asyncio.to_thread(self._save_sync, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_sync, key)

    def _path_for(self, key: str) -> Path:
        parts = key.split("/")
        if not key or not all(_KEY_PART.match(part) and part not in (".", "..") for part in parts):
            raise StorageError(f"Invalid storage key: {key!r}")
        return self.base_dir.joinpath(*parts[:-1]) / f"{parts[-1]}.json"

    def _load_sync(self, key: str) -> JSONValue:
        path = self._path_for(key)
        with self._lock:
            if not path.exists():
                logger.debug(f"No stored value for key {key}")
                return None

            try:
                content = path.read_text(encoding="utf-8")
                if not content.strip():
                    return None
                return json.loads(content)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to load {path}: {e}")
                backup = path.with_suffix(".json.bak")
                if backup.exists():
                    try:
                        data = json.loads(backup.read_text(encoding="utf-8"))
                        logger.info(f"Recovered key {key} from backup")
                        return data
                    except (OSError, json.JSONDecodeError) as backup_error:
                        logger.error(f"Backup for key {key} is unreadable too: {backup_error}")
                raise StorageError(f"Could not load key {key}", context={"path": str(path)}) from e

    def _save_sync(self, key: str, value: JSONValue) -> None:
        path = self._path_for(key)
        try:
            serialized = json.dumps(value, indent=2, default=str)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for key {key} is not JSON serializable: {e}") from e

        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                if self.create_backup and path.exists():
                    backup = path.with_suffix(".json.bak")
                    backup.write_bytes(path.read_bytes())

                tmp_path = path.with_suffix(".json.tmp")
                tmp_path.write_text(serialized, encoding="utf-8")
                os.replace(tmp_path, path)
                logger.debug(f"Saved key {key} to {path}")
            except OSError as e:
                raise StorageError(f"Could not save key {key}: {e}", context={"path": str(path)}) from e

    def _delete_sync(self, key: str) -> None:
        path = self._path_for(key)
        with self._lock:
            for candidate in (path, path.with_suffix(".json.bak")):
                candidate.unlink(missing_ok=True)


class FeatureStorage:
    """Storage handle scoped to a single key, injected into each feature."""

    def __init__(self, store: IStore, key: str):
        self.store = store
        self.key = key

    async def load(self, default: JSONValue = None) -> JSONValue:
        value = await self.store.load(self.key)
        return default if value is None else value

    async def save(self, value: JSONValue) -> None:
        await self.store.save(self.key, value)

    def child(self, suffix: str) -> "FeatureStorage":
        """Return a handle for a sub-key, e.g. a feature's cache snapshot."""
        return FeatureStorage(self.store, f"{self.key}/{suffix}")
