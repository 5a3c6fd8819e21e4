"""Local key/value storage, one JSON document per key."""

import os
import re
import json
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
import structlog

from ..errors import StorageCorruptionError


logger = structlog.get_logger()

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")

StorageListener = Callable[[str], None]


class LocalStorage:
    """
    Durable key/value store on the local filesystem.

    Writes are atomic (temp file, fsync, rename). A key whose file cannot be
    decoded is reset to the caller's default. Changes made by other processes
    are detected by ``poll_changes()``.
    """

    def __init__(self, data_dir: Union[str, Path]):
        self.data_dir = Path(data_dir).expanduser()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._listeners: List[StorageListener] = []
        self._known_mtimes: Dict[str, int] = {}
        self._snapshot_mtimes()

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.data_dir / f"{key}.json"

    def _snapshot_mtimes(self) -> None:
        self._known_mtimes = {
            path.stem: path.stat().st_mtime_ns for path in self.data_dir.glob("*.json")
        }

    def _atomic_write(self, file_path: Path, data: Any) -> None:
        with tempfile.NamedTemporaryFile(
            mode="w", dir=file_path.parent, delete=False, suffix=".tmp", encoding="utf-8"
        ) as tmp_file:
            json.dump(data, tmp_file, indent=2, ensure_ascii=False)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
            tmp_path = tmp_file.name

        os.replace(tmp_path, file_path)

    def read(self, key: str) -> Any:
        """Read a key. Raises ``KeyError`` if absent, ``StorageCorruptionError`` if unreadable."""
        path = self._path(key)
        with self._lock:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except FileNotFoundError:
                raise KeyError(key) from None
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise StorageCorruptionError(key, str(e)) from e

    def get(self, key: str, default: Any = None) -> Any:
        """Read a key, resetting it to ``default`` if its contents are corrupt."""
        try:
            return self.read(key)
        except KeyError:
            return default
        except StorageCorruptionError as e:
            logger.warning("Resetting corrupt storage key", key=e.key, error=str(e))
            if default is None:
                self.delete(key)
            else:
                self.set(key, default)
            return default

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        with self._lock:
            self._atomic_write(path, value)
            self._known_mtimes[key] = path.stat().st_mtime_ns
        self._notify(key)

    def delete(self, key: str) -> bool:
        path = self._path(key)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            self._known_mtimes.pop(key, None)
        self._notify(key)
        return True

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(
            path.stem for path in self.data_dir.glob("*.json") if path.stem.startswith(prefix)
        )

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        """Register a change listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, key: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(key)
            except Exception as e:
                logger.error("Storage listener failed", key=key, error=str(e))

    def poll_changes(self) -> List[str]:
        """
        Detect keys written or removed by another process since the last poll.

        Listeners are notified once per changed key.
        """
        with self._lock:
            previous = self._known_mtimes
            self._snapshot_mtimes()
            current = self._known_mtimes
            changed = sorted(
                key for key in set(previous) | set(current)
                if previous.get(key) != current.get(key)
            )

        for key in changed:
            logger.debug("External storage change detected", key=key)
            self._notify(key)
        return changed
