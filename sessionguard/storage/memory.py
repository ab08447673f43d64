from __future__ import annotations

import asyncio
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from sessionguard.logging import get_logger

HydrationListener = Callable[[], None]


class PersistentSessionStore:
    """JSON-file backed key-value store for session flags.

    State is not readable until ``hydrate()`` has loaded it from disk.
    Consumers that derive decisions from persisted values must wait for
    ``has_hydrated()`` or register with ``on_hydration_finished``.
    """

    def __init__(self, fs_root: str = "/tmp/sessionguard", *, name: str = "auth") -> None:
        self.logger = get_logger(__name__)
        self.fs_root = Path(fs_root)
        self.name = name
        self._data: Dict[str, Any] = {}
        self._hydrated = False
        self._listeners: List[HydrationListener] = []
        self._data_lock = threading.RLock()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / f"{self.name}.json"

    def _load_state(self) -> Dict[str, Any]:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            raw = path.read_text()
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            self.logger.warning("session_store_corrupt", path=str(path), error=str(exc))
            return {}
        if not isinstance(data, dict):
            self.logger.warning("session_store_unexpected_shape", path=str(path))
            return {}
        return data

    def _persist_state(self) -> None:
        path = self._state_path()
        with self._data_lock:
            payload = json.dumps(self._data)
        # Atomic write: temp file in the same directory, then rename
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent), prefix=f".{self.name}_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(payload)
            os.replace(tmp_path, path)
        except OSError:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

    def _write_through(self) -> None:
        # Before hydration the file is the source of truth; writing it would
        # clobber state that has not been read yet.
        if self._hydrated:
            self._persist_state()

    async def hydrate(self) -> None:
        """Load persisted state and notify hydration listeners."""
        data = await asyncio.to_thread(self._load_state)
        with self._data_lock:
            early_writes = bool(self._data)
            # Writes made before hydration win over what was on disk
            self._data = {**data, **self._data}
            self._hydrated = True
            listeners = list(self._listeners)
            self._listeners.clear()
        if early_writes:
            self._persist_state()
        self.logger.debug("session_store_hydrated", keys=sorted(data))
        for listener in listeners:
            listener()

    def has_hydrated(self) -> bool:
        return self._hydrated

    def on_hydration_finished(self, listener: HydrationListener) -> Callable[[], None]:
        with self._data_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._data_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def get(self, key: str, default: Any = None) -> Any:
        with self._data_lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._data_lock:
            self._data[key] = value
        self._write_through()

    def update(self, values: Mapping[str, Any]) -> None:
        with self._data_lock:
            self._data.update(values)
        self._write_through()

    def delete(self, key: str) -> None:
        with self._data_lock:
            removed = self._data.pop(key, None) is not None
        if removed:
            self._write_through()

    def snapshot(self) -> Dict[str, Any]:
        with self._data_lock:
            return dict(self._data)

    def clear(self, *, remove_file: bool = False) -> None:
        with self._data_lock:
            self._data = {}
        if remove_file:
            try:
                self._state_path().unlink()
            except FileNotFoundError:
                pass
        else:
            self._write_through()

    def reset_hydration(self) -> None:
        """Forget in-memory state as a fresh page load would."""
        with self._data_lock:
            self._data = {}
            self._hydrated = False
            self._listeners = []

    def get_optional_dict(self, key: str) -> Optional[Dict[str, Any]]:
        value = self.get(key)
        return value if isinstance(value, dict) else None
