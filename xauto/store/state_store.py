"""Key/value state store for ephemeral flags.

Holds OAuth tokens, pending PKCE states, budget counters, prompt overrides,
sync settings and cooldown markers. Each value is a dict replaced or merged
by key; there is no history. Persisted to a JSON file when a path is given,
in-memory otherwise.
"""

import copy
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol


class KeyValueStore(Protocol):
    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def upsert_set(self, key: str, value: dict[str, Any]) -> None: ...

    async def replace(self, key: str, value: dict[str, Any]) -> None: ...

    async def delete(self, key: str) -> None: ...


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to path via a temp file in the same directory and a rename.

    The previous file stays intact if serialization fails partway through.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.stem}_",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


class StateStore:
    """JSON-file backed key/value store.

    Creates the file on first write. Writes are last-writer-wins.

    Attributes:
        state_file: Path to the JSON file, or None for an in-memory store.
    """

    def __init__(self, state_file: str | Path | None = None):
        self.state_file = Path(state_file) if state_file is not None else None
        self._state: dict[str, dict[str, Any]] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if self.state_file is None or not self.state_file.exists():
            return
        with open(self.state_file, encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            self._state = data

    def _save(self) -> None:
        if self.state_file is None:
            return
        write_json_atomic(self.state_file, self._state)

    async def get(self, key: str) -> dict[str, Any] | None:
        self._ensure_loaded()
        value = self._state.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def upsert_set(self, key: str, value: dict[str, Any]) -> None:
        """Merge `value` into the dict stored under `key`, creating it if needed."""
        self._ensure_loaded()
        current = self._state.get(key, {})
        current.update(copy.deepcopy(value))
        self._state[key] = current
        self._save()

    async def replace(self, key: str, value: dict[str, Any]) -> None:
        """Overwrite the whole value stored under `key`."""
        self._ensure_loaded()
        self._state[key] = copy.deepcopy(value)
        self._save()

    async def delete(self, key: str) -> None:
        self._ensure_loaded()
        if self._state.pop(key, None) is not None:
            self._save()
