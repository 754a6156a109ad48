"""Key-value persistence primitives backing the model registry.

The registry only needs ``get``/``set`` on a single record, so any host store
(editor global state, a database row, ...) can be plugged in. Two
implementations ship here:

* :class:`JsonFileStore` - one JSON document on disk, rewritten atomically
  (temp file + rename) so readers never observe a half-written record.
* :class:`MemoryStore` - process-local dict, used by tests and embedders.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Protocol, runtime_checkable

from ..errors import StoreError

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...


class MemoryStore:
    def __init__(self, initial: Dict[str, Any] | None = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)


class JsonFileStore:
    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreError(f"Cannot read store file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreError(f"Store file {self.path} must contain a JSON object")
        return data

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            try:
                with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                    handle.write(json.dumps(data, indent=2) + "\n")
                Path(tmp_path).replace(self.path)
            except (OSError, TypeError, ValueError) as exc:
                raise StoreError(f"Cannot write store file {self.path}: {exc}") from exc
            finally:
                try:
                    os.unlink(tmp_path)
                except FileNotFoundError:
                    pass
            logger.debug("[store] Wrote key %s to %s", key, self.path)
