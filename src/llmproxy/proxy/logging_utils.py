from __future__ import annotations

import json
import os
import threading
import time
from typing import Any, Dict


class JsonlLogger:
    """Append-only JSON-lines request log with size-based rotation.

    Shared by every listener in the process, so writes are serialized.
    Failures to write are swallowed: the request log must never break a
    request.
    """

    def __init__(self, path: str, max_bytes: int = 25_000_000):
        self.path = path
        self.max_bytes = max_bytes
        self._lock = threading.Lock()
        # Respect relative paths while avoiding mkdir("") when only a filename is provided.
        log_dir = os.path.dirname(path)
        if log_dir:
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError:
                pass

    def _rotate_if_needed(self):
        try:
            if (
                os.path.exists(self.path)
                and os.path.getsize(self.path) > self.max_bytes
            ):
                ts = time.strftime("%Y%m%d-%H%M%S")
                rotated = f"{self.path}.{ts}"
                os.replace(self.path, rotated)
        except OSError:
            pass

    def log(self, record: Dict[str, Any]):
        with self._lock:
            self._rotate_if_needed()
            try:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(record, ensure_ascii=False) + "\n")
            except (OSError, TypeError, ValueError):
                pass
