"""Alias -> listener table.

The router is the only owner of live-server state. Starting an alias reserves
it in the table before any socket work, so concurrent ``start`` calls for the
same alias resolve to one winner and one :class:`AlreadyRunningError`.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..errors import (
    AlreadyRunningError,
    ModelNotFoundError,
    NotRunningError,
    PortInUseError,
)
from ..registry.models import Model
from ..registry.registry import ModelRegistry
from .config import ProxyConfig
from .logging_utils import JsonlLogger
from .ports import PortAllocator
from .server import ReverseProxyServer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Endpoint:
    port: int
    url: str


@dataclass
class RuntimeServerEntry:
    alias: str
    port: int
    local_url: str
    server: ReverseProxyServer
    model: Model
    started_at: float = field(default_factory=time.time)
    stopping: bool = False

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(port=self.port, url=self.local_url)


ServerFactory = Callable[..., ReverseProxyServer]


class ProxyRouter:
    def __init__(
        self,
        registry: ModelRegistry,
        cfg: ProxyConfig | None = None,
        *,
        allocator: PortAllocator | None = None,
        server_factory: ServerFactory = ReverseProxyServer,
        request_log: JsonlLogger | None = None,
    ):
        self.registry = registry
        self.cfg = cfg or ProxyConfig()
        self.allocator = allocator or PortAllocator(
            host=self.cfg.host,
            start_port=self.cfg.start_port,
            max_port=self.cfg.max_port,
        )
        self.server_factory = server_factory
        self.request_log = request_log
        self._lock = threading.Lock()
        self._entries: Dict[str, RuntimeServerEntry] = {}
        self._starting: set[str] = set()

    # -- lookups -----------------------------------------------------------

    def is_running(self, alias: str) -> bool:
        with self._lock:
            entry = self._entries.get(alias)
            return entry is not None and not entry.stopping

    def get_endpoint(self, alias: str) -> Optional[Endpoint]:
        with self._lock:
            entry = self._entries.get(alias)
            if entry is None or entry.stopping:
                return None
            return entry.endpoint

    def running_aliases(self) -> List[str]:
        with self._lock:
            return sorted(a for a, e in self._entries.items() if not e.stopping)

    def snapshot(self) -> Dict[str, Endpoint]:
        with self._lock:
            return {
                alias: entry.endpoint
                for alias, entry in self._entries.items()
                if not entry.stopping
            }

    # -- lifecycle ---------------------------------------------------------

    def start(self, alias: str) -> Endpoint:
        model = self.registry.get_by_alias(alias)
        if model is None:
            raise ModelNotFoundError(f"Model with alias {alias} not found")

        with self._lock:
            if alias in self._entries or alias in self._starting:
                raise AlreadyRunningError(f"Server for {alias} is already running")
            self._starting.add(alias)

        try:
            entry = self._launch(model)
            with self._lock:
                self._entries[alias] = entry
        finally:
            with self._lock:
                self._starting.discard(alias)

        logger.info(
            "[router] Started proxy for '%s' on port %s -> %s (%s)",
            alias,
            entry.port,
            model.url,
            model.real_model,
        )
        return entry.endpoint

    def _launch(self, model: Model) -> RuntimeServerEntry:
        server = self.server_factory(model, self.cfg, request_log=self.request_log)
        port = self.allocator.find_free()
        attempts = 0
        while True:
            try:
                bound = server.bind(port)
                break
            except PortInUseError as exc:
                attempts += 1
                if attempts > self.cfg.bind_retries:
                    raise
                logger.debug("[router] %s; retrying from %s", exc, port + 1)
                port = self.allocator.find_free(port + 1)

        try:
            server.start()
        except Exception:
            server.stop()
            raise

        return RuntimeServerEntry(
            alias=model.alias,
            port=bound,
            local_url=server.url,
            server=server,
            model=model,
        )

    def stop(self, alias: str, missing_ok: bool | None = None) -> None:
        if missing_ok is None:
            missing_ok = self.cfg.stop_missing_ok
        with self._lock:
            entry = self._entries.get(alias)
            if entry is None or entry.stopping:
                if missing_ok:
                    return
                raise NotRunningError(f"No server running for {alias}")
            entry.stopping = True

        try:
            entry.server.stop()
        finally:
            with self._lock:
                if self._entries.get(alias) is entry:
                    del self._entries[alias]
        logger.info("[router] Stopped proxy for '%s' (port %s)", alias, entry.port)

    def stop_all(self) -> None:
        with self._lock:
            aliases = [a for a, e in self._entries.items() if not e.stopping]
        for alias in aliases:
            try:
                self.stop(alias, missing_ok=True)
            except Exception:  # noqa: BLE001
                logger.exception("[router] Failed to stop proxy for '%s'", alias)
        if aliases:
            logger.info("[router] Stopped %d proxy server(s)", len(aliases))

    def __enter__(self) -> "ProxyRouter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop_all()
