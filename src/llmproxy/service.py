"""Control surface tying the model registry to the proxy lifecycle.

Registry edits that touch a live alias are sequenced here: the running proxy
is stopped before the registry change is committed, and (optionally) started
again for the new configuration afterwards.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

from .errors import NotFoundError
from .proxy.config import ProxyConfig
from .proxy.logging_utils import JsonlLogger
from .proxy.router import Endpoint, ProxyRouter
from .registry.models import Model
from .registry.registry import ModelRegistry
from .registry.store import JsonFileStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelStatus:
    model: Model
    running: bool
    port: Optional[int] = None
    url: Optional[str] = None

    @property
    def status(self) -> str:
        return "running" if self.running else "stopped"


class AliasProxyService:
    def __init__(
        self,
        registry: ModelRegistry,
        router: ProxyRouter,
        cfg: ProxyConfig | None = None,
    ):
        self.registry = registry
        self.router = router
        self.cfg = cfg or router.cfg
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, cfg: ProxyConfig | None = None) -> "AliasProxyService":
        cfg = cfg or ProxyConfig.load()
        registry = ModelRegistry(JsonFileStore(cfg.store_path))
        request_log = (
            JsonlLogger(cfg.log_path, cfg.max_log_bytes) if cfg.log_requests else None
        )
        router = ProxyRouter(registry, cfg, request_log=request_log)
        return cls(registry, router, cfg)

    # -- registry ----------------------------------------------------------

    def get_models(self) -> List[Model]:
        return self.registry.list()

    def get_model_statuses(self) -> List[ModelStatus]:
        statuses = []
        for model in self.registry.list():
            endpoint = self.router.get_endpoint(model.alias)
            statuses.append(
                ModelStatus(
                    model=model,
                    running=endpoint is not None,
                    port=endpoint.port if endpoint else None,
                    url=endpoint.url if endpoint else None,
                )
            )
        return statuses

    def add_model(
        self, alias: str, url: str, real_model: str, is_default: bool = False
    ) -> str:
        return self.registry.add(alias, url, real_model, is_default=is_default)

    def update_model(
        self,
        model_id: str,
        alias: str,
        url: str,
        real_model: str,
        is_default: Optional[bool] = None,
    ) -> Model:
        with self._lock:
            current = self.registry.check_update(model_id, alias, url, real_model)
            was_running = self.router.is_running(current.alias)
            if was_running:
                self.router.stop(current.alias, missing_ok=True)
            updated = self.registry.update(
                model_id, alias, url, real_model, is_default=is_default
            )
            if was_running and self.cfg.restart_on_update:
                endpoint = self.router.start(updated.alias)
                logger.info(
                    "[service] Restarted '%s' on port %s after update",
                    updated.alias,
                    endpoint.port,
                )
            return updated

    def remove_model(self, model_id: str) -> None:
        with self._lock:
            model = self.registry.get(model_id)
            if model is None:
                raise NotFoundError(f"Model with ID {model_id} not found")
            self.router.stop(model.alias, missing_ok=True)
            self.registry.remove(model_id)

    # -- lifecycle ---------------------------------------------------------

    # Lifecycle calls share the lock with update/remove so no start can land
    # between stopping an alias and committing its registry change.

    def start_proxy(self, alias: str) -> Endpoint:
        with self._lock:
            return self.router.start(alias)

    def stop_proxy(self, alias: str) -> None:
        with self._lock:
            self.router.stop(alias)

    def is_proxy_running(self, alias: str) -> bool:
        return self.router.is_running(alias)

    def get_proxy_port(self, alias: str) -> Optional[int]:
        endpoint = self.router.get_endpoint(alias)
        return endpoint.port if endpoint else None

    def start_default(self) -> Optional[Endpoint]:
        if not self.cfg.autostart_default:
            return None
        with self._lock:
            model = self.registry.get_default()
            if model is None:
                return None
            if self.router.is_running(model.alias):
                return self.router.get_endpoint(model.alias)
            return self.router.start(model.alias)

    def shutdown(self) -> None:
        with self._lock:
            self.router.stop_all()

    def __enter__(self) -> "AliasProxyService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
