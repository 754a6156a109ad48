"""Model registry keyed by immutable id.

The whole collection lives in one store record (``MODELS_KEY``), a JSON object
mapping ``id`` -> model fields. Every mutation reads the record, builds the
complete next collection in memory, validates it, and writes it back with a
single ``set``. A failed validation therefore leaves the stored record
untouched.

Invariants enforced after every mutation:

* aliases are unique across models;
* at most one model carries ``default=True``;
* ids are never rewritten (rename = same id, new alias).
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from ..errors import ConflictError, NotFoundError, StoreError, ValidationError
from .models import Model, normalize_alias, normalize_real_model, normalize_url
from .store import KeyValueStore

logger = logging.getLogger(__name__)

MODELS_KEY = "llm-proxy.models"


def _new_id() -> str:
    return uuid.uuid4().hex


class ModelRegistry:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        key: str = MODELS_KEY,
        id_factory: Callable[[], str] = _new_id,
    ):
        self._store = store
        self._key = key
        self._id_factory = id_factory
        self._lock = threading.RLock()

    # -- reads -------------------------------------------------------------

    def _load(self) -> Dict[str, Model]:
        raw = self._store.get(self._key, {}) or {}
        if not isinstance(raw, dict):
            raise StoreError(f"Record '{self._key}' must be a JSON object")
        models: Dict[str, Model] = {}
        for model_id, entry in raw.items():
            if not isinstance(entry, dict):
                logger.warning("[registry] Skipping malformed entry %s", model_id)
                continue
            try:
                model = Model.from_dict({**entry, "id": model_id})
            except ValidationError:
                logger.warning("[registry] Skipping malformed entry %s", model_id)
                continue
            models[model.id] = model
        return models

    def list(self) -> List[Model]:
        return sorted(self._load().values(), key=lambda m: m.alias.lower())

    def get(self, model_id: str) -> Optional[Model]:
        return self._load().get(model_id)

    def get_by_alias(self, alias: str) -> Optional[Model]:
        for model in self._load().values():
            if model.alias == alias:
                return model
        return None

    def get_default(self) -> Optional[Model]:
        for model in self._load().values():
            if model.default:
                return model
        return None

    # -- writes ------------------------------------------------------------

    def _commit(self, models: Dict[str, Model]) -> None:
        aliases = [m.alias for m in models.values()]
        if len(aliases) != len(set(aliases)):
            raise ConflictError("Alias uniqueness violated")
        if sum(1 for m in models.values() if m.default) > 1:
            raise ConflictError("More than one default model")
        self._store.set(self._key, {mid: m.to_dict() for mid, m in models.items()})

    @staticmethod
    def _alias_owner(models: Dict[str, Model], alias: str) -> Optional[Model]:
        for model in models.values():
            if model.alias == alias:
                return model
        return None

    @staticmethod
    def _clear_defaults(models: Dict[str, Model], keep: str) -> None:
        for mid, model in list(models.items()):
            if mid != keep and model.default:
                models[mid] = replace(model, default=False)

    def add(
        self, alias: str, url: str, real_model: str, is_default: bool = False
    ) -> str:
        alias = normalize_alias(alias)
        url = normalize_url(url)
        real_model = normalize_real_model(real_model)
        with self._lock:
            models = self._load()
            if self._alias_owner(models, alias):
                raise ConflictError(f"Model with alias {alias} already exists")
            model_id = self._id_factory()
            while model_id in models:
                model_id = self._id_factory()
            models[model_id] = Model(
                id=model_id,
                alias=alias,
                url=url,
                real_model=real_model,
                default=bool(is_default),
            )
            if is_default:
                self._clear_defaults(models, keep=model_id)
            self._commit(models)
        logger.info("[registry] Added model '%s' with id %s", alias, model_id)
        return model_id

    def check_update(
        self, model_id: str, alias: str, url: str, real_model: str
    ) -> Model:
        """Validate an update without writing; returns the current model."""

        alias = normalize_alias(alias)
        normalize_url(url)
        normalize_real_model(real_model)
        models = self._load()
        current = models.get(model_id)
        if current is None:
            raise NotFoundError(f"Model with ID {model_id} not found")
        owner = self._alias_owner(models, alias)
        if owner is not None and owner.id != model_id:
            raise ConflictError(f"Another model with alias {alias} already exists")
        return current

    def update(
        self,
        model_id: str,
        alias: str,
        url: str,
        real_model: str,
        is_default: Optional[bool] = None,
    ) -> Model:
        with self._lock:
            current = self.check_update(model_id, alias, url, real_model)
            models = self._load()
            default = current.default if is_default is None else bool(is_default)
            updated = Model(
                id=current.id,
                alias=normalize_alias(alias),
                url=normalize_url(url),
                real_model=normalize_real_model(real_model),
                default=default,
            )
            models[model_id] = updated
            if is_default:
                self._clear_defaults(models, keep=model_id)
            self._commit(models)
        logger.info("[registry] Updated model %s ('%s')", model_id, updated.alias)
        return updated

    def remove(self, model_id: str) -> Model:
        with self._lock:
            models = self._load()
            removed = models.pop(model_id, None)
            if removed is None:
                raise NotFoundError(f"Model with ID {model_id} not found")
            self._commit(models)
        logger.info("[registry] Removed model %s ('%s')", model_id, removed.alias)
        return removed
