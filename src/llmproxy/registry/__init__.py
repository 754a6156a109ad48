"""Durable alias registry: model identity -> backend configuration."""

from .models import Model, normalize_url
from .registry import MODELS_KEY, ModelRegistry
from .store import JsonFileStore, KeyValueStore, MemoryStore

__all__ = [
    "MODELS_KEY",
    "Model",
    "ModelRegistry",
    "KeyValueStore",
    "JsonFileStore",
    "MemoryStore",
    "normalize_url",
]
