"""Exception taxonomy shared by the registry, router and service layers."""

from __future__ import annotations


class LlmProxyError(RuntimeError):
    """Base class for control-surface failures."""


class ValidationError(LlmProxyError, ValueError):
    """Raised when alias, url or real model are missing or malformed."""


class ConflictError(LlmProxyError):
    """Raised when an alias is already taken by another model."""


class NotFoundError(LlmProxyError):
    """Raised when a model id is unknown."""


class ModelNotFoundError(NotFoundError):
    """Raised when a proxy is requested for an alias absent from the registry."""


class AlreadyRunningError(LlmProxyError):
    """Raised when a proxy for the alias is already live (or starting)."""


class NotRunningError(LlmProxyError):
    """Raised when stopping an alias that has no live proxy."""


class StoreError(LlmProxyError):
    """Raised when the persisted model record cannot be read or written."""


class NoFreePortError(LlmProxyError):
    """Raised when the probe range holds no bindable port."""


class PortInUseError(LlmProxyError):
    """Raised when the authoritative bind of a listener socket fails."""

    def __init__(self, port: int, reason: str | None = None):
        self.port = port
        message = f"Port {port} is already in use"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ServerStartError(LlmProxyError):
    """Raised when a bound listener fails to begin serving."""


__all__ = [
    "LlmProxyError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "ModelNotFoundError",
    "AlreadyRunningError",
    "NotRunningError",
    "StoreError",
    "NoFreePortError",
    "PortInUseError",
    "ServerStartError",
]
