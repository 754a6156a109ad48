from __future__ import annotations

from typing import Any, Dict

from fastapi import HTTPException
from pydantic import BaseModel, ConfigDict


class ErrorBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    message: str
    type: str
    details: str | None = None


class ErrorEnvelope(BaseModel):
    error: ErrorBody


def error_payload(
    err_type: str, message: str, details: str | None = None, **extra: Any
) -> Dict[str, Any]:
    body = ErrorBody(message=message, type=err_type, details=details, **extra)
    return ErrorEnvelope(error=body).model_dump(exclude_none=True)


class ProxyError(HTTPException):
    def __init__(
        self,
        status_code: int,
        err_type: str,
        message: str,
        details: str | None = None,
        **extra: Any,
    ):
        payload = error_payload(err_type, message, details, **extra)
        super().__init__(status_code=status_code, detail=payload)


def err_invalid_target(target: str, reason: str) -> ProxyError:
    return ProxyError(
        400, "ValidationError", f"Invalid target URL '{target}'", reason
    )


def err_invalid_body(reason: str) -> ProxyError:
    return ProxyError(400, "ValidationError", "Request body must be a JSON object", reason)


def err_upstream_unreachable(target: str, reason: str) -> ProxyError:
    return ProxyError(
        502, "ConnectionError", f"Could not connect to backend at {target}", reason
    )


def err_unknown(reason: str) -> ProxyError:
    return ProxyError(500, "UnknownError", "Proxy request failed", reason)


def err_backend(status_code: int, reason: str, body: str) -> ProxyError:
    return ProxyError(
        status_code,
        "BackendError",
        f"Backend returned {status_code} {reason}".strip(),
        body,
        status=status_code,
        reason=reason,
    )


def err_route(status_code: int, message: str) -> ProxyError:
    err_type = "MethodNotAllowed" if status_code == 405 else "NotFoundError"
    return ProxyError(status_code, err_type, message)
