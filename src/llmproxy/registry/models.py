"""Dataclass defining a registered model alias."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict

import httpx

from ..errors import ValidationError


@dataclass(frozen=True)
class Model:
    id: str
    alias: str
    url: str
    real_model: str
    default: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Model":
        """Build a model from a stored record; unknown keys are ignored."""

        try:
            return cls(
                id=str(raw["id"]),
                alias=str(raw["alias"]),
                url=str(raw["url"]),
                real_model=str(raw["real_model"]),
                default=bool(raw.get("default", False)),
            )
        except (KeyError, TypeError) as exc:
            raise ValidationError(f"Malformed model record: {raw!r}") from exc


def normalize_alias(alias: Any) -> str:
    if not isinstance(alias, str) or not alias.strip():
        raise ValidationError("Alias is required")
    return alias.strip()


def normalize_real_model(real_model: Any) -> str:
    if not isinstance(real_model, str) or not real_model.strip():
        raise ValidationError("Real model name is required")
    return real_model.strip()


def normalize_url(url: Any) -> str:
    """Strip whitespace and trailing slashes; require an absolute http(s) URL."""

    if not isinstance(url, str) or not url.strip():
        raise ValidationError("Backend URL is required")
    candidate = url.strip().rstrip("/")
    try:
        parsed = httpx.URL(candidate)
    except (httpx.InvalidURL, TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid backend URL '{url}': {exc}") from exc
    if parsed.scheme not in {"http", "https"}:
        raise ValidationError(
            f"Invalid backend URL '{url}': scheme must be http or https"
        )
    if not parsed.host:
        raise ValidationError(f"Invalid backend URL '{url}': missing host")
    return candidate
