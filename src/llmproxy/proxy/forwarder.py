from __future__ import annotations

import json
import logging
import time
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Tuple

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from ..registry.models import Model
from .config import ProxyConfig
from .errors import (
    ProxyError,
    err_backend,
    err_invalid_body,
    err_invalid_target,
    err_unknown,
    err_upstream_unreachable,
)
from .logging_utils import JsonlLogger

logger = logging.getLogger(__name__)

# Caller headers that describe the caller's own connection or body encoding.
STRIPPED_REQUEST_HEADERS = frozenset(
    {"host", "connection", "content-length", "accept-encoding"}
)
# Upstream headers recomputed by the ASGI server for the outbound response.
STRIPPED_RESPONSE_HEADERS = frozenset(
    {"connection", "content-length", "transfer-encoding", "content-encoding"}
)
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
EVENT_STREAM = "text/event-stream"


def new_upstream_client(cfg: ProxyConfig) -> httpx.AsyncClient:
    """Client shared by all requests of one listener.

    ``identity`` encoding keeps upstream bytes as sent so streamed chunks are
    relayed exactly; redirects are returned to the caller, not followed.
    """
    return httpx.AsyncClient(
        timeout=cfg.upstream_timeout(),
        headers={"accept-encoding": "identity"},
        follow_redirects=False,
    )


def sanitize_request_headers(
    headers: Mapping[str, str], *, json_body: bool
) -> List[Tuple[str, str]]:
    """Outgoing header pairs; repeated headers stay separate entries."""
    dropped = set(STRIPPED_REQUEST_HEADERS)
    if json_body:
        dropped.add("content-type")
    out = [(key, value) for key, value in headers.items() if key.lower() not in dropped]
    if json_body:
        out.append(("content-type", "application/json"))
    return out


def relay_headers(headers: httpx.Headers) -> List[Tuple[str, str]]:
    return [
        (key.lower(), value)
        for key, value in headers.multi_items()
        if key.lower() not in STRIPPED_RESPONSE_HEADERS
    ]


def _append_headers(response: Response, pairs: Iterable[Tuple[str, str]]) -> Response:
    # A header mapping would fold repeats such as ``set-cookie`` into one value.
    for key, value in pairs:
        response.headers.append(key, value)
    return response


def is_event_stream(content_type: Optional[str]) -> bool:
    return EVENT_STREAM in (content_type or "").lower()


def build_target(base_url: str, suffix: str) -> str:
    target = f"{base_url}{suffix}"
    try:
        parsed = httpx.URL(target)
    except (httpx.InvalidURL, TypeError, ValueError) as exc:
        raise err_invalid_target(target, str(exc)) from exc
    if parsed.scheme not in {"http", "https"} or not parsed.host:
        raise err_invalid_target(
            target, "Target must be an absolute http(s) URL with a host"
        )
    return target


def rewrite_body(raw: bytes, real_model: str) -> Tuple[Dict[str, Any], bool]:
    """Return the outgoing payload and whether the caller asked for a stream.

    The payload is kept as an untyped document: only ``model`` is replaced,
    every other field is passed through as received.
    """
    if raw.strip():
        try:
            payload = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise err_invalid_body(str(exc)) from exc
    else:
        payload = {}
    if not isinstance(payload, dict):
        raise err_invalid_body(f"Got JSON {type(payload).__name__}")
    wants_stream = payload.get("stream") is True
    return {**payload, "model": real_model}, wants_stream


class ProxyForwarder:
    """Relays requests of one alias to its backend."""

    def __init__(
        self,
        model: Model,
        cfg: ProxyConfig,
        client: httpx.AsyncClient | None = None,
        request_log: JsonlLogger | None = None,
    ):
        self.model = model
        self.cfg = cfg
        self.client = client or new_upstream_client(cfg)
        self.request_log = request_log

    async def aclose(self) -> None:
        await self.client.aclose()

    def _log(self, record: Dict[str, Any], started_at: float) -> None:
        record["duration_ms"] = round((time.time() - started_at) * 1000, 1)
        if record.get("error"):
            logger.warning(
                "[forwarder] %s %s for '%s' -> %s (%s)",
                record.get("method"),
                record.get("path"),
                self.model.alias,
                record.get("status"),
                record.get("error"),
            )
        if self.request_log is not None and self.cfg.log_requests:
            self.request_log.log(record)

    async def forward(self, request: Request, suffix: str) -> Response:
        """Handle one inbound request; every outcome becomes exactly one response."""

        started_at = time.time()
        record: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(started_at)),
            "alias": self.model.alias,
            "real_model": self.model.real_model,
            "method": request.method,
            "path": request.url.path,
            "stream": False,
        }
        try:
            response = await self._forward(request, suffix, record, started_at)
        except ProxyError as exc:
            record["status"] = exc.status_code
            record["error"] = exc.detail["error"]["type"]
            self._log(record, started_at)
            return JSONResponse(status_code=exc.status_code, content=exc.detail)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "[forwarder] Unhandled error relaying request for '%s'",
                self.model.alias,
            )
            err = err_unknown(str(exc) or exc.__class__.__name__)
            record["status"] = err.status_code
            record["error"] = "UnknownError"
            self._log(record, started_at)
            return JSONResponse(status_code=err.status_code, content=err.detail)
        if not record["stream"]:
            self._log(record, started_at)
        return response

    async def _forward(
        self,
        request: Request,
        suffix: str,
        record: Dict[str, Any],
        started_at: float,
    ) -> Response:
        target = build_target(self.model.url, suffix)
        record["target"] = target

        content: bytes | None = None
        wants_stream = False
        if request.method in BODY_METHODS:
            payload, wants_stream = rewrite_body(
                await request.body(), self.model.real_model
            )
            content = json.dumps(payload, ensure_ascii=False).encode("utf-8")

        headers = sanitize_request_headers(request.headers, json_body=content is not None)
        params = request.query_params.multi_items() if request.url.query else None
        upstream_request = self.client.build_request(
            request.method, target, headers=headers, content=content, params=params
        )
        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            raise err_upstream_unreachable(
                target, str(exc) or exc.__class__.__name__
            ) from exc
        except httpx.HTTPError as exc:
            raise err_unknown(str(exc) or exc.__class__.__name__) from exc

        record["status"] = upstream.status_code
        if not upstream.is_success:
            try:
                raw = await upstream.aread()
            finally:
                await upstream.aclose()
            raise err_backend(
                upstream.status_code,
                upstream.reason_phrase,
                raw.decode("utf-8", errors="replace"),
            )

        out_headers = relay_headers(upstream.headers)
        content_type = upstream.headers.get("content-type")
        if wants_stream or is_event_stream(content_type):
            record["stream"] = True
            out_headers = [
                (key, value)
                for key, value in out_headers
                if key not in ("content-type", "cache-control")
            ]
            if not is_event_stream(content_type):
                content_type = EVENT_STREAM
            out_headers.append(("content-type", content_type))
            out_headers.append(("cache-control", "no-cache"))
            response = StreamingResponse(
                self._relay(upstream, record, started_at),
                status_code=upstream.status_code,
            )
            return _append_headers(response, out_headers)

        try:
            body = await upstream.aread()
        finally:
            await upstream.aclose()
        if content_type is None:
            out_headers.append(("content-type", "application/json"))
        return _append_headers(
            Response(content=body, status_code=upstream.status_code), out_headers
        )

    async def _relay(
        self, upstream: httpx.Response, record: Dict[str, Any], started_at: float
    ) -> AsyncIterator[bytes]:
        """Yield upstream chunks one by one until the upstream ends the stream."""

        chunks = 0
        try:
            async for chunk in upstream.aiter_bytes():
                chunks += 1
                yield chunk
        except httpx.HTTPError as exc:
            # Headers are already sent; the only thing left to do is end the body.
            record["error"] = "ConnectionError"
            logger.warning(
                "[forwarder] Upstream stream for '%s' broke after %s chunks: %s",
                self.model.alias,
                chunks,
                exc,
            )
        finally:
            await upstream.aclose()
            record["chunks"] = chunks
            self._log(record, started_at)
