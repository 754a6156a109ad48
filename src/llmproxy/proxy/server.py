"""One listener per running alias.

The HTTP surface is a small FastAPI app; uvicorn serves it on a dedicated
thread and event loop, using a socket bound by :meth:`ReverseProxyServer.bind`
so the bind result (not a port probe) decides whether a port is usable.

State machine::

    UNBOUND -> BINDING -> LISTENING -> DRAINING -> CLOSED
       ^          |
       +----------+  (bind refused by the OS)
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Callable, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.datastructures import Headers, MutableHeaders
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..errors import AlreadyRunningError, PortInUseError, ServerStartError
from ..registry.models import Model
from .config import ProxyConfig
from .errors import err_route, err_unknown
from .forwarder import ProxyForwarder
from .logging_utils import JsonlLogger
from .ports import bind_socket

logger = logging.getLogger(__name__)

# (method, inbound path, backend suffix appended to the model URL)
ENDPOINTS: tuple[tuple[str, str, str], ...] = (
    ("GET", "/v1/models", "/models"),
    ("POST", "/v1/chat/completions", "/chat/completions"),
    ("POST", "/v1/completions", "/completions"),
    ("POST", "/v1/embeddings", "/embeddings"),
)

CORS_ALLOW_METHODS = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
LISTEN_BACKLOG = 2048


class CORSMiddleware:
    """Answer every preflight and tag every response with a wildcard origin.

    Starlette's own CORS middleware only short-circuits requests carrying
    ``Access-Control-Request-Method``; here any ``OPTIONS`` is a preflight.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if scope["method"] == "OPTIONS":
            requested = Headers(scope=scope).get("access-control-request-headers")
            response = Response(
                status_code=200,
                headers={
                    "Access-Control-Allow-Origin": "*",
                    "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
                    "Access-Control-Allow-Headers": requested or "*",
                    "Access-Control-Max-Age": "600",
                },
            )
            await response(scope, receive, send)
            return

        async def send_with_cors(message):
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers["Access-Control-Allow-Origin"] = "*"
            await send(message)

        await self.app(scope, receive, send_with_cors)


def create_app(
    model: Model,
    cfg: ProxyConfig,
    *,
    client: httpx.AsyncClient | None = None,
    request_log: JsonlLogger | None = None,
) -> FastAPI:
    forwarder = ProxyForwarder(model, cfg, client, request_log)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await forwarder.aclose()

    app = FastAPI(
        title=f"LLM Proxy ({model.alias})",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.model = model
    app.state.forwarder = forwarder

    def _route(suffix: str) -> Callable[[Request], Any]:
        async def handler(request: Request) -> Response:
            return await forwarder.forward(request, suffix)

        return handler

    for method, path, suffix in ENDPOINTS:
        app.add_api_route(
            path, _route(suffix), methods=[method], include_in_schema=False
        )

    @app.exception_handler(StarletteHTTPException)
    async def _route_error(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            content = exc.detail
        else:
            content = err_route(exc.status_code, str(exc.detail)).detail
        return JSONResponse(
            status_code=exc.status_code,
            content=content,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):  # pragma: no cover
        logger.exception("[server] Unhandled error for '%s'", model.alias)
        err = err_unknown(str(exc) or exc.__class__.__name__)
        return JSONResponse(
            status_code=err.status_code,
            content=err.detail,
            headers={"Access-Control-Allow-Origin": "*"},
        )

    app.add_middleware(CORSMiddleware)
    return app


class ServerState(str, Enum):
    UNBOUND = "unbound"
    BINDING = "binding"
    LISTENING = "listening"
    DRAINING = "draining"
    CLOSED = "closed"


class ReverseProxyServer:
    """Listener lifecycle for one alias: bind, serve on a thread, drain, close."""

    def __init__(
        self,
        model: Model,
        cfg: ProxyConfig,
        *,
        client: httpx.AsyncClient | None = None,
        request_log: JsonlLogger | None = None,
    ):
        self.model = model
        self.cfg = cfg
        self.host = cfg.host
        self.app = create_app(model, cfg, client=client, request_log=request_log)
        self.state = ServerState.UNBOUND
        self.port: Optional[int] = None
        self._sock = None
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def url(self) -> Optional[str]:
        if self.port is None:
            return None
        host = self.host
        if host in {"", "0.0.0.0"}:
            host = "127.0.0.1"
        elif host == "::":
            host = "::1"
        if ":" in host:
            host = f"[{host}]"
        return f"http://{host}:{self.port}/v1"

    def bind(self, port: int) -> int:
        """Bind and listen on the port; the OS answer is authoritative.

        The socket listens from here on, so no other listener can claim the
        port between this call and :meth:`start`.
        """

        with self._lock:
            if self.state is not ServerState.UNBOUND:
                raise ServerStartError(
                    f"Listener for '{self.model.alias}' is {self.state.value}, cannot bind"
                )
            self.state = ServerState.BINDING
            try:
                self._sock = bind_socket(self.host, port, backlog=LISTEN_BACKLOG)
            except OSError as exc:
                self.state = ServerState.UNBOUND
                raise PortInUseError(port, exc.strerror or str(exc)) from exc
            self.port = self._sock.getsockname()[1]
            return self.port

    def _serve(self) -> None:
        try:
            self._server.run(sockets=[self._sock])
        except Exception:  # noqa: BLE001
            logger.exception(
                "[server] Listener for '%s' on port %s crashed",
                self.model.alias,
                self.port,
            )

    def start(self) -> None:
        with self._lock:
            if self.state is ServerState.LISTENING:
                raise AlreadyRunningError(
                    f"Server for {self.model.alias} is already running"
                )
            if self.state is not ServerState.BINDING or self._sock is None:
                raise ServerStartError(
                    f"Listener for '{self.model.alias}' must be bound before start"
                )
            config = uvicorn.Config(
                self.app,
                host=self.host,
                port=self.port,
                lifespan="on",
                log_config=None,
                log_level=self.cfg.log_level.lower(),
                access_log=False,
                backlog=LISTEN_BACKLOG,
                timeout_graceful_shutdown=max(int(self.cfg.drain_timeout_s), 1),
            )
            self._server = uvicorn.Server(config)
            self._thread = threading.Thread(
                target=self._serve,
                name=f"llm-proxy-{self.model.alias}",
                daemon=True,
            )
            self._thread.start()

        deadline = time.monotonic() + self.cfg.startup_timeout_s
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                break
            time.sleep(0.01)

        if not self._server.started:
            self._halt()
            with self._lock:
                self.state = ServerState.CLOSED
            raise ServerStartError(
                f"Listener for '{self.model.alias}' did not start on port {self.port}"
            )

        with self._lock:
            self.state = ServerState.LISTENING
        logger.info(
            "[server] '%s' listening on %s -> %s (model=%s)",
            self.model.alias,
            self.url,
            self.model.url,
            self.model.real_model,
        )

    def _halt(self) -> None:
        server, thread = self._server, self._thread
        if server is not None:
            server.should_exit = True
        if thread is not None:
            thread.join(timeout=self.cfg.drain_timeout_s + 5)
            if thread.is_alive() and server is not None:
                server.force_exit = True
                thread.join(timeout=5)
            if thread.is_alive():
                logger.error(
                    "[server] Listener thread for '%s' did not exit", self.model.alias
                )
        if self._sock is not None:
            self._sock.close()

    def stop(self) -> None:
        """Drain in-flight requests (bounded), close the socket. Idempotent."""

        with self._lock:
            if self.state is ServerState.CLOSED:
                return
            self.state = ServerState.DRAINING
        self._halt()
        with self._lock:
            self.state = ServerState.CLOSED
        logger.info(
            "[server] '%s' stopped (port %s released)", self.model.alias, self.port
        )
