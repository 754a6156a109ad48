import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from llmproxy.proxy.config import ProxyConfig
from llmproxy.proxy.logging_utils import JsonlLogger
from llmproxy.proxy.server import create_app
from llmproxy.registry.models import Model

MODEL = Model(
    id="m1", alias="gpt-4", url="http://backend.test/v1", real_model="llama3"
)


class Upstream:
    """Records requests and answers through ``httpx.MockTransport``."""

    def __init__(self, responder=None):
        self.requests: list[httpx.Request] = []
        self.responder = responder or (
            lambda request: httpx.Response(200, json={"ok": True})
        )

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        return self.responder(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.MockTransport(self),
            headers={"accept-encoding": "identity"},
        )


def _app(upstream, model=MODEL, cfg=None, request_log=None):
    return create_app(
        model, cfg or ProxyConfig(), client=upstream.client(), request_log=request_log
    )


def test_chat_body_model_rewritten_and_headers_sanitized():
    upstream = Upstream()
    with TestClient(_app(upstream)) as client:
        r = client.post(
            "/v1/chat/completions",
            json={"model": "gpt-4", "messages": [{"role": "user", "content": "hi"}]},
            headers={"Authorization": "Bearer sk-test", "Accept-Encoding": "gzip"},
        )

    assert r.status_code == 200
    assert r.json() == {"ok": True}
    assert r.headers["access-control-allow-origin"] == "*"

    sent = upstream.requests[0]
    assert str(sent.url) == "http://backend.test/v1/chat/completions"
    assert sent.method == "POST"
    assert json.loads(sent.content) == {
        "model": "llama3",
        "messages": [{"role": "user", "content": "hi"}],
    }
    assert sent.headers["authorization"] == "Bearer sk-test"
    assert sent.headers["content-type"] == "application/json"
    assert sent.headers["host"] == "backend.test"
    assert sent.headers["accept-encoding"] == "identity"


@pytest.mark.parametrize(
    "path,suffix",
    [("/v1/completions", "/completions"), ("/v1/embeddings", "/embeddings")],
)
def test_other_body_endpoints_are_rewritten(path, suffix):
    upstream = Upstream()
    with TestClient(_app(upstream)) as client:
        r = client.post(path, json={"model": "x", "input": "hello"})
    assert r.status_code == 200
    assert str(upstream.requests[0].url) == f"http://backend.test/v1{suffix}"
    assert json.loads(upstream.requests[0].content)["model"] == "llama3"


def test_models_get_forwarded_with_query():
    upstream = Upstream(
        lambda request: httpx.Response(
            200, json={"data": [{"id": "llama3"}]}, headers={"x-upstream": "yes"}
        )
    )
    with TestClient(_app(upstream)) as client:
        r = client.get("/v1/models?limit=5")

    assert r.status_code == 200
    assert r.json() == {"data": [{"id": "llama3"}]}
    assert r.headers["x-upstream"] == "yes"
    sent = upstream.requests[0]
    assert sent.url.path == "/v1/models"
    assert sent.url.params["limit"] == "5"
    assert sent.content == b""


def test_repeated_headers_relayed_in_both_directions():
    upstream = Upstream(
        lambda request: httpx.Response(
            200,
            json={"ok": True},
            headers=[("set-cookie", "a=1; Path=/"), ("set-cookie", "b=2; Path=/")],
        )
    )
    with TestClient(_app(upstream)) as client:
        r = client.post(
            "/v1/chat/completions",
            json={},
            headers=[("x-tag", "one"), ("x-tag", "two")],
        )

    assert r.status_code == 200
    assert r.headers.get_list("set-cookie") == ["a=1; Path=/", "b=2; Path=/"]
    assert upstream.requests[0].headers.get_list("x-tag") == ["one", "two"]


def test_empty_body_gets_model_only():
    upstream = Upstream()
    with TestClient(_app(upstream)) as client:
        r = client.post("/v1/chat/completions", content=b"")
    assert r.status_code == 200
    assert json.loads(upstream.requests[0].content) == {"model": "llama3"}


def test_missing_content_type_defaults_to_json():
    upstream = Upstream(lambda request: httpx.Response(200, content=b'{"a": 1}'))
    with TestClient(_app(upstream)) as client:
        r = client.post("/v1/chat/completions", json={})
    assert r.headers["content-type"] == "application/json"
    assert r.content == b'{"a": 1}'


@pytest.mark.parametrize("body", [b"[1, 2, 3]", b"{not json"])
def test_invalid_body_is_rejected_without_forwarding(body):
    upstream = Upstream()
    with TestClient(_app(upstream)) as client:
        r = client.post(
            "/v1/chat/completions",
            content=body,
            headers={"content-type": "application/json"},
        )
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "ValidationError"
    assert r.headers["access-control-allow-origin"] == "*"
    assert upstream.requests == []


def test_malformed_target_returns_400_without_forwarding():
    upstream = Upstream()
    broken = Model(id="b", alias="broken", url="not a url", real_model="m")
    with TestClient(_app(upstream, model=broken)) as client:
        r = client.post("/v1/chat/completions", json={"messages": []})
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "ValidationError"
    assert upstream.requests == []


def test_unreachable_upstream_returns_502():
    def refuse(request):
        raise httpx.ConnectError("Connection refused", request=request)

    with TestClient(_app(Upstream(refuse))) as client:
        r = client.post("/v1/chat/completions", json={"messages": []})

    assert r.status_code == 502
    error = r.json()["error"]
    assert error["type"] == "ConnectionError"
    assert "Connection refused" in error["details"]


def test_other_transport_failure_returns_500():
    def explode(request):
        raise httpx.ReadError("reset", request=request)

    with TestClient(_app(Upstream(explode))) as client:
        r = client.post("/v1/chat/completions", json={})

    assert r.status_code == 500
    assert r.json()["error"]["type"] == "UnknownError"


def test_backend_error_status_and_body_passthrough():
    body = '{"error": {"message": "rate limited"}}'
    upstream = Upstream(lambda request: httpx.Response(429, text=body))
    with TestClient(_app(upstream)) as client:
        r = client.post("/v1/chat/completions", json={})

    assert r.status_code == 429
    error = r.json()["error"]
    assert error["type"] == "BackendError"
    assert error["status"] == 429
    assert error["reason"] == "Too Many Requests"
    assert error["details"] == body
    assert r.headers["access-control-allow-origin"] == "*"


def test_options_preflight_on_any_path():
    upstream = Upstream()
    with TestClient(_app(upstream)) as client:
        r = client.options(
            "/anything/at/all",
            headers={"Access-Control-Request-Headers": "authorization, content-type"},
        )
    assert r.status_code == 200
    assert r.content == b""
    assert r.headers["access-control-allow-origin"] == "*"
    assert "OPTIONS" in r.headers["access-control-allow-methods"]
    assert r.headers["access-control-allow-headers"] == "authorization, content-type"
    assert "access-control-max-age" in r.headers
    assert upstream.requests == []


def test_unknown_route_and_wrong_method_envelopes():
    with TestClient(_app(Upstream())) as client:
        missing = client.get("/v1/unknown")
        wrong = client.get("/v1/chat/completions")

    assert missing.status_code == 404
    assert missing.json()["error"]["type"] == "NotFoundError"
    assert missing.headers["access-control-allow-origin"] == "*"
    assert wrong.status_code == 405
    assert wrong.json()["error"]["type"] == "MethodNotAllowed"


def test_requests_are_logged(tmp_path):
    log_path = tmp_path / "requests.jsonl"
    upstream = Upstream(lambda request: httpx.Response(503, text="down"))
    app = _app(upstream, request_log=JsonlLogger(str(log_path)))
    with TestClient(app) as client:
        client.post("/v1/chat/completions", json={})

    record = json.loads(log_path.read_text(encoding="utf-8").splitlines()[-1])
    assert record["alias"] == "gpt-4"
    assert record["status"] == 503
    assert record["error"] == "BackendError"
    assert record["target"] == "http://backend.test/v1/chat/completions"


# -- streaming ---------------------------------------------------------------

SSE_CHUNKS = [
    b'data: {"choices": [{"delta": {"content": "Hel"}}]}\n\n',
    b'data: {"choices": [{"delta": {"content": "lo"}}]}\n\n',
    b"data: [DONE]\n\n",
]


async def _chunks(chunks):
    for chunk in chunks:
        yield chunk


def _streaming_upstream(content_type="text/event-stream"):
    return Upstream(
        lambda request: httpx.Response(
            200,
            headers={"content-type": content_type},
            content=_chunks(SSE_CHUNKS),
        )
    )


async def _call_asgi(app, method, path, body=b""):
    """Drive the app directly so each body message (chunk) stays observable."""

    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "root_path": "",
        "headers": [
            (b"host", b"127.0.0.1:3000"),
            (b"content-type", b"application/json"),
            (b"content-length", str(len(body)).encode()),
        ],
        "client": ("127.0.0.1", 50000),
        "server": ("127.0.0.1", 3000),
    }
    request_sent = False
    never = asyncio.Event()
    messages = []

    async def receive():
        nonlocal request_sent
        if not request_sent:
            request_sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        await never.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    await app(scope, receive, send)
    return messages


def test_stream_chunks_relayed_in_order_without_reframing():
    upstream = _streaming_upstream()
    app = _app(upstream)
    body = json.dumps({"model": "gpt-4", "stream": True, "messages": []}).encode()

    async def _run():
        try:
            return await _call_asgi(app, "POST", "/v1/chat/completions", body)
        finally:
            await app.state.forwarder.aclose()

    messages = asyncio.run(_run())

    start = messages[0]
    assert start["type"] == "http.response.start"
    assert start["status"] == 200
    headers = {k.decode(): v.decode() for k, v in start["headers"]}
    assert headers["content-type"].startswith("text/event-stream")
    assert headers["cache-control"] == "no-cache"
    assert headers["access-control-allow-origin"] == "*"

    chunks = [m["body"] for m in messages[1:] if m["type"] == "http.response.body" and m["body"]]
    assert chunks == SSE_CHUNKS
    assert messages[-1]["more_body"] is False
    assert json.loads(upstream.requests[0].content)["stream"] is True


def test_event_stream_upstream_forces_streaming_mode():
    with TestClient(_app(_streaming_upstream())) as client:
        r = client.post("/v1/chat/completions", json={"messages": []})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.content == b"".join(SSE_CHUNKS)


def test_stream_request_forces_event_stream_content_type():
    with TestClient(_app(_streaming_upstream("application/octet-stream"))) as client:
        r = client.post("/v1/chat/completions", json={"stream": True})
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.content == b"".join(SSE_CHUNKS)


def test_stream_interrupted_mid_way_ends_response():
    async def broken():
        yield SSE_CHUNKS[0]
        raise httpx.ReadError("upstream went away")

    upstream = Upstream(
        lambda request: httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=broken()
        )
    )
    with TestClient(_app(upstream)) as client:
        r = client.post("/v1/chat/completions", json={"stream": True})

    assert r.status_code == 200
    assert r.content == SSE_CHUNKS[0]
