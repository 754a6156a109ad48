import os
import threading
import time
from contextlib import contextmanager

import pytest
import uvicorn

from llmproxy.proxy import config_loader
from llmproxy.proxy.config import ProxyConfig
from llmproxy.proxy.ports import bind_socket
from llmproxy.registry import MemoryStore, ModelRegistry


@pytest.fixture(autouse=True)
def isolated_llm_proxy_env(tmp_path, monkeypatch):
    """Drop ambient ``LLM_PROXY_*`` and proxy variables; keep config and logs in tmp."""

    for key in list(os.environ.keys()):
        if key.startswith(config_loader.ENV_PREFIX):
            monkeypatch.delenv(key, raising=False)
    # Loopback test traffic must not be routed through an ambient HTTP proxy
    for key in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY"):
        monkeypatch.delenv(key, raising=False)
        monkeypatch.delenv(key.lower(), raising=False)
    monkeypatch.setenv(config_loader.CONFIG_FILE_ENV, str(tmp_path / "llm_proxy.toml"))
    monkeypatch.setenv("LLM_PROXY_LOG_DIR", str(tmp_path / "logs"))
    yield


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def registry(store):
    return ModelRegistry(store)


@pytest.fixture
def proxy_cfg(tmp_path):
    return ProxyConfig(
        start_port=43100,
        startup_timeout_s=10.0,
        drain_timeout_s=1.0,
        log_requests=False,
        log_level="WARNING",
        store_path=str(tmp_path / "models.json"),
        log_path=str(tmp_path / "logs" / "requests.jsonl"),
    )


@contextmanager
def serve_app(app, host="127.0.0.1"):
    """Run an ASGI app on an OS-assigned port for the duration of the block."""

    sock = bind_socket(host, 0)
    port = sock.getsockname()[1]
    config = uvicorn.Config(app, log_config=None, access_log=False, lifespan="off")
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, kwargs={"sockets": [sock]}, daemon=True)
    thread.start()
    deadline = time.monotonic() + 10
    while not server.started and time.monotonic() < deadline:
        time.sleep(0.01)
    assert server.started, "fake upstream failed to start"
    try:
        yield f"http://{host}:{port}"
    finally:
        server.should_exit = True
        thread.join(timeout=10)
        sock.close()


@pytest.fixture
def serve_asgi():
    return serve_app
