"""Per-alias OpenAI-compatible reverse proxies.

Each running alias owns one listener (FastAPI app served by uvicorn on its own
port) that forwards to the alias' backend, rewriting ``model`` and relaying
streamed output unchanged.
"""

from .config import ProxyConfig
from .ports import PortAllocator
from .router import Endpoint, ProxyRouter, RuntimeServerEntry
from .server import ReverseProxyServer, ServerState

__all__ = [
    "Endpoint",
    "PortAllocator",
    "ProxyConfig",
    "ProxyRouter",
    "ReverseProxyServer",
    "RuntimeServerEntry",
    "ServerState",
]
