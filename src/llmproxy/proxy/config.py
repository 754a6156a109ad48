from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class ProxyConfig:
    host: str = "127.0.0.1"
    start_port: int = 3000
    max_port: int = 65_535
    bind_retries: int = 20
    startup_timeout_s: float = 10.0
    drain_timeout_s: float = 5.0
    connect_timeout_ms: int = 10_000
    read_timeout_ms: int = 0  # 0 = wait on the backend indefinitely
    stop_missing_ok: bool = False
    restart_on_update: bool = True
    autostart_default: bool = True
    store_path: str = "configs/models.json"
    log_path: str = "logs/llm_proxy.jsonl"
    max_log_bytes: int = 25_000_000
    log_requests: bool = True
    log_level: str = "INFO"
    config_file_path: Optional[str] = None

    @classmethod
    def load(cls) -> "ProxyConfig":
        from .config_loader import load_proxy_config

        return load_proxy_config()

    def upstream_timeout(self):
        """Build the httpx timeout used for backend calls.

        Only the connect phase is bounded by default so long-lived streams are
        never cut off by the proxy.
        """
        import httpx

        connect = self.connect_timeout_ms / 1000 if self.connect_timeout_ms > 0 else None
        read = self.read_timeout_ms / 1000 if self.read_timeout_ms > 0 else None
        return httpx.Timeout(connect=connect, read=read, write=read, pool=connect)
