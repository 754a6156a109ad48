"""Process logging for ``llm-proxy serve``.

Human-readable lines go to ``<log dir>/<log_name>.log``. The log dir is the
directory of ``ProxyConfig.log_path`` (the JSONL request log), so both logs of
one deployment sit side by side; ``LLM_PROXY_LOG_DIR`` overrides it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .proxy.config import ProxyConfig

__all__ = ["LOG_DIR_ENV", "configure_logging", "resolve_level", "resolve_log_dir"]

LOG_DIR_ENV = "LLM_PROXY_LOG_DIR"

_MANAGED_HANDLER_FLAG = "_llmproxy_managed_handler"

# httpx/httpcore log every upstream request at INFO and DEBUG.
_UPSTREAM_CLIENT_LOGGERS = ("httpx", "httpcore")


def resolve_log_dir(cfg: ProxyConfig) -> Path:
    env_override = os.environ.get(LOG_DIR_ENV)
    if env_override:
        return Path(env_override).expanduser()
    return Path(cfg.log_path).expanduser().parent


def resolve_level(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO


def _remove_managed_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _MANAGED_HANDLER_FLAG, False):
            logger.removeHandler(handler)
            handler.close()


def _managed(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    setattr(handler, _MANAGED_HANDLER_FLAG, True)
    return handler


def configure_logging(
    cfg: ProxyConfig,
    *,
    log_name: str = "llm_proxy",
    include_console: bool = True,
) -> Path:
    """Route root logging to the proxy log file at ``cfg.log_level``.

    Calling it again replaces the handlers installed by the previous call.
    """

    level = resolve_level(cfg.log_level)
    target_directory = resolve_log_dir(cfg)
    target_directory.mkdir(parents=True, exist_ok=True)
    log_path = target_directory / f"{log_name}.log"

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    _remove_managed_handlers(root_logger)
    root_logger.addHandler(
        _managed(logging.FileHandler(log_path, encoding="utf-8"), level)
    )
    if include_console:
        root_logger.addHandler(_managed(logging.StreamHandler(), level))

    for name in _UPSTREAM_CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logging.captureWarnings(True)
    return log_path
