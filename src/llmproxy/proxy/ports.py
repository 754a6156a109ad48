"""Sequential free-port probing.

A probe is advisory: the port is released again immediately, so another
process (or another listener in this one) can take it before the real bind.
Callers must treat the listener's own bind as the authoritative answer and
probe again from ``port + 1`` when it fails.
"""

from __future__ import annotations

import logging
import os
import socket

from ..errors import NoFreePortError

logger = logging.getLogger(__name__)


def bind_socket(host: str, port: int, backlog: int | None = None) -> socket.socket:
    """Create a TCP socket bound to ``(host, port)``; raises ``OSError`` on conflict.

    With ``backlog`` the socket is also put in listening state. Only a
    listening socket holds the port exclusively: two ``SO_REUSEADDR`` sockets
    may share a bound-but-idle port on Linux.
    """

    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        # Allows rebinding a port whose previous listener left TIME_WAIT sockets;
        # does not allow two live listeners on Linux/macOS.
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        if backlog is not None:
            sock.listen(backlog)
    except OSError:
        sock.close()
        raise
    return sock


class PortAllocator:
    def __init__(
        self, host: str = "127.0.0.1", start_port: int = 3000, max_port: int = 65_535
    ):
        self.host = host
        self.start_port = start_port
        self.max_port = max_port

    def probe(self, port: int) -> bool:
        try:
            sock = bind_socket(self.host, port)
        except OSError:
            return False
        sock.close()
        return True

    def find_free(self, start_port: int | None = None) -> int:
        start = self.start_port if start_port is None else start_port
        for port in range(max(start, 1), self.max_port + 1):
            if self.probe(port):
                return port
            logger.debug("[ports] Port %s busy", port)
        raise NoFreePortError(
            f"No free port on {self.host} between {start} and {self.max_port}"
        )
