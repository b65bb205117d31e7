"""Host port probes."""

from __future__ import annotations

import errno
import socket

import structlog

from deploy_agent.domain.ports.services import PortProbe


logger = structlog.get_logger(__name__)


class SocketPortProbe(PortProbe):
    """Checks a port by trying to bind it."""

    def __init__(self, host: str = "0.0.0.0") -> None:  # noqa: S104
        self._host = host

    async def is_port_in_use(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((self._host, port))
            except OSError as e:
                if e.errno != errno.EADDRINUSE:
                    # Anything we cannot bind is treated as taken.
                    logger.warning("port_probe_error", port=port, error=str(e))
                return True
        return False


class StaticPortProbe(PortProbe):
    """Reports a fixed set of ports as bound."""

    def __init__(self, in_use: set[int] | None = None) -> None:
        self.in_use = set(in_use or ())

    async def is_port_in_use(self, port: int) -> bool:
        return port in self.in_use
