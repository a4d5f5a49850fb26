from __future__ import annotations

import uuid
from typing import Optional, Tuple

# Wire protocol shared by both halves of the tunnel.
# - Every request carries Connection-Id and Destination-Address.
# - POST bodies are forwarded to the outbound socket.
# - GET response bodies carry bytes read from the outbound socket.

HEADER_CONN_ID = "Connection-Id"
HEADER_DEST_ADDR = "Destination-Address"
HEADER_UPSTREAM_EOF = "Upstream-EOF"
HEADER_PROXY_HOST = "Proxy-Host"

BAD_GATEWAY = 502

DEFAULT_BUFFER_SIZE = 8096
DEFAULT_IDLE_INTERVAL = 0.1
DEFAULT_IDLE_TIMEOUT = 70.0
DEFAULT_FLUSH_INTERVAL = 0.05
DEFAULT_DIAL_TIMEOUT = 10.0
DEFAULT_RESPONSE_WINDOW = 10.0


class TunnelError(Exception):
    """Base class for tunnel failures surfaced to callers."""


class ProxyResponseError(TunnelError):
    def __init__(self, status: int, body: str = "") -> None:
        self.status = int(status)
        self.body = body
        super().__init__(f"proxy responded {self.status}: {body[:256]}")


class TunnelClosed(TunnelError):
    pass


def new_connection_id() -> str:
    return uuid.uuid4().hex


def split_host_port(hp: str) -> Tuple[str, Optional[int]]:
    s = (hp or "").strip()
    if not s:
        return "", None
    if s.startswith("["):
        # [v6]:port
        host, _, rest = s[1:].partition("]")
        if rest.startswith(":"):
            try:
                return host, int(rest[1:])
            except ValueError:
                return host, None
        return host, None
    if ":" in s:
        host, port_s = s.rsplit(":", 1)
        try:
            return host.strip(), int(port_s.strip())
        except ValueError:
            return host.strip(), None
    return s, None


def is_true(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"
