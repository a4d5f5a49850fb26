from .client import Conn, dial
from .config import ClientConfig, ServerConfig
from .proxy import Proxy, ProxyServer, start_server
from .protocol import ProxyResponseError, TunnelClosed, TunnelError

__all__ = [
    "ClientConfig",
    "Conn",
    "Proxy",
    "ProxyResponseError",
    "ProxyServer",
    "ServerConfig",
    "TunnelClosed",
    "TunnelError",
    "dial",
    "start_server",
]
