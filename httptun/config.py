from __future__ import annotations

import os
from dataclasses import dataclass

from .protocol import (
    DEFAULT_BUFFER_SIZE,
    DEFAULT_DIAL_TIMEOUT,
    DEFAULT_FLUSH_INTERVAL,
    DEFAULT_IDLE_INTERVAL,
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_RESPONSE_WINDOW,
)


@dataclass(frozen=True)
class ServerConfig:
    # Listen config
    listen_host: str = "127.0.0.1"
    listen_port: int = 8080
    log_level: str = "INFO"
    # FQDN advertised via Proxy-Host ("" = single instance, no affinity)
    proxy_host: str = ""
    # Outbound connections
    dial_timeout: float = DEFAULT_DIAL_TIMEOUT
    buffer_size: int = DEFAULT_BUFFER_SIZE
    # Read pacing + eviction
    idle_interval: float = DEFAULT_IDLE_INTERVAL
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    flush_interval: float = DEFAULT_FLUSH_INTERVAL
    response_window: float = DEFAULT_RESPONSE_WINDOW
    # status ticker (0 = off)
    status_interval: float = 0.0


@dataclass(frozen=True)
class ClientConfig:
    # Tunnel server, e.g. http://tunnel.example.com:8080/
    proxy_url: str = "http://127.0.0.1:8080/"
    connect_timeout: float = DEFAULT_DIAL_TIMEOUT
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    buffer_size: int = DEFAULT_BUFFER_SIZE
    # Local forwarder
    listen_host: str = "127.0.0.1"
    listen_port: int = 1080
    destination: str = ""
    log_level: str = "INFO"


def load_server_config_from_env() -> ServerConfig:
    return ServerConfig(
        listen_host=os.environ.get("HTTPTUN_LISTEN_HOST", "127.0.0.1"),
        listen_port=int(os.environ.get("HTTPTUN_LISTEN_PORT", "8080")),
        log_level=os.environ.get("HTTPTUN_LOG_LEVEL", "INFO"),
        proxy_host=os.environ.get("HTTPTUN_PROXY_HOST", ""),
        dial_timeout=float(os.environ.get("HTTPTUN_DIAL_TIMEOUT", str(DEFAULT_DIAL_TIMEOUT))),
        buffer_size=int(os.environ.get("HTTPTUN_BUFFER_SIZE", str(DEFAULT_BUFFER_SIZE))),
        idle_interval=float(os.environ.get("HTTPTUN_IDLE_INTERVAL", str(DEFAULT_IDLE_INTERVAL))),
        idle_timeout=float(os.environ.get("HTTPTUN_IDLE_TIMEOUT", str(DEFAULT_IDLE_TIMEOUT))),
        flush_interval=float(os.environ.get("HTTPTUN_FLUSH_INTERVAL", str(DEFAULT_FLUSH_INTERVAL))),
        response_window=float(os.environ.get("HTTPTUN_RESPONSE_WINDOW", str(DEFAULT_RESPONSE_WINDOW))),
        status_interval=float(os.environ.get("HTTPTUN_STATUS_INTERVAL_SECONDS", "0")),
    )


def load_client_config_from_env() -> ClientConfig:
    return ClientConfig(
        proxy_url=os.environ.get("HTTPTUN_PROXY_URL", "http://127.0.0.1:8080/"),
        connect_timeout=float(os.environ.get("HTTPTUN_CONNECT_TIMEOUT", str(DEFAULT_DIAL_TIMEOUT))),
        idle_timeout=float(os.environ.get("HTTPTUN_IDLE_TIMEOUT", str(DEFAULT_IDLE_TIMEOUT))),
        buffer_size=int(os.environ.get("HTTPTUN_BUFFER_SIZE", str(DEFAULT_BUFFER_SIZE))),
        listen_host=os.environ.get("HTTPTUN_FORWARD_HOST", "127.0.0.1"),
        listen_port=int(os.environ.get("HTTPTUN_FORWARD_PORT", "1080")),
        destination=os.environ.get("HTTPTUN_DESTINATION", ""),
        log_level=os.environ.get("HTTPTUN_LOG_LEVEL", "INFO"),
    )
