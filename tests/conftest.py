"""
pytest configuration and fixtures.
"""

import sys
from pathlib import Path
from typing import Generator

import pytest

# Make the package and tests/helpers.py importable without installing
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from httptun.config import ClientConfig
from httptun.proxy import Proxy, ProxyServer

from helpers import TCPServer, echo_handler, http_handler


@pytest.fixture
def proxy() -> Proxy:
    """Router tuned for fast tests: short read deadlines and response windows."""
    return Proxy(
        idle_interval=0.05,
        idle_timeout=5.0,
        flush_interval=0.01,
        response_window=1.0,
        dial_timeout=2.0,
    )


@pytest.fixture
def proxy_server(proxy: Proxy) -> Generator[ProxyServer, None, None]:
    server = ProxyServer(host="127.0.0.1", port=0, proxy=proxy)
    server.start()
    yield server
    server.stop()


@pytest.fixture
def client_config(proxy_server: ProxyServer) -> ClientConfig:
    return ClientConfig(
        proxy_url=proxy_server.url + "/",
        connect_timeout=2.0,
        idle_timeout=3.0,
        buffer_size=4096,
    )


@pytest.fixture
def upstream() -> Generator[TCPServer, None, None]:
    """Destination that only accepts; tests drive the accepted sockets."""
    srv = TCPServer()
    yield srv
    srv.close()


@pytest.fixture
def echo_server() -> Generator[TCPServer, None, None]:
    srv = TCPServer(echo_handler)
    yield srv
    srv.close()


@pytest.fixture
def http_server() -> Generator[TCPServer, None, None]:
    srv = TCPServer(http_handler)
    yield srv
    srv.close()
