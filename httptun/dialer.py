from __future__ import annotations

import logging
from typing import Callable, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import requests
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from .protocol import DEFAULT_DIAL_TIMEOUT, DEFAULT_IDLE_TIMEOUT, ProxyResponseError, split_host_port

logger = logging.getLogger("httptun.dialer")

SessionFactory = Callable[[], requests.Session]


def new_session() -> requests.Session:
    """
    Session holding a single keep-alive connection to the tunnel server.
    Retries are disabled: a replayed POST would duplicate tunneled bytes.
    """
    sess = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=1,
        pool_maxsize=1,
        max_retries=Retry(total=0, connect=0, read=0, redirect=0, backoff_factor=0),
    )
    sess.mount("http://", adapter)
    sess.mount("https://", adapter)
    sess.headers.update(
        {
            "Accept": "*/*",
            "Accept-Encoding": "identity",
            "Connection": "keep-alive",
        }
    )
    # Tunnel traffic must go straight to the tunnel server
    sess.trust_env = False
    return sess


def pin_url(url: str, proxy_host: Optional[str]) -> str:
    """
    Point `url` at `proxy_host`, keeping the original port when the pinned
    host does not name one.
    """
    if not proxy_host:
        return url
    u = urlsplit(url)
    host, port = split_host_port(proxy_host)
    if not host:
        return url
    if port is None:
        port = u.port
    if ":" in host:
        host = f"[{host}]"
    netloc = f"{host}:{port}" if port is not None else host
    if u.username:
        cred = u.username if u.password is None else f"{u.username}:{u.password}"
        netloc = f"{cred}@{netloc}"
    return urlunsplit((u.scheme, netloc, u.path, u.query, u.fragment))


class ProxyDialer:
    """
    Opens and reopens the HTTP transport to the tunnel server.

    Each client loop owns one dialer, so reads and writes never share an HTTP
    connection. After a transport failure the dialer is marked broken and the
    next request goes out on a fresh session.
    """

    def __init__(
        self,
        proxy_url: str,
        connect_timeout: float = DEFAULT_DIAL_TIMEOUT,
        read_timeout: float = DEFAULT_IDLE_TIMEOUT,
        session_factory: Optional[SessionFactory] = None,
        name: str = "proxy",
    ) -> None:
        self.proxy_url = proxy_url
        self.connect_timeout = float(connect_timeout)
        self.read_timeout = float(read_timeout)
        self.session_factory = session_factory or new_session
        self.name = name
        self._session: Optional[requests.Session] = None
        self._broken = False
        self.dials = 0

    def dial(self) -> requests.Session:
        self.close()
        self._session = self.session_factory()
        self._broken = False
        self.dials += 1
        logger.debug("dialer[%s]: opened session #%d to %s", self.name, self.dials, self.proxy_url)
        return self._session

    def redial_if_necessary(self) -> requests.Session:
        if self._session is None or self._broken:
            return self.dial()
        return self._session

    def mark_broken(self) -> None:
        self._broken = True

    def request(
        self,
        method: str,
        headers: Dict[str, str],
        data: Optional[bytes] = None,
        stream: bool = False,
        proxy_host: Optional[str] = None,
    ) -> requests.Response:
        sess = self.redial_if_necessary()
        url = pin_url(self.proxy_url, proxy_host)
        try:
            resp = sess.request(
                method,
                url,
                headers=headers,
                data=data,
                stream=stream,
                timeout=(self.connect_timeout, self.read_timeout),
                allow_redirects=False,
            )
        except requests.RequestException:
            self.mark_broken()
            raise
        if resp.status_code != 200:
            try:
                text = resp.text
            except requests.RequestException:
                text = ""
            resp.close()
            # Server asks us to drop the connection on every failure
            self.mark_broken()
            raise ProxyResponseError(resp.status_code, text)
        return resp

    def close(self) -> None:
        sess, self._session = self._session, None
        if sess is not None:
            sess.close()
