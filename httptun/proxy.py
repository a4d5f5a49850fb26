from __future__ import annotations

import logging
import os
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, Iterator, List, Optional

from .flushing import ChunkedWriter, FlushingWriter, iter_chunked_body
from .lazy_conn import DialFunc, LazyConn
from .protocol import (
    BAD_GATEWAY,
    DEFAULT_BUFFER_SIZE,
    DEFAULT_DIAL_TIMEOUT,
    DEFAULT_FLUSH_INTERVAL,
    DEFAULT_IDLE_INTERVAL,
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_RESPONSE_WINDOW,
    HEADER_CONN_ID,
    HEADER_DEST_ADDR,
    HEADER_PROXY_HOST,
    HEADER_UPSTREAM_EOF,
    split_host_port,
)
from .status import TunnelStats, status_ticker

# Server half of the tunnel.
# - POST: body bytes are written to the outbound socket for Connection-Id.
# - GET: bytes read from the outbound socket are streamed back (bounded reads).
# - Outbound sockets are dialed lazily, one per Connection-Id, and evicted when idle.

logger = logging.getLogger("httptun.proxy")
if not logger.handlers:
    logging.basicConfig(
        level=os.environ.get("HTTPTUN_LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(processName)s(%(process)d)/%(threadName)s: %(message)s",
    )


def tcp_dialer(timeout: float = DEFAULT_DIAL_TIMEOUT) -> DialFunc:
    def _dial(addr: str) -> socket.socket:
        host, port = split_host_port(addr)
        if not host or port is None:
            raise OSError(f"invalid destination address {addr!r}")
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.settimeout(None)
        return sock

    return _dial


class Proxy:
    """
    Demultiplexes tunnel requests by Connection-Id onto LazyConns.

    dial:            opens the outbound connection; defaults to plain TCP.
    host:            FQDN guaranteed to reach this instance, advertised via Proxy-Host
                     so clients that came in through round-robin DNS stick to us.
    idle_interval:   read deadline for each outbound read made on behalf of a GET.
    idle_timeout:    connections without requests for this long are evicted.
    buffer_size:     size of each outbound read and of each body copy.
    flush_interval:  cadence at which streamed GET bodies are pushed to the client.
    response_window: longest a single GET keeps streaming before it is ended.
    """

    def __init__(
        self,
        dial: Optional[DialFunc] = None,
        host: str = "",
        idle_interval: float = DEFAULT_IDLE_INTERVAL,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        dial_timeout: float = DEFAULT_DIAL_TIMEOUT,
        response_window: float = DEFAULT_RESPONSE_WINDOW,
        stats: Optional[TunnelStats] = None,
    ) -> None:
        self.dial = dial or tcp_dialer(dial_timeout)
        self.host = host or ""
        self.idle_interval = float(idle_interval) if idle_interval > 0 else DEFAULT_IDLE_INTERVAL
        self.idle_timeout = float(idle_timeout) if idle_timeout > 0 else DEFAULT_IDLE_TIMEOUT
        self.buffer_size = int(buffer_size) if buffer_size > 0 else DEFAULT_BUFFER_SIZE
        self.flush_interval = float(flush_interval) if flush_interval > 0 else DEFAULT_FLUSH_INTERVAL
        self.response_window = float(response_window) if response_window > 0 else DEFAULT_RESPONSE_WINDOW
        self.stats = stats or TunnelStats()
        self._conns: Dict[str, LazyConn] = {}
        self._lock = threading.Lock()

    # Connection map

    def get_lazy_conn(self, conn_id: str, addr: str) -> LazyConn:
        with self._lock:
            lc = self._conns.get(conn_id)
            if lc is None:
                lc = LazyConn(conn_id, addr, self._counted_dial)
                self._conns[conn_id] = lc
            return lc

    def lookup(self, conn_id: str) -> Optional[LazyConn]:
        with self._lock:
            return self._conns.get(conn_id)

    def size(self) -> int:
        with self._lock:
            return len(self._conns)

    def discard(self, lc: LazyConn, reason: str = "") -> None:
        with self._lock:
            if self._conns.get(lc.id) is lc:
                del self._conns[lc.id]
        if reason:
            logger.info("proxy[%s]: dropping connection to %s: %s", lc.id, lc.addr, reason)
        lc.close()

    def evict_idle(self, now: Optional[float] = None) -> int:
        with self._lock:
            stale: List[LazyConn] = [lc for lc in self._conns.values() if lc.idle_for(now) >= self.idle_timeout]
            for lc in stale:
                del self._conns[lc.id]
        for lc in stale:
            logger.debug("proxy[%s]: evicting idle connection to %s", lc.id, lc.addr)
            lc.close()
        if stale:
            self.stats.incr("evictions", len(stale))
        return len(stale)

    def close_all(self) -> None:
        with self._lock:
            conns = list(self._conns.values())
            self._conns.clear()
        for lc in conns:
            lc.close()

    def _counted_dial(self, addr: str) -> socket.socket:
        self.stats.incr("dials")
        return self.dial(addr)

    # Request handling

    def serve_http(self, h: BaseHTTPRequestHandler) -> None:
        method = (h.command or "").upper()
        if method not in ("GET", "POST"):
            self._bad_gateway(h, f"Unsupported method {method}")
            return
        conn_id = (h.headers.get(HEADER_CONN_ID) or "").strip()
        if not conn_id:
            self._bad_gateway(h, f"No id found in header {HEADER_CONN_ID}")
            return
        addr = (h.headers.get(HEADER_DEST_ADDR) or "").strip()
        if not addr:
            self._bad_gateway(h, f"No address found in header {HEADER_DEST_ADDR}")
            return
        # POST framing: None means a chunked body
        body_length: Optional[int] = None
        if method == "POST":
            te = (h.headers.get("Transfer-Encoding") or "").strip().lower()
            if te:
                if te.split(",")[-1].strip() != "chunked":
                    self._bad_gateway(h, f"Unsupported Transfer-Encoding {te}")
                    return
            else:
                raw = (h.headers.get("Content-Length") or "0").strip()
                if not (raw.isascii() and raw.isdigit()):
                    self._bad_gateway(h, f"Invalid Content-Length {raw[:32]!r}")
                    return
                body_length = int(raw)

        lc = self.get_lazy_conn(conn_id, addr)
        lc.touch()
        try:
            lc.get()
        except OSError as e:
            self.stats.incr("dial_failures")
            self.discard(lc)
            self._bad_gateway(h, f"Unable to dial {addr}: {e}")
            return

        if method == "POST":
            self._handle_write(h, lc, body_length)
        else:
            self._handle_read(h, lc)

    def _iter_body(self, h: BaseHTTPRequestHandler, length: Optional[int]) -> Iterator[bytes]:
        if length is None:
            yield from iter_chunked_body(h.rfile, self.buffer_size)
            return
        remaining = length
        while remaining > 0:
            chunk = h.rfile.read(min(self.buffer_size, remaining))
            if not chunk:
                raise OSError("request body ended early")
            remaining -= len(chunk)
            yield chunk

    def _handle_write(self, h: BaseHTTPRequestHandler, lc: LazyConn, length: Optional[int]) -> None:
        written = 0
        try:
            for chunk in self._iter_body(h, length):
                lc.write(chunk)
                written += len(chunk)
        except ValueError as e:
            # Part of the body may already be upstream; the stream is unusable
            self.discard(lc, f"malformed body: {e}")
            self._bad_gateway(h, f"Malformed request body: {e}")
            return
        except OSError as e:
            self.stats.incr("broken")
            self.discard(lc, f"write failed: {e}")
            self._bad_gateway(h, f"Unable to write to {lc.addr}: {e}")
            return
        if written:
            self.stats.incr("bytes_up", written)
        h.send_response(200)
        self._send_affinity(h)
        h.send_header("Content-Length", "0")
        h.end_headers()

    def _handle_read(self, h: BaseHTTPRequestHandler, lc: LazyConn) -> None:
        if lc.hit_eof:
            # Nothing more will ever arrive for this id
            h.send_response(200)
            h.send_header(HEADER_UPSTREAM_EOF, "true")
            self._send_affinity(h)
            h.send_header("Content-Length", "0")
            h.end_headers()
            return

        # First read happens before the headers so Upstream-EOF is exact
        try:
            data = lc.read(self.buffer_size, self.idle_interval)
        except (OSError, ValueError) as e:
            self.stats.incr("broken")
            self.discard(lc, f"read failed: {e}")
            self._bad_gateway(h, f"Unable to read from {lc.addr}: {e}")
            return

        h.send_response(200)
        if data == b"":
            self.stats.incr("upstream_eofs")
            h.send_header(HEADER_UPSTREAM_EOF, "true")
        self._send_affinity(h)
        h.send_header("Content-Type", "application/octet-stream")
        h.send_header("Cache-Control", "no-cache")
        h.send_header("X-Accel-Buffering", "no")
        h.send_header("Transfer-Encoding", "chunked")
        h.end_headers()

        body = ChunkedWriter(h.wfile)
        deadline = time.monotonic() + self.response_window
        try:
            with FlushingWriter(body, self.flush_interval) as out:
                while data:
                    out.write(data)
                    self.stats.incr("bytes_down", len(data))
                    if time.monotonic() >= deadline:
                        break
                    try:
                        data = lc.read(self.buffer_size, self.idle_interval)
                    except (OSError, ValueError) as e:
                        logger.warning("proxy[%s]: unexpected read error: %s", lc.id, e)
                        self.stats.incr("broken")
                        self.discard(lc)
                        break
                    if data == b"":
                        self.stats.incr("upstream_eofs")
            body.close()
        except OSError as e:
            # Bytes already taken from the outbound socket cannot be delivered
            logger.warning("proxy[%s]: write error: %s", lc.id, e)
            self.stats.incr("broken")
            self.discard(lc)
            h.close_connection = True

    def _send_affinity(self, h: BaseHTTPRequestHandler) -> None:
        if self.host:
            h.send_header(HEADER_PROXY_HOST, self.host)

    def _bad_gateway(self, h: BaseHTTPRequestHandler, msg: str) -> None:
        logger.warning("proxy: responding bad gateway: %s", msg)
        self.stats.incr("bad_gateways")
        body = msg.encode("utf-8", "replace")
        h.close_connection = True
        h.send_response(BAD_GATEWAY)
        h.send_header("Connection", "close")
        h.send_header("Content-Type", "text/plain; charset=utf-8")
        h.send_header("Content-Length", str(len(body)))
        h.end_headers()
        h.wfile.write(body)


class _ProxyHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, server_address, RequestHandlerClass, proxy: Proxy, bind_and_activate=True):
        self.proxy = proxy
        super().__init__(server_address, RequestHandlerClass, bind_and_activate)


class ProxyRequestHandler(BaseHTTPRequestHandler):
    server: _ProxyHTTPServer  # type: ignore[assignment]
    protocol_version = "HTTP/1.1"
    # Buffered so FlushingWriter decides when streamed bytes hit the wire
    wbufsize = -1
    # Added to Proxy.idle_timeout for the socket timeout of keep-alive connections
    timeout_slack = 5.0

    def setup(self) -> None:
        self.timeout = self.server.proxy.idle_timeout + self.timeout_slack
        super().setup()

    def log_message(self, format: str, *args) -> None:
        logger.debug("proxy-http: " + format, *args)

    def do_GET(self) -> None:  # noqa: N802
        self.server.proxy.serve_http(self)

    def do_POST(self) -> None:  # noqa: N802
        self.server.proxy.serve_http(self)

    def __getattr__(self, name: str):
        # Any other method still gets a 502 from the router instead of a 501
        if name.startswith("do_"):
            return self.do_GET
        raise AttributeError(name)


class ProxyServer:
    """
    Owns the HTTP server thread, the idle eviction thread and an optional status ticker.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 8080,
        proxy: Optional[Proxy] = None,
        evict_interval: Optional[float] = None,
        status_interval: float = 0.0,
    ) -> None:
        self.proxy = proxy or Proxy()
        self._server = _ProxyHTTPServer((host, port), ProxyRequestHandler, self.proxy)
        self.host = host
        self.port = int(self._server.server_address[1])
        if evict_interval is None:
            evict_interval = max(0.05, min(5.0, self.proxy.idle_timeout / 4.0))
        self.evict_interval = float(evict_interval)
        self.status_interval = float(status_interval)

        self._stop_ev = threading.Event()
        self._http_thread = threading.Thread(target=self._server.serve_forever, name="proxy-http", daemon=True)
        self._evict_thread = threading.Thread(target=self._evict_loop, name="proxy-evict", daemon=True)
        self._status_thread: Optional[threading.Thread] = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def start(self) -> None:
        logger.info(
            "proxy: listening on %s:%s (idle_interval=%ss idle_timeout=%ss host=%s)",
            self.host,
            self.port,
            self.proxy.idle_interval,
            self.proxy.idle_timeout,
            self.proxy.host or "-",
        )
        self._http_thread.start()
        self._evict_thread.start()
        if self.status_interval > 0:
            self._status_thread = threading.Thread(
                target=status_ticker,
                name="proxy-status",
                args=(self.proxy.stats, self._stop_ev, self.status_interval, self.proxy.size),
                daemon=True,
            )
            self._status_thread.start()

    def stop(self) -> None:
        logger.info("proxy: stopping HTTP server")
        self._stop_ev.set()
        try:
            self._server.shutdown()
            self._server.server_close()
        except OSError as e:
            logger.debug("proxy: shutdown error: %s", e)
        self.proxy.close_all()

    def _evict_loop(self) -> None:
        while not self._stop_ev.wait(self.evict_interval):
            try:
                removed = self.proxy.evict_idle()
                if removed:
                    logger.info("proxy: evicted=%s live=%s", removed, self.proxy.size())
            except Exception:
                # Never crash the eviction thread
                logger.exception("proxy: eviction failed")

    def __enter__(self) -> "ProxyServer":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()


def start_server(host: str = "127.0.0.1", port: int = 8080, status_interval: float = 0.0, **proxy_kwargs) -> ProxyServer:
    srv = ProxyServer(host=host, port=port, proxy=Proxy(**proxy_kwargs), status_interval=status_interval)
    srv.start()
    return srv
