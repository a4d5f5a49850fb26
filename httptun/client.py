from __future__ import annotations

import logging
import os
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

import requests

from .config import ClientConfig
from .dialer import ProxyDialer, SessionFactory
from .protocol import (
    HEADER_CONN_ID,
    HEADER_DEST_ADDR,
    HEADER_PROXY_HOST,
    HEADER_UPSTREAM_EOF,
    TunnelClosed,
    TunnelError,
    is_true,
    new_connection_id,
)

# Client half of the tunnel.
# - write(): each buffer becomes one POST, in submission order.
# - read(): bytes come from GET response bodies, one GET at a time.
# - A GET body ending is not end-of-stream unless it carried Upstream-EOF: true.

logger = logging.getLogger("httptun.client")
if not logger.handlers:
    logging.basicConfig(
        level=os.environ.get("HTTPTUN_LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(processName)s(%(process)d)/%(threadName)s: %(message)s",
    )

_STOP = object()


@dataclass
class _Result:
    data: Optional[bytes] = None
    n: int = 0
    error: Optional[BaseException] = None
    eof: bool = False


class Conn:
    """
    Byte-stream connection to `addr`, tunneled through HTTP requests to a
    tunnel server.

    Two threads do the work: one issues POSTs for writes, the other issues
    GETs for reads. The public methods hand each call to the matching thread
    through a queue and block on a per-call reply queue, so read() and write()
    may be called from any thread without extra locking.

    read() follows io.RawIOBase: non-empty bytes, None when the current HTTP
    response ended with nothing more to deliver yet, b"" at end of stream.
    """

    def __init__(
        self,
        addr: str,
        config: Optional[ClientConfig] = None,
        conn_id: Optional[str] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.addr = addr
        self.id = conn_id or new_connection_id()
        self.config = config or ClientConfig()
        self.proxy_host: Optional[str] = None
        self._session_factory = session_factory
        self._read_requests: "queue.Queue" = queue.Queue()
        self._write_requests: "queue.Queue" = queue.Queue()
        self._read_lock = threading.Lock()
        self._done_reading = False
        self._write_lock = threading.Lock()
        self._done_writing = False
        self._closed = threading.Event()
        self._started = False
        # Resolved by the first POST with the Proxy-Host this id is pinned to
        self._affinity: "Future[Optional[str]]" = Future()
        self._last_activity = time.monotonic()
        tag = self.id[:8]
        self._reader = threading.Thread(target=self._process_reads, name=f"tun-read-{tag}", daemon=True)
        self._writer = threading.Thread(target=self._process_writes, name=f"tun-write-{tag}", daemon=True)

    # Public API

    def connect(self, timeout: Optional[float] = None) -> "Conn":
        if self._started:
            raise TunnelError(f"connection {self.id} already started")
        self._started = True
        self._writer.start()
        self._reader.start()
        try:
            self.proxy_host = self._affinity.result(timeout=timeout)
        except BaseException:
            self.close()
            raise
        logger.debug("conn[%s]: connected to %s (proxy_host=%s)", self.id, self.addr, self.proxy_host or "-")
        return self

    def write(self, data: bytes) -> int:
        if not data:
            return 0
        reply: "queue.Queue[_Result]" = queue.Queue(maxsize=1)
        with self._write_lock:
            if not self._started or self._done_writing or self._closed.is_set():
                raise TunnelClosed(f"connection {self.id} is not accepting writes")
            self._write_requests.put((bytes(data), reply))
        result = reply.get()
        if result.error is not None:
            raise result.error
        return result.n

    def read(self, size: int = -1) -> Optional[bytes]:
        if not self._started:
            raise TunnelClosed(f"connection {self.id} is not connected")
        if size is None or size <= 0:
            size = self.config.buffer_size
        reply: "queue.Queue[_Result]" = queue.Queue(maxsize=1)
        if not self._submit_read(size, reply):
            return b""
        result = reply.get()
        if result.error is not None:
            raise result.error
        if result.eof:
            return b""
        return result.data

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if not self._started:
            with self._read_lock:
                self._done_reading = True
            with self._write_lock:
                self._done_writing = True
            return
        self._read_requests.put(_STOP)
        self._write_requests.put(_STOP)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __enter__(self) -> "Conn":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # Shared helpers

    def _headers(self) -> Dict[str, str]:
        return {HEADER_CONN_ID: self.id, HEADER_DEST_ADDR: self.addr}

    def _new_dialer(self, name: str) -> ProxyDialer:
        return ProxyDialer(
            self.config.proxy_url,
            connect_timeout=self.config.connect_timeout,
            read_timeout=self.config.idle_timeout,
            session_factory=self._session_factory,
            name=f"{self.id[:8]}-{name}",
        )

    def _mark_active(self) -> None:
        self._last_activity = time.monotonic()

    def _is_idle(self) -> bool:
        return (time.monotonic() - self._last_activity) >= self.config.idle_timeout

    # Writes

    def _process_writes(self) -> None:
        dialer = self._new_dialer("write")
        try:
            # Initial exchange dials the destination and learns host affinity
            try:
                resp = dialer.request("POST", self._headers(), data=b"")
            except (requests.RequestException, TunnelError) as e:
                logger.warning("conn[%s]: unable to connect to %s via %s: %s", self.id, self.addr, self.config.proxy_url, e)
                self._affinity.set_exception(e)
                return
            # POST responses have an empty body, only the affinity header matters
            proxy_host = resp.headers.get(HEADER_PROXY_HOST) or None
            resp.close()
            self._mark_active()
            self._affinity.set_result(proxy_host)

            while True:
                req = self._write_requests.get()
                if req is _STOP:
                    return
                data, reply = req
                try:
                    resp = dialer.request("POST", self._headers(), data=data, proxy_host=proxy_host)
                    resp.close()
                except (requests.RequestException, TunnelError) as e:
                    # dialer is already marked broken; next write redials
                    logger.debug("conn[%s]: write of %d bytes failed: %s", self.id, len(data), e)
                    reply.put(_Result(error=e))
                    continue
                self._mark_active()
                reply.put(_Result(n=len(data)))
        finally:
            if not self._affinity.done():
                self._affinity.set_exception(TunnelClosed(f"connection {self.id} closed before connecting"))
            self._cleanup_after_writes()
            dialer.close()

    def _cleanup_after_writes(self) -> None:
        with self._write_lock:
            self._done_writing = True
        err = TunnelClosed(f"connection {self.id} closed")
        while True:
            try:
                req = self._write_requests.get_nowait()
            except queue.Empty:
                return
            if req is not _STOP:
                req[1].put(_Result(error=err))

    # Reads

    def _submit_read(self, size: int, reply: "queue.Queue[_Result]") -> bool:
        with self._read_lock:
            if self._done_reading:
                return False
            self._read_requests.put((size, reply))
            return True

    def _process_reads(self) -> None:
        dialer = self._new_dialer("read")
        resp: Optional[requests.Response] = None
        chunks: Optional[Iterator[bytes]] = None
        pending = b""
        hit_eof_upstream = False
        try:
            # Reads must land on the instance that dialed the destination
            try:
                proxy_host = self._affinity.result()
            except BaseException:
                return

            while True:
                if self._closed.is_set():
                    return
                try:
                    req = self._read_requests.get(timeout=self.config.idle_timeout)
                except queue.Empty:
                    if self._is_idle():
                        logger.debug("conn[%s]: idle for %ss, done reading", self.id, self.config.idle_timeout)
                        self.close()
                        return
                    continue
                if req is _STOP:
                    return
                size, reply = req

                if pending:
                    data, pending = pending[:size], pending[size:]
                    reply.put(_Result(data=data, n=len(data)))
                    continue

                if chunks is None:
                    # Previous response finished
                    if self._is_idle():
                        logger.debug("conn[%s]: idle for %ss, not polling again", self.id, self.config.idle_timeout)
                        self.close()
                        reply.put(_Result(eof=True))
                        return
                    try:
                        resp = dialer.request("GET", self._headers(), stream=True, proxy_host=proxy_host)
                    except (requests.RequestException, TunnelError) as e:
                        logger.warning("conn[%s]: unable to issue read request: %s", self.id, e)
                        reply.put(_Result(error=e))
                        continue
                    hit_eof_upstream = is_true(resp.headers.get(HEADER_UPSTREAM_EOF))
                    chunks = resp.iter_content(chunk_size=None)

                try:
                    chunk = next(chunks, None)
                    while chunk == b"":
                        chunk = next(chunks, None)
                except requests.RequestException as e:
                    logger.warning("conn[%s]: unexpected error reading response: %s", self.id, e)
                    dialer.mark_broken()
                    if resp is not None:
                        resp.close()
                    resp, chunks = None, None
                    reply.put(_Result(error=e))
                    continue

                if chunk is None:
                    # Current response is done
                    if resp is not None:
                        resp.close()
                    resp, chunks = None, None
                    if hit_eof_upstream:
                        reply.put(_Result(eof=True))
                        return
                    reply.put(_Result())
                    continue

                self._mark_active()
                data, pending = chunk[:size], chunk[size:]
                reply.put(_Result(data=data, n=len(data)))
        finally:
            self._cleanup_after_reads()
            if resp is not None:
                resp.close()
            dialer.close()

    def _cleanup_after_reads(self) -> None:
        with self._read_lock:
            self._done_reading = True
        while True:
            try:
                req = self._read_requests.get_nowait()
            except queue.Empty:
                return
            if req is not _STOP:
                req[1].put(_Result(eof=True))


def dial(
    addr: str,
    config: Optional[ClientConfig] = None,
    session_factory: Optional[SessionFactory] = None,
    timeout: Optional[float] = None,
) -> Conn:
    """Open a tunneled connection to `addr` and wait for the initial exchange."""
    return Conn(addr, config, session_factory=session_factory).connect(timeout)
