from __future__ import annotations

import logging
import select
import socket
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger("httptun.lazyconn")

DialFunc = Callable[[str], socket.socket]


class LazyConn:
    """
    Server-side state for one connection id.

    Owns the outbound socket, dialed on first use and at most once. Reads and
    writes are each serialized by their own lock, so a POST and a GET for the
    same id can run concurrently without interleaving partial operations.
    Once the socket reports end-of-stream `hit_eof` stays set.
    """

    def __init__(self, conn_id: str, addr: str, dial: DialFunc) -> None:
        self.id = conn_id
        self.addr = addr
        self._dial = dial
        self._sock: Optional[socket.socket] = None
        self._dial_lock = threading.Lock()
        self._read_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self.hit_eof = False
        self.bytes_read = 0
        self.bytes_written = 0
        self.closed = False
        self.last_activity = time.monotonic()

    def get(self) -> socket.socket:
        sock = self._sock
        if sock is not None:
            return sock
        with self._dial_lock:
            if self._sock is None:
                if self.closed:
                    raise OSError(f"connection {self.id} already closed")
                logger.debug("lazyconn[%s]: dialing %s", self.id, self.addr)
                self._sock = self._dial(self.addr)
                self.touch()
            return self._sock

    def write(self, b: bytes) -> int:
        sock = self.get()
        with self._write_lock:
            sock.sendall(b)
            self.bytes_written += len(b)
        self.touch()
        return len(b)

    def read(self, size: int, timeout: float) -> Optional[bytes]:
        """
        Read up to `size` bytes, waiting at most `timeout` seconds.

        Returns the bytes read, None when nothing arrived before the deadline,
        or b"" once the outbound socket has ended. Other socket errors raise.
        """
        if self.hit_eof:
            return b""
        sock = self.get()
        with self._read_lock:
            if self.hit_eof:
                return b""
            readable, _, _ = select.select([sock], [], [], max(0.0, timeout))
            if not readable:
                return None
            data = sock.recv(size)
            if not data:
                self.hit_eof = True
                logger.debug("lazyconn[%s]: upstream EOF after %d bytes", self.id, self.bytes_read)
                return b""
            self.bytes_read += len(data)
        self.touch()
        return data

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def idle_for(self, now: Optional[float] = None) -> float:
        t = time.monotonic() if now is None else float(now)
        return max(0.0, t - self.last_activity)

    def close(self) -> None:
        with self._dial_lock:
            if self.closed:
                return
            self.closed = True
            sock, self._sock = self._sock, None
        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                logger.debug("lazyconn[%s]: close failed: %s", self.id, e)
