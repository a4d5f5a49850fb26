"""
Loopback TCP servers and read helpers shared by the tests.
"""

import queue
import socket
import threading
import time
from typing import Callable, Optional

from httptun.client import Conn


class TCPServer:
    """Accepts loopback connections; optionally runs `handler` per connection."""

    def __init__(self, handler: Optional[Callable[[socket.socket], None]] = None):
        self.sock = socket.create_server(("127.0.0.1", 0))
        self.sock.settimeout(0.2)
        self.port = self.sock.getsockname()[1]
        self.handler = handler
        self.accepted: "queue.Queue[socket.socket]" = queue.Queue()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    @property
    def addr(self) -> str:
        return f"127.0.0.1:{self.port}"

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                c, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            self.accepted.put(c)
            if self.handler is not None:
                threading.Thread(target=self.handler, args=(c,), daemon=True).start()

    def next_conn(self, timeout: float = 5.0) -> socket.socket:
        return self.accepted.get(timeout=timeout)

    def close(self) -> None:
        self._stop.set()
        self._thread.join(timeout=2.0)
        self.sock.close()


def echo_handler(c: socket.socket) -> None:
    with c:
        while True:
            try:
                d = c.recv(65536)
            except OSError:
                return
            if not d:
                return
            c.sendall(d)


HTTP_RESPONSE = (
    b"HTTP/1.0 200 OK\r\n"
    b"Content-Type: text/plain\r\n"
    b"Content-Length: 13\r\n"
    b"\r\n"
    b"Hello, World!"
)


def http_handler(c: socket.socket) -> None:
    """Answers one HTTP/1.0 request and closes, like example.com:80 would."""
    with c:
        buf = b""
        while b"\r\n\r\n" not in buf:
            d = c.recv(4096)
            if not d:
                return
            buf += d
        c.sendall(HTTP_RESPONSE)
        c.shutdown(socket.SHUT_WR)


def closed_port() -> int:
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def read_exactly(conn: Conn, n: int, timeout: float = 5.0) -> bytes:
    buf = b""
    deadline = time.monotonic() + timeout
    while len(buf) < n:
        assert time.monotonic() < deadline, f"timed out after {len(buf)}/{n} bytes"
        data = conn.read(n - len(buf))
        if data is None:
            continue
        if data == b"":
            break
        buf += data
    return buf


def read_to_eof(conn: Conn, timeout: float = 5.0) -> bytes:
    buf = b""
    deadline = time.monotonic() + timeout
    while True:
        assert time.monotonic() < deadline, f"no EOF after {len(buf)} bytes"
        data = conn.read()
        if data is None:
            continue
        if data == b"":
            return buf
        buf += data


def recv_exactly(sock: socket.socket, n: int, timeout: float = 5.0) -> bytes:
    sock.settimeout(timeout)
    buf = b""
    while len(buf) < n:
        d = sock.recv(n - len(buf))
        if not d:
            break
        buf += d
    return buf
