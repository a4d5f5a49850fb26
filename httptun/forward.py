from __future__ import annotations

import logging
import socket
import threading
from typing import Optional, Tuple

import requests

from .client import Conn, dial
from .config import ClientConfig
from .dialer import SessionFactory
from .protocol import TunnelError

logger = logging.getLogger("httptun.forward")


class PortForwarder:
    """
    Local TCP listener: every accepted socket is tunneled to `destination`
    over its own Conn. Local-to-tunnel and tunnel-to-local bytes are pumped by
    two threads per connection.
    """

    def __init__(
        self,
        destination: str,
        config: Optional[ClientConfig] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.destination = destination
        self.config = config or ClientConfig()
        self.session_factory = session_factory
        bind_host = self.config.listen_host if host is None else host
        bind_port = self.config.listen_port if port is None else port
        self._sock = socket.create_server((bind_host, int(bind_port)))
        # Bounded accept so stop() is noticed
        self._sock.settimeout(0.5)
        self.host = bind_host
        self.port = int(self._sock.getsockname()[1])
        self._stop_ev = threading.Event()
        self._accept_thread = threading.Thread(target=self._accept_loop, name="forward-accept", daemon=True)
        self._active = 0
        self._lock = threading.Lock()

    def start(self) -> None:
        logger.info(
            "forward: listening on %s:%s -> %s via %s",
            self.host,
            self.port,
            self.destination,
            self.config.proxy_url,
        )
        self._accept_thread.start()

    def stop(self) -> None:
        self._stop_ev.set()
        try:
            self._sock.close()
        except OSError:
            pass

    def active(self) -> int:
        with self._lock:
            return self._active

    def _accept_loop(self) -> None:
        while not self._stop_ev.is_set():
            try:
                client, peer = self._sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._stop_ev.is_set():
                    return
                logger.warning("forward: accept failed: %s", e)
                continue
            t = threading.Thread(target=self._handle, args=(client, peer), name="forward-conn", daemon=True)
            t.start()

    def _handle(self, client: socket.socket, peer: Tuple) -> None:
        try:
            conn = dial(self.destination, self.config, session_factory=self.session_factory)
        except (requests.RequestException, TunnelError) as e:
            logger.warning("forward: tunnel to %s for %s failed: %s", self.destination, peer, e)
            client.close()
            return
        with self._lock:
            self._active += 1
        logger.debug("forward[%s]: %s -> %s", conn.id, peer, self.destination)
        up = threading.Thread(target=self._pump_up, args=(client, conn), name="forward-up", daemon=True)
        up.start()
        try:
            self._pump_down(conn, client)
        finally:
            conn.close()
            try:
                # shutdown wakes the recv blocked in _pump_up
                client.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            client.close()
            up.join(timeout=5.0)
            with self._lock:
                self._active -= 1

    def _pump_up(self, client: socket.socket, conn: Conn) -> None:
        total = 0
        try:
            while True:
                data = client.recv(self.config.buffer_size)
                if not data:
                    break
                conn.write(data)
                total += len(data)
        except (OSError, requests.RequestException, TunnelError) as e:
            logger.debug("forward[%s]: upstream pump stopped: %s", conn.id, e)
        logger.debug("forward[%s]: sent %d bytes", conn.id, total)

    def _pump_down(self, conn: Conn, client: socket.socket) -> None:
        total = 0
        try:
            while True:
                data = conn.read(self.config.buffer_size)
                if data is None:
                    continue
                if not data:
                    break
                client.sendall(data)
                total += len(data)
        except (OSError, requests.RequestException, TunnelError) as e:
            logger.debug("forward[%s]: downstream pump stopped: %s", conn.id, e)
        logger.debug("forward[%s]: received %d bytes", conn.id, total)

    def __enter__(self) -> "PortForwarder":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
