"""
Server-side router tests, driven with plain HTTP requests.
"""

import socket
import threading
import time

import pytest
import requests

from httptun.protocol import HEADER_CONN_ID, HEADER_DEST_ADDR, HEADER_PROXY_HOST, HEADER_UPSTREAM_EOF
from httptun.proxy import Proxy, ProxyRequestHandler, ProxyServer, _ProxyHTTPServer

from helpers import closed_port, recv_exactly


def tunnel_headers(conn_id, addr):
    h = {}
    if conn_id is not None:
        h[HEADER_CONN_ID] = conn_id
    if addr is not None:
        h[HEADER_DEST_ADDR] = addr
    return h


def raw_post(server, addr: str, extra: bytes, body: bytes) -> bytes:
    """Send one hand-framed POST with Connection: close and return the raw response."""
    head = (
        b"POST / HTTP/1.1\r\n"
        b"Host: tunnel\r\n"
        b"Connection: close\r\n"
        b"Connection-Id: raw\r\n"
        b"Destination-Address: " + addr.encode() + b"\r\n" + extra + b"\r\n"
    )
    with socket.create_connection(("127.0.0.1", server.port), timeout=5.0) as s:
        s.sendall(head + body)
        buf = b""
        while True:
            d = s.recv(4096)
            if not d:
                return buf
            buf += d


@pytest.fixture
def http():
    with requests.Session() as s:
        yield s


class TestMalformedRequests:
    @pytest.mark.parametrize("method", ["GET", "POST"])
    def test_missing_connection_id(self, proxy_server, http, upstream, method):
        resp = http.request(method, proxy_server.url, headers=tunnel_headers(None, upstream.addr))
        assert resp.status_code == 502
        assert resp.headers["Connection"].lower() == "close"
        assert HEADER_CONN_ID in resp.text
        assert proxy_server.proxy.size() == 0

    @pytest.mark.parametrize("method", ["GET", "POST"])
    def test_missing_destination(self, proxy_server, http, method):
        resp = http.request(method, proxy_server.url, headers=tunnel_headers("abc", None))
        assert resp.status_code == 502
        assert HEADER_DEST_ADDR in resp.text
        assert proxy_server.proxy.size() == 0

    @pytest.mark.parametrize("method", ["PUT", "DELETE", "PATCH"])
    def test_unsupported_method(self, proxy_server, http, upstream, method):
        resp = http.request(method, proxy_server.url, headers=tunnel_headers("abc", upstream.addr))
        assert resp.status_code == 502
        assert "Unsupported method" in resp.text
        assert proxy_server.proxy.size() == 0

    def test_dial_failure_leaves_no_state(self, proxy_server, http):
        addr = f"127.0.0.1:{closed_port()}"
        resp = http.post(proxy_server.url, headers=tunnel_headers("abc", addr))
        assert resp.status_code == 502
        assert "Unable to dial" in resp.text
        assert proxy_server.proxy.size() == 0
        assert proxy_server.proxy.stats.dial_failures == 1

    @pytest.mark.parametrize("value", [b"abc", b"-1", b"1e3"])
    def test_invalid_content_length_rejected_before_dial(self, proxy_server, upstream, value):
        raw = raw_post(proxy_server, upstream.addr, b"Content-Length: " + value + b"\r\n", b"")
        assert raw.startswith(b"HTTP/1.1 502")
        assert b"Invalid Content-Length" in raw
        assert proxy_server.proxy.size() == 0
        assert proxy_server.proxy.stats.dials == 0

    def test_unsupported_transfer_encoding(self, proxy_server, upstream):
        raw = raw_post(proxy_server, upstream.addr, b"Transfer-Encoding: gzip\r\n", b"")
        assert raw.startswith(b"HTTP/1.1 502")
        assert proxy_server.proxy.stats.dials == 0

    # Each body stops where its framing breaks, so nothing is left unread on close
    @pytest.mark.parametrize(
        "body",
        [b"zz\r\n", b"5\r\nhelloXX", b"0x5\r\n"],
    )
    def test_malformed_chunked_body(self, proxy_server, upstream, body):
        raw = raw_post(proxy_server, upstream.addr, b"Transfer-Encoding: chunked\r\n", body)
        assert raw.startswith(b"HTTP/1.1 502")
        assert b"Malformed request body" in raw
        assert proxy_server.proxy.size() == 0


class TestWrites:
    def test_post_forwards_body_in_order(self, proxy_server, http, upstream):
        h = tunnel_headers("abc", upstream.addr)
        resp = http.post(proxy_server.url, headers=h, data=b"GET / HTTP/1.0\r\n")
        assert resp.status_code == 200
        assert resp.content == b""
        resp = http.post(proxy_server.url, headers=h, data=b"\r\n")
        assert resp.status_code == 200

        outbound = upstream.next_conn()
        assert recv_exactly(outbound, 18) == b"GET / HTTP/1.0\r\n\r\n"
        assert proxy_server.proxy.size() == 1
        assert proxy_server.proxy.stats.dials == 1
        assert proxy_server.proxy.stats.bytes_up == 18

    def test_chunked_post_is_forwarded(self, proxy_server, http, upstream):
        h = tunnel_headers("abc", upstream.addr)
        # A generator body makes requests use Transfer-Encoding: chunked
        resp = http.post(proxy_server.url, headers=h, data=iter([b"hello ", b"world"]))
        assert resp.status_code == 200
        outbound = upstream.next_conn()
        assert recv_exactly(outbound, 11) == b"hello world"

        # The keep-alive connection is still framed correctly afterwards
        resp = http.post(proxy_server.url, headers=h, data=iter([b"!", b"!"]))
        assert resp.status_code == 200
        assert recv_exactly(outbound, 2) == b"!!"
        assert proxy_server.proxy.stats.bytes_up == 13
        assert proxy_server.proxy.stats.dials == 1

    def test_chunked_post_with_extensions_and_trailers(self, proxy_server, upstream):
        body = b"5;name=value\r\nhello\r\n1\r\n!\r\n0\r\nX-Checksum: 1\r\n\r\n"
        raw = raw_post(proxy_server, upstream.addr, b"Transfer-Encoding: chunked\r\n", body)
        assert raw.startswith(b"HTTP/1.1 200")
        assert recv_exactly(upstream.next_conn(), 6) == b"hello!"

    def test_empty_post_dials(self, proxy_server, http, upstream):
        resp = http.post(proxy_server.url, headers=tunnel_headers("abc", upstream.addr))
        assert resp.status_code == 200
        assert upstream.next_conn() is not None

    def test_separate_ids_get_separate_sockets(self, proxy_server, http, upstream):
        http.post(proxy_server.url, headers=tunnel_headers("one", upstream.addr), data=b"1")
        http.post(proxy_server.url, headers=tunnel_headers("two", upstream.addr), data=b"2")
        got = {recv_exactly(upstream.next_conn(), 1), recv_exactly(upstream.next_conn(), 1)}
        assert got == {b"1", b"2"}
        assert proxy_server.proxy.size() == 2


class TestReads:
    def test_idle_gets_are_empty_without_eof(self, proxy_server, http, upstream):
        h = tunnel_headers("abc", upstream.addr)
        http.post(proxy_server.url, headers=h)
        for _ in range(2):
            resp = http.get(proxy_server.url, headers=h)
            assert resp.status_code == 200
            assert resp.content == b""
            assert HEADER_UPSTREAM_EOF not in resp.headers

    def test_get_returns_upstream_bytes(self, proxy_server, http, upstream):
        h = tunnel_headers("abc", upstream.addr)
        http.post(proxy_server.url, headers=h)
        upstream.next_conn().sendall(b"pong")
        body = b""
        for _ in range(20):
            body += http.get(proxy_server.url, headers=h).content
            if body == b"pong":
                break
        assert body == b"pong"

    def test_eof_signaled_then_short_circuited(self, proxy_server, http, upstream):
        h = tunnel_headers("abc", upstream.addr)
        http.post(proxy_server.url, headers=h)
        outbound = upstream.next_conn()
        outbound.sendall(b"bye")
        outbound.close()

        body = b""
        for _ in range(20):
            resp = http.get(proxy_server.url, headers=h)
            body += resp.content
            if resp.headers.get(HEADER_UPSTREAM_EOF) == "true":
                break
        else:
            pytest.fail("upstream EOF never signaled")
        assert body == b"bye"

        again = http.get(proxy_server.url, headers=h)
        assert again.status_code == 200
        assert again.headers.get(HEADER_UPSTREAM_EOF) == "true"
        assert again.content == b""
        assert proxy_server.proxy.stats.dials == 1
        assert proxy_server.proxy.lookup("abc").hit_eof is True

    def test_response_ends_within_window(self, proxy_server, http, upstream):
        h = tunnel_headers("abc", upstream.addr)
        http.post(proxy_server.url, headers=h)
        t0 = time.monotonic()
        http.get(proxy_server.url, headers=h)
        assert time.monotonic() - t0 < 2.0


class TestAffinity:
    def test_proxy_host_advertised(self, proxy_server, http, upstream):
        proxy_server.proxy.host = "tunnel-3.example.com"
        h = tunnel_headers("abc", upstream.addr)
        post = http.post(proxy_server.url, headers=h)
        get = http.get(proxy_server.url, headers=h)
        assert post.headers[HEADER_PROXY_HOST] == "tunnel-3.example.com"
        assert get.headers[HEADER_PROXY_HOST] == "tunnel-3.example.com"

    def test_no_proxy_host_by_default(self, proxy_server, http, upstream):
        resp = http.post(proxy_server.url, headers=tunnel_headers("abc", upstream.addr))
        assert HEADER_PROXY_HOST not in resp.headers


class TestKeepAlive:
    def test_socket_timeout_follows_idle_timeout(self):
        seen = []

        class RecordingHandler(ProxyRequestHandler):
            def setup(self):
                super().setup()
                seen.append(self.connection.gettimeout())

        server = _ProxyHTTPServer(("127.0.0.1", 0), RecordingHandler, Proxy(idle_timeout=42.0))
        t = threading.Thread(target=server.serve_forever, daemon=True)
        t.start()
        try:
            resp = requests.get(f"http://127.0.0.1:{server.server_address[1]}/")
            assert resp.status_code == 502
        finally:
            server.shutdown()
            server.server_close()
        assert seen == [42.0 + ProxyRequestHandler.timeout_slack]


class TestEviction:
    def test_idle_connections_are_evicted_and_closed(self, proxy_server, http, upstream):
        proxy = proxy_server.proxy
        http.post(proxy_server.url, headers=tunnel_headers("abc", upstream.addr))
        outbound = upstream.next_conn()
        assert proxy.evict_idle() == 0
        assert proxy.evict_idle(now=time.monotonic() + proxy.idle_timeout + 1.0) == 1
        assert proxy.size() == 0
        assert proxy.stats.evictions == 1
        outbound.settimeout(2.0)
        assert outbound.recv(16) == b""

    def test_eviction_thread_runs(self, upstream):

        server = ProxyServer(port=0, proxy=Proxy(idle_interval=0.05, idle_timeout=0.5), evict_interval=0.05)
        server.start()
        try:
            requests.post(server.url, headers=tunnel_headers("abc", upstream.addr))
            assert server.proxy.size() == 1
            deadline = time.monotonic() + 3.0
            while server.proxy.size() and time.monotonic() < deadline:
                time.sleep(0.05)
            assert server.proxy.size() == 0
        finally:
            server.stop()
