from __future__ import annotations

import logging
import re
import threading
from typing import BinaryIO, Iterator, Protocol

from .protocol import DEFAULT_FLUSH_INTERVAL

logger = logging.getLogger("httptun.flush")


class Flushable(Protocol):
    def write(self, b: bytes) -> int:
        ...

    def flush(self) -> None:
        ...


class ChunkedWriter:
    """
    Frames each write as one HTTP/1.1 chunk on top of a buffered sink.
    close() writes the terminating zero-length chunk and flushes.
    """

    def __init__(self, sink: Flushable) -> None:
        self._sink = sink
        self._closed = False

    def write(self, b: bytes) -> int:
        if not b:
            return 0
        self._sink.write(b"%x\r\n" % len(b) + bytes(b) + b"\r\n")
        return len(b)

    def flush(self) -> None:
        self._sink.flush()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._sink.write(b"0\r\n\r\n")
        self._sink.flush()


_CHUNK_SIZE_RE = re.compile(rb"[0-9A-Fa-f]{1,16}")


def iter_chunked_body(rfile: BinaryIO, piece_size: int = 65536) -> Iterator[bytes]:
    """
    Yield the payload of an HTTP/1.1 chunked request body read from `rfile`,
    in pieces of at most `piece_size` bytes. Chunk extensions and trailers are
    skipped.

    Raises ValueError on malformed framing and OSError when the body ends early.
    """
    while True:
        line = rfile.readline(1024)
        if not line:
            raise OSError("request body ended inside a chunk header")
        if not line.endswith(b"\n"):
            raise ValueError("chunk header line too long")
        size_s = line.split(b";", 1)[0].strip()
        if not _CHUNK_SIZE_RE.fullmatch(size_s):
            raise ValueError(f"invalid chunk size {size_s[:32]!r}")
        remaining = int(size_s, 16)
        if remaining == 0:
            break
        while remaining > 0:
            piece = rfile.read(min(piece_size, remaining))
            if not piece:
                raise OSError("request body ended inside a chunk")
            remaining -= len(piece)
            yield piece
        if rfile.read(2) != b"\r\n":
            raise ValueError("chunk not terminated by CRLF")
    # Trailer section ends with an empty line
    while True:
        line = rfile.readline(8192)
        if not line:
            raise OSError("request body ended inside the trailer")
        if line in (b"\r\n", b"\n"):
            return


class FlushingWriter:
    """
    Forces periodic delivery of bytes written to a buffering sink so a streamed
    HTTP response behaves like a live pipe.

    A background thread flushes every `interval` seconds when anything was
    written since the previous flush. Writes and flushes share one lock so a
    flush never lands in the middle of a write. Errors on the timer path are
    logged and dropped; write errors propagate to the writer.
    """

    def __init__(self, sink: Flushable, interval: float = DEFAULT_FLUSH_INTERVAL) -> None:
        self.interval = max(0.001, float(interval))
        self._sink = sink
        self._lock = threading.Lock()
        self._dirty = False
        self._stop_ev = threading.Event()
        self._thread = threading.Thread(target=self._flush_loop, name="flush", daemon=True)
        self._thread.start()

    def write(self, b: bytes) -> int:
        with self._lock:
            n = self._sink.write(b)
            self._dirty = True
            return n

    def flush(self) -> None:
        with self._lock:
            self._sink.flush()
            self._dirty = False

    def _flush_loop(self) -> None:
        while not self._stop_ev.wait(self.interval):
            with self._lock:
                if not self._dirty:
                    continue
                try:
                    self._sink.flush()
                except (OSError, ValueError) as e:
                    # The next write surfaces the broken sink to its caller
                    logger.debug("flush: periodic flush failed: %s", e)
                self._dirty = False

    def stop(self) -> None:
        if self._stop_ev.is_set():
            return
        self._stop_ev.set()
        if self._thread is not threading.current_thread():
            self._thread.join()
        with self._lock:
            self._sink.flush()
            self._dirty = False

    def __enter__(self) -> "FlushingWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
