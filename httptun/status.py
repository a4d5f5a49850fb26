from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from colorama import Fore, Style, init as colorama_init

colorama_init(autoreset=True)
logger = logging.getLogger("httptun.status")

__all__ = [
    "TunnelStats",
    "humanize_bytes",
    "humanize_duration",
    "status_ticker",
]


def humanize_bytes(n: int) -> str:
    try:
        n = int(n)
    except (TypeError, ValueError):
        return "0B"
    units = ["B", "KB", "MB", "GB", "TB"]
    f = float(max(0, n))
    u = 0
    while f >= 1024.0 and u < len(units) - 1:
        f /= 1024.0
        u += 1
    if u == 0:
        return f"{int(f)}{units[u]}"
    return f"{f:.1f}{units[u]}"


def humanize_duration(seconds: float) -> str:
    try:
        s = float(seconds)
    except (TypeError, ValueError):
        s = 0.0
    s = max(0.0, s)
    m, s = divmod(int(round(s)), 60)
    h, m = divmod(m, 60)
    if h:
        return f"{h}h{m}m{s}s"
    if m:
        return f"{m}m{s}s"
    return f"{s}s"


@dataclass
class TunnelStats:
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    started: float = field(default_factory=time.time)
    dials: int = 0
    dial_failures: int = 0
    bad_gateways: int = 0
    bytes_up: int = 0
    bytes_down: int = 0
    upstream_eofs: int = 0
    evictions: int = 0
    broken: int = 0

    def incr(self, name: str, n: int = 1) -> None:
        with self.lock:
            setattr(self, name, getattr(self, name) + n)

    def snapshot(self) -> dict:
        with self.lock:
            return {
                "dials": self.dials,
                "dial_failures": self.dial_failures,
                "bad_gateways": self.bad_gateways,
                "bytes_up": self.bytes_up,
                "bytes_down": self.bytes_down,
                "upstream_eofs": self.upstream_eofs,
                "evictions": self.evictions,
                "broken": self.broken,
                "uptime": time.time() - self.started,
            }


def status_ticker(
    stats: TunnelStats,
    stop_evt: threading.Event,
    interval_s: float,
    active: Optional[Callable[[], int]] = None,
) -> None:
    if interval_s <= 0:
        return
    while not stop_evt.wait(interval_s):
        snap = stats.snapshot()
        n_active = active() if active is not None else -1
        fails = snap["dial_failures"] + snap["bad_gateways"]
        fail_color = Fore.RED if fails else Fore.GREEN
        msg = (
            f"{Fore.CYAN}up{Style.RESET_ALL}={humanize_duration(snap['uptime'])} "
            f"| {Fore.BLUE}conns{Style.RESET_ALL}={(n_active if n_active >= 0 else '?')} "
            f"dials={snap['dials']} evicted={snap['evictions']} eof={snap['upstream_eofs']} "
            f"| {Fore.MAGENTA}bytes{Style.RESET_ALL}=up {humanize_bytes(snap['bytes_up'])} "
            f"down {humanize_bytes(snap['bytes_down'])} "
            f"| {fail_color}fail{Style.RESET_ALL}=dial {snap['dial_failures']} "
            f"502 {snap['bad_gateways']} broken {snap['broken']}"
        )
        logger.info(msg)
