from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
import time

from .config import load_client_config_from_env, load_server_config_from_env
from .forward import PortForwarder
from .proxy import Proxy, ProxyServer

logger = logging.getLogger("httptun.main")
if not logger.handlers:
    logging.basicConfig(
        level=os.environ.get("HTTPTUN_LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(processName)s(%(process)d)/%(threadName)s: %(message)s",
    )


def _parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    CLI to override environment variables. Precedence: CLI > env > defaults.
    """
    ap = argparse.ArgumentParser(
        prog="httptun",
        description="Tunnel TCP byte streams over plain HTTP requests.",
    )
    ap.add_argument("--log-level", dest="log_level", help="Override HTTPTUN_LOG_LEVEL (e.g., DEBUG, INFO)")
    sub = ap.add_subparsers(dest="command", required=True)

    srv = sub.add_parser("serve", help="Run the tunnel server")
    srv.add_argument("--host", dest="listen_host", help="Override HTTPTUN_LISTEN_HOST")
    srv.add_argument("--port", dest="listen_port", type=int, help="Override HTTPTUN_LISTEN_PORT")
    srv.add_argument("--proxy-host", dest="proxy_host", help="Override HTTPTUN_PROXY_HOST (FQDN pinning clients to this instance)")
    srv.add_argument("--idle-interval", dest="idle_interval", type=float, help="Override HTTPTUN_IDLE_INTERVAL (seconds)")
    srv.add_argument("--idle-timeout", dest="idle_timeout", type=float, help="Override HTTPTUN_IDLE_TIMEOUT (seconds)")
    srv.add_argument("--flush-interval", dest="flush_interval", type=float, help="Override HTTPTUN_FLUSH_INTERVAL (seconds)")
    srv.add_argument("--buffer-size", dest="buffer_size", type=int, help="Override HTTPTUN_BUFFER_SIZE (bytes)")
    srv.add_argument("--status-interval", dest="status_interval", type=float, help="Override HTTPTUN_STATUS_INTERVAL_SECONDS")

    fwd = sub.add_parser("forward", help="Forward a local TCP port through a tunnel server")
    fwd.add_argument("destination", nargs="?", help="Override HTTPTUN_DESTINATION (host:port to reach)")
    fwd.add_argument("--proxy-url", dest="proxy_url", help="Override HTTPTUN_PROXY_URL")
    fwd.add_argument("--host", dest="forward_host", help="Override HTTPTUN_FORWARD_HOST")
    fwd.add_argument("--port", dest="forward_port", type=int, help="Override HTTPTUN_FORWARD_PORT")
    fwd.add_argument("--idle-timeout", dest="idle_timeout", type=float, help="Override HTTPTUN_IDLE_TIMEOUT (seconds)")
    return ap.parse_args(argv)


_CLI_TO_ENV = {
    "log_level": "HTTPTUN_LOG_LEVEL",
    "listen_host": "HTTPTUN_LISTEN_HOST",
    "listen_port": "HTTPTUN_LISTEN_PORT",
    "proxy_host": "HTTPTUN_PROXY_HOST",
    "idle_interval": "HTTPTUN_IDLE_INTERVAL",
    "idle_timeout": "HTTPTUN_IDLE_TIMEOUT",
    "flush_interval": "HTTPTUN_FLUSH_INTERVAL",
    "buffer_size": "HTTPTUN_BUFFER_SIZE",
    "status_interval": "HTTPTUN_STATUS_INTERVAL_SECONDS",
    "destination": "HTTPTUN_DESTINATION",
    "proxy_url": "HTTPTUN_PROXY_URL",
    "forward_host": "HTTPTUN_FORWARD_HOST",
    "forward_port": "HTTPTUN_FORWARD_PORT",
}


def _apply_cli_to_env(args: argparse.Namespace) -> None:
    for attr, env_key in _CLI_TO_ENV.items():
        if getattr(args, attr, None) is not None:
            os.environ[env_key] = str(getattr(args, attr))


def _wait_for_signal(stop: threading.Event) -> None:
    def handle_signal(signum, _frame):
        logger.info("signal %s received, shutting down", signum)
        stop.set()

    for sig in ("SIGINT", "SIGTERM"):
        if hasattr(signal, sig):
            signal.signal(getattr(signal, sig), handle_signal)
    try:
        while not stop.is_set():
            time.sleep(0.5)
    except KeyboardInterrupt:
        stop.set()


def run_server(stop: threading.Event) -> int:
    cfg = load_server_config_from_env()
    logging.getLogger().setLevel(cfg.log_level.upper())
    proxy = Proxy(
        host=cfg.proxy_host,
        idle_interval=cfg.idle_interval,
        idle_timeout=cfg.idle_timeout,
        buffer_size=cfg.buffer_size,
        flush_interval=cfg.flush_interval,
        dial_timeout=cfg.dial_timeout,
        response_window=cfg.response_window,
    )
    try:
        server = ProxyServer(cfg.listen_host, cfg.listen_port, proxy=proxy, status_interval=cfg.status_interval)
    except OSError as e:
        logger.error("serve: unable to listen on %s:%s: %s", cfg.listen_host, cfg.listen_port, e)
        return 1
    server.start()
    _wait_for_signal(stop)
    server.stop()
    logger.info("stopped")
    return 0


def run_forwarder(stop: threading.Event) -> int:
    cfg = load_client_config_from_env()
    logging.getLogger().setLevel(cfg.log_level.upper())
    if not cfg.destination:
        logger.error("forward: no destination given (argument or HTTPTUN_DESTINATION)")
        return 2
    try:
        fwd = PortForwarder(cfg.destination, cfg)
    except OSError as e:
        logger.error("forward: unable to listen on %s:%s: %s", cfg.listen_host, cfg.listen_port, e)
        return 1
    fwd.start()
    _wait_for_signal(stop)
    fwd.stop()
    logger.info("stopped")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_cli_args(argv)
    _apply_cli_to_env(args)
    stop = threading.Event()
    if args.command == "serve":
        return run_server(stop)
    return run_forwarder(stop)


if __name__ == "__main__":
    raise SystemExit(main())
