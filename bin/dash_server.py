#!/usr/bin/env python3
"""
DASH Experiment Server

Serves the three phases of the DASH experiment over HTTP:
- POST /negotiate/dash    -> issue a session token
- GET  /dash/download/N   -> return N pseudo-random bytes (clamped)
- POST /collect/dash      -> exchange client and server measurements, persist

Sessions live in a SessionTable swept by a SessionReaper; collected sessions
are written by a ResultStore.

Usage:
  python dash_server.py --datadir /var/lib/dash --listen :8080
  python dash_server.py --config server.json
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import random
import signal
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from aiohttp import web

from dash_log import setup_logger
from dash_model import (
    AUTHORIZATION_HEADER,
    COLLECT_PATH,
    DOWNLOAD_PATH,
    DOWNLOAD_PATH_NO_TRAILING_SLASH,
    MAX_SEGMENT_SIZE,
    MIN_SEGMENT_SIZE,
    NEGOTIATE_PATH,
    NegotiateResponse,
    ProtocolError,
    decode_client_results,
    dumps_records,
    loads_json,
    parse_segment_size,
)
from dash_sessions import (
    DEFAULT_MAX_IDLE_SEC,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_REAP_INTERVAL_SEC,
    SessionReaper,
    SessionState,
    SessionTable,
)
from dash_storage import GzipResultStore, ResultStore


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class ServerConfig:
    """DASH server configuration."""
    datadir: str = "."
    listen: tuple[str, ...] = (":80",)

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_idle_sec: float = DEFAULT_MAX_IDLE_SEC
    reap_interval_sec: float = DEFAULT_REAP_INTERVAL_SEC

    log_file: Optional[str] = None
    verbose: bool = False


def parse_args(argv: Optional[list[str]] = None) -> ServerConfig:
    """Parse command line arguments or JSON config file."""
    p = argparse.ArgumentParser(
        description="DASH Experiment Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python dash_server.py --datadir results/ --listen :8080
  python dash_server.py --listen 127.0.0.1:8080 --listen [::1]:8080
  python dash_server.py --config server.json
"""
    )

    p.add_argument("--config", type=str, help="Path to JSON config file")
    p.add_argument("--datadir", type=str, default=".", help="Directory where to save results")
    p.add_argument("--listen", action="append", default=None,
                   help="host:port endpoint to listen on (repeatable, default :80)")
    p.add_argument("--max_iterations", type=int, default=DEFAULT_MAX_ITERATIONS)
    p.add_argument("--max_idle", dest="max_idle_sec", type=float, default=DEFAULT_MAX_IDLE_SEC)
    p.add_argument("--reap_interval", dest="reap_interval_sec", type=float,
                   default=DEFAULT_REAP_INTERVAL_SEC)
    p.add_argument("--log_file", type=str, default=None)
    p.add_argument("--verbose", action="store_true")

    args = p.parse_args(argv)

    if args.config:
        with Path(args.config).open("r") as f:
            data = json.load(f)

        listen = data.get("listen", [":80"])
        if isinstance(listen, str):
            listen = [listen]

        return ServerConfig(
            datadir=data.get("datadir", "."),
            listen=tuple(listen),
            max_iterations=int(data.get("max_iterations", DEFAULT_MAX_ITERATIONS)),
            max_idle_sec=float(data.get("max_idle", DEFAULT_MAX_IDLE_SEC)),
            reap_interval_sec=float(data.get("reap_interval", DEFAULT_REAP_INTERVAL_SEC)),
            log_file=data.get("log_file"),
            verbose=bool(data.get("verbose", False)),
        )

    return ServerConfig(
        datadir=args.datadir,
        listen=tuple(args.listen or [":80"]),
        max_iterations=args.max_iterations,
        max_idle_sec=args.max_idle_sec,
        reap_interval_sec=args.reap_interval_sec,
        log_file=args.log_file,
        verbose=args.verbose,
    )


def split_endpoint(endpoint: str) -> tuple[Optional[str], int]:
    """
    Split a host:port endpoint.

    An empty host means all interfaces; IPv6 hosts may be bracketed.
    """
    host, sep, port = endpoint.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen endpoint: {endpoint!r}")
    host = host.strip("[]")
    return (host or None), int(port)


# =============================================================================
# SEGMENT GENERATOR
# =============================================================================

def clamp_segment_size(count: int) -> int:
    return max(MIN_SEGMENT_SIZE, min(count, MAX_SEGMENT_SIZE))


def genbody(count: int, random_bytes: Callable[[int], bytes] = random.randbytes) -> bytes:
    """Generate a pseudo-random segment, clamping count into the valid range."""
    return random_bytes(clamp_segment_size(count))


def _new_token() -> str:
    return str(uuid.uuid4())


# =============================================================================
# PROTOCOL HANDLERS
# =============================================================================

class DashHandler:
    """
    aiohttp handlers for the negotiate, download and collect endpoints.

    Every path sets an explicit status; expected failures are logged at
    WARNING and never escape the handler.
    """

    def __init__(
        self,
        table: SessionTable,
        store: ResultStore,
        *,
        random_bytes: Callable[[int], bytes] = random.randbytes,
        new_token: Callable[[], str] = _new_token,
    ):
        self.table = table
        self.store = store
        self._random_bytes = random_bytes
        self._new_token = new_token

    def register_routes(self, app: web.Application) -> None:
        app.router.add_post(NEGOTIATE_PATH, self.negotiate)
        app.router.add_get(DOWNLOAD_PATH_NO_TRAILING_SLASH, self.download, allow_head=False)
        app.router.add_get(DOWNLOAD_PATH + "{size:.*}", self.download, allow_head=False)
        app.router.add_post(COLLECT_PATH, self.collect)

    async def negotiate(self, request: web.Request) -> web.Response:
        # The request body carries the client's rate ladder. It is advisory
        # and not read: clients pick any rate inside the segment bounds.
        address = request.remote
        if not address:
            logger.warning("negotiate: cannot determine remote address")
            return web.Response(status=500)
        try:
            token = self._new_token()
        except OSError as e:
            logger.warning("negotiate: new token: %s", e)
            return web.Response(status=500)
        try:
            body = json.dumps(NegotiateResponse(
                authorization=token,
                queue_pos=0,
                real_address=address,
                unchoked=1,
            ).to_dict())
        except (TypeError, ValueError) as e:
            logger.warning("negotiate: json.dumps: %s", e)
            return web.Response(status=500)
        self.table.create(token)
        logger.debug("negotiate: new session for %s", address)
        return web.Response(text=body, content_type="application/json")

    async def download(self, request: web.Request) -> web.Response:
        token = request.headers.get(AUTHORIZATION_HEADER, "")
        state = self.table.state(token)
        if state is SessionState.MISSING:
            logger.warning("download: session missing")
            return web.Response(status=400)
        if state is SessionState.EXPIRED:
            logger.warning("download: session expired")
            return web.Response(status=429)
        try:
            count = parse_segment_size(request.match_info.get("size", ""))
        except ProtocolError as e:
            logger.warning("download: %s", e)
            return web.Response(status=400)
        try:
            data = genbody(count, self._random_bytes)
        except (OSError, MemoryError) as e:
            logger.warning("download: genbody: %s", e)
            return web.Response(status=500)
        self.table.record_iteration(token)
        return web.Response(body=data, content_type="video/mp4")

    async def collect(self, request: web.Request) -> web.Response:
        session = self.table.pop(request.headers.get(AUTHORIZATION_HEADER, ""))
        if session is None:
            logger.warning("collect: session missing")
            return web.Response(status=400)
        try:
            session.schema.client = decode_client_results(loads_json(await request.read()))
        except ProtocolError as e:
            logger.warning("collect: %s", e)
            return web.Response(status=400)
        data = dumps_records(session.schema.server)
        try:
            await asyncio.to_thread(self.store.save, session.schema, session.created_at)
        except OSError as e:
            logger.warning("collect: savedata: %s", e)
            return web.Response(status=500)
        return web.Response(body=data, content_type="application/json")


# =============================================================================
# APPLICATION
# =============================================================================

HANDLER_KEY = web.AppKey("dash_handler", DashHandler)
REAPER_KEY = web.AppKey("dash_reaper", SessionReaper)


def create_app(
    cfg: Optional[ServerConfig] = None,
    *,
    table: Optional[SessionTable] = None,
    store: Optional[ResultStore] = None,
    random_bytes: Callable[[int], bytes] = random.randbytes,
    new_token: Callable[[], str] = _new_token,
) -> web.Application:
    """
    Build the aiohttp application.

    The session reaper starts with the application and is stopped and
    joined during cleanup, so no sweep runs after shutdown.
    """
    cfg = cfg or ServerConfig()
    if table is None:
        table = SessionTable(max_iterations=cfg.max_iterations)
    if store is None:
        store = GzipResultStore(cfg.datadir)

    handler = DashHandler(table, store, random_bytes=random_bytes, new_token=new_token)
    app = web.Application()
    handler.register_routes(app)
    app[HANDLER_KEY] = handler

    async def reaper_ctx(app: web.Application):
        reaper = SessionReaper(table, interval=cfg.reap_interval_sec, max_idle=cfg.max_idle_sec)
        reaper.start()
        app[REAPER_KEY] = reaper
        yield
        reaper.stop()
        await reaper.join()

    app.cleanup_ctx.append(reaper_ctx)
    return app


async def serve(cfg: ServerConfig) -> None:
    """Run the server until SIGINT or SIGTERM."""
    app = create_app(cfg)
    runner = web.AppRunner(app)
    await runner.setup()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    try:
        for endpoint in cfg.listen:
            host, port = split_endpoint(endpoint)
            site = web.TCPSite(runner, host, port)
            await site.start()
            print(f"[Server] Listening on {endpoint}")
        print(f"[Server] Saving results under {Path(cfg.datadir).resolve()}")
        await stop.wait()
        print("\n[Shutdown] Stopping server...")
    finally:
        await runner.cleanup()


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    cfg = parse_args(argv)
    setup_logger(None, cfg.log_file, logging.DEBUG if cfg.verbose else logging.INFO)

    try:
        asyncio.run(serve(cfg))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"[Server] Fatal: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
