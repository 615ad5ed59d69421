# src/wickrelay/app.py
from __future__ import annotations

import argparse
import asyncio
import importlib
import os
import signal
from typing import Callable, List, Optional, Sequence

from wickrelay.adapters.ws_server import RelayServer
from wickrelay.config import RelayConfig, load_config
from wickrelay.core import log
from wickrelay.core.broadcaster import ImageBroadcaster
from wickrelay.core.contracts import Handler
from wickrelay.core.dispatcher import Dispatcher
from wickrelay.core.errors import ConfigError, RelayError
from wickrelay.core.metrics import start_exporter, stop_exporter

lg = log.get("wickrelay.app")


class RelayApp:
    """Dispatcher + websockets server + image broadcaster, started and stopped together."""

    def __init__(self, cfg: Optional[RelayConfig] = None):
        self.cfg = cfg or RelayConfig()
        self.dispatcher = Dispatcher()
        self.server = RelayServer(self.dispatcher, self.cfg)
        self.broadcaster = ImageBroadcaster(self.dispatcher, interval=self.cfg.broadcast_interval)

    def register(self, type: str, handler: Handler) -> None:
        self.dispatcher.register(type, handler)

    def hook(self, type: str):
        return self.dispatcher.hook(type)

    async def broadcast_message(self, type: str, data) -> None:
        await self.dispatcher.broadcast_message(type, data)

    @property
    def port(self) -> int:
        return self.server.port

    async def start(self) -> None:
        await self.server.start()
        self.broadcaster.start()

    async def stop(self, drain_timeout: Optional[float] = 5.0) -> None:
        await self.broadcaster.stop()
        # replies still need the server, so drain before closing it
        await self.dispatcher.drain(timeout=drain_timeout)
        await self.server.stop()

    async def run_forever(self, stop_evt: Optional[asyncio.Event] = None) -> None:
        stop_evt = stop_evt or asyncio.Event()
        loop = asyncio.get_running_loop()
        installed: List[int] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_evt.set)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                lg.debug("signal handler for %s not supported here", sig)

        await self.start()
        try:
            await stop_evt.wait()
            lg.info("shutdown requested")
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.stop()


def load_hooks(target: str) -> Callable[[Dispatcher], None]:
    """Resolve ``package.module:function``; the function receives the dispatcher."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"hook target must look like 'module:function', got {target!r}")
    try:
        mod = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"cannot import hook module {module_name!r}: {e}") from e
    fn = getattr(mod, attr, None)
    if not callable(fn):
        raise ConfigError(f"{target!r} is not a callable")
    return fn


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="wickrelay", description="Local hook relay over websockets.")
    ap.add_argument("--config", help="YAML config file")
    ap.add_argument("--host")
    ap.add_argument("--port", type=int)
    ap.add_argument("--interval", type=float, dest="broadcast_interval", help="image broadcast interval (s)")
    ap.add_argument("--namespace")
    ap.add_argument("--hooks", action="append", default=[], metavar="MODULE:FUNC",
                    help="setup function called with the dispatcher; may repeat")
    ap.add_argument("--log-level", default=None)
    ap.add_argument("--log-json", action="store_true", default=None)
    ap.add_argument("--metrics-interval", type=float, default=float(os.getenv("METRICS_INTERVAL", "0")),
                    help="log metrics every N seconds (0 = off)")
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    log.setup(args.log_level, args.log_json)

    try:
        cfg = load_config(
            args.config,
            host=args.host,
            port=args.port,
            broadcast_interval=args.broadcast_interval,
            namespace=args.namespace,
        )
        app = RelayApp(cfg)
        for target in args.hooks:
            load_hooks(target)(app.dispatcher)
    except ConfigError as e:
        lg.error("config error: %s", e)
        return 2

    if args.metrics_interval > 0:
        start_exporter(interval_sec=args.metrics_interval)
    try:
        asyncio.run(app.run_forever())
    except RelayError as e:
        lg.error("relay error: %s", e)
        return 1
    except OSError as e:
        lg.error("cannot serve on %s:%s: %s", cfg.host, cfg.port, e)
        return 1
    finally:
        stop_exporter()
    return 0
