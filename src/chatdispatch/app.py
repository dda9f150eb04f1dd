# src/chatdispatch/app.py
from __future__ import annotations

import argparse
import asyncio
import os
import signal
from typing import List, Optional

from chatdispatch.adapters.ws_transport import WSTransport
from chatdispatch.core import log
from chatdispatch.core.bus import BotBridge
from chatdispatch.core.context import ButtonRegistry
from chatdispatch.core.dispatcher import HandlerList
from chatdispatch.core.loop import DispatchLoop
from chatdispatch.core.metrics import start_exporter, stop_exporter
from chatdispatch.wire_config import AppConfig, build_from_yaml

lg = log.get("app")


async def serve(cfg: AppConfig, handlers: HandlerList, buttons: Optional[ButtonRegistry] = None,
                *, duration: Optional[float] = None) -> None:
    """Connect the websocket transport and dispatch until SIGINT/SIGTERM or duration."""
    transport = WSTransport(cfg.transport)
    await transport.connect()
    bridge = BotBridge(transport, cfg.bridge)
    loop_ = DispatchLoop(bridge, handlers, buttons=buttons, concurrent=cfg.concurrent)

    stop_event = asyncio.Event()

    def _signal_handler():
        if not stop_event.is_set():
            stop_event.set()

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
            installed.append(sig)
        except NotImplementedError:
            # no add_signal_handler on Windows
            pass

    runner = asyncio.create_task(loop_.run())
    lg.info("bot start url=%s handlers=%s", cfg.transport.url,
            ",".join(t.__name__ for t in handlers.context_types()) or "-")
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=duration)
    except asyncio.TimeoutError:
        pass
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        loop_.stop()
        await asyncio.gather(runner, return_exceptions=True)
        await transport.close()
        lg.info("bot stop")


async def amain(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Run a chatdispatch bot from a YAML handler table")
    ap.add_argument("config", help="path to bot.yaml")
    ap.add_argument("--duration", type=float, default=None, help="stop after N seconds")
    ap.add_argument("--log-json", action="store_true", help="log in JSON")
    ap.add_argument("--metrics-interval", type=float,
                    default=float(os.getenv("METRICS_INTERVAL", "0")),
                    help="log metric snapshots every N seconds (0 = off)")
    args = ap.parse_args(argv)

    cfg, handlers, buttons = build_from_yaml(args.config)
    log.setup(cfg.log.level, json_mode=args.log_json or cfg.log.json, force=True)
    if args.metrics_interval > 0:
        start_exporter(interval_sec=args.metrics_interval, json_mode=args.log_json or cfg.log.json)
    try:
        await serve(cfg, handlers, buttons, duration=args.duration)
    finally:
        stop_exporter()


def main() -> None:
    asyncio.run(amain())


if __name__ == "__main__":
    main()
