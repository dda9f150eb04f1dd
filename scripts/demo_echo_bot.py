# scripts/demo_echo_bot.py
"""Run the reference echo bot against an in-process transport with scripted updates."""
import argparse
import asyncio
import logging
import os

from chatdispatch.adapters.local_transport import LocalTransport, ok_responder
from chatdispatch.core import log
from chatdispatch.core.bus import BotBridge
from chatdispatch.core.contracts import Update
from chatdispatch.core.loop import DispatchLoop
from chatdispatch.core.metrics import force_emit
from chatdispatch import echo_bot

CHAT = {"id": 42, "type": "private"}
USER = {"id": 7, "first_name": "Demo"}


def _msg(update_id: int, text: str) -> Update:
    return Update.from_dict({
        "update_id": update_id,
        "message": {"message_id": update_id, "chat": CHAT, "from": USER, "text": text},
    })


def _press(update_id: int, data: str) -> Update:
    return Update.from_dict({
        "update_id": update_id,
        "callback_query": {
            "id": f"cq{update_id}", "from": USER, "data": data,
            "message": {"message_id": 1, "chat": CHAT, "text": "Counter"},
        },
    })


async def amain(args) -> None:
    lg = log.get("demo")
    transport = LocalTransport(auto_responder=ok_responder())
    bridge = BotBridge(transport)
    loop_ = DispatchLoop(bridge, echo_bot.build(), buttons=echo_bot.BUTTONS)
    runner = asyncio.create_task(loop_.run())

    while not transport.has_listener:
        await asyncio.sleep(0.01)

    script = [
        _msg(1, "/start"),
        _msg(2, "hello there"),
        _press(3, echo_bot.BUTTONS.encode(echo_bot.CounterButton(value=0))),
        _msg(4, "/nope"),
        _msg(5, "/help"),
    ]
    for update in script:
        transport.push(update)
        await asyncio.sleep(args.gap)

    await loop_.enter_state("settings")
    loop_.stop()
    await runner

    for req in transport.sent:
        lg.info("-> %s %s", req.method, req.params.get("text", ""))
    force_emit(logging.getLogger("chatdispatch.metrics"))


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--gap", type=float, default=0.05, help="seconds between scripted updates")
    ap.add_argument("--log-json", action="store_true", help="Log in JSON")
    args = ap.parse_args()
    log.setup(os.getenv("LOG_LEVEL", "INFO"), json_mode=args.log_json)
    asyncio.run(amain(args))


if __name__ == "__main__":
    main()
