# src/chatdispatch/adapters/ws_transport.py
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Set, Tuple

import websockets

from chatdispatch.core.bus import CONFIRMED_UPDATES_ALL, FailureCallback, ResponseCallback, UpdatesListener
from chatdispatch.core.contracts import Request, Response, Update

log = logging.getLogger(__name__)

_Call = Tuple[Request, ResponseCallback, FailureCallback]


@dataclass
class WSTransportConfig:
    url: str = "ws://127.0.0.1:8765"
    reconnect_delay: float = 1.0
    token: Optional[str] = None


@dataclass
class WSTransport:
    """
    Transport over a JSON websocket gateway.

    inbound : {"type": "updates", "updates": [<Bot API update>, ...]}
              {"type": "result", "id": n, "ok": .., "result": .., "error_code": .., "description": ..}
    outbound: {"type": "auth", "token": ..}
              {"type": "call", "id": n, "method": .., "params": {..}}
              {"type": "ack", "offset": <last update_id + 1>}

    Calls still in flight when the connection drops fail with ConnectionError.
    """
    cfg: WSTransportConfig
    _ws: Optional["websockets.ClientConnection"] = None
    _listener: Optional[UpdatesListener] = None
    _calls: Dict[int, _Call] = field(default_factory=dict)
    _ids: "itertools.count[int]" = field(default_factory=lambda: itertools.count(1))
    _tasks: Set[asyncio.Task] = field(default_factory=set)
    _task_recv: Optional[asyncio.Task] = None
    _closed: bool = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        while not self._closed:
            try:
                log.info("ws connect %s", self.cfg.url)
                ws = await websockets.connect(self.cfg.url)
                if self.cfg.token:
                    await ws.send(json.dumps({"type": "auth", "token": self.cfg.token}))
                self._ws = ws
                self._task_recv = asyncio.create_task(self._recv_loop(ws))
                return
            except Exception as e:
                log.warning("ws connect failed: %s; retry in %.1fs", e, self.cfg.reconnect_delay)
                await asyncio.sleep(self.cfg.reconnect_delay)

    async def close(self) -> None:
        self._closed = True
        ws, self._ws = self._ws, None
        if self._task_recv:
            self._task_recv.cancel()
            await asyncio.gather(self._task_recv, return_exceptions=True)
        if ws is not None:
            await ws.close()
        self._fail_all(ConnectionError("transport closed"))

    # -------------------- Transport protocol --------------------
    def set_updates_listener(self, listener: UpdatesListener) -> None:
        self._listener = listener

    def remove_updates_listener(self) -> None:
        self._listener = None

    def execute(self, request: Request, on_response: ResponseCallback, on_failure: FailureCallback) -> None:
        if self._ws is None:
            on_failure(request, ConnectionError("ws not connected"))
            return
        call_id = next(self._ids)
        self._calls[call_id] = (request, on_response, on_failure)
        task = asyncio.get_running_loop().create_task(self._send_call(self._ws, call_id, request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -------------------- internals --------------------
    async def _send_call(self, ws, call_id: int, request: Request) -> None:
        msg = {"type": "call", "id": call_id, "method": request.method, "params": request.params}
        try:
            await ws.send(json.dumps(msg))
        except (OSError, websockets.ConnectionClosed) as e:
            call = self._calls.pop(call_id, None)
            if call is not None:
                call[2](call[0], e)

    def _fail_all(self, exc: BaseException) -> None:
        calls, self._calls = self._calls, {}
        for request, _, on_failure in calls.values():
            on_failure(request, exc)

    async def _on_updates(self, ws, raw_updates) -> None:
        listener = self._listener
        if listener is None or not raw_updates:
            return
        updates = [Update.from_dict(u) for u in raw_updates]
        if listener(updates) == CONFIRMED_UPDATES_ALL:
            offset = max(u.update_id for u in updates) + 1
            await ws.send(json.dumps({"type": "ack", "offset": offset}))

    def _on_result(self, msg: dict) -> None:
        call = self._calls.pop(int(msg.get("id", -1)), None)
        if call is None:
            log.warning("result for unknown call id=%s", msg.get("id"))
            return
        request, on_response, _ = call
        on_response(request, Response.from_dict(msg))

    async def _recv_loop(self, ws) -> None:
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                    kind = msg.get("type")
                    if kind == "updates":
                        await self._on_updates(ws, msg.get("updates", []))
                    elif kind == "result":
                        self._on_result(msg)
                    else:
                        log.debug("ignored ws message type=%s", kind)
                except (ValueError, KeyError, TypeError) as e:
                    log.exception("ws recv err: %s", e)
        except websockets.ConnectionClosed as e:
            log.info("ws closed: %s", e)
        finally:
            self._ws = None
            self._fail_all(ConnectionError("connection lost"))
            if not self._closed:
                log.info("ws disconnected; will reconnect")
                await self.connect()
