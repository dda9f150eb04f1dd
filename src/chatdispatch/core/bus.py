# src/chatdispatch/core/bus.py
from __future__ import annotations

import asyncio
import traceback
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional, Protocol, Sequence

from chatdispatch.core import log
from chatdispatch.core.contracts import Request, Response, Update
from chatdispatch.core.errors import ApiError, RequestFailed, TransportError
from chatdispatch.core.metrics import Timer, inc_counter, set_gauge

__all__ = [
    "CONFIRMED_UPDATES_ALL",
    "UpdatesListener",
    "ResponseCallback",
    "FailureCallback",
    "Transport",
    "BridgeConfig",
    "BotBridge",
]

# listener return value: every update in the batch is acknowledged
CONFIRMED_UPDATES_ALL = -1

UpdatesListener = Callable[[Sequence[Update]], int]
ResponseCallback = Callable[[Request, Response], None]
FailureCallback = Callable[[Request, BaseException], None]


class Transport(Protocol):
    """What the bridge needs from the messaging backend client.

    Callbacks may be invoked from any thread; each execute() must complete
    exactly once through one of its two callbacks.
    """

    def set_updates_listener(self, listener: UpdatesListener) -> None: ...

    def remove_updates_listener(self) -> None: ...

    def execute(self, request: Request, on_response: ResponseCallback, on_failure: FailureCallback) -> None: ...


@dataclass
class BridgeConfig:
    # queue depth above which a warning is logged; the queue itself is unbounded
    queue_warn_depth: int = 1000


class BotBridge:
    """
    Async face of a callback-driven transport:
    - updates(): one active subscription, yields updates in arrival order
    - execute(request): one awaitable outcome per request
    """

    def __init__(self, transport: Transport, cfg: Optional[BridgeConfig] = None, name: str = "chatdispatch.bridge"):
        self.transport = transport
        self.cfg = cfg or BridgeConfig()
        self.name = name
        self.l = log.get(name)
        self._subscribed = False

    @property
    def subscribed(self) -> bool:
        return self._subscribed

    # -------------------- subscription --------------------
    async def updates(self) -> AsyncIterator[Update]:
        """
        Yield updates until the consumer stops iterating (break, aclose() or
        cancellation). Closing unregisters the transport listener; updates
        still queued at that point are discarded, they were already
        acknowledged.
        """
        if self._subscribed:
            raise RuntimeError(f"{self.name}: updates() already has an active subscription")
        self._subscribed = True

        loop = asyncio.get_running_loop()
        q: "asyncio.Queue[Update]" = asyncio.Queue()
        closed = False
        warned = False

        def _enqueue(batch: List[Update]) -> None:
            nonlocal warned
            if closed:
                return
            for update in batch:
                q.put_nowait(update)
            depth = q.qsize()
            set_gauge("bridge_queue_depth", float(depth), bridge=self.name)
            if depth > self.cfg.queue_warn_depth and not warned:
                warned = True
                self.l.warning("update queue depth %d above %d; consumer is falling behind",
                               depth, self.cfg.queue_warn_depth)
            elif depth <= self.cfg.queue_warn_depth:
                warned = False

        def listener(batch: Sequence[Update]) -> int:
            if closed or not batch:
                return CONFIRMED_UPDATES_ALL
            try:
                loop.call_soon_threadsafe(_enqueue, list(batch))
            except RuntimeError:
                # event loop closed before the subscription was
                self.l.warning("batch of %d updates discarded: event loop is closed", len(batch))
                return CONFIRMED_UPDATES_ALL
            inc_counter("bridge_updates_total", len(batch), bridge=self.name)
            return CONFIRMED_UPDATES_ALL

        try:
            self.transport.set_updates_listener(listener)
        except Exception:
            self._subscribed = False
            raise
        self.l.info("updates subscription start")
        try:
            while True:
                update = await q.get()
                yield update
        finally:
            closed = True
            self.transport.remove_updates_listener()
            self._subscribed = False
            self.l.info("updates subscription stop (discarded=%d)", q.qsize())

    # -------------------- request/response --------------------
    async def execute(self, request: Request) -> Response:
        """
        Issue one request and wait for its own completion.

        Raises ApiError when the remote side answers with ok=false and
        TransportError when the transport reports a failure; both are
        RequestFailed.
        """
        call_site = traceback.extract_stack()[:-1]
        loop = asyncio.get_running_loop()
        fut: "asyncio.Future[Response]" = loop.create_future()

        def _settle(response: Optional[Response], err: Optional[RequestFailed]) -> None:
            # late or duplicate completion, or the caller was cancelled
            if fut.done():
                return
            if err is not None:
                fut.set_exception(err)
            else:
                fut.set_result(response)

        def on_response(req: Request, response: Response) -> None:
            if response.ok:
                loop.call_soon_threadsafe(_settle, response, None)
                return
            err = ApiError(req.method, response.error_code, response.description, response)
            err.call_site = call_site
            loop.call_soon_threadsafe(_settle, None, err)

        def on_failure(req: Request, exc: BaseException) -> None:
            err = TransportError(req.method, exc)
            err.__cause__ = exc
            err.call_site = call_site
            loop.call_soon_threadsafe(_settle, None, err)

        status = "ok"
        with Timer("bridge_call_ms", method=request.method):
            try:
                try:
                    self.transport.execute(request, on_response, on_failure)
                except Exception as e:
                    err = TransportError(request.method, e)
                    err.call_site = call_site
                    raise err from e
                return await fut
            except ApiError as e:
                status = "api_error"
                self.l.debug("%s rejected: %s %s", request.method, e.error_code, e.description)
                raise
            except TransportError as e:
                status = "transport_error"
                self.l.debug("%s transport failure: %r", request.method, e.cause)
                raise
            except asyncio.CancelledError:
                status = "cancelled"
                raise
            finally:
                inc_counter("bridge_call_total", 1, method=request.method, status=status)
