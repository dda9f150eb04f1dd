from __future__ import annotations

import asyncio
from typing import Any, Callable, List, Optional, Set

from chatdispatch.core import log
from chatdispatch.core.bus import BotBridge
from chatdispatch.core.contracts import PASS_THROUGH, Chat, HandlerResult, Update, User
from chatdispatch.core.context import BaseContext, ButtonRegistry, EnterStateContext, contexts_from_update
from chatdispatch.core.dispatcher import HandlerList
from chatdispatch.core.metrics import Timer, inc_counter

ContextFactory = Callable[[BotBridge, Update, Optional[ButtonRegistry]], List[BaseContext]]

l = log.get(__name__)


class DispatchLoop:
    """
    Drives a HandlerList from a bridge subscription.

    Every context is dispatched inside its own failure boundary: a handler
    error is logged and counted, and the loop moves on. With
    concurrent=False (default) one update is fully dispatched before the
    next is read; with concurrent=True each update gets its own task and
    the caller owns any per-chat serialization.
    """

    def __init__(self, bridge: BotBridge, handlers: HandlerList, *,
                 buttons: Optional[ButtonRegistry] = None,
                 concurrent: bool = False,
                 context_factory: ContextFactory = contexts_from_update):
        self.bridge = bridge
        self.handlers = handlers
        self.buttons = buttons
        self.concurrent = concurrent
        self.context_factory = context_factory
        self._stop_evt: Optional[asyncio.Event] = None
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> None:
        """Consume updates until stop() is called or the subscription ends."""
        if self._running:
            raise RuntimeError("dispatch loop already running")
        self._running = True
        self._stop_evt = asyncio.Event()
        stream = self.bridge.updates()
        l.info("dispatch loop start (concurrent=%s)", self.concurrent)
        try:
            try:
                while not self._stop_evt.is_set():
                    next_update = asyncio.ensure_future(stream.__anext__())
                    stopper = asyncio.ensure_future(self._stop_evt.wait())
                    try:
                        done, _ = await asyncio.wait({next_update, stopper}, return_when=asyncio.FIRST_COMPLETED)
                    except BaseException:
                        # the pending __anext__ must finish before the stream can be closed
                        next_update.cancel()
                        stopper.cancel()
                        await asyncio.gather(next_update, stopper, return_exceptions=True)
                        raise
                    stopper.cancel()
                    if next_update not in done:
                        next_update.cancel()
                        await asyncio.gather(next_update, return_exceptions=True)
                        break
                    try:
                        update = next_update.result()
                    except StopAsyncIteration:
                        break
                    if self.concurrent:
                        task = asyncio.create_task(self.dispatch_update(update))
                        self._tasks.add(task)
                        task.add_done_callback(self._tasks.discard)
                    else:
                        await self.dispatch_update(update)
            finally:
                # closing the subscription; dispatches already started keep going
                await stream.aclose()
                if self._tasks:
                    await asyncio.gather(*list(self._tasks), return_exceptions=True)
        finally:
            self._running = False
            l.info("dispatch loop stop")

    def stop(self) -> None:
        if self._stop_evt is not None:
            self._stop_evt.set()

    async def dispatch_update(self, update: Update) -> List[HandlerResult]:
        """Dispatch every context derived from one update; never raises for handler errors."""
        try:
            contexts = self.context_factory(self.bridge, update, self.buttons)
        except Exception:
            l.exception("cannot build contexts for update %s", update.update_id)
            inc_counter("dispatch_errors_total", 1, context="-")
            return []
        if not contexts:
            l.debug("update %s carries nothing to dispatch", update.update_id)
        return [await self.dispatch_context(ctx) for ctx in contexts]

    async def dispatch_context(self, ctx: BaseContext) -> HandlerResult:
        """One isolated dispatch: errors are logged and reported as PASS_THROUGH."""
        kind = type(ctx).__name__
        with Timer("dispatch_ms", context=kind):
            try:
                result = await self.handlers.handle(ctx)
            except asyncio.CancelledError:
                raise
            except Exception:
                l.exception("handler error while dispatching %s", kind)
                inc_counter("dispatch_errors_total", 1, context=kind)
                return PASS_THROUGH
        if result is PASS_THROUGH:
            l.debug("unhandled %s", kind)
            inc_counter("dispatch_unhandled_total", 1, context=kind)
        return result

    async def enter_state(self, state: Any, *, chat: Optional[Chat] = None,
                          user: Optional[User] = None, update: Optional[Update] = None) -> HandlerResult:
        """Dispatch an EnterStateContext for a chat that just switched state."""
        ctx = EnterStateContext(bridge=self.bridge, update=update, chat=chat, user=user, state=state)
        return await self.dispatch_context(ctx)
