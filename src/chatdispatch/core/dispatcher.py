# src/chatdispatch/core/dispatcher.py
from __future__ import annotations

import functools
from types import MappingProxyType
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Type, TypeVar

from chatdispatch.core import log
from chatdispatch.core.contracts import HANDLED, PASS_THROUGH, HandlerResult
from chatdispatch.core.context import (
    BaseContext,
    CallbackButton,
    CallbackButtonContext,
    CommandContext,
    EnterStateContext,
    NewMessageContext,
)
from chatdispatch.core.metrics import inc_counter

__all__ = [
    "Handler",
    "HandlerList",
    "HandlerListBuilder",
    "build_handler_list",
]

C = TypeVar("C", bound=BaseContext)

Handler = Callable[[C], Awaitable[HandlerResult]]
Body = Callable[[C], Awaitable[None]]

l = log.get(__name__)


def _name(fn) -> str:
    return getattr(fn, "__qualname__", None) or repr(fn)


class HandlerList:
    """
    Read-only routing table: exact context class -> ordered handler chain,
    plus one optional fallback. Build it with HandlerListBuilder.
    """

    def __init__(self, chains: Mapping[type, List[Handler]], fallback: Optional[Handler] = None):
        self._chains: Mapping[type, Tuple[Handler, ...]] = MappingProxyType(
            {ctx_type: tuple(chain) for ctx_type, chain in chains.items() if chain}
        )
        self._fallback = fallback

    @property
    def fallback(self) -> Optional[Handler]:
        return self._fallback

    def handlers_for(self, ctx_type: type) -> Tuple[Handler, ...]:
        return self._chains.get(ctx_type, ())

    def context_types(self) -> Tuple[type, ...]:
        return tuple(self._chains)

    async def handle(self, ctx: BaseContext) -> HandlerResult:
        """
        Try the chain for type(ctx) in registration order; the first HANDLED
        stops it. An exhausted or missing chain goes to the fallback, whose
        result is final. Without a fallback the result is PASS_THROUGH.
        Handler exceptions propagate to the caller.
        """
        ctx_type = type(ctx)
        for handler in self._chains.get(ctx_type, ()):
            result = _check(handler, await handler(ctx))
            if result is HANDLED:
                l.debug("%s handled by %s", ctx_type.__name__, _name(handler))
                inc_counter("dispatch_total", 1, context=ctx_type.__name__, result="handled")
                return result

        if self._fallback is None:
            l.debug("%s not handled", ctx_type.__name__)
            inc_counter("dispatch_total", 1, context=ctx_type.__name__, result="pass_through")
            return PASS_THROUGH

        result = _check(self._fallback, await self._fallback(ctx))
        l.debug("%s reached fallback -> %s", ctx_type.__name__, result.value)
        inc_counter("dispatch_total", 1, context=ctx_type.__name__, result=f"fallback_{result.value}")
        return result


def _check(handler: Handler, result) -> HandlerResult:
    if not isinstance(result, HandlerResult):
        raise TypeError(f"handler {_name(handler)} returned {result!r}, expected HandlerResult")
    return result


def _report_handled(body: Body) -> Handler:
    """Wrap a body that returns nothing into a handler reporting HANDLED."""
    @functools.wraps(body)
    async def handler(ctx):
        await body(ctx)
        return HANDLED
    return handler


class HandlerListBuilder:
    """
    Construction-time surface. The *_handler decorators register functions
    that return a HandlerResult themselves; the short forms register bodies
    that return nothing and count as HANDLED.

        b = HandlerListBuilder()

        @b.command("start")
        async def start(ctx):
            await ctx.send("hi")
    """

    def __init__(self) -> None:
        self._chains: Dict[type, List[Handler]] = {}
        self._fallback: Optional[Handler] = None

    # -------------------- primitives --------------------
    def add(self, ctx_type: Type[C], handler: Handler) -> Handler:
        """Append handler to the chain for exactly ctx_type."""
        if not (isinstance(ctx_type, type) and issubclass(ctx_type, BaseContext)):
            raise TypeError(f"{ctx_type!r} is not a context class")
        self._chains.setdefault(ctx_type, []).append(handler)
        l.debug("registered %s for %s", _name(handler), ctx_type.__name__)
        return handler

    def set_fallback(self, handler: Handler) -> Handler:
        """Install the fallback; a second call replaces the first."""
        if self._fallback is not None:
            l.warning("fallback %s replaced by %s", _name(self._fallback), _name(handler))
        self._fallback = handler
        return handler

    def build(self) -> HandlerList:
        return HandlerList(self._chains, self._fallback)

    # -------------------- fallback --------------------
    def fallback_handler(self, fn: Handler) -> Handler:
        return self.set_fallback(fn)

    def fallback(self, fn: Body) -> Body:
        self.set_fallback(_report_handled(fn))
        return fn

    # -------------------- state entry --------------------
    def on_enter_handler(self, fn: Handler) -> Handler:
        return self.add(EnterStateContext, fn)

    def on_enter(self, fn: Body) -> Body:
        self.add(EnterStateContext, _report_handled(fn))
        return fn

    # -------------------- plain text --------------------
    def text_handler(self, fn: Handler) -> Handler:
        return self.add(NewMessageContext, fn)

    def text(self, fn: Body) -> Body:
        self.add(NewMessageContext, _report_handled(fn))
        return fn

    # -------------------- commands --------------------
    def command_handler(self, *names: str) -> Callable[[Handler], Handler]:
        """Passes through unless ctx.command is one of names (no names: any command)."""
        wanted = frozenset(n.lstrip("/") for n in names)

        def deco(fn: Handler) -> Handler:
            if not wanted:
                return self.add(CommandContext, fn)

            @functools.wraps(fn)
            async def handler(ctx: CommandContext) -> HandlerResult:
                if ctx.command in wanted:
                    return await fn(ctx)
                return PASS_THROUGH

            self.add(CommandContext, handler)
            return fn
        return deco

    def command(self, *names: str) -> Callable[[Body], Body]:
        def deco(fn: Body) -> Body:
            self.command_handler(*names)(_report_handled(fn))
            return fn
        return deco

    # -------------------- inline buttons --------------------
    def any_callback_handler(self, fn: Handler) -> Handler:
        return self.add(CallbackButtonContext, fn)

    def any_callback(self, fn: Body) -> Body:
        self.add(CallbackButtonContext, _report_handled(fn))
        return fn

    def callback_handler(self, button_cls: Type[CallbackButton]) -> Callable[[Handler], Handler]:
        """Passes through unless ctx.button is a button_cls."""
        def deco(fn: Handler) -> Handler:
            @functools.wraps(fn)
            async def handler(ctx: CallbackButtonContext) -> HandlerResult:
                if isinstance(ctx.button, button_cls):
                    return await fn(ctx)
                return PASS_THROUGH

            self.add(CallbackButtonContext, handler)
            return fn
        return deco

    def callback(self, button_cls: Type[CallbackButton]) -> Callable[[Body], Body]:
        def deco(fn: Body) -> Body:
            self.callback_handler(button_cls)(_report_handled(fn))
            return fn
        return deco


def build_handler_list(configure: Callable[[HandlerListBuilder], None]) -> HandlerList:
    """Run configure against a fresh builder and return the frozen list."""
    builder = HandlerListBuilder()
    configure(builder)
    return builder.build()
