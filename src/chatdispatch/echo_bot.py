# src/chatdispatch/echo_bot.py
"""Small reference bot: /start with a counter button, /help, echo, fallback."""
from __future__ import annotations

from dataclasses import dataclass

from chatdispatch.core.contracts import HANDLED, PASS_THROUGH, HandlerResult
from chatdispatch.core.context import (
    BaseContext,
    ButtonRegistry,
    CallbackButton,
    CallbackButtonContext,
    CommandContext,
    EnterStateContext,
    NewMessageContext,
)
from chatdispatch.core.dispatcher import HandlerList, HandlerListBuilder

BUTTONS = ButtonRegistry()


@BUTTONS.register
@dataclass
class CounterButton(CallbackButton):
    tag = "cnt"
    value: int = 0


def counter_markup(value: int) -> dict:
    data = BUTTONS.encode(CounterButton(value=value))
    return {"inline_keyboard": [[{"text": f"+1 ({value})", "callback_data": data}]]}


async def start(ctx: CommandContext) -> None:
    await ctx.send("Hello! Press the button.", reply_markup=counter_markup(0))


async def help_(ctx: CommandContext) -> None:
    await ctx.send("/start - counter\n/help - this text\nanything else is echoed")


async def echo(ctx: NewMessageContext) -> HandlerResult:
    if not ctx.text.strip():
        return PASS_THROUGH
    await ctx.reply(ctx.text)
    return HANDLED


async def bump(ctx: CallbackButtonContext) -> None:
    value = ctx.button.value + 1
    await ctx.answer(f"now {value}")
    await ctx.edit(f"Counter: {value}", reply_markup=counter_markup(value))


async def entered(ctx: EnterStateContext) -> None:
    await ctx.send(f"state: {ctx.state}")


async def unknown(ctx: BaseContext) -> None:
    if ctx.chat is not None:
        await ctx.send("Sorry, I don't understand that.")


def configure(b: HandlerListBuilder) -> None:
    b.command("start")(start)
    b.command("help")(help_)
    b.text_handler(echo)
    b.callback(CounterButton)(bump)
    b.on_enter(entered)
    b.fallback(unknown)


def build() -> HandlerList:
    b = HandlerListBuilder()
    configure(b)
    return b.build()
