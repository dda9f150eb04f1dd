from __future__ import annotations

import json
from dataclasses import dataclass, field, asdict, fields, is_dataclass
from typing import Any, ClassVar, Dict, List, Optional, Type, TYPE_CHECKING

from chatdispatch.core import log
from chatdispatch.core.contracts import (
    CallbackQuery,
    Chat,
    Message,
    Response,
    Update,
    User,
    answer_callback_query,
    edit_message_text,
    send_message,
)

if TYPE_CHECKING:  # pragma: no cover
    from chatdispatch.core.bus import BotBridge

__all__ = [
    "CallbackButton",
    "UnknownButton",
    "ButtonRegistry",
    "BaseContext",
    "NewMessageContext",
    "CommandContext",
    "CallbackButtonContext",
    "EnterStateContext",
    "parse_command",
    "contexts_from_update",
]

l = log.get(__name__)

# Bot API limit for callback_data
MAX_CALLBACK_DATA = 64


# --------- Button payloads ---------
class CallbackButton:
    """Base for typed inline-button payloads. Subclasses are dataclasses."""
    tag: ClassVar[str] = ""


@dataclass
class UnknownButton(CallbackButton):
    """Callback data that no registered button class recognises."""
    raw: str = ""


class ButtonRegistry:
    """Maps a short tag to a button class and back: "<tag>:<json fields>"."""

    def __init__(self) -> None:
        self._by_tag: Dict[str, Type[CallbackButton]] = {}

    def register(self, cls: Type[CallbackButton]) -> Type[CallbackButton]:
        if not is_dataclass(cls):
            raise TypeError(f"{cls.__name__} must be a dataclass")
        tag = cls.tag or cls.__name__
        if ":" in tag:
            raise ValueError(f"button tag may not contain ':' ({tag!r})")
        other = self._by_tag.get(tag)
        if other is not None and other is not cls:
            raise ValueError(f"button tag {tag!r} already used by {other.__name__}")
        self._by_tag[tag] = cls
        return cls

    def encode(self, button: CallbackButton) -> str:
        cls = type(button)
        tag = cls.tag or cls.__name__
        if self._by_tag.get(tag) is not cls:
            raise KeyError(f"button class {cls.__name__} is not registered")
        body = json.dumps(asdict(button), separators=(",", ":"), ensure_ascii=False)
        data = f"{tag}:{body}"
        if len(data.encode("utf-8")) > MAX_CALLBACK_DATA:
            raise ValueError(f"callback data for {cls.__name__} exceeds {MAX_CALLBACK_DATA} bytes")
        return data

    def decode(self, data: Optional[str]) -> CallbackButton:
        if not data:
            return UnknownButton(raw=data or "")
        tag, sep, body = data.partition(":")
        cls = self._by_tag.get(tag)
        if cls is None or not sep:
            return UnknownButton(raw=data)
        try:
            values = json.loads(body) if body else {}
            known = {f.name for f in fields(cls)}
            return cls(**{k: v for k, v in values.items() if k in known})
        except (ValueError, TypeError, AttributeError) as e:
            l.warning("undecodable callback data %r for %s: %s", data, cls.__name__, e)
            return UnknownButton(raw=data)


# --------- Contexts ---------
@dataclass(eq=False)
class BaseContext:
    """What every handler receives: the bridge to reply through and the source update."""
    bridge: "BotBridge"
    update: Optional[Update] = None
    chat: Optional[Chat] = None
    user: Optional[User] = None

    @property
    def chat_id(self) -> int:
        if self.chat is None:
            raise ValueError(f"{type(self).__name__} has no chat")
        return self.chat.id

    async def send(self, text: str, **extra: Any) -> Response:
        return await self.bridge.execute(send_message(self.chat_id, text, **extra))


@dataclass(eq=False)
class NewMessageContext(BaseContext):
    message: Optional[Message] = None

    @property
    def text(self) -> str:
        return (self.message.text or "") if self.message else ""

    async def reply(self, text: str, **extra: Any) -> Response:
        if self.message is not None:
            extra.setdefault("reply_to_message_id", self.message.message_id)
        return await self.send(text, **extra)


@dataclass(eq=False)
class CommandContext(NewMessageContext):
    command: str = ""
    args: List[str] = field(default_factory=list)


@dataclass(eq=False)
class CallbackButtonContext(BaseContext):
    query: Optional[CallbackQuery] = None
    button: CallbackButton = field(default_factory=UnknownButton)

    async def answer(self, text: Optional[str] = None, **extra: Any) -> Response:
        if self.query is None:
            raise ValueError("no callback query to answer")
        return await self.bridge.execute(answer_callback_query(self.query.id, text, **extra))

    async def edit(self, text: str, **extra: Any) -> Response:
        msg = self.query.message if self.query else None
        if msg is None:
            raise ValueError("callback query has no message to edit")
        return await self.bridge.execute(edit_message_text(msg.chat.id, msg.message_id, text, **extra))


@dataclass(eq=False)
class EnterStateContext(BaseContext):
    """Dispatched by the application when a chat enters a new conversation state."""
    state: Any = None


# --------- Update -> contexts ---------
def parse_command(text: str) -> Optional[tuple]:
    """'/start@MyBot a b' -> ('start', ['a', 'b']); None for plain text."""
    if not text.startswith("/") or len(text) < 2:
        return None
    head, *args = text.split()
    name = head[1:].split("@", 1)[0]
    if not name:
        return None
    return name, args


def contexts_from_update(bridge: "BotBridge", update: Update,
                         buttons: Optional[ButtonRegistry] = None) -> List[BaseContext]:
    """Default mapping from one update to the contexts to dispatch."""
    out: List[BaseContext] = []
    msg = update.message
    if msg is not None and msg.text is not None:
        parsed = parse_command(msg.text)
        common = dict(bridge=bridge, update=update, chat=msg.chat, user=msg.from_user, message=msg)
        if parsed is not None:
            name, args = parsed
            out.append(CommandContext(command=name, args=args, **common))
        else:
            out.append(NewMessageContext(**common))

    cq = update.callback_query
    if cq is not None:
        button = (buttons or ButtonRegistry()).decode(cq.data)
        chat = cq.message.chat if cq.message else None
        out.append(CallbackButtonContext(bridge=bridge, update=update, chat=chat,
                                         user=cq.from_user, query=cq, button=button))
    return out
