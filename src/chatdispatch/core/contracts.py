from __future__ import annotations

import enum
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional

__all__ = [
    "User",
    "Chat",
    "Message",
    "CallbackQuery",
    "Update",
    "Request",
    "Response",
    "HandlerResult",
    "PASS_THROUGH",
    "HANDLED",
    "send_message",
    "edit_message_text",
    "answer_callback_query",
]


# --------- Inbound (Bot API shaped) ---------
@dataclass(frozen=True)
class User:
    id: int
    first_name: str = ""
    username: Optional[str] = None
    is_bot: bool = False

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "User":
        return cls(
            id=int(d["id"]),
            first_name=d.get("first_name", ""),
            username=d.get("username"),
            is_bot=bool(d.get("is_bot", False)),
        )


@dataclass(frozen=True)
class Chat:
    id: int
    type: str = "private"
    title: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Chat":
        return cls(id=int(d["id"]), type=d.get("type", "private"), title=d.get("title"))


@dataclass(frozen=True)
class Message:
    message_id: int
    chat: Chat
    from_user: Optional[User] = None
    text: Optional[str] = None
    date: int = 0

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Message":
        sender = d.get("from")
        return cls(
            message_id=int(d["message_id"]),
            chat=Chat.from_dict(d["chat"]),
            from_user=User.from_dict(sender) if sender else None,
            text=d.get("text"),
            date=int(d.get("date", 0)),
        )


@dataclass(frozen=True)
class CallbackQuery:
    id: str
    from_user: User
    data: Optional[str] = None
    message: Optional[Message] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CallbackQuery":
        msg = d.get("message")
        return cls(
            id=str(d["id"]),
            from_user=User.from_dict(d["from"]),
            data=d.get("data"),
            message=Message.from_dict(msg) if msg else None,
        )


@dataclass(frozen=True)
class Update:
    """One inbound unit from the transport. Immutable once received."""
    update_id: int
    message: Optional[Message] = None
    callback_query: Optional[CallbackQuery] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Update":
        msg = d.get("message")
        cq = d.get("callback_query")
        return cls(
            update_id=int(d["update_id"]),
            message=Message.from_dict(msg) if msg else None,
            callback_query=CallbackQuery.from_dict(cq) if cq else None,
        )


# --------- Request / response ---------
@dataclass(frozen=True)
class Request:
    method: str
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Response:
    ok: bool
    result: Any = None
    error_code: Optional[int] = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Response":
        return cls(
            ok=bool(d.get("ok", False)),
            result=d.get("result"),
            error_code=d.get("error_code"),
            description=d.get("description"),
        )


def send_message(chat_id: int, text: str, **extra: Any) -> Request:
    return Request("sendMessage", {"chat_id": chat_id, "text": text, **extra})


def edit_message_text(chat_id: int, message_id: int, text: str, **extra: Any) -> Request:
    return Request("editMessageText", {"chat_id": chat_id, "message_id": message_id, "text": text, **extra})


def answer_callback_query(callback_query_id: str, text: Optional[str] = None, **extra: Any) -> Request:
    params: Dict[str, Any] = {"callback_query_id": callback_query_id, **extra}
    if text is not None:
        params["text"] = text
    return Request("answerCallbackQuery", params)


# --------- Dispatch outcome ---------
class HandlerResult(enum.Enum):
    PASS_THROUGH = "pass_through"   # not mine, try the next handler
    HANDLED = "handled"             # stop the chain


PASS_THROUGH = HandlerResult.PASS_THROUGH
HANDLED = HandlerResult.HANDLED
