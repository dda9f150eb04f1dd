# src/chatdispatch/adapters/local_transport.py
from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from chatdispatch.core.bus import FailureCallback, ResponseCallback, UpdatesListener
from chatdispatch.core.contracts import Request, Response, Update

log = logging.getLogger("chatdispatch.adapters.local")

AutoResponder = Callable[[Request], Optional[Response]]


@dataclass
class PendingRequest:
    """A request the transport has accepted but not yet completed."""
    call_id: int
    request: Request
    on_response: ResponseCallback
    on_failure: FailureCallback


class LocalTransport:
    """
    In-process transport, scripted by the test or demo driving it:
    - push(*updates) hands one batch to the registered listener
    - execute() parks the request until respond()/fail() completes it,
      unless an auto responder answers immediately
    Thread-safe; push/respond may be called from any thread.
    """

    def __init__(self, auto_responder: Optional[AutoResponder] = None):
        self.auto_responder = auto_responder
        self._listener: Optional[UpdatesListener] = None
        self._pending: Dict[int, PendingRequest] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.sent: List[Request] = []
        self.acks: List[int] = []
        self.listener_registrations = 0

    # -------------------- Transport protocol --------------------
    def set_updates_listener(self, listener: UpdatesListener) -> None:
        with self._lock:
            self._listener = listener
            self.listener_registrations += 1
        log.debug("listener set")

    def remove_updates_listener(self) -> None:
        with self._lock:
            self._listener = None
        log.debug("listener removed")

    def execute(self, request: Request, on_response: ResponseCallback, on_failure: FailureCallback) -> None:
        with self._lock:
            self.sent.append(request)
            call_id = next(self._ids)
        if self.auto_responder is not None:
            response = self.auto_responder(request)
            if response is not None:
                on_response(request, response)
                return
        with self._lock:
            self._pending[call_id] = PendingRequest(call_id, request, on_response, on_failure)

    # -------------------- scripting --------------------
    @property
    def has_listener(self) -> bool:
        with self._lock:
            return self._listener is not None

    def push(self, *updates: Update) -> bool:
        """Deliver one batch; False when nobody is listening."""
        with self._lock:
            listener = self._listener
        if listener is None:
            log.debug("push of %d updates with no listener", len(updates))
            return False
        ack = listener(list(updates))
        with self._lock:
            self.acks.append(ack)
        return True

    def pending(self, method: Optional[str] = None) -> List[PendingRequest]:
        with self._lock:
            calls = list(self._pending.values())
        return [c for c in calls if method is None or c.request.method == method]

    def _take(self, call_id: Optional[int]) -> PendingRequest:
        with self._lock:
            if not self._pending:
                raise LookupError("no pending request")
            if call_id is None:
                call_id = next(iter(self._pending))
            return self._pending.pop(call_id)

    def respond(self, call_id: Optional[int] = None, result=True, *, ok: bool = True,
                error_code: Optional[int] = None, description: Optional[str] = None) -> PendingRequest:
        """Complete a pending request (oldest first when call_id is None)."""
        call = self._take(call_id)
        response = Response(ok=ok, result=result if ok else None, error_code=error_code, description=description)
        call.on_response(call.request, response)
        return call

    def fail(self, exc: BaseException, call_id: Optional[int] = None) -> PendingRequest:
        """Complete a pending request with a transport-level failure."""
        call = self._take(call_id)
        call.on_failure(call.request, exc)
        return call


def ok_responder(result=True) -> AutoResponder:
    """Auto responder answering every request with ok=True."""
    def respond(_request: Request) -> Response:
        return Response(ok=True, result=result)
    return respond
