from __future__ import annotations

import traceback
from typing import Any, List, Optional

__all__ = [
    "DispatchError",
    "RequestFailed",
    "TransportError",
    "ApiError",
    "ConfigError",
]


class DispatchError(Exception):
    """Base class for everything raised by chatdispatch itself."""


class RequestFailed(DispatchError):
    """A call issued through the bridge did not succeed.

    `call_site` holds the stack of the code that issued the call, so a
    failure delivered from a transport thread still points at the caller.
    """

    def __init__(self, method: str, message: str):
        super().__init__(message)
        self.method = method
        self.call_site: List[traceback.FrameSummary] = []

    def format_call_site(self) -> str:
        return "".join(traceback.format_list(self.call_site))


class TransportError(RequestFailed):
    """The transport could not deliver the request or its response."""

    def __init__(self, method: str, cause: Optional[BaseException] = None):
        detail = f": {cause!r}" if cause is not None else ""
        super().__init__(method, f"{method} failed in transport{detail}")
        self.cause = cause


class ApiError(RequestFailed):
    """The remote side answered, but with a negative acknowledgment."""

    def __init__(self, method: str, error_code: Optional[int], description: Optional[str], response: Any = None):
        super().__init__(method, f"{method} failed with error_code {error_code} {description}")
        self.error_code = error_code
        self.description = description
        self.response = response


class ConfigError(DispatchError):
    pass
