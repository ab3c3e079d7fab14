from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class FailureKind(str, Enum):
    VALIDATION = "validation"
    AUTH_SOFT = "auth_soft"
    AUTH_HARD = "auth_hard"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    SERVER = "server"
    NETWORK = "network"


class StorefrontError(Exception):
    """Base class for every failure raised by the storefront client."""


class RequestFailure(StorefrontError):
    """Normalized failure of an outbound call: a kind plus a user-facing message."""

    def __init__(self, kind: FailureKind, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r}, status={self.status!r})"


class ValidationFailure(RequestFailure):
    """A client-side precondition failed; nothing was sent."""

    def __init__(self, message: str) -> None:
        super().__init__(FailureKind.VALIDATION, message)


class InvalidTransition(ValidationFailure):
    """The order state machine does not allow the requested event."""

    def __init__(self, order_no: str, event: str, status: Any) -> None:
        self.order_no = order_no
        self.event = event
        self.current_status = status
        super().__init__(f"Order {order_no} cannot {event} while {getattr(status, 'name', status)}")
