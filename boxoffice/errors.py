"""Domain errors raised by the reservation and settlement engine.

Every error carries a stable code, a user-safe message and a detail payload
that the HTTP layer returns as-is. Stock exhaustion and already-used tickets
are expected conditions, so their details are actionable (max purchasable,
prior usage time).
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Domain error codes."""

    NOT_FOUND = "NOT_FOUND"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    INVALID_HOLD_STATE = "INVALID_HOLD_STATE"
    ALREADY_USED = "ALREADY_USED"
    CONFLICT = "CONFLICT"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    INVALID_REQUEST = "INVALID_REQUEST"
    PROVIDER_ERROR = "PROVIDER_ERROR"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode = ErrorCode.CONFLICT

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = detail

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "error": self.code.value,
            "message": self.message,
            **self.detail,
        }


class NotFound(DomainError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, kind: str, ident: str) -> None:
        super().__init__(f"{kind} not found", kind=kind, id=ident)


class InsufficientStock(DomainError):
    code = ErrorCode.INSUFFICIENT_STOCK

    def __init__(self, ticket_type_id: str, ticket_type_name: str,
                 requested: int, max_allowed: int) -> None:
        super().__init__(
            f'not enough stock for "{ticket_type_name}", '
            f"max available now: {max_allowed}",
            ticket_type_id=ticket_type_id,
            requested=requested,
            max=max_allowed,
        )
        self.max_allowed = max_allowed


class InvalidHoldState(DomainError):
    code = ErrorCode.INVALID_HOLD_STATE

    def __init__(self, hold_id: str, status: str, message: Optional[str] = None,
                 refund_required: bool = False) -> None:
        super().__init__(
            message or f"hold is not active ({status})",
            hold_id=hold_id,
            status=status,
            refund_required=refund_required,
        )
        self.status = status
        self.refund_required = refund_required


class AlreadyUsed(DomainError):
    code = ErrorCode.ALREADY_USED

    def __init__(self, ticket_id: str, used_at: Optional[str]) -> None:
        super().__init__("ticket was already used",
                         ticket_id=ticket_id, used_at=used_at)
        self.used_at = used_at


class Conflict(DomainError):
    code = ErrorCode.CONFLICT


class SignatureInvalid(DomainError):
    code = ErrorCode.SIGNATURE_INVALID

    def __init__(self, message: str = "invalid signature") -> None:
        super().__init__(message)


class InvalidRequest(DomainError):
    code = ErrorCode.INVALID_REQUEST


class ProviderError(DomainError):
    code = ErrorCode.PROVIDER_ERROR

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(message, provider=provider)
