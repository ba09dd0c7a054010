"""Typed failures raised by the ledger, hold manager and state machine.

Every exception carries an ``ErrorKind``; the HTTP layer maps kinds to status
codes in one table, so adding a kind without a mapping is caught by tests.
"""

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    EXCEEDS_HOLD = "exceeds_hold"
    CONFLICT = "conflict"
    CONSISTENCY = "consistency"
    TRANSIENT = "transient"


class ApprovalError(Exception):
    """Base exception for approval and ledger operations."""

    kind: ErrorKind = ErrorKind.VALIDATION

    @property
    def code(self) -> str:
        return type(self).__name__

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(ApprovalError):
    """Raised when client input is malformed or out of range."""

    kind = ErrorKind.VALIDATION


class Unauthenticated(ApprovalError):
    kind = ErrorKind.UNAUTHENTICATED


class Forbidden(ApprovalError):
    """Raised when the actor may not perform the verb on the target."""

    kind = ErrorKind.FORBIDDEN


class NotFound(ApprovalError):
    kind = ErrorKind.NOT_FOUND


class InvalidTransition(ApprovalError):
    """Raised when an event is not allowed from the request's current status."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, current_status: str, event: str) -> None:
        self.current_status = current_status
        self.event = event
        super().__init__(f"Cannot {event} request with status '{current_status}'")


class Conflict(ApprovalError):
    """Raised when a resource was already resolved (double convert/release/fulfill)."""

    kind = ErrorKind.CONFLICT


class InsufficientCredits(ApprovalError):
    """Raised when an account lacks headroom for a new hold."""

    kind = ErrorKind.INSUFFICIENT_CREDITS

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits: required {required}, available {available}")


class ExceedsHold(ApprovalError):
    """Raised when a spend would exceed the credits reserved for it."""

    kind = ErrorKind.EXCEEDS_HOLD

    def __init__(self, actual: int, held: int) -> None:
        self.actual = actual
        self.held = held
        super().__init__(
            f"Actual credits {actual} exceed the {held} held; submit a new request for the difference"
        )


class LedgerViolation(ApprovalError):
    """Raised when a ledger entry would drive balance or reserved negative."""

    kind = ErrorKind.CONSISTENCY


class LedgerInconsistent(ApprovalError):
    """Raised when stored ledger state contradicts itself. Never auto-healed."""

    kind = ErrorKind.CONSISTENCY


class TransientError(ApprovalError):
    """Raised when the database stayed unavailable after retries."""

    kind = ErrorKind.TRANSIENT
