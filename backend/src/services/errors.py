"""
Engine error hierarchy shared by the order, dispatch and settlement services.

Every error carries an ``ErrorKind`` so the API layer can map it to an
HTTP status without knowing the concrete exception class, plus keyword
context (order id, actor, courier id, ...) that is logged alongside it.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Machine-readable error categories surfaced to callers."""

    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONFLICT = "CONFLICT"
    NO_ACTIVE_SESSION = "NO_ACTIVE_SESSION"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    SESSION_ALREADY_OPEN = "SESSION_ALREADY_OPEN"
    SESSION_NOT_ENDED = "SESSION_NOT_ENDED"
    COURIER_ROLLBACK_FAILED = "COURIER_ROLLBACK_FAILED"


class EngineError(Exception):
    """Base exception for dispatch engine errors."""

    kind: ErrorKind = ErrorKind.CONFLICT

    def __init__(self, message: str, kind: Optional[ErrorKind] = None, **context: Any):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.context = context


class InvalidTransitionError(EngineError):
    """Raised when a status change is not an edge of the lifecycle graph."""

    kind = ErrorKind.INVALID_TRANSITION


class ConcurrencyConflictError(EngineError):
    """Raised when a conditional write loses a race with another writer."""

    kind = ErrorKind.CONFLICT


class NotFoundError(EngineError):
    """Raised when an order, courier or session does not exist."""

    kind = ErrorKind.NOT_FOUND


class ForbiddenError(EngineError):
    """Raised when the actor's role or ownership does not permit the operation."""

    kind = ErrorKind.FORBIDDEN


class NoActiveSessionError(EngineError):
    """Raised when a courier has no open delivery session."""

    kind = ErrorKind.NO_ACTIVE_SESSION


class SessionAlreadyOpenError(EngineError):
    """Raised when starting a session while one is already open."""

    kind = ErrorKind.SESSION_ALREADY_OPEN


class SessionNotEndedError(EngineError):
    """Raised when settling a session that has not been ended."""

    kind = ErrorKind.SESSION_NOT_ENDED


class AlreadySettledError(EngineError):
    """Raised when settling a session a second time."""

    kind = ErrorKind.ALREADY_SETTLED


class CourierRollbackError(EngineError):
    """
    Raised when a courier claim could not be released after a failed transition.

    The courier is left marked unavailable with no order; this requires
    manual reconciliation and is always logged at critical level.
    """

    kind = ErrorKind.COURIER_ROLLBACK_FAILED
