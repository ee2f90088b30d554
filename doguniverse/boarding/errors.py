"""Error taxonomy shared by the boarding core and the HTTP layer."""

from __future__ import annotations


class BoardingError(RuntimeError):
    """Base class carrying a machine-readable ``code``."""

    code = "ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class ValidationError(BoardingError):
    """Raised when incoming data fails validation."""

    code = "VALIDATION_ERROR"


class AuthorizationError(BoardingError):
    """Raised when a user action is not permitted."""

    code = "FORBIDDEN"


class NotFoundError(BoardingError):
    """Raised when an identifier does not resolve to a stored row."""

    code = "NOT_FOUND"


class InvalidTransitionError(BoardingError):
    """Raised when a status change is not allowed from the current status."""

    code = "INVALID_TRANSITION"
