"""Domain errors raised by the loader governance services.

Routers translate these into HTTP responses; the import pipeline turns them
into per-row outcomes carrying an error code and category.
"""

from __future__ import annotations

from typing import Optional

# Response header carrying ``error_code`` on API errors.
ERROR_CODE_HEADER = "X-Error-Code"


class LoaderGovernanceError(RuntimeError):
    """Base class for all loader governance failures."""

    error_code = "UNEXPECTED"

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationError(LoaderGovernanceError):
    """Raised when row or file content does not satisfy the loader schema."""

    error_code = "VALIDATION_FAILED"


class ImportFileError(ValidationError):
    """Raised for file-level problems that abort a batch before any row runs."""

    error_code = "INVALID_FILE"


class ConflictError(LoaderGovernanceError):
    """Raised when a write would break the one-active/one-working-copy rule."""

    error_code = "CONFLICT"


class InvalidStateError(LoaderGovernanceError):
    """Raised when a lifecycle transition is not legal from the current state."""

    error_code = "INVALID_STATE"


class AuthorizationError(LoaderGovernanceError):
    """Raised for self-approval or when the caller lacks the approver role."""

    error_code = "NOT_AUTHORIZED"


class EncryptionError(LoaderGovernanceError):
    """Raised when a protected field cannot be encrypted or decrypted."""

    error_code = "ENCRYPTION_FAILED"


class DownstreamUnavailableError(LoaderGovernanceError):
    """Raised when a collaborator call times out or cannot connect."""

    error_code = "DOWNSTREAM_UNAVAILABLE"


class DownstreamTimeoutError(DownstreamUnavailableError):
    """Raised when a collaborator call did not answer in time; it may still have completed."""


class NotFoundError(LoaderGovernanceError):
    """Raised when a loader version or approval request does not exist."""

    error_code = "NOT_FOUND"


__all__ = [
    "ERROR_CODE_HEADER",
    "AuthorizationError",
    "ConflictError",
    "DownstreamTimeoutError",
    "DownstreamUnavailableError",
    "EncryptionError",
    "ImportFileError",
    "InvalidStateError",
    "LoaderGovernanceError",
    "NotFoundError",
    "ValidationError",
]
