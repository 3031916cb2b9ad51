from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """A session operation failed in a way the HTTP layer can report.

    ``status_code`` and ``error_code`` pick the envelope the API returns.
    ``detail`` is for logs; the API only echoes it on 4xx answers that are
    not conflicts.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Missing identity, empty credential or non-positive lifetime."""


class ConflictError(ServiceError):
    """Session creation kept colliding with a concurrent insert."""

    status_code = 409
    error_code = "conflict"


class StoreUnavailableError(ServiceError):
    """The session store timed out or refused the connection.

    Validation treats this as "not authenticated"; it never falls back to a
    stale cache entry.
    """

    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "StoreUnavailableError",
]
