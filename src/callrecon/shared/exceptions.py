"""
Shared exceptions for the reconciliation core.

Each subclass corresponds to one way a callback can go wrong; the HTTP layer
maps the caller-visible ones to status codes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class AppError(Exception):
    message: str = "Application error"
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message


class ValidationError(AppError):
    """Malformed or incomplete callback. Reported as 400, never retried."""


class NotFoundError(AppError):
    """No contact matches the callback. Reported as 404."""


class PersistenceError(AppError):
    """Local storage failure. Reported as 500, not retried automatically."""


class ProviderAPIError(AppError):
    """Upstream failure or timeout while querying the provider.

    Never surfaced to the callback caller: the duration stays unresolved
    and the retry path takes over.
    """

    def __init__(
        self,
        message: str = "Provider API error",
        details: Optional[dict[str, Any]] = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message=message, details=details)
        self.status_code = status_code


class DurationUnavailable(AppError):
    """The provider answered but had no usable duration yet."""
