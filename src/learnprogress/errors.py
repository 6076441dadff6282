"""Exception hierarchy for the progression engine."""

from __future__ import annotations


class ProgressionError(Exception):
    """Base class for all progression engine errors."""


class InvalidInputError(ProgressionError, ValueError):
    """A mutation was rejected before touching stored progress."""


class CatalogError(ProgressionError, ValueError):
    """Lesson or achievement catalog is inconsistent and cannot be used."""


class UnknownLessonError(ProgressionError, KeyError):
    """Lesson id is not part of the loaded catalog."""


class ApiError(ProgressionError):
    """Remote progress API returned an error or an unusable response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(ApiError):
    """Access token missing, expired, or rejected."""


class NotFoundError(ApiError):
    """Requested remote resource does not exist."""


class ServerError(ApiError):
    """Remote server failed with a 5xx status."""


class NetworkError(ApiError):
    """Request never produced an HTTP response."""
