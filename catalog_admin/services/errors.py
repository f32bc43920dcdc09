"""Exception hierarchy shared by the catalog services."""

from __future__ import annotations


class CatalogError(RuntimeError):
    """Base class for failures surfaced to operators."""

    status_code = 500


class ValidationError(CatalogError):
    """Raised when input is missing or malformed."""

    status_code = 400


class NotFoundError(CatalogError):
    """Raised when a referenced entity, backup or job does not exist."""

    status_code = 404


class ConflictError(CatalogError):
    """Raised when a request collides with existing state."""

    status_code = 409


class StoreFailure(CatalogError):
    """Raised when the table store or the blob store reports an error."""

    status_code = 500


class UpstreamFailure(CatalogError):
    """Raised when the completion service fails or returns unusable output."""

    status_code = 502


__all__ = [
    "CatalogError",
    "ConflictError",
    "NotFoundError",
    "StoreFailure",
    "UpstreamFailure",
    "ValidationError",
]
