"""
Error taxonomy for the reconciliation engine, plus HTTP exception helpers
for the admin routes.

Usage:
    from providerhub.utils.exceptions import FetchError, raise_not_found

    raise FetchError("Unauthorized", status=401)
    raise_not_found("Batch job", job_id)
"""

from typing import NoReturn, Optional

from fastapi import HTTPException, status


class ProviderHubError(Exception):
    """Base class for all reconciliation errors."""


class ParseError(ProviderHubError):
    """Malformed batch import line."""


class FetchError(ProviderHubError):
    """Model listing failed for one credential (network or HTTP status)."""

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body


class FormatError(ProviderHubError):
    """Remote API answered with an unexpected response shape."""


class BackendError(ProviderHubError):
    """The provider backend rejected or failed a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class CreationError(BackendError):
    """The backend rejected a create, update or delete."""


class UserCancelled(ProviderHubError):
    """Diff confirmation was declined."""

    def __init__(self, message: str = "Cancelled by user"):
        super().__init__(message)


class AggregateFetchFailure(ProviderHubError):
    """Every credential of a provider failed to list models."""

    def __init__(self, message: str = "All credentials failed to retrieve models"):
        super().__init__(message)


class StageFailure(ProviderHubError):
    """A creation stage failed; wraps the underlying error with its stage."""

    def __init__(self, stage: str, cause: Exception):
        super().__init__(f"[{stage}] {cause}")
        self.stage = stage
        self.cause = cause


# ============================================================================
# HTTP helpers for routes
# ============================================================================


def raise_unauthorized(detail: str = "Unauthorized") -> NoReturn:
    """Raise HTTP 401 Unauthorized with WWW-Authenticate header."""
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def raise_bad_request(detail: str) -> NoReturn:
    """Raise HTTP 400 Bad Request."""
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=detail,
    )


def raise_not_found(resource: str, id: int | str | None = None) -> NoReturn:
    """Raise HTTP 404 Not Found."""
    if id is not None:
        detail = f"{resource} with id {id} not found"
    else:
        detail = f"{resource} not found"
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=detail,
    )


def raise_conflict(detail: str) -> NoReturn:
    """Raise HTTP 409 Conflict."""
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=detail,
    )


def raise_bad_gateway(detail: str) -> NoReturn:
    """Raise HTTP 502 Bad Gateway."""
    raise HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=detail,
    )
