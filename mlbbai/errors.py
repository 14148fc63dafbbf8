"""
errors.py
---------

Error taxonomy shared by the provider client, the refresh pipeline, the
analysis service and the HTTP layer. Errors that can reach a client carry the
HTTP status code the API should answer with.
"""

from __future__ import annotations

from typing import Optional


class MLBBError(Exception):
    """Base class for every error raised by the service."""

    status_code: int = 500

    def __init__(self, message: str = "", *, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.detail = detail or message or self.__class__.__name__


class FetchError(MLBBError):
    """The statistics provider could not be reached or answered badly."""

    status_code = 502


class FetchTimeout(FetchError):
    """The provider did not answer within the configured timeout."""

    status_code = 504


class FetchNetworkError(FetchError):
    """Connection failure, HTTP error status, or an undecodable body."""


class ShapeMismatch(MLBBError):
    """A provider payload did not match the shape an adapter expects."""


class EmptyResult(MLBBError):
    """A fetch succeeded but produced zero usable heroes."""


class BackendFailure(MLBBError):
    """The generative backend failed, timed out, or returned unusable content."""


class InvalidRequest(MLBBError):
    status_code = 400


class Unauthorized(MLBBError):
    status_code = 401


class NotFound(MLBBError):
    status_code = 404


class Conflict(MLBBError):
    status_code = 409


class RateLimited(MLBBError):
    status_code = 429

    def __init__(self, message: str = "", *, retry_after: float = 0.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


__all__ = [
    "MLBBError",
    "FetchError",
    "FetchTimeout",
    "FetchNetworkError",
    "ShapeMismatch",
    "EmptyResult",
    "BackendFailure",
    "InvalidRequest",
    "Unauthorized",
    "NotFound",
    "Conflict",
    "RateLimited",
]
