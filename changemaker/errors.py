"""
changemaker.errors — Domain exceptions
=======================================

Services raise these; the API layer maps each class to an HTTP status
code and renders ``{"error": message}``.
"""

from __future__ import annotations

from enum import StrEnum


class ChangemakerError(Exception):
    """Base class for all expected application failures."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(ChangemakerError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(ChangemakerError):
    status_code = 401
    code = "AUTHENTICATION_REQUIRED"


class WorkspaceAccessError(ChangemakerError):
    status_code = 403
    code = "WORKSPACE_ACCESS_DENIED"

    def __init__(self, message: str = "Access denied to workspace") -> None:
        super().__init__(message)


class ResourceNotFoundError(ChangemakerError):
    status_code = 404
    code = "RESOURCE_NOT_FOUND"

    def __init__(self, resource: str, identifier: str | None = None) -> None:
        message = f"{resource} not found" if identifier is None else f"{resource} not found: {identifier}"
        super().__init__(message)
        self.resource = resource
        self.identifier = identifier


class ConflictError(ChangemakerError):
    status_code = 409
    code = "CONFLICT"


class RateLimitError(ChangemakerError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, retry_after: int) -> None:
        super().__init__("Too many requests. Please wait a moment.")
        self.retry_after = retry_after


class RewardStackErrorCode(StrEnum):
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    NOT_CONFIGURED = "NOT_CONFIGURED"


class RewardStackError(ChangemakerError):
    """A call to the RewardSTACK API failed.

    ``upstream_status`` is the HTTP status RewardSTACK answered with (None
    for network failures and missing configuration).
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        code: RewardStackErrorCode,
        upstream_status: int | None = None,
        response: object | None = None,
    ) -> None:
        super().__init__(message, code=code.value)
        self.error_code = code
        self.upstream_status = upstream_status
        self.response = response

    @property
    def retryable(self) -> bool:
        return self.error_code is RewardStackErrorCode.SERVER_ERROR
