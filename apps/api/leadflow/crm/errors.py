from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


class LifecycleError(HTTPException):
    """Typed engine failure that the routers render as an error envelope."""

    status_code_default = status.HTTP_400_BAD_REQUEST
    code_default = "crm_error"

    def __init__(self, message: str, *, code: str | None = None, context: dict[str, Any] | None = None) -> None:
        super().__init__(status_code=self.status_code_default, detail=message)
        self.code = code or self.code_default
        self.message = message
        self.context = context or {}


class LifecycleValidationError(LifecycleError):
    status_code_default = 422
    code_default = "validation_error"


class ConflictError(LifecycleError):
    status_code_default = status.HTTP_409_CONFLICT
    code_default = "conflict"


class NotFoundError(LifecycleError):
    status_code_default = status.HTTP_404_NOT_FOUND
    code_default = "not_found"


class UnauthorizedError(LifecycleError):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    code_default = "unauthorized"


class ForbiddenError(LifecycleError):
    status_code_default = status.HTTP_403_FORBIDDEN
    code_default = "forbidden"


class DependencyFailure(Exception):
    """A secondary cross-entity write failed after the primary write committed.

    Never propagated to callers: services catch it, log it and attach its
    message to the response ``warnings``.
    """

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(message)
        self.operation = operation
        self.message = message
