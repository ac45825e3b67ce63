"""Uniform error shape shared by every service operation.

Service functions never raise to their callers. They return a
``ServiceResponse`` whose ``error`` is populated from one of the mappers
below: store failures, pydantic validation failures and anything else.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger("datebook.service")

T = TypeVar("T")


class ErrorCode(str, Enum):
    # Rejected before any I/O
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_RANGE = "INVALID_RANGE"

    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"

    # Record store or server side
    UPSTREAM_FAILURE = "UPSTREAM_FAILURE"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class ServiceError(BaseModel):
    code: ErrorCode
    message: str
    details: Optional[Any] = None


class ServiceResponse(BaseModel, Generic[T]):
    data: Optional[T] = None
    error: Optional[ServiceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def create_success_response(data: T) -> ServiceResponse[T]:
    return ServiceResponse(data=data, error=None)


def create_error_response(error: ServiceError) -> ServiceResponse[Any]:
    return ServiceResponse(data=None, error=error)


class RecordStoreError(Exception):
    """Raised by record stores. ``code`` follows SQLSTATE where one applies."""

    def __init__(self, message: str, *, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class ServiceFailure(Exception):
    """Base for failures the service detects itself."""

    code: ErrorCode = ErrorCode.UNEXPECTED_ERROR

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_service_error(self) -> ServiceError:
        return ServiceError(code=self.code, message=self.message, details=self.details)


class InvalidRangeError(ServiceFailure):
    code = ErrorCode.INVALID_RANGE


class InvalidInputError(ServiceFailure):
    code = ErrorCode.INVALID_INPUT


class NotFoundError(ServiceFailure):
    code = ErrorCode.NOT_FOUND


class UnauthorizedError(ServiceFailure):
    code = ErrorCode.UNAUTHORIZED


_NOT_FOUND_CODES = {
    "PGRST116",  # no rows returned
    "42P01",  # relation does not exist
}

_UPSTREAM_REASONS: Dict[str, tuple[str, str]] = {
    "23505": ("constraint", "Duplicate entry - resource already exists"),
    "23503": ("constraint", "Invalid reference - related resource not found"),
    "23514": ("constraint", "Data violates database constraints"),
    "42501": ("permission", "Access denied - insufficient permissions"),
    "08000": ("connection", "Database connection failed"),
    "08003": ("connection", "Database connection failed"),
    "08006": ("connection", "Database connection failed"),
}


def map_store_error(error: RecordStoreError) -> ServiceError:
    if error.code in _NOT_FOUND_CODES:
        return ServiceError(
            code=ErrorCode.NOT_FOUND,
            message="Resource not found",
            details={"upstream_code": error.code},
        )

    reason, message = _UPSTREAM_REASONS.get(
        error.code or "", ("database", error.message or "Database operation failed")
    )
    return ServiceError(
        code=ErrorCode.UPSTREAM_FAILURE,
        message=message,
        details={"reason": reason, "upstream_code": error.code, "upstream": error.details},
    )


def map_validation_error(error: ValidationError) -> ServiceError:
    issues = [
        {
            "field": ".".join(str(part) for part in issue["loc"]),
            "message": issue["msg"],
            "code": issue["type"],
        }
        for issue in error.errors()
    ]
    summary = ", ".join(f"{issue['field']}: {issue['message']}" for issue in issues)
    return ServiceError(
        code=ErrorCode.VALIDATION_ERROR,
        message=f"Validation failed: {summary}",
        details={"issues": issues},
    )


def map_generic_error(error: BaseException) -> ServiceError:
    message = str(error) or "An unexpected error occurred"
    return ServiceError(
        code=ErrorCode.UNEXPECTED_ERROR,
        message=message,
        details={"type": type(error).__name__},
    )


def map_exception(error: Exception) -> ServiceError:
    if isinstance(error, ServiceFailure):
        return error.to_service_error()
    if isinstance(error, ValidationError):
        return map_validation_error(error)
    if isinstance(error, RecordStoreError):
        return map_store_error(error)
    return map_generic_error(error)


async def handle_service_operation(
    operation: Callable[[], Awaitable[T]],
    error_context: Optional[str] = None,
) -> ServiceResponse[T]:
    """Await ``operation`` and fold any failure into a ``ServiceResponse``."""
    try:
        result = await operation()
    except Exception as exc:  # noqa: BLE001 - every failure becomes a ServiceError
        service_error = map_exception(exc)
        if service_error.code is ErrorCode.UNEXPECTED_ERROR:
            logger.exception("Unexpected failure in %s", error_context or "service operation")
        elif service_error.code is ErrorCode.UPSTREAM_FAILURE:
            logger.warning(
                "Record store failure in %s: %s",
                error_context or "service operation",
                service_error.message,
            )
        return create_error_response(service_error)
    return create_success_response(result)
