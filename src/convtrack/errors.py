"""
Error taxonomy for the conversion tracking core.

This module provides the custom exception hierarchy used to report
registration, engine, validation and configuration failures consistently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """Error type categories for consistent error handling."""

    CONVERSION = "conversion"
    ENGINE = "engine"
    EVENT = "event"
    SYSTEM = "system"
    VALIDATION = "validation"
    CONFIG = "config"


class ErrorCode(Enum):
    """Specific error codes for common scenarios."""

    # Event wiring
    REGISTRATION_FAILED = "REGISTRATION_FAILED"
    MALFORMED_EVENT = "MALFORMED_EVENT"

    # Engine
    ENGINE_FAILURE = "ENGINE_FAILURE"
    ENGINE_UNAVAILABLE = "ENGINE_UNAVAILABLE"
    POLLING_FAILED = "POLLING_FAILED"

    # Validation errors
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_URL = "INVALID_URL"
    REQUIRED_FIELD_MISSING = "REQUIRED_FIELD_MISSING"

    # Configuration errors
    CONFIG_INVALID = "CONFIG_INVALID"

    # Conversion errors
    CONVERSION_FAILED = "CONVERSION_FAILED"

    # System errors
    OPERATION_CANCELLED = "OPERATION_CANCELLED"
    TIMEOUT = "TIMEOUT"
    OS_ERROR = "OS_ERROR"
    MEMORY_ERROR = "MEMORY_ERROR"

    UNKNOWN = "UNKNOWN"


class ErrorSeverity(Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class BaseAppError(Exception):
    """
    Base application error with structured metadata.

    This is the root of all custom errors raised by the tracking core.
    """

    type: ErrorType
    code: ErrorCode
    user_message: str
    technical_message: str | None = None
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    retriable: bool = False
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Return user-friendly error message."""
        return self.user_message

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"type={self.type.value}, "
            f"code={self.code.value}, "
            f"message='{self.user_message}'"
            f")"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "code": self.code.value,
            "user_message": self.user_message,
            "technical_message": self.technical_message,
            "severity": self.severity.value,
            "retriable": self.retriable,
            "context": self.context,
        }


class ConversionError(BaseAppError):
    """A conversion job failed."""

    def __init__(
        self,
        user_message: str,
        code: ErrorCode = ErrorCode.CONVERSION_FAILED,
        technical_message: str | None = None,
        retriable: bool = True,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(
            type=ErrorType.CONVERSION,
            code=code,
            user_message=user_message,
            technical_message=technical_message,
            severity=ErrorSeverity.HIGH,
            retriable=retriable,
            context=context or {},
        )


class EngineError(BaseAppError):
    """The external conversion engine failed or could not be reached."""

    def __init__(
        self,
        user_message: str,
        code: ErrorCode = ErrorCode.ENGINE_FAILURE,
        technical_message: str | None = None,
        original_error: Exception | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(
            type=ErrorType.ENGINE,
            code=code,
            user_message=user_message,
            technical_message=technical_message or (str(original_error) if original_error else None),
            severity=ErrorSeverity.HIGH,
            retriable=True,
            context=context or {},
        )
        self.original_error = original_error


class RegistrationError(BaseAppError):
    """Binding the event channels for a job failed."""

    def __init__(
        self,
        job_id: str,
        channel: str,
        technical_message: str | None = None,
    ):
        super().__init__(
            type=ErrorType.EVENT,
            code=ErrorCode.REGISTRATION_FAILED,
            user_message=f"Could not listen for conversion events on '{channel}'",
            technical_message=technical_message,
            severity=ErrorSeverity.HIGH,
            retriable=True,
            context={"job_id": job_id, "channel": channel},
        )

    @property
    def job_id(self) -> str:
        return self.context["job_id"]

    @property
    def channel(self) -> str:
        return self.context["channel"]


class ValidationError(BaseAppError):
    """Input validation related errors."""

    def __init__(
        self,
        code: ErrorCode,
        user_message: str,
        field: str | None = None,
        technical_message: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        context = context or {}
        if field:
            context["field"] = field

        super().__init__(
            type=ErrorType.VALIDATION,
            code=code,
            user_message=user_message,
            technical_message=technical_message,
            severity=ErrorSeverity.MEDIUM,
            retriable=False,
            context=context,
        )

    @property
    def field(self) -> str | None:
        """Get the field that caused the validation error."""
        return self.context.get("field")


class ConfigError(BaseAppError):
    """Configuration related errors."""

    def __init__(
        self,
        code: ErrorCode,
        user_message: str,
        technical_message: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(
            type=ErrorType.CONFIG,
            code=code,
            user_message=user_message,
            technical_message=technical_message,
            context=context or {},
        )


class SystemError(BaseAppError):
    """System level errors."""

    def __init__(
        self,
        code: ErrorCode,
        user_message: str,
        technical_message: str | None = None,
        retriable: bool = False,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(
            type=ErrorType.SYSTEM,
            code=code,
            user_message=user_message,
            technical_message=technical_message,
            severity=ErrorSeverity.HIGH,
            retriable=retriable,
            context=context or {},
        )


class CancellationError(SystemError):
    """An operation was cancelled cooperatively."""

    def __init__(self, message: str = "Operation was cancelled"):
        super().__init__(
            code=ErrorCode.OPERATION_CANCELLED,
            user_message=message,
            retriable=True,
        )


# Exception mapping configuration
_EXCEPTION_MAPPING: dict[type[Exception], tuple[ErrorType, ErrorCode, str]] = {
    ValueError: (ErrorType.VALIDATION, ErrorCode.INVALID_INPUT, "Invalid input provided"),
    TimeoutError: (ErrorType.SYSTEM, ErrorCode.TIMEOUT, "Operation timed out"),
    ConnectionError: (ErrorType.ENGINE, ErrorCode.ENGINE_UNAVAILABLE, "Conversion engine unavailable"),
    OSError: (ErrorType.SYSTEM, ErrorCode.OS_ERROR, "System error occurred"),
    MemoryError: (ErrorType.SYSTEM, ErrorCode.MEMORY_ERROR, "Insufficient memory"),
}


def _lookup_mapping(exc: Exception) -> tuple[ErrorType, ErrorCode, str] | None:
    for exc_type in type(exc).__mro__:
        if exc_type in _EXCEPTION_MAPPING:
            return _EXCEPTION_MAPPING[exc_type]
    return None


def map_exception(exc: Exception, context: dict[str, Any] | None = None) -> BaseAppError:
    """
    Map a built-in exception to a custom application error.

    Args:
        exc: The exception to map
        context: Optional context information

    Returns:
        BaseAppError instance with appropriate type and metadata
    """
    context = context or {}

    if isinstance(exc, BaseAppError):
        return exc

    technical = f"{type(exc).__name__}: {exc}"
    mapping = _lookup_mapping(exc)
    if mapping is None:
        logger.warning(f"Unknown exception type: {technical}")
        return SystemError(
            code=ErrorCode.UNKNOWN,
            user_message=str(exc) or "An unexpected error occurred",
            technical_message=technical,
            context=context,
        )

    error_type, error_code, default_message = mapping
    user_message = str(exc) if str(exc) else default_message

    if error_type == ErrorType.VALIDATION:
        return ValidationError(
            code=error_code, user_message=user_message, technical_message=technical, context=context
        )
    if error_type == ErrorType.ENGINE:
        return EngineError(
            user_message=user_message,
            code=error_code,
            technical_message=technical,
            original_error=exc,
            context=context,
        )
    return SystemError(
        code=error_code,
        user_message=user_message,
        technical_message=technical,
        retriable=error_code == ErrorCode.TIMEOUT,
        context=context,
    )


def from_exception(exc: Exception, context: dict[str, Any] | None = None) -> BaseAppError:
    """
    Convert any exception to a BaseAppError.

    This is an alias for map_exception for convenience.
    """
    return map_exception(exc, context)
