"""
Error taxonomy for the classification pipeline.

Every failure that crosses a component boundary is an ``AppError`` carrying
an ``ErrorType`` and a ``retryable`` hint, so callers can decide what to do
without parsing messages.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorType(Enum):
    """Failure categories."""
    TRANSPORT = "transport"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    API = "api"
    INVALID_RESPONSE = "invalid_response"
    SCHEMA_VALIDATION = "schema_validation"
    GUARDRAILS = "guardrails"
    CHECKPOINT = "checkpoint"
    LABEL_NOT_FOUND = "label_not_found"
    DISPATCH = "dispatch"
    CONFIGURATION = "configuration"
    INVALID_REQUEST = "invalid_request"
    RUN_IN_PROGRESS = "run_in_progress"
    INVALID_TRANSITION = "invalid_transition"


class AppError(Exception):
    """Base class for all pipeline errors."""

    error_type = ErrorType.API
    retryable = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.error_type.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class TransportError(AppError):
    """Network failure or timeout talking to an external service."""
    error_type = ErrorType.TRANSPORT
    retryable = True


class AuthError(AppError):
    """Invalid or unauthorized API key. Never retried."""
    error_type = ErrorType.AUTH


class RateLimited(AppError):
    error_type = ErrorType.RATE_LIMITED
    retryable = True


class ServiceUnavailable(AppError):
    error_type = ErrorType.SERVICE_UNAVAILABLE
    retryable = True


class ApiError(AppError):
    """Any other non-2xx answer."""
    error_type = ErrorType.API


class InvalidResponse(AppError):
    """Empty completion, empty candidate list or malformed envelope."""
    error_type = ErrorType.INVALID_RESPONSE
    retryable = True


class SchemaValidationError(AppError):
    """Model output is not JSON or does not match the expected shape."""
    error_type = ErrorType.SCHEMA_VALIDATION
    retryable = True


class GuardrailsFailure(AppError):
    error_type = ErrorType.GUARDRAILS


class CheckpointPersistenceError(AppError):
    """Continuation state could not be saved, loaded or scheduled. Fatal."""
    error_type = ErrorType.CHECKPOINT


class LabelNotFoundError(AppError):
    error_type = ErrorType.LABEL_NOT_FOUND


class DispatchError(AppError):
    error_type = ErrorType.DISPATCH


class ConfigurationError(AppError):
    error_type = ErrorType.CONFIGURATION


class InvalidRequestError(AppError):
    error_type = ErrorType.INVALID_REQUEST


class RunInProgressError(AppError):
    error_type = ErrorType.RUN_IN_PROGRESS


class InvalidTransitionError(AppError):
    error_type = ErrorType.INVALID_TRANSITION


@dataclass
class Result(Generic[T]):
    """Success with data, or failure with a classified error."""
    ok: bool
    data: Optional[T] = None
    error: Optional[AppError] = None

    @classmethod
    def success(cls, data: T) -> "Result[T]":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: AppError) -> "Result[T]":
        return cls(ok=False, error=error)


def classify_http_error(status_code: int, body: Any = None) -> AppError:
    """
    Map a non-2xx response to the taxonomy.

    Args:
        status_code: HTTP status returned by the service
        body: Decoded JSON body or raw text, used for the error message

    Returns:
        The matching AppError subclass instance (not raised).
    """
    message = _extract_error_message(body) or f"HTTP {status_code}"
    context = {"status_code": status_code}

    if status_code in (401, 403):
        return AuthError(f"Unauthorized: {message}", context)
    if status_code == 400 and "api key" in message.lower():
        return AuthError(f"Invalid API key: {message}", context)
    if status_code == 429:
        return RateLimited(f"Rate limited: {message}", context)
    if status_code in (500, 502, 503, 504):
        return ServiceUnavailable(f"Service unavailable: {message}", context)
    return ApiError(f"API error {status_code}: {message}", context)


def _extract_error_message(body: Any) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message", ""))
        if error:
            return str(error)
        return ""
    if isinstance(body, str):
        return body[:200]
    return ""
