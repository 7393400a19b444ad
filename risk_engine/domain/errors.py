"""
Error taxonomy for the clinical risk engine.

Validation and rate-limit errors fail fast and are never retried.
Dependency errors surface as ServiceUnavailableError once a breaker is open
or retries are exhausted. Severity is derived from the error code and is used
for alerting, never for control flow.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


class ErrorSeverity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"


CRITICAL_CODES = frozenset(
    {"ASSESSMENT_DATA_CORRUPTION", "CRITICAL_DATA_LOSS", "PATIENT_SAFETY_RISK"}
)
HIGH_CODES = frozenset({"VALIDATION_FAILURE", "UNAUTHORIZED_ACCESS", "RATE_LIMIT_EXCEEDED"})


def severity_for_code(code: str) -> ErrorSeverity:
    if code in CRITICAL_CODES:
        return ErrorSeverity.CRITICAL
    if code in HIGH_CODES:
        return ErrorSeverity.HIGH
    return ErrorSeverity.MEDIUM


class EngineError(Exception):
    """Base error carrying a machine-readable code and derived severity."""

    default_code = "INTERNAL_ERROR"
    retryable = False

    def __init__(
        self, message: str, code: str | None = None, context: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context or {}
        self.timestamp = datetime.now(UTC)

    @property
    def severity(self) -> ErrorSeverity:
        return severity_for_code(self.code)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            **self.context,
        }


class ValidationError(EngineError):
    """Malformed or out-of-range input."""

    default_code = "VALIDATION_FAILURE"

    def __init__(
        self, message: str, field: str | None = None, validation_type: str = "invalid"
    ) -> None:
        super().__init__(message, context={"field": field, "validation_type": validation_type})
        self.field = field
        self.validation_type = validation_type


class RateLimitError(EngineError):
    default_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, retry_after_seconds: int, caller: str = "") -> None:
        super().__init__(
            message, context={"retry_after_seconds": retry_after_seconds, "caller": caller}
        )
        self.retry_after_seconds = retry_after_seconds
        self.caller = caller


class ServiceUnavailableError(EngineError):
    """A dependency is unavailable: breaker open, retries exhausted or timed out."""

    default_code = "SERVICE_UNAVAILABLE"
    retryable = True

    def __init__(self, message: str, dependency: str, reason: str) -> None:
        super().__init__(message, context={"dependency": dependency, "reason": reason})
        self.dependency = dependency
        self.reason = reason


class OperationTimeoutError(ServiceUnavailableError):
    default_code = "OPERATION_TIMEOUT"

    def __init__(self, dependency: str, timeout_seconds: float) -> None:
        super().__init__(
            f"{dependency} operation timed out after {timeout_seconds}s",
            dependency=dependency,
            reason="timeout",
        )
        self.timeout_seconds = timeout_seconds


class NotFoundError(EngineError):
    default_code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            f"{entity} {entity_id} not found", context={"entity": entity, "entity_id": entity_id}
        )
        self.entity = entity
        self.entity_id = entity_id


class StaleVersionError(EngineError):
    """Write rejected because the caller's version no longer matches storage."""

    default_code = "VERSION_CONFLICT"

    def __init__(self, entity_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Version conflict on {entity_id}: expected {expected}, found {actual}",
            context={"entity_id": entity_id, "expected_version": expected, "actual_version": actual},
        )
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


# Errors that must surface immediately and never be retried.
NON_RETRYABLE = (ValidationError, NotFoundError, StaleVersionError, RateLimitError)


def from_pydantic(exc: Any, prefix: str = "") -> ValidationError:
    """Convert a pydantic validation error into the engine's ValidationError."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    field = f"{prefix}.{location}" if prefix and location else (location or prefix or None)
    message = first.get("msg", str(exc))
    return ValidationError(
        f"{field}: {message}" if field else message,
        field=field,
        validation_type=first.get("type", "invalid"),
    )


def parse_payload(model: type[ModelT], data: Any, prefix: str) -> ModelT:
    """Validate a caller mapping into `model`, raising the engine's ValidationError."""
    if isinstance(data, model):
        return data
    if not isinstance(data, Mapping):
        raise ValidationError(
            f"{prefix} payload must be an object", field=prefix, validation_type="type"
        )
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise from_pydantic(e, prefix) from e
