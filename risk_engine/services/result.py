"""
Result type for expected failures inside the service layer.

The facade runs each operation body into a `Result` so that engine errors
(validation, not found, rate limits, outages) flow back to the caller as a
`ServiceResponse` instead of escaping as exceptions.
"""

from collections.abc import Callable
from typing import Any, Generic, TypeVar

ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)
MappedT = TypeVar("MappedT")

_MISSING: Any = object()


class Result(Generic[ValueT, ErrorT]):
    """Either a value or an error, never both. `None` is a valid value."""

    __slots__ = ("_value", "_error")

    def __init__(self, value: Any = _MISSING, error: ErrorT | None = None) -> None:
        if value is not _MISSING and error is not None:
            raise ValueError("Result cannot hold both a value and an error")
        if value is _MISSING and error is None:
            raise ValueError("Result needs a value or an error")
        self._value = value
        self._error = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        """Return the value or raise the stored error."""
        if self._error is not None:
            raise self._error
        return self._value

    def unwrap_or(self, default: ValueT) -> ValueT:
        return default if self._error is not None else self._value

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("unwrap_err() called on a successful Result")
        return self._error

    def map(self, fn: Callable[[ValueT], MappedT]) -> "Result[MappedT, ErrorT]":
        """Apply `fn` to a successful value; errors pass through untouched."""
        if self._error is not None:
            return Result(error=self._error)
        return Result(value=fn(self._value))

    def __repr__(self) -> str:
        if self._error is not None:
            return f"Result.err({self._error!r})"
        return f"Result.ok({self._value!r})"
