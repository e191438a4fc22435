"""Result type for pipeline operations that may fail without raising."""

from __future__ import annotations

from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, PrivateAttr

T = TypeVar("T")

ErrorKind = Literal["provisioning", "cache", "step", "cancelled"]


class Result(BaseModel, Generic[T]):
    """
    Outcome of a pipeline operation.

    Use Ok(value) or Err(message, kind=...) to construct results. The `kind`
    of a failure follows the pipeline's error taxonomy and decides how the
    failure propagates to the run.
    """

    status: Literal["success", "failure"] = "success"
    error: str | None = None
    kind: ErrorKind | None = None
    _value: T | None = PrivateAttr(default=None)

    model_config = {"frozen": True}

    @property
    def ok(self) -> bool:
        """True if the operation succeeded."""
        return self.status == "success"

    @property
    def failed(self) -> bool:
        """True if the operation failed."""
        return self.status == "failure"

    def value(self) -> T:
        """
        Get the result value.

        Raises RuntimeError if the result is a failure.
        """
        if self.failed:
            raise RuntimeError(f"Attempted to get value from a failed result: {self.error}")
        return self._value  # type: ignore[return-value]

    def value_or(self, default: T) -> T:
        """Get the value, or return a default if the result is a failure or has no value."""
        if self.ok and self._value is not None:
            return self._value
        return default


def Ok(value: T) -> Result[T]:
    """Create a successful result with the given value."""
    result = Result[T](status="success")
    object.__setattr__(result, "_value", value)
    return result


def Err(error: str, *, kind: ErrorKind | None = None) -> Result[Any]:
    """Create a failed result with an error message and optional error kind."""
    return Result(status="failure", error=error, kind=kind)
