# Overview: Typed outcome returned by every public service operation.

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from ..errors import ErrorKind, FATAL_KINDS, LedgerError

T = TypeVar("T")

GENERIC_FAILURE_MESSAGE = "The operation could not be completed. Please try again or contact support."


@dataclass(frozen=True)
class ServiceError:
    kind: ErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: LedgerError) -> "ServiceError":
        return cls(kind=exc.kind, message=exc.message, details=dict(exc.details))

    @property
    def is_fatal(self) -> bool:
        return self.kind in FATAL_KINDS

    @property
    def user_message(self) -> str:
        """Text safe to render next to the triggering action."""
        if self.is_fatal:
            return GENERIC_FAILURE_MESSAGE
        return self.message

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.user_message,
            "details": {} if self.is_fatal else self.details,
        }


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    """
    Result of a public service call.

    Exactly one of value/error is meaningful: a successful call may still
    carry value=None (operations with no natural return value).
    """

    value: T | None = None
    error: ServiceError | None = None

    @classmethod
    def success(cls, value: T | None = None) -> "ServiceResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ServiceError) -> "ServiceResult[T]":
        return cls(error=error)

    @property
    def is_success(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    def unwrap(self) -> T:
        """Return the value, raising if the call failed (scripts and tests)."""
        if self.error is not None:
            raise RuntimeError(f"{self.error.kind.value}: {self.error.message}")
        return self.value  # type: ignore[return-value]
