from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from docket.errors import ErrorKind, LedgerError, error_for_kind

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a repository operation.

    Exactly one of ``value`` (on success) or ``error_kind``/``error_message``
    is meaningful. ``unwrap()`` re-raises failures as the matching
    ``LedgerError`` for callers that prefer exceptions, e.g. an HTTP layer
    that registered ``register_error_handlers``.
    """

    value: T | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    error_details: Any = None

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: LedgerError) -> "Result[T]":
        return cls(
            error_kind=error.kind,
            error_message=error.message,
            error_details=error.details,
        )

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @property
    def is_not_found(self) -> bool:
        return self.error_kind is ErrorKind.not_found

    @property
    def is_conflict(self) -> bool:
        return self.error_kind is ErrorKind.conflict

    @property
    def is_invalid_argument(self) -> bool:
        return self.error_kind is ErrorKind.invalid_argument

    def unwrap(self) -> T:
        if self.error_kind is not None:
            raise error_for_kind(
                self.error_kind, self.error_message or "", self.error_details
            )
        return self.value
