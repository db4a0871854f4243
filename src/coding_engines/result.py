"""Success/failure container returned across engine boundaries."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E", bound=BaseException)
F = TypeVar("F", bound=BaseException)


@dataclass(frozen=True, slots=True)
class Result(Generic[T, E]):
    """Either a value (``ok=True``) or an error (``ok=False``), never both."""

    ok: bool
    value: T | None = None
    error: E | None = None

    @classmethod
    def success(cls, value: T) -> Result[T, Any]:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: E) -> Result[Any, E]:
        return cls(ok=False, error=error)

    def map(self, fn: Callable[[T], U]) -> Result[U, E]:
        if self.ok:
            return Result(ok=True, value=fn(self.value))  # type: ignore[arg-type]
        return Result(ok=False, error=self.error)

    def flat_map(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        if self.ok:
            return fn(self.value)  # type: ignore[arg-type]
        return Result(ok=False, error=self.error)

    def map_error(self, fn: Callable[[E], F]) -> Result[T, F]:
        if self.ok:
            return Result(ok=True, value=self.value)
        return Result(ok=False, error=fn(self.error))  # type: ignore[arg-type]

    def unwrap(self) -> T:
        """Return the value or raise the stored error."""

        if self.ok:
            return self.value  # type: ignore[return-value]
        assert self.error is not None
        raise self.error

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default  # type: ignore[return-value]
