from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")
U = TypeVar("U")


class ResultError(Exception):
    """A failed Result was unwrapped; carries the failure code."""

    def __init__(self, error: Optional[str], code: Optional[str]):
        super().__init__(error or "unknown error")
        self.code = code


@dataclass
class Result(Generic[T]):
    """Outcome of an outbound call that must not raise (provider, agent operations)."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, code: str = "unknown") -> "Result[T]":
        return cls(ok=False, error=error, error_code=code)

    def map(self, func: Callable[[T], U]) -> "Result[U]":
        """Transform the value of a success; failures pass through untouched."""
        if not self.ok:
            return Result(ok=False, error=self.error, error_code=self.error_code)
        return Result.success(func(self.value))

    def unwrap(self) -> T:
        if not self.ok:
            raise ResultError(self.error, self.error_code)
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
