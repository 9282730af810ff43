from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class Outcome(str, Enum):
    SUCCESS = "success"
    NEEDS_FALLBACK = "needs_fallback"
    FAILURE = "failure"


@dataclass
class Result(Generic[T]):
    outcome: Outcome
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def needs_fallback(self) -> bool:
        return self.outcome is Outcome.NEEDS_FALLBACK

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(outcome=Outcome.SUCCESS, value=value)

    @staticmethod
    def fallback(error: str, code: str = "remote_error") -> "Result[T]":
        return Result(outcome=Outcome.NEEDS_FALLBACK, error=error, error_code=code)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(outcome=Outcome.FAILURE, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
