"""
Tagged result returned by the resolve and transform stages.

The chunk runner switches on `StageResult.outcome` instead of catching
typed exceptions:

    OK    -> value carries the stage output
    SKIP  -> per-item failure, consumes the skip limit
    FATAL -> aborts the job
"""

import enum
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from core.exceptions import ExportException

T = TypeVar("T")


class Outcome(str, enum.Enum):
    OK = "ok"
    SKIP = "skip"
    FATAL = "fatal"


@dataclass(frozen=True)
class StageResult(Generic[T]):
    outcome: Outcome
    value: Optional[T] = None
    error: Optional[ExportException] = None

    @classmethod
    def ok(cls, value: Optional[T]) -> "StageResult[T]":
        return cls(Outcome.OK, value=value)

    @classmethod
    def skip(cls, error: ExportException) -> "StageResult[T]":
        return cls(Outcome.SKIP, error=error)

    @classmethod
    def fatal(cls, error: ExportException) -> "StageResult[T]":
        return cls(Outcome.FATAL, error=error)

    @property
    def reason(self) -> Optional[str]:
        return self.error.message if self.error else None
