"""Result type separating errors that end a request from ones that are only logged."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class Severity(str, Enum):
    OK = "ok"
    ADVISORY = "advisory"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class Outcome(Generic[T]):
    value: Optional[T] = None
    severity: Severity = Severity.OK
    error: Optional[Exception] = None

    @classmethod
    def ok(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def advisory(cls, error: Exception, fallback: Optional[T] = None) -> "Outcome[T]":
        """Failure the caller logs and continues past, using ``fallback``."""
        return cls(value=fallback, severity=Severity.ADVISORY, error=error)

    @classmethod
    def fatal(cls, error: Exception) -> "Outcome[T]":
        """Failure that ends the current request."""
        return cls(severity=Severity.FATAL, error=error)

    @property
    def is_fatal(self) -> bool:
        return self.severity is Severity.FATAL

    @property
    def is_advisory(self) -> bool:
        return self.severity is Severity.ADVISORY
