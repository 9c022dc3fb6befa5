"""
Error taxonomy shared by every calculator.

Parsing helpers raise these errors directly. Public solvers and planners are
wrapped with `returns_failure`, so the caller always gets either a result or
a `Failure` value back; no calculation error escapes as an exception.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    PARSE = "parse"
    DOMAIN = "domain"
    PLANNING = "planning"


class CalculationError(ValueError):
    """Base class for every error a calculator can report to the user."""

    kind: ErrorKind = ErrorKind.DOMAIN

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ParseError(CalculationError):
    """Malformed number, negative quantity or unsupported unit."""

    kind = ErrorKind.PARSE


class DomainError(CalculationError):
    """Valid numbers that are physically inconsistent."""

    kind = ErrorKind.DOMAIN


class PlanningError(CalculationError):
    """No practical protocol, or a conversion that needs a molecular weight."""

    kind = ErrorKind.PLANNING


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str

    @classmethod
    def from_error(cls, exc: CalculationError) -> "Failure":
        return cls(kind=exc.kind, message=exc.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "kind": self.kind.value}

    def __str__(self) -> str:
        return self.message


def is_failure(result: Any) -> bool:
    return isinstance(result, Failure)


def returns_failure(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Turn a raised CalculationError into a returned Failure."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except CalculationError as exc:
            logger.info("%s failed (%s): %s", fn.__name__, exc.kind.value, exc.message)
            return Failure.from_error(exc)

    return wrapper
