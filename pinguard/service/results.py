from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from pinguard.service.errors import ServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    """Failed outcome. ``error`` is returned, never raised, by the core."""

    error: ServiceError


Result = Union[Ok[T], Err]


def unwrap(result: "Result[T]") -> T:
    """Return the success value or raise the carried error.

    Used at the HTTP boundary, where the registered exception handlers turn
    the raised ``ServiceError`` into an error envelope.
    """

    if isinstance(result, Err):
        raise result.error
    return result.value


__all__ = ["Ok", "Err", "Result", "unwrap"]
