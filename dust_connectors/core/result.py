from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union


T = TypeVar("T")
E = TypeVar("E", bound=Exception)


@dataclass(frozen=True)
class Ok(Generic[T]):
    # Carry successful values across service boundaries without exceptions.
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False


@dataclass(frozen=True)
class Err(Generic[E]):
    # Carry expected failures (not found, auth expired) as values.
    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True


Result = Union[Ok[T], Err[Exception]]
