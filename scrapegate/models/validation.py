"""
scrapegate/models/validation.py

Explicit result of snapshot validation. Decision code consumes a
``Valid`` value or short-circuits on ``Invalid``; there is no third state.
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Valid(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Invalid:
    reason: str

    @property
    def ok(self) -> bool:
        return False


Validation = Union[Valid[T], Invalid]
