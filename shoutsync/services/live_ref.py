"""Mutable cell read by realtime handlers at delivery time."""
from __future__ import annotations

from typing import Generic, TypeVar

T = TypeVar("T")


class LiveRef(Generic[T]):
    """Holds the current value of something a long-lived handler filters on.

    Handlers read ``get()`` when an event arrives instead of closing over the
    value seen at subscribe time, so retargeting never needs a resubscribe.
    """

    __slots__ = ("_value",)

    def __init__(self, value: T) -> None:
        self._value = value

    def get(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        self._value = value

    def __repr__(self) -> str:
        return f"LiveRef({self._value!r})"


__all__ = ["LiveRef"]
