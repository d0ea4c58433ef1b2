"""Contracts for the managed backend: row CRUD, RPC, storage and the change feed."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Callable, Iterable, Sequence

from ..schemas import ChangeEvent, ChannelStatus


class BackendError(RuntimeError):
    """Raised when a backend read, write or RPC call fails."""

    def __init__(self, detail: str, *, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class ChannelConflictError(RuntimeError):
    """Raised when a realtime channel name is subscribed while already live."""


class FilterOp(StrEnum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"


def _comparable(left: Any, right: Any) -> tuple[Any, Any]:
    if isinstance(left, datetime) and isinstance(right, str):
        return left, datetime.fromisoformat(right)
    if isinstance(left, str) and isinstance(right, datetime):
        return datetime.fromisoformat(left), right
    return left, right


@dataclass(frozen=True)
class Filter:
    column: str
    op: FilterOp
    value: Any

    def matches(self, row: dict[str, Any]) -> bool:
        current = row.get(self.column)
        if self.op is FilterOp.IN:
            return str(current) in {str(item) for item in self.value}
        if self.op is FilterOp.EQ:
            return current == self.value or (current is not None and str(current) == str(self.value))
        if self.op is FilterOp.NEQ:
            return not (current == self.value or (current is not None and str(current) == str(self.value)))
        if current is None:
            return False
        left, right = _comparable(current, self.value)
        if self.op is FilterOp.GT:
            return left > right
        if self.op is FilterOp.GTE:
            return left >= right
        if self.op is FilterOp.LT:
            return left < right
        return left <= right


def eq(column: str, value: Any) -> Filter:
    return Filter(column, FilterOp.EQ, value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, FilterOp.NEQ, value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, FilterOp.GT, value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, FilterOp.GTE, value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, FilterOp.IN, tuple(values))


@dataclass(frozen=True)
class Order:
    column: str
    ascending: bool = True


class Backend(ABC):
    """Request/response boundary of the managed backend."""

    @abstractmethod
    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return the rows matching every filter."""

    @abstractmethod
    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int:
        """Return the exact number of matching rows."""

    @abstractmethod
    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert one row and return it as stored."""

    @abstractmethod
    async def update(
        self, table: str, values: dict[str, Any], *, filters: Sequence[Filter]
    ) -> list[dict[str, Any]]:
        """Update matching rows and return them."""

    @abstractmethod
    async def upsert(
        self, table: str, row: dict[str, Any], *, on_conflict: Sequence[str]
    ) -> dict[str, Any]:
        """Insert or merge a row keyed by ``on_conflict`` columns."""

    @abstractmethod
    async def delete(self, table: str, *, filters: Sequence[Filter]) -> list[dict[str, Any]]:
        """Delete matching rows and return them."""

    @abstractmethod
    async def rpc(self, function: str, params: dict[str, Any] | None = None) -> Any:
        """Call a server-side function."""

    @abstractmethod
    async def upload(self, bucket: str, path: str, data: bytes, *, content_type: str) -> str:
        """Store an object and return its public URL."""


ChangeDispatch = Callable[[ChangeEvent], None]
StatusCallback = Callable[[ChannelStatus, Exception | None], None]


class RealtimeTransport(ABC):
    """Opens named change-feed channels.

    Opening a name that is already live raises ``ChannelConflictError``.
    Delivery is at-least-once with no ordering across tables.
    """

    @abstractmethod
    def open(self, name: str, dispatch: ChangeDispatch, on_status: StatusCallback) -> Any:
        """Open a channel and return an opaque handle."""

    @abstractmethod
    def close(self, handle: Any) -> None:
        """Close a channel previously returned by ``open``."""


__all__ = [
    "Backend",
    "BackendError",
    "ChangeDispatch",
    "ChannelConflictError",
    "Filter",
    "FilterOp",
    "Order",
    "RealtimeTransport",
    "StatusCallback",
    "eq",
    "gt",
    "gte",
    "in_",
    "neq",
]
