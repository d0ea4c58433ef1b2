"""In-process backend and change feed used for local development and tests.

Rows live in plain lists of dicts. Every write emits a change event to each
connected ``MemoryRealtime`` transport, mimicking a managed backend where
every client holds its own realtime connection.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from ..schemas import ChangeEvent, ChangeType, ChannelStatus
from .backend import (
    Backend,
    BackendError,
    ChangeDispatch,
    ChannelConflictError,
    Filter,
    Order,
    RealtimeTransport,
    StatusCallback,
)

logger = logging.getLogger(__name__)

RpcHandler = Callable[[dict[str, Any]], Any]


@dataclass(eq=False)
class MemoryChannelHandle:
    name: str
    dispatch: ChangeDispatch
    on_status: StatusCallback
    closed: bool = False


@dataclass
class MemoryRealtime(RealtimeTransport):
    """One client's realtime connection.

    With ``auto_deliver`` off, events queue up until ``flush()`` so tests can
    choose whether the change event or the write response lands first.
    """

    auto_deliver: bool = True
    _channels: dict[str, MemoryChannelHandle] = field(default_factory=dict)
    _pending: list[ChangeEvent] = field(default_factory=list)
    open_counts: Counter = field(default_factory=Counter)

    def open(self, name: str, dispatch: ChangeDispatch, on_status: StatusCallback) -> MemoryChannelHandle:
        if name in self._channels:
            raise ChannelConflictError(f"Channel {name!r} is already subscribed")
        handle = MemoryChannelHandle(name=name, dispatch=dispatch, on_status=on_status)
        self._channels[name] = handle
        self.open_counts[name] += 1
        on_status(ChannelStatus.SUBSCRIBED, None)
        return handle

    def close(self, handle: MemoryChannelHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        if self._channels.get(handle.name) is handle:
            del self._channels[handle.name]
        handle.on_status(ChannelStatus.CLOSED, None)

    @property
    def open_channels(self) -> list[str]:
        return sorted(self._channels)

    def fail(self, name: str, error: Exception | None = None) -> None:
        """Report a channel error for ``name`` as the server would."""

        handle = self._channels.get(name)
        if handle is not None:
            handle.on_status(ChannelStatus.CHANNEL_ERROR, error)

    def publish(self, event: ChangeEvent) -> None:
        self._pending.append(event)
        if self.auto_deliver:
            self.flush()

    def flush(self) -> int:
        """Deliver queued events in arrival order; returns how many were delivered."""

        delivered = 0
        while self._pending:
            event = self._pending.pop(0)
            for handle in list(self._channels.values()):
                if not handle.closed:
                    handle.dispatch(event)
            delivered += 1
        return delivered


class MemoryBackend(Backend):
    """Tables in memory with unique constraints, RPC hooks and failure injection."""

    def __init__(
        self,
        *,
        replica_identity_full: bool = True,
        latency: float = 0.0,
    ) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.storage: dict[str, bytes] = {}
        self.calls: list[tuple[str, str]] = []
        self.replica_identity_full = replica_identity_full
        self.latency = latency
        self._transports: list[MemoryRealtime] = []
        self._unique: dict[str, list[tuple[str, ...]]] = defaultdict(list)
        self._rpc: dict[str, RpcHandler] = {}
        self._failures: dict[tuple[str, str], list[BackendError]] = defaultdict(list)
        self._delays: dict[tuple[str, str], list[tuple[float, float]]] = defaultdict(list)

    # -- setup helpers -------------------------------------------------

    def connect(self, *, auto_deliver: bool = True) -> MemoryRealtime:
        """Open a new client realtime connection to this backend."""

        transport = MemoryRealtime(auto_deliver=auto_deliver)
        self._transports.append(transport)
        return transport

    def add_unique(self, table: str, *columns: str) -> None:
        self._unique[table].append(tuple(columns))

    def seed(self, table: str, rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        """Insert rows without emitting change events."""

        stored = [self._materialize(row) for row in rows]
        self.tables[table].extend(stored)
        return [dict(row) for row in stored]

    def register_rpc(self, function: str, handler: RpcHandler) -> None:
        self._rpc[function] = handler

    def fail(self, op: str, target: str, *, times: int = 1, error: BackendError | None = None) -> None:
        """Make the next ``times`` calls of ``op`` on ``target`` raise."""

        failure = error or BackendError(f"{op} on {target} failed", status_code=500)
        self._failures[(op, target)].extend([failure] * times)

    def slow(self, op: str, target: str, *, before: float = 0.0, after: float = 0.0, times: int = 1) -> None:
        """Delay the next ``times`` calls of ``op`` on ``target``.

        ``before`` holds the request back before it runs; ``after`` holds the
        response back once the rows have been read or written.
        """

        self._delays[(op, target)].extend([(before, after)] * times)

    def call_count(self, op: str, target: str | None = None) -> int:
        return sum(1 for call_op, call_target in self.calls if call_op == op and target in (None, call_target))

    # -- Backend contract ----------------------------------------------

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        delay = await self._enter("select", table)
        rows = [row for row in self.tables[table] if all(f.matches(row) for f in filters)]
        if order is not None:
            rows.sort(key=lambda row: row.get(order.column), reverse=not order.ascending)
        if limit is not None:
            rows = rows[:limit]
        return await self._respond(delay, [self._project(row, columns) for row in rows])

    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int:
        delay = await self._enter("count", table)
        total = sum(1 for row in self.tables[table] if all(f.matches(row) for f in filters))
        return await self._respond(delay, total)

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        delay = await self._enter("insert", table)
        stored = self._materialize(row)
        self._check_unique(table, stored)
        self.tables[table].append(stored)
        self._emit(table, ChangeType.INSERT, new=stored)
        return await self._respond(delay, dict(stored))

    async def update(
        self, table: str, values: dict[str, Any], *, filters: Sequence[Filter]
    ) -> list[dict[str, Any]]:
        delay = await self._enter("update", table)
        changed: list[dict[str, Any]] = []
        for row in self.tables[table]:
            if all(f.matches(row) for f in filters):
                previous = dict(row)
                row.update(values)
                changed.append(dict(row))
                self._emit(table, ChangeType.UPDATE, new=row, old=self._old_image(previous))
        return await self._respond(delay, changed)

    async def upsert(
        self, table: str, row: dict[str, Any], *, on_conflict: Sequence[str]
    ) -> dict[str, Any]:
        await self._enter("upsert", table)
        for existing in self.tables[table]:
            if all(str(existing.get(col)) == str(row.get(col)) for col in on_conflict):
                previous = dict(existing)
                existing.update(row)
                self._emit(table, ChangeType.UPDATE, new=existing, old=self._old_image(previous))
                return dict(existing)
        stored = self._materialize(row)
        self.tables[table].append(stored)
        self._emit(table, ChangeType.INSERT, new=stored)
        return dict(stored)

    async def delete(self, table: str, *, filters: Sequence[Filter]) -> list[dict[str, Any]]:
        delay = await self._enter("delete", table)
        kept: list[dict[str, Any]] = []
        removed: list[dict[str, Any]] = []
        for row in self.tables[table]:
            (removed if all(f.matches(row) for f in filters) else kept).append(row)
        self.tables[table] = kept
        for row in removed:
            self._emit(table, ChangeType.DELETE, old=self._old_image(row))
        return await self._respond(delay, [dict(row) for row in removed])

    async def rpc(self, function: str, params: dict[str, Any] | None = None) -> Any:
        delay = await self._enter("rpc", function)
        handler = self._rpc.get(function)
        if handler is None:
            raise BackendError(f"Function {function} not found", status_code=404)
        result = handler(dict(params or {}))
        if inspect.isawaitable(result):
            result = await result
        return await self._respond(delay, result)

    async def upload(self, bucket: str, path: str, data: bytes, *, content_type: str) -> str:
        await self._enter("upload", bucket)
        self.storage[f"{bucket}/{path}"] = bytes(data)
        return f"memory://{bucket}/{path}"

    # -- internals -----------------------------------------------------

    async def _enter(self, op: str, target: str) -> float:
        """Record the call, wait out its latency and raise any queued failure.

        Returns how long the caller should hold its response back.
        """

        self.calls.append((op, target))
        delays = self._delays.get((op, target))
        before, after = delays.pop(0) if delays else (0.0, 0.0)
        await asyncio.sleep(self.latency + before)
        queued = self._failures.get((op, target))
        if queued:
            raise queued.pop(0)
        return after

    @staticmethod
    async def _respond(delay: float, result: Any) -> Any:
        if delay:
            await asyncio.sleep(delay)
        return result

    @staticmethod
    def _materialize(row: dict[str, Any]) -> dict[str, Any]:
        stored = dict(row)
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", datetime.now(timezone.utc))
        return stored

    @staticmethod
    def _project(row: dict[str, Any], columns: str) -> dict[str, Any]:
        if columns.strip() == "*":
            return dict(row)
        wanted = [col.strip() for col in columns.split(",") if col.strip()]
        return {col: row.get(col) for col in wanted}

    def _old_image(self, row: dict[str, Any]) -> dict[str, Any]:
        # Without full replication the feed only carries the primary key.
        if self.replica_identity_full:
            return dict(row)
        return {"id": row.get("id")}

    def _check_unique(self, table: str, candidate: dict[str, Any]) -> None:
        for columns in self._unique.get(table, ()):
            key = tuple(str(candidate.get(col)) for col in columns)
            for row in self.tables[table]:
                if tuple(str(row.get(col)) for col in columns) == key:
                    raise BackendError(
                        f"duplicate key value violates unique constraint on {table}{columns}",
                        status_code=409,
                    )

    def _emit(
        self,
        table: str,
        change: ChangeType,
        *,
        new: dict[str, Any] | None = None,
        old: dict[str, Any] | None = None,
    ) -> None:
        event = ChangeEvent(
            table=table,
            type=change,
            new=dict(new) if new is not None else None,
            old=dict(old) if old is not None else None,
            commit_timestamp=datetime.now(timezone.utc),
        )
        for transport in list(self._transports):
            transport.publish(event)


__all__ = ["MemoryBackend", "MemoryChannelHandle", "MemoryRealtime"]
