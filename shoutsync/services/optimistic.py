"""Two-phase optimistic state: apply, then confirm or roll back."""
from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Iterator, TypeVar

K = TypeVar("K")
V = TypeVar("V")

_MISSING = object()


@dataclass(frozen=True)
class MutationToken(Generic[K, V]):
    """Receipt for one optimistic change, carrying the snapshot it replaced."""

    serial: int
    key: K
    previous: V | None
    had_previous: bool
    applied: V


class OptimisticStore(Generic[K, V]):
    """Keyed cache whose optimistic writes capture their own pre-mutation snapshot.

    Values must be immutable so a snapshot cannot be altered after capture.
    Each concurrent mutation holds its own token; rolling one back restores
    exactly what it replaced, never a recomputed inverse. Removing a key also
    voids its pending tokens, so a late rollback cannot bring it back.
    """

    def __init__(self) -> None:
        self._values: dict[K, V] = {}
        self._pending: dict[int, MutationToken[K, V]] = {}
        self._serials = itertools.count(1)

    def get(self, key: K, default: V | None = None) -> V | None:
        return self._values.get(key, default)

    def set(self, key: K, value: V) -> None:
        """Write a server-confirmed value."""

        self._values[key] = value

    def discard(self, key: K) -> V | None:
        """Remove ``key`` together with any optimistic change still pending on it."""

        for serial in [serial for serial, token in self._pending.items() if token.key == key]:
            del self._pending[serial]
        return self._values.pop(key, None)

    def clear(self) -> None:
        self._values.clear()
        self._pending.clear()

    def keys(self) -> list[K]:
        return list(self._values)

    def values(self) -> list[V]:
        return list(self._values.values())

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[K]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def apply_optimistic(self, key: K, update: Callable[[V | None], V]) -> MutationToken[K, V]:
        """Synchronously install ``update(current)`` and return the rollback token."""

        current = self._values.get(key, _MISSING)
        had_previous = current is not _MISSING
        previous = current if had_previous else None
        applied = update(previous)  # type: ignore[arg-type]
        self._values[key] = applied
        token = MutationToken(
            serial=next(self._serials),
            key=key,
            previous=previous,  # type: ignore[arg-type]
            had_previous=had_previous,
            applied=applied,
        )
        self._pending[token.serial] = token
        return token

    def confirm(self, token: MutationToken[K, V]) -> bool:
        return self._pending.pop(token.serial, None) is not None

    def rollback(self, token: MutationToken[K, V]) -> bool:
        """Restore the snapshot ``token`` replaced; False once the key was removed."""

        if self._pending.pop(token.serial, None) is None:
            return False
        if token.key not in self._values:
            return False
        if token.had_previous:
            self._values[token.key] = token.previous  # type: ignore[assignment]
        else:
            del self._values[token.key]
        return True

    def pending(self, key: K | object = _MISSING) -> list[MutationToken[K, V]]:
        tokens = list(self._pending.values())
        if key is _MISSING:
            return tokens
        return [token for token in tokens if token.key == key]


class ChangeClock:
    """Remembers which keys changed locally while a server read was in flight.

    ``begin()`` returns the tick a refresh started at; a snapshot must not
    overwrite any key for which ``changed_since(key, tick)`` is true.
    """

    def __init__(self) -> None:
        self._tick = 0
        self._active = 0
        self._marks: dict[Hashable, int] = {}
        self._everything = 0

    def begin(self) -> int:
        self._active += 1
        return self._tick

    def end(self) -> None:
        self._active = max(0, self._active - 1)
        if not self._active:
            self._marks.clear()

    def mark(self, key: Hashable) -> None:
        self._tick += 1
        if self._active:
            self._marks[key] = self._tick

    def mark_all(self) -> None:
        self._tick += 1
        if self._active:
            self._everything = self._tick

    def changed_since(self, key: Hashable, tick: int) -> bool:
        return self._marks.get(key, 0) > tick or self.all_changed_since(tick)

    def all_changed_since(self, tick: int) -> bool:
        return self._everything > tick


__all__ = ["ChangeClock", "MutationToken", "OptimisticStore"]
