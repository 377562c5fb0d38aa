"""In-process party store."""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from party.exceptions import DuplicatePartyError, PartyNotFoundError
from party.store.base import MutationKind, PartyStore

if TYPE_CHECKING:
    from collections.abc import Callable

    from party.models import Party
    from party.store.base import Transform

logger = structlog.get_logger()


@dataclass
class _Entry:
    party: Party
    version: int
    updated_at: float


class MemoryPartyStore(PartyStore):
    """Dict-backed store with a lock per party code.

    Suitable for a single server process and for tests. Versions come
    from one store-wide sequence so a code that is deleted and created
    again never reuses a version number. Locks are kept per code for
    the life of the store; the keyspace is only 10,000 codes.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        super().__init__()
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._sequence = itertools.count(1)

    def _lock_for(self, code: str) -> asyncio.Lock:
        lock = self._locks.get(code)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[code] = lock
        return lock

    def _commit(self, code: str, party: Party) -> None:
        version = next(self._sequence)
        self._entries[code] = _Entry(party=party, version=version, updated_at=self._clock())
        self._hub.publish(code, version, party)

    def _remove(self, code: str) -> None:
        if self._entries.pop(code, None) is None:
            return
        self._hub.publish(code, next(self._sequence), None)

    async def create(self, party: Party) -> None:
        async with self._lock_for(party.code):
            existing = self._entries.get(party.code)
            if existing is not None and not existing.party.is_finished:
                raise DuplicatePartyError
            self._commit(party.code, party)

    async def get(self, code: str) -> Party | None:
        entry = self._entries.get(code)
        return entry.party if entry is not None else None

    async def exists_active(self, code: str) -> bool:
        entry = self._entries.get(code)
        return entry is not None and not entry.party.is_finished

    async def transact(self, code: str, transform: Transform) -> Any:  # noqa: ANN401
        async with self._lock_for(code):
            entry = self._entries.get(code)
            if entry is None:
                raise PartyNotFoundError
            mutation = transform(entry.party)
            if mutation.kind is MutationKind.WRITE:
                self._commit(code, mutation.party)
            elif mutation.kind is MutationKind.DELETE:
                self._remove(code)
            return mutation.result

    async def delete(self, code: str) -> None:
        async with self._lock_for(code):
            self._remove(code)

    def _is_expired(self, entry: _Entry, now: float, finished_ttl: float, idle_ttl: float) -> bool:
        if entry.party.is_finished:
            return now - entry.updated_at > finished_ttl
        return now - entry.party.idle_since(entry.updated_at) > idle_ttl

    async def purge_expired(self, now: float, finished_ttl: float, idle_ttl: float) -> list[str]:
        candidates = [
            code for code, entry in self._entries.items() if self._is_expired(entry, now, finished_ttl, idle_ttl)
        ]
        purged: list[str] = []
        for code in candidates:
            async with self._lock_for(code):
                # re-check: the party may have been written since the scan
                entry = self._entries.get(code)
                if entry is None or not self._is_expired(entry, now, finished_ttl, idle_ttl):
                    continue
                self._remove(code)
                purged.append(code)
        return purged

    async def _current(self, code: str) -> tuple[int, Party | None]:
        entry = self._entries.get(code)
        if entry is None:
            return 0, None
        return entry.version, entry.party
