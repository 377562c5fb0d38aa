"""SQLite-backed party store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
from typing import TYPE_CHECKING, Any

import structlog

from party.exceptions import DuplicatePartyError, PartyNotFoundError, StoreUnavailableError
from party.models import Party, PartyStatus
from party.store.base import MutationKind, PartyStore

if TYPE_CHECKING:
    from collections.abc import Callable

    from party.store.base import Transform
    from shared.db.connection import Database

logger = structlog.get_logger()


class SqlitePartyStore(PartyStore):
    """Stores each party as a JSON document in the ``parties`` table.

    All statements go through one connection guarded by an asyncio lock,
    and every write runs inside ``BEGIN IMMEDIATE`` so a failing
    transform or statement rolls the whole document change back.
    Subscribers are notified in-process after commit.
    """

    def __init__(self, db: Database, clock: Callable[[], float] = time.time) -> None:
        super().__init__()
        self._db = db
        self._clock = clock
        self._lock = asyncio.Lock()
        self._sequence: int | None = None

    def _next_version(self) -> int:
        if self._sequence is None:
            row = self._db.connection.execute("SELECT COALESCE(MAX(version), 0) FROM parties").fetchone()
            self._sequence = row[0]
        self._sequence += 1
        return self._sequence

    def _read(self, code: str) -> tuple[int, Party] | None:
        row = self._db.connection.execute("SELECT version, data FROM parties WHERE code = ?", (code,)).fetchone()
        if row is None:
            return None
        return row[0], Party.from_record(json.loads(row[1]))

    def _upsert(self, party: Party) -> int:
        version = self._next_version()
        written_at = self._clock()
        self._db.connection.execute(
            "INSERT INTO parties (code, status, version, updated_at, idle_since, data) VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(code) DO UPDATE SET "
            "status = excluded.status, version = excluded.version, updated_at = excluded.updated_at, "
            "idle_since = excluded.idle_since, data = excluded.data",
            (
                party.code,
                party.status.value,
                version,
                written_at,
                party.idle_since(written_at),
                json.dumps(party.to_record()),
            ),
        )
        return version

    def _delete_row(self, code: str) -> int | None:
        cursor = self._db.connection.execute("DELETE FROM parties WHERE code = ?", (code,))
        if cursor.rowcount == 0:
            return None
        return self._next_version()

    async def _write(self, code: str, body: Callable[[], tuple[Any, list[tuple[int, Party | None]]]]) -> Any:  # noqa: ANN401
        """Run ``body`` in one immediate transaction and publish what it wrote after commit.

        ``body`` returns (result, published snapshots).
        """
        conn = self._db.connection
        async with self._lock:
            sequence_before = self._sequence
            try:
                conn.execute("BEGIN IMMEDIATE")
                result, published = body()
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback()
                self._sequence = sequence_before
                logger.exception("party store write failed", party_code=code)
                raise StoreUnavailableError from exc
            except BaseException:
                self._rollback()
                self._sequence = sequence_before
                raise
        for version, party in published:
            self._hub.publish(code, version, party)
        return result

    def _rollback(self) -> None:
        conn = self._db.connection
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    async def create(self, party: Party) -> None:
        def body() -> tuple[None, list[tuple[int, Party | None]]]:
            existing = self._read(party.code)
            if existing is not None and not existing[1].is_finished:
                raise DuplicatePartyError
            return None, [(self._upsert(party), party)]

        await self._write(party.code, body)

    async def get(self, code: str) -> Party | None:
        async with self._lock:
            current = self._guarded_read(code)
        return current[1] if current is not None else None

    def _guarded_read(self, code: str) -> tuple[int, Party] | None:
        try:
            return self._read(code)
        except sqlite3.Error as exc:
            raise StoreUnavailableError from exc

    async def exists_active(self, code: str) -> bool:
        async with self._lock:
            try:
                row = self._db.connection.execute("SELECT status FROM parties WHERE code = ?", (code,)).fetchone()
            except sqlite3.Error as exc:
                raise StoreUnavailableError from exc
        return row is not None and row[0] != PartyStatus.FINISHED.value

    async def transact(self, code: str, transform: Transform) -> Any:  # noqa: ANN401
        def body() -> tuple[Any, list[tuple[int, Party | None]]]:
            current = self._read(code)
            if current is None:
                raise PartyNotFoundError
            mutation = transform(current[1])
            if mutation.kind is MutationKind.WRITE:
                return mutation.result, [(self._upsert(mutation.party), mutation.party)]
            if mutation.kind is MutationKind.DELETE:
                version = self._delete_row(code)
                return mutation.result, [(version, None)] if version is not None else []
            return mutation.result, []

        return await self._write(code, body)

    async def delete(self, code: str) -> None:
        def body() -> tuple[None, list[tuple[int, Party | None]]]:
            version = self._delete_row(code)
            return None, [(version, None)] if version is not None else []

        await self._write(code, body)

    async def purge_expired(self, now: float, finished_ttl: float, idle_ttl: float) -> list[str]:
        finished = PartyStatus.FINISHED.value
        async with self._lock:
            try:
                rows = self._db.connection.execute(
                    "SELECT code FROM parties WHERE "
                    "(status = ? AND updated_at < ?) OR (status != ? AND idle_since < ?)",
                    (finished, now - finished_ttl, finished, now - idle_ttl),
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreUnavailableError from exc

        purged: list[str] = []
        for (code,) in rows:

            def body(code: str = code) -> tuple[bool, list[tuple[int, Party | None]]]:
                # re-check inside the transaction: the party may have been written since the scan
                cursor = self._db.connection.execute(
                    "DELETE FROM parties WHERE code = ? AND ("
                    "(status = ? AND updated_at < ?) OR (status != ? AND idle_since < ?))",
                    (code, finished, now - finished_ttl, finished, now - idle_ttl),
                )
                if cursor.rowcount == 0:
                    return False, []
                return True, [(self._next_version(), None)]

            if await self._write(code, body):
                purged.append(code)
        return purged

    async def _current(self, code: str) -> tuple[int, Party | None]:
        async with self._lock:
            current = self._guarded_read(code)
        if current is None:
            return 0, None
        return current
