"""Background removal of finished and abandoned parties.

Finished parties stay readable as results for ``finished_ttl`` seconds
after their last write. Waiting or active parties nobody has written to
for ``idle_ttl`` seconds are treated as abandoned. Either way the code
becomes free again.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING

import structlog

from party.exceptions import PartyError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from party.store.base import PartyStore

logger = structlog.get_logger()

DEFAULT_FINISHED_TTL_SECONDS = 3600
DEFAULT_IDLE_TTL_SECONDS = 6 * 3600
DEFAULT_INTERVAL_SECONDS = 30


class PartyReaper:
    def __init__(
        self,
        store: PartyStore,
        finished_ttl: float = DEFAULT_FINISHED_TTL_SECONDS,
        idle_ttl: float = DEFAULT_IDLE_TTL_SECONDS,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
        on_purged: Callable[[list[str]], Awaitable[None]] | None = None,
    ) -> None:
        self._store = store
        self._finished_ttl = finished_ttl
        self._idle_ttl = idle_ttl
        self._interval = interval
        self._clock = clock
        self._on_purged = on_purged
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop(), name="party-reaper")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.reap()

    async def reap(self) -> list[str]:
        """Purge expired parties once. Store failures are logged and retried on the next pass."""
        try:
            purged = await self._store.purge_expired(self._clock(), self._finished_ttl, self._idle_ttl)
        except PartyError:
            logger.exception("party reaper pass failed")
            return []

        if purged:
            logger.info("expired parties purged", party_codes=purged, count=len(purged))
            if self._on_purged is not None:
                try:
                    await self._on_purged(purged)
                except Exception:
                    logger.exception("error in on_purged callback")
        return purged
