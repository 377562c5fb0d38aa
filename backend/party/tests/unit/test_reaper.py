"""Tests for PartyReaper."""

import asyncio
from unittest.mock import AsyncMock

from party.exceptions import StoreUnavailableError
from party.models import PartyStatus
from party.reaper import PartyReaper
from party.tests.helpers.parties import make_party


def _reaper(store, clock, **kwargs) -> PartyReaper:
    return PartyReaper(store, finished_ttl=3600, idle_ttl=21600, clock=clock.timestamp, **kwargs)


class TestReap:
    async def test_purges_finished_after_ttl(self, store, clock):
        await store.create(make_party(code="1111", status=PartyStatus.FINISHED))
        await store.create(make_party(code="2222"))
        reaper = _reaper(store, clock)

        clock.advance(3599)
        assert await reaper.reap() == []

        clock.advance(2)
        assert await reaper.reap() == ["1111"]
        assert await store.get("2222") is not None

    async def test_purges_abandoned_parties(self, store, clock):
        await store.create(make_party(status=PartyStatus.ACTIVE))
        clock.advance(21601)

        assert await _reaper(store, clock).reap() == ["5423"]

    async def test_invokes_callback(self, store, clock):
        await store.create(make_party(status=PartyStatus.FINISHED))
        on_purged = AsyncMock()
        clock.advance(4000)

        await _reaper(store, clock, on_purged=on_purged).reap()

        on_purged.assert_awaited_once_with(["5423"])

    async def test_callback_failure_is_logged(self, store, clock, caplog):
        await store.create(make_party(status=PartyStatus.FINISHED))
        clock.advance(4000)

        reaper = _reaper(store, clock, on_purged=AsyncMock(side_effect=RuntimeError("boom")))
        assert await reaper.reap() == ["5423"]
        assert "error in on_purged callback" in caplog.text

    async def test_store_failure_is_logged(self, store, clock, caplog):
        store.purge_expired = AsyncMock(side_effect=StoreUnavailableError())

        assert await _reaper(store, clock).reap() == []
        assert "party reaper pass failed" in caplog.text


class TestLifecycle:
    async def test_start_and_stop(self, store, clock):
        reaper = _reaper(store, clock, interval=3600)
        assert not reaper.running

        reaper.start()
        reaper.start()
        assert reaper.running

        await reaper.stop()
        assert not reaper.running

    async def test_loop_reaps_periodically(self, store, clock):
        interval = 0.01
        await store.create(make_party(status=PartyStatus.FINISHED))
        clock.advance(4000)
        reaper = _reaper(store, clock, interval=interval)

        reaper.start()
        try:
            for _ in range(100):
                if await store.get("5423") is None:
                    break
                await asyncio.sleep(interval)
        finally:
            await reaper.stop()
        assert await store.get("5423") is None
