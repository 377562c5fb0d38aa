"""Tests for PartyService commands."""

import asyncio
from datetime import timedelta

import pytest

from party.codes import CodeAllocator
from party.exceptions import (
    CodeAllocationError,
    InvalidPartyCodeError,
    InvalidPartySettingsError,
    NotHostError,
    PartyAlreadyFinishedError,
    PartyNotFoundError,
    PlayerNotInPartyError,
)
from party.identity import PlayerProfile
from party.models import DEFAULT_AVATAR, DEFAULT_PLAYER_NAME, GameMode, PartyStatus
from party.service import PartyService
from party.tests.helpers.parties import make_party


@pytest.fixture
def fixed_service(store, clock):
    """Service whose allocator draws 5423 first, then 1000, 1001, ..."""
    codes = iter(["5423", *(str(n) for n in range(1000, 1100))])
    allocator = CodeAllocator(store, draw=lambda: next(codes))
    return PartyService(store, allocator=allocator, clock=clock)


class TestCreateParty:
    async def test_creates_waiting_party_with_host(self, fixed_service, alice):
        party = await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500, "loc-1", "Monterey Bay")

        assert party.code == "5423"
        assert party.status is PartyStatus.WAITING
        assert party.host_id == "alice"
        assert party.location_name == "Monterey Bay"
        assert [(p.id, p.name, p.avatar, p.xp) for p in party.players] == [("alice", "Alice", 3, 0)]
        assert await fixed_service.get_party("5423") == party

    @pytest.mark.parametrize("target", [0, -5, 1_000_001])
    async def test_rejects_bad_target(self, fixed_service, alice, target):
        with pytest.raises(InvalidPartySettingsError):
            await fixed_service.create_party(alice, GameMode.TIME_TRIAL, target)

    @pytest.mark.parametrize(
        ("mode", "target"),
        [("relay", 500), (GameMode.SCORE_RACE, "500"), (GameMode.SCORE_RACE, True)],
    )
    async def test_rejects_bad_mode_or_target_type(self, fixed_service, alice, mode, target):
        with pytest.raises(InvalidPartySettingsError):
            await fixed_service.create_party(alice, mode, target)
        assert not await fixed_service.store.exists_active("5423")

    async def test_skips_taken_code(self, store, fixed_service, alice):
        await store.create(make_party(code="5423", host_id="someone"))

        party = await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500)

        assert party.code == "1000"

    async def test_retries_when_code_is_taken_between_check_and_create(self, store, clock, alice):
        codes = iter(["5423", "5423", "7777"])
        allocator = CodeAllocator(store, draw=lambda: next(codes))
        service = PartyService(store, allocator=allocator, clock=clock)
        original_exists = store.exists_active
        calls = 0

        async def racing_exists(code: str) -> bool:
            nonlocal calls
            calls += 1
            if calls == 1:
                # another creator grabs the code right after our check
                result = await original_exists(code)
                await store.create(make_party(code=code, host_id="rival"))
                return result
            return await original_exists(code)

        store.exists_active = racing_exists

        party = await service.create_party(alice, GameMode.SCORE_RACE, 500)

        assert party.code == "7777"
        assert (await store.get("5423")).host_id == "rival"

    async def test_allocation_failure(self, store, clock, alice):
        await store.create(make_party(code="5423"))
        allocator = CodeAllocator(store, max_attempts=2, draw=lambda: "5423")
        service = PartyService(store, allocator=allocator, clock=clock)

        with pytest.raises(CodeAllocationError):
            await service.create_party(alice, GameMode.SCORE_RACE, 500)

    async def test_default_profile(self, fixed_service):
        party = await fixed_service.create_party(PlayerProfile.build("anon", "  "), GameMode.SCORE_RACE, 500)
        player = party.players[0]
        assert player.name == DEFAULT_PLAYER_NAME
        assert player.avatar == DEFAULT_AVATAR


class TestJoinParty:
    async def test_join_appends_player(self, fixed_service, alice, bob):
        await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500)

        party = await fixed_service.join_party(bob, "5423")

        assert [p.id for p in party.players] == ["alice", "bob"]
        assert party.host_id == "alice"

    async def test_join_is_idempotent(self, fixed_service, alice, bob):
        await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500)
        await fixed_service.join_party(bob, "5423")
        await fixed_service.record_catch("bob", "5423", "crab")

        party = await fixed_service.join_party(bob, " 5423 ")

        assert [p.id for p in party.players] == ["alice", "bob"]
        assert party.get_player("bob").xp == 100

    async def test_invalid_code_checked_before_store(self, fixed_service, bob):
        with pytest.raises(InvalidPartyCodeError):
            await fixed_service.join_party(bob, "54")

    async def test_unknown_party(self, fixed_service, bob):
        with pytest.raises(PartyNotFoundError, match="Party not found"):
            await fixed_service.join_party(bob, "9999")

    async def test_finished_party(self, store, fixed_service, bob):
        await store.create(make_party(status=PartyStatus.FINISHED))
        with pytest.raises(PartyAlreadyFinishedError):
            await fixed_service.join_party(bob, "5423")

    async def test_join_active_party(self, fixed_service, alice, bob):
        await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500)
        await fixed_service.start_party("alice", "5423")

        party = await fixed_service.join_party(bob, "5423")

        assert party.status is PartyStatus.ACTIVE
        assert party.has_player("bob")

    async def test_concurrent_joins(self, fixed_service, alice):
        await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500)
        profiles = [PlayerProfile.build(f"p{i}", f"P{i}") for i in range(8)]

        await asyncio.gather(*(fixed_service.join_party(p, "5423") for p in profiles))

        party = await fixed_service.get_party("5423")
        assert len(party.players) == 9
        assert len({p.id for p in party.players}) == 9


class TestLeaveParty:
    async def test_member_leaves(self, fixed_service, alice, bob):
        await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500)
        await fixed_service.join_party(bob, "5423")

        party = await fixed_service.leave_party("bob", "5423")

        assert party is not None
        assert [p.id for p in party.players] == ["alice"]
        assert party.host_id == "alice"

    async def test_host_leaving_transfers_host(self, fixed_service, alice, bob):
        await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500)
        await fixed_service.join_party(bob, "5423")
        await fixed_service.join_party(PlayerProfile.build("carol"), "5423")

        party = await fixed_service.leave_party("alice", "5423")

        assert party.host_id == "bob"
        assert [p.id for p in party.players] == ["bob", "carol"]

    async def test_last_player_deletes_party(self, fixed_service, alice):
        await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500)

        assert await fixed_service.leave_party("alice", "5423") is None
        with pytest.raises(PartyNotFoundError):
            await fixed_service.get_party("5423")

    async def test_leaving_missing_party(self, fixed_service):
        assert await fixed_service.leave_party("alice", "9999") is None

    async def test_leaving_party_you_are_not_in(self, fixed_service, alice):
        created = await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500)
        assert await fixed_service.leave_party("stranger", "5423") == created

    async def test_finished_party_is_kept(self, store, fixed_service):
        finished = make_party(status=PartyStatus.FINISHED)
        await store.create(finished)

        assert await fixed_service.leave_party("u1", "5423") == finished
        assert await store.get("5423") == finished


class TestRace:
    async def test_score_race_to_finish(self, fixed_service, alice, bob, clock):
        """Alice hosts a 500 XP race on 5423; Bob joins; Alice wins with five first catches."""
        await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500)
        await fixed_service.join_party(bob, "5423")
        assert await fixed_service.start_party("alice", "5423") is True

        for creature in ("crab", "otter", "seal", "kelp", "urchin"):
            assert await fixed_service.record_catch("alice", "5423", creature) == 100
            clock.advance(30)
        assert await fixed_service.record_catch("bob", "5423", "crab") == 100
        assert await fixed_service.add_quiz_bonus("bob", "5423") == 20

        assert await fixed_service.evaluate_completion("5423") is True

        party = await fixed_service.get_party("5423")
        assert party.status is PartyStatus.FINISHED
        assert party.end_time == clock.now
        assert [(p.id, p.xp) for p in party.podium()] == [("alice", 500), ("bob", 120)]

        with pytest.raises(PartyAlreadyFinishedError):
            await fixed_service.record_catch("bob", "5423", "otter")

    async def test_catches_and_quiz_before_and_after_join(self, fixed_service, alice, bob):
        await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500)
        assert await fixed_service.record_catch("alice", "5423", "Crab") == 100
        await fixed_service.join_party(bob, "5423")
        assert await fixed_service.record_catch("alice", "5423", "Crab") == 20
        assert await fixed_service.add_quiz_bonus("alice", "5423") == 20
        for _ in range(5):
            await fixed_service.record_catch("bob", "5423", "Starfish")

        party = await fixed_service.get_party("5423")
        alice_player, bob_player = party.get_player("alice"), party.get_player("bob")
        assert (alice_player.xp, alice_player.catches) == (140, {"Crab": 2})
        assert (bob_player.xp, bob_player.catches) == (180, {"Starfish": 5})
        assert party.leader.id == "bob"
        assert party.status is PartyStatus.WAITING

    async def test_time_trial_finishes_when_time_is_up(self, fixed_service, alice, clock):
        await fixed_service.create_party(alice, GameMode.TIME_TRIAL, 600)
        await fixed_service.start_party("alice", "5423")

        clock.advance(599)
        assert await fixed_service.evaluate_completion("5423") is False
        assert await fixed_service.evaluate_completion("5423", clock.now + timedelta(seconds=1)) is True

    async def test_only_host_starts(self, fixed_service, alice, bob):
        await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500)
        await fixed_service.join_party(bob, "5423")
        with pytest.raises(NotHostError):
            await fixed_service.start_party("bob", "5423")

    async def test_scoring_outside_party(self, fixed_service, alice):
        await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500)
        with pytest.raises(PlayerNotInPartyError):
            await fixed_service.record_catch("bob", "5423", "crab")

    async def test_subscribe(self, fixed_service, alice):
        created = await fixed_service.create_party(alice, GameMode.SCORE_RACE, 500)
        async with await fixed_service.subscribe("5423") as subscription:
            assert await anext(subscription) == created
        with pytest.raises(InvalidPartyCodeError):
            await fixed_service.subscribe("abcd")
