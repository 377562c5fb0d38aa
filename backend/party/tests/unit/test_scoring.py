"""Tests for XP awards and the atomic score transaction."""

import asyncio

import pytest
from pydantic import ValidationError

from party.exceptions import (
    InvalidScoreEventError,
    PartyAlreadyFinishedError,
    PartyNotFoundError,
    PlayerNotInPartyError,
)
from party.models import PartyStatus
from party.scoring import (
    FIRST_CATCH_XP,
    QUIZ_BONUS_XP,
    REPEAT_CATCH_XP,
    CatchCreature,
    QuizBonus,
    ScoreTransaction,
    apply_score_event,
    catch_award,
)
from party.tests.helpers.parties import make_party, make_player


class TestCatchAward:
    def test_first_catch(self):
        assert catch_award(make_player("a"), "crab") == FIRST_CATCH_XP == 100

    def test_repeat_catch(self):
        assert catch_award(make_player("a", catches={"crab": 2}), "crab") == REPEAT_CATCH_XP == 20

    def test_unknown_player_counts_as_first(self):
        assert catch_award(None, "crab") == FIRST_CATCH_XP


class TestApplyScoreEvent:
    def test_catch_updates_xp_and_counts(self):
        party = make_party(players=[make_player("a", xp=100, catches={"crab": 1})])

        updated, awarded = apply_score_event(party, "a", CatchCreature(creature_id="crab"))

        assert awarded == REPEAT_CATCH_XP
        player = updated.get_player("a")
        assert player is not None
        assert player.xp == 120
        assert player.catches == {"crab": 2}
        # the input record is untouched
        assert party.get_player("a").xp == 100

    def test_quiz_bonus_ignores_catches(self):
        party = make_party(players=[make_player("a", catches={"crab": 1})])

        updated, awarded = apply_score_event(party, "a", QuizBonus())

        assert awarded == QUIZ_BONUS_XP
        assert updated.get_player("a").xp == QUIZ_BONUS_XP
        assert updated.get_player("a").catches == {"crab": 1}

    def test_finished_party_rejected(self):
        party = make_party(status=PartyStatus.FINISHED)
        with pytest.raises(PartyAlreadyFinishedError):
            apply_score_event(party, "u1", QuizBonus())

    def test_player_not_in_party_rejected(self):
        with pytest.raises(PlayerNotInPartyError):
            apply_score_event(make_party(), "ghost", QuizBonus())

    def test_events_validate_input(self):
        with pytest.raises(ValidationError):
            CatchCreature(creature_id="")
        with pytest.raises(ValidationError):
            QuizBonus(amount=0)


class TestScoreTransaction:
    async def test_record_catch_persists(self, store):
        await store.create(make_party())
        scoring = ScoreTransaction(store)

        assert await scoring.record_catch("5423", "u1", "crab") == 100
        assert await scoring.record_catch("5423", "u1", "crab") == 20
        assert await scoring.record_catch("5423", "u1", "starfish") == 100

        party = await store.get("5423")
        player = party.get_player("u1")
        assert player.xp == 220
        assert player.catches == {"crab": 2, "starfish": 1}

    async def test_quiz_bonus_amount(self, store):
        await store.create(make_party())
        scoring = ScoreTransaction(store)

        assert await scoring.add_quiz_bonus("5423", "u1", 35) == 35
        assert (await store.get("5423")).get_player("u1").xp == 35

    async def test_missing_party(self, store):
        with pytest.raises(PartyNotFoundError):
            await ScoreTransaction(store).record_catch("9999", "u1", "crab")

    async def test_rejected_event_writes_nothing(self, store):
        await store.create(make_party())
        before = await store.get("5423")

        with pytest.raises(PlayerNotInPartyError):
            await ScoreTransaction(store).record_catch("5423", "ghost", "crab")

        assert await store.get("5423") == before

    @pytest.mark.parametrize("creature_id", ["", "x" * 101, 7])
    async def test_bad_creature_id(self, store, creature_id):
        await store.create(make_party())
        before = await store.get("5423")

        with pytest.raises(InvalidScoreEventError) as exc_info:
            await ScoreTransaction(store).record_catch("5423", "u1", creature_id)

        assert exc_info.value.retryable is False
        assert await store.get("5423") == before

    @pytest.mark.parametrize("amount", [0, -20, 2.5, "20"])
    async def test_bad_quiz_amount(self, store, amount):
        await store.create(make_party())

        with pytest.raises(InvalidScoreEventError):
            await ScoreTransaction(store).add_quiz_bonus("5423", "u1", amount)

        assert (await store.get("5423")).get_player("u1").xp == 0

    async def test_concurrent_catches_lose_no_updates(self, store):
        players = [make_player(f"p{i}") for i in range(4)]
        await store.create(make_party(host_id="p0", players=players))
        scoring = ScoreTransaction(store)

        awards = await asyncio.gather(
            *(scoring.record_catch("5423", f"p{i % 4}", "crab") for i in range(40)),
        )

        party = await store.get("5423")
        for player in party.players:
            assert player.catches == {"crab": 10}
            assert player.xp == FIRST_CATCH_XP + 9 * REPEAT_CATCH_XP
        assert sum(awards) == sum(p.xp for p in party.players)

    async def test_logs_score_update(self, store, caplog):
        await store.create(make_party())
        with caplog.at_level("INFO"):
            await ScoreTransaction(store).record_catch("5423", "u1", "crab")
        assert "score updated" in caplog.text
