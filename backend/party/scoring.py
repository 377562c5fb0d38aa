"""XP awards for catches and quiz answers, applied atomically to a party.

The first catch of a creature inside a party is worth FIRST_CATCH_XP,
every later catch of the same creature REPEAT_CATCH_XP. A correct quiz
answer adds QUIZ_BONUS_XP regardless of catches.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from party.exceptions import InvalidScoreEventError, PartyAlreadyFinishedError, PlayerNotInPartyError
from party.store.base import Mutation

if TYPE_CHECKING:
    from party.models import Party, PartyPlayer
    from party.store.base import PartyStore

logger = structlog.get_logger()

FIRST_CATCH_XP = 100
REPEAT_CATCH_XP = 20
QUIZ_BONUS_XP = 20


class CatchCreature(BaseModel):
    model_config = ConfigDict(frozen=True)

    creature_id: str = Field(min_length=1, max_length=100, strict=True)


class QuizBonus(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: int = Field(default=QUIZ_BONUS_XP, gt=0, strict=True)


ScoreEvent = CatchCreature | QuizBonus


def catch_award(player: PartyPlayer | None, creature_id: str) -> int:
    """XP the next catch of ``creature_id`` would give ``player``."""
    if player is None or player.is_first_catch(creature_id):
        return FIRST_CATCH_XP
    return REPEAT_CATCH_XP


def apply_score_event(party: Party, player_id: str, event: ScoreEvent) -> tuple[Party, int]:
    """Return the party with the event credited to ``player_id`` and the XP awarded."""
    if party.is_finished:
        raise PartyAlreadyFinishedError
    player = party.get_player(player_id)
    if player is None:
        raise PlayerNotInPartyError

    if isinstance(event, CatchCreature):
        awarded = catch_award(player, event.creature_id)
        catches = dict(player.catches)
        catches[event.creature_id] = player.catch_count(event.creature_id) + 1
        updated = player.model_copy(update={"xp": player.xp + awarded, "catches": catches})
    else:
        awarded = event.amount
        updated = player.model_copy(update={"xp": player.xp + awarded})

    return party.replace_player(updated), awarded


class ScoreTransaction:
    """Credits score events through the store's atomic update.

    Only scores; deciding whether the race is over belongs to PartyLifecycle.
    """

    def __init__(self, store: PartyStore) -> None:
        self._store = store

    async def apply(self, code: str, player_id: str, event: ScoreEvent) -> int:
        def transform(party: Party) -> Mutation:
            updated, awarded = apply_score_event(party, player_id, event)
            return Mutation.write(updated, awarded)

        awarded: int = await self._store.transact(code, transform)
        logger.info("score updated", party_code=code, player_id=player_id, event=type(event).__name__, xp=awarded)
        return awarded

    async def record_catch(self, code: str, player_id: str, creature_id: str) -> int:
        try:
            event = CatchCreature(creature_id=creature_id)
        except ValidationError as exc:
            raise InvalidScoreEventError("Creature id must be 1-100 characters") from exc
        return await self.apply(code, player_id, event)

    async def add_quiz_bonus(self, code: str, player_id: str, amount: int = QUIZ_BONUS_XP) -> int:
        try:
            event = QuizBonus(amount=amount)
        except ValidationError as exc:
            raise InvalidScoreEventError("Quiz bonus must be a positive whole number") from exc
        return await self.apply(code, player_id, event)
