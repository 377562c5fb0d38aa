"""Party commands shared by client sessions and the HTTP server.

The service holds no per-caller state: every command names the caller
and the party code explicitly, so there is never a lookup across all
active parties to find where a player is.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from party.codes import DEFAULT_MAX_ATTEMPTS, CodeAllocator, validate_join_code
from party.exceptions import (
    CodeAllocationError,
    DuplicatePartyError,
    InvalidPartySettingsError,
    PartyAlreadyFinishedError,
    PartyNotFoundError,
)
from party.lifecycle import PartyLifecycle
from party.models import GameMode, Party
from party.scoring import QUIZ_BONUS_XP, ScoreTransaction
from party.store.base import Mutation

if TYPE_CHECKING:
    from collections.abc import Callable

    from party.identity import PlayerProfile
    from party.store.base import PartyStore, PartySubscription

logger = structlog.get_logger()

QUICK_TIME_TRIAL_SECONDS = 600
QUICK_SCORE_RACE_XP = 500
MAX_TARGET_VALUE = 1_000_000


def utc_now() -> datetime:
    return datetime.now(UTC)


class PartyService:
    def __init__(
        self,
        store: PartyStore,
        allocator: CodeAllocator | None = None,
        clock: Callable[[], datetime] = utc_now,
        code_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._store = store
        self._allocator = allocator or CodeAllocator(store, max_attempts=code_max_attempts)
        self._scoring = ScoreTransaction(store)
        self._lifecycle = PartyLifecycle(store)
        self._clock = clock

    @property
    def store(self) -> PartyStore:
        return self._store

    def now(self) -> datetime:
        return self._clock()

    async def create_party(
        self,
        caller: PlayerProfile,
        mode: GameMode,
        target: int,
        location_id: str | None = None,
        location_name: str | None = None,
    ) -> Party:
        """Create a waiting party with the caller as host and only player.

        A code that another creator grabbed between allocation and write
        is retried with a fresh code, within the allocator's attempt budget.
        """
        try:
            mode = GameMode(mode)
        except ValueError as exc:
            raise InvalidPartySettingsError("Unknown game mode") from exc
        if isinstance(target, bool) or not isinstance(target, int) or not 0 < target <= MAX_TARGET_VALUE:
            raise InvalidPartySettingsError(f"Target must be between 1 and {MAX_TARGET_VALUE}")

        for _ in range(self._allocator.max_attempts):
            code = await self._allocator.allocate()
            try:
                party = Party(
                    code=code,
                    host_id=caller.user_id,
                    location_id=location_id,
                    location_name=location_name,
                    game_mode=mode,
                    target_value=target,
                    players=(caller.new_player(),),
                )
            except ValidationError as exc:
                raise InvalidPartySettingsError from exc
            try:
                await self._store.create(party)
            except DuplicatePartyError:
                logger.warning("party code taken during create, retrying", party_code=code)
                continue
            logger.info("party created", party_code=code, host_id=caller.user_id, game_mode=mode, target=target)
            return party
        raise CodeAllocationError

    async def join_party(self, caller: PlayerProfile, code: str) -> Party:
        """Add the caller to the party. Joining a party you are already in changes nothing."""
        code = validate_join_code(code)

        def transform(party: Party) -> Mutation:
            if party.is_finished:
                raise PartyAlreadyFinishedError
            if party.has_player(caller.user_id):
                return Mutation.unchanged(result=party)
            joined = party.with_players((*party.players, caller.new_player()))
            return Mutation.write(joined, result=joined)

        with structlog.contextvars.bound_contextvars(party_code=code, user_id=caller.user_id):
            party: Party = await self._store.transact(code, transform)
            logger.info("joined party", player_count=len(party.players))
        return party

    async def leave_party(self, caller_id: str, code: str) -> Party | None:
        """Remove the caller, handing the host role to the next player.

        The last player out deletes the party. Finished parties are result
        snapshots and are left untouched; the reaper removes them later.
        Returns the party after the change, or None if it no longer exists.
        """
        code = validate_join_code(code)

        def transform(party: Party) -> Mutation:
            if party.is_finished or not party.has_player(caller_id):
                return Mutation.unchanged(result=party)
            remaining = tuple(p for p in party.players if p.id != caller_id)
            if not remaining:
                return Mutation.delete(result=None)
            host_id = remaining[0].id if party.is_host(caller_id) else party.host_id
            updated = party.model_copy(update={"players": remaining, "host_id": host_id})
            return Mutation.write(updated, result=updated)

        with structlog.contextvars.bound_contextvars(party_code=code, user_id=caller_id):
            try:
                party: Party | None = await self._store.transact(code, transform)
            except PartyNotFoundError:
                logger.info("left party that no longer exists")
                return None
            if party is None:
                logger.info("last player left, party deleted")
            else:
                logger.info("left party", host_id=party.host_id, player_count=len(party.players))
        return party

    async def start_party(self, caller_id: str, code: str) -> bool:
        return await self._lifecycle.start(validate_join_code(code), caller_id, self.now())

    async def record_catch(self, caller_id: str, code: str, creature_id: str) -> int:
        return await self._scoring.record_catch(validate_join_code(code), caller_id, creature_id)

    async def add_quiz_bonus(self, caller_id: str, code: str, amount: int = QUIZ_BONUS_XP) -> int:
        return await self._scoring.add_quiz_bonus(validate_join_code(code), caller_id, amount)

    async def evaluate_completion(self, code: str, now: datetime | None = None) -> bool:
        return await self._lifecycle.evaluate(validate_join_code(code), now or self.now())

    async def get_party(self, code: str) -> Party:
        code = validate_join_code(code)
        party = await self._store.get(code)
        if party is None:
            raise PartyNotFoundError
        return party

    async def subscribe(self, code: str) -> PartySubscription:
        return await self._store.subscribe(validate_join_code(code))
