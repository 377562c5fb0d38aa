"""Party status state machine: waiting -> active -> finished.

The host starts a party. Finishing is not an explicit command: every
client that sees a complete race asks for the transition, so the finish
write has to be idempotent.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from party.exceptions import NotHostError, PartyAlreadyFinishedError
from party.models import PartyStatus, can_transition
from party.store.base import Mutation

if TYPE_CHECKING:
    from datetime import datetime

    from party.models import Party
    from party.store.base import PartyStore, Transform

logger = structlog.get_logger()


def _transition(party: Party, status: PartyStatus, **changes: object) -> Party:
    if not can_transition(party.status, status):
        raise ValueError(f"Illegal party status transition {party.status} -> {status}")
    return party.model_copy(update={"status": status, **changes})


def start_transform(caller_id: str, now: datetime) -> Transform:
    def transform(party: Party) -> Mutation:
        if party.is_finished:
            raise PartyAlreadyFinishedError
        if not party.is_host(caller_id):
            raise NotHostError
        if party.status is PartyStatus.ACTIVE:
            return Mutation.unchanged(result=False)
        return Mutation.write(_transition(party, PartyStatus.ACTIVE, start_time=now), result=True)

    return transform


def finish_transform(now: datetime) -> Transform:
    def transform(party: Party) -> Mutation:
        if party.status is not PartyStatus.ACTIVE or not party.is_complete(now):
            return Mutation.unchanged(result=(party.is_finished, False))
        return Mutation.write(_transition(party, PartyStatus.FINISHED, end_time=now), result=(True, True))

    return transform


class PartyLifecycle:
    def __init__(self, store: PartyStore) -> None:
        self._store = store

    async def start(self, code: str, caller_id: str, now: datetime) -> bool:
        """Move a waiting party to active. Returns False when it was already active."""
        started: bool = await self._store.transact(code, start_transform(caller_id, now))
        if started:
            logger.info("party started", party_code=code, host_id=caller_id)
        return started

    async def evaluate(self, code: str, now: datetime) -> bool:
        """Finish the party if it is active and complete at ``now``.

        Safe to call from any number of clients; a finished party is left
        alone. Returns whether the party is finished afterwards.
        """
        finished, transitioned = await self._store.transact(code, finish_transform(now))
        if transitioned:
            logger.info("party finished", party_code=code)
        return finished
