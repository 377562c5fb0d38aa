"""Abstract party store plus the pieces every implementation shares.

A store holds one document per party code and offers four primitives:
create-if-absent, an atomic read-modify-write (``transact``), delete,
and a push subscription delivering full snapshots. All other party
mutations are built from these.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from party.exceptions import PartyNotFoundError, StoreUnavailableError

if TYPE_CHECKING:
    from collections.abc import Callable

    from party.models import Party

    Transform = Callable[[Party], "Mutation"]

logger = structlog.get_logger()


class MutationKind(StrEnum):
    WRITE = "write"
    DELETE = "delete"
    NONE = "none"


@dataclass(frozen=True)
class Mutation:
    """Outcome of a transaction transform: what to persist and what to hand back to the caller."""

    kind: MutationKind
    party: Party | None = None
    result: Any = None

    @classmethod
    def write(cls, party: Party, result: Any = None) -> Mutation:  # noqa: ANN401
        return cls(MutationKind.WRITE, party, result)

    @classmethod
    def delete(cls, result: Any = None) -> Mutation:  # noqa: ANN401
        return cls(MutationKind.DELETE, None, result)

    @classmethod
    def unchanged(cls, result: Any = None) -> Mutation:  # noqa: ANN401
        return cls(MutationKind.NONE, None, result)


class PartySubscription:
    """Coalescing stream of snapshots for one party.

    Only the newest pending snapshot is kept: a slow reader skips
    intermediate versions but never sees an older version after a newer
    one. ``None`` is delivered once when the party is deleted, after which
    iteration stops.
    """

    def __init__(self, code: str, on_close: Callable[[PartySubscription], None] | None = None) -> None:
        self.code = code
        self._on_close = on_close
        self._pending: tuple[int, Party | None] | None = None
        self._delivered_version = 0
        self._error: BaseException | None = None
        self._wakeup = asyncio.Event()
        self._closed = False
        self._ended = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, version: int, party: Party | None) -> None:
        """Queue a snapshot unless something at least as new is already queued or delivered."""
        if self._closed:
            return
        newest = self._pending[0] if self._pending is not None else self._delivered_version
        if version <= newest:
            return
        self._pending = (version, party)
        self._wakeup.set()

    def fail(self, exc: BaseException) -> None:
        """Make the next read raise ``exc``; the subscription is dead afterwards."""
        if self._closed:
            return
        self._error = exc
        self._wakeup.set()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._wakeup.set()
        if self._on_close is not None:
            self._on_close(self)

    async def __aenter__(self) -> PartySubscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def __aiter__(self) -> PartySubscription:
        return self

    async def __anext__(self) -> Party | None:
        while True:
            if self._closed or self._ended:
                raise StopAsyncIteration
            if self._error is not None:
                error, self._error = self._error, None
                self._ended = True
                raise error
            if self._pending is not None:
                version, party = self._pending
                self._pending = None
                self._delivered_version = version
                if party is None:
                    self._ended = True
                return party
            self._wakeup.clear()
            await self._wakeup.wait()


class SubscriptionHub:
    """Fan-out of committed snapshots to the subscriptions of each code."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, set[PartySubscription]] = {}

    def open(self, code: str) -> PartySubscription:
        subscription = PartySubscription(code, on_close=self._discard)
        self._subscriptions.setdefault(code, set()).add(subscription)
        return subscription

    def publish(self, code: str, version: int, party: Party | None) -> None:
        for subscription in list(self._subscriptions.get(code, ())):
            subscription.offer(version, party)

    def fail_all(self, exc: BaseException) -> None:
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                subscription.fail(exc)

    @property
    def subscription_count(self) -> int:
        return sum(len(s) for s in self._subscriptions.values())

    def _discard(self, subscription: PartySubscription) -> None:
        subscriptions = self._subscriptions.get(subscription.code)
        if subscriptions is None:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            del self._subscriptions[subscription.code]


class PartyStore(ABC):
    """Durable, concurrently mutable party documents keyed by join code."""

    def __init__(self) -> None:
        self._hub = SubscriptionHub()

    @property
    def subscription_count(self) -> int:
        return self._hub.subscription_count

    @abstractmethod
    async def create(self, party: Party) -> None:
        """Create the document if no unfinished party holds the code.

        Raises DuplicatePartyError otherwise. A finished party with the
        same code is replaced.
        """

    @abstractmethod
    async def get(self, code: str) -> Party | None: ...

    @abstractmethod
    async def exists_active(self, code: str) -> bool:
        """True iff a party with this code exists and has not finished."""

    @abstractmethod
    async def transact(self, code: str, transform: Transform) -> Any:  # noqa: ANN401
        """Apply ``transform`` atomically to the stored party and return its result.

        Transactions on the same code are serialized. If ``transform``
        raises, nothing is written. Raises PartyNotFoundError when the code
        has no document.
        """

    @abstractmethod
    async def delete(self, code: str) -> None: ...

    @abstractmethod
    async def purge_expired(self, now: float, finished_ttl: float, idle_ttl: float) -> list[str]:
        """Delete finished parties older than ``finished_ttl`` and idle unfinished ones older than ``idle_ttl``."""

    @abstractmethod
    async def _current(self, code: str) -> tuple[int, Party | None]:
        """Return (version, party) for seeding a new subscription."""

    async def subscribe(self, code: str) -> PartySubscription:
        """Open a snapshot stream, starting with the current document.

        Raises PartyNotFoundError if there is no such party.
        """
        subscription = self._hub.open(code)
        try:
            version, party = await self._current(code)
        except BaseException:
            subscription.close()
            raise
        if party is None:
            subscription.close()
            raise PartyNotFoundError
        subscription.offer(version, party)
        logger.debug("subscription opened", party_code=code)
        return subscription

    async def close(self) -> None:
        """Release resources held by the store.

        Open subscriptions fail with a retryable error so their owners can
        resubscribe once a store is available again.
        """
        self._hub.fail_all(StoreUnavailableError("Party store closed"))
