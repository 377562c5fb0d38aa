"""Per-client party controller.

A PartySession is what one device holds while its player is in a party:
it issues commands through PartyService, keeps the latest snapshot from
its single subscription, and exposes the derived views (rank, progress,
leader, time remaining) the client renders. Sessions are created and
closed explicitly; there is no shared instance.

Every PartyError raised by a command is caught here and written to the
``error`` slot instead of propagating. Only store errors are retryable.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from party.codes import validate_join_code
from party.exceptions import NotInPartyError, NotSignedInError, PartyError, PartyErrorCode, PartyNotFoundError
from party.identity import PlayerProfile
from party.models import GameMode, PartyStatus
from party.scoring import QUIZ_BONUS_XP, catch_award
from party.service import QUICK_SCORE_RACE_XP, QUICK_TIME_TRIAL_SECONDS

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from typing import Any

    from party.identity import IdentityProvider, ProfileProvider
    from party.models import Party, PartyPlayer
    from party.service import PartyService
    from party.store.base import PartySubscription

logger = structlog.get_logger()

XP_FEEDBACK_SECONDS = 2.0
TICK_SECONDS = 1.0


@dataclass(frozen=True)
class SessionError:
    """What the client shows in its error banner."""

    code: PartyErrorCode
    message: str
    retryable: bool

    @classmethod
    def from_exception(cls, exc: PartyError) -> SessionError:
        return cls(code=exc.code, message=exc.message, retryable=exc.retryable)


class PartySession:
    def __init__(
        self,
        service: PartyService,
        identity: IdentityProvider,
        profile: ProfileProvider | None = None,
        *,
        xp_feedback_seconds: float = XP_FEEDBACK_SECONDS,
        tick_seconds: float = TICK_SECONDS,
        on_update: Callable[[Party | None], None] | None = None,
    ) -> None:
        self._service = service
        self._identity = identity
        self._profile = profile
        self._xp_feedback_seconds = xp_feedback_seconds
        self._tick_seconds = tick_seconds
        self._on_update = on_update

        self.party: Party | None = None
        self.party_code: str = ""
        self.is_loading = False
        self.error: SessionError | None = None
        self.last_xp_gain = 0
        self.show_xp_gain = False
        self.race_results: list[PartyPlayer] = []
        self.show_win_screen = False

        self._subscription: PartySubscription | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._ticker_task: asyncio.Task[None] | None = None
        self._feedback_task: asyncio.Task[None] | None = None
        self._results_code: str | None = None
        self._closed = False

    async def __aenter__(self) -> PartySession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -- identity ------------------------------------------------------------

    @property
    def user_id(self) -> str | None:
        return self._identity.user_id

    def _caller(self) -> PlayerProfile:
        user_id = self._identity.user_id
        if not user_id:
            raise NotSignedInError
        if self._profile is None:
            return PlayerProfile.build(user_id)
        return PlayerProfile.build(user_id, self._profile.display_name, self._profile.avatar)

    def _require_code(self) -> str:
        if self.party is not None:
            return self.party.code
        raise NotInPartyError

    # -- derived views -------------------------------------------------------

    @property
    def is_in_party(self) -> bool:
        return self.party is not None

    @property
    def is_host(self) -> bool:
        return self.party is not None and self.user_id is not None and self.party.is_host(self.user_id)

    @property
    def current_player(self) -> PartyPlayer | None:
        if self.party is None or self.user_id is None:
            return None
        return self.party.get_player(self.user_id)

    @property
    def current_rank(self) -> int | None:
        if self.user_id is None:
            return None
        return self.rank(self.user_id)

    def rank(self, player_id: str) -> int | None:
        return self.party.rank(player_id) if self.party is not None else None

    def progress(self, player_id: str) -> float:
        return self.party.progress(player_id) if self.party is not None else 0.0

    def leader(self) -> PartyPlayer | None:
        return self.party.leader if self.party is not None else None

    def time_remaining_formatted(self) -> str | None:
        if self.party is None:
            return None
        return self.party.time_remaining_formatted(self._service.now())

    def calculate_xp(self, creature_id: str) -> int:
        """XP the caller's next catch of ``creature_id`` would earn."""
        return catch_award(self.current_player, creature_id)

    # -- commands ------------------------------------------------------------

    async def _run(self, operation: Callable[[], Awaitable[Any]], *, loading: bool = True) -> Any:  # noqa: ANN401
        """Run a command, recording any PartyError in the error slot. Returns None on failure."""
        if loading:
            self.is_loading = True
            self.error = None
        try:
            return await operation()
        except PartyError as exc:
            self._set_error(exc)
            return None
        finally:
            if loading:
                self.is_loading = False

    def _set_error(self, exc: PartyError) -> None:
        self.error = SessionError.from_exception(exc)
        logger.warning("party session error", error_code=exc.code, error_message=exc.message, retryable=exc.retryable)

    def clear_error(self) -> None:
        self.error = None

    async def create_party(
        self,
        mode: GameMode,
        target: int,
        location_id: str | None = None,
        location_name: str | None = None,
    ) -> str | None:
        """Create a party hosted by the caller and start following it. Returns the join code."""

        async def operation() -> str:
            party = await self._service.create_party(self._caller(), mode, target, location_id, location_name)
            self._adopt(party)
            await self._start_listening(party.code)
            return party.code

        return await self._run(operation)

    async def create_quick_time_trial(self) -> str | None:
        return await self.create_party(GameMode.TIME_TRIAL, QUICK_TIME_TRIAL_SECONDS)

    async def create_quick_score_race(self) -> str | None:
        return await self.create_party(GameMode.SCORE_RACE, QUICK_SCORE_RACE_XP)

    async def join_party(self, code: str | None = None) -> bool:
        """Join by code (defaults to ``party_code``). The format is checked before any store access."""

        async def operation() -> bool:
            normalized = validate_join_code(self.party_code if code is None else code)
            party = await self._service.join_party(self._caller(), normalized)
            self._adopt(party)
            await self._start_listening(party.code)
            return True

        return bool(await self._run(operation))

    async def leave_party(self) -> bool:
        if self.party is None:
            return False

        async def operation() -> bool:
            await self._service.leave_party(self._caller().user_id, self._require_code())
            await self.stop_listening()
            return True

        return bool(await self._run(operation))

    async def start_party(self) -> bool:
        async def operation() -> bool:
            return await self._service.start_party(self._caller().user_id, self._require_code())

        return bool(await self._run(operation))

    async def record_catch(self, creature_id: str) -> int | None:
        """Credit a catch. On success the awarded XP is shown for a short while."""

        async def operation() -> int:
            code = self._require_code()
            awarded = await self._service.record_catch(self._caller().user_id, code, creature_id)
            self._show_xp_gain(awarded)
            await self._evaluate(code)
            return awarded

        return await self._run(operation, loading=False)

    async def add_quiz_bonus(self, amount: int = QUIZ_BONUS_XP) -> int | None:
        async def operation() -> int:
            code = self._require_code()
            awarded = await self._service.add_quiz_bonus(self._caller().user_id, code, amount)
            self._show_xp_gain(awarded)
            await self._evaluate(code)
            return awarded

        return await self._run(operation, loading=False)

    async def dismiss_win_screen(self) -> None:
        self.show_win_screen = False
        self.race_results = []
        await self.leave_party()

    async def resubscribe(self) -> bool:
        """Re-open the subscription after a failure; the first snapshot is the latest state."""
        if not self.party_code:
            return False

        async def operation() -> bool:
            await self._start_listening(self.party_code)
            return True

        return bool(await self._run(operation))

    # -- subscription --------------------------------------------------------

    def _adopt(self, party: Party) -> None:
        self.party = party
        self.party_code = party.code

    async def _start_listening(self, code: str) -> None:
        await self._close_subscription()
        subscription = await self._service.subscribe(code)
        self._subscription = subscription
        self._listen_task = asyncio.create_task(self._listen(subscription), name=f"party-listen-{code}")

    async def stop_listening(self) -> None:
        """Stop following the party and forget it."""
        await self._close_subscription()
        await _cancel(self._ticker_task)
        self._ticker_task = None
        self.party = None
        self.party_code = ""
        self._results_code = None

    async def _close_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        task, self._listen_task = self._listen_task, None
        await _cancel(task)

    async def _listen(self, subscription: PartySubscription) -> None:
        try:
            async for snapshot in subscription:
                await self._apply_snapshot(snapshot)
        except PartyError as exc:
            self._set_error(exc)

    async def _apply_snapshot(self, party: Party | None) -> None:
        if party is None:
            logger.info("party removed while subscribed", party_code=self.party_code)
            self.party = None
            await self._stop_ticker()
            self._set_error(PartyNotFoundError())
            self._notify()
            return

        self._adopt(party)
        if party.status is PartyStatus.ACTIVE and party.is_complete(self._service.now()):
            await self._evaluate(party.code)
        if party.is_finished:
            self._freeze_results(party)

        if party.status is PartyStatus.ACTIVE and party.game_mode is GameMode.TIME_TRIAL:
            self._ensure_ticker()
        else:
            await self._stop_ticker()
        self._notify()

    async def _evaluate(self, code: str) -> None:
        try:
            await self._service.evaluate_completion(code)
        except PartyError as exc:
            self._set_error(exc)

    def _freeze_results(self, party: Party) -> None:
        if self._results_code == party.code:
            return
        self._results_code = party.code
        self.race_results = party.podium()
        self.show_win_screen = True
        winner = self.race_results[0].name if self.race_results else None
        logger.info("party completed", party_code=party.code, winner=winner)

    def _notify(self) -> None:
        if self._on_update is not None:
            self._on_update(self.party)

    # -- timers --------------------------------------------------------------

    def _ensure_ticker(self) -> None:
        if self._ticker_task is None or self._ticker_task.done():
            self._ticker_task = asyncio.create_task(self._tick_loop(), name="party-ticker")

    async def _stop_ticker(self) -> None:
        task, self._ticker_task = self._ticker_task, None
        await _cancel(task)

    async def _tick_loop(self) -> None:
        """Time trials end on the clock, not on a write, so poll for completion."""
        while True:
            await asyncio.sleep(self._tick_seconds)
            party = self.party
            if party is None or party.status is not PartyStatus.ACTIVE:
                return
            if party.is_complete(self._service.now()):
                await self._evaluate(party.code)

    def _show_xp_gain(self, awarded: int) -> None:
        self.last_xp_gain = awarded
        self.show_xp_gain = True
        if self._feedback_task is not None:
            self._feedback_task.cancel()
        self._feedback_task = asyncio.create_task(self._hide_xp_gain())

    async def _hide_xp_gain(self) -> None:
        await asyncio.sleep(self._xp_feedback_seconds)
        self.show_xp_gain = False

    async def aclose(self) -> None:
        """Tear the session down. Does not leave the party."""
        if self._closed:
            return
        self._closed = True
        await self._close_subscription()
        await self._stop_ticker()
        task, self._feedback_task = self._feedback_task, None
        await _cancel(task)


async def _cancel(task: asyncio.Task[Any] | None) -> None:
    """Cancel and await a task, unless it is the one running this code.

    A cancellation aimed at the caller while it waits still propagates.
    """
    if task is None or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        current = asyncio.current_task()
        if current is not None and current.cancelling():
            raise
