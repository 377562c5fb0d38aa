"""Party and player records plus the queries derived from them.

Records are frozen pydantic models. Attribute names are snake_case in
Python; the persisted/wire record uses the camelCase keys the mobile
clients read (``hostId``, ``gameMode``, ``startTime`` ...). ``to_record``
and ``from_record`` are the only places that shape crosses.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    PositiveInt,
    computed_field,
    model_validator,
)
from pydantic.alias_generators import to_camel

PARTY_CODE_PATTERN = r"^\d{4}$"
DEFAULT_PLAYER_NAME = "Player"
DEFAULT_AVATAR = 0
PODIUM_SIZE = 3


class GameMode(StrEnum):
    TIME_TRIAL = "time_trial"
    SCORE_RACE = "score_race"

    @property
    def display_name(self) -> str:
        return "Time Trial" if self is GameMode.TIME_TRIAL else "Score Race"


class PartyStatus(StrEnum):
    WAITING = "waiting"
    ACTIVE = "active"
    FINISHED = "finished"


_STATUS_ORDER = {PartyStatus.WAITING: 0, PartyStatus.ACTIVE: 1, PartyStatus.FINISHED: 2}


def can_transition(old: PartyStatus, new: PartyStatus) -> bool:
    """Status only moves forward: waiting -> active -> finished. Staying put is allowed."""
    return _STATUS_ORDER[new] >= _STATUS_ORDER[old]


class PartyPlayer(BaseModel):
    """A player's standing inside one party.

    ``catches`` is scoped to this party only; lifetime stats live in the
    profile service.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = DEFAULT_PLAYER_NAME
    avatar: str | int = DEFAULT_AVATAR
    xp: NonNegativeInt = 0
    catches: dict[str, PositiveInt] = Field(default_factory=dict)

    def catch_count(self, creature_id: str) -> int:
        return self.catches.get(creature_id, 0)

    def is_first_catch(self, creature_id: str) -> bool:
        return self.catch_count(creature_id) == 0


class Party(BaseModel):
    """One race instance, keyed by its 4-digit join code."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    code: str = Field(pattern=PARTY_CODE_PATTERN)
    host_id: str = Field(min_length=1)
    location_id: str | None = None
    location_name: str | None = None
    status: PartyStatus = PartyStatus.WAITING
    game_mode: GameMode
    target_value: PositiveInt
    start_time: datetime | None = None
    end_time: datetime | None = None
    players: tuple[PartyPlayer, ...] = ()

    @model_validator(mode="after")
    def _unique_player_ids(self) -> Self:
        ids = [p.id for p in self.players]
        if len(set(ids)) != len(ids):
            raise ValueError("Duplicate player id in party")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def id(self) -> str:
        return self.code

    # -- wire boundary -------------------------------------------------------

    def to_record(self) -> dict[str, Any]:
        """Encode to the persisted document shape (camelCase keys, ISO timestamps)."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Party:
        """Decode and validate a persisted document. Unknown keys are ignored."""
        return cls.model_validate(record)

    # -- copy helpers --------------------------------------------------------

    def with_players(self, players: tuple[PartyPlayer, ...] | list[PartyPlayer]) -> Party:
        return self.model_copy(update={"players": tuple(players)})

    def replace_player(self, player: PartyPlayer) -> Party:
        return self.with_players([player if p.id == player.id else p for p in self.players])

    # -- derived queries -----------------------------------------------------

    @property
    def is_finished(self) -> bool:
        return self.status is PartyStatus.FINISHED

    def get_player(self, player_id: str) -> PartyPlayer | None:
        return next((p for p in self.players if p.id == player_id), None)

    def has_player(self, player_id: str) -> bool:
        return self.get_player(player_id) is not None

    def is_host(self, player_id: str) -> bool:
        return self.host_id == player_id

    @property
    def sorted_players(self) -> list[PartyPlayer]:
        """Players by descending XP; ties keep stored order."""
        return sorted(self.players, key=lambda p: -p.xp)

    def rank(self, player_id: str) -> int | None:
        """1-based position in ``sorted_players``, or None if not in the party."""
        for index, player in enumerate(self.sorted_players):
            if player.id == player_id:
                return index + 1
        return None

    @property
    def leader(self) -> PartyPlayer | None:
        if not self.players:
            return None
        return max(self.players, key=lambda p: p.xp)

    def podium(self, size: int = PODIUM_SIZE) -> list[PartyPlayer]:
        return self.sorted_players[:size]

    def progress(self, player_id: str) -> float:
        """Progress bar fill in [0, 1].

        Score race: XP towards the target. Time trial: XP relative to the
        current leader (0 while nobody has scored).
        """
        player = self.get_player(player_id)
        if player is None:
            return 0.0
        if self.game_mode is GameMode.SCORE_RACE:
            return min(1.0, player.xp / self.target_value)
        max_xp = max(p.xp for p in self.players)
        if max_xp <= 0:
            return 0.0
        return player.xp / max_xp

    def elapsed_seconds(self, now: datetime) -> float | None:
        if self.start_time is None:
            return None
        return (now - self.start_time).total_seconds()

    def idle_since(self, written_at: float) -> float:
        """Epoch seconds from which the party counts as idle.

        An active time trial is busy until its scheduled end even when
        nobody writes to it.
        """
        if self.status is PartyStatus.ACTIVE and self.game_mode is GameMode.TIME_TRIAL and self.start_time is not None:
            return max(written_at, self.start_time.timestamp() + self.target_value)
        return written_at

    def is_complete(self, now: datetime) -> bool:
        if self.game_mode is GameMode.SCORE_RACE:
            return any(p.xp >= self.target_value for p in self.players)
        elapsed = self.elapsed_seconds(now)
        return elapsed is not None and elapsed >= self.target_value

    def time_remaining(self, now: datetime) -> float | None:
        """Seconds left in an active time trial, never negative. None otherwise."""
        if self.game_mode is not GameMode.TIME_TRIAL or self.status is not PartyStatus.ACTIVE:
            return None
        elapsed = self.elapsed_seconds(now)
        if elapsed is None:
            return None
        return max(0.0, self.target_value - elapsed)

    def time_remaining_formatted(self, now: datetime) -> str | None:
        remaining = self.time_remaining(now)
        if remaining is None:
            return None
        return format_clock(remaining)


def format_clock(seconds: float) -> str:
    """Format seconds as ``m:ss``."""
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}:{secs:02d}"
