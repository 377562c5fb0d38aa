"""Builders for party records used across party tests."""

from datetime import UTC, datetime, timedelta

from party.models import GameMode, Party, PartyPlayer, PartyStatus

FIXED_NOW = datetime(2026, 5, 1, 12, 0, 0, tzinfo=UTC)


def make_player(
    player_id: str = "u1",
    name: str | None = None,
    *,
    xp: int = 0,
    catches: dict[str, int] | None = None,
) -> PartyPlayer:
    return PartyPlayer(id=player_id, name=name or f"Player {player_id}", xp=xp, catches=catches or {})


def make_party(
    code: str = "5423",
    host_id: str = "u1",
    *,
    mode: GameMode = GameMode.SCORE_RACE,
    target: int = 500,
    status: PartyStatus = PartyStatus.WAITING,
    players: list[PartyPlayer] | None = None,
    start_time: datetime | None = None,
) -> Party:
    if players is None:
        players = [make_player(host_id)]
    return Party(
        code=code,
        host_id=host_id,
        game_mode=mode,
        target_value=target,
        status=status,
        players=tuple(players),
        start_time=start_time,
    )


class FrozenClock:
    """Settable wall clock for services and stores."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
