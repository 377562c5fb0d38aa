"""Who is calling: identity and display profile collaborators.

Authentication and profile persistence live elsewhere; the party engine
only needs a stable user id plus a name and avatar for new player entries.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from party.models import DEFAULT_AVATAR, DEFAULT_PLAYER_NAME, PartyPlayer


class IdentityProvider(Protocol):
    """Supplies the signed-in user's stable id (None when signed out)."""

    @property
    def user_id(self) -> str | None: ...


class ProfileProvider(Protocol):
    """Supplies display metadata; never written to by the party engine."""

    @property
    def display_name(self) -> str: ...

    @property
    def avatar(self) -> str | int: ...


@dataclass(frozen=True)
class PlayerProfile:
    """Caller identity resolved for one command."""

    user_id: str
    display_name: str = DEFAULT_PLAYER_NAME
    avatar: str | int = DEFAULT_AVATAR

    @classmethod
    def build(cls, user_id: str, display_name: str | None = None, avatar: str | int | None = None) -> PlayerProfile:
        """Apply defaults: a blank name becomes "Player", a missing avatar the default badge."""
        name = (display_name or "").strip() or DEFAULT_PLAYER_NAME
        return cls(user_id=user_id, display_name=name, avatar=DEFAULT_AVATAR if avatar is None else avatar)

    def new_player(self) -> PartyPlayer:
        return PartyPlayer(id=self.user_id, name=self.display_name, avatar=self.avatar)


@dataclass
class StaticIdentity:
    """Fixed identity and profile for a session, as used in tests."""

    user_id: str | None
    display_name: str = ""
    avatar: str | int = DEFAULT_AVATAR
