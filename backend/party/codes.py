"""Join code allocation and validation."""

from __future__ import annotations

import re
import secrets
from typing import TYPE_CHECKING

import structlog

from party.exceptions import CodeAllocationError, InvalidPartyCodeError

if TYPE_CHECKING:
    from collections.abc import Callable

    from party.store.base import PartyStore

logger = structlog.get_logger()

CODE_LENGTH = 4
CODE_SPACE = 10**CODE_LENGTH
DEFAULT_MAX_ATTEMPTS = 10

_CODE_PATTERN = re.compile(r"^[0-9]{4}$")


def validate_join_code(code: str) -> str:
    """Return the normalized code, or raise InvalidPartyCodeError.

    Runs before any store access so a typo never costs a round trip.
    """
    normalized = code.strip()
    if not _CODE_PATTERN.match(normalized):
        raise InvalidPartyCodeError
    return normalized


def random_code() -> str:
    return f"{secrets.randbelow(CODE_SPACE):04d}"


class CodeAllocator:
    """Draw random 4-digit codes until one is not held by an unfinished party.

    Checking and creating are separate steps, so two allocators can pick
    the same code; the store's conditional create rejects the loser.
    """

    def __init__(
        self,
        store: PartyStore,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        draw: Callable[[], str] = random_code,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self._store = store
        self._max_attempts = max_attempts
        self._draw = draw

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def allocate(self) -> str:
        for attempt in range(1, self._max_attempts + 1):
            code = self._draw()
            if not await self._store.exists_active(code):
                return code
            logger.debug("party code collision", party_code=code, attempt=attempt)
        logger.error("party code allocation exhausted", attempts=self._max_attempts)
        raise CodeAllocationError
