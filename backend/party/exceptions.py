"""Domain errors raised by the party engine.

Every error carries a stable ``code`` for clients and a ``retryable``
flag. Only store/infrastructure failures are retryable; everything else
needs the user to change something first.
"""

from enum import StrEnum


class PartyErrorCode(StrEnum):
    INVALID_CODE = "invalid_code"
    INVALID_SETTINGS = "invalid_settings"
    INVALID_SCORE_EVENT = "invalid_score_event"
    PARTY_NOT_FOUND = "party_not_found"
    NOT_HOST = "not_host"
    PARTY_FINISHED = "party_finished"
    PLAYER_NOT_IN_PARTY = "player_not_in_party"
    NOT_IN_PARTY = "not_in_party"
    NOT_SIGNED_IN = "not_signed_in"
    CODE_ALLOCATION_FAILED = "code_allocation_failed"
    DUPLICATE_PARTY = "duplicate_party"
    STORE_UNAVAILABLE = "store_unavailable"


class PartyError(Exception):
    """Base class for party engine errors."""

    code: PartyErrorCode
    retryable: bool = False
    default_message: str = "Party operation failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class InvalidPartyCodeError(PartyError):
    code = PartyErrorCode.INVALID_CODE
    default_message = "Please enter a 4-digit code"


class InvalidPartySettingsError(PartyError):
    code = PartyErrorCode.INVALID_SETTINGS
    default_message = "Invalid party settings"


class InvalidScoreEventError(PartyError):
    code = PartyErrorCode.INVALID_SCORE_EVENT
    default_message = "Invalid score event"


class PartyNotFoundError(PartyError):
    code = PartyErrorCode.PARTY_NOT_FOUND
    default_message = "Party not found"


class NotHostError(PartyError):
    code = PartyErrorCode.NOT_HOST
    default_message = "Only host can start party"


class PartyAlreadyFinishedError(PartyError):
    code = PartyErrorCode.PARTY_FINISHED
    default_message = "Party has already finished"


class PlayerNotInPartyError(PartyError):
    code = PartyErrorCode.PLAYER_NOT_IN_PARTY
    default_message = "Player not in party"


class NotInPartyError(PartyError):
    """The session has no party to act on."""

    code = PartyErrorCode.NOT_IN_PARTY
    default_message = "No active party"


class NotSignedInError(PartyError):
    code = PartyErrorCode.NOT_SIGNED_IN
    default_message = "No user logged in"


class CodeAllocationError(PartyError):
    code = PartyErrorCode.CODE_ALLOCATION_FAILED
    default_message = "Failed to generate unique code"


class DuplicatePartyError(PartyError):
    code = PartyErrorCode.DUPLICATE_PARTY
    default_message = "A party with this code already exists"


class StoreUnavailableError(PartyError):
    code = PartyErrorCode.STORE_UNAVAILABLE
    retryable = True
    default_message = "Party store is unavailable, please try again"
