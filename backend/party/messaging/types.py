from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel

from party.exceptions import PartyErrorCode


class ClientMessageType(StrEnum):
    PING = "ping"


class ServerMessageType(StrEnum):
    PARTY_SNAPSHOT = "party_snapshot"
    PARTY_DELETED = "party_deleted"
    PONG = "pong"
    ERROR = "party_error"


class InvalidMessageCode(StrEnum):
    INVALID_MESSAGE = "invalid_message"


class PartySnapshotMessage(BaseModel):
    type: Literal[ServerMessageType.PARTY_SNAPSHOT] = ServerMessageType.PARTY_SNAPSHOT
    party: dict[str, Any]


class PartyDeletedMessage(BaseModel):
    type: Literal[ServerMessageType.PARTY_DELETED] = ServerMessageType.PARTY_DELETED
    code: str


class PongMessage(BaseModel):
    type: Literal[ServerMessageType.PONG] = ServerMessageType.PONG


class ErrorMessage(BaseModel):
    type: Literal[ServerMessageType.ERROR] = ServerMessageType.ERROR
    code: PartyErrorCode | InvalidMessageCode
    message: str
    retryable: bool = False
