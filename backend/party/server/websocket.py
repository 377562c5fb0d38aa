"""Live party snapshots over a WebSocket.

One connection follows one party. The server pushes a ``party_snapshot``
frame for the current state and for every later change it observes, and
a final ``party_deleted`` frame when the record goes away. The only
client message is ``ping``.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog
from starlette.websockets import WebSocket, WebSocketDisconnect

from party.codes import validate_join_code
from party.exceptions import InvalidPartyCodeError, PartyError, PartyNotFoundError
from party.messaging.encoder import DecodeError, decode, encode
from party.messaging.types import (
    ClientMessageType,
    ErrorMessage,
    InvalidMessageCode,
    PartyDeletedMessage,
    PartySnapshotMessage,
    PongMessage,
)
from party.server.rate_limit import TokenBucket

logger = structlog.get_logger()

if TYPE_CHECKING:
    from party.service import PartyService
    from party.store.base import PartySubscription

# Clients only ping, so the budget is small.
_RATE_LIMIT_RATE = 5.0
_RATE_LIMIT_BURST = 10

# Disconnect after this many consecutive decode errors
_MAX_DECODE_ERRORS = 5

CLOSE_INVALID_CODE = 4000
CLOSE_PARTY_NOT_FOUND = 4004
CLOSE_TOO_MANY_DECODE_ERRORS = 4005
CLOSE_STORE_UNAVAILABLE = 1011


class PartyConnection:
    def __init__(self, websocket: WebSocket, party_code: str, connection_id: str | None = None) -> None:
        self._websocket = websocket
        self._party_code = party_code
        self._connection_id = connection_id or str(uuid4())
        self._send_lock = asyncio.Lock()

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def party_code(self) -> str:
        return self._party_code

    async def send_message(self, data: dict[str, Any]) -> None:
        async with self._send_lock:
            try:
                await self._websocket.send_bytes(encode(data))
            except WebSocketDisconnect:
                raise ConnectionError("WebSocket already disconnected") from None

    async def receive_bytes(self) -> bytes:
        try:
            return await self._websocket.receive_bytes()
        except WebSocketDisconnect:
            raise ConnectionError("WebSocket already disconnected") from None

    async def close(self, code: int = 1000, reason: str = "") -> None:
        with contextlib.suppress(WebSocketDisconnect, RuntimeError):
            await self._websocket.close(code=code, reason=reason)


async def _send_error(connection: PartyConnection, exc: PartyError) -> None:
    await connection.send_message(
        ErrorMessage(code=exc.code, message=exc.message, retryable=exc.retryable).model_dump(mode="json"),
    )


async def _pump_snapshots(connection: PartyConnection, subscription: PartySubscription) -> None:
    """Forward snapshots until the party is deleted or the store gives up."""
    try:
        async for party in subscription:
            if party is None:
                await connection.send_message(PartyDeletedMessage(code=connection.party_code).model_dump(mode="json"))
                await connection.close(reason="party_deleted")
                return
            await connection.send_message(PartySnapshotMessage(party=party.to_record()).model_dump(mode="json"))
    except PartyError as exc:
        logger.warning("party subscription failed", error_code=exc.code)
        await _send_error(connection, exc)
        await connection.close(code=CLOSE_STORE_UNAVAILABLE, reason=exc.code)


async def _receive_loop(connection: PartyConnection) -> None:
    bucket = TokenBucket(rate=_RATE_LIMIT_RATE, burst=_RATE_LIMIT_BURST)
    decode_errors = 0

    while True:
        raw = await connection.receive_bytes()
        try:
            data = decode(raw)
        except DecodeError as e:
            decode_errors += 1
            logger.warning("decode error", error=str(e), strikes=decode_errors)
            await connection.send_message(
                ErrorMessage(code=InvalidMessageCode.INVALID_MESSAGE, message=str(e)).model_dump(mode="json"),
            )
            if decode_errors >= _MAX_DECODE_ERRORS:
                logger.info("too many decode errors, disconnecting", connection_id=connection.connection_id)
                await connection.close(code=CLOSE_TOO_MANY_DECODE_ERRORS, reason="too_many_decode_errors")
                return
            continue

        decode_errors = 0
        if not bucket.consume():
            continue
        if data.get("type") == ClientMessageType.PING:
            await connection.send_message(PongMessage().model_dump(mode="json"))
        else:
            await connection.send_message(
                ErrorMessage(
                    code=InvalidMessageCode.INVALID_MESSAGE,
                    message=f"unsupported message type: {data.get('type')!r}",
                ).model_dump(mode="json"),
            )


async def websocket_endpoint(websocket: WebSocket, service: PartyService) -> None:
    try:
        code = validate_join_code(websocket.path_params["code"])
    except InvalidPartyCodeError:
        await websocket.close(code=CLOSE_INVALID_CODE, reason="invalid_party_code")
        return

    await websocket.accept()
    connection = PartyConnection(websocket, party_code=code)
    structlog.contextvars.bind_contextvars(party_code=code, connection_id=connection.connection_id)
    logger.info("websocket connected")

    try:
        subscription = await service.subscribe(code)
    except PartyError as exc:
        with contextlib.suppress(ConnectionError):
            await _send_error(connection, exc)
        close_code = CLOSE_PARTY_NOT_FOUND if isinstance(exc, PartyNotFoundError) else CLOSE_STORE_UNAVAILABLE
        await connection.close(code=close_code, reason=exc.code)
        logger.info("websocket rejected", error_code=exc.code)
        structlog.contextvars.clear_contextvars()
        return

    pump = asyncio.create_task(_pump_snapshots(connection, subscription), name=f"party-ws-pump-{code}")
    receiver = asyncio.create_task(_receive_loop(connection), name=f"party-ws-receive-{code}")
    try:
        done, _ = await asyncio.wait({pump, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, (WebSocketDisconnect, RuntimeError, ConnectionError)):
                raise exc
    finally:
        subscription.close()
        for task in (pump, receiver):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError, ConnectionError):
                await task
        logger.info("websocket disconnected")
        structlog.contextvars.clear_contextvars()
