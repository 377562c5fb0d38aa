from __future__ import annotations

import contextlib
import json
from http import HTTPStatus
from typing import TYPE_CHECKING, TypeVar, cast

import structlog
from pydantic import BaseModel, ValidationError
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute

from party.exceptions import NotSignedInError, PartyError, PartyErrorCode
from party.identity import PlayerProfile
from party.reaper import PartyReaper
from party.server.settings import PartyServerSettings, StoreBackend
from party.server.types import CatchRequest, CreatePartyRequest, QuizBonusRequest
from party.server.websocket import websocket_endpoint
from party.service import PartyService
from party.store import MemoryPartyStore, SqlitePartyStore
from shared.build_info import APP_VERSION, GIT_COMMIT
from shared.db import Database
from shared.logging import setup_logging

logger = structlog.get_logger()

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from starlette.requests import Request
    from starlette.websockets import WebSocket

    from party.store.base import PartyStore

ModelT = TypeVar("ModelT", bound=BaseModel)

USER_ID_HEADER = "X-User-Id"
USER_NAME_HEADER = "X-User-Name"
USER_AVATAR_HEADER = "X-User-Avatar"
MAX_AVATAR_HEADER_LEN = 64
MAX_NUMERIC_AVATAR_DIGITS = 9

ERROR_STATUS: dict[PartyErrorCode, HTTPStatus] = {
    PartyErrorCode.INVALID_CODE: HTTPStatus.BAD_REQUEST,
    PartyErrorCode.INVALID_SETTINGS: HTTPStatus.BAD_REQUEST,
    PartyErrorCode.INVALID_SCORE_EVENT: HTTPStatus.BAD_REQUEST,
    PartyErrorCode.PARTY_NOT_FOUND: HTTPStatus.NOT_FOUND,
    PartyErrorCode.NOT_HOST: HTTPStatus.FORBIDDEN,
    PartyErrorCode.PARTY_FINISHED: HTTPStatus.CONFLICT,
    PartyErrorCode.PLAYER_NOT_IN_PARTY: HTTPStatus.CONFLICT,
    PartyErrorCode.NOT_IN_PARTY: HTTPStatus.NOT_FOUND,
    PartyErrorCode.NOT_SIGNED_IN: HTTPStatus.UNAUTHORIZED,
    PartyErrorCode.CODE_ALLOCATION_FAILED: HTTPStatus.SERVICE_UNAVAILABLE,
    PartyErrorCode.DUPLICATE_PARTY: HTTPStatus.CONFLICT,
    PartyErrorCode.STORE_UNAVAILABLE: HTTPStatus.SERVICE_UNAVAILABLE,
}


class InvalidRequestBodyError(Exception):
    def __init__(self, message: str, status_code: HTTPStatus = HTTPStatus.BAD_REQUEST) -> None:
        super().__init__(message)
        self.status_code = status_code


async def _party_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    party_error = cast("PartyError", exc)
    status_code = ERROR_STATUS.get(party_error.code, HTTPStatus.BAD_REQUEST)
    return JSONResponse(
        {"error": party_error.message, "code": party_error.code, "retryable": party_error.retryable},
        status_code=status_code,
    )


async def _invalid_body_handler(_request: Request, exc: Exception) -> JSONResponse:
    body_error = cast("InvalidRequestBodyError", exc)
    return JSONResponse({"error": str(body_error)}, status_code=body_error.status_code)


def _caller(request: Request) -> PlayerProfile:
    """Resolve the caller from identity headers set by the fronting auth layer."""
    user_id = request.headers.get(USER_ID_HEADER, "").strip()
    if not user_id:
        raise NotSignedInError
    avatar_header = request.headers.get(USER_AVATAR_HEADER)
    avatar: str | int | None = None
    if avatar_header is not None:
        if len(avatar_header) > MAX_AVATAR_HEADER_LEN:
            raise InvalidRequestBodyError("Invalid avatar header")
        # numeric avatars are badge indexes; anything else is an opaque avatar id
        numeric = avatar_header.isascii() and avatar_header.isdigit()
        avatar = int(avatar_header) if numeric and len(avatar_header) <= MAX_NUMERIC_AVATAR_DIGITS else avatar_header
    return PlayerProfile.build(user_id, request.headers.get(USER_NAME_HEADER), avatar)


async def _read_body(request: Request, model: type[ModelT]) -> ModelT:
    settings: PartyServerSettings = request.app.state.settings
    raw_body = await request.body()
    if len(raw_body) > settings.max_request_body_size:
        raise InvalidRequestBodyError("Request body too large", HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
    try:
        body = json.loads(raw_body) if raw_body.strip() else {}
        if not isinstance(body, dict):
            raise InvalidRequestBodyError("Invalid request body")
        return model(**body)
    except (ValueError, TypeError, json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:  # fmt: skip
        raise InvalidRequestBodyError("Invalid request body") from e


def _service(request: Request) -> PartyService:
    return request.app.state.party_service


async def health(_request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "version": APP_VERSION, "commit": GIT_COMMIT})


async def status(request: Request) -> JSONResponse:
    settings: PartyServerSettings = request.app.state.settings
    store: PartyStore = request.app.state.party_store
    reaper: PartyReaper = request.app.state.reaper
    return JSONResponse(
        {
            "status": "ok",
            "version": APP_VERSION,
            "commit": GIT_COMMIT,
            "store_backend": settings.store_backend,
            "subscriptions": store.subscription_count,
            "reaper_running": reaper.running,
        },
    )


async def create_party(request: Request) -> JSONResponse:
    caller = _caller(request)
    req = await _read_body(request, CreatePartyRequest)
    party = await _service(request).create_party(
        caller,
        req.game_mode,
        req.target_value,
        req.location_id,
        req.location_name,
    )
    return JSONResponse({"party": party.to_record()}, status_code=HTTPStatus.CREATED)


async def get_party(request: Request) -> JSONResponse:
    party = await _service(request).get_party(request.path_params["code"])
    return JSONResponse({"party": party.to_record()})


async def join_party(request: Request) -> JSONResponse:
    party = await _service(request).join_party(_caller(request), request.path_params["code"])
    return JSONResponse({"party": party.to_record()})


async def leave_party(request: Request) -> JSONResponse:
    party = await _service(request).leave_party(_caller(request).user_id, request.path_params["code"])
    return JSONResponse({"party": party.to_record() if party is not None else None})


async def start_party(request: Request) -> JSONResponse:
    started = await _service(request).start_party(_caller(request).user_id, request.path_params["code"])
    return JSONResponse({"started": started})


async def record_catch(request: Request) -> JSONResponse:
    caller = _caller(request)
    req = await _read_body(request, CatchRequest)
    service = _service(request)
    code = request.path_params["code"]
    awarded = await service.record_catch(caller.user_id, code, req.creature_id)
    finished = await service.evaluate_completion(code)
    return JSONResponse({"awarded": awarded, "finished": finished})


async def add_quiz_bonus(request: Request) -> JSONResponse:
    caller = _caller(request)
    req = await _read_body(request, QuizBonusRequest)
    service = _service(request)
    code = request.path_params["code"]
    awarded = await service.add_quiz_bonus(caller.user_id, code, req.amount)
    finished = await service.evaluate_completion(code)
    return JSONResponse({"awarded": awarded, "finished": finished})


def _build_store(settings: PartyServerSettings) -> tuple[PartyStore, Database | None]:
    if settings.store_backend is StoreBackend.MEMORY:
        return MemoryPartyStore(), None
    db = Database(settings.database_path)
    db.connect()
    return SqlitePartyStore(db), db


def create_app(
    settings: PartyServerSettings | None = None,
    store: PartyStore | None = None,
    service: PartyService | None = None,
) -> Starlette:
    if settings is None:  # pragma: no cover
        settings = PartyServerSettings()

    # When the app builds its own store, it owns the store and DB lifecycle.
    owned_db: Database | None = None
    owns_store = False
    if store is None:
        store = service.store if service is not None else None
    if store is None:
        store, owned_db = _build_store(settings)
        owns_store = True

    if service is None:
        service = PartyService(store, code_max_attempts=settings.code_max_attempts)

    reaper = PartyReaper(
        store,
        finished_ttl=settings.finished_party_ttl_seconds,
        idle_ttl=settings.idle_party_ttl_seconds,
        interval=settings.reaper_interval_seconds,
    )

    async def ws_endpoint(websocket: WebSocket) -> None:
        await websocket_endpoint(websocket, service)

    routes = [
        Route("/health", health, methods=["GET"]),
        Route("/status", status, methods=["GET"]),
        Route("/parties", create_party, methods=["POST"]),
        Route("/parties/{code}", get_party, methods=["GET"]),
        Route("/parties/{code}/join", join_party, methods=["POST"]),
        Route("/parties/{code}/leave", leave_party, methods=["POST"]),
        Route("/parties/{code}/start", start_party, methods=["POST"]),
        Route("/parties/{code}/catches", record_catch, methods=["POST"]),
        Route("/parties/{code}/quiz", add_quiz_bonus, methods=["POST"]),
        WebSocketRoute("/ws/parties/{code}", ws_endpoint),
    ]

    @contextlib.asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncGenerator[None]:
        reaper.start()
        logger.info("party server ready", store_backend=settings.store_backend)
        try:
            yield
        finally:
            await reaper.stop()
            if owns_store:
                await store.close()
            if owned_db is not None:
                owned_db.close()

    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={
            PartyError: _party_error_handler,
            InvalidRequestBodyError: _invalid_body_handler,
        },
    )
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", USER_ID_HEADER, USER_NAME_HEADER, USER_AVATAR_HEADER],
    )
    app.state.settings = settings
    app.state.party_store = store
    app.state.party_service = service
    app.state.reaper = reaper
    return app


def get_app() -> Starlette:  # pragma: no cover  # deadcode: ignore
    """ASGI application factory for production use (e.g., uvicorn --factory)."""
    _settings = PartyServerSettings()
    setup_logging(log_dir=_settings.log_dir)
    return create_app(settings=_settings)
