"""
HTTP and WebSocket routes for the memo service.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import ValidationError

from memopad import auth
from memopad.config import Settings
from memopad.dependencies import get_app_settings, get_platform
from memopad.memos import (
    SNAPSHOT,
    Memo,
    MemoBoard,
    create_memo,
    delete_memo,
    fetch_memos,
    is_blank,
)
from memopad.platform import PlatformClient, PlatformError
from memopad.schemas import (
    AuthErrorResponse,
    HomeResponse,
    LiveAction,
    LiveMessage,
    MemoCreateRequest,
    MemoResponse,
    SignUpErrorResponse,
    SignUpFormResponse,
    SignUpRequest,
    SignUpResponse,
)

logger = logging.getLogger(__name__)

# Mounted under settings.api_prefix.
router = APIRouter()
# Page routes the browser lands on directly.
pages_router = APIRouter()

SIGNUP_FIELDS = ["email", "username", "password"]


def _read_access_token(request: Request, cookie_name: str) -> Optional[str]:
    token = request.cookies.get(cookie_name)
    if token:
        return token
    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def _memo_response(memo: Memo) -> MemoResponse:
    return MemoResponse(**memo.as_dict())


def _live_message(event_type: str, memos: list[Memo]) -> LiveMessage:
    return LiveMessage(type=event_type, memos=[_memo_response(m) for m in memos])


@router.get("/auth/callback", responses={500: {"model": AuthErrorResponse}})
@router.get("/auth/collback", include_in_schema=False)
async def auth_callback(
    code: Optional[str] = Query(None),
    platform: PlatformClient = Depends(get_platform),
    settings: Settings = Depends(get_app_settings),
):
    """
    Exchange the authorization code from the confirmation redirect for a
    session, then send the browser to the landing page.
    """
    try:
        session = await auth.exchange_code(platform, code)
    except PlatformError as exc:
        return JSONResponse(
            status_code=500, content=AuthErrorResponse(error=exc.message).model_dump()
        )
    response = RedirectResponse(settings.landing_path, status_code=307)
    response.set_cookie(
        settings.session_cookie_name,
        session.access_token,
        httponly=True,
        samesite="lax",
    )
    return response


@pages_router.get("/home", response_model=HomeResponse)
async def home(
    request: Request,
    platform: PlatformClient = Depends(get_platform),
    settings: Settings = Depends(get_app_settings),
):
    token = _read_access_token(request, settings.session_cookie_name)
    view = await auth.check_session(platform, token, settings.signup_path)
    if view.redirect_to:
        return RedirectResponse(view.redirect_to, status_code=307)
    return HomeResponse(
        user_id=view.user.id,
        email=view.user.email,
        message=auth.SIGNUP_SUCCESS_MESSAGE,
    )


@pages_router.get("/signup", response_model=SignUpFormResponse)
def signup_form():
    return SignUpFormResponse(fields=SIGNUP_FIELDS, required=SIGNUP_FIELDS)


@router.post(
    "/signup",
    response_model=SignUpResponse,
    status_code=201,
    responses={400: {"model": SignUpErrorResponse}},
)
async def signup(
    payload: SignUpRequest,
    platform: PlatformClient = Depends(get_platform),
    settings: Settings = Depends(get_app_settings),
):
    result = await auth.register_user(
        platform,
        payload.email,
        payload.username,
        payload.password,
        users_table=settings.users_table,
        rounds=settings.password_hash_rounds,
        store_password_hash=settings.store_profile_password_hash,
        upsert_profile=settings.profile_upsert,
    )
    if not result.ok:
        body = SignUpErrorResponse(
            error=result.error, account_created=result.account_created
        )
        return JSONResponse(status_code=400, content=body.model_dump())
    return SignUpResponse(
        user_id=result.user.id, email=result.email, username=result.username
    )


@router.get("/memos", response_model=list[MemoResponse])
async def list_memos(
    platform: PlatformClient = Depends(get_platform),
    settings: Settings = Depends(get_app_settings),
):
    try:
        memos = await fetch_memos(platform, settings.memos_table)
    except PlatformError as exc:
        logger.error("Error fetching memos: %s", exc.message)
        raise HTTPException(status_code=502, detail=exc.message)
    return [_memo_response(memo) for memo in memos]


@router.post(
    "/memos",
    response_model=MemoResponse,
    status_code=201,
    responses={204: {"description": "Blank content, nothing stored"}},
)
async def add_memo(
    payload: MemoCreateRequest,
    platform: PlatformClient = Depends(get_platform),
    settings: Settings = Depends(get_app_settings),
):
    if is_blank(payload.content):
        return Response(status_code=204)
    try:
        memo = await create_memo(platform, payload.content, settings.memos_table)
    except PlatformError as exc:
        logger.error("Error inserting memo: %s", exc.message)
        raise HTTPException(status_code=502, detail=exc.message)
    return _memo_response(memo)


@router.delete("/memos/{memo_id}", status_code=204)
async def remove_memo(
    memo_id: int,
    platform: PlatformClient = Depends(get_platform),
    settings: Settings = Depends(get_app_settings),
):
    try:
        await delete_memo(platform, memo_id, settings.memos_table)
    except PlatformError as exc:
        logger.error("Error deleting memo %s: %s", memo_id, exc.message)
        raise HTTPException(status_code=502, detail=exc.message)
    return Response(status_code=204)


@router.websocket("/memos/live")
async def live_memos(
    websocket: WebSocket,
    platform: PlatformClient = Depends(get_platform),
    settings: Settings = Depends(get_app_settings),
):
    """
    One memo board per connection. Sends a snapshot, then the full list
    after every change, whether it came from this client or the live feed.
    """
    await websocket.accept()
    outbox: asyncio.Queue[LiveMessage] = asyncio.Queue()
    board = MemoBoard(platform, settings.memos_table, loop=asyncio.get_running_loop())

    def on_board_change(event_type: str, memos: list[Memo]) -> None:
        if event_type != SNAPSHOT:
            outbox.put_nowait(_live_message(event_type, memos))

    board.add_listener(on_board_change)
    await board.mount()
    outbox.put_nowait(_live_message(SNAPSHOT, board.memos))

    async def pump() -> None:
        while True:
            message = await outbox.get()
            await websocket.send_json(message.model_dump())

    sender = asyncio.create_task(pump())
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                logger.debug("Live memo client disconnected")
                break
            text = frame.get("text")
            if text is None:
                outbox.put_nowait(LiveMessage(type="ERROR", detail="text frames only"))
                continue
            try:
                action = LiveAction.model_validate_json(text)
            except ValidationError as exc:
                outbox.put_nowait(
                    LiveMessage(type="ERROR", detail=exc.errors()[0]["msg"])
                )
                continue
            if action.action == "add":
                await board.add(action.content)
            elif action.id is None:
                outbox.put_nowait(LiveMessage(type="ERROR", detail="id is required"))
            else:
                await board.delete(action.id)
    finally:
        sender.cancel()
        # A send that raced the disconnect fails here, not in the task log.
        with contextlib.suppress(
            asyncio.CancelledError, WebSocketDisconnect, RuntimeError
        ):
            await sender
        await board.unmount()
