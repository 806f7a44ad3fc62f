from fastapi import APIRouter, HTTPException, Request

from app.auth import get_user_id_async
from app.prepare.errors import (
    InvalidSessionConfig,
    InvalidTransition,
    PrepareEngineError,
    SessionBusy,
    SessionNotFound,
    StaleQuestion,
)
from app.prepare.events import question_payload, session_payload
from app.prepare.gateway import get_gateway
from app.prepare.models import SessionStatus
from app.prepare.schemas import SessionConfig, SessionStatusUpdate

router = APIRouter(prefix="/api/prepare")


def _http_error(exc: PrepareEngineError) -> HTTPException:
    if isinstance(exc, SessionNotFound):
        status_code = 404
    elif isinstance(exc, InvalidSessionConfig):
        status_code = 422
    elif isinstance(exc, (InvalidTransition, StaleQuestion, SessionBusy)):
        status_code = 409
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=exc.to_dict())


async def _owned_session(session_id: str, user_id: str):
    engine = get_gateway().engine
    try:
        session = await engine.get_session(session_id)
    except PrepareEngineError as exc:
        raise _http_error(exc)
    if session.owner_id != user_id:
        raise HTTPException(status_code=403, detail="Session belongs to another user")
    return session


@router.post("/sessions", status_code=201)
async def create_prepare_session(config: SessionConfig, request: Request):
    user_id = await get_user_id_async(request)
    try:
        session = await get_gateway().engine.create_session(user_id, config)
    except PrepareEngineError as exc:
        raise _http_error(exc)
    return {"session": session_payload(session)}


@router.get("/sessions/{session_id}")
async def get_prepare_session(session_id: str, request: Request):
    user_id = await get_user_id_async(request)
    await _owned_session(session_id, user_id)
    return await get_gateway().engine.get_snapshot(session_id)


@router.get("/sessions/{session_id}/progress")
async def get_prepare_progress(session_id: str, request: Request):
    user_id = await get_user_id_async(request)
    await _owned_session(session_id, user_id)
    return await get_gateway().engine.get_progress(session_id)


@router.post("/sessions/{session_id}/status")
async def update_prepare_status(session_id: str, update: SessionStatusUpdate, request: Request):
    user_id = await get_user_id_async(request)
    session = await _owned_session(session_id, user_id)
    engine = get_gateway().engine

    question = None
    try:
        if update.status == SessionStatus.ACTIVE.value:
            if session.status == SessionStatus.IDLE:
                question = await engine.activate(session_id)
            else:
                question = await engine.resume(session_id)
        elif update.status == SessionStatus.PAUSED.value:
            await engine.pause(session_id)
        else:
            await engine.complete(session_id, reason="ended-by-user")
    except PrepareEngineError as exc:
        raise _http_error(exc)

    current = await engine.get_session(session_id)
    return {
        "session": session_payload(current),
        "question": question_payload(question) if question else None,
        "progress": await engine.get_progress(session_id),
    }
