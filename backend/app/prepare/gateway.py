from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import time
import uuid
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from app.auth import resolve_user_id
from app.prepare.engine import SessionEngine
from app.prepare.errors import PrepareEngineError, StaleQuestion, VoiceStreamError
from app.prepare.events import SESSION_COMPLETED, SESSION_CREATED, SESSION_JOINED, question_payload, session_payload
from app.prepare.models import InputMethod, Session, SessionStatus
from app.prepare.schemas import (
    AuthenticateMessage,
    CreateSessionMessage,
    SessionMessage,
    SubmitTextResponseMessage,
    VoiceChunkMessage,
    VoiceEndMessage,
    VoiceTurnMessage,
)
from app.prepare.stt import SpeechToText
from app.system_metrics import decrement_metric, increment_metric
from core.logger import log_event

logger = logging.getLogger("app.prepare.gateway")

SendFn = Callable[[dict], Awaitable[None]]


@dataclass
class GatewayConnection:
    send_fn: SendFn
    connection_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str | None = None
    session_id: str | None = None
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    connected: bool = True

    @property
    def authenticated(self) -> bool:
        return bool(self.user_id)


@dataclass
class SessionOutbox:
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: asyncio.Task | None = None


class GatewayError(PrepareEngineError):
    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind


class RealtimeGateway:
    """Routes protocol messages to the session engine and fans events back out.

    Transport agnostic: a connection is anything with an async ``send_fn``.
    Session events go through a FIFO outbox per session drained by one task,
    so every joined connection sees them in the order the engine produced
    them. Direct replies (acks, errors, pong) go straight to the caller.
    """

    def __init__(self, engine: SessionEngine, transcriber: SpeechToText):
        self.engine = engine
        self.transcriber = transcriber
        self.transcript_buffer = engine.transcript_buffer
        engine.event_sink = self.publish

        self._connections: dict[str, GatewayConnection] = {}
        self._members: dict[str, set[str]] = {}
        self._outboxes: dict[str, SessionOutbox] = {}
        self._tasks: set[asyncio.Task] = set()

        self._handlers: dict[str, Callable[[GatewayConnection, dict], Awaitable[None]]] = {
            "create-session": self._on_create_session,
            "join-session": self._on_join_session,
            "leave-session": self._on_leave_session,
            "voice-start": self._on_voice_start,
            "voice-chunk": self._on_voice_chunk,
            "voice-end": self._on_voice_end,
            "voice-cancel": self._on_voice_cancel,
            "submit-text-response": self._on_submit_text_response,
            "pause-session": self._on_pause_session,
            "resume-session": self._on_resume_session,
            "end-session": self._on_end_session,
        }

    # ---------- connection lifecycle ----------

    async def connect(self, send_fn: SendFn) -> GatewayConnection:
        connection = GatewayConnection(send_fn=send_fn)
        self._connections[connection.connection_id] = connection
        increment_metric("ws_connections_active")
        log_event("gateway", "connect", "", connection_id=connection.connection_id)
        return connection

    async def disconnect(self, connection: GatewayConnection, reason: str = "client_disconnect") -> None:
        connection.connected = False
        self._connections.pop(connection.connection_id, None)
        session_id = connection.session_id or ""
        abandoned = self.transcript_buffer.discard_owned_by(connection.connection_id)
        self._leave(connection)
        decrement_metric("ws_connections_active")
        log_event(
            "gateway",
            "disconnect",
            session_id,
            connection_id=connection.connection_id,
            reason=reason,
            voice_turns_discarded=len(abandoned),
        )

    # ---------- inbound ----------

    async def handle_message(self, connection: GatewayConnection, message: Any) -> None:
        if not isinstance(message, dict) or not str(message.get("type") or "").strip():
            await self._send_error(connection, "invalid-message", "Message must be an object with a 'type' field")
            return

        message_type = str(message.get("type")).strip()
        if message_type == "ping":
            await self.send(connection, {"type": "pong", "ts": time.time()})
            return
        if message_type == "authenticate":
            await self._on_authenticate(connection, message)
            return

        if not connection.authenticated:
            await self._send_error(connection, "unauthenticated", "Authenticate before sending other messages", message_type)
            return
        handler = self._handlers.get(message_type)
        if handler is None:
            await self._send_error(connection, "unknown-message", f"Unknown message type: {message_type}", message_type)
            return

        payload = dict(message)
        if connection.session_id and not payload.get("sessionId"):
            payload["sessionId"] = connection.session_id

        try:
            await handler(connection, payload)
        except ValidationError as exc:
            await self._send_error(connection, "invalid-message", _validation_summary(exc), message_type)
        except PrepareEngineError as exc:
            await self._send_engine_error(connection, exc, message_type)

    async def _on_authenticate(self, connection: GatewayConnection, message: dict) -> None:
        try:
            parsed = AuthenticateMessage.model_validate(message)
        except ValidationError as exc:
            await self._send_error(connection, "invalid-message", _validation_summary(exc), "authenticate")
            return
        try:
            user_id = resolve_user_id(parsed.user_id, parsed.token)
        except PrepareEngineError as exc:
            await self._send_engine_error(connection, exc, "authenticate")
            return
        connection.user_id = user_id
        log_event("gateway", "authenticated", "", connection_id=connection.connection_id, user_id=user_id)
        await self.send(connection, {"type": "authenticated", "userId": user_id})

    async def _on_create_session(self, connection: GatewayConnection, message: dict) -> None:
        parsed = CreateSessionMessage.model_validate(message)
        session = await self.engine.create_session(connection.user_id, parsed.config)
        await self.send(connection, {"type": SESSION_CREATED, "session": session_payload(session)})

    async def _on_join_session(self, connection: GatewayConnection, message: dict) -> None:
        parsed = SessionMessage.model_validate(message)
        session = await self._owned_session(connection, parsed.session_id)

        if connection.session_id and connection.session_id != session.id:
            self._leave(connection)
        connection.session_id = session.id
        self._members.setdefault(session.id, set()).add(connection.connection_id)

        current = await self.engine.get_current_question(session.id)
        await self.send(
            connection,
            {
                "type": SESSION_JOINED,
                "sessionId": session.id,
                "session": session_payload(session),
                "progress": await self.engine.get_progress(session.id),
                "currentQuestion": question_payload(current) if current else None,
            },
        )
        log_event("gateway", "session_joined", session.id, connection_id=connection.connection_id)

        if session.status == SessionStatus.IDLE:
            self._spawn(connection, "join-session", self.engine.activate(session.id))

    async def _on_leave_session(self, connection: GatewayConnection, message: dict) -> None:
        session_id = connection.session_id
        if session_id:
            self._leave(connection)
        await self.send(connection, {"type": "session-left", "sessionId": session_id})

    async def _on_voice_start(self, connection: GatewayConnection, message: dict) -> None:
        parsed = VoiceTurnMessage.model_validate(message)
        session = await self._owned_session(connection, parsed.session_id)
        if not session.voice_enabled:
            raise VoiceStreamError("Voice input is disabled for this session", {"session_id": session.id})
        if session.status != SessionStatus.ACTIVE or session.current_question_id != parsed.question_id:
            raise StaleQuestion(session.id, parsed.question_id, session.current_question_id)

        self.transcript_buffer.start(session.id, parsed.question_id, owner_id=connection.connection_id)
        await self.send(
            connection,
            {"type": "voice-started", "sessionId": session.id, "questionId": parsed.question_id},
        )

    async def _on_voice_chunk(self, connection: GatewayConnection, message: dict) -> None:
        parsed = VoiceChunkMessage.model_validate(message)
        await self._owned_session(connection, parsed.session_id)
        buffer = self.transcript_buffer.append_chunk(
            parsed.session_id,
            parsed.question_id,
            parsed.index,
            parsed.audio,
            is_last=parsed.is_last,
        )
        await self.send(
            connection,
            {
                "type": "voice-chunk-received",
                "sessionId": parsed.session_id,
                "questionId": parsed.question_id,
                "index": parsed.index,
                "receivedCount": buffer.received_count,
            },
        )

    async def _on_voice_end(self, connection: GatewayConnection, message: dict) -> None:
        parsed = VoiceEndMessage.model_validate(message)
        session = await self._owned_session(connection, parsed.session_id)
        audio = self.transcript_buffer.finalize(session.id, parsed.question_id, parsed.total_chunks)
        self._spawn(
            connection,
            "voice-end",
            self._transcribe_and_submit(session, parsed.question_id, audio),
        )

    async def _transcribe_and_submit(self, session: Session, question_id: str, audio: bytes) -> None:
        transcript = await self.transcriber.transcribe(audio, session.preferred_language)
        await self.publish(
            session.id,
            {
                "type": "transcription-complete",
                "sessionId": session.id,
                "questionId": question_id,
                "transcript": transcript,
            },
        )
        await self.engine.submit_response(session.id, question_id, transcript, InputMethod.VOICE)

    async def _on_voice_cancel(self, connection: GatewayConnection, message: dict) -> None:
        parsed = VoiceTurnMessage.model_validate(message)
        await self._owned_session(connection, parsed.session_id)
        discarded = self.transcript_buffer.discard(parsed.session_id, parsed.question_id)
        await self.send(
            connection,
            {
                "type": "voice-cancelled",
                "sessionId": parsed.session_id,
                "questionId": parsed.question_id,
                "discarded": discarded,
            },
        )

    async def _on_submit_text_response(self, connection: GatewayConnection, message: dict) -> None:
        parsed = SubmitTextResponseMessage.model_validate(message)
        await self._owned_session(connection, parsed.session_id)
        self._spawn(
            connection,
            "submit-text-response",
            self.engine.submit_response(parsed.session_id, parsed.question_id, parsed.text, parsed.input_method),
        )

    async def _on_pause_session(self, connection: GatewayConnection, message: dict) -> None:
        parsed = SessionMessage.model_validate(message)
        await self._owned_session(connection, parsed.session_id)
        await self.engine.pause(parsed.session_id)

    async def _on_resume_session(self, connection: GatewayConnection, message: dict) -> None:
        parsed = SessionMessage.model_validate(message)
        await self._owned_session(connection, parsed.session_id)
        self._spawn(connection, "resume-session", self.engine.resume(parsed.session_id))

    async def _on_end_session(self, connection: GatewayConnection, message: dict) -> None:
        parsed = SessionMessage.model_validate(message)
        await self._owned_session(connection, parsed.session_id)
        await self.engine.complete(parsed.session_id, reason="ended-by-user")

    # ---------- outbound ----------

    async def publish(self, session_id: str, event: dict) -> None:
        outbox = self._outboxes.get(session_id)
        if outbox is None:
            outbox = SessionOutbox()
            self._outboxes[session_id] = outbox
        outbox.queue.put_nowait(dict(event))
        if outbox.task is None or outbox.task.done():
            outbox.task = asyncio.create_task(self._drain_outbox(session_id, outbox))

    async def _drain_outbox(self, session_id: str, outbox: SessionOutbox) -> None:
        while True:
            event = await outbox.queue.get()
            try:
                members = [
                    self._connections[connection_id]
                    for connection_id in list(self._members.get(session_id, ()))
                    if connection_id in self._connections
                ]
                for connection in members:
                    await self.send(connection, event)
            finally:
                outbox.queue.task_done()

            # nobody left to deliver to, or nothing more will be produced
            finished = event.get("type") == SESSION_COMPLETED or not self._members.get(session_id)
            if finished and outbox.queue.empty():
                if self._outboxes.get(session_id) is outbox:
                    self._outboxes.pop(session_id, None)
                return

    async def send(self, connection: GatewayConnection, payload: dict) -> None:
        if not connection.connected:
            return
        try:
            async with connection.send_lock:
                await connection.send_fn(payload)
        except Exception as exc:
            logger.warning(
                "gateway send failed | connection_id=%s type=%s err=%s",
                connection.connection_id,
                payload.get("type"),
                exc,
            )

    async def wait_idle(self) -> None:
        """Wait for in-flight turns and queued events to be delivered."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        for outbox in list(self._outboxes.values()):
            await outbox.queue.join()

    async def close(self) -> None:
        await self.wait_idle()
        for outbox in list(self._outboxes.values()):
            if outbox.task is not None and not outbox.task.done():
                outbox.task.cancel()
        self._outboxes.clear()

    # ---------- helpers ----------

    def _spawn(self, connection: GatewayConnection, request_type: str, coro: Awaitable[Any]) -> None:
        async def _run() -> None:
            try:
                await coro
            except PrepareEngineError as exc:
                await self._send_engine_error(connection, exc, request_type)
            except Exception as exc:
                logger.exception("gateway turn failed | connection_id=%s type=%s", connection.connection_id, request_type)
                await self._send_error(connection, "internal-error", str(exc) or "Internal error", request_type)

        task = asyncio.create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _owned_session(self, connection: GatewayConnection, session_id: str) -> Session:
        session = await self.engine.get_session(session_id)
        if session.owner_id != connection.user_id:
            raise GatewayError("unauthorized", "Session belongs to another user")
        return session

    def _leave(self, connection: GatewayConnection) -> None:
        session_id = connection.session_id
        connection.session_id = None
        if not session_id:
            return
        members = self._members.get(session_id)
        if members is not None:
            members.discard(connection.connection_id)
            if not members:
                self._members.pop(session_id, None)
                self._release_outbox(session_id)
        self.transcript_buffer.discard_owned_by(connection.connection_id)

    def _release_outbox(self, session_id: str) -> bool:
        """Drop an idle outbox; a non-empty one is released by its drain task."""
        outbox = self._outboxes.get(session_id)
        if outbox is None or not outbox.queue.empty():
            return False
        self._outboxes.pop(session_id, None)
        if outbox.task is not None and not outbox.task.done():
            outbox.task.cancel()
        return True

    def cleanup(self, ttl_sec: float, idle_ttl_sec: float | None = None) -> dict:
        """Periodic purge of engine runtimes, expired voice buffers and unjoined outboxes."""
        removed = self.engine.cleanup(ttl_sec, idle_ttl_sec=idle_ttl_sec)
        released = 0
        for session_id in list(self._outboxes):
            if session_id not in self._members and self._release_outbox(session_id):
                released += 1
        removed["outboxes_released"] = released
        return removed

    async def _send_engine_error(self, connection: GatewayConnection, exc: PrepareEngineError, request_type: str) -> None:
        log_event(
            "gateway",
            "request_rejected",
            connection.session_id or "",
            kind=exc.kind,
            request_type=request_type,
        )
        payload = {"type": "error", "requestType": request_type, **exc.to_dict()}
        await self.send(connection, payload)

    async def _send_error(
        self,
        connection: GatewayConnection,
        kind: str,
        message: str,
        request_type: str | None = None,
    ) -> None:
        payload = {"type": "error", "kind": kind, "message": message}
        if request_type:
            payload["requestType"] = request_type
        await self.send(connection, payload)


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors()[:5]:
        location = ".".join(str(p) for p in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid message"


def build_gateway() -> RealtimeGateway:
    from app.prepare.ai_client import OpenAITextService
    from app.prepare.orchestrator import QuestionOrchestrator
    from app.prepare.scorer import EvaluationScorer
    from app.prepare.storage import build_prepare_store
    from app.prepare.stt import build_transcriber
    from app.prepare.transcript_buffer import TranscriptBuffer
    from core.config import OPENAI_API_KEY, PREPARE_AI_MODEL, PREPARE_STORE, PREPARE_STORE_PATH

    ai_service = OpenAITextService(api_key=OPENAI_API_KEY, model=PREPARE_AI_MODEL)
    engine = SessionEngine(
        store=build_prepare_store(PREPARE_STORE, PREPARE_STORE_PATH),
        orchestrator=QuestionOrchestrator(ai_service),
        scorer=EvaluationScorer(ai_service),
        transcript_buffer=TranscriptBuffer(),
    )
    return RealtimeGateway(engine, build_transcriber())


_gateway: RealtimeGateway | None = None


def get_gateway() -> RealtimeGateway:
    global _gateway
    if _gateway is None:
        _gateway = build_gateway()
    return _gateway


def set_gateway(gateway: RealtimeGateway | None) -> None:
    global _gateway
    _gateway = gateway
