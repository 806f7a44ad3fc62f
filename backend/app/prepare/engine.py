from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import time
from threading import Lock
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from app.prepare.errors import (
    InvalidResponse,
    InvalidSessionConfig,
    InvalidTransition,
    SessionBusy,
    SessionNotFound,
    StaleQuestion,
)
from app.prepare.events import (
    RESPONSE_EVALUATED,
    SESSION_COMPLETED,
    SESSION_PAUSED,
    SESSION_RESUMED,
    build_progress,
    evaluation_payload,
    question_event,
    question_payload,
    session_payload,
)
from app.prepare.models import (
    Evaluation,
    InputMethod,
    Question,
    Response,
    Session,
    SessionStatus,
    count_words,
)
from app.prepare.orchestrator import QuestionOrchestrator
from app.prepare.schemas import SessionConfig
from app.prepare.scorer import EvaluationScorer, QuestionContext, summarize_session
from app.prepare.storage import PrepareStore
from app.prepare.transcript_buffer import TranscriptBuffer
from app.system_metrics import increment_metric, set_metric
from core.config import PREPARE_MAX_QUESTIONS
from core.logger import log_event

logger = logging.getLogger("app.prepare.engine")

EventSink = Callable[[str, dict], Awaitable[None]]


async def _discard_events(session_id: str, event: dict) -> None:
    return


@dataclass
class SessionRuntime:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    busy: bool = False
    epoch: int = 0
    active: bool = True
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


class SessionRuntimeRegistry:
    """Per-session lock, busy token and turn epoch, kept outside the store."""

    def __init__(self):
        self._lock = Lock()
        self._runtimes: dict[str, SessionRuntime] = {}

    def get_or_create(self, session_id: str) -> SessionRuntime:
        with self._lock:
            runtime = self._runtimes.get(session_id)
            if runtime is None:
                runtime = SessionRuntime()
                self._runtimes[session_id] = runtime
            runtime.updated_at = time.time()
            return runtime

    def get(self, session_id: str) -> SessionRuntime | None:
        with self._lock:
            return self._runtimes.get(session_id)

    def mark_inactive(self, session_id: str) -> None:
        with self._lock:
            runtime = self._runtimes.get(session_id)
            if runtime is not None:
                runtime.active = False
                runtime.updated_at = time.time()

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for runtime in self._runtimes.values() if runtime.active)

    def cleanup_inactive(self, ttl_sec: float, idle_ttl_sec: float | None = None) -> int:
        """Drop completed runtimes older than ``ttl_sec``.

        With ``idle_ttl_sec``, runtimes of sessions that were never completed
        are dropped too once nothing has touched them for that long. A busy or
        locked runtime is always kept.
        """
        now_ts = time.time()
        cutoff = now_ts - max(30.0, float(ttl_sec or 900.0))
        idle_cutoff = now_ts - max(30.0, float(idle_ttl_sec)) if idle_ttl_sec is not None else None
        removed = 0
        with self._lock:
            for session_id, runtime in list(self._runtimes.items()):
                if runtime.busy or runtime.lock.locked():
                    continue
                if runtime.active:
                    if idle_cutoff is None or runtime.updated_at > idle_cutoff:
                        continue
                elif runtime.updated_at > cutoff:
                    continue
                self._runtimes.pop(session_id, None)
                removed += 1
        return removed


class SessionEngine:
    """Session state machine: idle -> active -> paused/completed.

    Every transition runs under the session's runtime lock. AI calls run outside
    the lock while the session holds its busy token; their results are applied
    only if the session is still active on the same turn epoch, otherwise they
    are discarded. Pause and complete bump the epoch without waiting for the
    busy token.
    """

    def __init__(
        self,
        store: PrepareStore,
        orchestrator: QuestionOrchestrator,
        scorer: EvaluationScorer,
        transcript_buffer: TranscriptBuffer | None = None,
        event_sink: EventSink | None = None,
        registry: SessionRuntimeRegistry | None = None,
        max_questions: int = PREPARE_MAX_QUESTIONS,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.scorer = scorer
        self.transcript_buffer = transcript_buffer or TranscriptBuffer()
        self.event_sink: EventSink = event_sink or _discard_events
        self.registry = registry or SessionRuntimeRegistry()
        self.max_questions = max(1, int(max_questions))

    # ---------- lifecycle ----------

    async def create_session(self, owner_id: str, config: SessionConfig | dict[str, Any]) -> Session:
        if not str(owner_id or "").strip():
            raise InvalidSessionConfig("ownerId must not be empty")
        if not isinstance(config, SessionConfig):
            try:
                config = SessionConfig.model_validate(config or {})
            except ValidationError as exc:
                raise InvalidSessionConfig(
                    "Invalid session configuration",
                    {"errors": [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]},
                ) from exc

        session = Session(
            owner_id=str(owner_id).strip(),
            job_position=config.job_position,
            interview_stage=config.interview_stage,
            company_name=(config.company_name or "").strip() or None,
            experience_level=config.experience_level,
            preferred_language=config.preferred_language,
            voice_enabled=config.voice_enabled,
            difficulty_level=config.difficulty_level,
            focus_areas=[str(area).strip().lower() for area in config.focus_areas if str(area).strip()],
            max_questions=int(config.max_questions or self.max_questions),
        )
        session = await self.store.create_session(session)
        self.registry.get_or_create(session.id)
        increment_metric("sessions_created")
        log_event(
            "session_engine",
            "session_created",
            session.id,
            owner_id=session.owner_id,
            interview_stage=session.interview_stage.value,
            max_questions=session.max_questions,
        )
        return session

    async def activate(self, session_id: str) -> Question | None:
        runtime = self.registry.get_or_create(session_id)
        async with runtime.lock:
            session = await self._require_session(session_id)
            if session.status != SessionStatus.IDLE:
                raise InvalidTransition(session_id, session.status.value, "activate")
            if runtime.busy:
                raise SessionBusy(session_id)
            session.status = SessionStatus.ACTIVE
            session.updated_at = time.time()
            await self.store.update_session(session)
            runtime.busy = True
            epoch = runtime.epoch
            self._refresh_active_gauge()
            log_event("session_engine", "session_activated", session_id)

        try:
            return await self._next_question_turn(session_id, runtime, epoch)
        finally:
            runtime.busy = False

    async def submit_response(
        self,
        session_id: str,
        question_id: str,
        text: str,
        input_method: InputMethod | str = InputMethod.TEXT,
    ) -> Evaluation | None:
        """Evaluate the answer to the current question and advance the turn.

        Returns ``None`` when the result was discarded because the session was
        paused or completed while the evaluation was in flight.
        """
        body = " ".join(str(text or "").split())
        if not body:
            raise InvalidResponse("Response text must not be empty", {"session_id": session_id})
        try:
            method = InputMethod(input_method)
        except ValueError as exc:
            raise InvalidResponse(f"Unknown input method: {input_method}", {"session_id": session_id}) from exc

        runtime = self.registry.get_or_create(session_id)
        async with runtime.lock:
            session = await self._require_session(session_id)
            if session.status != SessionStatus.ACTIVE or session.current_question_id != question_id:
                raise StaleQuestion(session_id, question_id, session.current_question_id)
            if runtime.busy:
                raise SessionBusy(session_id)

            question = await self._find_question(session_id, question_id)
            response = await self.store.create_response(
                Response(
                    session_id=session_id,
                    question_id=question_id,
                    text=body,
                    input_method=method,
                    word_count=count_words(body),
                )
            )
            runtime.busy = True
            epoch = runtime.epoch
            log_event(
                "session_engine",
                "response_received",
                session_id,
                question_id=question_id,
                input_method=method.value,
                word_count=response.word_count,
            )

        try:
            result = await self.scorer.evaluate(body, self._question_context(session, question))

            async with runtime.lock:
                session = await self._require_session(session_id)
                if not self._turn_is_current(session, runtime, epoch, question_id):
                    self._record_stale(session_id, "evaluation", question_id=question_id)
                    return None

                evaluation = await self.store.create_evaluation(Evaluation.from_result(result, response))
                session.questions_asked += 1
                session.current_question_id = None
                session.updated_at = time.time()
                await self.store.update_session(session)
                # an unfinished recording for the answered question is abandoned
                self.transcript_buffer.discard(session_id, question_id)
                log_event(
                    "session_engine",
                    "response_evaluated",
                    session_id,
                    question_id=question_id,
                    computed_by=evaluation.computed_by.value,
                    overall=evaluation.star_scores.overall,
                    questions_asked=session.questions_asked,
                )

                if session.questions_asked >= session.max_questions:
                    evaluations = await self.store.list_evaluations(session_id)
                    await self._publish(
                        session_id,
                        self._evaluated_event(session, evaluation, None, evaluations),
                    )
                    await self._complete_locked(session, runtime, reason="max-questions")
                    return evaluation

            def _lead(next_question: Question | None, current: Session, evaluations: list[Evaluation]) -> list[dict]:
                return [self._evaluated_event(current, evaluation, next_question, evaluations)]

            await self._next_question_turn(session_id, runtime, epoch, lead=_lead)
            return evaluation
        finally:
            runtime.busy = False

    async def pause(self, session_id: str) -> Session:
        runtime = self.registry.get_or_create(session_id)
        async with runtime.lock:
            session = await self._require_session(session_id)
            if session.status != SessionStatus.ACTIVE:
                raise InvalidTransition(session_id, session.status.value, "pause")
            session.status = SessionStatus.PAUSED
            session.current_question_id = None
            session.updated_at = time.time()
            await self.store.update_session(session)
            runtime.epoch += 1
            self.transcript_buffer.discard(session_id)
            self._refresh_active_gauge()

            evaluations = await self.store.list_evaluations(session_id)
            await self._publish(
                session_id,
                {
                    "type": SESSION_PAUSED,
                    "sessionId": session_id,
                    "session": session_payload(session),
                    "progress": build_progress(session, evaluations),
                },
            )
            log_event("session_engine", "session_paused", session_id, questions_asked=session.questions_asked)
            return session

    async def resume(self, session_id: str) -> Question | None:
        """Resume a paused session.

        An unanswered latest question is presented again. Otherwise the next
        question is generated, or the session completes when it is already at
        its question limit.
        """
        runtime = self.registry.get_or_create(session_id)
        async with runtime.lock:
            session = await self._require_session(session_id)
            if session.status != SessionStatus.PAUSED:
                raise InvalidTransition(session_id, session.status.value, "resume")
            if runtime.busy:
                raise SessionBusy(session_id)

            questions = await self.store.list_questions(session_id)
            evaluations = await self.store.list_evaluations(session_id)
            evaluated = {e.question_id for e in evaluations}
            latest = questions[-1] if questions else None

            pending = latest if latest is not None and latest.id not in evaluated else None
            if pending is None and session.questions_asked >= session.max_questions:
                await self._complete_locked(session, runtime, reason="max-questions")
                return None

            session.status = SessionStatus.ACTIVE
            session.updated_at = time.time()
            if pending is not None:
                session.current_question_id = pending.id
            await self.store.update_session(session)
            self._refresh_active_gauge()

            progress = build_progress(session, evaluations)
            await self._publish(
                session_id,
                {
                    "type": SESSION_RESUMED,
                    "sessionId": session_id,
                    "session": session_payload(session),
                    "progress": progress,
                },
            )
            log_event("session_engine", "session_resumed", session_id, represented=pending is not None)

            if pending is not None:
                await self._publish(session_id, question_event(pending, progress, represented=True))
                return pending

            runtime.busy = True
            epoch = runtime.epoch

        try:
            return await self._next_question_turn(session_id, runtime, epoch)
        finally:
            runtime.busy = False

    async def complete(self, session_id: str, reason: str = "ended") -> Session:
        runtime = self.registry.get_or_create(session_id)
        async with runtime.lock:
            session = await self._require_session(session_id)
            if session.status == SessionStatus.COMPLETED:
                self.registry.mark_inactive(session_id)
                return session
            if session.status == SessionStatus.IDLE:
                raise InvalidTransition(session_id, session.status.value, "complete")
            return await self._complete_locked(session, runtime, reason=reason)

    # ---------- queries ----------

    async def get_session(self, session_id: str) -> Session:
        return await self._require_session(session_id)

    async def get_progress(self, session_id: str) -> dict:
        session = await self._require_session(session_id)
        evaluations = await self.store.list_evaluations(session_id)
        return build_progress(session, evaluations)

    async def get_current_question(self, session_id: str) -> Question | None:
        session = await self._require_session(session_id)
        if not session.current_question_id:
            return None
        return await self._find_question(session_id, session.current_question_id)

    async def get_snapshot(self, session_id: str) -> dict:
        session = await self._require_session(session_id)
        questions = await self.store.list_questions(session_id)
        evaluations = await self.store.list_evaluations(session_id)
        by_question = {e.question_id: e for e in evaluations}

        turns = []
        for question in questions:
            response = await self.store.get_response(question.id)
            evaluation = by_question.get(question.id)
            turns.append(
                {
                    "question": question_payload(question),
                    "response": (
                        {
                            "responseId": response.id,
                            "text": response.text,
                            "inputMethod": response.input_method.value,
                            "wordCount": response.word_count,
                            "submittedAt": response.submitted_at,
                        }
                        if response
                        else None
                    ),
                    "evaluation": evaluation_payload(evaluation) if evaluation else None,
                }
            )

        return {
            "session": session_payload(session),
            "progress": build_progress(session, evaluations),
            "turns": turns,
            "summary": summarize_session(evaluations) if session.status == SessionStatus.COMPLETED else None,
        }

    def cleanup(self, ttl_sec: float, now: float | None = None, idle_ttl_sec: float | None = None) -> dict:
        removed = {
            "runtimes_removed": self.registry.cleanup_inactive(ttl_sec, idle_ttl_sec),
            "voice_buffers_expired": self.transcript_buffer.cleanup_expired(now),
        }
        if removed["runtimes_removed"]:
            self._refresh_active_gauge()
        return removed

    # ---------- internals ----------

    async def _next_question_turn(
        self,
        session_id: str,
        runtime: SessionRuntime,
        epoch: int,
        lead: Callable[[Question | None, Session, list[Evaluation]], list[dict]] | None = None,
    ) -> Question | None:
        session = await self._require_session(session_id)
        prior_questions = await self.store.list_questions(session_id)
        evaluations = await self.store.list_evaluations(session_id)
        draft = await self.orchestrator.next_question(session, prior_questions, evaluations)

        async with runtime.lock:
            current = await self._require_session(session_id)
            question: Question | None = None
            if runtime.epoch == epoch and current.status == SessionStatus.ACTIVE and not current.current_question_id:
                prior_questions = await self.store.list_questions(session_id)
                question = await self.store.create_question(
                    Question(
                        session_id=session_id,
                        sequence_number=len(prior_questions) + 1,
                        text=draft.text,
                        category=draft.category,
                        difficulty=draft.difficulty,
                        generated_by=draft.generated_by,
                    )
                )
                current.current_question_id = question.id
                current.updated_at = time.time()
                await self.store.update_session(current)
            else:
                self._record_stale(session_id, "question", status=current.status.value)

            evaluations = await self.store.list_evaluations(session_id)
            progress = build_progress(current, evaluations)
            events = list(lead(question, current, evaluations)) if lead else []
            if question is not None:
                events.append(question_event(question, progress))
            for event in events:
                await self._publish(session_id, event)
            return question

    async def _complete_locked(self, session: Session, runtime: SessionRuntime, reason: str) -> Session:
        session.status = SessionStatus.COMPLETED
        session.current_question_id = None
        session.completed_at = time.time()
        session.updated_at = session.completed_at
        await self.store.update_session(session)
        runtime.epoch += 1
        self.transcript_buffer.discard(session.id)
        self.registry.mark_inactive(session.id)
        self._refresh_active_gauge()
        increment_metric("sessions_completed")

        evaluations = await self.store.list_evaluations(session.id)
        await self._publish(
            session.id,
            {
                "type": SESSION_COMPLETED,
                "sessionId": session.id,
                "reason": reason,
                "summary": summarize_session(evaluations),
                "progress": build_progress(session, evaluations),
            },
        )
        log_event(
            "session_engine",
            "session_completed",
            session.id,
            reason=reason,
            questions_asked=session.questions_asked,
        )
        return session

    def _evaluated_event(
        self,
        session: Session,
        evaluation: Evaluation,
        next_question: Question | None,
        evaluations: list[Evaluation],
    ) -> dict:
        return {
            "type": RESPONSE_EVALUATED,
            "sessionId": session.id,
            "questionId": evaluation.question_id,
            "evaluation": evaluation_payload(evaluation),
            "nextQuestion": question_payload(next_question) if next_question else None,
            "progress": build_progress(session, evaluations),
        }

    async def _publish(self, session_id: str, event: dict) -> None:
        try:
            await self.event_sink(session_id, event)
        except Exception as exc:
            logger.warning("event publish failed | session=%s type=%s err=%s", session_id, event.get("type"), exc)

    async def _require_session(self, session_id: str) -> Session:
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def _find_question(self, session_id: str, question_id: str) -> Question:
        for question in await self.store.list_questions(session_id):
            if question.id == question_id:
                return question
        raise StaleQuestion(session_id, question_id, None)

    @staticmethod
    def _turn_is_current(session: Session, runtime: SessionRuntime, epoch: int, question_id: str) -> bool:
        return (
            runtime.epoch == epoch
            and session.status == SessionStatus.ACTIVE
            and session.current_question_id == question_id
        )

    @staticmethod
    def _question_context(session: Session, question: Question) -> QuestionContext:
        return QuestionContext(
            question_text=question.text,
            category=question.category,
            job_position=session.job_position,
            interview_stage=session.interview_stage.value,
            experience_level=session.experience_level,
            preferred_language=session.preferred_language,
            session_id=session.id,
        )

    def _record_stale(self, session_id: str, result_kind: str, **fields) -> None:
        increment_metric("stale_results_discarded")
        log_event("session_engine", "stale_result_discarded", session_id, result=result_kind, **fields)

    def _refresh_active_gauge(self) -> None:
        set_metric("sessions_active", self.registry.active_count())
