from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Protocol

from app.prepare.models import Evaluation, Question, Response, Session

logger = logging.getLogger("app.prepare.storage")


class PrepareStore(Protocol):
    async def create_session(self, session: Session) -> Session:
        ...

    async def get_session(self, session_id: str) -> Session | None:
        ...

    async def update_session(self, session: Session) -> Session:
        ...

    async def create_question(self, question: Question) -> Question:
        ...

    async def list_questions(self, session_id: str) -> list[Question]:
        ...

    async def create_response(self, response: Response) -> Response:
        ...

    async def get_response(self, question_id: str) -> Response | None:
        ...

    async def create_evaluation(self, evaluation: Evaluation) -> Evaluation:
        ...

    async def list_evaluations(self, session_id: str) -> list[Evaluation]:
        ...


def _copy_session(session: Session) -> Session:
    return Session.from_dict(session.to_dict())


class InMemoryPrepareStore:
    def __init__(self):
        self._lock = asyncio.Lock()
        self._sessions: dict[str, Session] = {}
        self._questions: dict[str, list[Question]] = {}
        self._responses: dict[str, Response] = {}
        self._evaluations: dict[str, Evaluation] = {}
        self._evaluation_order: dict[str, list[str]] = {}

    async def create_session(self, session: Session) -> Session:
        async with self._lock:
            if session.id in self._sessions:
                raise ValueError(f"Session already exists: {session.id}")
            self._sessions[session.id] = _copy_session(session)
            self._questions.setdefault(session.id, [])
            self._evaluation_order.setdefault(session.id, [])
            await self._on_write()
        return _copy_session(session)

    async def get_session(self, session_id: str) -> Session | None:
        async with self._lock:
            session = self._sessions.get(session_id)
            return _copy_session(session) if session else None

    async def update_session(self, session: Session) -> Session:
        async with self._lock:
            if session.id not in self._sessions:
                raise KeyError(session.id)
            self._sessions[session.id] = _copy_session(session)
            await self._on_write()
        return _copy_session(session)

    async def create_question(self, question: Question) -> Question:
        async with self._lock:
            if question.session_id not in self._sessions:
                raise KeyError(question.session_id)
            items = self._questions.setdefault(question.session_id, [])
            expected = len(items) + 1
            if question.sequence_number != expected:
                raise ValueError(
                    f"Question sequence gap for session {question.session_id}: "
                    f"expected {expected}, got {question.sequence_number}"
                )
            items.append(question)
            await self._on_write()
        return question

    async def list_questions(self, session_id: str) -> list[Question]:
        async with self._lock:
            return list(self._questions.get(session_id, []))

    async def create_response(self, response: Response) -> Response:
        async with self._lock:
            previous = self._responses.get(response.question_id)
            if previous is not None and previous.id in self._evaluations:
                raise ValueError(f"Question already evaluated: {response.question_id}")
            self._responses[response.question_id] = response
            await self._on_write()
        return response

    async def get_response(self, question_id: str) -> Response | None:
        async with self._lock:
            return self._responses.get(question_id)

    async def create_evaluation(self, evaluation: Evaluation) -> Evaluation:
        async with self._lock:
            existing = self._evaluations.get(evaluation.response_id)
            if existing is not None:
                return existing
            self._evaluations[evaluation.response_id] = evaluation
            self._evaluation_order.setdefault(evaluation.session_id, []).append(evaluation.response_id)
            await self._on_write()
        return evaluation

    async def list_evaluations(self, session_id: str) -> list[Evaluation]:
        async with self._lock:
            return [self._evaluations[rid] for rid in self._evaluation_order.get(session_id, [])]

    async def _on_write(self) -> None:
        return


class JsonFilePrepareStore(InMemoryPrepareStore):
    """In-memory store mirrored to a JSON file after every write."""

    def __init__(self, path: str | Path):
        super().__init__()
        self._path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("prepare store load failed | path=%s err=%s", self._path, exc)
            return
        if not isinstance(payload, dict):
            return

        for item in payload.get("sessions") or []:
            session = Session.from_dict(item)
            self._sessions[session.id] = session
            self._questions.setdefault(session.id, [])
            self._evaluation_order.setdefault(session.id, [])
        for item in payload.get("questions") or []:
            question = Question.from_dict(item)
            self._questions.setdefault(question.session_id, []).append(question)
        for items in self._questions.values():
            items.sort(key=lambda q: q.sequence_number)
        for item in payload.get("responses") or []:
            response = Response.from_dict(item)
            self._responses[response.question_id] = response
        for item in payload.get("evaluations") or []:
            evaluation = Evaluation.from_dict(item)
            self._evaluations[evaluation.response_id] = evaluation
            self._evaluation_order.setdefault(evaluation.session_id, []).append(evaluation.response_id)

    async def _on_write(self) -> None:
        payload = {
            "sessions": [s.to_dict() for s in self._sessions.values()],
            "questions": [q.to_dict() for items in self._questions.values() for q in items],
            "responses": [r.to_dict() for r in self._responses.values()],
            "evaluations": [
                self._evaluations[rid].to_dict()
                for order in self._evaluation_order.values()
                for rid in order
            ],
        }
        # snapshot under the store lock, file I/O off the event loop
        await asyncio.to_thread(self._write_file, json.dumps(payload, ensure_ascii=False))

    def _write_file(self, text: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_suffix(".tmp")
        temp_path.write_text(text, encoding="utf-8")
        temp_path.replace(self._path)


def build_prepare_store(kind: str, path: str | None = None) -> PrepareStore:
    normalized = str(kind or "memory").strip().lower()
    if normalized == "memory":
        return InMemoryPrepareStore()
    if normalized == "json":
        if not path:
            raise RuntimeError("PREPARE_STORE=json requires PREPARE_STORE_PATH")
        return JsonFilePrepareStore(path)
    raise RuntimeError(f"Unknown PREPARE_STORE '{kind}' (expected memory or json)")
