import asyncio
import base64
import json
import sys
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.prepare.engine import SessionEngine  # noqa: E402
from app.prepare.errors import AIServiceError, TranscriptionError  # noqa: E402
from app.prepare.orchestrator import QuestionOrchestrator  # noqa: E402
from app.prepare.scorer import EvaluationScorer  # noqa: E402
from app.prepare.storage import InMemoryPrepareStore  # noqa: E402
from app.prepare.transcript_buffer import TranscriptBuffer  # noqa: E402


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch):
    from app import auth

    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("ALLOW_UNVERIFIED_AUTH_DEV", "true")
    monkeypatch.setenv("QA_MODE", "true")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setattr(auth, "ENVIRONMENT", "development")
    monkeypatch.setattr(auth, "PREPARE_JWT_SECRET", "")
    monkeypatch.setattr(auth, "ALLOW_UNVERIFIED_AUTH_DEV", True)


@pytest.fixture
def dev_jwt_token() -> str:
    def _enc(obj: dict) -> str:
        raw = json.dumps(obj, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")

    header = _enc({"alg": "none", "typ": "JWT"})
    payload = _enc({"sub": "pytest-user", "iat": 0})
    return f"{header}.{payload}."


class FakeAIService:
    """Scripted AI text service.

    Replies are consumed in order; once exhausted every call fails with
    ``AIServiceError`` (or returns ``default`` when one is given). Calls whose
    1-based number is in ``block_on`` wait for ``release()`` first.
    """

    def __init__(self, replies=None, default=None, block_on=()):
        self.replies = list(replies or [])
        self.default = default
        self.block_on = set(block_on)
        self.prompts: list[str] = []
        self.waiting = asyncio.Event()
        self._gate = asyncio.Event()

    def release(self) -> None:
        self._gate.set()

    async def generate(self, prompt: str, timeout_sec: float) -> str:
        self.prompts.append(prompt)
        if len(self.prompts) in self.block_on:
            self.waiting.set()
            await self._gate.wait()
        if self.replies:
            item = self.replies.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if self.default is not None:
            return self.default
        raise AIServiceError("AI offline")


class FakeTranscriber:
    def __init__(self, transcript: str = "", error: Exception | None = None):
        self.transcript = transcript
        self.error = error
        self.calls: list[tuple[bytes, str | None]] = []

    async def transcribe(self, audio: bytes, language: str | None = None) -> str:
        self.calls.append((bytes(audio), language))
        if self.error is not None:
            raise self.error
        if not self.transcript:
            raise TranscriptionError("No speech detected; please try again")
        return self.transcript


@pytest.fixture
def fake_ai_factory():
    return FakeAIService


@pytest.fixture
def fake_transcriber_factory():
    return FakeTranscriber


@pytest.fixture
def make_engine():
    def _make(question_ai=None, evaluation_ai=None, max_questions: int = 5, store=None, buffer=None):
        events: list[dict] = []

        async def _sink(session_id: str, event: dict) -> None:
            events.append(event)

        engine = SessionEngine(
            store=store or InMemoryPrepareStore(),
            orchestrator=QuestionOrchestrator(question_ai or FakeAIService(), timeout_sec=1),
            scorer=EvaluationScorer(evaluation_ai or FakeAIService(), timeout_sec=1),
            transcript_buffer=buffer or TranscriptBuffer(),
            event_sink=_sink,
            max_questions=max_questions,
        )
        return engine, events

    return _make


@pytest.fixture
def session_config() -> dict:
    return {
        "jobPosition": "Backend Engineer",
        "interviewStage": "hiring-manager",
        "companyName": "Acme",
        "preferredLanguage": "en",
    }


@pytest.fixture
def star_answer() -> str:
    return (
        "Last year our payment platform kept failing during peak traffic, which was a serious problem "
        "for the company. As the on-call lead I was responsible for stabilising it before the holiday "
        "deadline. I analyzed three months of incident logs, found a connection pool leak, and implemented "
        "a fix together with automated alerting. I also organized a short runbook session so the whole team "
        "could respond faster. As a result we reduced downtime by 45 minutes per week and customer complaints "
        "dropped sharply, which our director highlighted in the quarterly review."
    )
