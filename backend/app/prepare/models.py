from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
import time
import uuid


def _new_id() -> str:
    return str(uuid.uuid4())


class SessionStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class InterviewStage(str, Enum):
    PHONE_SCREENING = "phone-screening"
    FUNCTIONAL_TEAM = "functional-team"
    HIRING_MANAGER = "hiring-manager"
    SUBJECT_MATTER_EXPERTISE = "subject-matter-expertise"
    EXECUTIVE_FINAL = "executive-final"


class InputMethod(str, Enum):
    TEXT = "text"
    VOICE = "voice"


class GeneratedBy(str, Enum):
    AI = "ai"
    FALLBACK_TEMPLATE = "fallback-template"


class ComputedBy(str, Enum):
    AI = "ai"
    HEURISTIC_FALLBACK = "heuristic-fallback"


@dataclass
class Session:
    owner_id: str
    job_position: str
    interview_stage: InterviewStage
    company_name: str | None = None
    experience_level: str = "intermediate"
    preferred_language: str = "en"
    voice_enabled: bool = True
    difficulty_level: str = "adaptive"
    focus_areas: list[str] = field(default_factory=list)
    max_questions: int = 5

    id: str = field(default_factory=_new_id)
    status: SessionStatus = SessionStatus.IDLE
    current_question_id: str | None = None
    questions_asked: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["interview_stage"] = self.interview_stage.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        payload = dict(data)
        payload["interview_stage"] = InterviewStage(payload["interview_stage"])
        payload["status"] = SessionStatus(payload.get("status") or SessionStatus.IDLE.value)
        payload["focus_areas"] = list(payload.get("focus_areas") or [])
        return cls(**payload)


@dataclass(frozen=True)
class Question:
    session_id: str
    sequence_number: int
    text: str
    category: str
    difficulty: str
    generated_by: GeneratedBy
    id: str = field(default_factory=_new_id)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["generated_by"] = self.generated_by.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Question":
        payload = dict(data)
        payload["generated_by"] = GeneratedBy(payload["generated_by"])
        return cls(**payload)


@dataclass(frozen=True)
class Response:
    session_id: str
    question_id: str
    text: str
    input_method: InputMethod
    word_count: int
    id: str = field(default_factory=_new_id)
    submitted_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["input_method"] = self.input_method.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Response":
        payload = dict(data)
        payload["input_method"] = InputMethod(payload["input_method"])
        return cls(**payload)


@dataclass(frozen=True)
class StarScores:
    situation: float
    task: float
    action: float
    result: float
    overall: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class EvaluationResult:
    """Scorer output before it is bound to a stored Response."""

    star_scores: StarScores
    strengths: tuple[str, ...]
    improvements: tuple[str, ...]
    suggestions: tuple[str, ...]
    model_answer: str
    computed_by: ComputedBy
    vocabulary_version: str | None = None

    @property
    def overall_rating(self) -> str:
        return overall_rating(self.star_scores.overall)


@dataclass(frozen=True)
class Evaluation:
    response_id: str
    question_id: str
    session_id: str
    star_scores: StarScores
    strengths: tuple[str, ...]
    improvements: tuple[str, ...]
    suggestions: tuple[str, ...]
    model_answer: str
    overall_rating: str
    computed_by: ComputedBy
    vocabulary_version: str | None = None
    created_at: float = field(default_factory=time.time)

    @classmethod
    def from_result(cls, result: EvaluationResult, response: Response) -> "Evaluation":
        return cls(
            response_id=response.id,
            question_id=response.question_id,
            session_id=response.session_id,
            star_scores=result.star_scores,
            strengths=tuple(result.strengths),
            improvements=tuple(result.improvements),
            suggestions=tuple(result.suggestions),
            model_answer=result.model_answer,
            overall_rating=result.overall_rating,
            computed_by=result.computed_by,
            vocabulary_version=result.vocabulary_version,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["computed_by"] = self.computed_by.value
        data["strengths"] = list(self.strengths)
        data["improvements"] = list(self.improvements)
        data["suggestions"] = list(self.suggestions)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Evaluation":
        payload = dict(data)
        payload["star_scores"] = StarScores(**payload["star_scores"])
        payload["computed_by"] = ComputedBy(payload["computed_by"])
        for key in ("strengths", "improvements", "suggestions"):
            payload[key] = tuple(payload.get(key) or ())
        return cls(**payload)


def overall_rating(score: float) -> str:
    if score >= 3.5:
        return "Pass"
    if score >= 3.0:
        return "Borderline"
    return "Needs Improvement"


def count_words(text: str) -> int:
    return len(str(text or "").split())
