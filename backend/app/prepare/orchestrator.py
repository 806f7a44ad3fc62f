from __future__ import annotations

from dataclasses import dataclass

from app.prepare.ai_client import AITextService, extract_payload
from app.prepare.errors import AIServiceError
from app.prepare.models import Evaluation, GeneratedBy, Question, Session
from app.prepare.question_bank import select_fallback_question
from app.system_metrics import increment_metric
from core.config import PREPARE_AI_TIMEOUT_SEC
from core.logger import log_event

LANGUAGE_NAMES = {
    "en": "English",
    "id": "Indonesian",
    "ms": "Malay",
    "th": "Thai",
    "vi": "Vietnamese",
    "tl": "Filipino",
    "my": "Myanmar",
    "km": "Khmer",
    "lo": "Lao",
    "zh": "Chinese",
}

MAX_QUESTION_CHARS = 600


@dataclass(frozen=True)
class QuestionDraft:
    text: str
    category: str
    difficulty: str
    generated_by: GeneratedBy


def _average_overall(evaluations: list[Evaluation]) -> float | None:
    if not evaluations:
        return None
    return sum(e.star_scores.overall for e in evaluations) / len(evaluations)


def resolve_difficulty(session: Session, evaluations: list[Evaluation]) -> str:
    level = str(session.difficulty_level or "adaptive").strip().lower()
    if level != "adaptive":
        return level
    avg = _average_overall(evaluations)
    if avg is None:
        return "intermediate"
    if avg >= 4.5:
        return "advanced"
    if avg <= 2.5:
        return "beginner"
    return "intermediate"


def adaptive_hint(evaluations: list[Evaluation]) -> str:
    avg = _average_overall(evaluations)
    if avg is None:
        return ""
    if avg >= 4.5:
        return "Previous answers were strong. Ask a more challenging question."
    if avg <= 2.5:
        return "Previous answers need improvement. Ask a supportive, foundational question."
    return "Previous answers were moderate. Keep the current difficulty."


def build_question_prompt(
    session: Session,
    prior_questions: list[Question],
    evaluations: list[Evaluation],
    difficulty: str,
) -> str:
    language = LANGUAGE_NAMES.get(session.preferred_language, "English")
    asked = "\n".join(f"- {q.text}" for q in prior_questions) or "- (none yet)"
    focus = ", ".join(session.focus_areas) or "behavioral, situational"
    hint = adaptive_hint(evaluations)

    return f"""
You are a professional interviewer running a mock interview.

Job Position: {session.job_position}
Company: {session.company_name or "not specified"}
Interview Stage: {session.interview_stage.value}
Experience Level: {session.experience_level}
Difficulty: {difficulty}
Focus Areas: {focus}
Question Number: {len(prior_questions) + 1} of {session.max_questions}
{hint}

Questions already asked (do not repeat them):
{asked}

Ask the NEXT best interview question, written in {language}.
Return JSON only:
{{
  "questionText": "...",
  "questionCategory": "behavioral | situational | technical | leadership | teamwork | general",
  "difficulty": "{difficulty}"
}}
""".strip()


class QuestionOrchestrator:
    def __init__(self, ai_service: AITextService, timeout_sec: float = PREPARE_AI_TIMEOUT_SEC):
        self.ai_service = ai_service
        self.timeout_sec = timeout_sec

    async def next_question(
        self,
        session: Session,
        prior_questions: list[Question],
        evaluations: list[Evaluation] | None = None,
    ) -> QuestionDraft:
        evaluations = list(evaluations or [])
        difficulty = resolve_difficulty(session, evaluations)
        prior_texts = [q.text for q in prior_questions]

        try:
            prompt = build_question_prompt(session, prior_questions, evaluations, difficulty)
            raw = await self.ai_service.generate(prompt, self.timeout_sec)
            draft = self._parse(raw, difficulty, prior_texts)
        except AIServiceError as exc:
            return self._fallback(session, prior_questions, difficulty, reason=exc.kind)
        except Exception as exc:
            log_event("question_orchestrator", "ai_unexpected_error", session.id, error=str(exc))
            return self._fallback(session, prior_questions, difficulty, reason="unexpected-error")

        if draft is None:
            return self._fallback(session, prior_questions, difficulty, reason="invalid-question")

        increment_metric("questions_generated_ai")
        log_event(
            "question_orchestrator",
            "question_generated",
            session.id,
            generated_by=draft.generated_by.value,
            category=draft.category,
            sequence_number=len(prior_questions) + 1,
        )
        return draft

    def _parse(self, raw: str, difficulty: str, prior_texts: list[str]) -> QuestionDraft | None:
        payload = extract_payload(raw)
        text = " ".join(str(payload.get("questionText") or payload.get("question") or "").split())
        if not text or len(text) > MAX_QUESTION_CHARS:
            return None
        if text.lower() in {t.strip().lower() for t in prior_texts}:
            return None
        category = str(payload.get("questionCategory") or payload.get("category") or "behavioral").strip().lower()
        return QuestionDraft(
            text=text,
            category=category or "behavioral",
            difficulty=str(payload.get("difficulty") or difficulty).strip().lower() or difficulty,
            generated_by=GeneratedBy.AI,
        )

    def _fallback(
        self,
        session: Session,
        prior_questions: list[Question],
        difficulty: str,
        reason: str,
    ) -> QuestionDraft:
        template = select_fallback_question(
            stage=session.interview_stage,
            sequence_number=len(prior_questions) + 1,
            job_position=session.job_position,
            company_name=session.company_name,
            prior_texts=[q.text for q in prior_questions],
            focus_areas=session.focus_areas,
        )
        increment_metric("questions_generated_fallback")
        log_event(
            "question_orchestrator",
            "question_fallback",
            session.id,
            reason=reason,
            category=template.category,
            sequence_number=len(prior_questions) + 1,
        )
        return QuestionDraft(
            text=template.text,
            category=template.category,
            difficulty=difficulty,
            generated_by=GeneratedBy.FALLBACK_TEMPLATE,
        )
