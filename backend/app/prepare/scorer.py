from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from app.prepare.ai_client import AITextService, extract_payload
from app.prepare.errors import AIServiceError, MalformedPayload
from app.prepare.models import (
    ComputedBy,
    Evaluation,
    EvaluationResult,
    StarScores,
    overall_rating,
)
from app.prepare.orchestrator import LANGUAGE_NAMES
from app.prepare.vocabulary import DEFAULT_VOCABULARY, HeuristicVocabulary
from app.system_metrics import increment_metric
from core.config import PREPARE_AI_TIMEOUT_SEC
from core.logger import log_event

STAR_DIMENSIONS = ("situation", "task", "action", "result")


@dataclass(frozen=True)
class QuestionContext:
    question_text: str
    category: str = "behavioral"
    job_position: str = ""
    interview_stage: str = ""
    experience_level: str = "intermediate"
    preferred_language: str = "en"
    session_id: str = ""


def _clamp(value: float, low: float = 1.0, high: float = 5.0) -> float:
    return round(min(high, max(low, float(value))), 1)


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    return [" ".join(str(item).split()) for item in value if str(item or "").strip()]


def build_model_answer(context: QuestionContext) -> str:
    role = context.job_position or "this role"
    category = str(context.category or "behavioral").lower()
    if category in {"technical", "problem-solving"}:
        return (
            f"Situation: In my previous {role} position, a critical system started failing under load. "
            "Task: I was responsible for finding the root cause and restoring service. "
            "Action: I analyzed the metrics, isolated the faulty component and implemented a fix with automated tests. "
            "Result: Error rates dropped by 90% and the approach became our standard runbook."
        )
    if category in {"leadership", "teamwork"}:
        return (
            f"Situation: As a {role}, I joined a team that was missing its delivery deadlines. "
            "Task: My goal was to get the project back on schedule without burning people out. "
            "Action: I organized short daily check-ins, clarified ownership and removed blockers early. "
            "Result: We delivered two weeks ahead of the revised plan and team satisfaction improved."
        )
    return (
        f"Situation: While working as a {role}, our team faced a challenge that put a key deadline at risk. "
        "Task: I needed to find a way to deliver without lowering quality. "
        "Action: I prioritized the work, coordinated with stakeholders and automated a repetitive step. "
        "Result: We delivered on time and reduced manual effort by 30%."
    )


def heuristic_evaluate(
    text: str,
    context: QuestionContext | None = None,
    vocabulary: HeuristicVocabulary = DEFAULT_VOCABULARY,
) -> EvaluationResult:
    """Deterministic STAR scoring from keyword signals and answer length.

    Same text and same vocabulary always produce the same result.
    """
    body = str(text or "")
    words = vocabulary.count_words(body)
    score = vocabulary.base_score

    if words < vocabulary.short_answer_words:
        score += vocabulary.short_answer_delta
    elif vocabulary.medium_band[0] <= words <= vocabulary.medium_band[1]:
        score += vocabulary.medium_answer_delta
    elif words > vocabulary.long_answer_words:
        score += vocabulary.long_answer_delta

    strengths: list[str] = []
    improvements: list[str] = []
    suggestions: list[str] = []
    present: dict[str, bool] = {}

    for rule in vocabulary.signals:
        hit = bool(vocabulary.pattern(rule.name).search(body))
        present[rule.name] = hit
        if hit:
            score += rule.delta
            strengths.append(rule.strength)
        else:
            improvements.append(rule.improvement)
            suggestions.append(rule.suggestion)

    if words < vocabulary.short_answer_words:
        improvements.append(vocabulary.short_answer_improvement)
        suggestions.append(vocabulary.short_answer_suggestion)
    elif words > vocabulary.long_answer_words:
        strengths.append(vocabulary.detailed_answer_strength)

    if not suggestions:
        suggestions.extend(vocabulary.generic_suggestions)

    overall = _clamp(score, vocabulary.min_score, vocabulary.max_score)
    developed = 0.5 if words >= vocabulary.medium_band[0] else 0.0
    has_task = bool(vocabulary.pattern("task").search(body))

    star = StarScores(
        situation=_clamp(2.0 + (1.5 if present.get("context") else 0.0) + developed),
        task=_clamp(2.0 + (1.5 if has_task else 0.0) + developed),
        action=_clamp(2.0 + (1.5 if present.get("action") else 0.0) + developed),
        result=_clamp(
            2.0
            + (1.0 if present.get("results") else 0.0)
            + (1.0 if present.get("outcome") else 0.0)
            + (0.5 if present.get("numeral") else 0.0)
        ),
        overall=overall,
    )

    return EvaluationResult(
        star_scores=star,
        strengths=tuple(strengths),
        improvements=tuple(improvements),
        suggestions=tuple(suggestions),
        model_answer=build_model_answer(context or QuestionContext(question_text="")),
        computed_by=ComputedBy.HEURISTIC_FALLBACK,
        vocabulary_version=vocabulary.version,
    )


def build_evaluation_prompt(response_text: str, context: QuestionContext) -> str:
    language = LANGUAGE_NAMES.get(context.preferred_language, "English")
    return f"""
You are an expert interview coach evaluating a candidate answer with the STAR method.

Job Position: {context.job_position or "not specified"}
Interview Stage: {context.interview_stage or "not specified"}
Experience Level: {context.experience_level}
Question Category: {context.category}

Question:
{context.question_text}

Candidate Answer:
{response_text}

Score each STAR dimension from 1.0 to 5.0:
- situation: is the context clear and relevant?
- task: is the candidate's responsibility explicit?
- action: are the candidate's own actions specific?
- result: is the outcome concrete and measurable?

Write the feedback in {language}. Return JSON only:
{{
  "starScores": {{"situation": 0, "task": 0, "action": 0, "result": 0, "overall": 0}},
  "strengths": ["..."],
  "improvements": ["..."],
  "suggestions": ["..."],
  "modelAnswer": "..."
}}
""".strip()


def normalize_ai_evaluation(
    payload: dict,
    context: QuestionContext,
    vocabulary: HeuristicVocabulary = DEFAULT_VOCABULARY,
) -> EvaluationResult:
    raw_scores = payload.get("starScores") or payload.get("star_scores")
    if not isinstance(raw_scores, dict):
        raise MalformedPayload("AI evaluation is missing starScores")

    scores: dict[str, float] = {}
    for name in STAR_DIMENSIONS:
        try:
            scores[name] = _clamp(raw_scores[name])
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedPayload(f"AI evaluation has an invalid '{name}' score") from exc

    raw_overall = raw_scores.get("overall", payload.get("overallScore"))
    try:
        overall = _clamp(raw_overall)
    except (TypeError, ValueError):
        overall = _clamp(sum(scores.values()) / len(STAR_DIMENSIONS))

    feedback = payload.get("detailedFeedback") if isinstance(payload.get("detailedFeedback"), dict) else {}
    strengths = _string_list(payload.get("strengths") or feedback.get("strengths"))
    improvements = _string_list(
        payload.get("improvements") or feedback.get("improvements") or feedback.get("weaknesses")
    )
    suggestions = _string_list(payload.get("suggestions") or feedback.get("suggestions"))
    if not suggestions:
        suggestions = list(vocabulary.generic_suggestions)

    model_answer = " ".join(str(payload.get("modelAnswer") or "").split()) or build_model_answer(context)

    return EvaluationResult(
        star_scores=StarScores(overall=overall, **scores),
        strengths=tuple(strengths),
        improvements=tuple(improvements),
        suggestions=tuple(suggestions),
        model_answer=model_answer,
        computed_by=ComputedBy.AI,
    )


class EvaluationScorer:
    def __init__(
        self,
        ai_service: AITextService,
        timeout_sec: float = PREPARE_AI_TIMEOUT_SEC,
        vocabulary: HeuristicVocabulary = DEFAULT_VOCABULARY,
    ):
        self.ai_service = ai_service
        self.timeout_sec = timeout_sec
        self.vocabulary = vocabulary

    async def evaluate(self, response_text: str, context: QuestionContext) -> EvaluationResult:
        try:
            prompt = build_evaluation_prompt(response_text, context)
            raw = await self.ai_service.generate(prompt, self.timeout_sec)
            result = normalize_ai_evaluation(extract_payload(raw), context, self.vocabulary)
        except AIServiceError as exc:
            return self._fallback(response_text, context, reason=exc.kind)
        except Exception as exc:
            log_event("evaluation_scorer", "ai_unexpected_error", context.session_id, error=str(exc))
            return self._fallback(response_text, context, reason="unexpected-error")

        increment_metric("evaluations_ai")
        log_event(
            "evaluation_scorer",
            "evaluation_computed",
            context.session_id,
            computed_by=result.computed_by.value,
            overall=result.star_scores.overall,
        )
        return result

    def _fallback(self, response_text: str, context: QuestionContext, reason: str) -> EvaluationResult:
        result = heuristic_evaluate(response_text, context, self.vocabulary)
        increment_metric("evaluations_heuristic")
        log_event(
            "evaluation_scorer",
            "evaluation_fallback",
            context.session_id,
            reason=reason,
            overall=result.star_scores.overall,
            vocabulary_version=result.vocabulary_version,
        )
        return result


def summarize_session(evaluations: list[Evaluation], limit: int = 5) -> dict:
    """Aggregate evaluated turns for the session-completed event."""
    if not evaluations:
        return {
            "evaluatedTurns": 0,
            "averageStarScores": None,
            "overallScore": None,
            "overallRating": None,
            "strengths": [],
            "suggestions": [],
        }

    averages = {}
    for name in STAR_DIMENSIONS + ("overall",):
        values = [getattr(e.star_scores, name) for e in evaluations]
        averages[name] = round(sum(values) / len(values), 1)

    def _distinct(items):
        seen = []
        for item in items:
            if item not in seen:
                seen.append(item)
            if len(seen) >= limit:
                break
        return seen

    return {
        "evaluatedTurns": len(evaluations),
        "averageStarScores": averages,
        "overallScore": averages["overall"],
        "overallRating": overall_rating(averages["overall"]),
        "strengths": _distinct(s for e in evaluations for s in e.strengths),
        "suggestions": _distinct(s for e in evaluations for s in e.suggestions),
    }
