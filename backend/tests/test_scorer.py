import dataclasses
import json

import pytest

from app.prepare.models import ComputedBy, Evaluation, Response, InputMethod
from app.prepare.scorer import (
    EvaluationScorer,
    QuestionContext,
    heuristic_evaluate,
    summarize_session,
)
from app.prepare.vocabulary import DEFAULT_VOCABULARY


SHORT_ANSWER = "I had to fix a bug once. It was hard but I managed to do it. The team was happy."


def _context() -> QuestionContext:
    return QuestionContext(
        question_text="Describe a complex problem you solved.",
        category="problem-solving",
        job_position="Backend Engineer",
        interview_stage="hiring-manager",
        session_id="s-1",
    )


def test_heuristic_short_vague_answer_scores_low_with_suggestions():
    result = heuristic_evaluate(SHORT_ANSWER)

    assert result.star_scores.overall <= 2.0
    assert result.star_scores.overall == 2.0
    assert result.suggestions
    assert DEFAULT_VOCABULARY.short_answer_suggestion in result.suggestions
    assert result.computed_by == ComputedBy.HEURISTIC_FALLBACK
    assert result.vocabulary_version == DEFAULT_VOCABULARY.version
    assert result.overall_rating == "Needs Improvement"


def test_heuristic_detailed_star_answer_scores_high(star_answer: str):
    assert len(star_answer.split()) == 90

    result = heuristic_evaluate(star_answer)

    assert result.star_scores.overall >= 4.0
    assert result.overall_rating == "Pass"
    assert DEFAULT_VOCABULARY.detailed_answer_strength in result.strengths
    assert list(result.suggestions) == list(DEFAULT_VOCABULARY.generic_suggestions)
    assert not result.improvements


def test_heuristic_is_deterministic(star_answer: str):
    assert heuristic_evaluate(SHORT_ANSWER) == heuristic_evaluate(SHORT_ANSWER)
    assert heuristic_evaluate(star_answer, _context()) == heuristic_evaluate(star_answer, _context())


def test_heuristic_word_boundary_matching():
    # "misled" must not count as the action verb "led"
    result = heuristic_evaluate("They misled everyone about the schedule and nobody noticed until much later on.")
    assert DEFAULT_VOCABULARY.signals[3].strength not in result.strengths


def test_heuristic_scores_stay_in_bounds():
    for text in ("", "ok", SHORT_ANSWER, "word " * 500):
        result = heuristic_evaluate(text)
        for value in dataclasses.astuple(result.star_scores):
            assert 1.0 <= value <= 5.0


def test_heuristic_uses_replaceable_vocabulary():
    lenient = dataclasses.replace(DEFAULT_VOCABULARY, version="lenient-test", base_score=4.0)
    result = heuristic_evaluate(SHORT_ANSWER, vocabulary=lenient)

    assert result.star_scores.overall == 3.0
    assert result.vocabulary_version == "lenient-test"


@pytest.mark.asyncio
async def test_scorer_normalizes_ai_payload(fake_ai_factory):
    payload = {
        "starScores": {"situation": 6.2, "task": 3, "action": 4, "result": 2.04},
        "strengths": ["Clear context", "  "],
        "improvements": "Quantify the outcome",
        "modelAnswer": "Situation ... Result ...",
    }
    ai = fake_ai_factory(replies=["<think>scoring now</think>\n" + json.dumps(payload)])
    scorer = EvaluationScorer(ai, timeout_sec=1)

    result = await scorer.evaluate("my answer", _context())

    assert result.computed_by == ComputedBy.AI
    assert result.star_scores.situation == 5.0
    assert result.star_scores.result == 2.0
    assert result.star_scores.overall == 3.5
    assert list(result.strengths) == ["Clear context"]
    assert list(result.improvements) == ["Quantify the outcome"]
    assert list(result.suggestions) == list(DEFAULT_VOCABULARY.generic_suggestions)
    assert result.vocabulary_version is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply",
    [
        "",
        "I cannot help with that.",
        '{"starScores": {"situation": 4, "task": 4}}',
        '{"starScores": {"situation": "high", "task": 4, "action": 4, "result": 4}}',
        RuntimeError("socket closed"),
    ],
)
async def test_scorer_falls_back_to_heuristic(fake_ai_factory, reply):
    ai = fake_ai_factory(replies=[reply])
    scorer = EvaluationScorer(ai, timeout_sec=1)

    result = await scorer.evaluate(SHORT_ANSWER, _context())

    assert result.computed_by == ComputedBy.HEURISTIC_FALLBACK
    assert result == heuristic_evaluate(SHORT_ANSWER, _context())


@pytest.mark.asyncio
async def test_scorer_falls_back_when_ai_unavailable(fake_ai_factory):
    scorer = EvaluationScorer(fake_ai_factory(), timeout_sec=1)
    result = await scorer.evaluate(SHORT_ANSWER, _context())
    assert result.computed_by == ComputedBy.HEURISTIC_FALLBACK
    assert result.model_answer


def test_summarize_session_averages_and_dedupes(star_answer: str):
    evaluations = []
    for idx, text in enumerate([SHORT_ANSWER, star_answer, SHORT_ANSWER]):
        response = Response(
            session_id="s-1",
            question_id=f"q-{idx}",
            text=text,
            input_method=InputMethod.TEXT,
            word_count=len(text.split()),
        )
        evaluations.append(Evaluation.from_result(heuristic_evaluate(text), response))

    summary = summarize_session(evaluations)

    assert summary["evaluatedTurns"] == 3
    assert summary["overallScore"] == 3.0
    assert summary["overallRating"] == "Borderline"
    assert len(summary["suggestions"]) == len(set(summary["suggestions"]))
    assert len(summary["strengths"]) <= 5


def test_summarize_session_empty():
    summary = summarize_session([])
    assert summary["evaluatedTurns"] == 0
    assert summary["overallRating"] is None
