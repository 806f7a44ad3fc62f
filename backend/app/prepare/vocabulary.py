"""Versioned vocabulary and score deltas for the heuristic STAR scorer.

The heuristic evaluator reads every keyword list and numeric adjustment from a
``HeuristicVocabulary`` instance, so tuning the fallback means shipping a new
table rather than editing scoring code.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import re


@dataclass(frozen=True)
class SignalRule:
    name: str
    delta: float
    strength: str
    improvement: str
    suggestion: str
    phrases: tuple[str, ...] = ()
    regex: str | None = None

    def compile(self) -> re.Pattern:
        if self.regex:
            return re.compile(self.regex, re.IGNORECASE)
        parts = []
        for phrase in self.phrases:
            escaped = re.escape(phrase.lower())
            prefix = r"\b" if phrase[:1].isalnum() else ""
            suffix = r"\b" if phrase[-1:].isalnum() else ""
            parts.append(f"{prefix}{escaped}{suffix}")
        return re.compile("|".join(parts) or r"(?!x)x", re.IGNORECASE)


_TOKEN_RE = re.compile(r"[^\W_][\w'\-]*")

CONTEXT_WORDS = (
    "situation", "context", "background", "at the time", "previously", "in my previous role",
    "in my role", "my role as", "when i was", "while working", "while i was", "at my last job",
    "at my previous", "the company", "project", "client", "customer", "deadline", "challenge",
    "problem",
)

TASK_WORDS = (
    "responsible", "my task", "my goal", "goal", "objective", "needed to", "had to",
    "was asked to", "assigned", "my job was", "my role was",
)

ACTION_VERBS = (
    "led", "implemented", "developed", "designed", "built", "created", "organized", "organised",
    "coordinated", "launched", "initiated", "analyzed", "analysed", "resolved", "negotiated",
    "streamlined", "automated", "optimized", "optimised", "spearheaded", "established",
    "introduced", "restructured", "mentored", "migrated", "redesigned", "prioritized",
    "drove", "championed", "investigated", "diagnosed",
)

RESULT_WORDS = (
    "result", "results", "resulted", "outcome", "achieved", "accomplished", "delivered",
    "succeeded", "successfully", "led to", "as a result", "reduced", "increased", "improved",
)

OUTCOME_WORDS = (
    "reduced", "increased", "improved", "decreased", "saved", "grew", "boosted", "cut",
    "percent", "%", "revenue", "downtime", "efficiency", "savings", "faster", "impact",
    "growth", "retention", "satisfaction",
)


@dataclass(frozen=True)
class HeuristicVocabulary:
    version: str
    signals: tuple[SignalRule, ...]
    task_words: tuple[str, ...] = TASK_WORDS
    base_score: float = 3.0
    short_answer_words: int = 20
    short_answer_delta: float = -1.0
    medium_band: tuple[int, int] = (40, 80)
    medium_answer_delta: float = 0.2
    long_answer_words: int = 80
    long_answer_delta: float = 0.5
    min_score: float = 1.0
    max_score: float = 5.0
    short_answer_improvement: str = "The answer is too brief to demonstrate a full STAR story."
    short_answer_suggestion: str = "Expand your answer to cover Situation, Task, Action, and Result (aim for 60-120 words)."
    detailed_answer_strength: str = "Gave a detailed, well-developed answer."
    generic_suggestions: tuple[str, ...] = (
        "Use the STAR method to structure responses.",
        "Connect your experience to the requirements of the role.",
    )
    min_word_length: int = 2
    _compiled: dict = field(default_factory=dict, init=False, compare=False, repr=False)

    def count_words(self, text: str) -> int:
        """Count substantive words: tokens of ``min_word_length`` or more, plus any numeral."""
        tokens = _TOKEN_RE.findall(str(text or ""))
        return sum(1 for t in tokens if len(t) >= self.min_word_length or any(c.isdigit() for c in t))

    def pattern(self, name: str) -> re.Pattern:
        compiled = self._compiled.get(name)
        if compiled is None:
            if name == "task":
                compiled = SignalRule("task", 0.0, "", "", "", phrases=self.task_words).compile()
            else:
                rule = next(s for s in self.signals if s.name == name)
                compiled = rule.compile()
            self._compiled[name] = compiled
        return compiled


DEFAULT_VOCABULARY = HeuristicVocabulary(
    version="star-heuristic-v1",
    signals=(
        SignalRule(
            name="numeral",
            regex=r"\d",
            delta=0.4,
            strength="Quantified the story with concrete numbers.",
            improvement="No measurable figures were given.",
            suggestion="Include specific metrics, numbers, or percentages to show scale and impact.",
        ),
        SignalRule(
            name="outcome",
            phrases=OUTCOME_WORDS,
            delta=0.3,
            strength="Highlighted the measurable impact of your work.",
            improvement="The business impact of your actions is unclear.",
            suggestion="Describe the measurable impact on the team, customer, or business.",
        ),
        SignalRule(
            name="context",
            phrases=CONTEXT_WORDS,
            delta=0.3,
            strength="Set the scene with clear situational context.",
            improvement="The situation and background were not established.",
            suggestion="Open with the Situation: where you were, what was at stake, and when.",
        ),
        SignalRule(
            name="action",
            phrases=ACTION_VERBS,
            delta=0.4,
            strength="Described your actions with strong, specific verbs.",
            improvement="Your personal actions were not described in detail.",
            suggestion="Walk through the Actions you took yourself, using verbs such as 'led', 'designed' or 'implemented'.",
        ),
        SignalRule(
            name="results",
            phrases=RESULT_WORDS,
            delta=0.3,
            strength="Closed the story with a clear result.",
            improvement="The answer does not end with a clear result.",
            suggestion="Finish with the Result: what changed because of what you did.",
        ),
    ),
)
