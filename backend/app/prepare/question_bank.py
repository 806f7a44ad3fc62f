from __future__ import annotations

from dataclasses import dataclass

from app.prepare.models import InterviewStage


@dataclass(frozen=True)
class QuestionTemplate:
    category: str
    text: str


# ---------- STATIC FALLBACK BANK ----------

STAGE_TEMPLATES: dict[InterviewStage, tuple[QuestionTemplate, ...]] = {
    InterviewStage.PHONE_SCREENING: (
        QuestionTemplate("general", "Tell me about yourself and why you're interested in the {job_position} position."),
        QuestionTemplate("behavioral", "Describe a challenging situation you faced at work and how you handled it."),
        QuestionTemplate("general", "What are your greatest strengths and how do they relate to the {job_position} role?"),
        QuestionTemplate("behavioral", "Tell me about a time when you had to learn something new quickly."),
        QuestionTemplate("behavioral", "Tell me about a project you're particularly proud of."),
        QuestionTemplate("behavioral", "How do you prioritize your work when you have multiple deadlines?"),
    ),
    InterviewStage.FUNCTIONAL_TEAM: (
        QuestionTemplate("teamwork", "Describe a time when you had to collaborate with multiple team members to complete a project."),
        QuestionTemplate("situational", "How would you handle a situation where a team member is not contributing effectively?"),
        QuestionTemplate("behavioral", "Tell me about a time when you had to adapt to a significant change in your work process."),
        QuestionTemplate("communication", "Describe a situation where you had to communicate complex information to non-technical stakeholders."),
        QuestionTemplate("teamwork", "Give me an example of how you contributed to team success as a {job_position}."),
        QuestionTemplate("behavioral", "How do you handle receiving constructive criticism or feedback?"),
    ),
    InterviewStage.HIRING_MANAGER: (
        QuestionTemplate("leadership", "Tell me about a time when you had to lead a team through a difficult project as a {job_position}."),
        QuestionTemplate("problem-solving", "Describe a complex problem you solved in your role as {job_position}."),
        QuestionTemplate("leadership", "Describe a situation where you had to motivate team members who were struggling."),
        QuestionTemplate("behavioral", "Tell me about a time when you identified and solved a process improvement opportunity."),
        QuestionTemplate("behavioral", "Tell me about a time when you had to take initiative on a project without being asked."),
        QuestionTemplate("behavioral", "Tell me about a time when you made a mistake and how you handled it."),
    ),
    InterviewStage.SUBJECT_MATTER_EXPERTISE: (
        QuestionTemplate("technical", "Walk me through your approach to troubleshooting a critical issue as a {job_position}."),
        QuestionTemplate("technical", "Describe the most technically demanding project you delivered as a {job_position}."),
        QuestionTemplate("problem-solving", "Tell me about a time when you had to find a creative solution under pressure."),
        QuestionTemplate("technical", "How do you keep your {job_position} skills current with industry developments?"),
        QuestionTemplate("behavioral", "Tell me about a time when you had to work with limited resources to achieve your goals."),
        QuestionTemplate("technical", "Describe a decision where you had to trade off quality against delivery speed."),
    ),
    InterviewStage.EXECUTIVE_FINAL: (
        QuestionTemplate("leadership", "What would your first ninety days as {job_position} look like?"),
        QuestionTemplate("leadership", "Tell me about a strategic decision you drove and how you measured its impact."),
        QuestionTemplate("company-specific", "Why do you want to join {company_name}, and what would you change first?"),
        QuestionTemplate("leadership", "Give me an example of how you handled a conflict between senior stakeholders."),
        QuestionTemplate("behavioral", "Describe a challenging deadline you've had to meet and how you ensured success."),
        QuestionTemplate("general", "Where do you see yourself growing as a {job_position} over the next few years?"),
    ),
}


def render_template(template: QuestionTemplate, job_position: str, company_name: str | None) -> str:
    return template.text.format(
        job_position=str(job_position or "this role").strip() or "this role",
        company_name=str(company_name or "our company").strip() or "our company",
    )


def select_fallback_question(
    stage: InterviewStage,
    sequence_number: int,
    job_position: str,
    company_name: str | None = None,
    prior_texts: list[str] | None = None,
    focus_areas: list[str] | None = None,
) -> QuestionTemplate:
    """Pick a template deterministically and render it.

    Starts at ``sequence_number - 1`` in the stage bank, prefers templates in
    ``focus_areas`` and skips texts already asked. When every template has been
    asked the rotation simply repeats.
    """
    templates = STAGE_TEMPLATES.get(stage) or STAGE_TEMPLATES[InterviewStage.PHONE_SCREENING]
    asked = {str(text or "").strip().lower() for text in (prior_texts or [])}
    focus = {str(area or "").strip().lower() for area in (focus_areas or []) if str(area or "").strip()}
    offset = max(0, int(sequence_number) - 1)

    ordered = [templates[(offset + step) % len(templates)] for step in range(len(templates))]
    rendered = [
        QuestionTemplate(t.category, render_template(t, job_position, company_name))
        for t in ordered
    ]
    fresh = [t for t in rendered if t.text.lower() not in asked]

    if focus:
        focused = [t for t in fresh if t.category in focus]
        if focused:
            return focused[0]
    if fresh:
        return fresh[0]
    return rendered[0]
