from __future__ import annotations

from app.prepare.models import Evaluation, Question, Session

# outbound event types
SESSION_CREATED = "session-created"
SESSION_JOINED = "session-joined"
QUESTION_GENERATED = "question-generated"
RESPONSE_EVALUATED = "response-evaluated"
SESSION_PAUSED = "session-paused"
SESSION_RESUMED = "session-resumed"
SESSION_COMPLETED = "session-completed"


def session_payload(session: Session) -> dict:
    return {
        "id": session.id,
        "ownerId": session.owner_id,
        "jobPosition": session.job_position,
        "companyName": session.company_name,
        "interviewStage": session.interview_stage.value,
        "experienceLevel": session.experience_level,
        "preferredLanguage": session.preferred_language,
        "voiceEnabled": session.voice_enabled,
        "difficultyLevel": session.difficulty_level,
        "focusAreas": list(session.focus_areas),
        "maxQuestions": session.max_questions,
        "status": session.status.value,
        "currentQuestionId": session.current_question_id,
        "questionsAsked": session.questions_asked,
        "createdAt": session.created_at,
        "updatedAt": session.updated_at,
        "completedAt": session.completed_at,
    }


def question_payload(question: Question) -> dict:
    return {
        "questionId": question.id,
        "sessionId": question.session_id,
        "sequenceNumber": question.sequence_number,
        "text": question.text,
        "category": question.category,
        "difficulty": question.difficulty,
        "generatedBy": question.generated_by.value,
        "createdAt": question.created_at,
    }


def evaluation_payload(evaluation: Evaluation) -> dict:
    payload = {
        "responseId": evaluation.response_id,
        "questionId": evaluation.question_id,
        "starScores": evaluation.star_scores.to_dict(),
        "strengths": list(evaluation.strengths),
        "improvements": list(evaluation.improvements),
        "suggestions": list(evaluation.suggestions),
        "modelAnswer": evaluation.model_answer,
        "overallRating": evaluation.overall_rating,
        "computedBy": evaluation.computed_by.value,
        "createdAt": evaluation.created_at,
    }
    if evaluation.vocabulary_version:
        payload["vocabularyVersion"] = evaluation.vocabulary_version
    return payload


def build_progress(session: Session, evaluations: list[Evaluation]) -> dict:
    max_questions = max(1, int(session.max_questions or 1))
    asked = int(session.questions_asked or 0)
    average = None
    if evaluations:
        average = round(sum(e.star_scores.overall for e in evaluations) / len(evaluations), 1)
    current_number = asked + 1 if session.current_question_id else asked
    return {
        "questionsAsked": asked,
        "maxQuestions": max_questions,
        "currentQuestionNumber": current_number,
        "progressPercentage": round(min(100.0, asked / max_questions * 100.0), 1),
        "averageStarScore": average,
    }


def question_event(question: Question, progress: dict, represented: bool = False) -> dict:
    event = {"type": QUESTION_GENERATED, **question_payload(question), "progress": progress}
    if represented:
        event["represented"] = True
    return event
