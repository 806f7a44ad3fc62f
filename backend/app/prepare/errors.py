from __future__ import annotations

from typing import Any


class PrepareEngineError(Exception):
    """Base error for the coaching session engine.

    ``kind`` is the stable identifier sent to clients in ``error`` events.
    """

    kind = "engine-error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class SessionNotFound(PrepareEngineError):
    kind = "session-not-found"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", {"session_id": session_id})


class InvalidSessionConfig(PrepareEngineError):
    kind = "invalid-config"


class InvalidTransition(PrepareEngineError):
    kind = "invalid-transition"

    def __init__(self, session_id: str, current: str, attempted: str):
        super().__init__(
            f"Cannot {attempted} session in status '{current}'",
            {"session_id": session_id, "status": current, "operation": attempted},
        )


class StaleQuestion(PrepareEngineError):
    kind = "stale-question"

    def __init__(self, session_id: str, question_id: str, current_question_id: str | None):
        super().__init__(
            "Question is no longer the active question for this session",
            {
                "session_id": session_id,
                "question_id": question_id,
                "current_question_id": current_question_id,
            },
        )


class SessionBusy(PrepareEngineError):
    kind = "session-busy"

    def __init__(self, session_id: str):
        super().__init__("Session is processing another request; retry shortly", {"session_id": session_id})


class VoiceStreamError(PrepareEngineError):
    kind = "voice-stream-error"


class VoiceTurnActive(VoiceStreamError):
    kind = "voice-turn-active"

    def __init__(self, session_id: str, question_id: str):
        super().__init__(
            "A voice turn is already in progress for this session",
            {"session_id": session_id, "question_id": question_id},
        )


class IncompleteStream(VoiceStreamError):
    kind = "incomplete-stream"

    def __init__(self, session_id: str, question_id: str, missing: list[int], expected_total: int | None):
        super().__init__(
            "Voice recording is incomplete; please record your answer again",
            {
                "session_id": session_id,
                "question_id": question_id,
                "missing_indices": list(missing),
                "expected_total": expected_total,
                "retry": True,
            },
        )
        self.missing = list(missing)
        self.expected_total = expected_total


class TranscriptionError(PrepareEngineError):
    kind = "transcription-failed"


class AIServiceError(PrepareEngineError):
    """Timeout or failure of the AI text service. Always recovered by a fallback."""

    kind = "ai-unavailable"


class MalformedPayload(AIServiceError):
    kind = "malformed-payload"


class InvalidResponse(PrepareEngineError):
    kind = "invalid-response"
