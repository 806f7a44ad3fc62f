from __future__ import annotations

import base64
import binascii

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.prepare.models import InputMethod, InterviewStage


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class SessionConfig(_CamelModel):
    job_position: str
    interview_stage: InterviewStage
    company_name: str | None = None
    experience_level: str = "intermediate"
    preferred_language: str = "en"
    voice_enabled: bool = True
    difficulty_level: str = "adaptive"
    focus_areas: list[str] = Field(default_factory=list)
    max_questions: int | None = Field(default=None, ge=1, le=20)

    @field_validator("job_position")
    @classmethod
    def _job_position_required(cls, value: str) -> str:
        cleaned = str(value or "").strip()
        if not cleaned:
            raise ValueError("jobPosition must not be empty")
        return cleaned

    @field_validator("preferred_language")
    @classmethod
    def _normalize_language(cls, value: str) -> str:
        return str(value or "en").strip().lower() or "en"


class AuthenticateMessage(_CamelModel):
    user_id: str = Field(min_length=1)
    token: str | None = None


class CreateSessionMessage(_CamelModel):
    config: SessionConfig


class SessionMessage(_CamelModel):
    session_id: str = Field(min_length=1)


class VoiceTurnMessage(SessionMessage):
    question_id: str = Field(min_length=1)


class VoiceChunkMessage(VoiceTurnMessage):
    index: int = Field(ge=0)
    audio: bytes = Field(alias="bytes")
    is_last: bool = False

    @field_validator("audio", mode="before")
    @classmethod
    def _decode_audio(cls, value):
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        try:
            return base64.b64decode(str(value or ""), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("bytes must be base64 encoded") from exc


class VoiceEndMessage(VoiceTurnMessage):
    total_chunks: int | None = Field(default=None, ge=0)


class SubmitTextResponseMessage(VoiceTurnMessage):
    text: str
    input_method: InputMethod = InputMethod.TEXT

    @field_validator("text")
    @classmethod
    def _text_required(cls, value: str) -> str:
        cleaned = str(value or "").strip()
        if not cleaned:
            raise ValueError("text must not be empty")
        return cleaned


class SessionStatusUpdate(_CamelModel):
    status: str

    @field_validator("status")
    @classmethod
    def _known_status(cls, value: str) -> str:
        normalized = str(value or "").strip().lower()
        if normalized not in {"active", "paused", "completed"}:
            raise ValueError("status must be one of: active, paused, completed")
        return normalized
