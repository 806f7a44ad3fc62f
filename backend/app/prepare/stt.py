from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import time
from typing import Protocol

from openai import AsyncOpenAI

from app.prepare.errors import TranscriptionError
from app.system_metrics import observe_stt_latency_ms
from core.config import OPENAI_API_KEY, PREPARE_STT_MODEL, PREPARE_STT_TIMEOUT_SEC, STT_PROVIDER

logger = logging.getLogger("app.prepare.stt")


class SpeechToText(Protocol):
    async def transcribe(self, audio: bytes, language: str | None = None) -> str:
        ...


class OpenAITranscriber:
    def __init__(
        self,
        api_key: str,
        model: str = PREPARE_STT_MODEL,
        timeout_sec: float = PREPARE_STT_TIMEOUT_SEC,
        filename: str = "answer.webm",
    ):
        self._api_key = str(api_key or "").strip()
        self._model = model
        self._timeout_sec = timeout_sec
        self._filename = filename
        self._client = AsyncOpenAI(api_key=self._api_key) if self._api_key else None

    async def transcribe(self, audio: bytes, language: str | None = None) -> str:
        if self._client is None:
            raise TranscriptionError("Speech-to-text is not configured on the server")
        if not audio:
            raise TranscriptionError("No audio received")

        kwargs = {"model": self._model, "file": (self._filename, bytes(audio))}
        if language:
            kwargs["language"] = str(language).split("-")[0]

        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self._client.audio.transcriptions.create(**kwargs),
                timeout=self._timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("stt timeout | timeout_sec=%s bytes=%s", self._timeout_sec, len(audio))
            raise TranscriptionError("Transcription timed out; please try again") from exc
        except Exception as exc:
            logger.warning("stt failure | err=%s", exc)
            raise TranscriptionError("Transcription failed; please try again") from exc
        finally:
            observe_stt_latency_ms((time.perf_counter() - started) * 1000.0)

        text = " ".join(str(getattr(result, "text", "") or "").split())
        if not text:
            raise TranscriptionError("No speech detected; please try again")
        return text


class LocalWhisperTranscriber:
    """Runs the ``openai-whisper`` model in a worker thread."""

    def __init__(self, model_name: str = "base", timeout_sec: float = PREPARE_STT_TIMEOUT_SEC):
        try:
            import whisper  # type: ignore
        except Exception as exc:
            raise RuntimeError(
                "Whisper is not installed. Install the optional dependency 'openai-whisper' (and FFmpeg) to enable local transcription."
            ) from exc

        self.model = whisper.load_model(model_name)
        self._timeout_sec = timeout_sec

    def _transcribe_file(self, audio: bytes, language: str | None) -> str:
        with tempfile.NamedTemporaryFile(delete=False, suffix=".webm") as f:
            f.write(audio)
            path = f.name
        try:
            result = self.model.transcribe(path, language=language or None)
        finally:
            os.unlink(path)
        return str(result.get("text") or "")

    async def transcribe(self, audio: bytes, language: str | None = None) -> str:
        if not audio:
            raise TranscriptionError("No audio received")
        started = time.perf_counter()
        try:
            text = await asyncio.wait_for(
                asyncio.to_thread(self._transcribe_file, bytes(audio), language),
                timeout=self._timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            raise TranscriptionError("Transcription timed out; please try again") from exc
        except Exception as exc:
            logger.warning("local stt failure | err=%s", exc)
            raise TranscriptionError("Transcription failed; please try again") from exc
        finally:
            observe_stt_latency_ms((time.perf_counter() - started) * 1000.0)

        text = " ".join(text.split())
        if not text:
            raise TranscriptionError("No speech detected; please try again")
        return text


def build_transcriber(provider: str = STT_PROVIDER) -> SpeechToText:
    normalized = str(provider or "openai").strip().lower()
    if normalized == "openai":
        return OpenAITranscriber(api_key=OPENAI_API_KEY)
    if normalized in {"whisper", "whisper-local", "local"}:
        return LocalWhisperTranscriber()
    raise RuntimeError(f"Unknown STT_PROVIDER '{provider}' (expected openai or whisper-local)")
