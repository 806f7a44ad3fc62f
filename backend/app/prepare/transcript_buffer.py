from __future__ import annotations

from dataclasses import dataclass, field
import time
from threading import Lock
from typing import Callable

from app.prepare.errors import IncompleteStream, VoiceStreamError, VoiceTurnActive
from app.system_metrics import increment_metric
from core.config import VOICE_GRACE_PERIOD_SEC, VOICE_MAX_AUDIO_BYTES
from core.logger import log_event


@dataclass
class VoiceChunkBuffer:
    session_id: str
    question_id: str
    started_at: float
    owner_id: str | None = None
    chunks: dict[int, bytes] = field(default_factory=dict)
    expected_total: int | None = None
    total_bytes: int = 0
    expires_at: float | None = None

    @property
    def received_count(self) -> int:
        return len(self.chunks)

    def missing_indices(self, expected_total: int) -> list[int]:
        return [index for index in range(expected_total) if index not in self.chunks]

    def snapshot(self) -> dict:
        return {
            "session_id": self.session_id,
            "question_id": self.question_id,
            "received_count": self.received_count,
            "expected_total": self.expected_total,
            "total_bytes": self.total_bytes,
            "expires_at": self.expires_at,
        }


class TranscriptBuffer:
    """Reassembles streamed voice chunks into one audio payload per question turn.

    One buffer per session. Chunks are keyed by index so arrival order does not
    matter and a repeated index overwrites the earlier payload. A failed
    ``finalize`` keeps the buffer for ``grace_period_sec`` so late chunks can
    still complete it; ``cleanup_expired`` purges buffers past that deadline.
    """

    def __init__(
        self,
        grace_period_sec: float = VOICE_GRACE_PERIOD_SEC,
        max_audio_bytes: int = VOICE_MAX_AUDIO_BYTES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lock = Lock()
        self._buffers: dict[str, VoiceChunkBuffer] = {}
        self.grace_period_sec = max(0.0, float(grace_period_sec))
        self.max_audio_bytes = max(1, int(max_audio_bytes))
        self._clock = clock

    def start(self, session_id: str, question_id: str, owner_id: str | None = None) -> VoiceChunkBuffer:
        now = self._clock()
        with self._lock:
            existing = self._buffers.get(session_id)
            if existing is not None and self._is_expired(existing, now):
                self._buffers.pop(session_id, None)
                increment_metric("voice_buffers_expired")
                existing = None
            # a buffer waiting out its grace period is replaced by a fresh recording
            if existing is not None and existing.expires_at is None:
                raise VoiceTurnActive(session_id, existing.question_id)
            buffer = VoiceChunkBuffer(
                session_id=session_id,
                question_id=question_id,
                started_at=now,
                owner_id=owner_id,
            )
            self._buffers[session_id] = buffer
        log_event("transcript_buffer", "voice_started", session_id, question_id=question_id)
        return buffer

    def append_chunk(
        self,
        session_id: str,
        question_id: str,
        index: int,
        payload: bytes,
        is_last: bool = False,
    ) -> VoiceChunkBuffer:
        if int(index) < 0:
            raise VoiceStreamError("Chunk index must be non-negative", {"session_id": session_id, "index": index})

        now = self._clock()
        with self._lock:
            buffer = self._live_buffer(session_id, question_id, now)
            data = bytes(payload or b"")
            previous = buffer.chunks.get(int(index))
            next_total = buffer.total_bytes - len(previous or b"") + len(data)
            if next_total > self.max_audio_bytes:
                self._buffers.pop(session_id, None)
                raise VoiceStreamError(
                    "Voice recording exceeds the maximum audio size",
                    {"session_id": session_id, "max_audio_bytes": self.max_audio_bytes},
                )
            buffer.chunks[int(index)] = data
            buffer.total_bytes = next_total
            if is_last:
                buffer.expected_total = int(index) + 1
            return buffer

    def finalize(self, session_id: str, question_id: str, total_chunks: int | None = None) -> bytes:
        """Return the chunks concatenated in index order and drop the buffer.

        The expected total is whichever of ``total_chunks`` and the ``is_last``
        marker is known; when both are known the larger wins.
        """
        now = self._clock()
        with self._lock:
            buffer = self._live_buffer(session_id, question_id, now)
            candidates = [value for value in (buffer.expected_total, total_chunks) if value is not None]
            expected = max(int(value) for value in candidates) if candidates else None

            missing = buffer.missing_indices(expected) if expected is not None else []
            extra = [index for index in buffer.chunks if expected is not None and index >= expected]
            if expected is None or expected <= 0 or missing or extra:
                buffer.expires_at = now + self.grace_period_sec
                increment_metric("voice_streams_incomplete")
                log_event(
                    "transcript_buffer",
                    "voice_incomplete",
                    session_id,
                    question_id=question_id,
                    received=buffer.received_count,
                    expected_total=expected,
                    missing=missing[:20],
                )
                raise IncompleteStream(session_id, question_id, missing, expected)

            audio = b"".join(buffer.chunks[index] for index in range(expected))
            self._buffers.pop(session_id, None)

        increment_metric("voice_streams_finalized")
        log_event(
            "transcript_buffer",
            "voice_finalized",
            session_id,
            question_id=question_id,
            chunks=expected,
            audio=audio,
        )
        return audio

    def discard(self, session_id: str, question_id: str | None = None) -> bool:
        with self._lock:
            buffer = self._buffers.get(session_id)
            if buffer is None:
                return False
            if question_id is not None and buffer.question_id != question_id:
                return False
            self._buffers.pop(session_id, None)
        log_event("transcript_buffer", "voice_discarded", session_id, question_id=buffer.question_id)
        return True

    def discard_owned_by(self, owner_id: str) -> list[str]:
        with self._lock:
            session_ids = [sid for sid, buf in self._buffers.items() if buf.owner_id == owner_id]
            for session_id in session_ids:
                self._buffers.pop(session_id, None)
        return session_ids

    def cleanup_expired(self, now: float | None = None) -> int:
        current = self._clock() if now is None else float(now)
        removed = 0
        with self._lock:
            for session_id, buffer in list(self._buffers.items()):
                if self._is_expired(buffer, current):
                    self._buffers.pop(session_id, None)
                    removed += 1
        if removed:
            increment_metric("voice_buffers_expired", removed)
        return removed

    def get(self, session_id: str) -> dict | None:
        with self._lock:
            buffer = self._buffers.get(session_id)
            return buffer.snapshot() if buffer else None

    def _live_buffer(self, session_id: str, question_id: str, now: float) -> VoiceChunkBuffer:
        buffer = self._buffers.get(session_id)
        if buffer is not None and self._is_expired(buffer, now):
            self._buffers.pop(session_id, None)
            increment_metric("voice_buffers_expired")
            buffer = None
        if buffer is None or buffer.question_id != question_id:
            raise VoiceStreamError(
                "No voice recording in progress for this question",
                {"session_id": session_id, "question_id": question_id},
            )
        return buffer

    @staticmethod
    def _is_expired(buffer: VoiceChunkBuffer, now: float) -> bool:
        return buffer.expires_at is not None and now >= buffer.expires_at
