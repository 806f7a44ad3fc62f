from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Protocol

from openai import AsyncOpenAI

from app.prepare.errors import AIServiceError, MalformedPayload
from app.system_metrics import observe_ai_latency_ms

logger = logging.getLogger("app.prepare.ai_client")

_REASONING_BLOCK_RE = re.compile(
    r"<\s*(think|thinking|reasoning|reflection)\s*>.*?<\s*/\s*\1\s*>",
    re.IGNORECASE | re.DOTALL,
)
_DANGLING_TAG_RE = re.compile(r"<\s*/?\s*(think|thinking|reasoning|reflection)\s*>", re.IGNORECASE)
_PREAMBLE_RE = re.compile(
    r"^\s*(okay|ok|alright|hmm+|so,|well,|let me|let's|i need to|i should|i will|i'll|first,? i|"
    r"we need to|the user (wants|asks|is asking)|thinking:|reasoning:|thought:)",
    re.IGNORECASE,
)


class AITextService(Protocol):
    async def generate(self, prompt: str, timeout_sec: float) -> str:
        ...


class OpenAITextService:
    def __init__(self, api_key: str, model: str, temperature: float = 0.4, retries: int = 0):
        self._api_key = str(api_key or "").strip()
        self._model = model
        self._temperature = temperature
        self._retries = max(0, int(retries))
        self._client = AsyncOpenAI(api_key=self._api_key) if self._api_key else None

    async def generate(self, prompt: str, timeout_sec: float) -> str:
        if self._client is None:
            raise AIServiceError("OPENAI_API_KEY is not configured")
        if not str(prompt or "").strip():
            raise AIServiceError("Empty prompt")

        last_error: Exception | None = None
        for attempt in range(self._retries + 1):
            started = time.perf_counter()
            try:
                response = await asyncio.wait_for(
                    self._client.chat.completions.create(
                        model=self._model,
                        messages=[
                            {
                                "role": "system",
                                "content": "You are an interview coach. Output a single JSON object only.",
                            },
                            {"role": "user", "content": prompt},
                        ],
                        temperature=self._temperature,
                    ),
                    timeout=timeout_sec,
                )
                observe_ai_latency_ms((time.perf_counter() - started) * 1000.0)
                message = response.choices[0].message.content
                return str(message or "").strip()
            except asyncio.TimeoutError as exc:
                last_error = exc
                logger.warning("ai generate timeout | attempt=%s timeout_sec=%s", attempt + 1, timeout_sec)
            except Exception as exc:
                last_error = exc
                logger.warning("ai generate failure | attempt=%s err=%s", attempt + 1, exc)

        raise AIServiceError(f"AI text service unavailable: {last_error or 'unknown error'}")


def strip_reasoning(text: str) -> str:
    """Remove reasoning blocks and reasoning-preamble lines from model output."""
    cleaned = _REASONING_BLOCK_RE.sub("", str(text or ""))
    cleaned = _DANGLING_TAG_RE.sub("", cleaned)
    kept = []
    for line in cleaned.splitlines():
        if "{" not in line and "}" not in line and _PREAMBLE_RE.match(line):
            continue
        kept.append(line)
    return "\n".join(kept).strip()


def _first_balanced_block(text: str) -> str | None:
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for position in range(start, len(text)):
        char = text[position]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:position + 1]
    return None


def extract_payload(text: str) -> dict:
    """Return the first JSON object in ``text`` after reasoning is stripped.

    Raises ``MalformedPayload`` when no balanced object exists or it is not valid JSON.
    """
    cleaned = strip_reasoning(text)
    block = _first_balanced_block(cleaned)
    if block is None:
        raise MalformedPayload("No structured payload found in AI response")
    try:
        parsed = json.loads(block)
    except ValueError as exc:
        raise MalformedPayload(f"AI payload is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedPayload("AI payload is not an object")
    return parsed
