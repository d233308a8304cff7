"""Gemini generateContent client with key rotation and retry.

Each attempt picks a key from the pool through the rotation policy, encodes
the document inline and posts one request. Quota / rate-limit failures retry
immediately on another key; other failures back off ``attempt * 1s`` (attempts
count from 0, so the first retry is immediate, the second waits 1s, the third 2s).
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Awaitable, Callable, Sequence

import httpx

from .api_key_provider import (
    KeyPool,
    KeyRotationPolicy,
    is_quota_exhausted,
    load_key_pool,
    make_policy,
)
from .config import Settings, get_settings
from .drive import DocumentHandle
from .errors import (
    DocumentTooLargeError,
    GenerationError,
    MalformedResponseError,
    QuotaExhaustedError,
)
from .models import ChatMessage, Sender

logger = logging.getLogger(__name__)

GENERATION_CONFIG = {
    "temperature": 0.7,
    "topK": 40,
    "topP": 0.9,
    "maxOutputTokens": 1024,
}

BACKOFF_STEP_SECONDS = 1.0

CHAT_PROMPT = """You are an AI study assistant helping students understand their document content. Answer questions based on the provided document.

{history}Current question: {question}

Instructions:
- Answer based on the document content provided
- If the question is not covered in the document, mention that politely and try to provide general guidance
- Be helpful, clear, and educational in your responses
- Use examples from the document when possible
- Keep responses concise but informative (aim for 2-4 sentences)
- If asked for summaries, provide structured bullet points
- If asked for practice questions, create 3-5 relevant questions
- Format your response clearly with proper spacing

Answer:"""


def build_prompt(question: str, history: Sequence[ChatMessage], max_history: int = 6) -> str:
    """Render the prompt with at most ``max_history`` prior messages, oldest first."""
    recent = list(history)[-max_history:] if max_history > 0 else []
    lines = [
        f"{'Human' if msg.sender == Sender.USER else 'AI'}: {msg.text}"
        for msg in recent
    ]
    history_block = "Previous conversation:\n" + "\n".join(lines) + "\n\n" if lines else ""
    return CHAT_PROMPT.format(history=history_block, question=question)


def extract_text(payload: dict[str, Any]) -> str:
    """Return candidates[0].content.parts[0].text, or raise MalformedResponseError."""
    try:
        text = payload["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        raise MalformedResponseError("No response from Gemini") from None
    if not isinstance(text, str) or not text.strip():
        raise MalformedResponseError("No response from Gemini")
    return text.strip()


def _error_message(response: httpx.Response) -> str:
    try:
        message = response.json().get("error", {}).get("message")
    except (ValueError, AttributeError):
        message = None
    return message or f"HTTP {response.status_code}: {response.reason_phrase}"


class KeyRotatingGenerationClient:
    """Sends prompt + document to Gemini, surviving per-key rate limits."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        settings: Settings | None = None,
        policy: KeyRotationPolicy | None = None,
        key_pool_loader: Callable[[], KeyPool] = load_key_pool,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.settings = settings or get_settings()
        self.policy = policy or make_policy(self.settings.gemini_key_rotation)
        self.key_pool_loader = key_pool_loader
        self._sleep = sleep

    async def generate(
        self,
        document: DocumentHandle,
        question: str,
        recent_history: Sequence[ChatMessage],
        max_retries: int | None = None,
    ) -> str:
        if max_retries is None:
            max_retries = self.settings.gemini_max_retries
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")

        if document.size > self.settings.gemini_max_inline_bytes:
            raise DocumentTooLargeError(
                f"File is too large for processing ({document.size} bytes, "
                f"limit {self.settings.gemini_max_inline_bytes}).",
                size=document.size,
                limit=self.settings.gemini_max_inline_bytes,
            )

        # Re-read every call so key edits apply without restart
        pool = self.key_pool_loader()
        prompt = build_prompt(question, recent_history, self.settings.history_context_messages)

        last_error: Exception | None = None
        for attempt in range(max_retries):
            key_index = self.policy.select(pool, attempt)
            try:
                text = await self._request(pool.keys[key_index], prompt, document)
                if attempt:
                    logger.info("[GEMINI] Succeeded on attempt %d with key #%d", attempt + 1, key_index)
                return text
            except (GenerationError, httpx.HTTPError) as e:
                last_error = e
                logger.warning(
                    "[GEMINI] Attempt %d/%d with key #%d failed: %s",
                    attempt + 1,
                    max_retries,
                    key_index,
                    e,
                )
                if is_quota_exhausted(e):
                    continue
                delay = attempt * BACKOFF_STEP_SECONDS
                if delay and attempt < max_retries - 1:
                    await self._sleep(delay)

        logger.error("[GEMINI] All %d attempts failed: %s", max_retries, last_error)
        raise QuotaExhaustedError(
            f"All Gemini API keys failed: {last_error}",
            attempts=max_retries,
            last_error=last_error,
        )

    async def _request(self, api_key: str, prompt: str, document: DocumentHandle) -> str:
        # Encoded per attempt, not cached
        encoded = base64.b64encode(document.blob).decode("ascii")

        request_body = {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {"inline_data": {"mime_type": document.mime_type, "data": encoded}},
                    ]
                }
            ],
            "generationConfig": GENERATION_CONFIG,
        }

        response = await self.client.post(
            f"{self.settings.gemini_base_url}/models/{self.settings.gemini_model_id}:generateContent",
            params={"key": api_key},
            json=request_body,
            headers={"Content-Type": "application/json"},
            timeout=self.settings.gemini_timeout_seconds,
        )

        if not response.is_success:
            message = _error_message(response)
            raise GenerationError(
                message,
                status_code=response.status_code,
                quota=is_quota_exhausted(response.status_code) or is_quota_exhausted(message),
            )

        try:
            payload = response.json()
        except ValueError:
            raise MalformedResponseError("Gemini returned a non-JSON response") from None
        return extract_text(payload)
