"""
Thin wrapper around the OpenAI Responses API used by the planner.

- Accepts chat-style `messages` (normalized to Responses input items).
- Reasoning effort control.
- Exponential backoff with jitter for transient failures.
- Helper to extract the assistant's output text.
"""

from __future__ import annotations

import logging
import os
import random
import time
from typing import Any, Dict, Iterable, List, Literal, Optional

from dotenv import find_dotenv, load_dotenv
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    OpenAI,
    RateLimitError,
)

logger = logging.getLogger(__name__)

Message = Dict[str, Any]
InputItem = Dict[str, Any]

ReasoningEffort = Literal["minimal", "low", "medium", "high"]

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE_SECONDS = 0.5
DEFAULT_BACKOFF_CAP_SECONDS = 8.0
DEFAULT_BACKOFF_JITTER_SECONDS = 0.25
_RETRYABLE_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}


def _is_retryable_error(exc: Exception) -> bool:
    """Connection failures, timeouts, rate limits and transient status codes."""
    if isinstance(exc, (APIConnectionError, APITimeoutError, RateLimitError)):
        return True
    if isinstance(exc, APIStatusError):
        return getattr(exc, "status_code", None) in _RETRYABLE_STATUS_CODES
    return isinstance(exc, (TimeoutError, ConnectionError))


def _normalize_messages(messages: Iterable[Message]) -> List[Message]:
    """Convert ``{"role", "content": str | list}`` messages into Responses input items."""
    normalized: List[Message] = []
    for message in messages:
        role = message.get("role")
        if not role:
            raise ValueError("Each message must include a 'role'.")
        content = message.get("content", "")
        items = content if isinstance(content, list) else [content]
        text_type = "output_text" if role == "assistant" else "input_text"
        parts: List[InputItem] = []
        for item in items:
            if isinstance(item, str):
                parts.append({"type": text_type, "text": item})
            elif isinstance(item, dict) and item.get("type") in {"text", "input_text", "output_text"}:
                parts.append({"type": text_type, "text": item.get("text", "")})
            elif isinstance(item, dict):
                parts.append(dict(item))
            else:
                raise ValueError("Message content items must be dicts or strings.")
        normalized.append({"role": role, "content": parts})
    return normalized


def _as_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    return {key: value for key, value in vars(obj).items() if not key.startswith("_")}


def extract_assistant_text(resp: Any) -> str:
    """Concatenate assistant output text across message items ("" if none)."""
    output_text = getattr(resp, "output_text", None)
    if isinstance(output_text, str) and output_text:
        return output_text
    chunks: List[str] = []
    for item in getattr(resp, "output", None) or []:
        item_dict = _as_dict(item)
        if item_dict.get("type") != "message" or item_dict.get("role") != "assistant":
            continue
        for content in item_dict.get("content") or []:
            content_dict = _as_dict(content)
            if content_dict.get("type") in ("output_text", "text"):
                text = content_dict.get("text")
                if isinstance(text, str):
                    chunks.append(text)
    return "".join(chunks)


class OAIClient:
    """Reusable OpenAI client for issuing Responses API calls with sane defaults."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        default_model: str = "gpt-5-mini",
        default_reasoning_effort: ReasoningEffort = "medium",
        timeout: Optional[float] = None,
        base_url: Optional[str] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_backoff_base: float = DEFAULT_BACKOFF_BASE_SECONDS,
        retry_backoff_cap: float = DEFAULT_BACKOFF_CAP_SECONDS,
        retry_backoff_jitter: float = DEFAULT_BACKOFF_JITTER_SECONDS,
        sdk_client: Any = None,
        sleep=time.sleep,
    ) -> None:
        if sdk_client is None:
            dotenv_path = find_dotenv()
            if dotenv_path:
                load_dotenv(dotenv_path, override=False)
            client_kwargs: Dict[str, Any] = {
                "api_key": api_key or os.getenv("OPENAI_API_KEY"),
                "timeout": timeout,
            }
            if base_url:
                client_kwargs["base_url"] = base_url
            sdk_client = OpenAI(**client_kwargs)
        self._client = sdk_client
        self._default_model = default_model
        self._default_reasoning_effort = default_reasoning_effort
        self._max_retries = max(0, int(max_retries))
        self._retry_backoff_base = max(0.0, float(retry_backoff_base))
        self._retry_backoff_cap = max(self._retry_backoff_base, float(retry_backoff_cap))
        self._retry_backoff_jitter = max(0.0, float(retry_backoff_jitter))
        self._sleep = sleep

    @property
    def default_model(self) -> str:
        return self._default_model

    def create_response(
        self,
        *,
        messages: Iterable[Message],
        model: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        reasoning_effort: Optional[ReasoningEffort] = None,
        **kwargs: Any,
    ) -> Any:
        """Issue a Responses API request, retrying transient failures with backoff.

        Extra keyword arguments (``metadata``, ``store``, ``text`` ...) are
        forwarded to ``client.responses.create``.
        """
        payload: Dict[str, Any] = {
            "model": model or self._default_model,
            "input": _normalize_messages(messages),
            "reasoning": {"effort": reasoning_effort or self._default_reasoning_effort},
        }
        if max_output_tokens is not None:
            payload["max_output_tokens"] = int(max_output_tokens)
        payload.update(kwargs)

        attempt = 0
        while True:
            try:
                return self._client.responses.create(**payload)
            except Exception as exc:
                if not _is_retryable_error(exc) or attempt >= self._max_retries:
                    raise
                backoff = min(self._retry_backoff_cap, self._retry_backoff_base * (2**attempt))
                if self._retry_backoff_jitter:
                    backoff += random.uniform(0.0, self._retry_backoff_jitter)
                logger.warning(
                    "Retryable OpenAI error (attempt %s/%s): %s; sleeping %.2fs",
                    attempt + 1,
                    self._max_retries,
                    exc,
                    backoff,
                )
                self._sleep(backoff)
                attempt += 1


__all__ = ["OAIClient", "extract_assistant_text"]
