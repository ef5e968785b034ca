"""Adapters from a streaming chat LLM to the classifier and generator seams."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Protocol

from loguru import logger

from .token_budget import CHARS_PER_TOKEN, clip_to_tokens


class StatelessChatLLM(Protocol):
    """Streaming chat completion without conversation state."""

    def chat_completion(
        self,
        messages: list[dict[str, Any]],
        system: str | None = None,
    ) -> AsyncIterator[Any]:
        """Yield response chunks, as ``str`` or ``{"type": "text_delta", "text": ...}``."""
        ...


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    text = text.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        if first_newline != -1:
            text = text[first_newline + 1 :]
        if text.endswith("```"):
            text = text[:-3].strip()
    return text


def parse_json_response(raw: str) -> Any:
    """Parse a model's JSON answer.

    Raises:
        ValueError: If the response is empty or not valid JSON
    """
    text = strip_code_fences(raw)
    if not text:
        raise ValueError("Empty response from model")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.debug(f"Raw response: {raw[:500]}")
        raise ValueError(f"Model returned invalid JSON: {e}") from e


async def collect_stream(
    llm: StatelessChatLLM,
    messages: list[dict[str, Any]],
    system: str | None,
    max_tokens: int | None = None,
) -> str:
    """Join streamed text chunks, stopping once ``max_tokens`` is reached.

    The streaming interface has no length parameter, so the limit is applied
    here using the same estimate as the token budget.
    """
    max_chars = max_tokens * CHARS_PER_TOKEN if max_tokens is not None else None
    parts: list[str] = []
    length = 0
    stream = llm.chat_completion(messages=messages, system=system)
    try:
        async for chunk in stream:
            if isinstance(chunk, str):
                text = chunk
            elif isinstance(chunk, dict) and chunk.get("type") == "text_delta":
                text = chunk.get("text", "")
            else:
                continue
            parts.append(text)
            length += len(text)
            if max_chars is not None and length >= max_chars:
                logger.debug(f"Stopping stream at the {max_tokens} token limit")
                break
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

    text = "".join(parts)
    if max_tokens is not None:
        text = clip_to_tokens(text, max_tokens)
    return text.strip()


class LLMClassifier:
    """FastClassifier over a stateless chat LLM."""

    def __init__(self, llm: StatelessChatLLM):
        self._llm = llm

    async def complete_json(
        self, system_prompt: str, user_prompt: str, max_tokens: int = 512
    ) -> Any:
        raw = await collect_stream(
            self._llm,
            [{"role": "user", "content": user_prompt}],
            system_prompt,
            max_tokens=max_tokens,
        )
        return parse_json_response(raw)


class LLMGenerator:
    """Generator over a stateless chat LLM."""

    def __init__(self, llm: StatelessChatLLM):
        self._llm = llm

    async def generate(
        self,
        system_content: str,
        messages: list[dict[str, str]],
        max_tokens: int,
    ) -> str:
        return await collect_stream(
            self._llm, messages, system_content, max_tokens=max_tokens
        )
