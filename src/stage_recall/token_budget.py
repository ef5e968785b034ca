"""Token estimation and bounded payload planning.

Builds the final generation payload under a hard ceiling. Components are
evicted in a fixed order:

1. System prompt and the protected recent window are never dropped.
2. Retrieved evidence is cut to its share first, on section boundaries.
3. Older same-session history fills what is left, newest first.

Pathological inputs clip content (system prompt first, then protected
messages oldest-first) but never remove a protected message.
"""

from __future__ import annotations

import math
import re
from typing import Iterable, Mapping

from loguru import logger

from .config import BudgetConfig
from .models import ConversationTurn, TokenBudgetPlan

MIN_CEILING = 256
MESSAGE_OVERHEAD_TOKENS = 4
CHARS_PER_TOKEN = 4

SECTION_TRUNCATION_MARKER = "\n[...additional context truncated for length]"
TRUNCATION_MARKER = "\n[...truncated for length]"
CONTEXT_SEPARATOR = "\n\n"

_SECTION_SPLIT = re.compile(r"(?m)(?=^=== )")
_SENTENCE_END = re.compile(r"[.!?](?=\s)|\n")


def estimate_tokens(text: str | None) -> int:
    """Conservative token estimate: four characters per token, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_messages_tokens(messages: Iterable[Mapping[str, str]]) -> int:
    """Estimate tokens for chat messages, including per-message overhead."""
    total = 0
    for msg in messages:
        total += MESSAGE_OVERHEAD_TOKENS
        total += estimate_tokens(msg.get("content", ""))
    return total


def clip_to_tokens(text: str, max_tokens: int) -> str:
    """Clip text from the end so that its estimate is at most ``max_tokens``."""
    if max_tokens <= 0:
        return ""
    if estimate_tokens(text) <= max_tokens:
        return text
    return text[: max_tokens * CHARS_PER_TOKEN]


def truncate_sections(context: str, max_chars: int) -> str:
    """Cut formatted context to ``max_chars`` without splitting a sentence.

    Whole ``=== Section ===`` blocks are kept while they fit. If even the
    first block is too long it is cut at its last sentence boundary. The
    returned text, marker included, is never longer than ``max_chars``.
    """
    if len(context) <= max_chars:
        return context

    sections = [s for s in _SECTION_SPLIT.split(context) if s]
    kept = ""
    for section in sections:
        if len(kept) + len(section) + len(SECTION_TRUNCATION_MARKER) > max_chars:
            break
        kept += section

    if kept:
        return kept.rstrip() + SECTION_TRUNCATION_MARKER

    room = max_chars - len(TRUNCATION_MARKER)
    if room <= 0:
        return ""

    head = context[:room]
    boundaries = [m.end() for m in _SENTENCE_END.finditer(head)]
    if not boundaries:
        return ""
    return head[: boundaries[-1]].rstrip() + TRUNCATION_MARKER


def _as_message(item: ConversationTurn | Mapping[str, str]) -> dict[str, str]:
    if isinstance(item, ConversationTurn):
        return item.as_chat_message()
    return {"role": str(item["role"]), "content": str(item.get("content", ""))}


class TokenBudgetManager:
    """Plans the bounded payload for one generation call."""

    def __init__(self, config: BudgetConfig | None = None):
        self.config = config or BudgetConfig()

    def output_reservation_for(self, ceiling: int) -> int:
        """Configured output reservation, shrunk to half the ceiling at most."""
        return min(self.config.output_reservation, ceiling // 2)

    def plan(
        self,
        system_prompt: str,
        full_history: list[ConversationTurn] | list[Mapping[str, str]],
        formatted_evidence: str = "",
        ceiling: int | None = None,
    ) -> TokenBudgetPlan:
        """Build a payload whose input plus output reservation fits ``ceiling``.

        Args:
            system_prompt: Stage/system prompt, never evicted
            full_history: Whole session history, oldest first, current
                user message last
            formatted_evidence: Rendered context with ``=== Section ===`` headers
            ceiling: Total token ceiling, defaults to ``config.ceiling_tokens``

        Returns:
            TokenBudgetPlan with the final system content and message list

        Raises:
            ValueError: If the ceiling is below ``MIN_CEILING`` or cannot hold
                the protected window's per-message overhead
        """
        ceiling = ceiling if ceiling is not None else self.config.ceiling_tokens
        if ceiling < MIN_CEILING:
            raise ValueError(
                f"Token ceiling {ceiling} is below the minimum of {MIN_CEILING}"
            )

        reservation = self.output_reservation_for(ceiling)
        input_budget = ceiling - reservation

        messages = [_as_message(m) for m in full_history]
        protected_count = min(len(messages), self.config.protected_turns * 2)
        split_at = len(messages) - protected_count
        evictable = messages[:split_at]
        protected = messages[split_at:]

        protected_overhead = MESSAGE_OVERHEAD_TOKENS * len(protected)
        if protected_overhead > input_budget:
            raise ValueError(
                f"Token ceiling {ceiling} cannot hold {len(protected)} "
                f"protected messages"
            )

        # 1. System prompt, clipped only to leave room for the protected floor
        protected_tokens = estimate_messages_tokens(protected)
        protected_floor = min(
            protected_tokens, max(input_budget // 2, protected_overhead)
        )
        system_cap = input_budget - protected_floor
        system_truncated = False
        if estimate_tokens(system_prompt) > system_cap:
            system_prompt = clip_to_tokens(system_prompt, system_cap)
            system_truncated = True
            logger.warning(
                f"System prompt clipped to {system_cap} tokens "
                f"(ceiling={ceiling})"
            )
        system_tokens = estimate_tokens(system_prompt)

        # 2. Protected window, content clipped oldest-first when oversized
        left = input_budget - system_tokens
        protected, clipped = self._clip_protected(protected, left)
        protected_tokens = estimate_messages_tokens(protected)
        remaining = max(0, left - protected_tokens)

        # 3. Split what remains between older history and evidence
        history_budget = int(remaining * self.config.history_share)
        evidence_budget = remaining - history_budget

        # 4. Evidence is trimmed to its share before any history is dropped
        context_text = formatted_evidence or ""
        evidence_truncated = False
        if self._evidence_cost(context_text) > evidence_budget:
            max_chars = evidence_budget * CHARS_PER_TOKEN - len(CONTEXT_SEPARATOR)
            context_text = truncate_sections(context_text, max(0, max_chars))
            evidence_truncated = True
        evidence_tokens = self._evidence_cost(context_text)

        # 5. Older history fills the rest, newest first
        history_room = remaining - evidence_tokens
        older: list[dict[str, str]] = []
        used = 0
        for msg in reversed(evictable):
            cost = estimate_messages_tokens([msg])
            if used + cost > history_room:
                break
            older.insert(0, msg)
            used += cost

        final_messages = older + protected
        history_tokens = estimate_messages_tokens(final_messages)
        total_tokens = system_tokens + evidence_tokens + history_tokens

        while total_tokens > input_budget and older:
            dropped = older.pop(0)
            history_tokens -= estimate_messages_tokens([dropped])
            total_tokens = system_tokens + evidence_tokens + history_tokens
        final_messages = older + protected

        system_content = system_prompt
        if context_text:
            system_content = f"{system_prompt}{CONTEXT_SEPARATOR}{context_text}"

        excluded = len(evictable) - len(older)
        if excluded or evidence_truncated or clipped or system_truncated:
            logger.info(
                f"Token budget: dropped {excluded} older messages, "
                f"evidence_truncated={evidence_truncated}, "
                f"clipped {clipped} protected messages "
                f"(protected={len(protected)}, ceiling={ceiling})"
            )
        logger.debug(
            f"Token plan: system={system_tokens}tok, history={history_tokens}tok, "
            f"evidence={evidence_tokens}tok, total={total_tokens}/{input_budget} "
            f"(+{reservation} reserved)"
        )

        return TokenBudgetPlan(
            system_content=system_content,
            messages=final_messages,
            context_text=context_text,
            included_message_count=len(final_messages),
            excluded_message_count=excluded,
            included_evidence_chars=len(context_text),
            system_tokens=system_tokens,
            history_tokens=history_tokens,
            evidence_tokens=evidence_tokens,
            total_tokens=total_tokens,
            output_reservation=reservation,
            evidence_truncated=evidence_truncated,
            system_truncated=system_truncated,
            protected_clipped=clipped > 0,
            truncated_message_count=clipped,
        )

    @staticmethod
    def _evidence_cost(context_text: str) -> int:
        if not context_text:
            return 0
        return estimate_tokens(CONTEXT_SEPARATOR + context_text)

    @staticmethod
    def _clip_protected(
        protected: list[dict[str, str]], budget: int
    ) -> tuple[list[dict[str, str]], int]:
        """Clip message content oldest-first until the window fits ``budget``.

        Returns the new window and the number of messages that were clipped.
        """
        excess = estimate_messages_tokens(protected) - budget
        if excess <= 0:
            return protected, 0

        clipped = 0
        result: list[dict[str, str]] = []
        for msg in protected:
            if excess <= 0:
                result.append(msg)
                continue
            tokens = estimate_tokens(msg["content"])
            target = max(0, tokens - excess)
            content = clip_to_tokens(msg["content"], target)
            excess -= tokens - estimate_tokens(content)
            if content != msg["content"]:
                clipped += 1
            result.append({"role": msg["role"], "content": content})

        logger.warning(f"Clipped content of {clipped} protected messages")
        return result, clipped
