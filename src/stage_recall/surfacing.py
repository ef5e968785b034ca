"""Surfacing policy for pattern observations.

Stage 1 is for felt safety and accuracy; interpretation comes later and only
by invitation:

- Stage 0-1: never surface unless the user explicitly asks
- Stage 2: tentative observations with 2+ evidence points
- Stage 3-4: explicit observations with 3+ evidence points, only for users
  who opted in to pattern insights, and only after consent
- Cooldown: at least 5 turns between surfaced observations
"""

from __future__ import annotations

import asyncio

from loguru import logger

from .config import SurfacingConfig
from .models import EvidenceOrigin, RetrievalResult, SurfaceStyle, SurfacingDecision

PATTERN_REQUEST_PHRASES = (
    "do you see a pattern",
    "am i always",
    "do i often",
    "is this a pattern",
    "what patterns",
    "have you noticed",
    "do i do this a lot",
    "is this similar to",
    "have we talked about this before",
    "does this come up a lot",
)


def user_asked_for_pattern(text: str) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in PATTERN_REQUEST_PHRASES)


def count_pattern_evidence(result: RetrievalResult | None) -> int:
    """Cross-session items (reflections included) count fully, same-session half."""
    if result is None:
        return 0
    same = sum(1 for e in result.evidence if e.origin == EvidenceOrigin.SAME_SESSION)
    other = len(result.evidence) - same
    return other + same // 2


class SurfacingPolicy:
    """Decides whether and how a pattern observation may be voiced."""

    def __init__(self, config: SurfacingConfig | None = None):
        self.config = config or SurfacingConfig()

    def decide(
        self,
        stage: int,
        turn_count: int,
        user_asked: bool,
        user_opted_in: bool,
        evidence_count: int,
        last_surfaced_turn: int | None = None,
    ) -> SurfacingDecision:
        def silent(reason: str) -> SurfacingDecision:
            return SurfacingDecision(evidence_count=evidence_count, reason=reason)

        if (
            last_surfaced_turn is not None
            and turn_count - last_surfaced_turn < self.config.cooldown_turns
        ):
            return silent("cooldown")

        if stage <= 1 and not user_asked:
            return silent("early stage, not asked")

        if user_asked and evidence_count >= 1:
            return SurfacingDecision(
                should_surface=True,
                style=SurfaceStyle.TENTATIVE if stage <= 2 else SurfaceStyle.EXPLICIT,
                requires_consent=False,
                evidence_count=evidence_count,
                reason="user asked",
            )

        if stage == 2 and evidence_count >= self.config.tentative_min_evidence:
            return SurfacingDecision(
                should_surface=True,
                style=SurfaceStyle.TENTATIVE,
                evidence_count=evidence_count,
                reason="stage 2 evidence",
            )

        if stage >= 3 and evidence_count >= self.config.explicit_min_evidence:
            if not user_opted_in:
                return silent("pattern insights not enabled")
            return SurfacingDecision(
                should_surface=True,
                style=SurfaceStyle.EXPLICIT,
                requires_consent=True,
                evidence_count=evidence_count,
                reason="stage 3+ evidence with opt-in",
            )

        return silent("insufficient evidence")


class SurfacingTracker:
    """Remembers the last turn an observation was surfaced, per session and user."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._last: dict[tuple[str, str], int] = {}

    async def last_surfaced(self, session_id: str, user_id: str) -> int | None:
        async with self._lock:
            return self._last.get((session_id, user_id))

    async def record(self, session_id: str, user_id: str, turn: int) -> None:
        async with self._lock:
            self._last[(session_id, user_id)] = turn
        logger.debug(f"Surfaced pattern in session {session_id} at turn {turn}")

    async def clear(self, session_id: str) -> None:
        async with self._lock:
            for key in [k for k in self._last if k[0] == session_id]:
                del self._last[key]
