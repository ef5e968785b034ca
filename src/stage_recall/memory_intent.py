"""Memory intent classification.

Decides, before any retrieval happens, what kind of remembering is
appropriate for the current turn: how deep to look, how similar evidence
must be, how many cross-session items are allowed, and how observations may
be voiced. Pure and synchronous; the first matching rule wins.
"""

from __future__ import annotations

from loguru import logger

from .config import IntentConfig, StagePolicy
from .models import MemoryIntent, MemoryIntentResult, RetrievalDepth, SurfaceStyle

DISTRESS_PHRASES = (
    "i can't do this",
    "i can't take",
    "i'm done",
    "i give up",
    "i hate",
    "i want to die",
    "hurt myself",
    "can't go on",
    "falling apart",
)

COMMITMENT_PHRASES = (
    # Explicit references
    "we agreed",
    "you said",
    "last time",
    "we decided",
    "remember when",
    "our agreement",
    "we promised",
    "the experiment",
    "we were trying",
    # Implicit references
    "i thought we",
    "but i thought",
    "i assumed",
    "i believed",
    "i was under the impression",
    "i understood that",
    "i thought you meant",
)

SKIP_PHRASES = (
    "let's just",
    "can we skip",
    "i don't want to",
    "this is pointless",
    "just tell me what to do",
    "get to the point",
)


def _normalize(text: str) -> str:
    return text.lower().replace("’", "'").replace("‘", "'")


def _matches(text: str, phrases: tuple[str, ...]) -> bool:
    return any(phrase in text for phrase in phrases)


def turn_buffer_size(stage: int, intent: MemoryIntent) -> int:
    """Number of recent turns to load for the given stage and intent."""
    if intent == MemoryIntent.AVOID_RECALL:
        return 0
    if intent == MemoryIntent.STAGE_ENFORCEMENT:
        return 2
    return {1: 5, 2: 4, 3: 4, 4: 5}.get(stage, 4)


class MemoryIntentClassifier:
    """Classifies each turn into a memory intent and retrieval policy."""

    def __init__(self, config: IntentConfig | None = None):
        self.config = config or IntentConfig()

    def policy_for_stage(self, stage: int) -> StagePolicy:
        policy = self.config.stage_policies.get(stage)
        if policy is None:
            return self.config.fallback_policy
        return policy

    def classify(
        self,
        stage: int,
        intensity: float | None,
        message_text: str,
        turn_count: int,
        session_duration_minutes: float | None = None,
        is_first_turn: bool = False,
    ) -> MemoryIntentResult:
        """Classify a single turn.

        Args:
            stage: Conversation stage (0-4); unknown stages get the
                conservative fallback policy
            intensity: Latest self-reported emotional intensity (0-10)
            message_text: The user's current message
            turn_count: Number of user turns so far in this session
            session_duration_minutes: Minutes since the session started
            is_first_turn: Whether this is the first turn of the session

        Returns:
            Frozen MemoryIntentResult
        """
        intensity = intensity or 0.0
        text = _normalize(message_text or "")
        policy = self.policy_for_stage(stage)
        max_cross = policy.max_cross_session_for(turn_count)

        if intensity >= self.config.critical_intensity or _matches(text, DISTRESS_PHRASES):
            result = MemoryIntentResult(
                intent=MemoryIntent.AVOID_RECALL,
                depth=RetrievalDepth.NONE,
                threshold=policy.threshold,
                max_cross_session=0,
                allow_cross_session=False,
                surface_style=SurfaceStyle.SILENT,
                reason="High emotional distress detected - staying present "
                "without bringing back past content",
                safety_override=True,
            )
        elif intensity >= self.config.high_intensity:
            result = MemoryIntentResult(
                intent=MemoryIntent.EMOTIONAL_VALIDATION,
                depth=RetrievalDepth.MINIMAL,
                threshold=policy.threshold,
                max_cross_session=0,
                allow_cross_session=False,
                surface_style=SurfaceStyle.SILENT,
                reason="High emotional intensity - validation with minimal context",
                caution_advised=True,
            )
        elif _matches(text, COMMITMENT_PHRASES):
            result = MemoryIntentResult(
                intent=MemoryIntent.RECALL_COMMITMENT,
                depth=RetrievalDepth.FULL,
                threshold=policy.threshold,
                max_cross_session=max(
                    max_cross, self.config.commitment_min_cross_session
                ),
                allow_cross_session=True,
                surface_style=policy.surface_style,
                reason="User referencing a past commitment - full retrieval "
                "needed to resolve it accurately",
            )
        elif _matches(text, SKIP_PHRASES):
            result = MemoryIntentResult(
                intent=MemoryIntent.STAGE_ENFORCEMENT,
                depth=RetrievalDepth.NONE,
                threshold=policy.threshold,
                max_cross_session=0,
                allow_cross_session=False,
                surface_style=policy.surface_style,
                reason="User attempting to skip ahead - enforce the process "
                "without recall",
            )
        elif is_first_turn and session_duration_minutes == 0:
            result = MemoryIntentResult(
                intent=MemoryIntent.OFFER_CONTINUITY,
                depth=RetrievalDepth.LIGHT,
                threshold=policy.threshold,
                max_cross_session=max_cross,
                allow_cross_session=policy.allow_cross_session,
                surface_style=policy.surface_style,
                reason="New session start - light continuity from earlier sessions",
            )
        else:
            result = self._stage_default(stage, turn_count, intensity, policy, max_cross)

        logger.debug(
            f"Memory intent: stage={stage} intensity={intensity} "
            f"-> {result.intent.value}/{result.depth.value} "
            f"(cross_session={result.allow_cross_session}, "
            f"max={result.max_cross_session})"
        )
        return result

    def _stage_default(
        self,
        stage: int,
        turn_count: int,
        intensity: float,
        policy: StagePolicy,
        max_cross: int,
    ) -> MemoryIntentResult:
        if stage == 0:
            intent = MemoryIntent.STAGE_ENFORCEMENT
            depth = RetrievalDepth.MINIMAL
            reason = "Stage 0 - onboarding with minimal context"
        elif stage == 1:
            intent = MemoryIntent.EMOTIONAL_VALIDATION
            if (
                turn_count <= self.config.early_witnessing_turns
                or intensity >= self.config.witnessing_intensity_dampening
            ):
                depth = RetrievalDepth.MINIMAL
                reason = "Stage 1 witnessing - prioritizing presence over recall"
            else:
                depth = RetrievalDepth.LIGHT
                reason = "Stage 1 witnessing - light context for continuity"
        elif stage == 2:
            intent = MemoryIntent.RECALL_COMMITMENT
            depth = RetrievalDepth.LIGHT
            reason = "Stage 2 perspective - context needed for empathy building"
        elif stage in (3, 4):
            intent = MemoryIntent.RECALL_COMMITMENT
            depth = RetrievalDepth.FULL
            reason = f"Stage {stage} - full context for synthesis and repair"
        else:
            intent = MemoryIntent.EMOTIONAL_VALIDATION
            depth = RetrievalDepth.MINIMAL
            reason = f"Unknown stage {stage} - defaulting to minimal recall"

        return MemoryIntentResult(
            intent=intent,
            depth=depth,
            threshold=policy.threshold,
            max_cross_session=max_cross,
            allow_cross_session=policy.allow_cross_session,
            surface_style=policy.surface_style,
            reason=reason,
        )


_default_classifier = MemoryIntentClassifier()


def classify(
    stage: int,
    intensity: float | None,
    message_text: str,
    turn_count: int,
    session_duration_minutes: float | None = None,
    is_first_turn: bool = False,
) -> MemoryIntentResult:
    """Classify a turn with the default stage policies."""
    return _default_classifier.classify(
        stage,
        intensity,
        message_text,
        turn_count,
        session_duration_minutes=session_duration_minutes,
        is_first_turn=is_first_turn,
    )
