"""Context assembler for stage_recall.

Gathers everything the generation call may see for one turn into a single
typed bundle whose shape depends on the retrieval depth:

- ``none``: stage and gate metadata only, no store is touched
- ``minimal``: recent turns, emotional thread, user memories, notable facts
- ``light``: minimal plus prior-session themes and the rolling summary
- ``full``: light plus the references the detector found

Sub-fetches run concurrently; each one that fails or times out is logged and
left out of the bundle instead of failing the turn. Retrieved evidence is
fetched last because its query falls back to the latest user turn.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from loguru import logger

from .config import AssemblyConfig
from .interfaces import (
    EmotionalReadingStore,
    FactStore,
    MessageHistoryStore,
    SummaryStore,
)
from .memory_intent import turn_buffer_size
from .models import (
    ContextBundle,
    ConversationTurn,
    EmotionalReading,
    EmotionalThread,
    EmotionalTrend,
    FullBundle,
    LightBundle,
    MemoryIntentResult,
    MemoryPreferences,
    MinimalBundle,
    NoRecallBundle,
    NotableShift,
    RetrievalDepth,
    RetrievalResult,
    Role,
    StageContext,
    StageGates,
)
from .retrieval import RetrievalGateway

T = TypeVar("T")


def build_emotional_thread(
    readings: list[EmotionalReading],
    config: AssemblyConfig | None = None,
) -> EmotionalThread:
    """Summarize intensity readings (oldest first) into a trend."""
    config = config or AssemblyConfig()
    if not readings:
        return EmotionalThread()

    values = [r.intensity for r in readings]
    window = config.trend_window
    earlier = values[:window]
    recent = values[-window:]
    avg_earlier = sum(earlier) / len(earlier)
    avg_recent = sum(recent) / len(recent)

    trend = EmotionalTrend.STABLE
    if avg_recent - avg_earlier >= config.trend_delta:
        trend = EmotionalTrend.ESCALATING
    elif avg_earlier - avg_recent >= config.trend_delta:
        trend = EmotionalTrend.DE_ESCALATING

    shifts: list[NotableShift] = []
    for prev, cur in zip(readings, readings[1:]):
        if len(shifts) >= config.max_notable_shifts:
            break
        if abs(cur.intensity - prev.intensity) >= config.notable_shift_delta:
            shifts.append(
                NotableShift(
                    from_intensity=prev.intensity,
                    to_intensity=cur.intensity,
                    at=cur.recorded_at,
                )
            )

    return EmotionalThread(
        initial=values[0],
        current=values[-1],
        trend=trend,
        notable_shifts=shifts,
    )


def latest_user_text(turns: list[ConversationTurn]) -> str | None:
    for turn in reversed(turns):
        if turn.role == Role.USER and turn.content.strip():
            return turn.content
    return None


class ContextAssembler:
    """Builds a per-depth ContextBundle from independent sub-fetches."""

    def __init__(
        self,
        history: MessageHistoryStore,
        readings: EmotionalReadingStore,
        facts: FactStore,
        summaries: SummaryStore,
        gateway: RetrievalGateway | None = None,
        config: AssemblyConfig | None = None,
    ):
        self._history = history
        self._readings = readings
        self._facts = facts
        self._summaries = summaries
        self._gateway = gateway
        self._config = config or AssemblyConfig()

    async def assemble(
        self,
        session_id: str,
        user_id: str,
        stage: int,
        intent: MemoryIntentResult,
        *,
        message_text: str | None = None,
        relationship_id: str | None = None,
        preferences: MemoryPreferences | None = None,
        gates: StageGates | None = None,
        user_name: str | None = None,
    ) -> ContextBundle:
        """Assemble the context bundle for one turn.

        Args:
            session_id: Current session
            user_id: Requesting user; every fetch is scoped to them
            stage: Current stage
            intent: Classified intent; its depth selects the bundle type
            message_text: Current message, used as the evidence query
            relationship_id: Scope for prior themes and cross-session evidence
            preferences: User memory preferences passed to the gateway
            gates: Stage gate state, passed through untouched
            user_name: Display name for the prompt

        Returns:
            NoRecallBundle, MinimalBundle, LightBundle or FullBundle
        """
        stage_context = StageContext(
            stage=stage,
            session_id=session_id,
            user_id=user_id,
            user_name=user_name,
            gates=gates,
        )
        depth = intent.depth

        if depth == RetrievalDepth.NONE:
            logger.debug(f"Depth none for session {session_id}, skipping all fetches")
            return NoRecallBundle(intent=intent, stage_context=stage_context)

        window_size = turn_buffer_size(stage, intent.intent) * 2
        with_continuity = depth in (RetrievalDepth.LIGHT, RetrievalDepth.FULL)

        (
            turn_window,
            readings,
            user_memories,
            notable_facts,
            prior_themes,
            session_summary,
        ) = await asyncio.gather(
            self._safe(
                "turn window",
                self._history.get_recent_turns(session_id, user_id, window_size),
            )
            if window_size > 0
            else self._none(),
            self._safe("emotional readings", self._readings.get_readings(session_id, user_id)),
            self._safe(
                "user memories", self._facts.get_user_memories(user_id, session_id)
            ),
            self._safe(
                "notable facts", self._facts.get_notable_facts(session_id, user_id)
            ),
            self._safe(
                "prior themes",
                self._summaries.get_prior_themes(
                    user_id,
                    relationship_id=relationship_id,
                    exclude_session_id=session_id,
                ),
            )
            if with_continuity
            else self._none(),
            self._safe(
                "session summary",
                self._summaries.get_session_summary(session_id, user_id),
            )
            if with_continuity
            else self._none(),
        )

        turn_window = (turn_window or [])[-window_size:] if window_size else []
        thread = (
            build_emotional_thread(readings, self._config)
            if readings is not None
            else None
        )

        evidence = await self._fetch_evidence(
            session_id,
            user_id,
            intent,
            query=message_text or latest_user_text(turn_window),
            relationship_id=relationship_id,
            preferences=preferences,
        )

        common = dict(
            intent=intent,
            stage_context=stage_context,
            turn_window=turn_window,
            emotional_thread=thread,
            user_memories=user_memories or [],
            notable_facts=notable_facts or [],
            evidence=evidence,
        )

        if depth == RetrievalDepth.MINIMAL:
            bundle: ContextBundle = MinimalBundle(**common)
        elif depth == RetrievalDepth.LIGHT:
            bundle = LightBundle(
                **common, prior_themes=prior_themes, session_summary=session_summary
            )
        else:
            bundle = FullBundle(
                **common,
                prior_themes=prior_themes,
                session_summary=session_summary,
                detected_references=evidence.detection.references if evidence else [],
            )

        logger.info(
            f"Context assembled for session {session_id}: depth={depth.value}, "
            f"turns={len(turn_window)}, memories={len(bundle.user_memories)}, "
            f"facts={len(bundle.notable_facts)}, "
            f"evidence={len(evidence.evidence) if evidence else 0}"
        )
        return bundle

    async def _fetch_evidence(
        self,
        session_id: str,
        user_id: str,
        intent: MemoryIntentResult,
        *,
        query: str | None,
        relationship_id: str | None,
        preferences: MemoryPreferences | None,
    ) -> RetrievalResult | None:
        if self._gateway is None or not query:
            return None
        return await self._safe(
            "evidence",
            self._gateway.retrieve(
                user_id,
                query,
                intent.threshold,
                intent.max_cross_session,
                session_id=session_id,
                relationship_id=relationship_id,
                intent=intent,
                preferences=preferences,
            ),
            timeout=self._config.evidence_timeout_seconds,
        )

    async def _safe(
        self, name: str, coro: Awaitable[T], timeout: float | None = None
    ) -> T | None:
        timeout = timeout or self._config.fetch_timeout_seconds
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Context fetch '{name}' timed out after {timeout}s, omitting")
        except Exception as e:
            logger.warning(f"Context fetch '{name}' failed, omitting: {e}")
        return None

    @staticmethod
    async def _none() -> None:
        return None
