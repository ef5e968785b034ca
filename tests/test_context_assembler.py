"""Tests for the per-depth ContextAssembler."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeStore, days_ago, make_intent
from stage_recall.config import AssemblyConfig
from stage_recall.context_assembler import ContextAssembler, build_emotional_thread
from stage_recall.models import (
    DetectedReference,
    DetectionSummary,
    EmotionalReading,
    EmotionalTrend,
    FullBundle,
    LightBundle,
    MemoryIntent,
    MinimalBundle,
    NoRecallBundle,
    ReferenceType,
    RetrievalDepth,
    RetrievalResult,
)


def _readings(*values):
    return [EmotionalReading(intensity=v, recorded_at=days_ago(0)) for v in values]


def _gateway(result: RetrievalResult | None = None):
    gateway = MagicMock()
    gateway.retrieve = AsyncMock(return_value=result or RetrievalResult())
    return gateway


def _assembler(store, gateway=None, config=None):
    return ContextAssembler(store, store, store, store, gateway=gateway, config=config)


# ---------------------------------------------------------------------------
# Emotional thread
# ---------------------------------------------------------------------------


class TestEmotionalThread:
    def test_empty_is_unknown(self):
        thread = build_emotional_thread([])
        assert thread.trend == EmotionalTrend.UNKNOWN
        assert thread.current is None

    def test_escalating_with_shift(self):
        thread = build_emotional_thread(_readings(2, 3, 3, 6, 7, 8))

        assert thread.initial == 2
        assert thread.current == 8
        assert thread.trend == EmotionalTrend.ESCALATING
        assert [(s.from_intensity, s.to_intensity) for s in thread.notable_shifts] == [(3, 6)]

    def test_de_escalating(self):
        thread = build_emotional_thread(_readings(8, 7, 7, 4, 3, 3))
        assert thread.trend == EmotionalTrend.DE_ESCALATING

    def test_stable(self):
        assert build_emotional_thread(_readings(5, 5, 6)).trend == EmotionalTrend.STABLE

    def test_shifts_capped(self):
        thread = build_emotional_thread(_readings(0, 5, 0, 5, 0, 5))
        assert len(thread.notable_shifts) == 3


# ---------------------------------------------------------------------------
# ContextAssembler.assemble()
# ---------------------------------------------------------------------------


class TestAssembleDepths:
    @pytest.mark.asyncio
    async def test_none_touches_nothing(self):
        store = MagicMock()
        for name in (
            "get_recent_turns",
            "get_readings",
            "get_user_memories",
            "get_notable_facts",
            "get_prior_themes",
            "get_session_summary",
        ):
            setattr(store, name, AsyncMock())
        gateway = _gateway()
        intent = make_intent(
            RetrievalDepth.NONE, intent=MemoryIntent.AVOID_RECALL, safety_override=True
        )

        bundle = await _assembler(store, gateway).assemble(
            "s1", "u1", 2, intent, message_text="I can't do this"
        )

        assert isinstance(bundle, NoRecallBundle)
        assert not hasattr(bundle, "turn_window")
        assert not hasattr(bundle, "evidence")
        store.get_recent_turns.assert_not_called()
        store.get_readings.assert_not_called()
        store.get_user_memories.assert_not_called()
        gateway.retrieve.assert_not_called()

    @pytest.mark.asyncio
    async def test_minimal(self, fake_store):
        fake_store.get_prior_themes = AsyncMock(return_value=fake_store.themes)
        intent = make_intent(
            RetrievalDepth.MINIMAL, intent=MemoryIntent.EMOTIONAL_VALIDATION
        )

        bundle = await _assembler(fake_store).assemble("s1", "u1", 1, intent)

        assert isinstance(bundle, MinimalBundle)
        assert len(bundle.turn_window) == 10
        assert bundle.emotional_thread.current == 7
        assert [m.content for m in bundle.user_memories] == ["Call my partner Sam"]
        assert len(bundle.notable_facts) == 1
        assert bundle.evidence is None
        fake_store.get_prior_themes.assert_not_called()

    @pytest.mark.asyncio
    async def test_light_adds_continuity(self, fake_store):
        bundle = await _assembler(fake_store).assemble(
            "s1", "u1", 2, make_intent(RetrievalDepth.LIGHT), relationship_id="rel1"
        )

        assert isinstance(bundle, LightBundle)
        assert len(bundle.turn_window) == 8
        assert bundle.prior_themes.themes == ["household chores"]
        assert bundle.session_summary.summary == "User feels unheard about chores"

    @pytest.mark.asyncio
    async def test_full_carries_detected_references(self, fake_store):
        reference = DetectedReference(type=ReferenceType.AGREEMENT, text="split chores")
        gateway = _gateway(
            RetrievalResult(detection=DetectionSummary(references=[reference]))
        )

        bundle = await _assembler(fake_store, gateway).assemble(
            "s1", "u1", 3, make_intent(RetrievalDepth.FULL),
            message_text="I thought we agreed to split chores",
            relationship_id="rel1",
        )

        assert isinstance(bundle, FullBundle)
        assert bundle.detected_references == [reference]
        gateway.retrieve.assert_awaited_once()
        args, kwargs = gateway.retrieve.call_args
        assert args == ("u1", "I thought we agreed to split chores", 0.5, 5)
        assert kwargs["session_id"] == "s1"
        assert kwargs["relationship_id"] == "rel1"


class TestAssembleDegradation:
    @pytest.mark.asyncio
    async def test_failed_fetch_is_omitted(self, fake_store):
        fake_store.get_notable_facts = AsyncMock(side_effect=RuntimeError("db down"))

        bundle = await _assembler(fake_store).assemble(
            "s1", "u1", 2, make_intent(RetrievalDepth.LIGHT)
        )

        assert bundle.notable_facts == []
        assert len(bundle.user_memories) == 1

    @pytest.mark.asyncio
    async def test_slow_fetch_is_omitted(self, fake_store):
        async def slow_readings(session_id, user_id):
            await asyncio.sleep(1.0)
            return []

        fake_store.get_readings = slow_readings

        bundle = await _assembler(
            fake_store, config=AssemblyConfig(fetch_timeout_seconds=0.05)
        ).assemble("s1", "u1", 2, make_intent(RetrievalDepth.LIGHT))

        assert bundle.emotional_thread is None
        assert len(bundle.turn_window) == 8

    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_evidence_empty(self, fake_store):
        gateway = MagicMock()
        gateway.retrieve = AsyncMock(side_effect=RuntimeError("search down"))

        bundle = await _assembler(fake_store, gateway).assemble(
            "s1", "u1", 3, make_intent(RetrievalDepth.FULL), message_text="hello"
        )

        assert bundle.evidence is None
        assert bundle.detected_references == []


class TestEvidenceQuery:
    @pytest.mark.asyncio
    async def test_falls_back_to_latest_user_turn(self, fake_store):
        gateway = _gateway()

        await _assembler(fake_store, gateway).assemble(
            "s1", "u1", 2, make_intent(RetrievalDepth.LIGHT)
        )

        assert gateway.retrieve.call_args.args[1] == "user message 18"

    @pytest.mark.asyncio
    async def test_no_query_skips_gateway(self):
        store = FakeStore()
        gateway = _gateway()

        bundle = await _assembler(store, gateway).assemble(
            "s1", "u1", 2, make_intent(RetrievalDepth.LIGHT)
        )

        gateway.retrieve.assert_not_called()
        assert bundle.evidence is None
