"""Tests for prompt text rendering."""

from __future__ import annotations

from conftest import NOW, days_ago, make_intent
from stage_recall.formatting import format_bundle, format_context, format_evidence
from stage_recall.models import (
    ConversationTurn,
    DetectedReference,
    EmotionalThread,
    EmotionalTrend,
    EvidenceOrigin,
    FullBundle,
    LightBundle,
    MinimalBundle,
    NoRecallBundle,
    NotableFact,
    PriorThemes,
    ReferenceType,
    RetrievalDepth,
    RetrievalResult,
    RetrievedEvidence,
    Role,
    SessionSummary,
    StageContext,
    UserMemory,
)
from stage_recall.recency import describe_recency

STAGE_CONTEXT = StageContext(stage=2, session_id="s1", user_id="u1")


def _evidence(origin, content, timestamp, **kwargs):
    return RetrievedEvidence(
        content=content,
        similarity=0.8,
        time_context=describe_recency(timestamp, NOW),
        origin=origin,
        source_id=content,
        role=Role.USER,
        timestamp=timestamp,
        **kwargs,
    )


class TestFormatEvidence:
    def test_empty(self):
        assert format_evidence(None) == ""
        assert format_evidence(RetrievalResult()) == ""

    def test_cross_session_with_recency(self):
        result = RetrievalResult(
            evidence=[
                _evidence(
                    EvidenceOrigin.CROSS_SESSION,
                    "We said Sundays are for chores",
                    days_ago(3),
                    partner_label="Alex",
                )
            ],
            recency_guidance="This is from recent days.",
        )
        text = format_evidence(result)

        assert text.startswith("=== Memory guidance ===")
        assert "=== Related content from previous sessions ===" in text
        assert "[Session with Alex, a few days ago]" in text
        assert "User: We said Sundays are for chores" in text

    def test_reflection_marks_linked(self):
        result = RetrievalResult(
            evidence=[
                _evidence(
                    EvidenceOrigin.PRIVATE_REFLECTION,
                    "I feel invisible",
                    days_ago(2),
                    is_linked=True,
                )
            ]
        )
        text = format_evidence(result)

        assert "=== Private reflections ===" in text
        assert '"I feel invisible" [linked to this session]' in text

    def test_same_session_just_now_has_no_time_label(self):
        result = RetrievalResult(
            evidence=[_evidence(EvidenceOrigin.SAME_SESSION, "It's the dishes", NOW)]
        )
        text = format_evidence(result)

        assert text == (
            "=== Related content from earlier in this session ===\n"
            "User: It's the dishes"
        )


class TestFormatBundle:
    def test_no_recall_bundle_is_empty(self):
        bundle = NoRecallBundle(
            intent=make_intent(RetrievalDepth.NONE), stage_context=STAGE_CONTEXT
        )
        assert format_bundle(bundle) == ""
        assert format_context(bundle) == ""

    def test_light_bundle_sections(self):
        bundle = LightBundle(
            intent=make_intent(RetrievalDepth.LIGHT),
            stage_context=STAGE_CONTEXT,
            turn_window=[ConversationTurn(role=Role.USER, content="hi")],
            emotional_thread=EmotionalThread(
                initial=3, current=7, trend=EmotionalTrend.ESCALATING
            ),
            user_memories=[UserMemory(content="Call my partner Sam")],
            notable_facts=[NotableFact(category="people", fact="Partner is Sam")],
            prior_themes=PriorThemes(themes=["chores", "money"], last_session_summary="Chores"),
            session_summary=SessionSummary(summary="Feeling unheard"),
        )
        text = format_bundle(bundle)

        assert "Intensity: 7/10 (escalating) | Recent turns: 1" in text
        assert "=== Rolling summary ===\nFeeling unheard" in text
        assert "Themes: chores, money" in text
        assert "=== User memories to honor ===\n- Call my partner Sam" in text
        assert "- [people] Partner is Sam" in text

    def test_minimal_bundle_has_no_continuity(self):
        bundle = MinimalBundle(
            intent=make_intent(RetrievalDepth.MINIMAL),
            stage_context=STAGE_CONTEXT,
            user_memories=[UserMemory(content="Call my partner Sam")],
        )
        text = format_bundle(bundle)

        assert "Rolling summary" not in text
        assert "User memories to honor" in text

    def test_full_bundle_lists_references(self):
        bundle = FullBundle(
            intent=make_intent(RetrievalDepth.FULL),
            stage_context=STAGE_CONTEXT,
            detected_references=[
                DetectedReference(
                    type=ReferenceType.AGREEMENT, text="split chores", confidence="high"
                )
            ],
        )
        assert '- agreement: "split chores" (0.9)' in format_bundle(bundle)

    def test_context_joins_bundle_and_evidence(self):
        bundle = MinimalBundle(
            intent=make_intent(RetrievalDepth.MINIMAL),
            stage_context=STAGE_CONTEXT,
            notable_facts=[NotableFact(category="place", fact="Lives in Leeds")],
            evidence=RetrievalResult(
                evidence=[_evidence(EvidenceOrigin.SAME_SESSION, "Leeds is far", NOW)]
            ),
        )
        text = format_context(bundle)

        assert text.index("=== Notable facts ===") < text.index(
            "=== Related content from earlier in this session ==="
        )
