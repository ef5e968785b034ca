"""Prompt text rendering for context bundles and retrieved evidence.

Every block starts with a ``=== Title ===`` header line so the budget
manager can cut the rendered text on section boundaries.
"""

from __future__ import annotations

from .models import (
    ContextBundle,
    EvidenceOrigin,
    FullBundle,
    LightBundle,
    NoRecallBundle,
    RetrievalResult,
    RetrievedEvidence,
    Role,
)


def _section(title: str, lines: list[str]) -> str:
    body = "\n".join(line for line in lines if line.strip())
    if not body:
        return ""
    return f"=== {title} ===\n{body}"


def _speaker(role: Role | None) -> str:
    return "User" if role == Role.USER else "AI"


def _join(sections: list[str]) -> str:
    return "\n\n".join(s for s in sections if s)


def _evidence_line(item: RetrievedEvidence) -> str:
    return f"{_speaker(item.role)}: {item.content}"


def format_evidence(result: RetrievalResult | None) -> str:
    """Render retrieved evidence grouped by origin, with recency framing."""
    if result is None or not result.evidence:
        return ""

    cross: list[str] = []
    reflections: list[str] = []
    same: list[str] = []

    for item in result.evidence:
        tc = item.time_context
        if item.origin == EvidenceOrigin.CROSS_SESSION:
            label = item.partner_label or "an earlier session"
            if tc.use_remembering_language:
                cross.append(f"[Session with {label}, {tc.phrase}]")
            else:
                cross.append(f"[{label}]")
            cross.append(_evidence_line(item))
        elif item.origin == EvidenceOrigin.PRIVATE_REFLECTION:
            marker = " [linked to this session]" if item.is_linked else ""
            when = f", {tc.phrase}" if tc.use_remembering_language else ""
            reflections.append(f"- ({_speaker(item.role)}{when}) \"{item.content}\"{marker}")
        else:
            if tc.use_remembering_language:
                same.append(f"[{tc.phrase}]")
            same.append(_evidence_line(item))

    sections = []
    if result.recency_guidance:
        sections.append(_section("Memory guidance", [result.recency_guidance]))
    sections.append(_section("Related content from previous sessions", cross))
    if reflections:
        sections.append(
            _section(
                "Private reflections",
                [
                    "These are private; reference gently and never quote directly.",
                    *reflections,
                ],
            )
        )
    sections.append(_section("Related content from earlier in this session", same))
    return _join(sections)


def format_bundle(bundle: ContextBundle) -> str:
    """Render the non-evidence parts of a bundle."""
    if isinstance(bundle, NoRecallBundle):
        return ""

    sections: list[str] = []

    thread = bundle.emotional_thread
    if thread is not None:
        intensity = f"{thread.current:g}/10" if thread.current is not None else "Unknown"
        turns = sum(1 for t in bundle.turn_window if t.role == Role.USER)
        lines = [f"Intensity: {intensity} ({thread.trend.value}) | Recent turns: {turns}"]
        for shift in thread.notable_shifts:
            lines.append(
                f"- Shift from {shift.from_intensity:g} to {shift.to_intensity:g}"
            )
        sections.append(_section("Emotional state", lines))

    if isinstance(bundle, LightBundle):
        if bundle.session_summary is not None:
            sections.append(
                _section("Rolling summary", [bundle.session_summary.summary])
            )
        themes = bundle.prior_themes
        if themes is not None and (themes.themes or themes.last_session_summary):
            lines = []
            if themes.themes:
                lines.append(f"Themes: {', '.join(themes.themes)}")
            if themes.last_session_summary:
                lines.append(f"Last session: {themes.last_session_summary}")
            sections.append(
                _section("From prior sessions (use for continuity only)", lines)
            )

    if bundle.user_memories:
        sections.append(
            _section(
                "User memories to honor",
                [f"- {m.content}" for m in bundle.user_memories],
            )
        )

    if bundle.notable_facts:
        sections.append(
            _section(
                "Notable facts",
                [
                    f"- [{f.category}] {f.fact}"
                    for f in bundle.notable_facts
                ],
            )
        )

    if isinstance(bundle, FullBundle) and bundle.detected_references:
        sections.append(
            _section(
                "Detected references in user message",
                [
                    f'- {ref.type.value}: "{ref.text}" ({ref.confidence:.1f})'
                    for ref in bundle.detected_references
                ],
            )
        )

    return _join(sections)


def format_context(bundle: ContextBundle) -> str:
    """Render the full context string handed to the budget manager."""
    if isinstance(bundle, NoRecallBundle):
        return ""
    return _join([format_bundle(bundle), format_evidence(bundle.evidence)])
