"""
stage_recall test fixtures
Shared fakes for stores, vector search and model calls
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from stage_recall.models import (
    ConversationTurn,
    Corpus,
    CorpusMatch,
    EmotionalReading,
    MemoryIntent,
    MemoryIntentResult,
    MemoryPreferences,
    NotableFact,
    PriorThemes,
    RetrievalDepth,
    Role,
    SessionSummary,
    SurfaceStyle,
    UserMemory,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def days_ago(days: float) -> datetime:
    return NOW - timedelta(days=days)


def make_intent(
    depth: RetrievalDepth = RetrievalDepth.LIGHT,
    *,
    intent: MemoryIntent = MemoryIntent.RECALL_COMMITMENT,
    threshold: float = 0.5,
    max_cross_session: int = 5,
    allow_cross_session: bool = True,
    safety_override: bool = False,
) -> MemoryIntentResult:
    return MemoryIntentResult(
        intent=intent,
        depth=depth,
        threshold=threshold,
        max_cross_session=max_cross_session,
        allow_cross_session=allow_cross_session,
        surface_style=SurfaceStyle.TENTATIVE,
        reason="test",
        safety_override=safety_override,
    )


class FakeVectorSearch:
    """In-memory VectorSearch returning canned matches per corpus."""

    def __init__(
        self,
        results: dict[Corpus, list[CorpusMatch]] | None = None,
        errors: dict[Corpus, Exception] | None = None,
        delays: dict[Corpus, float] | None = None,
    ):
        self.results = results or {}
        self.errors = errors or {}
        self.delays = delays or {}
        self.calls: list[dict[str, Any]] = []

    async def search(self, query, corpus, user_id, top_k, threshold, filters=None):
        self.calls.append(
            {
                "query": query,
                "corpus": corpus,
                "user_id": user_id,
                "top_k": top_k,
                "threshold": threshold,
                "filters": filters,
            }
        )
        if corpus in self.delays:
            await asyncio.sleep(self.delays[corpus])
        if corpus in self.errors:
            raise self.errors[corpus]
        matches = [m for m in self.results.get(corpus, []) if m.similarity >= threshold]
        return matches[:top_k]

    def corpora_called(self) -> set[Corpus]:
        return {call["corpus"] for call in self.calls}


class FakeStore:
    """In-memory implementation of every store protocol."""

    def __init__(self):
        self.turns: list[ConversationTurn] = []
        self.readings: list[EmotionalReading] = []
        self.memories: list[UserMemory] = []
        self.facts: list[NotableFact] = []
        self.themes: PriorThemes | None = None
        self.summary: SessionSummary | None = None
        self.preferences: MemoryPreferences | None = None

    async def get_recent_turns(self, session_id, user_id, limit):
        return self.turns[-limit:] if limit > 0 else []

    async def get_history(self, session_id, user_id):
        return list(self.turns)

    async def get_readings(self, session_id, user_id):
        return list(self.readings)

    async def get_user_memories(self, user_id, session_id=None):
        return list(self.memories)

    async def get_notable_facts(self, session_id, user_id):
        return list(self.facts)

    async def get_prior_themes(self, user_id, relationship_id=None, exclude_session_id=None):
        return self.themes

    async def get_session_summary(self, session_id, user_id):
        return self.summary

    async def get_preferences(self, user_id):
        return self.preferences


class FakeLLM:
    """Stateless chat LLM streaming canned chunks."""

    def __init__(self, chunks: list[Any]):
        self.chunks = chunks
        self.calls: list[dict[str, Any]] = []

    async def chat_completion(self, messages, system=None):
        self.calls.append({"messages": messages, "system": system})
        for chunk in self.chunks:
            yield chunk


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_store():
    store = FakeStore()
    store.turns = [
        ConversationTurn(role=Role.USER, content=f"user message {i}", timestamp=days_ago(0))
        if i % 2 == 0
        else ConversationTurn(
            role=Role.ASSISTANT, content=f"assistant reply {i}", timestamp=days_ago(0)
        )
        for i in range(20)
    ]
    store.readings = [
        EmotionalReading(intensity=v, recorded_at=days_ago(0)) for v in (3, 4, 4, 6, 7)
    ]
    store.memories = [UserMemory(content="Call my partner Sam")]
    store.facts = [NotableFact(category="people", fact="Partner is named Sam")]
    store.themes = PriorThemes(
        themes=["household chores"], last_session_summary="Talked about chores", session_count=1
    )
    store.summary = SessionSummary(summary="User feels unheard about chores", turn_count=4)
    return store


@pytest.fixture
def fake_clock():
    return FakeClock()
