"""Collaborator interfaces.

stage_recall owns no persistence and no model client. Everything it reads
or calls goes through these protocols, so any store or LLM backend can be
plugged in. :class:`~stage_recall.storage.sqlite_store.SQLiteStore` is the
bundled reference implementation of every store protocol plus vector search.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from .models import (
    ConversationTurn,
    Corpus,
    CorpusMatch,
    EmotionalReading,
    MemoryPreferences,
    NotableFact,
    PriorThemes,
    SessionSummary,
    UserMemory,
)


@runtime_checkable
class MessageHistoryStore(Protocol):
    """Session messages visible to one user."""

    async def get_recent_turns(
        self, session_id: str, user_id: str, limit: int
    ) -> list[ConversationTurn]:
        """Return the latest ``limit`` messages, oldest first.

        Only the user's own messages and the assistant replies addressed to
        them are returned.
        """
        ...

    async def get_history(self, session_id: str, user_id: str) -> list[ConversationTurn]:
        """Return the user's full session history, oldest first."""
        ...


@runtime_checkable
class EmotionalReadingStore(Protocol):
    async def get_readings(
        self, session_id: str, user_id: str
    ) -> list[EmotionalReading]:
        """Return intensity readings for the session, oldest first."""
        ...


@runtime_checkable
class FactStore(Protocol):
    """Curated memories and facts, always loaded verbatim."""

    async def get_user_memories(
        self, user_id: str, session_id: str | None = None
    ) -> list[UserMemory]:
        """Return global memories plus those scoped to ``session_id``."""
        ...

    async def get_notable_facts(self, session_id: str, user_id: str) -> list[NotableFact]:
        ...


@runtime_checkable
class SummaryStore(Protocol):
    async def get_prior_themes(
        self,
        user_id: str,
        relationship_id: str | None = None,
        exclude_session_id: str | None = None,
    ) -> PriorThemes | None:
        """Return themes from earlier sessions of the same relationship."""
        ...

    async def get_session_summary(
        self, session_id: str, user_id: str
    ) -> SessionSummary | None:
        ...


@runtime_checkable
class PreferenceStore(Protocol):
    async def get_preferences(self, user_id: str) -> MemoryPreferences | None:
        ...


@runtime_checkable
class VectorSearch(Protocol):
    """Similarity search over an embedded corpus."""

    async def search(
        self,
        query: str,
        corpus: Corpus,
        user_id: str,
        top_k: int,
        threshold: float,
        filters: dict[str, Any] | None = None,
    ) -> list[CorpusMatch]:
        """Return matches at or above ``threshold``, most similar first.

        Recognised filters: ``relationship_id``, ``session_id`` and
        ``exclude_session_id``.
        """
        ...


@runtime_checkable
class FastClassifier(Protocol):
    """Small, fast model used for structured side calls."""

    async def complete_json(
        self, system_prompt: str, user_prompt: str, max_tokens: int = 512
    ) -> Any:
        """Return the parsed JSON response.

        Raises:
            ValueError: If the response is not valid JSON
        """
        ...


@runtime_checkable
class Generator(Protocol):
    """The main response model."""

    async def generate(
        self,
        system_content: str,
        messages: list[dict[str, str]],
        max_tokens: int,
    ) -> str:
        """Return the reply, at most ``max_tokens`` long."""
        ...
