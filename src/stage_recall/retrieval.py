"""Semantic retrieval gateway.

Finds past content relevant to the current turn in three corpora:

- Cross-session content from earlier sessions of the same relationship
- Earlier content from the current session
- The user's private reflections, boosted when linked to this session

A fast classifier proposes search queries from references in the user's
message. It runs behind a circuit breaker, so a slow or failing classifier
degrades to "no retrieval" instead of adding latency. Private reflections
are searched with the message itself alongside detection, so they do not
depend on it. Each corpus search has its own timeout and a failing corpus
only empties its own slice. The gateway never raises.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from loguru import logger

from .circuit_breaker import CircuitBreakerRegistry
from .config import RetrievalConfig
from .interfaces import FastClassifier, PreferenceStore, VectorSearch
from .models import (
    Corpus,
    CorpusMatch,
    DetectedReference,
    DetectionSummary,
    EvidenceOrigin,
    MemoryIntentResult,
    MemoryPreferences,
    RetrievalResult,
    RetrievedEvidence,
)
from .recency import describe_recency, recency_guidance

DETECTION_BREAKER = "reference-detection"

DETECTION_SYSTEM_PROMPT = (
    "You detect references to past content in messages. Output JSON only."
)

_DETECTION_INSTRUCTIONS = """Look for:
- References to specific people (names, relationships like "my mom", "my partner")
- References to past events ("last time", "when we talked", "remember when")
- References to agreements or commitments:
  * Explicit: "we agreed", "you said", "I promised", "we decided", "our agreement"
  * Implicit: "But I thought...", "I thought we...", "I assumed...", "I believed...",
    "I was under the impression...", "I understood that...", "I thought you meant..."
- References to past feelings ("I felt", "that time I was")
- Time references ("yesterday", "last week", "before")

Implicit commitment references are common and should set needsRetrieval to true.

Respond with JSON:
{
  "references": [
    {"type": "person|event|agreement|feeling|time", "text": "the reference text", "confidence": "high|medium|low"}
  ],
  "needsRetrieval": true or false,
  "searchQueries": ["short semantic search query", "..."]
}

If there are no references, return empty arrays and "needsRetrieval": false."""


def build_detection_prompt(message_text: str) -> str:
    return (
        "Analyze this message for references to past events, people, "
        "agreements, or time periods.\n\n"
        f'Message: "{message_text}"\n\n'
        f"{_DETECTION_INSTRUCTIONS}"
    )


def parse_detection(raw: Any) -> DetectionSummary:
    """Validate the classifier's JSON into a DetectionSummary.

    Raises:
        ValueError: If the payload is not a JSON object
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Expected a JSON object, got {type(raw).__name__}")

    references: list[DetectedReference] = []
    for item in raw.get("references") or []:
        try:
            references.append(DetectedReference.model_validate(item))
        except ValueError as e:
            logger.debug(f"Skipping malformed reference {item!r}: {e}")

    queries = [
        q.strip()
        for q in raw.get("searchQueries") or []
        if isinstance(q, str) and q.strip()
    ]
    return DetectionSummary(
        references=references,
        needs_retrieval=bool(raw.get("needsRetrieval", False)),
        search_queries=queries,
    )


def cross_session_permitted(
    intent: MemoryIntentResult | None,
    detection: DetectionSummary,
    preferences: MemoryPreferences | None,
) -> bool:
    """Cross-session search is allowed by policy, by reference, or by opt-in.

    Acute distress always wins and turns it off.
    """
    if intent is not None and intent.safety_override:
        return False
    return (
        (intent.allow_cross_session if intent is not None else True)
        or detection.needs_retrieval
        or (preferences is not None and preferences.cross_session_recall)
    )


class RetrievalGateway:
    """Reference detection plus parallel corpus search."""

    def __init__(
        self,
        vector_search: VectorSearch,
        breakers: CircuitBreakerRegistry,
        classifier: FastClassifier | None = None,
        preference_store: PreferenceStore | None = None,
        config: RetrievalConfig | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        """Initialize the gateway.

        Args:
            vector_search: Similarity search over the embedded corpora
            breakers: Registry holding the reference-detection breaker
            classifier: Fast JSON classifier for reference detection; when
                missing, detection always falls back to "no retrieval"
            preference_store: Used to load preferences the caller did not pass
            config: Retrieval configuration
            now: Clock for recency phrasing, defaults to UTC now
        """
        self._search = vector_search
        self._breakers = breakers
        self._classifier = classifier
        self._preferences = preference_store
        self._config = config or RetrievalConfig()
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def retrieve(
        self,
        user_id: str,
        message_text: str,
        threshold: float,
        max_cross_session: int,
        session_id: str | None = None,
        relationship_id: str | None = None,
        *,
        intent: MemoryIntentResult | None = None,
        preferences: MemoryPreferences | None = None,
        include_reflections: bool = True,
        skip_detection: bool = False,
    ) -> RetrievalResult:
        """Retrieve evidence for one turn.

        Args:
            user_id: Requesting user
            message_text: Current message, or the query to search with
            threshold: Minimum similarity for any item
            max_cross_session: Cap on cross-session items plus reflections
            session_id: Current session; detection only runs when known
            relationship_id: Scope for cross-session search
            intent: Turn intent, supplies cross-session permission and the
                safety override
            preferences: User memory preferences, loaded when omitted
            include_reflections: Whether to search private reflections
            skip_detection: Search with ``message_text`` directly

        Returns:
            RetrievalResult, empty when nothing needs retrieving
        """
        started = time.perf_counter()
        safety = intent is not None and intent.safety_override
        # Reflections are always searched with the message itself
        direct_reflections = (
            include_reflections
            and not safety
            and not skip_detection
            and max_cross_session > 0
            and bool(message_text.strip())
        )

        detection, reflections = await asyncio.gather(
            self._detection_for(message_text, session_id, skip_detection),
            self._search_reflections(message_text, user_id, session_id, threshold)
            if direct_reflections
            else self._no_evidence(),
        )

        if not detection.needs_retrieval or not detection.search_queries:
            logger.debug(
                f"No retrieval needed (references={len(detection.references)}, "
                f"fallback={detection.used_fallback}, reflections={len(reflections)})"
            )
            evidence = self._merge([reflections], max_cross_session)
            return RetrievalResult(
                evidence=evidence,
                detection=detection,
                recency_guidance=recency_guidance(
                    [e.timestamp for e in evidence], self._now()
                ),
            )

        if preferences is None:
            preferences = await self._load_preferences(user_id)

        allow_cross = cross_session_permitted(intent, detection, preferences)
        queries = detection.search_queries[: self._config.max_search_queries]

        per_query = await asyncio.gather(
            *(
                self._search_query(
                    query,
                    user_id=user_id,
                    session_id=session_id,
                    relationship_id=relationship_id,
                    threshold=threshold,
                    max_cross_session=max_cross_session,
                    allow_cross=allow_cross,
                    include_reflections=include_reflections and not safety,
                )
                for query in queries
            )
        )

        evidence = self._merge([reflections, *per_query], max_cross_session)
        guidance = recency_guidance([e.timestamp for e in evidence], self._now())

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"Retrieved {len(evidence)} evidence items in {elapsed_ms:.0f}ms "
            f"(queries={len(queries)}, cross_session={allow_cross}, "
            f"references={len(detection.references)})"
        )
        return RetrievalResult(
            evidence=evidence,
            detection=detection,
            recency_guidance=guidance,
        )

    async def detect_references(self, message_text: str) -> DetectionSummary:
        """Ask the fast classifier which past content the message refers to."""
        if self._classifier is None or not message_text.strip():
            return DetectionSummary(used_fallback=self._classifier is None)

        classifier = self._classifier

        async def _detect() -> DetectionSummary:
            raw = await classifier.complete_json(
                DETECTION_SYSTEM_PROMPT,
                build_detection_prompt(message_text),
                max_tokens=self._config.detection_max_tokens,
            )
            return parse_detection(raw)

        return await self._breakers.call(
            DETECTION_BREAKER,
            _detect,
            fallback=lambda: DetectionSummary(used_fallback=True),
        )

    async def _detection_for(
        self, message_text: str, session_id: str | None, skip_detection: bool
    ) -> DetectionSummary:
        if skip_detection:
            return DetectionSummary(
                needs_retrieval=bool(message_text.strip()),
                search_queries=[message_text] if message_text.strip() else [],
            )
        if session_id:
            return await self.detect_references(message_text)
        return DetectionSummary()

    @staticmethod
    async def _no_evidence() -> list[RetrievedEvidence]:
        return []

    async def _load_preferences(self, user_id: str) -> MemoryPreferences | None:
        if self._preferences is None:
            return None
        try:
            return await asyncio.wait_for(
                self._preferences.get_preferences(user_id),
                timeout=self._config.search_timeout_seconds,
            )
        except Exception as e:
            logger.warning(f"Failed to load memory preferences for {user_id}: {e}")
            return None

    async def _search_query(
        self,
        query: str,
        *,
        user_id: str,
        session_id: str | None,
        relationship_id: str | None,
        threshold: float,
        max_cross_session: int,
        allow_cross: bool,
        include_reflections: bool,
    ) -> list[RetrievedEvidence]:
        """Search every permitted corpus for one query in parallel."""
        searches: list[Awaitable[list[RetrievedEvidence]]] = []

        if allow_cross and relationship_id and max_cross_session > 0:
            filters: dict[str, Any] = {"relationship_id": relationship_id}
            if session_id:
                filters["exclude_session_id"] = session_id
            searches.append(
                self._safe_search(
                    query,
                    Corpus.SESSION_CONTENT,
                    EvidenceOrigin.CROSS_SESSION,
                    user_id=user_id,
                    top_k=self._config.cross_session_top_k,
                    threshold=threshold,
                    filters=filters,
                )
            )

        if session_id:
            searches.append(
                self._safe_search(
                    query,
                    Corpus.SESSION_MESSAGES,
                    EvidenceOrigin.SAME_SESSION,
                    user_id=user_id,
                    top_k=self._config.same_session_top_k,
                    threshold=threshold,
                    filters={"session_id": session_id},
                )
            )

        if include_reflections and max_cross_session > 0:
            searches.append(self._search_reflections(query, user_id, session_id, threshold))

        results = await asyncio.gather(*searches)
        return [item for batch in results for item in batch]

    async def _search_reflections(
        self,
        query: str,
        user_id: str,
        session_id: str | None,
        threshold: float,
    ) -> list[RetrievedEvidence]:
        boost = self._config.linked_reflection_boost
        # Linked items may cross the threshold only after boosting
        candidates = await self._safe_search(
            query,
            Corpus.REFLECTIONS,
            EvidenceOrigin.PRIVATE_REFLECTION,
            user_id=user_id,
            top_k=self._config.reflection_top_k,
            threshold=threshold / boost if boost > 1.0 else threshold,
            filters=None,
            linked_session_id=session_id,
        )

        kept: list[RetrievedEvidence] = []
        for item in candidates:
            if item.is_linked:
                item.similarity = min(1.0, item.similarity * boost)
            if item.similarity >= threshold:
                kept.append(item)
        return kept

    async def _safe_search(
        self,
        query: str,
        corpus: Corpus,
        origin: EvidenceOrigin,
        *,
        user_id: str,
        top_k: int,
        threshold: float,
        filters: dict[str, Any] | None,
        linked_session_id: str | None = None,
    ) -> list[RetrievedEvidence]:
        try:
            matches = await asyncio.wait_for(
                self._search.search(query, corpus, user_id, top_k, threshold, filters),
                timeout=self._config.search_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"{corpus.value} search timed out after "
                f"{self._config.search_timeout_seconds}s"
            )
            return []
        except Exception as e:
            logger.warning(f"{corpus.value} search failed: {e}")
            return []

        now = self._now()
        return [self._to_evidence(m, origin, linked_session_id, now) for m in matches]

    @staticmethod
    def _to_evidence(
        match: CorpusMatch,
        origin: EvidenceOrigin,
        linked_session_id: str | None,
        now: datetime,
    ) -> RetrievedEvidence:
        return RetrievedEvidence(
            content=match.content,
            similarity=match.similarity,
            time_context=describe_recency(match.timestamp, now),
            origin=origin,
            source_id=match.source_id,
            role=match.role,
            timestamp=match.timestamp,
            partner_label=match.partner_label,
            is_linked=(
                linked_session_id is not None
                and match.linked_session_id == linked_session_id
            ),
        )

    def _merge(
        self,
        per_query: list[list[RetrievedEvidence]],
        max_cross_session: int,
    ) -> list[RetrievedEvidence]:
        """Dedupe across queries, sort by similarity and apply the caps."""
        prefix = self._config.dedup_prefix_chars
        seen: set[tuple[str, str]] = set()
        other: list[RetrievedEvidence] = []
        same: list[RetrievedEvidence] = []

        for batch in per_query:
            for item in batch:
                key = (item.source_id, item.content[:prefix])
                if key in seen:
                    continue
                seen.add(key)
                if item.origin == EvidenceOrigin.SAME_SESSION:
                    same.append(item)
                else:
                    other.append(item)

        other.sort(key=lambda e: e.similarity, reverse=True)
        same.sort(key=lambda e: e.similarity, reverse=True)
        merged = other[: max(0, max_cross_session)] + same[: self._config.max_same_session]
        merged.sort(key=lambda e: e.similarity, reverse=True)
        return merged
