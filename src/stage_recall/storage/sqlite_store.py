"""SQLite storage backend for stage_recall.

Persists session messages, emotional readings, curated memories and facts,
summaries, preferences and an embedded corpus using aiosqlite. Implements
every read protocol the assembler and gateway depend on, plus cosine
similarity search over stored embeddings.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite
import numpy as np
from loguru import logger

from ..embedding import (
    Embedder,
    aencode,
    cosine_similarities,
    deserialize_embedding,
    serialize_embedding,
)
from ..models import (
    ConversationTurn,
    Corpus,
    CorpusMatch,
    EmotionalReading,
    MemoryPreferences,
    NotableFact,
    PriorThemes,
    Role,
    SessionSummary,
    UserMemory,
)

_FILTER_COLUMNS = {
    "relationship_id": "relationship_id = ?",
    "session_id": "session_id = ?",
    "exclude_session_id": "(session_id IS NULL OR session_id != ?)",
}


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteStore:
    """SQLite storage backend for stage_recall.

    Uses WAL mode for concurrent reads. Every read is scoped to the
    requesting user.
    """

    def __init__(
        self,
        db_path: str = "./data/stage_recall.db",
        embedder: Embedder | None = None,
    ):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file, or ``:memory:``
            embedder: Encoder for corpus documents and search queries
        """
        self.db_path = db_path
        self._embedder = embedder
        self._db: aiosqlite.Connection | None = None
        logger.info(f"SQLiteStore initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create database tables and indexes if they don't exist."""
        if self.db_path != ":memory:":
            db_dir = Path(self.db_path).parent
            db_dir.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Ensured database directory exists: {db_dir}")

        self._db = await aiosqlite.connect(self.db_path)

        await self._db.execute("PRAGMA journal_mode=WAL")

        await self._create_tables()
        await self._create_indexes()

        await self._db.commit()
        logger.info("SQLite database initialized successfully")

    async def _create_tables(self) -> None:
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                stage INTEGER,
                emotional_intensity REAL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS emotional_readings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                intensity REAL NOT NULL,
                recorded_at TEXT NOT NULL
            )
        """)

        # session_id NULL means the memory applies to every session
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS user_memories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                session_id TEXT,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS notable_facts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                category TEXT NOT NULL,
                fact TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS session_summaries (
                session_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                summary TEXT NOT NULL,
                turn_count INTEGER DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (session_id, user_id)
            )
        """)

        # One row per finished session, source of prior themes
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                relationship_id TEXT,
                themes TEXT,
                summary TEXT,
                started_at TEXT NOT NULL,
                PRIMARY KEY (session_id, user_id)
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memory_preferences (
                user_id TEXT PRIMARY KEY,
                cross_session_recall INTEGER DEFAULT 0,
                pattern_insights INTEGER DEFAULT 0
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS corpus_documents (
                doc_id TEXT PRIMARY KEY,
                corpus TEXT NOT NULL,
                user_id TEXT NOT NULL,
                relationship_id TEXT,
                session_id TEXT,
                linked_session_id TEXT,
                content TEXT NOT NULL,
                role TEXT,
                partner_label TEXT,
                timestamp TEXT,
                embedding BLOB
            )
        """)

        logger.debug("All tables created successfully")

    async def _create_indexes(self) -> None:
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_session_user
            ON messages(session_id, user_id)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_readings_session_user
            ON emotional_readings(session_id, user_id)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_memories_user
            ON user_memories(user_id)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_facts_session_user
            ON notable_facts(session_id, user_id)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_sessions_user_relationship
            ON sessions(user_id, relationship_id)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_corpus_user
            ON corpus_documents(corpus, user_id)
        """)

        logger.debug("All indexes created successfully")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite database connection closed")

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._db

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def add_message(
        self, session_id: str, user_id: str, turn: ConversationTurn
    ) -> int:
        """Store a message.

        Assistant replies are stored under the user they were addressed to.

        Returns:
            Row id of the new message
        """
        db = self._conn()
        cursor = await db.execute(
            """
            INSERT INTO messages (
                session_id, user_id, role, content, timestamp,
                stage, emotional_intensity
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                user_id,
                turn.role.value,
                turn.content,
                _to_iso(turn.timestamp),
                turn.stage,
                turn.emotional_intensity,
            ),
        )
        await db.commit()
        return cursor.lastrowid

    async def get_recent_turns(
        self, session_id: str, user_id: str, limit: int
    ) -> list[ConversationTurn]:
        if limit <= 0:
            return []
        async with self._conn().execute(
            """
            SELECT role, content, timestamp, stage, emotional_intensity
            FROM messages
            WHERE session_id = ? AND user_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (session_id, user_id, limit),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_turn(row) for row in reversed(rows)]

    async def get_history(self, session_id: str, user_id: str) -> list[ConversationTurn]:
        async with self._conn().execute(
            """
            SELECT role, content, timestamp, stage, emotional_intensity
            FROM messages
            WHERE session_id = ? AND user_id = ?
            ORDER BY id ASC
            """,
            (session_id, user_id),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_turn(row) for row in rows]

    @staticmethod
    def _row_to_turn(row: Any) -> ConversationTurn:
        return ConversationTurn(
            role=Role(row[0]),
            content=row[1],
            timestamp=_from_iso(row[2]),
            stage=row[3],
            emotional_intensity=row[4],
        )

    # ------------------------------------------------------------------
    # Emotional readings
    # ------------------------------------------------------------------

    async def add_reading(
        self, session_id: str, user_id: str, reading: EmotionalReading
    ) -> None:
        db = self._conn()
        await db.execute(
            """
            INSERT INTO emotional_readings (session_id, user_id, intensity, recorded_at)
            VALUES (?, ?, ?, ?)
            """,
            (session_id, user_id, reading.intensity, _to_iso(reading.recorded_at)),
        )
        await db.commit()

    async def get_readings(self, session_id: str, user_id: str) -> list[EmotionalReading]:
        async with self._conn().execute(
            """
            SELECT intensity, recorded_at
            FROM emotional_readings
            WHERE session_id = ? AND user_id = ?
            ORDER BY recorded_at ASC, id ASC
            """,
            (session_id, user_id),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            EmotionalReading(intensity=row[0], recorded_at=_from_iso(row[1]))
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Memories and facts
    # ------------------------------------------------------------------

    async def add_user_memory(self, user_id: str, memory: UserMemory) -> None:
        db = self._conn()
        await db.execute(
            """
            INSERT INTO user_memories (user_id, session_id, content, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (user_id, memory.session_id, memory.content, _to_iso(memory.created_at)),
        )
        await db.commit()
        logger.debug(f"User memory stored for {user_id}")

    async def get_user_memories(
        self, user_id: str, session_id: str | None = None
    ) -> list[UserMemory]:
        async with self._conn().execute(
            """
            SELECT content, session_id, created_at
            FROM user_memories
            WHERE user_id = ? AND (session_id IS NULL OR session_id = ?)
            ORDER BY created_at ASC, id ASC
            """,
            (user_id, session_id),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            UserMemory(content=row[0], session_id=row[1], created_at=_from_iso(row[2]))
            for row in rows
        ]

    async def add_notable_fact(
        self, session_id: str, user_id: str, fact: NotableFact
    ) -> None:
        db = self._conn()
        await db.execute(
            """
            INSERT INTO notable_facts (session_id, user_id, category, fact, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (session_id, user_id, fact.category, fact.fact, _to_iso(fact.created_at)),
        )
        await db.commit()

    async def get_notable_facts(self, session_id: str, user_id: str) -> list[NotableFact]:
        async with self._conn().execute(
            """
            SELECT category, fact, created_at
            FROM notable_facts
            WHERE session_id = ? AND user_id = ?
            ORDER BY created_at ASC, id ASC
            """,
            (session_id, user_id),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            NotableFact(category=row[0], fact=row[1], created_at=_from_iso(row[2]))
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Summaries and prior themes
    # ------------------------------------------------------------------

    async def upsert_session_summary(
        self, session_id: str, user_id: str, summary: SessionSummary
    ) -> None:
        db = self._conn()
        await db.execute(
            """
            INSERT INTO session_summaries (session_id, user_id, summary, turn_count, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(session_id, user_id) DO UPDATE SET
                summary = excluded.summary,
                turn_count = excluded.turn_count,
                updated_at = excluded.updated_at
            """,
            (
                session_id,
                user_id,
                summary.summary,
                summary.turn_count,
                _to_iso(summary.updated_at),
            ),
        )
        await db.commit()

    async def get_session_summary(
        self, session_id: str, user_id: str
    ) -> SessionSummary | None:
        async with self._conn().execute(
            """
            SELECT summary, turn_count, updated_at
            FROM session_summaries
            WHERE session_id = ? AND user_id = ?
            """,
            (session_id, user_id),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return SessionSummary(
            summary=row[0], turn_count=row[1], updated_at=_from_iso(row[2])
        )

    async def record_session(
        self,
        session_id: str,
        user_id: str,
        *,
        relationship_id: str | None = None,
        themes: list[str] | None = None,
        summary: str | None = None,
        started_at: datetime | None = None,
    ) -> None:
        """Insert or update the themes and summary of a session."""
        db = self._conn()
        await db.execute(
            """
            INSERT INTO sessions (session_id, user_id, relationship_id, themes, summary, started_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id, user_id) DO UPDATE SET
                relationship_id = excluded.relationship_id,
                themes = excluded.themes,
                summary = excluded.summary
            """,
            (
                session_id,
                user_id,
                relationship_id,
                json.dumps(themes or []),
                summary,
                _to_iso(started_at or datetime.now(timezone.utc)),
            ),
        )
        await db.commit()
        logger.debug(f"Session recorded: {session_id}")

    async def get_prior_themes(
        self,
        user_id: str,
        relationship_id: str | None = None,
        exclude_session_id: str | None = None,
    ) -> PriorThemes | None:
        query = "SELECT themes, summary FROM sessions WHERE user_id = ?"
        params: list[Any] = [user_id]
        if relationship_id is not None:
            query += " AND relationship_id = ?"
            params.append(relationship_id)
        if exclude_session_id is not None:
            query += " AND session_id != ?"
            params.append(exclude_session_id)
        query += " ORDER BY started_at DESC"

        async with self._conn().execute(query, params) as cursor:
            rows = await cursor.fetchall()
        if not rows:
            return None

        themes: list[str] = []
        for row in rows:
            for theme in json.loads(row[0] or "[]"):
                if theme not in themes:
                    themes.append(theme)

        return PriorThemes(
            themes=themes,
            last_session_summary=rows[0][1],
            session_count=len(rows),
        )

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    async def set_preferences(self, user_id: str, prefs: MemoryPreferences) -> None:
        db = self._conn()
        await db.execute(
            """
            INSERT INTO memory_preferences (user_id, cross_session_recall, pattern_insights)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                cross_session_recall = excluded.cross_session_recall,
                pattern_insights = excluded.pattern_insights
            """,
            (user_id, int(prefs.cross_session_recall), int(prefs.pattern_insights)),
        )
        await db.commit()

    async def get_preferences(self, user_id: str) -> MemoryPreferences | None:
        async with self._conn().execute(
            """
            SELECT cross_session_recall, pattern_insights
            FROM memory_preferences
            WHERE user_id = ?
            """,
            (user_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return MemoryPreferences(
            cross_session_recall=bool(row[0]), pattern_insights=bool(row[1])
        )

    # ------------------------------------------------------------------
    # Embedded corpus
    # ------------------------------------------------------------------

    async def add_document(
        self,
        corpus: Corpus,
        user_id: str,
        content: str,
        *,
        doc_id: str | None = None,
        session_id: str | None = None,
        relationship_id: str | None = None,
        linked_session_id: str | None = None,
        role: Role | None = None,
        partner_label: str | None = None,
        timestamp: datetime | None = None,
        embedding: list[float] | None = None,
    ) -> str:
        """Store a searchable document, embedding it if no vector is given.

        Returns:
            The document id
        """
        db = self._conn()
        if embedding is None:
            if self._embedder is None:
                raise RuntimeError("No embedder configured for SQLiteStore")
            embedding = (await aencode(self._embedder, [content]))[0]

        doc_id = doc_id or uuid.uuid4().hex
        await db.execute(
            """
            INSERT OR REPLACE INTO corpus_documents (
                doc_id, corpus, user_id, relationship_id, session_id,
                linked_session_id, content, role, partner_label, timestamp,
                embedding
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                doc_id,
                corpus.value,
                user_id,
                relationship_id,
                session_id,
                linked_session_id,
                content,
                role.value if role else None,
                partner_label,
                _to_iso(timestamp),
                serialize_embedding(embedding),
            ),
        )
        await db.commit()
        logger.debug(f"Document stored in {corpus.value}: {doc_id}")
        return doc_id

    async def search(
        self,
        query: str,
        corpus: Corpus,
        user_id: str,
        top_k: int,
        threshold: float,
        filters: dict[str, Any] | None = None,
    ) -> list[CorpusMatch]:
        """Cosine similarity search over one corpus.

        Raises:
            RuntimeError: If no embedder is configured
            ValueError: On an unrecognised filter
        """
        db = self._conn()
        if self._embedder is None:
            raise RuntimeError("No embedder configured for SQLiteStore")
        if top_k <= 0:
            return []

        sql = (
            "SELECT doc_id, content, timestamp, role, partner_label, "
            "linked_session_id, embedding FROM corpus_documents "
            "WHERE corpus = ? AND user_id = ? AND embedding IS NOT NULL"
        )
        params: list[Any] = [corpus.value, user_id]
        for key, value in (filters or {}).items():
            if value is None:
                continue
            if key not in _FILTER_COLUMNS:
                raise ValueError(f"Unknown search filter: {key}")
            sql += f" AND {_FILTER_COLUMNS[key]}"
            params.append(value)

        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        if not rows:
            return []

        query_vec = (await aencode(self._embedder, [query]))[0]
        dim = len(query_vec)

        candidates = []
        vectors = []
        for row in rows:
            vec = deserialize_embedding(row[6])
            if vec.shape[0] != dim:
                continue
            candidates.append(row)
            vectors.append(vec)
        if not candidates:
            return []

        scores = cosine_similarities(query_vec, np.vstack(vectors))
        ranked = sorted(
            (
                (float(score), row)
                for score, row in zip(scores, candidates)
                if score >= threshold
            ),
            key=lambda pair: pair[0],
            reverse=True,
        )[:top_k]

        logger.debug(
            f"Search {corpus.value} for {user_id}: "
            f"{len(ranked)}/{len(candidates)} above {threshold:.2f}"
        )
        return [
            CorpusMatch(
                source_id=row[0],
                content=row[1],
                similarity=min(score, 1.0),
                timestamp=_from_iso(row[2]),
                role=Role(row[3]) if row[3] else None,
                partner_label=row[4],
                linked_session_id=row[5],
            )
            for score, row in ranked
        ]
