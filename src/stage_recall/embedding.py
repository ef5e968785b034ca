"""Embedding service for the reference store.

Encodes corpus documents and queries with sentence-transformers. The model is
loaded lazily on first use, and encoding runs in a worker thread so it never
blocks the event loop.
"""

from __future__ import annotations

import asyncio
import struct
from typing import TYPE_CHECKING, Protocol

import numpy as np
from loguru import logger

from .config import EmbeddingConfig

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer


class Embedder(Protocol):
    def encode(self, texts: list[str]) -> list[list[float]]:
        ...


class EmbeddingService:
    """sentence-transformers encoder with BLOB serialization helpers."""

    def __init__(self, config: EmbeddingConfig | None = None):
        self._config = config or EmbeddingConfig()
        self._model: SentenceTransformer | None = None
        self._dimension = self._config.dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def _ensure_model(self) -> SentenceTransformer:
        if self._model is not None:
            return self._model

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers is required for EmbeddingService. "
                "Install with: pip install sentence-transformers"
            )

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model loaded: dim={self._dimension}")
        return self._model

    def encode(self, texts: list[str]) -> list[list[float]]:
        """Encode texts into normalized embedding vectors."""
        if not texts:
            return []

        model = self._ensure_model()
        embeddings: np.ndarray = model.encode(
            texts,
            batch_size=self._config.batch_size,
            show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()


async def aencode(embedder: Embedder, texts: list[str]) -> list[list[float]]:
    """Run a synchronous embedder in a worker thread."""
    return await asyncio.to_thread(embedder.encode, texts)


def serialize_embedding(embedding: list[float]) -> bytes:
    """Pack an embedding as little-endian float32 for SQLite BLOB storage."""
    return struct.pack(f"<{len(embedding)}f", *embedding)


def deserialize_embedding(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype="<f4")


def cosine_similarities(query: list[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against each row of ``matrix``.

    Rows with a different dimension than the query should be filtered out
    before calling. Zero vectors score 0.
    """
    q = np.asarray(query, dtype=np.float32)
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float32)
    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * q_norm
    dots = matrix @ q
    return np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)
