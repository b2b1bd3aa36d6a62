"""Sentence-transformer embeddings for semantic cache lookup.

The model is loaded lazily on first use. If it cannot be loaded, callers get
``None`` back and semantic lookup falls back to exact matching.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional

import numpy as np

# Must be set before sentence_transformers spins up its tokenizer.
os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")

logger = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = "all-MiniLM-L6-v2"

Embedder = Callable[[str], Optional[np.ndarray]]

_embedding_service: Optional["EmbeddingService"] = None
_embedding_service_lock = threading.RLock()


class EmbeddingService:
    """Lazily-loaded sentence transformer producing normalized float32 vectors."""

    def __init__(self, model_name: str = DEFAULT_MODEL_NAME) -> None:
        self.model_name = model_name
        self._model: Optional[object] = None
        self._load_failed = False
        self._model_lock = threading.RLock()

    def __call__(self, text: str) -> Optional[np.ndarray]:
        return self.embed_text(text)

    def _ensure_model_loaded(self) -> bool:
        if self._model is not None:
            return True
        if self._load_failed:
            return False
        with self._model_lock:
            if self._model is not None:
                return True
            try:
                from sentence_transformers import SentenceTransformer

                logger.info("Loading sentence transformer model: %s", self.model_name)
                self._model = SentenceTransformer(self.model_name)
                return True
            except Exception as e:
                self._load_failed = True
                logger.warning(
                    "Failed to load sentence transformer model %s: %s. "
                    "Cache lookups will use exact keys only.",
                    self.model_name,
                    e,
                )
                return False

    def embed_text(self, text: str) -> Optional[np.ndarray]:
        """Embedding for one string, or None if the model is unavailable."""
        if not self._ensure_model_loaded():
            return None
        try:
            embedding = self._model.encode(  # type: ignore[attr-defined]
                text or " ", convert_to_numpy=True, normalize_embeddings=True
            )
            return embedding.astype(np.float32)
        except Exception as e:
            logger.warning("Failed to generate embedding: %s", e)
            return None


def cosine_similarity(vec1: Optional[np.ndarray], vec2: Optional[np.ndarray]) -> float:
    """Cosine similarity clamped to ``[0, 1]``; 0.0 for missing or zero vectors."""
    if vec1 is None or vec2 is None:
        return 0.0
    a = np.asarray(vec1, dtype=np.float32)
    b = np.asarray(vec2, dtype=np.float32)
    if a.shape != b.shape:
        return 0.0
    norm1 = np.linalg.norm(a)
    norm2 = np.linalg.norm(b)
    if norm1 == 0.0 or norm2 == 0.0:
        return 0.0
    similarity = np.dot(a / norm1, b / norm2)
    return float(np.clip(similarity, 0.0, 1.0))


def get_embedding_service(model_name: str = DEFAULT_MODEL_NAME) -> EmbeddingService:
    """Process-wide singleton :class:`EmbeddingService`."""
    global _embedding_service
    if _embedding_service is None:
        with _embedding_service_lock:
            if _embedding_service is None:
                _embedding_service = EmbeddingService(model_name)
    return _embedding_service


__all__ = [
    "DEFAULT_MODEL_NAME",
    "Embedder",
    "EmbeddingService",
    "cosine_similarity",
    "get_embedding_service",
]
