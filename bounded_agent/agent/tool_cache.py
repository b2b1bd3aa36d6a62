"""Tool result cache shared across concurrent tasks.

Entries are keyed by the SHA-256 of a call's canonical text, so identical
calls always map to the same key. When an embedder is configured, lookups can
fall back to the nearest stored query by cosine similarity.

Reads take no lock. Writes replace whole entries under a lock, so readers
see either the old entry or the new one. Two tasks racing on the same miss
may both execute the tool; the later store wins.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

import numpy as np

from bounded_agent.core.exceptions import CacheUnavailable
from bounded_agent.embeddings import Embedder, cosine_similarity
from bounded_agent.storage.kv import KeyValueStore

from .types import ToolCall

logger = logging.getLogger(__name__)

_STORE_PREFIX = "cache/"

CacheQuery = Union[str, ToolCall]


def tool_call_key(tool_call: ToolCall) -> str:
    """Canonical, parameter-order-independent text for a tool call."""
    return tool_call.canonical()


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _query_text(query: CacheQuery) -> str:
    if isinstance(query, ToolCall):
        return tool_call_key(query)
    if not isinstance(query, str):
        raise TypeError(f"cache query must be str or ToolCall, got {type(query).__name__}")
    return query


@dataclass(frozen=True)
class CacheEntry:
    """Immutable cached result; invalidation replaces or removes, never edits."""

    key: str
    query: str
    result: Any
    created_at: float
    expires_at: Optional[float] = None
    version: str = "v1"
    embedding: Optional[Tuple[float, ...]] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "query": self.query,
            "result": self.result,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "version": self.version,
            "embedding": list(self.embedding) if self.embedding is not None else None,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CacheEntry":
        embedding = payload.get("embedding")
        return cls(
            key=payload["key"],
            query=payload["query"],
            result=payload.get("result"),
            created_at=float(payload["created_at"]),
            expires_at=payload.get("expires_at"),
            version=payload.get("version") or "v1",
            embedding=tuple(embedding) if embedding is not None else None,
        )


class ResultCache:
    """Exact-then-semantic cache of tool results.

    Responsibilities:
    - Hash-keyed storage with optional TTL per entry
    - Nearest-neighbour fallback over unexpired entries
    - Invalidation by key or by producer version
    - Write-through to an optional :class:`KeyValueStore`

    NOT responsible for:
    - Deciding what is cacheable (see executor.py ``ToolSpec``)
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        *,
        embedder: Optional[Embedder] = None,
        default_ttl: Optional[float] = None,
        version: str = "v1",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._vectors: Dict[str, np.ndarray] = {}
        self._write_lock = threading.Lock()
        self._store = store
        self._embedder = embedder
        self.default_ttl = default_ttl
        self.version = version
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    # --- Reads ---

    def lookup(
        self,
        query: CacheQuery,
        similarity_threshold: Optional[float] = None,
    ) -> Optional[CacheEntry]:
        """Exact hash match first; then, if a threshold is given, the closest
        unexpired entry whose similarity meets it.

        Raises :class:`CacheUnavailable` when the backing store fails.
        """
        text = _query_text(query)
        key = content_hash(text)
        now = self._clock()

        entry = self._entries.get(key)
        if entry is None and self._store is not None:
            entry = self._load(key)
        if entry is not None:
            if not entry.is_expired(now):
                return entry
            self._drop_expired(entry)

        if similarity_threshold is None or self._embedder is None:
            return None
        return self._nearest(text, similarity_threshold, now)

    def _nearest(self, text: str, threshold: float, now: float) -> Optional[CacheEntry]:
        vector = self._embed(text)
        if vector is None:
            return None
        best: Optional[CacheEntry] = None
        best_score = -1.0
        for key, entry in list(self._entries.items()):
            if entry.is_expired(now):
                continue
            candidate = self._vectors.get(key)
            if candidate is None:
                continue
            score = cosine_similarity(vector, candidate)
            if score > best_score:
                best, best_score = entry, score
        if best is not None and best_score >= threshold:
            logger.debug("Semantic cache hit key=%s score=%.3f", best.key, best_score)
            return best
        return None

    # --- Writes ---

    def store(
        self,
        query: CacheQuery,
        result: Any,
        ttl: Optional[float] = None,
        *,
        version: Optional[str] = None,
    ) -> CacheEntry:
        """Upsert the entry for ``query``; ``ttl=None`` uses the cache default."""
        effective_ttl = self.default_ttl if ttl is None else ttl
        if effective_ttl is not None and effective_ttl < 0:
            raise ValueError("cache ttl must be non-negative")
        text = _query_text(query)
        now = self._clock()
        vector = self._embed(text) if self._embedder is not None else None
        entry = CacheEntry(
            key=content_hash(text),
            query=text,
            result=result,
            created_at=now,
            expires_at=now + effective_ttl if effective_ttl is not None else None,
            version=version or self.version,
            embedding=tuple(float(x) for x in vector) if vector is not None else None,
        )
        with self._write_lock:
            self._entries[entry.key] = entry
            if vector is not None:
                self._vectors[entry.key] = vector
            else:
                self._vectors.pop(entry.key, None)
        if self._store is not None:
            self._store.put(_STORE_PREFIX + entry.key, entry.to_dict())
        return entry

    def invalidate(self, query: CacheQuery) -> bool:
        """Remove the entry for ``query`` immediately."""
        return self.invalidate_key(content_hash(_query_text(query)))

    def invalidate_key(self, key: str) -> bool:
        with self._write_lock:
            removed = self._entries.pop(key, None) is not None
            self._vectors.pop(key, None)
        if self._store is not None:
            removed = self._store.delete(_STORE_PREFIX + key) or removed
        return removed

    def invalidate_version(self, version: str) -> int:
        """Remove every entry produced by ``version``; returns the count."""
        if self._store is not None:
            for store_key in self._store.keys(_STORE_PREFIX):
                key = store_key[len(_STORE_PREFIX):]
                if key in self._entries:
                    continue
                payload = self._store.get(store_key)
                if payload is not None and payload.get("version") == version:
                    self._store.delete(store_key)
        stale = [key for key, entry in list(self._entries.items()) if entry.version == version]
        removed = 0
        for key in stale:
            if self.invalidate_key(key):
                removed += 1
        logger.info("Invalidated %s cache entries for version %s", removed, version)
        return removed

    # --- Internals ---

    def _load(self, key: str) -> Optional[CacheEntry]:
        if self._store is None:
            return None
        payload = self._store.get(_STORE_PREFIX + key)
        if payload is None:
            return None
        try:
            entry = CacheEntry.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise CacheUnavailable(f"corrupt cache entry {key}", {"error": str(exc)}) from exc
        with self._write_lock:
            self._entries.setdefault(key, entry)
            if entry.embedding is not None:
                self._vectors.setdefault(key, np.asarray(entry.embedding, dtype=np.float32))
        return entry

    def _drop_expired(self, entry: CacheEntry) -> None:
        with self._write_lock:
            # Only drop the exact entry observed; a concurrent store may have replaced it.
            if self._entries.get(entry.key) is entry:
                del self._entries[entry.key]
                self._vectors.pop(entry.key, None)
        if self._store is None:
            return
        try:
            payload = self._store.get(_STORE_PREFIX + entry.key)
            # Rows rewritten since this entry was read stay.
            if payload is not None and payload.get("created_at") == entry.created_at:
                self._store.delete(_STORE_PREFIX + entry.key)
        except CacheUnavailable as exc:
            logger.warning("Could not purge expired cache entry %s: %s", entry.key, exc)

    def _embed(self, text: str) -> Optional[np.ndarray]:
        if self._embedder is None:
            return None
        vector = self._embedder(text)
        if vector is None:
            return None
        return np.asarray(vector, dtype=np.float32)


__all__ = [
    "CacheEntry",
    "ResultCache",
    "content_hash",
    "tool_call_key",
]
