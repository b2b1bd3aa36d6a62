"""Persistent storage for cache entries and checkpoints."""

from .kv import KeyValueStore, MemoryStore, SqlKeyValueStore

__all__ = ["KeyValueStore", "MemoryStore", "SqlKeyValueStore"]
