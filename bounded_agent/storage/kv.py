"""Namespaced key-value stores backing the result cache and checkpoints."""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from bounded_agent.core.exceptions import CacheUnavailable
from shared.db.engine import session_scope
from shared.db.models import KVEntry

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    """Durable map of ``key -> JSON document``.

    Implementations raise :class:`CacheUnavailable` when the backing medium
    cannot be reached.
    """

    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    def put(self, key: str, value: Dict[str, Any]) -> None: ...

    def delete(self, key: str) -> bool: ...

    def keys(self, prefix: str = "") -> List[str]: ...


class MemoryStore:
    """Thread-safe in-process store (tests, single-process deployments)."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    def put(self, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in list(self._data) if k.startswith(prefix))


class SqlKeyValueStore:
    """Store rows in the ``agent_kv`` table, one namespace per store."""

    def __init__(self, namespace: str, *, session_factory: sessionmaker | None = None) -> None:
        if not namespace:
            raise ValueError("namespace must be non-empty")
        self.namespace = namespace
        self._session_factory = session_factory

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            with session_scope(self._session_factory) as db:
                row = db.get(KVEntry, (self.namespace, key))
                return dict(row.value) if row is not None else None
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"kv get failed for {key}", {"error": str(exc)}) from exc

    def put(self, key: str, value: Dict[str, Any]) -> None:
        try:
            with session_scope(self._session_factory) as db:
                row = db.get(KVEntry, (self.namespace, key))
                if row is None:
                    db.add(KVEntry(namespace=self.namespace, key=key, value=value))
                else:
                    row.value = value
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"kv put failed for {key}", {"error": str(exc)}) from exc

    def delete(self, key: str) -> bool:
        try:
            with session_scope(self._session_factory) as db:
                row = db.get(KVEntry, (self.namespace, key))
                if row is None:
                    return False
                db.delete(row)
                return True
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"kv delete failed for {key}", {"error": str(exc)}) from exc

    def keys(self, prefix: str = "") -> List[str]:
        stmt = select(KVEntry.key).where(KVEntry.namespace == self.namespace)
        if prefix:
            stmt = stmt.where(KVEntry.key.startswith(prefix, autoescape=True))
        try:
            with session_scope(self._session_factory) as db:
                return sorted(db.execute(stmt).scalars().all())
        except SQLAlchemyError as exc:
            raise CacheUnavailable("kv key scan failed", {"error": str(exc)}) from exc
