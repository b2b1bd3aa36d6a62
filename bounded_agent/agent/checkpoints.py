"""Checkpoint models and storage for resumable task execution."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from bounded_agent.storage.kv import KeyValueStore, MemoryStore

from .budget import BudgetSnapshot
from .history import ExecutionHistory

logger = logging.getLogger(__name__)

_STORE_PREFIX = "checkpoint/"


class Checkpoint(BaseModel):
    """Immutable capture of a task's history and budget at a step boundary."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    task_id: str
    goal: str = ""
    actor: str = ""
    step_count: int
    history: List[Dict[str, Any]] = Field(default_factory=list)
    budget: Dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)

    def budget_snapshot(self) -> BudgetSnapshot:
        return BudgetSnapshot.from_dict(self.budget)

    def restore_history(self) -> ExecutionHistory:
        return ExecutionHistory.from_dicts(self.history)


class CheckpointStore:
    """Saves checkpoints into a key-value store under ``checkpoint/{task_id}/``."""

    def __init__(self, store: Optional[KeyValueStore] = None) -> None:
        self._store = store if store is not None else MemoryStore()

    def save(self, checkpoint: Checkpoint) -> str:
        key = self._key(checkpoint.task_id, checkpoint.id)
        self._store.put(key, checkpoint.model_dump(mode="json"))
        logger.debug(
            "Saved checkpoint %s for task %s at step %s",
            checkpoint.id,
            checkpoint.task_id,
            checkpoint.step_count,
        )
        return checkpoint.id

    def load(self, task_id: str, checkpoint_id: str) -> Optional[Checkpoint]:
        payload = self._store.get(self._key(task_id, checkpoint_id))
        return Checkpoint.model_validate(payload) if payload is not None else None

    def list(self, task_id: str) -> List[Checkpoint]:
        """All checkpoints of a task, oldest first."""
        prefix = f"{_STORE_PREFIX}{task_id}/"
        found: List[Checkpoint] = []
        for key in self._store.keys(prefix):
            payload = self._store.get(key)
            if payload is not None:
                found.append(Checkpoint.model_validate(payload))
        return sorted(found, key=lambda cp: (cp.step_count, cp.created_at))

    def latest(self, task_id: str) -> Optional[Checkpoint]:
        checkpoints = self.list(task_id)
        return checkpoints[-1] if checkpoints else None

    @staticmethod
    def _key(task_id: str, checkpoint_id: str) -> str:
        return f"{_STORE_PREFIX}{task_id}/{checkpoint_id}"


__all__ = ["Checkpoint", "CheckpointStore"]
