"""Hierarchical JSONL logging for agent task runs.

Layout on disk:
    logs/{timestamp}_{run_hash}/
        metadata.json
        agent/{task_id}/main.jsonl
        agent/{task_id}/raw/{name}.json

``main.jsonl`` receives truncated entries; ``raw/`` keeps full payloads.
The active logger is bound through a context variable so deeply nested
components can log without it being threaded through every call.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_current_hierarchical_logger: ContextVar[Optional["HierarchicalLogger"]] = ContextVar(
    "hierarchical_logger", default=None
)


def set_hierarchical_logger(run_logger: Optional["HierarchicalLogger"]) -> None:
    _current_hierarchical_logger.set(run_logger)


def get_hierarchical_logger() -> Optional["HierarchicalLogger"]:
    return _current_hierarchical_logger.get()


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class HierarchicalLogger:
    """Owns the run directory and hands out per-agent loggers."""

    def __init__(
        self,
        label: str,
        base_dir: str | Path = "logs",
        timestamp: Optional[str] = None,
    ):
        run_hash = hashlib.sha256(label.encode()).hexdigest()[:8]
        self.label = label
        self.run_hash = run_hash
        self.timestamp = timestamp or datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        self.run_dir = Path(base_dir) / f"{self.timestamp}_{run_hash}"
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self._write_metadata()

    def _write_metadata(self) -> None:
        metadata = {
            "label": self.label,
            "run_hash": self.run_hash,
            "timestamp": self.timestamp,
            "started_at": _utcnow(),
        }
        with open(self.run_dir / "metadata.json", "w") as f:
            json.dump(metadata, f, indent=2)

    def get_agent_logger(self, agent: str, task_id: Optional[str] = None) -> "AgentLogger":
        """Logger rooted at ``agent/`` or ``agent/{task_id}/``."""
        agent_dir = self.run_dir / agent / task_id if task_id else self.run_dir / agent
        agent_dir.mkdir(parents=True, exist_ok=True)
        return AgentLogger(agent_dir, agent, task_id)


class AgentLogger:
    """Writes the event log of one agent (or one task of an agent)."""

    def __init__(self, log_dir: Path, agent: str, task_id: Optional[str] = None):
        self.log_dir = log_dir
        self.agent = agent
        self.task_id = task_id
        self.main_log = log_dir / "main.jsonl"
        self.raw_dir = log_dir / "raw"
        self.raw_dir.mkdir(exist_ok=True)
        self._write_lock = threading.Lock()

    def log_event(
        self,
        event: str,
        data: Dict[str, Any],
        *,
        truncate: bool = True,
        max_value_len: int = 500,
    ) -> None:
        """Append one entry to ``main.jsonl`` and mirror it to the module logger."""
        payload = truncate_payload(data, max_value_len) if truncate else data
        entry = {
            "timestamp": _utcnow(),
            "event": event,
            "agent": self.agent,
            "task_id": self.task_id,
            "data": payload,
        }
        line = json.dumps(entry, default=str)
        with self._write_lock:
            with open(self.main_log, "a") as f:
                f.write(line + "\n")
        logger.debug("[%s] %s: %s", self.agent, event, json.dumps(payload, default=str))

    def log_full_payload(self, name: str, data: Any) -> None:
        with open(self.raw_dir / f"{name}.json", "w") as f:
            json.dump(data, f, indent=2, default=str)

    def get_sub_logger(self, component: str) -> "AgentLogger":
        sub_dir = self.log_dir / component
        sub_dir.mkdir(exist_ok=True)
        return AgentLogger(sub_dir, f"{self.agent}.{component}", self.task_id)


def truncate_payload(data: Any, max_value_len: int = 500) -> Any:
    """Truncate long strings and lists while preserving keys."""
    if not isinstance(data, dict):
        return data
    truncated: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, str) and len(value) > max_value_len:
            truncated[key] = value[:max_value_len] + f"... [truncated, {len(value)} chars total]"
        elif isinstance(value, (list, tuple)) and len(value) > 10:
            truncated[key] = list(value[:10]) + [f"... [truncated, {len(value)} items total]"]
        elif isinstance(value, dict):
            truncated[key] = truncate_payload(value, max_value_len)
        else:
            truncated[key] = value
    return truncated


__all__ = [
    "AgentLogger",
    "HierarchicalLogger",
    "get_hierarchical_logger",
    "set_hierarchical_logger",
    "truncate_payload",
]
