"""Shared agent types."""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict

_DEFAULT_ACTOR = "anonymous"


def normalize_actor(actor: Optional[str] = None) -> str:
    """Normalize an actor identity, stripping whitespace and lowercasing."""
    raw = (actor or "").strip()
    return raw.lower() if raw else _DEFAULT_ACTOR


@dataclass(frozen=True)
class Task:
    """A unit of work submitted to an agent."""

    goal: str
    actor: str = _DEFAULT_ACTOR
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if not isinstance(self.goal, str) or not self.goal.strip():
            raise ValueError("task goal must be a non-empty string.")
        object.__setattr__(self, "goal", self.goal.strip())
        object.__setattr__(self, "actor", normalize_actor(self.actor))
        safe_id = re.sub(r"[^a-zA-Z0-9_.-]", "-", str(self.id)).strip("-")
        object.__setattr__(self, "id", safe_id or uuid.uuid4().hex)


@dataclass(frozen=True)
class ToolCall:
    """A proposed action produced by the decision-maker."""

    tool: str
    params: Dict[str, Any] = field(default_factory=dict)
    justification: str = ""

    def canonical(self) -> str:
        """Order-independent text form used for cache keys and embeddings."""
        payload = json.dumps(self.params, sort_keys=True, ensure_ascii=False, default=str)
        return f"{self.tool.strip().lower()}:{payload}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool": self.tool,
            "params": dict(self.params),
            "justification": self.justification,
        }


@dataclass(frozen=True)
class Usage:
    """Tokens and currency consumed by one model or tool call."""

    tokens: int = 0
    cost_usd: float = 0.0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(tokens=self.tokens + other.tokens, cost_usd=self.cost_usd + other.cost_usd)


@dataclass(frozen=True)
class Decision:
    """What the decision-maker wants to do next: finish, or call one tool."""

    final_answer: Optional[str] = None
    tool_call: Optional[ToolCall] = None
    usage: Usage = field(default_factory=Usage)

    def __post_init__(self) -> None:
        if (self.final_answer is None) == (self.tool_call is None):
            raise ValueError("Decision must carry exactly one of final_answer or tool_call.")

    @property
    def is_final(self) -> bool:
        return self.final_answer is not None

    @classmethod
    def finish(cls, answer: str, *, usage: Usage | None = None) -> "Decision":
        return cls(final_answer=answer, usage=usage or Usage())

    @classmethod
    def call(
        cls,
        tool: str,
        params: Dict[str, Any] | None = None,
        justification: str = "",
        *,
        usage: Usage | None = None,
    ) -> "Decision":
        return cls(
            tool_call=ToolCall(tool=tool, params=dict(params or {}), justification=justification),
            usage=usage or Usage(),
        )


@dataclass(frozen=True)
class ToolOutcome:
    """Normalized tool result plus what producing it cost."""

    result: Any
    usage: Usage = field(default_factory=Usage)


class LoopState(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    BUDGET_EXHAUSTED = "budget_exhausted"
    REJECTED = "rejected"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = {
    LoopState.COMPLETED,
    LoopState.BUDGET_EXHAUSTED,
    LoopState.REJECTED,
    LoopState.ERROR,
}


class TaskResult(TypedDict, total=False):
    status: str
    task_id: str
    goal: str
    actor: str
    final_answer: Optional[str]
    error_code: Optional[str]
    error_message: Optional[str]
    error_details: dict[str, Any]
    steps: list[dict[str, Any]]
    budget_usage: dict[str, Any]
    unrecorded_usage: dict[str, Any]
    checkpoints: list[str]
    logs: list[dict[str, Any]]


__all__: List[str] = [
    "Decision",
    "LoopState",
    "Task",
    "TaskResult",
    "ToolCall",
    "ToolOutcome",
    "Usage",
    "normalize_actor",
]
