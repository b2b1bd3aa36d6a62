"""Execution history for a single task.

Holds the step-by-step trajectory the decision-maker sees on every
iteration, including:
- Executed tool calls and cache hits
- Denials and approval timeouts (surfaced as observations)
- Tool failures and budget overruns
- Trajectory serialization for checkpoints and results
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Literal, Optional

StepType = Literal[
    "tool",
    "cache_hit",
    "denied",
    "approval_timeout",
    "tool_error",
    "finish",
    "budget_exceeded",
]

# Steps that actually executed (or reused) a tool result; these are the ones
# counted against the step budget.
EXECUTED_STEP_TYPES = frozenset({"tool", "cache_hit"})


@dataclass
class AgentStep:
    """Canonical step in agent execution history."""

    action_step: int
    action_type: StepType
    success: bool
    tool: Optional[str] = None
    action_input: Optional[Dict[str, Any]] = None
    action_reasoning: str = ""
    observation: Optional[Any] = None
    error: Optional[str] = None
    tokens: int = 0
    cost_usd: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        return {
            "action_step": self.action_step,
            "action_type": self.action_type,
            "success": self.success,
            "tool": self.tool,
            "action_input": self.action_input,
            "action_reasoning": self.action_reasoning,
            "observation": self.observation,
            "error": self.error,
            "tokens": self.tokens,
            "cost_usd": self.cost_usd,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AgentStep":
        return cls(
            action_step=int(payload.get("action_step", 0)),
            action_type=payload.get("action_type", "tool"),
            success=bool(payload.get("success", False)),
            tool=payload.get("tool"),
            action_input=payload.get("action_input"),
            action_reasoning=payload.get("action_reasoning") or "",
            observation=payload.get("observation"),
            error=payload.get("error"),
            tokens=int(payload.get("tokens") or 0),
            cost_usd=float(payload.get("cost_usd") or 0.0),
        )


class ExecutionHistory:
    """Append-only step log owned by one execution loop.

    NOT responsible for:
    - Executing actions (see executor.py)
    - Budget enforcement (see budget.py)
    """

    def __init__(self, steps: Iterable[AgentStep] | None = None) -> None:
        self._history: List[AgentStep] = list(steps or [])

    @property
    def history(self) -> List[AgentStep]:
        return self._history

    @property
    def steps_taken(self) -> int:
        """Number of executed steps (tool runs and cache hits)."""
        return sum(1 for step in self._history if step.action_type in EXECUTED_STEP_TYPES)

    def __len__(self) -> int:
        return len(self._history)

    def record_step(
        self,
        *,
        action_type: StepType,
        success: bool,
        tool: Optional[str] = None,
        action_input: Optional[Dict[str, Any]] = None,
        action_reasoning: str = "",
        observation: Optional[Any] = None,
        error: Optional[str] = None,
        tokens: int = 0,
        cost_usd: float = 0.0,
    ) -> AgentStep:
        """Add a canonical step to execution history."""
        step = AgentStep(
            action_step=len(self._history),
            action_type=action_type,
            success=success,
            tool=tool,
            action_input=dict(action_input) if action_input is not None else None,
            action_reasoning=action_reasoning,
            observation=observation,
            error=error,
            tokens=tokens,
            cost_usd=cost_usd,
        )
        self._history.append(step)
        return step

    def get_context_window(self, max_steps: Optional[int] = None) -> List[AgentStep]:
        """Most recent steps, oldest first (all of them when ``max_steps`` is unset)."""
        if max_steps is None or max_steps <= 0:
            return list(self._history)
        return self._history[-max_steps:]

    def build_trajectory(self) -> List[Dict[str, Any]]:
        """Compact trajectory for the decision-maker prompt."""
        trajectory: List[Dict[str, Any]] = []
        for step in self._history:
            entry: Dict[str, Any] = {
                "step": step.action_step,
                "type": step.action_type,
                "success": step.success,
            }
            if step.tool:
                entry["tool"] = step.tool
                entry["params"] = step.action_input or {}
            if step.observation is not None:
                entry["observation"] = summarize_observation(step.observation)
            if step.error:
                entry["error"] = step.error
            trajectory.append(entry)
        return trajectory

    def to_dict(self) -> List[Dict[str, Any]]:
        """Convert history to dict for serialization."""
        return [step.to_dict() for step in self._history]

    @classmethod
    def from_dicts(cls, payload: Iterable[Dict[str, Any]]) -> "ExecutionHistory":
        return cls(AgentStep.from_dict(item) for item in payload)


def summarize_observation(data: Any, max_chars: int = 500) -> str:
    """Short human-readable summary of a tool result.

    Shows actual values rather than structure: list lengths, numbers, short
    strings and truncated previews of long text.
    """
    if data is None:
        return "null"
    if isinstance(data, (bool, int, float)):
        return str(data)
    if isinstance(data, str):
        if not data:
            return '""'
        return data if len(data) <= max_chars else data[: max_chars - 3] + "..."
    if isinstance(data, list):
        if not data:
            return "[]"
        first = summarize_observation(data[0], max_chars=80)
        if len(data) == 1:
            return f"[{first}]"
        return f"[{len(data)} items, first: {first}]"
    if isinstance(data, dict):
        if not data:
            return "{}"
        parts: List[str] = []
        used = 0
        for key, value in data.items():
            if isinstance(value, list):
                val_str = f"{len(value)} items" if value else "[]"
            elif isinstance(value, dict):
                val_str = f"{len(value)} keys" if value else "{}"
            elif isinstance(value, str):
                val_str = f'"{value}"' if len(value) <= 50 else f'"{value[:47]}..."'
            elif value is None:
                val_str = "null"
            elif isinstance(value, (int, float, bool)):
                val_str = str(value)
            else:
                val_str = type(value).__name__
            part = f"{key}: {val_str}"
            if used + len(part) + 2 > max_chars:
                parts.append("...")
                break
            parts.append(part)
            used += len(part) + 2
        return "{" + ", ".join(parts) + "}"
    return f"{type(data).__name__} object"


__all__ = [
    "AgentStep",
    "EXECUTED_STEP_TYPES",
    "ExecutionHistory",
    "StepType",
    "summarize_observation",
]
