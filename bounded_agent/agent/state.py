"""Per-task agent state - the memory of one execution loop.

Holds what the loop remembers while it runs:
- The task being worked on
- The budget ledger
- Execution history (steps and observations)
- Event log entries returned with the result

NOT responsible for:
- Executing actions (see executor.py)
- Making decisions (see llm.py)
- Control flow (see run_loop.py)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from shared.hierarchical_logger import AgentLogger
from shared.streaming import emit_event

from .budget import BudgetLedger
from .history import AgentStep, ExecutionHistory, StepType
from .types import Task


@dataclass
class AgentState:
    task: Task
    ledger: BudgetLedger
    history: ExecutionHistory = field(default_factory=ExecutionHistory)
    logs: List[Dict[str, Any]] = field(default_factory=list)
    checkpoint_ids: List[str] = field(default_factory=list)
    consecutive_denials: int = 0
    agent_logger: Optional[AgentLogger] = None

    @property
    def task_id(self) -> str:
        return self.task.id

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
        """Add a canonical step to execution history (delegates to ExecutionHistory)."""
        return self.history.record_step(
            action_type=action_type,
            success=success,
            tool=tool,
            action_input=action_input,
            action_reasoning=action_reasoning,
            observation=observation,
            error=error,
            tokens=tokens,
            cost_usd=cost_usd,
        )

    def record_event(self, event: str, payload: Dict[str, Any]) -> None:
        """Append to the task log, publish on the event stream and the run log."""
        enriched = {
            "task_id": self.task.id,
            "actor": self.task.actor,
            **payload,
        }
        self.logs.append({"event": event, **enriched})
        emit_event(event, enriched)
        if self.agent_logger is not None:
            self.agent_logger.log_event(event, enriched)


__all__ = ["AgentState"]
