"""Bounded agent - budgeted, permission-gated agent task execution."""

from .agent import execute_task, ExecutionLoop, TaskRunner
from .core.exceptions import AgentRuntimeError

__all__ = [
    "execute_task",
    "ExecutionLoop",
    "TaskRunner",
    "AgentRuntimeError",
]
