"""Core module: error taxonomy shared by every agent component."""

from .exceptions import (
    AgentRuntimeError,
    ApprovalTimeout,
    BudgetExceeded,
    CacheUnavailable,
    DecisionError,
    PermissionDenied,
    ToolExecutionError,
    ToolNotFoundError,
)

__all__ = [
    "AgentRuntimeError",
    "ApprovalTimeout",
    "BudgetExceeded",
    "CacheUnavailable",
    "DecisionError",
    "PermissionDenied",
    "ToolExecutionError",
    "ToolNotFoundError",
]
