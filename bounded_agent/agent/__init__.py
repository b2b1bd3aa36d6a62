"""Agent layer - bounded execution loop and its collaborators."""

from .run_loop import ExecutionLoop, LoopConfig, execute_task
from .runtime import TaskRunner
from .types import Decision, LoopState, Task, TaskResult, ToolCall, ToolOutcome, Usage
from .budget import Budget, BudgetLedger, BudgetSnapshot
from .tool_cache import CacheEntry, ResultCache
from .permissions import PermissionDecision, PermissionGate, PermissionPolicy, RateLimit, ToolRule
from .approvals import ApprovalBroker, ApprovalRequest, ApprovalStatus
from .checkpoints import Checkpoint, CheckpointStore
from .executor import ActionExecutor, ToolRegistry, ToolSpec
from .llm import DecisionMaker, PlannerLLM
from .state import AgentState
from .history import AgentStep, ExecutionHistory, StepType

__all__ = [
    # Main entrypoints
    "execute_task",
    "ExecutionLoop",
    "LoopConfig",
    "TaskRunner",
    # Shared collaborators
    "ResultCache",
    "CacheEntry",
    "PermissionGate",
    "PermissionPolicy",
    "PermissionDecision",
    "RateLimit",
    "ToolRule",
    "ApprovalBroker",
    "ApprovalRequest",
    "ApprovalStatus",
    "CheckpointStore",
    "Checkpoint",
    # Tools and decisions
    "ToolRegistry",
    "ToolSpec",
    "ActionExecutor",
    "DecisionMaker",
    "PlannerLLM",
    # Supporting types
    "AgentState",
    "AgentStep",
    "StepType",
    "ExecutionHistory",
    "Budget",
    "BudgetLedger",
    "BudgetSnapshot",
    "Decision",
    "LoopState",
    "Task",
    "TaskResult",
    "ToolCall",
    "ToolOutcome",
    "Usage",
]
