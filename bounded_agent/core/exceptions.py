"""Standardized exception hierarchy for bounded agent execution."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from bounded_agent.agent.types import Usage


class AgentRuntimeError(Exception):
    """Base exception for all agent runtime errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class BudgetExceeded(AgentRuntimeError):
    """Raised when recording consumption would push a counter past its limit."""

    def __init__(
        self,
        resource: str,
        attempted: float,
        limit: float,
        details: dict | None = None,
    ):
        message = f"Budget exceeded for '{resource}': {attempted} > {limit}"
        super().__init__(message, details)
        self.resource = resource
        self.attempted = attempted
        self.limit = limit


class PermissionDenied(AgentRuntimeError):
    """Raised when a tool call is denied by policy or by an approver."""

    def __init__(self, tool: str, reason: str = "denied", details: dict | None = None):
        message = f"Tool '{tool}' was denied: {reason}"
        super().__init__(message, details)
        self.tool = tool
        self.reason = reason


class ApprovalTimeout(PermissionDenied):
    """Raised when no approver answered before the request deadline."""

    def __init__(self, tool: str, request_id: str, details: dict | None = None):
        super().__init__(tool, reason=f"approval {request_id} timed out", details=details)
        self.request_id = request_id


class ToolNotFoundError(AgentRuntimeError):
    """Raised when a requested tool has no registered executor."""

    def __init__(self, tool: str, details: dict | None = None):
        message = f"Tool '{tool}' is not registered."
        super().__init__(message, details)
        self.tool = tool


class ToolExecutionError(AgentRuntimeError):
    """Raised when tool execution fails."""

    def __init__(self, tool: str, error: str, details: dict | None = None):
        message = f"Tool '{tool}' execution failed: {error}"
        super().__init__(message, details)
        self.tool = tool
        self.error = error


class CacheUnavailable(AgentRuntimeError):
    """Raised when the cache backing store cannot be read or written."""


class DecisionError(AgentRuntimeError):
    """Raised when the decision-maker fails or returns an unusable response."""

    def __init__(self, message: str, details: dict | None = None, usage: Optional["Usage"] = None):
        super().__init__(message, details)
        self.usage = usage
