"""Permission gate: classifies proposed tool calls against a static policy."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Mapping, Optional

from .types import ToolCall

logger = logging.getLogger(__name__)


class PermissionDecision(str, Enum):
    AUTONOMOUS = "autonomous"
    REQUIRES_APPROVAL = "requires_approval"
    DENIED = "denied"


@dataclass(frozen=True)
class RateLimit:
    """At most ``max_calls`` autonomous calls per ``per_seconds`` sliding window."""

    max_calls: int
    per_seconds: float

    def __post_init__(self) -> None:
        if self.max_calls < 1:
            raise ValueError("RateLimit.max_calls must be >= 1")
        if self.per_seconds <= 0:
            raise ValueError("RateLimit.per_seconds must be > 0")


@dataclass(frozen=True)
class ToolRule:
    decision: PermissionDecision
    rate_limit: Optional[RateLimit] = None


class PermissionPolicy:
    """Immutable mapping of tool name to :class:`ToolRule`.

    Tool names are matched case-insensitively. A tool absent from the policy
    is denied.
    """

    def __init__(self, rules: Mapping[str, ToolRule] | None = None) -> None:
        self._rules: Dict[str, ToolRule] = {
            _normalize_tool(name): rule for name, rule in (rules or {}).items()
        }

    def rule_for(self, tool: str) -> Optional[ToolRule]:
        return self._rules.get(_normalize_tool(tool))

    def __contains__(self, tool: object) -> bool:
        return isinstance(tool, str) and _normalize_tool(tool) in self._rules

    def __len__(self) -> int:
        return len(self._rules)

    def tools(self) -> list[str]:
        return sorted(self._rules)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PermissionPolicy":
        """Build a policy from configuration data.

        Accepts either a bare decision string per tool or an object with
        ``decision`` and an optional ``rate_limit: {max_calls, per_seconds}``.
        """
        rules: Dict[str, ToolRule] = {}
        for name, raw in payload.items():
            if isinstance(raw, str):
                rules[name] = ToolRule(decision=PermissionDecision(raw))
                continue
            if not isinstance(raw, Mapping):
                raise ValueError(f"Invalid policy entry for tool '{name}': {raw!r}")
            decision = PermissionDecision(raw.get("decision", PermissionDecision.DENIED.value))
            limit_raw = raw.get("rate_limit")
            rate_limit = None
            if limit_raw:
                rate_limit = RateLimit(
                    max_calls=int(limit_raw["max_calls"]),
                    per_seconds=float(limit_raw["per_seconds"]),
                )
            rules[name] = ToolRule(decision=decision, rate_limit=rate_limit)
        return cls(rules)


class PermissionGate:
    """Classifies tool calls and tracks per-tool rate-limit windows.

    The gate is shared across tasks; windows are process-wide per tool.
    """

    def __init__(
        self,
        policy: PermissionPolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy or PermissionPolicy()
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def classify(
        self,
        tool_call: ToolCall,
        policy: PermissionPolicy | None = None,
    ) -> PermissionDecision:
        active = policy or self.policy
        rule = active.rule_for(tool_call.tool)
        if rule is None:
            logger.info("Denying unknown tool '%s' (not in policy)", tool_call.tool)
            return PermissionDecision.DENIED
        if rule.decision is not PermissionDecision.AUTONOMOUS or rule.rate_limit is None:
            return rule.decision
        if self._admit(_normalize_tool(tool_call.tool), rule.rate_limit):
            return PermissionDecision.AUTONOMOUS
        logger.info(
            "Rate limit hit for '%s' (%s per %ss); escalating to approval",
            tool_call.tool,
            rule.rate_limit.max_calls,
            rule.rate_limit.per_seconds,
        )
        return PermissionDecision.REQUIRES_APPROVAL

    def _admit(self, tool: str, limit: RateLimit) -> bool:
        now = self._clock()
        with self._lock:
            window = self._windows.setdefault(tool, deque())
            while window and now - window[0] >= limit.per_seconds:
                window.popleft()
            if len(window) >= limit.max_calls:
                return False
            window.append(now)
            return True


def _normalize_tool(name: str) -> str:
    return name.strip().lower()


__all__ = [
    "PermissionDecision",
    "PermissionGate",
    "PermissionPolicy",
    "RateLimit",
    "ToolRule",
]
