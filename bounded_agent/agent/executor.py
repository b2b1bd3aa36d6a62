"""Tool registry and executor - routes approved tool calls to their handlers."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from bounded_agent.core.exceptions import (
    AgentRuntimeError,
    ToolExecutionError,
    ToolNotFoundError,
)

from .types import ToolCall, ToolOutcome, Usage

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Any]


@dataclass(frozen=True)
class ToolSpec:
    """A registered tool.

    ``cost_usd`` is charged per successful call on top of any usage the
    handler reports by returning a :class:`ToolOutcome`. Only tools with
    ``cacheable=True`` have their results stored in the result cache.
    """

    name: str
    handler: ToolHandler
    description: str = ""
    cost_usd: float = 0.0
    cacheable: bool = False
    cache_ttl_seconds: Optional[float] = None
    params_schema: Dict[str, Any] = field(default_factory=dict)

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "params": dict(self.params_schema),
        }


class ToolRegistry:
    def __init__(self, specs: Iterable[ToolSpec] = ()) -> None:
        self._tools: Dict[str, ToolSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ToolSpec) -> ToolSpec:
        key = spec.name.strip().lower()
        if not key:
            raise ValueError("tool name must be non-empty")
        if key in self._tools:
            raise ValueError(f"Tool '{spec.name}' is already registered.")
        self._tools[key] = spec
        return spec

    def tool(
        self,
        name: str,
        *,
        description: str = "",
        cost_usd: float = 0.0,
        cacheable: bool = False,
        cache_ttl_seconds: Optional[float] = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(fn: ToolHandler) -> ToolHandler:
            self.register(
                ToolSpec(
                    name=name,
                    handler=fn,
                    description=description or (fn.__doc__ or "").strip(),
                    cost_usd=cost_usd,
                    cacheable=cacheable,
                    cache_ttl_seconds=cache_ttl_seconds,
                )
            )
            return fn

        return decorator

    def get(self, name: str) -> ToolSpec:
        spec = self._tools.get(name.strip().lower())
        if spec is None:
            raise ToolNotFoundError(name)
        return spec

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.strip().lower() in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> List[str]:
        return [spec.name for spec in self._tools.values()]

    def describe(self) -> List[Dict[str, Any]]:
        return [spec.describe() for spec in self._tools.values()]


class ActionExecutor:
    """Executes tool calls with bounded local retries.

    A failing handler is retried with the identical call up to
    ``max_retries`` more times. Unknown tools fail immediately.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        max_retries: int = 3,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        self.registry = registry
        self.max_retries = max_retries
        self._cancel_event = cancel_event

    def execute(self, tool_call: ToolCall) -> ToolOutcome:
        spec = self.registry.get(tool_call.tool)
        attempts = 0
        last_error: Optional[BaseException] = None
        while attempts <= self.max_retries:
            if attempts and self._cancel_event is not None and self._cancel_event.is_set():
                break
            attempts += 1
            try:
                raw = spec.handler(dict(tool_call.params))
            except ToolExecutionError as exc:
                last_error = exc
            except AgentRuntimeError:
                raise
            except Exception as exc:
                last_error = exc
            else:
                return _normalize_outcome(raw, spec)
            logger.warning(
                "Tool '%s' failed (attempt %s/%s): %s",
                spec.name,
                attempts,
                self.max_retries + 1,
                last_error,
            )
        message = last_error.error if isinstance(last_error, ToolExecutionError) else str(last_error)
        raise ToolExecutionError(
            spec.name,
            message or type(last_error).__name__,
            details={"attempts": attempts, "params": dict(tool_call.params)},
        ) from last_error


def _normalize_outcome(raw: Any, spec: ToolSpec) -> ToolOutcome:
    if isinstance(raw, ToolOutcome):
        if not spec.cost_usd:
            return raw
        return ToolOutcome(result=raw.result, usage=raw.usage + Usage(cost_usd=spec.cost_usd))
    return ToolOutcome(result=raw, usage=Usage(cost_usd=spec.cost_usd))


__all__ = ["ActionExecutor", "ToolHandler", "ToolRegistry", "ToolSpec"]
