"""LLM-backed decision-maker for the execution loop."""

from __future__ import annotations

import dataclasses
import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from bounded_agent.core.exceptions import DecisionError
from shared.oai_client import OAIClient, extract_assistant_text
from shared.settings import settings
from shared.token_cost_tracker import TOKEN_TRACKER, TokenCostTracker, price_response

from .history import ExecutionHistory
from .parser import parse_planner_decision
from .prompts import PLANNER_PROMPT
from .types import Decision, Task, Usage

logger = logging.getLogger(__name__)


@runtime_checkable
class DecisionMaker(Protocol):
    """Produces the next action for a task given what has happened so far.

    Implementations raise :class:`DecisionError` (or any exception) on
    provider failure; the loop retries a bounded number of times.
    """

    def decide(self, task: Task, history: ExecutionHistory) -> Decision: ...


class PlannerLLM:
    """Formats planner state and calls the Responses API via `shared.oai_client`."""

    def __init__(
        self,
        *,
        tools: Sequence[Dict[str, Any]] = (),
        client: OAIClient | None = None,
        model: str | None = None,
        enabled: bool | None = None,
        reasoning_effort: str | None = None,
        max_output_tokens: int = 4000,
        context_steps: Optional[int] = 20,
        token_tracker: TokenCostTracker = TOKEN_TRACKER,
        prompt: str = PLANNER_PROMPT,
    ) -> None:
        self._client = client
        self.tools = list(tools)
        self.model = model or settings.PLANNER_MODEL
        self._enabled_override = enabled
        self.reasoning_effort = reasoning_effort or settings.PLANNER_REASONING_EFFORT
        self.max_output_tokens = max_output_tokens
        self.context_steps = context_steps
        self.token_tracker = token_tracker
        self.prompt = prompt

    def decide(self, task: Task, history: ExecutionHistory) -> Decision:
        if not self.is_enabled():
            raise DecisionError("Planner LLM is disabled.", {"model": self.model})

        messages = self.build_messages(task, history)
        try:
            response = self._get_client().create_response(
                model=self.model,
                messages=messages,
                reasoning_effort=self.reasoning_effort,
                max_output_tokens=self.max_output_tokens,
                text={"format": {"type": "json_object"}},
            )
        except Exception as exc:
            raise DecisionError(
                f"Planner call failed: {exc}",
                {"model": self.model, "error_type": type(exc).__name__},
            ) from exc

        priced = price_response(self.model, response)
        self.token_tracker.record(self.model, "planner.llm", priced)
        usage = Usage(tokens=priced.total_tokens, cost_usd=priced.cost_usd)

        text = extract_assistant_text(response) or ""
        try:
            decision = parse_planner_decision(text)
        except ValueError as exc:
            raise DecisionError(
                f"Planner returned an invalid command: {exc}",
                {"model": self.model, "output_preview": text[:200], "usage": dataclasses.asdict(usage)},
                usage=usage,
            ) from exc
        logger.debug("Planner decision for task %s: %s", task.id, decision)
        return dataclasses.replace(decision, usage=usage)

    def is_enabled(self) -> bool:
        if self._enabled_override is not None:
            return self._enabled_override
        return settings.PLANNER_LLM_ENABLED

    def _get_client(self) -> OAIClient:
        if self._client is None:
            self._client = OAIClient(default_model=self.model)
        return self._client

    def build_messages(self, task: Task, history: ExecutionHistory) -> List[Dict[str, Any]]:
        """
        Build the 3-message conversation:
          - system: planner prompt
          - developer: PLANNER_STATE_JSON (tools + trajectory)
          - user: task payload
        """
        trajectory = history.build_trajectory()
        if self.context_steps:
            trajectory = trajectory[-self.context_steps:]
        state = {"tools": self.tools, "trajectory": trajectory}
        state_json = json.dumps(state, ensure_ascii=False, sort_keys=True, indent=2, default=str)
        user_payload = json.dumps({"task": task.goal, "actor": task.actor}, ensure_ascii=False)
        return [
            {"role": "system", "content": self.prompt},
            {"role": "developer", "content": f"PLANNER_STATE_JSON\n{state_json}"},
            {"role": "user", "content": user_payload},
        ]


__all__ = ["DecisionMaker", "PlannerLLM"]
