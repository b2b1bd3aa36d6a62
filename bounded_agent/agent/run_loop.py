from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Union

from bounded_agent.core.exceptions import (
    ApprovalTimeout,
    BudgetExceeded,
    CacheUnavailable,
    DecisionError,
    PermissionDenied,
    ToolExecutionError,
    ToolNotFoundError,
)
from bounded_agent.embeddings import get_embedding_service
from shared.hierarchical_logger import (
    AgentLogger,
    HierarchicalLogger,
    get_hierarchical_logger,
    set_hierarchical_logger,
)
from shared.run_context import RUN_LOG_ID
from shared.settings import settings
from shared.streaming import emit_event

from .approvals import ApprovalBroker, ApprovalStatus, get_default_broker
from .budget import Budget, BudgetLedger
from .checkpoints import Checkpoint, CheckpointStore
from .executor import ActionExecutor, ToolRegistry
from .history import summarize_observation
from .llm import DecisionMaker, PlannerLLM
from .permissions import PermissionDecision, PermissionGate, PermissionPolicy
from .state import AgentState
from .tool_cache import CacheEntry, ResultCache, content_hash, tool_call_key
from .types import Decision, LoopState, Task, TaskResult, ToolCall, ToolOutcome, Usage

logger = logging.getLogger(__name__)


@dataclass
class LoopConfig:
    """Knobs for one execution loop (defaults come from settings in ``execute_task``)."""

    max_retries: int = 3
    approval_timeout: float = 300.0
    checkpoint_interval: int = 0
    similarity_threshold: Optional[float] = None

    @classmethod
    def from_settings(cls) -> "LoopConfig":
        return cls(
            max_retries=settings.AGENT_MAX_RETRIES,
            approval_timeout=settings.APPROVAL_TIMEOUT_SECONDS,
            checkpoint_interval=settings.AGENT_CHECKPOINT_INTERVAL,
            similarity_threshold=(
                settings.CACHE_SIMILARITY_THRESHOLD if settings.CACHE_SEMANTIC_ENABLED else None
            ),
        )


def budget_from_settings() -> Budget:
    return Budget(
        max_steps=settings.AGENT_MAX_STEPS,
        max_tokens=settings.AGENT_MAX_TOKENS,
        max_cost_usd=settings.AGENT_MAX_COST_USD,
        max_duration_seconds=settings.AGENT_MAX_DURATION_SECONDS,
    )


class ExecutionLoop:
    """Drives one task step by step under its budget.

    Each iteration asks the decision-maker for an action, then consults the
    result cache, the permission gate and (when required) a human approver
    before executing the tool and charging the ledger. Every exit path ends
    in a :class:`TaskResult`; nothing fails silently.

    The loop owns its ledger and history. The cache, gate and broker are
    shared collaborators injected by the caller.
    """

    def __init__(
        self,
        task: Task,
        *,
        decision_maker: DecisionMaker,
        tools: ToolRegistry,
        gate: PermissionGate,
        broker: ApprovalBroker,
        budget: Budget | None = None,
        ledger: BudgetLedger | None = None,
        cache: ResultCache | None = None,
        policy: PermissionPolicy | None = None,
        checkpoints: CheckpointStore | None = None,
        config: LoopConfig | None = None,
        resume_from: Checkpoint | None = None,
        agent_logger: AgentLogger | None = None,
    ) -> None:
        self.task = task
        self.decision_maker = decision_maker
        self.tools = tools
        self.gate = gate
        self.broker = broker
        self.cache = cache
        self.policy = policy
        self.checkpoints = checkpoints
        self.config = config or LoopConfig()
        self._cancelled = threading.Event()
        self._state = LoopState.PLANNING
        self._started = False
        self.executor = ActionExecutor(
            tools,
            max_retries=self.config.max_retries,
            cancel_event=self._cancelled,
        )
        self.agent_state = AgentState(
            task=task,
            ledger=ledger or BudgetLedger(budget or Budget()),
            agent_logger=agent_logger,
        )
        if resume_from is not None:
            self._restore(resume_from)

    # --- Public surface ---

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def ledger(self) -> BudgetLedger:
        return self.agent_state.ledger

    def cancel(self) -> None:
        """Request cooperative cancellation; pending approvals of this task are denied."""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        denied = self.broker.cancel_task(self.task.id)
        logger.info("Cancellation requested for task %s (denied %s approvals)", self.task.id, denied)

    def run(self) -> TaskResult:
        """
        Execute the loop until a terminal result is produced.

        Flow per iteration:
          1. Stop on cancellation or an exhausted budget.
          2. Ask the decision-maker for the next action (bounded retries).
          3. Finish on a final answer.
          4. Reuse a cached result when one exists.
          5. Otherwise classify the call with the permission gate.
          6. Route calls that need a human through the approval broker.
          7. Execute, charge the ledger, record, cache and checkpoint.
        """
        if self._started:
            raise RuntimeError("ExecutionLoop.run() can only be called once per loop.")
        self._started = True
        self.agent_state.record_event(
            "agent.task.started",
            {
                "goal": self.task.goal[:200],
                "budget": asdict(self.ledger.budget),
                "resumed_steps": len(self.agent_state.history),
            },
        )
        try:
            result = self._run()
        except Exception as exc:
            logger.exception("Execution loop crashed for task %s", self.task.id)
            result = self._finish(
                LoopState.ERROR,
                error_code="internal_error",
                message=f"{type(exc).__name__}: {exc}",
            )
        self.agent_state.record_event(
            "agent.task.completed",
            {
                "status": result["status"],
                "error_code": result.get("error_code"),
                "steps_taken": result["budget_usage"].get("steps_taken"),
            },
        )
        return result

    # --- Main loop ---

    def _run(self) -> TaskResult:
        while True:
            self._transition(LoopState.PLANNING)
            if self._cancelled.is_set():
                return self._rejected()
            self.ledger.tick()
            if self.ledger.is_exhausted():
                return self._budget_exhausted(self.ledger.exhausted_resources())

            decision = self._next_decision()
            if not isinstance(decision, Decision):
                return decision
            try:
                self.ledger.record_usage(
                    tokens=decision.usage.tokens,
                    cost_usd=decision.usage.cost_usd,
                )
            except BudgetExceeded as exc:
                return self._budget_overrun(exc, unrecorded=decision.usage, steps=0)
            if self._cancelled.is_set():
                return self._rejected()

            if decision.is_final:
                return self._complete(decision.final_answer or "")

            tool_call = decision.tool_call
            if tool_call is None:
                raise DecisionError("Non-final decision carries no tool call.")

            cached = self._cache_lookup(tool_call)
            if cached is not None:
                terminal = self._commit(tool_call, ToolOutcome(result=cached.result), cache_hit=True)
                if terminal is not None:
                    return terminal
                continue

            verdict = self.gate.classify(tool_call, self.policy)
            self.agent_state.record_event(
                "agent.permission.classified",
                {"tool": tool_call.tool, "decision": verdict.value},
            )
            if verdict is PermissionDecision.DENIED:
                terminal = self._deny(tool_call, PermissionDenied(tool_call.tool, "policy"))
                if terminal is not None:
                    return terminal
                continue

            if verdict is PermissionDecision.REQUIRES_APPROVAL:
                denial = self._await_approval(tool_call)
                if self._cancelled.is_set():
                    return self._rejected()
                if denial is not None:
                    terminal = self._deny(tool_call, denial)
                    if terminal is not None:
                        return terminal
                    continue

            self._transition(LoopState.EXECUTING)
            outcome = self._execute(tool_call)
            if not isinstance(outcome, ToolOutcome):
                return outcome
            terminal = self._commit(tool_call, outcome, cache_hit=False)
            if terminal is not None:
                return terminal

    def _next_decision(self) -> Union[Decision, TaskResult]:
        """Ask the decision-maker, retrying provider failures up to ``max_retries`` times."""
        failures = 0
        while True:
            try:
                decision = self.decision_maker.decide(self.task, self.agent_state.history)
                if not isinstance(decision, Decision):
                    raise DecisionError(
                        f"Decision-maker returned {type(decision).__name__}, expected Decision."
                    )
                return decision
            except Exception as exc:
                failures += 1
                self.agent_state.record_event(
                    "agent.decision.failed",
                    {"attempt": failures, "error": str(exc), "error_type": type(exc).__name__},
                )
                spent = exc.usage if isinstance(exc, DecisionError) else None
                if spent is not None and (spent.tokens or spent.cost_usd):
                    try:
                        self.ledger.record_usage(tokens=spent.tokens, cost_usd=spent.cost_usd)
                    except BudgetExceeded as overrun:
                        return self._budget_overrun(overrun, unrecorded=spent, steps=0)
                if failures > self.config.max_retries:
                    return self._finish(
                        LoopState.ERROR,
                        error_code="decision_failed",
                        message=str(exc),
                        details={"attempts": failures, "error_type": type(exc).__name__},
                    )
                if self._cancelled.is_set():
                    return self._rejected()

    def _cache_lookup(self, tool_call: ToolCall) -> Optional[CacheEntry]:
        if self.cache is None:
            return None
        try:
            entry = self.cache.lookup(tool_call, self.config.similarity_threshold)
        except CacheUnavailable as exc:
            logger.warning("Cache unavailable for task %s: %s", self.task.id, exc)
            self.agent_state.record_event("agent.cache.unavailable", {"error": str(exc)})
            return None
        if entry is None:
            return None
        exact_key = content_hash(tool_call_key(tool_call))
        tool_prefix = tool_call.tool.strip().lower() + ":"
        # A semantic neighbour only counts when it came from the same tool.
        if entry.key != exact_key and not entry.query.startswith(tool_prefix):
            return None
        self.agent_state.record_event(
            "agent.cache.hit",
            {"tool": tool_call.tool, "key": entry.key, "exact": entry.key == exact_key},
        )
        return entry

    def _await_approval(self, tool_call: ToolCall) -> Optional[PermissionDenied]:
        """Block on a human decision; returns the denial, or None when approved."""
        self._transition(LoopState.AWAITING_APPROVAL)
        request = self.broker.request(self.task.id, tool_call, self.config.approval_timeout)
        self.agent_state.record_event(
            "agent.approval.requested",
            {"request_id": request.id, "tool": tool_call.tool, "deadline": request.deadline},
        )
        if self._cancelled.is_set():
            # cancel() ran before this request was registered and could not deny it.
            self.broker.deny(request.id, resolved_by="system:cancelled")
        status = self.broker.await_resolution(request.id)
        self.agent_state.record_event(
            "agent.approval.resolved",
            {"request_id": request.id, "tool": tool_call.tool, "status": status.value},
        )
        if status is ApprovalStatus.APPROVED:
            return None
        details = {"request_id": request.id, "resolved_by": request.resolved_by}
        if status is ApprovalStatus.TIMED_OUT:
            return ApprovalTimeout(tool_call.tool, request.id, details=details)
        return PermissionDenied(tool_call.tool, status.value, details=details)

    def _deny(self, tool_call: ToolCall, denial: PermissionDenied) -> Optional[TaskResult]:
        """Feed a denial back as an observation; too many in a row ends the task."""
        state = self.agent_state
        state.consecutive_denials += 1
        timed_out = isinstance(denial, ApprovalTimeout)
        reason = ApprovalStatus.TIMED_OUT.value if timed_out else denial.reason
        hint = "treat the call as denied" if timed_out else "choose a different action"
        state.record_step(
            action_type="approval_timeout" if timed_out else "denied",
            success=False,
            tool=tool_call.tool,
            action_input=tool_call.params,
            action_reasoning=tool_call.justification,
            observation={
                "denied": True,
                "reason": reason,
                "message": f"{denial.message}; {hint}.",
                **denial.details,
            },
            error=reason,
        )
        state.record_event(
            "agent.tool.denied",
            {
                "tool": tool_call.tool,
                "reason": reason,
                "consecutive_denials": state.consecutive_denials,
            },
        )
        if state.consecutive_denials >= self.config.max_retries:
            return self._finish(
                LoopState.ERROR,
                error_code="too_many_denials",
                message=f"{state.consecutive_denials} consecutive tool calls were denied.",
                details={"last_tool": tool_call.tool, "last_reason": reason},
            )
        return None

    def _execute(self, tool_call: ToolCall) -> Union[ToolOutcome, TaskResult]:
        try:
            return self.executor.execute(tool_call)
        except (ToolExecutionError, ToolNotFoundError) as exc:
            self.agent_state.record_step(
                action_type="tool_error",
                success=False,
                tool=tool_call.tool,
                action_input=tool_call.params,
                action_reasoning=tool_call.justification,
                observation={"error": exc.message},
                error=exc.message,
            )
            error_code = (
                "tool_not_found" if isinstance(exc, ToolNotFoundError) else "tool_execution_failed"
            )
            return self._finish(
                LoopState.ERROR,
                error_code=error_code,
                message=exc.message,
                details=dict(exc.details),
            )

    def _commit(
        self,
        tool_call: ToolCall,
        outcome: ToolOutcome,
        *,
        cache_hit: bool,
    ) -> Optional[TaskResult]:
        """Charge the ledger for one step, then record, cache and checkpoint it."""
        state = self.agent_state
        try:
            self.ledger.record_usage(
                steps=1,
                tokens=outcome.usage.tokens,
                cost_usd=outcome.usage.cost_usd,
            )
        except BudgetExceeded as exc:
            state.record_step(
                action_type="budget_exceeded",
                success=False,
                tool=tool_call.tool,
                action_input=tool_call.params,
                action_reasoning=tool_call.justification,
                observation=outcome.result,
                error=exc.message,
                tokens=outcome.usage.tokens,
                cost_usd=outcome.usage.cost_usd,
            )
            return self._budget_overrun(exc, unrecorded=outcome.usage, steps=1)

        step = state.record_step(
            action_type="cache_hit" if cache_hit else "tool",
            success=True,
            tool=tool_call.tool,
            action_input=tool_call.params,
            action_reasoning=tool_call.justification,
            observation=outcome.result,
            tokens=outcome.usage.tokens,
            cost_usd=outcome.usage.cost_usd,
        )
        state.consecutive_denials = 0
        state.record_event(
            "agent.step.completed",
            {
                "step": step.action_step,
                "tool": tool_call.tool,
                "cache_hit": cache_hit,
                "tokens": outcome.usage.tokens,
                "cost_usd": outcome.usage.cost_usd,
                "observation_preview": summarize_observation(outcome.result, max_chars=200),
            },
        )
        if not cache_hit:
            self._store_result(tool_call, outcome)
        self._maybe_checkpoint()
        return None

    def _store_result(self, tool_call: ToolCall, outcome: ToolOutcome) -> None:
        if self.cache is None or tool_call.tool not in self.tools:
            return
        spec = self.tools.get(tool_call.tool)
        if not spec.cacheable:
            return
        try:
            self.cache.store(tool_call, outcome.result, ttl=spec.cache_ttl_seconds)
        except CacheUnavailable as exc:
            logger.warning("Could not cache result of %s: %s", tool_call.tool, exc)
            self.agent_state.record_event("agent.cache.unavailable", {"error": str(exc)})

    def _maybe_checkpoint(self) -> None:
        interval = self.config.checkpoint_interval
        if self.checkpoints is None or interval <= 0:
            return
        steps = int(self.ledger.consumed("steps"))
        if steps == 0 or steps % interval:
            return
        checkpoint = Checkpoint(
            task_id=self.task.id,
            goal=self.task.goal,
            actor=self.task.actor,
            step_count=steps,
            history=self.agent_state.history.to_dict(),
            budget=self.ledger.snapshot().to_dict(),
        )
        try:
            checkpoint_id = self.checkpoints.save(checkpoint)
        except CacheUnavailable as exc:
            logger.warning("Checkpoint for task %s failed: %s", self.task.id, exc)
            self.agent_state.record_event("agent.checkpoint.failed", {"error": str(exc)})
            return
        self.agent_state.checkpoint_ids.append(checkpoint_id)
        self.agent_state.record_event(
            "agent.checkpoint.saved",
            {"checkpoint_id": checkpoint_id, "step_count": steps},
        )

    def _restore(self, checkpoint: Checkpoint) -> None:
        if checkpoint.task_id != self.task.id:
            raise ValueError(
                f"Checkpoint belongs to task {checkpoint.task_id}, not {self.task.id}."
            )
        self.agent_state.history = checkpoint.restore_history()
        self.ledger.restore(checkpoint.budget_snapshot())
        self.agent_state.checkpoint_ids.append(checkpoint.id)
        logger.info(
            "Resumed task %s from checkpoint %s at step %s",
            self.task.id,
            checkpoint.id,
            checkpoint.step_count,
        )

    # --- Terminal results ---

    def _transition(self, new_state: LoopState) -> None:
        if self._state is new_state:
            return
        previous = self._state
        self._state = new_state
        logger.debug("Task %s: %s -> %s", self.task.id, previous.value, new_state.value)

    def _complete(self, answer: str) -> TaskResult:
        self.agent_state.record_step(action_type="finish", success=True, observation=answer)
        return self._finish(LoopState.COMPLETED, final_answer=answer)

    def _rejected(self) -> TaskResult:
        return self._finish(
            LoopState.REJECTED,
            error_code="cancelled",
            message="Task was cancelled.",
        )

    def _budget_exhausted(self, resources: list[str]) -> TaskResult:
        message = f"Budget exhausted: {', '.join(resources)}"
        self.agent_state.record_step(
            action_type="budget_exceeded",
            success=False,
            error=message,
        )
        self.agent_state.record_event("agent.budget.exhausted", {"resources": resources})
        return self._finish(
            LoopState.BUDGET_EXHAUSTED,
            error_code="budget_exhausted",
            message=message,
            details={"resources": resources},
        )

    def _budget_overrun(self, exc: BudgetExceeded, *, unrecorded: Usage, steps: int) -> TaskResult:
        """The last action pushed a counter past its limit; nothing was charged."""
        self.agent_state.record_event(
            "agent.budget.exceeded",
            {"resource": exc.resource, "attempted": exc.attempted, "limit": exc.limit},
        )
        return self._finish(
            LoopState.BUDGET_EXHAUSTED,
            error_code="budget_exhausted",
            message=exc.message,
            details={
                "resources": [exc.resource],
                "attempted": exc.attempted,
                "limit": exc.limit,
            },
            unrecorded={"steps": steps, "tokens": unrecorded.tokens, "cost_usd": unrecorded.cost_usd},
        )

    def _finish(
        self,
        state: LoopState,
        *,
        final_answer: Optional[str] = None,
        error_code: Optional[str] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        unrecorded: Optional[Dict[str, Any]] = None,
    ) -> TaskResult:
        self._transition(state)
        if error_code is not None:
            self.agent_state.record_event(
                "agent.task.failed",
                {"status": state.value, "error_code": error_code, "message": (message or "")[:200]},
            )
        snapshot = self.ledger.tick()
        result = TaskResult(
            status=state.value,
            task_id=self.task.id,
            goal=self.task.goal,
            actor=self.task.actor,
            final_answer=final_answer,
            error_code=error_code,
            error_message=message,
            steps=self.agent_state.history.to_dict(),
            budget_usage=snapshot.to_dict(),
            checkpoints=list(self.agent_state.checkpoint_ids),
            logs=self.agent_state.logs,
        )
        if details is not None:
            result["error_details"] = details
        if unrecorded is not None:
            result["unrecorded_usage"] = unrecorded
        return result


# --- High-level entrypoint ---


def execute_task(
    task: Union[Task, str],
    *,
    tools: ToolRegistry,
    decision_maker: DecisionMaker | None = None,
    actor: str | None = None,
    budget: Budget | None = None,
    gate: PermissionGate | None = None,
    policy: PermissionPolicy | None = None,
    broker: ApprovalBroker | None = None,
    cache: ResultCache | None = None,
    checkpoints: CheckpointStore | None = None,
    config: LoopConfig | None = None,
    resume_from: Checkpoint | None = None,
) -> TaskResult:
    """
    Execute one task and return a structured result.

    Anything not passed in is built from settings: the budget, the loop
    config, the permission policy (``PERMISSION_POLICY_FILE``), the planner
    LLM and the result cache. The approval broker defaults to the
    process-wide one served by the HTTP API.
    """
    if isinstance(task, str):
        task = Task(goal=task, actor=actor or "")
    if gate is None:
        gate = PermissionGate(
            policy or PermissionPolicy.from_dict(settings.load_permission_policy())
        )
        policy = None
    if cache is None:
        embedder = (
            get_embedding_service(settings.CACHE_EMBEDDING_MODEL)
            if settings.CACHE_SEMANTIC_ENABLED
            else None
        )
        cache = ResultCache(embedder=embedder, default_ttl=settings.CACHE_DEFAULT_TTL_SECONDS)

    agent_logger: AgentLogger | None = None
    if settings.AGENT_FILE_LOGGING:
        h_logger = get_hierarchical_logger()
        if h_logger is None:
            h_logger = HierarchicalLogger(task.goal, base_dir=settings.AGENT_LOG_DIR)
            set_hierarchical_logger(h_logger)
        agent_logger = h_logger.get_agent_logger("agent", task.id)

    token = RUN_LOG_ID.set(task.id)
    try:
        emit_event("agent.task.submitted", {"task_id": task.id, "goal": task.goal[:100]})
        loop = ExecutionLoop(
            task,
            decision_maker=decision_maker or PlannerLLM(tools=tools.describe()),
            tools=tools,
            gate=gate,
            broker=broker or get_default_broker(),
            budget=budget or budget_from_settings(),
            cache=cache,
            policy=policy,
            checkpoints=checkpoints,
            config=config or LoopConfig.from_settings(),
            resume_from=resume_from,
            agent_logger=agent_logger,
        )
        return loop.run()
    finally:
        RUN_LOG_ID.reset(token)


__all__ = [
    "ExecutionLoop",
    "LoopConfig",
    "budget_from_settings",
    "execute_task",
]
