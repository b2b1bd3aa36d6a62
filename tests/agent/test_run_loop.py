from __future__ import annotations

import json
import threading
import time
from typing import Callable, Dict, List

import numpy as np
import pytest

from bounded_agent.agent.approvals import ApprovalBroker, ApprovalRequest, ApprovalStatus
from bounded_agent.agent.budget import Budget, BudgetLedger
from bounded_agent.agent.checkpoints import CheckpointStore
from bounded_agent.agent.executor import ToolRegistry, ToolSpec
from bounded_agent.agent.llm import PlannerLLM
from bounded_agent.agent.permissions import PermissionGate, PermissionPolicy
from bounded_agent.agent.run_loop import ExecutionLoop, LoopConfig, execute_task
from bounded_agent.agent.tool_cache import ResultCache
from bounded_agent.agent.types import Decision, LoopState, Task, Usage
from bounded_agent.core.exceptions import DecisionError
from shared.streaming import stream_to
from shared.token_cost_tracker import TokenCostTracker


class ScriptedDecisionMaker:
    """Replays a fixed list of decisions (or exceptions) and records what it saw."""

    def __init__(self, decisions, *, on_decide: Callable[[], None] | None = None):
        self._decisions = list(decisions)
        self._on_decide = on_decide
        self.calls = 0
        self.seen: List[List[str]] = []

    def decide(self, task, history):
        self.seen.append([step.action_type for step in history.history])
        if self._on_decide is not None:
            self._on_decide()
        if self.calls >= len(self._decisions):
            raise AssertionError("Decision-maker called more times than scripted.")
        item = self._decisions[self.calls]
        self.calls += 1
        if isinstance(item, Exception):
            raise item
        return item


class RepeatingDecisionMaker:
    def __init__(self, decision: Decision):
        self.decision = decision
        self.calls = 0

    def decide(self, task, history):
        self.calls += 1
        return self.decision


class CountingTools:
    def __init__(self) -> None:
        self.calls: Dict[str, int] = {}
        self.registry = ToolRegistry()
        self._add("search", lambda p: {"hits": [p.get("q")]}, cacheable=True)
        self._add("forecast", lambda p: {"sky": "clear"}, cacheable=True)
        self._add("send_email", lambda p: {"sent": True}, cost_usd=0.3)
        self._add("delete_repo", lambda p: {"deleted": True})
        self._add("broken", self._fail)

    def _add(self, name, handler, **kwargs) -> None:
        def counted(params, _name=name, _handler=handler):
            self.calls[_name] = self.calls.get(_name, 0) + 1
            return _handler(params)

        self.registry.register(ToolSpec(name=name, handler=counted, **kwargs))

    @staticmethod
    def _fail(params):
        raise RuntimeError("upstream 503")


POLICY = {
    "search": "autonomous",
    "forecast": "autonomous",
    "send_email": "requires_approval",
    "delete_repo": "denied",
    "broken": "autonomous",
    "ghost": "autonomous",
}


class KeywordEmbedder:
    VOCAB = ("weather", "paris", "london")

    def __call__(self, text: str):
        return np.array([1.0 if w in text.lower() else 0.0 for w in self.VOCAB], dtype=np.float32)


def when_pending(broker: ApprovalBroker, action: Callable[[ApprovalRequest], None]) -> threading.Thread:
    """Run ``action`` on the first pending approval, from another thread."""

    def worker() -> None:
        deadline = time.time() + 5
        while time.time() < deadline:
            pending = broker.pending()
            if pending:
                action(pending[0])
                return
            time.sleep(0.01)

    thread = threading.Thread(target=worker, daemon=True)
    thread.start()
    return thread


def make_loop(
    decision_maker,
    *,
    tools: CountingTools | None = None,
    policy: Dict | None = None,
    broker: ApprovalBroker | None = None,
    config: LoopConfig | None = None,
    task: Task | None = None,
    **kwargs,
) -> ExecutionLoop:
    tools = tools or CountingTools()
    return ExecutionLoop(
        task or Task(goal="test goal", actor="tester"),
        decision_maker=decision_maker,
        tools=tools.registry,
        gate=PermissionGate(PermissionPolicy.from_dict(policy or POLICY)),
        broker=broker or ApprovalBroker(notifier=None),
        config=config or LoopConfig(approval_timeout=2.0),
        **kwargs,
    )


def step_types(result) -> List[str]:
    return [step["action_type"] for step in result["steps"]]


def event_names(result) -> List[str]:
    return [entry["event"] for entry in result["logs"]]


def test_autonomous_tool_then_finish_completes() -> None:
    tools = CountingTools()
    dm = ScriptedDecisionMaker(
        [
            Decision.call("search", {"q": "weather"}, "look it up", usage=Usage(tokens=100, cost_usd=0.001)),
            Decision.finish("sunny", usage=Usage(tokens=50, cost_usd=0.0005)),
        ]
    )
    loop = make_loop(dm, tools=tools)

    result = loop.run()

    assert result["status"] == "completed"
    assert result["final_answer"] == "sunny"
    assert result["actor"] == "tester"
    assert step_types(result) == ["tool", "finish"]
    assert result["steps"][0]["observation"] == {"hits": ["weather"]}
    assert result["budget_usage"]["steps_taken"] == 1
    assert result["budget_usage"]["tokens_used"] == 150
    assert tools.calls == {"search": 1}
    assert loop.state is LoopState.COMPLETED
    assert dm.seen[1] == ["tool"]


def test_step_budget_exhaustion_stops_before_next_decision() -> None:
    tools = CountingTools()
    dm = RepeatingDecisionMaker(Decision.call("send_email", {"to": "x"}))
    loop = make_loop(
        dm,
        tools=tools,
        policy={"send_email": "autonomous"},
        budget=Budget(max_steps=3, max_cost_usd=10),
    )

    result = loop.run()

    assert result["status"] == "budget_exhausted"
    assert result["error_code"] == "budget_exhausted"
    assert result["error_details"]["resources"] == ["steps"]
    assert step_types(result) == ["tool", "tool", "tool", "budget_exceeded"]
    assert result["budget_usage"]["steps_taken"] == 3
    assert dm.calls == 3
    assert tools.calls["send_email"] == 3


def test_approved_tool_executes_after_human_approval() -> None:
    tools = CountingTools()
    broker = ApprovalBroker(notifier=None)
    dm = ScriptedDecisionMaker(
        [
            Decision.call("send_email", {"to": "ops@example.com"}, "notify ops"),
            Decision.finish("notified"),
        ]
    )
    approver = when_pending(broker, lambda req: broker.approve(req.id, resolved_by="alice"))

    result = make_loop(dm, tools=tools, broker=broker).run()
    approver.join(timeout=2)

    assert result["status"] == "completed"
    assert tools.calls == {"send_email": 1}
    assert "agent.approval.requested" in event_names(result)
    resolved = [e for e in result["logs"] if e["event"] == "agent.approval.resolved"]
    assert resolved[0]["status"] == "approved"
    assert result["budget_usage"]["cost_usd"] == pytest.approx(0.3)


def test_approval_timeout_is_fed_back_as_denial() -> None:
    tools = CountingTools()
    dm = ScriptedDecisionMaker(
        [
            Decision.call("send_email", {"to": "ops@example.com"}),
            Decision.finish("could not notify"),
        ]
    )

    result = make_loop(dm, tools=tools, config=LoopConfig(approval_timeout=0.05)).run()

    assert result["status"] == "completed"
    assert step_types(result) == ["approval_timeout", "finish"]
    assert result["steps"][0]["observation"]["reason"] == "timed_out"
    assert result["budget_usage"]["steps_taken"] == 0
    assert "send_email" not in tools.calls
    assert dm.seen[1] == ["approval_timeout"]


def test_human_denial_is_fed_back_and_planning_continues() -> None:
    tools = CountingTools()
    broker = ApprovalBroker(notifier=None)
    dm = ScriptedDecisionMaker(
        [
            Decision.call("send_email", {"to": "ceo@example.com"}),
            Decision.call("search", {"q": "alternatives"}),
            Decision.finish("done"),
        ]
    )
    when_pending(broker, lambda req: broker.deny(req.id, resolved_by="bob"))

    result = make_loop(dm, tools=tools, broker=broker).run()

    assert result["status"] == "completed"
    assert step_types(result) == ["denied", "tool", "finish"]
    assert result["steps"][0]["error"] == "denied"
    assert result["steps"][0]["observation"]["resolved_by"] == "bob"
    assert "request_id" in result["steps"][0]["observation"]
    assert "send_email" not in tools.calls


def test_policy_denial_never_executes_and_repeated_denials_end_task() -> None:
    tools = CountingTools()
    dm = RepeatingDecisionMaker(Decision.call("delete_repo", {"name": "prod"}))

    result = make_loop(dm, tools=tools, config=LoopConfig(max_retries=3)).run()

    assert result["status"] == "error"
    assert result["error_code"] == "too_many_denials"
    assert step_types(result) == ["denied", "denied", "denied"]
    assert dm.calls == 3
    assert tools.calls == {}


def test_unknown_tool_is_denied_by_default() -> None:
    dm = ScriptedDecisionMaker([Decision.call("format_disk"), Decision.finish("gave up")])
    result = make_loop(dm).run()
    assert step_types(result) == ["denied", "finish"]
    assert result["steps"][0]["observation"]["reason"] == "policy"


def test_successful_step_resets_denial_streak() -> None:
    dm = ScriptedDecisionMaker(
        [
            Decision.call("delete_repo"),
            Decision.call("delete_repo"),
            Decision.call("search", {"q": "x"}),
            Decision.call("delete_repo"),
            Decision.call("delete_repo"),
            Decision.finish("ok"),
        ]
    )
    result = make_loop(dm, config=LoopConfig(max_retries=3)).run()
    assert result["status"] == "completed"


def test_identical_cacheable_call_is_served_from_cache() -> None:
    tools = CountingTools()
    cache = ResultCache()
    dm = ScriptedDecisionMaker(
        [
            Decision.call("search", {"q": "x", "limit": 1}),
            Decision.call("search", {"limit": 1, "q": "x"}),
            Decision.finish("done"),
        ]
    )

    result = make_loop(dm, tools=tools, cache=cache).run()

    assert step_types(result) == ["tool", "cache_hit", "finish"]
    assert tools.calls == {"search": 1}
    assert result["steps"][1]["observation"] == result["steps"][0]["observation"]
    assert result["budget_usage"]["steps_taken"] == 2
    assert "agent.cache.hit" in event_names(result)


def test_cache_hit_skips_permission_gate() -> None:
    tools = CountingTools()
    cache = ResultCache()
    cache.store(Decision.call("delete_repo", {"name": "x"}).tool_call, {"deleted": "earlier"})
    dm = ScriptedDecisionMaker([Decision.call("delete_repo", {"name": "x"}), Decision.finish("ok")])

    result = make_loop(dm, tools=tools, cache=cache).run()

    assert step_types(result) == ["cache_hit", "finish"]
    assert result["steps"][0]["observation"] == {"deleted": "earlier"}
    assert result["budget_usage"]["steps_taken"] == 1
    assert result["budget_usage"]["cost_usd"] == 0
    assert tools.calls == {}
    assert "agent.permission.classified" not in event_names(result)


def test_non_cacheable_results_are_not_stored() -> None:
    tools = CountingTools()
    cache = ResultCache()
    dm = ScriptedDecisionMaker(
        [
            Decision.call("send_email", {"to": "a"}),
            Decision.call("send_email", {"to": "a"}),
            Decision.finish("done"),
        ]
    )
    result = make_loop(
        dm, tools=tools, cache=cache, policy={"send_email": "autonomous"}, budget=Budget(max_cost_usd=5)
    ).run()

    assert step_types(result) == ["tool", "tool", "finish"]
    assert tools.calls == {"send_email": 2}
    assert len(cache) == 0


def test_semantic_hit_only_counts_for_the_same_tool() -> None:
    tools = CountingTools()
    cache = ResultCache(embedder=KeywordEmbedder())
    dm = ScriptedDecisionMaker(
        [
            Decision.call("search", {"q": "weather in paris"}),
            Decision.call("search", {"q": "paris weather"}),
            Decision.call("forecast", {"q": "paris weather"}),
            Decision.finish("done"),
        ]
    )

    result = make_loop(
        dm, tools=tools, cache=cache, config=LoopConfig(similarity_threshold=0.9)
    ).run()

    assert step_types(result) == ["tool", "cache_hit", "tool", "finish"]
    assert tools.calls == {"search": 1, "forecast": 1}


def test_tool_failure_is_retried_then_reported() -> None:
    tools = CountingTools()
    dm = ScriptedDecisionMaker([Decision.call("broken", {"x": 1})])

    result = make_loop(dm, tools=tools, config=LoopConfig(max_retries=2)).run()

    assert result["status"] == "error"
    assert result["error_code"] == "tool_execution_failed"
    assert "upstream 503" in result["error_message"]
    assert result["error_details"]["attempts"] == 3
    assert step_types(result) == ["tool_error"]
    assert tools.calls == {"broken": 3}
    assert result["budget_usage"]["steps_taken"] == 0


def test_allowed_but_unregistered_tool_reports_not_found() -> None:
    dm = ScriptedDecisionMaker([Decision.call("ghost")])
    result = make_loop(dm).run()
    assert result["error_code"] == "tool_not_found"


def test_decision_failures_are_retried() -> None:
    dm = ScriptedDecisionMaker([DecisionError("provider 500"), Decision.finish("recovered")])
    result = make_loop(dm).run()
    assert result["status"] == "completed"
    assert "agent.decision.failed" in event_names(result)


def test_persistent_decision_failure_ends_in_error() -> None:
    dm = ScriptedDecisionMaker([DecisionError("provider 500")] * 3)
    result = make_loop(dm, config=LoopConfig(max_retries=2)).run()
    assert result["status"] == "error"
    assert result["error_code"] == "decision_failed"
    assert result["error_details"]["attempts"] == 3


def test_cost_overrun_reports_unrecorded_usage() -> None:
    tools = CountingTools()
    dm = RepeatingDecisionMaker(Decision.call("send_email", {"to": "a"}))

    result = make_loop(
        dm,
        tools=tools,
        policy={"send_email": "autonomous"},
        budget=Budget(max_cost_usd=0.5),
    ).run()

    assert result["status"] == "budget_exhausted"
    assert result["error_details"]["resources"] == ["cost"]
    assert result["unrecorded_usage"] == {"steps": 1, "tokens": 0, "cost_usd": 0.3}
    assert result["budget_usage"]["cost_usd"] == pytest.approx(0.3)
    assert result["budget_usage"]["steps_taken"] == 1
    assert step_types(result) == ["tool", "budget_exceeded"]


def test_decision_tokens_past_limit_exhaust_budget() -> None:
    dm = ScriptedDecisionMaker([Decision.finish("x", usage=Usage(tokens=150))])
    result = make_loop(dm, budget=Budget(max_tokens=100)).run()

    assert result["status"] == "budget_exhausted"
    assert result["unrecorded_usage"]["tokens"] == 150
    assert result["budget_usage"]["tokens_used"] == 0
    assert result["final_answer"] is None


class PricedResponse:
    def __init__(self, text: str, input_tokens: int, output_tokens: int) -> None:
        self.output_text = text
        self.usage = {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "input_tokens_details": {"cached_tokens": 0},
        }


class QueuedClient:
    def __init__(self, responses) -> None:
        self._responses = list(responses)

    def create_response(self, **kwargs):
        return self._responses.pop(0)


def make_planner(*responses) -> PlannerLLM:
    return PlannerLLM(
        client=QueuedClient(responses),
        model="gpt-5-mini",
        enabled=True,
        token_tracker=TokenCostTracker(),
    )


FINISH_JSON = json.dumps({"type": "finish", "answer": "done"})


def test_invalid_planner_output_is_still_charged() -> None:
    planner = make_planner(
        PricedResponse("not json", 5000, 5000),
        PricedResponse(FINISH_JSON, 10, 10),
    )

    result = make_loop(planner).run()

    assert result["status"] == "completed"
    assert result["budget_usage"]["tokens_used"] == 10020
    assert result["budget_usage"]["cost_usd"] == pytest.approx(
        5010 * 0.25e-6 + 5010 * 2.0e-6
    )


def test_invalid_planner_output_can_exhaust_budget() -> None:
    planner = make_planner(
        PricedResponse("not json", 5000, 5000),
        PricedResponse(FINISH_JSON, 10, 10),
    )

    result = make_loop(planner, budget=Budget(max_tokens=8000)).run()

    assert result["status"] == "budget_exhausted"
    assert result["error_details"]["resources"] == ["tokens"]
    assert result["unrecorded_usage"]["tokens"] == 10000
    assert result["budget_usage"]["tokens_used"] == 0
    assert result["final_answer"] is None


def test_wall_clock_duration_exhausts_budget() -> None:
    clock = {"now": 0.0}

    def advance() -> None:
        clock["now"] += 11

    ledger = BudgetLedger(Budget(max_duration_seconds=10), clock=lambda: clock["now"])
    dm = ScriptedDecisionMaker([Decision.call("search", {"q": "slow"})], on_decide=advance)

    result = make_loop(dm, ledger=ledger).run()

    assert result["status"] == "budget_exhausted"
    assert result["error_details"]["resources"] == ["duration"]
    assert step_types(result) == ["tool", "budget_exceeded"]


def test_rate_limited_tool_is_escalated_to_approval() -> None:
    broker = ApprovalBroker(notifier=None)
    dm = ScriptedDecisionMaker(
        [
            Decision.call("search", {"q": "1"}),
            Decision.call("search", {"q": "2"}),
            Decision.finish("done"),
        ]
    )
    policy = {"search": {"decision": "autonomous", "rate_limit": {"max_calls": 1, "per_seconds": 3600}}}
    when_pending(broker, lambda req: broker.approve(req.id, resolved_by="alice"))

    result = make_loop(dm, policy=policy, broker=broker).run()

    assert step_types(result) == ["tool", "tool", "finish"]
    assert event_names(result).count("agent.approval.requested") == 1


def test_cancel_while_awaiting_approval_rejects_task() -> None:
    tools = CountingTools()
    broker = ApprovalBroker(notifier=None)
    dm = ScriptedDecisionMaker([Decision.call("send_email", {"to": "a"})])
    loop = make_loop(dm, tools=tools, broker=broker, config=LoopConfig(approval_timeout=5))
    when_pending(broker, lambda req: loop.cancel())

    result = loop.run()

    assert result["status"] == "rejected"
    assert result["error_code"] == "cancelled"
    assert "send_email" not in tools.calls
    assert broker.pending() == []


def test_cancel_racing_approval_request_denies_without_waiting() -> None:
    class CancelOnRequestBroker(ApprovalBroker):
        def __init__(self, **kwargs) -> None:
            super().__init__(**kwargs)
            self.loop: ExecutionLoop | None = None
            self.issued: List[ApprovalRequest] = []

        def request(self, task_id, tool_call, timeout):
            self.loop.cancel()
            request = super().request(task_id, tool_call, timeout)
            self.issued.append(request)
            return request

    tools = CountingTools()
    broker = CancelOnRequestBroker(notifier=None)
    dm = ScriptedDecisionMaker([Decision.call("send_email", {"to": "a"})])
    loop = make_loop(dm, tools=tools, broker=broker, config=LoopConfig(approval_timeout=5))
    broker.loop = loop

    started = time.monotonic()
    result = loop.run()

    assert time.monotonic() - started < 2
    assert result["status"] == "rejected"
    assert result["error_code"] == "cancelled"
    assert "send_email" not in tools.calls
    request = broker.get(broker.issued[0].id)
    assert request.status is ApprovalStatus.DENIED
    assert request.resolved_by == "system:cancelled"


def test_cancel_before_run_never_consults_decision_maker() -> None:
    dm = ScriptedDecisionMaker([])
    loop = make_loop(dm)
    loop.cancel()
    result = loop.run()
    assert result["status"] == "rejected"
    assert dm.calls == 0
    assert dm.seen == []


def test_run_can_only_be_called_once() -> None:
    loop = make_loop(ScriptedDecisionMaker([Decision.finish("done")]))
    loop.run()
    with pytest.raises(RuntimeError):
        loop.run()


def test_unexpected_exception_becomes_internal_error() -> None:
    class ExplodingGate(PermissionGate):
        def classify(self, tool_call, policy=None):
            raise RuntimeError("boom")

    loop = ExecutionLoop(
        Task(goal="g"),
        decision_maker=ScriptedDecisionMaker([Decision.call("search", {"q": "x"})]),
        tools=CountingTools().registry,
        gate=ExplodingGate(),
        broker=ApprovalBroker(notifier=None),
    )
    result = loop.run()
    assert result["status"] == "error"
    assert result["error_code"] == "internal_error"
    assert result["error_message"] == "RuntimeError: boom"


def test_decision_without_tool_call_becomes_internal_error() -> None:
    hollow = Decision.call("search", {"q": "x"})
    object.__setattr__(hollow, "tool_call", None)
    tools = CountingTools()

    result = make_loop(ScriptedDecisionMaker([hollow]), tools=tools).run()

    assert result["status"] == "error"
    assert result["error_code"] == "internal_error"
    assert result["error_message"] == "DecisionError: Non-final decision carries no tool call."
    assert tools.calls == {}


def test_checkpoints_saved_on_interval_and_resume_continues() -> None:
    store = CheckpointStore()
    task = Task(goal="resumable", id="task-resume")
    first = ScriptedDecisionMaker(
        [
            Decision.call("search", {"q": "1"}),
            Decision.call("search", {"q": "2"}),
            Decision.call("search", {"q": "3"}),
            Decision.finish("done"),
        ]
    )

    result = make_loop(
        first, task=task, checkpoints=store, config=LoopConfig(checkpoint_interval=2)
    ).run()

    assert len(result["checkpoints"]) == 1
    checkpoint = store.latest(task.id)
    assert checkpoint.step_count == 2
    assert len(checkpoint.history) == 2

    second = ScriptedDecisionMaker([Decision.finish("resumed")])
    resumed = make_loop(second, task=task, resume_from=checkpoint).run()

    assert resumed["status"] == "completed"
    assert step_types(resumed) == ["tool", "tool", "finish"]
    assert resumed["budget_usage"]["steps_taken"] == 2
    assert second.seen[0] == ["tool", "tool"]
    started = [e for e in resumed["logs"] if e["event"] == "agent.task.started"][0]
    assert started["resumed_steps"] == 2


def test_resume_from_other_tasks_checkpoint_rejected() -> None:
    store = CheckpointStore()
    task = Task(goal="a", id="task-a")
    make_loop(
        ScriptedDecisionMaker([Decision.call("search", {"q": "1"}), Decision.finish("ok")]),
        task=task,
        checkpoints=store,
        config=LoopConfig(checkpoint_interval=1),
    ).run()

    with pytest.raises(ValueError):
        make_loop(
            ScriptedDecisionMaker([]),
            task=Task(goal="b", id="task-b"),
            resume_from=store.latest("task-a"),
        )


def test_events_are_streamed_with_task_identity() -> None:
    events = []
    dm = ScriptedDecisionMaker([Decision.call("search", {"q": "x"}), Decision.finish("done")])
    with stream_to(lambda name, data: events.append((name, data))):
        result = make_loop(dm).run()

    names = [name for name, _ in events]
    assert names[0] == "agent.task.started"
    assert names[-1] == "agent.task.completed"
    assert "agent.step.completed" in names
    assert all(data["task_id"] == result["task_id"] for _, data in events)


def test_execute_task_builds_task_from_string() -> None:
    tools = CountingTools()
    dm = ScriptedDecisionMaker([Decision.call("search", {"q": "x"}), Decision.finish("done")])

    result = execute_task(
        "look something up",
        tools=tools.registry,
        decision_maker=dm,
        actor="Carol",
        policy=PermissionPolicy.from_dict({"search": "autonomous"}),
        broker=ApprovalBroker(notifier=None),
        budget=Budget(max_steps=3),
        config=LoopConfig(),
    )

    assert result["status"] == "completed"
    assert result["goal"] == "look something up"
    assert result["actor"] == "carol"
    assert result["budget_usage"]["max_steps"] == 3
