"""Concurrent task runner: many independent loops over shared collaborators."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, List, Optional

from shared.run_context import RUN_LOG_ID

from .approvals import ApprovalBroker
from .budget import Budget
from .checkpoints import Checkpoint, CheckpointStore
from .executor import ToolRegistry
from .llm import DecisionMaker
from .permissions import PermissionGate
from .run_loop import ExecutionLoop, LoopConfig
from .tool_cache import ResultCache
from .types import Task, TaskResult

logger = logging.getLogger(__name__)


class TaskRunner:
    """Runs tasks on a thread pool.

    Every task gets its own :class:`ExecutionLoop` (own ledger, own history).
    The cache, gate, broker and checkpoint store are shared by all of them.
    """

    def __init__(
        self,
        *,
        tools: ToolRegistry,
        gate: PermissionGate,
        broker: ApprovalBroker,
        cache: ResultCache | None = None,
        checkpoints: CheckpointStore | None = None,
        budget: Budget | None = None,
        config: LoopConfig | None = None,
        max_workers: int = 8,
    ) -> None:
        self.tools = tools
        self.gate = gate
        self.broker = broker
        self.cache = cache
        self.checkpoints = checkpoints
        self.budget = budget or Budget()
        self.config = config or LoopConfig()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="agent-task")
        self._loops: Dict[str, ExecutionLoop] = {}
        self._lock = threading.Lock()

    def submit(
        self,
        task: Task,
        decision_maker: DecisionMaker,
        *,
        budget: Budget | None = None,
        resume_from: Checkpoint | None = None,
    ) -> "Future[TaskResult]":
        loop = ExecutionLoop(
            task,
            decision_maker=decision_maker,
            tools=self.tools,
            gate=self.gate,
            broker=self.broker,
            budget=budget or self.budget,
            cache=self.cache,
            checkpoints=self.checkpoints,
            config=self.config,
            resume_from=resume_from,
        )
        with self._lock:
            if task.id in self._loops:
                raise ValueError(f"Task {task.id} is already running.")
            self._loops[task.id] = loop
        logger.info("Submitting task %s", task.id)
        return self._pool.submit(self._run, loop)

    def _run(self, loop: ExecutionLoop) -> TaskResult:
        token = RUN_LOG_ID.set(loop.task.id)
        try:
            return loop.run()
        finally:
            RUN_LOG_ID.reset(token)
            with self._lock:
                self._loops.pop(loop.task.id, None)

    def cancel(self, task_id: str) -> bool:
        """Cancel a running task; False if it is unknown or already finished."""
        with self._lock:
            loop = self._loops.get(task_id)
        if loop is None:
            return False
        loop.cancel()
        return True

    def running(self) -> List[str]:
        with self._lock:
            return list(self._loops)

    def get_loop(self, task_id: str) -> Optional[ExecutionLoop]:
        with self._lock:
            return self._loops.get(task_id)

    def shutdown(self, *, cancel_running: bool = False, wait: bool = True) -> None:
        if cancel_running:
            for task_id in self.running():
                self.cancel(task_id)
        self._pool.shutdown(wait=wait)

    def __enter__(self) -> "TaskRunner":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown(cancel_running=True)


__all__ = ["TaskRunner"]
