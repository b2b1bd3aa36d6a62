"""Approval broker: routes high-risk tool calls to a human and waits for the answer.

Each request owns a ``concurrent.futures.Future`` that carries its final
status. Waiting on it blocks only the thread of the task that asked, so
other tasks keep running while one awaits approval.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from shared.streaming import emit_event

from .types import ToolCall

logger = logging.getLogger(__name__)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"

    @property
    def is_final(self) -> bool:
        return self is not ApprovalStatus.PENDING


@dataclass
class ApprovalRequest:
    """A pending (or resolved) request for a human decision on one tool call."""

    id: str
    task_id: str
    tool_call: ToolCall
    created_at: float
    deadline: float
    status: ApprovalStatus = ApprovalStatus.PENDING
    resolved_by: Optional[str] = None
    resolved_at: Optional[float] = None
    _future: Future = field(default_factory=Future, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "tool_call": self.tool_call.to_dict(),
            "created_at": self.created_at,
            "deadline": self.deadline,
            "status": self.status.value,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at,
        }


Notifier = Callable[[ApprovalRequest], None]


def stream_notifier(request: ApprovalRequest) -> None:
    """Publish ``approval.requested`` on the event stream."""
    emit_event("approval.requested", request.to_dict())


class ApprovalBroker:
    """Shared across tasks; all status transitions happen under one lock."""

    def __init__(
        self,
        *,
        notifier: Optional[Notifier] = stream_notifier,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._notifier = notifier
        self._clock = clock
        self._requests: Dict[str, ApprovalRequest] = {}
        self._lock = threading.Lock()

    def request(self, task_id: str, tool_call: ToolCall, timeout: float) -> ApprovalRequest:
        """Register a pending request and notify the approver (fire-and-forget)."""
        if timeout < 0:
            raise ValueError("approval timeout must be non-negative")
        now = self._clock()
        approval = ApprovalRequest(
            id=uuid.uuid4().hex,
            task_id=task_id,
            tool_call=tool_call,
            created_at=now,
            deadline=now + timeout,
        )
        with self._lock:
            self._requests[approval.id] = approval
        logger.info(
            "Approval %s requested for task=%s tool=%s (timeout=%ss)",
            approval.id,
            task_id,
            tool_call.tool,
            timeout,
        )
        if self._notifier is not None:
            try:
                self._notifier(approval)
            except Exception:
                logger.exception("Approval notifier failed for request %s", approval.id)
        return approval

    def await_resolution(self, request_id: str) -> ApprovalStatus:
        """Block until the request is resolved or its deadline passes.

        A missed deadline resolves the request as ``timed_out``.
        """
        approval = self._require(request_id)
        remaining = approval.deadline - self._clock()
        if remaining > 0:
            try:
                return approval._future.result(timeout=remaining)
            except FutureTimeout:
                pass
        return self._finalize(approval, ApprovalStatus.TIMED_OUT, resolved_by="system:timeout")

    def resolve(
        self,
        request_id: str,
        approved: bool,
        resolved_by: Optional[str] = None,
    ) -> ApprovalStatus:
        """Record a human decision; the first resolution wins.

        Decisions arriving after the deadline resolve the request as
        ``timed_out`` regardless of ``approved``.
        """
        approval = self._require(request_id)
        if self._clock() >= approval.deadline:
            return self._finalize(approval, ApprovalStatus.TIMED_OUT, resolved_by="system:timeout")
        status = ApprovalStatus.APPROVED if approved else ApprovalStatus.DENIED
        return self._finalize(approval, status, resolved_by=resolved_by)

    def approve(self, request_id: str, resolved_by: Optional[str] = None) -> ApprovalStatus:
        return self.resolve(request_id, True, resolved_by)

    def deny(self, request_id: str, resolved_by: Optional[str] = None) -> ApprovalStatus:
        return self.resolve(request_id, False, resolved_by)

    def get(self, request_id: str) -> Optional[ApprovalRequest]:
        return self._requests.get(request_id)

    def pending(self, task_id: Optional[str] = None) -> List[ApprovalRequest]:
        """Unresolved requests, oldest first; overdue ones are timed out on the way."""
        self.expire_overdue()
        with self._lock:
            items = [
                req
                for req in self._requests.values()
                if req.status is ApprovalStatus.PENDING
                and (task_id is None or req.task_id == task_id)
            ]
        return sorted(items, key=lambda req: req.created_at)

    def expire_overdue(self) -> int:
        now = self._clock()
        with self._lock:
            overdue = [
                req
                for req in self._requests.values()
                if req.status is ApprovalStatus.PENDING and now >= req.deadline
            ]
        for req in overdue:
            self._finalize(req, ApprovalStatus.TIMED_OUT, resolved_by="system:timeout")
        return len(overdue)

    def cancel_task(self, task_id: str) -> int:
        """Deny every pending request belonging to ``task_id``."""
        with self._lock:
            targets = [
                req
                for req in self._requests.values()
                if req.task_id == task_id and req.status is ApprovalStatus.PENDING
            ]
        for req in targets:
            self._finalize(req, ApprovalStatus.DENIED, resolved_by="system:cancelled")
        return len(targets)

    def _require(self, request_id: str) -> ApprovalRequest:
        approval = self._requests.get(request_id)
        if approval is None:
            raise KeyError(f"Unknown approval request: {request_id}")
        return approval

    def _finalize(
        self,
        approval: ApprovalRequest,
        status: ApprovalStatus,
        *,
        resolved_by: Optional[str],
    ) -> ApprovalStatus:
        with self._lock:
            if approval.status.is_final:
                return approval.status
            approval.status = status
            approval.resolved_by = resolved_by
            approval.resolved_at = self._clock()
            approval._future.set_result(status)
        logger.info(
            "Approval %s resolved as %s by %s",
            approval.id,
            status.value,
            resolved_by or "unknown",
        )
        emit_event("approval.resolved", approval.to_dict())
        return status


_DEFAULT_BROKER: Optional[ApprovalBroker] = None
_DEFAULT_BROKER_LOCK = threading.Lock()


def get_default_broker() -> ApprovalBroker:
    """Process-wide broker used by the HTTP surface when none is injected."""
    global _DEFAULT_BROKER
    with _DEFAULT_BROKER_LOCK:
        if _DEFAULT_BROKER is None:
            _DEFAULT_BROKER = ApprovalBroker()
        return _DEFAULT_BROKER


def set_default_broker(broker: Optional[ApprovalBroker]) -> None:
    global _DEFAULT_BROKER
    with _DEFAULT_BROKER_LOCK:
        _DEFAULT_BROKER = broker


__all__ = [
    "ApprovalBroker",
    "ApprovalRequest",
    "ApprovalStatus",
    "get_default_broker",
    "set_default_broker",
    "stream_notifier",
]
