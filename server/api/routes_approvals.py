from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status

from bounded_agent.agent.approvals import (
    ApprovalBroker,
    ApprovalRequest,
    ApprovalStatus,
    get_default_broker,
)
from server.schemas import ApprovalOut, ResolveApprovalRequest, ResolveApprovalResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["approvals"])


def get_broker() -> ApprovalBroker:
    return get_default_broker()


def _to_out(request: ApprovalRequest) -> ApprovalOut:
    return ApprovalOut.model_validate(request.to_dict())


def _require(broker: ApprovalBroker, request_id: str) -> ApprovalRequest:
    request = broker.get(request_id)
    if request is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="approval_not_found")
    return request


@router.get("/approvals", response_model=List[ApprovalOut])
def list_pending_approvals(
    task_id: Optional[str] = None,
    broker: ApprovalBroker = Depends(get_broker),
) -> List[ApprovalOut]:
    return [_to_out(req) for req in broker.pending(task_id)]


@router.get("/approvals/{request_id}", response_model=ApprovalOut)
def get_approval(
    request_id: str,
    broker: ApprovalBroker = Depends(get_broker),
) -> ApprovalOut:
    return _to_out(_require(broker, request_id))


def _resolve(
    broker: ApprovalBroker,
    request_id: str,
    approved: bool,
    payload: ResolveApprovalRequest,
) -> ResolveApprovalResponse:
    request = _require(broker, request_id)
    was_pending = request.status is ApprovalStatus.PENDING
    outcome = broker.resolve(request_id, approved, resolved_by=payload.resolved_by)
    expected = ApprovalStatus.APPROVED if approved else ApprovalStatus.DENIED
    applied = was_pending and outcome is expected
    logger.info(
        "Approval %s %s via API by %s (applied=%s, outcome=%s)",
        request_id,
        "approve" if approved else "deny",
        payload.resolved_by or "anonymous",
        applied,
        outcome.value,
    )
    return ResolveApprovalResponse(id=request_id, status=outcome.value, applied=applied)


@router.post("/approvals/{request_id}/approve", response_model=ResolveApprovalResponse)
def approve_request(
    request_id: str,
    payload: Optional[ResolveApprovalRequest] = Body(default=None),
    broker: ApprovalBroker = Depends(get_broker),
) -> ResolveApprovalResponse:
    return _resolve(broker, request_id, True, payload or ResolveApprovalRequest())


@router.post("/approvals/{request_id}/deny", response_model=ResolveApprovalResponse)
def deny_request(
    request_id: str,
    payload: Optional[ResolveApprovalRequest] = Body(default=None),
    broker: ApprovalBroker = Depends(get_broker),
) -> ResolveApprovalResponse:
    return _resolve(broker, request_id, False, payload or ResolveApprovalRequest())


__all__ = ["get_broker", "router"]
