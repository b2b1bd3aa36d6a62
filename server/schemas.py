# server/schemas.py

from pydantic import BaseModel
from typing import Any, Dict, Optional


class ToolCallOut(BaseModel):
    tool: str
    params: Dict[str, Any]
    justification: str = ""


class ApprovalOut(BaseModel):
    """Approval request as shown to human approvers."""
    id: str
    task_id: str
    tool_call: ToolCallOut
    status: str
    created_at: float
    deadline: float
    resolved_by: Optional[str] = None
    resolved_at: Optional[float] = None


class ResolveApprovalRequest(BaseModel):
    resolved_by: Optional[str] = None


class ResolveApprovalResponse(BaseModel):
    id: str
    status: str
    # False when an earlier resolution (or the deadline) had already decided the request.
    applied: bool
