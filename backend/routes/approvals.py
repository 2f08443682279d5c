"""
Circuit Hub - Approvals Router

Approval responses, pending queues and explicit expiry.
"""

from fastapi import APIRouter
from typing import Optional
from pydantic import BaseModel

router = APIRouter(prefix="/approvals", tags=["approvals"])

# Workflow engine - set by main app
workflow_engine = None

def set_dependencies(engine):
    global workflow_engine
    workflow_engine = engine


# ==================== MODELS ====================

class ApprovalResponseRequest(BaseModel):
    approver_id: str
    decision: str
    comment: Optional[str] = None


# ==================== ENDPOINTS ====================

@router.post("/expire")
async def expire_stale_approvals():
    """Expire open requests older than APPROVAL_REQUEST_TTL_HOURS."""
    expired = await workflow_engine.expire_stale_approvals()
    return {"expired": expired, "count": len(expired)}


@router.get("/pending/{approver_id}")
async def get_pending_approvals(approver_id: str):
    """Open requests the approver can answer now."""
    requests = await workflow_engine.pending_approvals_for(approver_id)
    return {"approver_id": approver_id, "approvals": [r.to_dict() for r in requests], "total": len(requests)}


@router.get("/history/{doc_id}")
async def get_approval_history(doc_id: str):
    requests = await workflow_engine.approval_history(doc_id)
    return {"document_id": doc_id, "approvals": [r.to_dict() for r in requests]}


@router.post("/{approval_id}/respond")
async def respond_to_approval(approval_id: str, body: ApprovalResponseRequest):
    result = await workflow_engine.submit_response(approval_id, body.approver_id, body.decision, body.comment)
    return result.to_dict()


@router.get("/{approval_id}")
async def get_approval(approval_id: str):
    request = await workflow_engine.get_approval(approval_id)
    return request.to_dict()
