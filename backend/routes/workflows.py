"""
Circuit Hub - Workflows Router

Document registration, circuit transitions, workflow status and history.
"""

from fastapi import APIRouter
from typing import Optional
from pydantic import BaseModel

from services.circuit.config import SYSTEM_ACTOR

router = APIRouter(prefix="/workflows", tags=["workflows"])

# Workflow engine - set by main app
workflow_engine = None

def set_dependencies(engine):
    global workflow_engine
    workflow_engine = engine


# ==================== MODELS ====================

class AssignCircuitRequest(BaseModel):
    circuit_id: str
    actor_id: str = SYSTEM_ACTOR
    comment: Optional[str] = None


class RegisterDocumentRequest(BaseModel):
    document_id: Optional[str] = None


class MoveToStatusRequest(BaseModel):
    target_status_id: str
    comment: Optional[str] = None
    actor_id: str = SYSTEM_ACTOR


class WorkflowAction(BaseModel):
    comment: Optional[str] = None
    actor_id: str = SYSTEM_ACTOR


# ==================== DOCUMENTS ====================

@router.post("/documents", status_code=201)
async def register_document(body: RegisterDocumentRequest):
    """Create an idle document; an id is generated when none is given."""
    document = await workflow_engine.register_document(body.document_id)
    return document.to_dict()


@router.get("/pending-documents")
async def get_pending_documents():
    """Documents inside a circuit that have not reached a final status."""
    documents = await workflow_engine.pending_documents()
    return {"documents": documents, "total": len(documents)}


# ==================== TRANSITIONS ====================

@router.post("/{doc_id}/assign-circuit")
async def assign_circuit(doc_id: str, body: AssignCircuitRequest):
    """Assign an idle document to an active circuit."""
    document = await workflow_engine.assign_circuit(doc_id, body.circuit_id, body.actor_id, body.comment)
    return {"success": True, "document": document.to_dict()}


@router.get("/{doc_id}/available-transitions")
async def get_available_transitions(doc_id: str):
    transitions = await workflow_engine.available_transitions(doc_id)
    return {"document_id": doc_id, "transitions": [s.to_dict() for s in transitions]}


@router.post("/{doc_id}/move-to-status")
async def move_to_status(doc_id: str, body: MoveToStatusRequest):
    """
    Move a document to the target status.

    Gated steps return requires_approval=true with the approval_id to respond to.
    """
    result = await workflow_engine.move_to_status(doc_id, body.target_status_id, body.comment, body.actor_id)
    return result.to_dict()


@router.post("/{doc_id}/move-to-next")
async def move_to_next_step(doc_id: str, body: WorkflowAction):
    result = await workflow_engine.move_to_next_step(doc_id, body.comment, body.actor_id)
    return result.to_dict()


@router.post("/{doc_id}/return-to-previous")
async def return_to_previous_step(doc_id: str, body: WorkflowAction):
    document = await workflow_engine.return_to_previous_step(doc_id, body.comment, body.actor_id)
    return {"success": True, "document": document.to_dict()}


@router.post("/{doc_id}/return-to-status")
async def return_to_status(doc_id: str, body: MoveToStatusRequest):
    """Return to an earlier status on the document's completed path."""
    document = await workflow_engine.return_to_status(doc_id, body.target_status_id, body.comment, body.actor_id)
    return {"success": True, "document": document.to_dict()}


@router.post("/{doc_id}/reinitialize")
async def reinitialize_workflow(doc_id: str, body: WorkflowAction):
    document = await workflow_engine.reinitialize_workflow(doc_id, body.comment, body.actor_id)
    return {"success": True, "document": document.to_dict()}


@router.post("/{doc_id}/withdraw-approval")
async def withdraw_approval(doc_id: str, body: WorkflowAction):
    request = await workflow_engine.withdraw_approval(doc_id, body.actor_id, body.comment)
    return {"success": True, "approval": request.to_dict()}


# ==================== READS ====================

@router.get("/{doc_id}/status")
async def get_workflow_status(doc_id: str):
    return await workflow_engine.workflow_status(doc_id)


@router.get("/{doc_id}/history")
async def get_workflow_history(doc_id: str):
    """Get workflow history for a document."""
    entries = await workflow_engine.circuit_history(doc_id)
    return {
        "document_id": doc_id,
        "history": [e.to_dict() for e in entries]
    }
