"""
Circuit Hub - Circuits Router

Circuit definitions: statuses, steps, activation and validation.
Structural edits are rejected while a circuit is active.
"""

from fastapi import APIRouter, Query
from typing import Optional
from pydantic import BaseModel

from services.circuit.models import rule_from_dict

router = APIRouter(prefix="/circuits", tags=["circuits"])

# Circuit registry - set by main app
registry = None

def set_dependencies(circuit_registry):
    global registry
    registry = circuit_registry


# ==================== MODELS ====================

class CircuitCreate(BaseModel):
    title: str
    description: str = ""
    allow_backtrack: bool = True


class CircuitUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    allow_backtrack: Optional[bool] = None


class StatusCreate(BaseModel):
    title: str
    is_required: bool = False
    is_initial: bool = False
    is_final: bool = False


class StatusUpdate(BaseModel):
    title: Optional[str] = None
    is_required: Optional[bool] = None
    is_initial: Optional[bool] = None
    is_final: Optional[bool] = None


class StepCreate(BaseModel):
    current_status_id: str
    next_status_id: str
    title: str = ""
    requires_approval: bool = False
    approval_rule: Optional[dict] = None


class StepUpdate(BaseModel):
    current_status_id: Optional[str] = None
    next_status_id: Optional[str] = None
    title: Optional[str] = None
    requires_approval: Optional[bool] = None
    approval_rule: Optional[dict] = None


# ==================== CIRCUITS ====================

@router.post("", status_code=201)
async def create_circuit(body: CircuitCreate):
    circuit = await registry.create_circuit(body.title, body.description, body.allow_backtrack)
    return circuit.to_dict()


@router.get("")
async def list_circuits(active_only: bool = Query(False)):
    circuits = await registry.list_circuits(active_only=active_only)
    return {"circuits": [c.to_dict() for c in circuits], "total": len(circuits)}


@router.get("/{circuit_id}")
async def get_circuit(circuit_id: str):
    circuit = await registry.get_circuit(circuit_id)
    return circuit.to_dict()


@router.put("/{circuit_id}")
async def update_circuit(circuit_id: str, body: CircuitUpdate):
    circuit = await registry.update_circuit(circuit_id, body.title, body.description, body.allow_backtrack)
    return circuit.to_dict()


@router.delete("/{circuit_id}")
async def delete_circuit(circuit_id: str):
    await registry.delete_circuit(circuit_id)
    return {"success": True, "circuit_id": circuit_id}


@router.post("/{circuit_id}/activate")
async def activate_circuit(circuit_id: str):
    circuit = await registry.activate_circuit(circuit_id)
    return circuit.to_dict()


@router.post("/{circuit_id}/deactivate")
async def deactivate_circuit(circuit_id: str):
    circuit = await registry.deactivate_circuit(circuit_id)
    return circuit.to_dict()


@router.get("/{circuit_id}/has-documents")
async def circuit_has_documents(circuit_id: str):
    return await registry.circuit_has_documents(circuit_id)


@router.get("/{circuit_id}/validate")
async def validate_circuit(circuit_id: str):
    return await registry.validate_circuit(circuit_id)


# ==================== STATUSES ====================

@router.post("/{circuit_id}/statuses", status_code=201)
async def add_status(circuit_id: str, body: StatusCreate):
    status = await registry.add_status(circuit_id, body.title, body.is_required, body.is_initial, body.is_final)
    return status.to_dict()


@router.put("/{circuit_id}/statuses/{status_id}")
async def update_status(circuit_id: str, status_id: str, body: StatusUpdate):
    status = await registry.update_status(
        circuit_id, status_id,
        title=body.title,
        is_required=body.is_required,
        is_initial=body.is_initial,
        is_final=body.is_final
    )
    return status.to_dict()


@router.delete("/{circuit_id}/statuses/{status_id}")
async def remove_status(circuit_id: str, status_id: str):
    await registry.remove_status(circuit_id, status_id)
    return {"success": True, "status_id": status_id}


# ==================== STEPS ====================

@router.post("/{circuit_id}/steps", status_code=201)
async def create_step(circuit_id: str, body: StepCreate):
    step = await registry.create_step(
        circuit_id,
        body.current_status_id,
        body.next_status_id,
        requires_approval=body.requires_approval,
        rule=rule_from_dict(body.approval_rule),
        title=body.title
    )
    return step.to_dict()


@router.put("/{circuit_id}/steps/{step_id}")
async def update_step(circuit_id: str, step_id: str, body: StepUpdate):
    changes = {}
    if "approval_rule" in body.model_fields_set:
        changes["rule"] = rule_from_dict(body.approval_rule)
    step = await registry.update_step(
        circuit_id, step_id,
        current_status_id=body.current_status_id,
        next_status_id=body.next_status_id,
        requires_approval=body.requires_approval,
        title=body.title,
        **changes
    )
    return step.to_dict()


@router.delete("/{circuit_id}/steps/{step_id}")
async def remove_step(circuit_id: str, step_id: str):
    await registry.remove_step(circuit_id, step_id)
    return {"success": True, "step_id": step_id}
