"""
Shared fixtures for the circuit engine tests.
"""
import pytest
from types import SimpleNamespace

from services.circuit import (
    WorkflowEngine,
    InMemoryDocumentStore,
    StaticUserDirectory,
    SingleApprover,
)


@pytest.fixture
def engine():
    """Engine over in-memory collaborators with expiry and initiator auto-approval off."""
    return WorkflowEngine(
        document_store=InMemoryDocumentStore(),
        user_directory=StaticUserDirectory(),
        approval_ttl_hours=0,
        auto_approve_initiator=False,
    )


async def build_review_circuit(engine, rule=None, requires_approval=True, activate=True, allow_backtrack=True):
    """
    Draft (initial) -> Review -> Approved (final).

    Review -> Approved is gated by `rule` (default: single approver "42").
    """
    registry = engine.registry
    circuit = await registry.create_circuit("Invoice review", allow_backtrack=allow_backtrack)
    draft = await registry.add_status(circuit.id, "Draft", is_initial=True)
    review = await registry.add_status(circuit.id, "Review", is_required=True)
    approved = await registry.add_status(circuit.id, "Approved", is_required=True, is_final=True)
    to_review = await registry.create_step(circuit.id, draft.id, review.id)
    to_approved = await registry.create_step(
        circuit.id, review.id, approved.id,
        requires_approval=requires_approval,
        rule=rule if rule is not None else SingleApprover("42"),
    )
    if activate:
        await registry.activate_circuit(circuit.id)
    return SimpleNamespace(
        circuit=await registry.get_circuit(circuit.id),
        draft=draft,
        review=review,
        approved=approved,
        to_review=to_review,
        to_approved=to_approved,
    )


@pytest.fixture
def make_review_circuit(engine):
    """Async factory for the three-status review circuit bound to the `engine` fixture."""
    async def _make(**kwargs):
        return await build_review_circuit(engine, **kwargs)
    return _make
