"""
API tests for the circuit, workflow and approval routers.
Runs the routers on a fresh FastAPI app with in-memory collaborators.
"""
import pytest
from fastapi import APIRouter, FastAPI
from fastapi.testclient import TestClient

from routes import (
    circuits_router, set_circuits_deps,
    workflows_router, set_workflows_deps,
    approvals_router, set_approvals_deps,
    install_error_handlers,
)


@pytest.fixture
def app(engine):
    set_circuits_deps(engine.registry)
    set_workflows_deps(engine)
    set_approvals_deps(engine)

    app = FastAPI()
    api_router = APIRouter(prefix="/api")
    api_router.include_router(circuits_router)
    api_router.include_router(workflows_router)
    api_router.include_router(approvals_router)
    app.include_router(api_router)
    install_error_handlers(app)
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def _build_circuit(client, approval_rule):
    circuit = client.post("/api/circuits", json={"title": "Invoice review"}).json()
    cid = circuit["id"]
    draft = client.post(f"/api/circuits/{cid}/statuses", json={"title": "Draft", "is_initial": True}).json()
    review = client.post(f"/api/circuits/{cid}/statuses", json={"title": "Review", "is_required": True}).json()
    approved = client.post(
        f"/api/circuits/{cid}/statuses",
        json={"title": "Approved", "is_required": True, "is_final": True}
    ).json()
    client.post(f"/api/circuits/{cid}/steps", json={
        "current_status_id": draft["id"],
        "next_status_id": review["id"],
    })
    client.post(f"/api/circuits/{cid}/steps", json={
        "current_status_id": review["id"],
        "next_status_id": approved["id"],
        "requires_approval": True,
        "approval_rule": approval_rule,
    })
    resp = client.post(f"/api/circuits/{cid}/activate")
    assert resp.status_code == 200
    return cid, draft["id"], review["id"], approved["id"]


class TestCircuitRoutes:
    """Circuit definition endpoints."""

    def test_create_and_get_circuit(self, client):
        resp = client.post("/api/circuits", json={"title": "Contracts", "description": "Legal"})
        assert resp.status_code == 201
        circuit_id = resp.json()["id"]

        resp = client.get(f"/api/circuits/{circuit_id}")
        assert resp.status_code == 200
        assert resp.json()["title"] == "Contracts"
        assert resp.json()["is_active"] is False

    def test_unknown_circuit_is_404(self, client):
        resp = client.get("/api/circuits/nope")
        assert resp.status_code == 404
        data = resp.json()
        assert data["error"] == "CircuitNotFoundError"
        assert data["category"] == "not_found"
        assert data["context"]["circuit_id"] == "nope"

    def test_activate_without_steps_is_409(self, client):
        circuit_id = client.post("/api/circuits", json={"title": "Empty"}).json()["id"]

        resp = client.post(f"/api/circuits/{circuit_id}/activate")

        assert resp.status_code == 409
        assert resp.json()["error"] == "NoStepsError"

    def test_invalid_rule_is_400(self, client):
        other = client.post("/api/circuits", json={"title": "Other"}).json()["id"]
        a = client.post(f"/api/circuits/{other}/statuses", json={"title": "A", "is_initial": True}).json()["id"]
        b = client.post(f"/api/circuits/{other}/statuses", json={"title": "B"}).json()["id"]

        resp = client.post(f"/api/circuits/{other}/steps", json={
            "current_status_id": a,
            "next_status_id": b,
            "requires_approval": True,
            "approval_rule": {"type": "quorum"},
        })

        assert resp.status_code == 400

    def test_validate_circuit(self, client):
        cid, *_ = _build_circuit(client, {"type": "single", "approver_id": "42"})

        resp = client.get(f"/api/circuits/{cid}/validate")

        assert resp.status_code == 200
        assert resp.json()["is_valid"] is True

    def test_list_active_circuits(self, client):
        cid, *_ = _build_circuit(client, {"type": "single", "approver_id": "42"})
        client.post("/api/circuits", json={"title": "Draft only"})

        data = client.get("/api/circuits", params={"active_only": True}).json()

        assert data["total"] == 1
        assert data["circuits"][0]["id"] == cid


class TestDocumentRoutes:
    """Registering documents and listing the ones in flight."""

    def test_register_document(self, client):
        resp = client.post("/api/workflows/documents", json={"document_id": "7"})

        assert resp.status_code == 201
        assert resp.json()["id"] == "7"
        assert resp.json()["circuit_id"] is None
        assert client.get("/api/workflows/7/status").json()["current_status_id"] is None

    def test_register_generates_id(self, client):
        resp = client.post("/api/workflows/documents", json={})

        assert resp.status_code == 201
        document_id = resp.json()["id"]
        assert document_id
        assert client.get(f"/api/workflows/{document_id}/status").status_code == 200

    def test_register_twice_is_409(self, client):
        client.post("/api/workflows/documents", json={"document_id": "7"})

        resp = client.post("/api/workflows/documents", json={"document_id": "7"})

        assert resp.status_code == 409
        assert resp.json()["error"] == "DocumentExistsError"

    def test_pending_documents(self, client):
        client.post("/api/workflows/documents", json={"document_id": "7"})
        client.post("/api/workflows/documents", json={"document_id": "8"})
        cid, _, review_id, approved_id = _build_circuit(client, {"type": "single", "approver_id": "42"})
        client.post("/api/workflows/7/assign-circuit", json={"circuit_id": cid})
        client.post("/api/workflows/7/move-to-status", json={"target_status_id": review_id})
        approval_id = client.post(
            "/api/workflows/7/move-to-status", json={"target_status_id": approved_id}
        ).json()["approval_id"]

        data = client.get("/api/workflows/pending-documents").json()

        assert data["total"] == 1
        pending = data["documents"][0]
        assert pending["document_id"] == "7"
        assert pending["circuit_title"] == "Invoice review"
        assert pending["current_status_title"] == "Review"
        assert pending["days_in_current_status"] == 0
        assert pending["pending_approval_id"] == approval_id

    def test_circuit_has_documents(self, client):
        cid, *_ = _build_circuit(client, {"type": "single", "approver_id": "42"})
        assert client.get(f"/api/circuits/{cid}/has-documents").json()["has_documents"] is False

        client.post("/api/workflows/documents", json={"document_id": "7"})
        client.post("/api/workflows/7/assign-circuit", json={"circuit_id": cid})

        assert client.get(f"/api/circuits/{cid}/has-documents").json() == {
            "circuit_id": cid, "has_documents": True, "document_count": 1,
        }


class TestWorkflowRoutes:
    """Document transition endpoints."""

    def test_single_approver_flow(self, client):
        """Register, assign, move, gate, approve over HTTP."""
        assert client.post("/api/workflows/documents", json={"document_id": "7"}).status_code == 201
        cid, draft_id, review_id, approved_id = _build_circuit(
            client, {"type": "single", "approver_id": "42"}
        )

        resp = client.post("/api/workflows/7/assign-circuit", json={"circuit_id": cid})
        assert resp.status_code == 200
        assert resp.json()["document"]["current_status_id"] == draft_id

        resp = client.get("/api/workflows/7/available-transitions")
        assert [t["next_status_id"] for t in resp.json()["transitions"]] == [review_id]

        resp = client.post("/api/workflows/7/move-to-next", json={})
        assert resp.json() == {"requires_approval": False, "committed": True, "current_status_id": review_id}

        resp = client.post("/api/workflows/7/move-to-status", json={"target_status_id": approved_id})
        data = resp.json()
        assert data["requires_approval"] is True
        assert data["committed"] is False
        approval_id = data["approval_id"]

        resp = client.get("/api/approvals/pending/42")
        assert [a["id"] for a in resp.json()["approvals"]] == [approval_id]

        resp = client.post(f"/api/approvals/{approval_id}/respond", json={"approver_id": "42", "decision": "Approve"})
        assert resp.json() == {"resolved": True, "outcome": "Accepted"}

        status = client.get("/api/workflows/7/status").json()
        assert status["current_status_id"] == approved_id
        assert status["is_circuit_completed"] is True
        assert status["progress_percentage"] == 100

        history = client.get("/api/workflows/7/history").json()["history"]
        assert history[-1]["outcome"] == "Completed"
        assert history[-1]["approval_request_id"] == approval_id

    def test_move_while_pending_is_409(self, client, engine):
        engine.documents.add("7")
        cid, _, review_id, approved_id = _build_circuit(client, {"type": "single", "approver_id": "42"})
        client.post("/api/workflows/7/assign-circuit", json={"circuit_id": cid})
        client.post("/api/workflows/7/move-to-status", json={"target_status_id": review_id})
        client.post("/api/workflows/7/move-to-status", json={"target_status_id": approved_id})

        resp = client.post("/api/workflows/7/move-to-status", json={"target_status_id": approved_id})

        assert resp.status_code == 409
        assert resp.json()["error"] == "TransitionInProgressError"

    def test_no_such_transition_is_400(self, client, engine):
        engine.documents.add("7")
        cid, _, _, approved_id = _build_circuit(client, {"type": "single", "approver_id": "42"})
        client.post("/api/workflows/7/assign-circuit", json={"circuit_id": cid})

        resp = client.post("/api/workflows/7/move-to-status", json={"target_status_id": approved_id})

        assert resp.status_code == 400
        assert resp.json()["error"] == "NoSuchTransitionError"

    def test_unknown_document_is_404(self, client):
        resp = client.get("/api/workflows/nope/status")
        assert resp.status_code == 404

    def test_sequential_out_of_turn_is_409(self, client, engine):
        engine.documents.add("7")
        cid, _, review_id, approved_id = _build_circuit(
            client, {"type": "group", "rule_type": "SEQUENTIAL", "approver_ids": ["1", "2", "3"]}
        )
        client.post("/api/workflows/7/assign-circuit", json={"circuit_id": cid})
        client.post("/api/workflows/7/move-to-status", json={"target_status_id": review_id})
        approval_id = client.post(
            "/api/workflows/7/move-to-status", json={"target_status_id": approved_id}
        ).json()["approval_id"]

        resp = client.post(f"/api/approvals/{approval_id}/respond", json={"approver_id": "2", "decision": "Approve"})

        assert resp.status_code == 409
        assert resp.json()["context"]["expected_approver_id"] == "1"

    def test_withdraw_requires_authority(self, client, engine):
        engine.documents.add("7")
        cid, _, review_id, approved_id = _build_circuit(client, {"type": "single", "approver_id": "42"})
        client.post("/api/workflows/7/assign-circuit", json={"circuit_id": cid})
        client.post("/api/workflows/7/move-to-status", json={"target_status_id": review_id})
        client.post("/api/workflows/7/move-to-status", json={"target_status_id": approved_id, "actor_id": "alice"})

        resp = client.post("/api/workflows/7/withdraw-approval", json={"actor_id": "mallory"})
        assert resp.status_code == 403

        resp = client.post("/api/workflows/7/withdraw-approval", json={"actor_id": "alice"})
        assert resp.status_code == 200
        assert resp.json()["approval"]["status"] == "Withdrawn"

    def test_return_and_reinitialize(self, client, engine):
        engine.documents.add("7")
        cid, draft_id, review_id, _ = _build_circuit(client, {"type": "single", "approver_id": "42"})
        client.post("/api/workflows/7/assign-circuit", json={"circuit_id": cid})
        client.post("/api/workflows/7/move-to-status", json={"target_status_id": review_id})

        resp = client.post("/api/workflows/7/return-to-previous", json={"comment": "missing page"})
        assert resp.json()["document"]["current_status_id"] == draft_id

        client.post("/api/workflows/7/move-to-status", json={"target_status_id": review_id})
        resp = client.post("/api/workflows/7/reinitialize", json={})
        assert resp.json()["document"]["current_status_id"] == draft_id

        resp = client.post("/api/workflows/7/return-to-previous", json={})
        assert resp.status_code == 409
        assert resp.json()["error"] == "NoHistoryError"

    def test_return_to_status(self, client, engine):
        engine.documents.add("7")
        cid, draft_id, review_id, approved_id = _build_circuit(client, {"type": "single", "approver_id": "42"})
        client.post("/api/workflows/7/assign-circuit", json={"circuit_id": cid})
        client.post("/api/workflows/7/move-to-status", json={"target_status_id": review_id})

        resp = client.post("/api/workflows/7/return-to-status", json={"target_status_id": approved_id})
        assert resp.status_code == 400
        assert resp.json()["error"] == "StatusNotOnPathError"

        resp = client.post(
            "/api/workflows/7/return-to-status",
            json={"target_status_id": draft_id, "comment": "start over", "actor_id": "alice"}
        )
        assert resp.status_code == 200
        assert resp.json()["document"]["current_status_id"] == draft_id

        history = client.get("/api/workflows/7/history").json()["history"]
        assert history[-1]["outcome"] == "Returned"
        assert history[-1]["actor_id"] == "alice"

    def test_move_to_next_after_completion_is_409(self, client, engine):
        engine.documents.add("7")
        cid, _, review_id, approved_id = _build_circuit(client, {"type": "single", "approver_id": "42"})
        client.post("/api/workflows/7/assign-circuit", json={"circuit_id": cid})
        client.post("/api/workflows/7/move-to-status", json={"target_status_id": review_id})
        approval_id = client.post(
            "/api/workflows/7/move-to-status", json={"target_status_id": approved_id}
        ).json()["approval_id"]
        client.post(f"/api/approvals/{approval_id}/respond", json={"approver_id": "42", "decision": "Approve"})

        resp = client.post("/api/workflows/7/move-to-next", json={})

        assert resp.status_code == 409
        assert resp.json()["error"] == "CircuitCompletedError"


class TestApprovalRoutes:
    """Approval queries and expiry."""

    def test_approval_history(self, client, engine):
        engine.documents.add("7")
        cid, _, review_id, approved_id = _build_circuit(client, {"type": "single", "approver_id": "42"})
        client.post("/api/workflows/7/assign-circuit", json={"circuit_id": cid})
        client.post("/api/workflows/7/move-to-status", json={"target_status_id": review_id})
        approval_id = client.post(
            "/api/workflows/7/move-to-status", json={"target_status_id": approved_id}
        ).json()["approval_id"]

        data = client.get("/api/approvals/history/7").json()
        assert [a["id"] for a in data["approvals"]] == [approval_id]

        data = client.get(f"/api/approvals/{approval_id}").json()
        assert data["status"] == "Open"
        assert data["rule_snapshot"] == {"type": "single", "approver_id": "42"}

    def test_expire_disabled_by_default(self, client):
        resp = client.post("/api/approvals/expire")
        assert resp.json() == {"expired": [], "count": 0}

    def test_unknown_approval_is_404(self, client):
        resp = client.get("/api/approvals/nope")
        assert resp.status_code == 404
