"""
Circuit Hub - Engine Data Model

Entities owned by the circuit engine. External systems only reference them by id.

Approval rules are a tagged union:
- SingleApprover(approver_id)
- GroupApproval(approver_ids, rule_type=ANY | ALL | SEQUENTIAL)

For SEQUENTIAL groups the tuple order is the approval order; for ANY/ALL the
order carries no meaning.

Every persisted entity round-trips through to_dict()/from_dict(); timestamps
are stored as ISO-8601 UTC strings.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ValidationError


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromisoformat(value)


# =============================================================================
# ENUMS
# =============================================================================

class RuleType(str, Enum):
    """How a group of approvers reaches a single verdict."""
    ANY = "ANY"                 # Anyone can approve, everyone must decline to reject
    ALL = "ALL"                 # Everyone must approve, first decline rejects
    SEQUENTIAL = "SEQUENTIAL"   # Everyone approves in order, any decline rejects


class Decision(str, Enum):
    APPROVE = "Approve"
    REJECT = "Reject"


class ApprovalStatus(str, Enum):
    OPEN = "Open"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    WITHDRAWN = "Withdrawn"
    EXPIRED = "Expired"


class HistoryOutcome(str, Enum):
    ASSIGNED = "Assigned"
    COMPLETED = "Completed"
    APPROVAL_REQUESTED = "ApprovalRequested"
    APPROVAL_RESPONDED = "ApprovalResponded"
    REJECTED = "Rejected"
    WITHDRAWN = "Withdrawn"
    EXPIRED = "Expired"
    RETURNED = "Returned"
    REINITIALIZED = "Reinitialized"


# =============================================================================
# APPROVAL RULES
# =============================================================================

@dataclass(frozen=True)
class SingleApprover:
    approver_id: str

    @property
    def approver_ids(self) -> Tuple[str, ...]:
        return (self.approver_id,)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "single", "approver_id": self.approver_id}


@dataclass(frozen=True)
class GroupApproval:
    approver_ids: Tuple[str, ...]
    rule_type: RuleType = RuleType.ALL

    def __post_init__(self):
        if len(set(self.approver_ids)) != len(self.approver_ids):
            raise ValidationError(
                "Approver group contains duplicate members",
                approver_ids=list(self.approver_ids),
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "group",
            "rule_type": self.rule_type.value,
            "approver_ids": list(self.approver_ids),
        }


ApprovalRule = Union[SingleApprover, GroupApproval]


def rule_from_dict(data: Optional[Dict[str, Any]]) -> Optional[ApprovalRule]:
    """Build an approval rule from its serialized form (API payloads, Mongo)."""
    if not data:
        return None

    rule_kind = (data.get("type") or "").lower()
    if rule_kind == "single":
        approver_id = data.get("approver_id")
        if approver_id in (None, ""):
            raise ValidationError("Single approver rule requires approver_id")
        return SingleApprover(str(approver_id))

    if rule_kind == "group":
        try:
            rule_type = RuleType((data.get("rule_type") or RuleType.ALL.value).upper())
        except ValueError:
            raise ValidationError(
                f"Unknown rule type '{data.get('rule_type')}'",
                valid=[r.value for r in RuleType],
            )
        approver_ids = tuple(str(a) for a in data.get("approver_ids") or [])
        return GroupApproval(approver_ids=approver_ids, rule_type=rule_type)

    raise ValidationError(f"Unknown approval rule type '{data.get('type')}'")


# =============================================================================
# CIRCUIT STRUCTURE
# =============================================================================

@dataclass
class Status:
    id: str
    circuit_id: str
    title: str
    is_required: bool = False
    is_initial: bool = False
    is_final: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "circuit_id": self.circuit_id,
            "title": self.title,
            "is_required": self.is_required,
            "is_initial": self.is_initial,
            "is_final": self.is_final,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Status":
        return cls(
            id=data["id"],
            circuit_id=data["circuit_id"],
            title=data["title"],
            is_required=bool(data.get("is_required", False)),
            is_initial=bool(data.get("is_initial", False)),
            is_final=bool(data.get("is_final", False)),
        )


@dataclass
class Step:
    id: str
    circuit_id: str
    current_status_id: str
    next_status_id: str
    title: str = ""
    requires_approval: bool = False
    approval_rule: Optional[ApprovalRule] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "circuit_id": self.circuit_id,
            "title": self.title,
            "current_status_id": self.current_status_id,
            "next_status_id": self.next_status_id,
            "requires_approval": self.requires_approval,
            "approval_rule": self.approval_rule.to_dict() if self.approval_rule else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        return cls(
            id=data["id"],
            circuit_id=data["circuit_id"],
            current_status_id=data["current_status_id"],
            next_status_id=data["next_status_id"],
            title=data.get("title", ""),
            requires_approval=bool(data.get("requires_approval", False)),
            approval_rule=rule_from_dict(data.get("approval_rule")),
        )


@dataclass
class Circuit:
    id: str
    title: str
    description: str = ""
    is_active: bool = False
    allow_backtrack: bool = True
    statuses: List[Status] = field(default_factory=list)
    steps: List[Step] = field(default_factory=list)

    @property
    def initial_status(self) -> Optional[Status]:
        return next((s for s in self.statuses if s.is_initial), None)

    def get_status(self, status_id: str) -> Optional[Status]:
        return next((s for s in self.statuses if s.id == status_id), None)

    def get_step(self, step_id: str) -> Optional[Step]:
        return next((s for s in self.steps if s.id == step_id), None)

    def find_step(self, current_status_id: str, next_status_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.current_status_id == current_status_id and step.next_status_id == next_status_id:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "is_active": self.is_active,
            "allow_backtrack": self.allow_backtrack,
            "statuses": [s.to_dict() for s in self.statuses],
            "steps": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Circuit":
        return cls(
            id=data["id"],
            title=data["title"],
            description=data.get("description", ""),
            is_active=bool(data.get("is_active", False)),
            allow_backtrack=bool(data.get("allow_backtrack", True)),
            statuses=[Status.from_dict(s) for s in data.get("statuses") or []],
            steps=[Step.from_dict(s) for s in data.get("steps") or []],
        )


# =============================================================================
# DOCUMENTS
# =============================================================================

@dataclass
class Document:
    """
    The engine's view of a document record.

    The record itself belongs to the document CRUD layer; the engine only
    reads and writes the circuit fields.
    """
    id: str
    circuit_id: Optional[str] = None
    current_status_id: Optional[str] = None
    is_circuit_completed: bool = False
    updated_at: Optional[datetime] = None

    @property
    def is_assigned(self) -> bool:
        return self.circuit_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "circuit_id": self.circuit_id,
            "current_status_id": self.current_status_id,
            "is_circuit_completed": self.is_circuit_completed,
            "workflow_status_updated_utc": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        return cls(
            id=data["id"],
            circuit_id=data.get("circuit_id"),
            current_status_id=data.get("current_status_id"),
            is_circuit_completed=bool(data.get("is_circuit_completed", False)),
            updated_at=_parse_datetime(data.get("workflow_status_updated_utc")),
        )


# =============================================================================
# APPROVALS
# =============================================================================

@dataclass
class ApprovalResponse:
    approver_id: str
    decision: Decision
    comment: Optional[str] = None
    responded_at: datetime = field(default_factory=utc_now)
    automatic: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approver_id": self.approver_id,
            "decision": self.decision.value,
            "comment": self.comment,
            "responded_at": self.responded_at.isoformat(),
            "automatic": self.automatic,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalResponse":
        return cls(
            approver_id=data["approver_id"],
            decision=Decision(data["decision"]),
            comment=data.get("comment"),
            responded_at=_parse_datetime(data.get("responded_at")) or utc_now(),
            automatic=bool(data.get("automatic", False)),
        )


@dataclass
class ApprovalRequest:
    id: str
    document_id: str
    step_id: str
    from_status_id: str
    to_status_id: str
    rule_snapshot: Optional[ApprovalRule]
    requested_by: str = "system"
    comment: Optional[str] = None
    status: ApprovalStatus = ApprovalStatus.OPEN
    responses: List[ApprovalResponse] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == ApprovalStatus.OPEN

    @property
    def approver_ids(self) -> Tuple[str, ...]:
        if self.rule_snapshot is None:
            return ()
        return self.rule_snapshot.approver_ids

    def responded_ids(self) -> List[str]:
        return [r.approver_id for r in self.responses]

    def response_for(self, approver_id: str) -> Optional[ApprovalResponse]:
        return next((r for r in self.responses if r.approver_id == approver_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "step_id": self.step_id,
            "from_status_id": self.from_status_id,
            "to_status_id": self.to_status_id,
            "rule_snapshot": self.rule_snapshot.to_dict() if self.rule_snapshot else None,
            "requested_by": self.requested_by,
            "comment": self.comment,
            "status": self.status.value,
            "responses": [r.to_dict() for r in self.responses],
            "created_at": self.created_at.isoformat(),
            "resolved_at": _iso(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalRequest":
        return cls(
            id=data["id"],
            document_id=data["document_id"],
            step_id=data["step_id"],
            from_status_id=data["from_status_id"],
            to_status_id=data["to_status_id"],
            rule_snapshot=rule_from_dict(data.get("rule_snapshot")),
            requested_by=data.get("requested_by", "system"),
            comment=data.get("comment"),
            status=ApprovalStatus(data.get("status", ApprovalStatus.OPEN.value)),
            responses=[ApprovalResponse.from_dict(r) for r in data.get("responses") or []],
            created_at=_parse_datetime(data.get("created_at")) or utc_now(),
            resolved_at=_parse_datetime(data.get("resolved_at")),
        )


# =============================================================================
# HISTORY
# =============================================================================

@dataclass(frozen=True)
class HistoryEntry:
    """A single, immutable workflow history record."""
    document_id: str
    from_status_id: Optional[str]
    to_status_id: Optional[str]
    step_id: Optional[str]
    actor_id: str
    outcome: HistoryOutcome
    timestamp: datetime = field(default_factory=utc_now)
    comment: Optional[str] = None
    approval_request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "from_status_id": self.from_status_id,
            "to_status_id": self.to_status_id,
            "step_id": self.step_id,
            "actor_id": self.actor_id,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp.isoformat(),
            "comment": self.comment,
            "approval_request_id": self.approval_request_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            document_id=data["document_id"],
            from_status_id=data.get("from_status_id"),
            to_status_id=data.get("to_status_id"),
            step_id=data.get("step_id"),
            actor_id=data["actor_id"],
            outcome=HistoryOutcome(data["outcome"]),
            timestamp=_parse_datetime(data.get("timestamp")) or utc_now(),
            comment=data.get("comment"),
            approval_request_id=data.get("approval_request_id"),
        )


@dataclass
class TransitionResult:
    """What a move request produced."""
    requires_approval: bool
    current_status_id: Optional[str]
    approval_id: Optional[str] = None
    committed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "requires_approval": self.requires_approval,
            "committed": self.committed,
            "current_status_id": self.current_status_id,
        }
        if self.approval_id:
            result["approval_id"] = self.approval_id
        return result


@dataclass
class ResponseResult:
    """What an approval response produced."""
    resolved: bool
    outcome: Optional[ApprovalStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resolved": self.resolved,
            "outcome": self.outcome.value if self.outcome else None,
        }
