"""
Circuit Hub - Workflow Engine

The single authoritative state machine that moves a document through the
statuses of its circuit.

Document states:
- Idle: no circuit assigned (inert to the engine)
- Active(status): at a status of its circuit
- PendingApproval(status, request): a gated move is parked; the visible
  current_status_id does not change until the request is accepted
- Terminal: Active(status) where status.is_final

Every operation on a document runs under that document's lock. Transition
attempts never wait for the lock: a second attempt while another transition
holds it, or while an approval is pending, fails with TransitionInProgressError.
Approval responses wait for the lock briefly, then resolve synchronously.
Operations on different documents are independent. A lock lives only while
someone holds or waits for it.

Writes persist the document first and its history entry last, so a failed
save never leaves history describing a move that did not happen.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Union

from . import config
from .approval import ApprovalTracker
from .errors import (
    AmbiguousTransitionError, ApprovalNotFoundError, BacktrackNotAllowedError,
    AlreadyAssignedError, CircuitCompletedError, CircuitInactiveError,
    DocumentNotFoundError, MissingInitialStatusError, NoHistoryError,
    NoSuchTransitionError, NotAssignedError, NotAuthorizedError,
    StatusNotFoundError, StatusNotOnPathError, TransitionInProgressError,
    ValidationError,
)
from .history import HistoryLog
from .models import (
    ApprovalRequest, ApprovalStatus, Circuit, Decision, Document, HistoryEntry,
    HistoryOutcome, ResponseResult, Step, TransitionResult, new_id, utc_now,
)
from .persistence import ApprovalStore, CircuitStore, HistoryStore
from .registry import CircuitRegistry
from .stores import DocumentStore, InMemoryDocumentStore, StaticUserDirectory, UserDirectory

logger = logging.getLogger(__name__)


class AvailableTransitions:
    """
    Outgoing steps from a document's current status.

    Lazy and restartable: each iteration filters the circuit's steps again.
    """

    def __init__(self, circuit: Optional[Circuit], status_id: Optional[str]):
        self.circuit = circuit
        self.status_id = status_id

    def __iter__(self) -> Iterator[Step]:
        if self.circuit is None or self.status_id is None:
            return
        status = self.circuit.get_status(self.status_id)
        if status is None or status.is_final:
            return
        for step in self.circuit.steps:
            if step.current_status_id == self.status_id:
                yield step


class WorkflowEngine:
    """Document circuit state machine."""

    def __init__(
        self,
        document_store: Optional[DocumentStore] = None,
        user_directory: Optional[UserDirectory] = None,
        registry: Optional[CircuitRegistry] = None,
        history: Optional[HistoryLog] = None,
        approval_ttl_hours: Optional[float] = None,
        auto_approve_initiator: Optional[bool] = None,
        circuit_store: Optional[CircuitStore] = None,
        approval_store: Optional[ApprovalStore] = None,
        history_store: Optional[HistoryStore] = None
    ):
        self.documents = document_store or InMemoryDocumentStore()
        self.users = user_directory or StaticUserDirectory()
        self.registry = registry or CircuitRegistry(self.documents, circuit_store)
        self.history = history or HistoryLog(history_store)
        self.approval_ttl_hours = (
            config.APPROVAL_REQUEST_TTL_HOURS if approval_ttl_hours is None else approval_ttl_hours
        )
        self.approvals = ApprovalTracker(
            self.users,
            self.history,
            store=approval_store,
            auto_approve_initiator=(
                config.AUTO_APPROVE_INITIATOR if auto_approve_initiator is None else auto_approve_initiator
            ),
        )
        self.approvals.set_resolution_handler(self._on_approval_resolved)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    # =========================================================================
    # LOCKING
    # =========================================================================

    @asynccontextmanager
    async def _document_lock(self, document_id: str, wait: bool = True):
        """
        Hold the document lock, created on first use and dropped once the last
        holder or waiter leaves. With wait=False a held lock fails fast.
        """
        lock = self._locks.get(document_id)
        if lock is None:
            lock = self._locks[document_id] = asyncio.Lock()
        if not wait and lock.locked():
            raise TransitionInProgressError(document_id=document_id)

        self._lock_users[document_id] = self._lock_users.get(document_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[document_id] -= 1
            if not self._lock_users[document_id]:
                del self._lock_users[document_id]
                del self._locks[document_id]

    def _exclusive(self, document_id: str):
        """Hold the document lock for a transition; fail instead of waiting."""
        return self._document_lock(document_id, wait=False)

    # =========================================================================
    # DOCUMENTS
    # =========================================================================

    async def register_document(self, document_id: Optional[str] = None) -> Document:
        """Create an idle document record the engine can later assign to a circuit."""
        document = await self.documents.create(document_id or new_id())
        logger.info("Document registered: id=%s", document.id)
        return document

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def assign_circuit(
        self,
        document_id: str,
        circuit_id: str,
        actor_id: str = config.SYSTEM_ACTOR,
        comment: Optional[str] = None
    ) -> Document:
        """Bind an idle document to a circuit and place it at the initial status."""
        async with self._exclusive(document_id):
            document = await self._get_document(document_id)
            if document.is_assigned:
                raise AlreadyAssignedError(document_id=document_id, circuit_id=document.circuit_id)

            circuit = await self.registry.get_circuit(circuit_id)
            if not circuit.is_active:
                raise CircuitInactiveError(circuit_id=circuit_id)
            initial = circuit.initial_status
            if initial is None:
                raise MissingInitialStatusError(circuit_id=circuit_id)

            document.circuit_id = circuit_id
            document.current_status_id = initial.id
            document.is_circuit_completed = initial.is_final
            document.updated_at = utc_now()
            await self.documents.save(document)

            await self.history.record_transition(
                document_id, None, initial.id, HistoryOutcome.ASSIGNED, actor_id, comment=comment
            )
            logger.info("Document %s assigned to circuit %s at status %s", document_id, circuit_id, initial.id)
            return document

    async def available_transitions(self, document_id: str) -> AvailableTransitions:
        document = await self._get_document(document_id)
        if not document.is_assigned:
            return AvailableTransitions(None, None)
        circuit = await self.registry.get_circuit(document.circuit_id)
        return AvailableTransitions(circuit, document.current_status_id)

    async def move_to_status(
        self,
        document_id: str,
        target_status_id: str,
        comment: Optional[str] = None,
        actor_id: str = config.SYSTEM_ACTOR
    ) -> TransitionResult:
        """
        Move a document along the step leading to target_status_id.

        Ungated steps commit immediately. Gated steps park the document behind
        a new approval request; the result carries its approval_id.
        """
        if not target_status_id:
            raise ValidationError("Target status is required", document_id=document_id)

        async with self._exclusive(document_id):
            document = await self._get_document(document_id)
            circuit = await self._circuit_of(document)
            await self._ensure_no_open_request(document_id)
            self._ensure_not_completed(document, circuit)

            step = circuit.find_step(document.current_status_id, target_status_id)
            if step is None:
                logger.warning(
                    "Invalid workflow transition: doc=%s, circuit=%s, current=%s, target=%s",
                    document_id, circuit.id, document.current_status_id, target_status_id
                )
                raise NoSuchTransitionError(
                    document_id=document_id,
                    current_status_id=document.current_status_id,
                    target_status_id=target_status_id,
                    available=[s.next_status_id for s in AvailableTransitions(circuit, document.current_status_id)],
                )

            if not step.requires_approval:
                entry = await self._apply_step(document, circuit, step, actor_id, comment)
                await self.history.append(entry)
                return TransitionResult(
                    requires_approval=False,
                    current_status_id=document.current_status_id,
                    committed=True,
                )

            request = await self.approvals.open_request(document_id, step, actor_id, comment)
            document = await self._get_document(document_id)
            return TransitionResult(
                requires_approval=True,
                current_status_id=document.current_status_id,
                approval_id=request.id,
                committed=request.status == ApprovalStatus.ACCEPTED,
            )

    async def move_to_next_step(
        self,
        document_id: str,
        comment: Optional[str] = None,
        actor_id: str = config.SYSTEM_ACTOR
    ) -> TransitionResult:
        """Follow the only outgoing step; ambiguity must be resolved with move_to_status."""
        document = await self._get_document(document_id)
        circuit = await self._circuit_of(document)
        self._ensure_not_completed(document, circuit)

        steps = list(AvailableTransitions(circuit, document.current_status_id))
        if not steps:
            raise NoSuchTransitionError(
                "No outgoing step from the current status",
                document_id=document_id,
                current_status_id=document.current_status_id,
            )
        if len(steps) > 1:
            raise AmbiguousTransitionError(
                document_id=document_id,
                current_status_id=document.current_status_id,
                candidates=[s.next_status_id for s in steps],
            )
        return await self.move_to_status(document_id, steps[0].next_status_id, comment, actor_id)

    async def return_to_previous_step(
        self,
        document_id: str,
        comment: Optional[str] = None,
        actor_id: str = config.SYSTEM_ACTOR
    ) -> Document:
        """Undo the most recent completed transition still on the document's path."""
        async with self._exclusive(document_id):
            document = await self._get_document(document_id)
            circuit = await self._backtrackable_circuit(document)

            last = await self.history.most_recent_completed(document_id)
            if last is None:
                raise NoHistoryError(document_id=document_id)
            return await self._return_to(document, circuit, last.from_status_id, last.step_id, actor_id, comment)

    async def return_to_status(
        self,
        document_id: str,
        target_status_id: str,
        comment: Optional[str] = None,
        actor_id: str = config.SYSTEM_ACTOR
    ) -> Document:
        """
        Return a document to an earlier status it actually passed through.

        The target must be the starting status of a completed transition still
        on the document's path; every transition after it is undone.
        """
        if not target_status_id:
            raise ValidationError("Target status is required", document_id=document_id)

        async with self._exclusive(document_id):
            document = await self._get_document(document_id)
            circuit = await self._backtrackable_circuit(document)
            if circuit.get_status(target_status_id) is None:
                raise StatusNotFoundError(circuit_id=circuit.id, status_id=target_status_id)

            path = await self.history.completed_path(document_id)
            if not path:
                raise NoHistoryError(document_id=document_id)
            undone = next((e for e in reversed(path) if e.from_status_id == target_status_id), None)
            if undone is None:
                raise StatusNotOnPathError(
                    document_id=document_id,
                    target_status_id=target_status_id,
                    path=[e.from_status_id for e in path],
                )
            return await self._return_to(document, circuit, target_status_id, undone.step_id, actor_id, comment)

    async def reinitialize_workflow(
        self,
        document_id: str,
        comment: Optional[str] = None,
        actor_id: str = config.SYSTEM_ACTOR
    ) -> Document:
        """Put an assigned document back at its circuit's initial status."""
        async with self._exclusive(document_id):
            document = await self._get_document(document_id)
            circuit = await self._circuit_of(document)
            initial = circuit.initial_status
            if initial is None:
                raise MissingInitialStatusError(circuit_id=circuit.id)

            request = await self.approvals.open_request_for(document_id)
            if request is not None:
                await self.approvals.close(
                    request, ApprovalStatus.WITHDRAWN, HistoryOutcome.WITHDRAWN,
                    actor_id, "Withdrawn by workflow reinitialization",
                )

            from_status_id = document.current_status_id
            document.current_status_id = initial.id
            document.is_circuit_completed = initial.is_final
            document.updated_at = utc_now()
            await self.documents.save(document)

            await self.history.record_transition(
                document_id, from_status_id, initial.id, HistoryOutcome.REINITIALIZED,
                actor_id, comment=f"Workflow reinitialized: {comment}" if comment else "Workflow reinitialized",
            )
            logger.info("Document %s reinitialized to %s (actor=%s)", document_id, initial.id, actor_id)
            return document

    # =========================================================================
    # APPROVALS
    # =========================================================================

    async def submit_response(
        self,
        approval_id: str,
        approver_id: str,
        decision: Union[Decision, str],
        comment: Optional[str] = None
    ) -> ResponseResult:
        decision = self._parse_decision(decision)
        request = await self.approvals.get(approval_id)

        async with self._document_lock(request.document_id):
            request = await self.approvals.submit_response(approval_id, approver_id, decision, comment)

        if request.is_open:
            return ResponseResult(resolved=False)
        return ResponseResult(resolved=True, outcome=request.status)

    async def withdraw_approval(
        self,
        document_id: str,
        actor_id: str,
        comment: Optional[str] = None
    ) -> ApprovalRequest:
        """Withdraw the document's open request; the document stays at its status."""
        async with self._document_lock(document_id):
            await self._get_document(document_id)
            request = await self.approvals.open_request_for(document_id)
            if request is None:
                raise ApprovalNotFoundError("No open approval request for this document", document_id=document_id)
            if not await self.users.has_authority(actor_id, request):
                raise NotAuthorizedError(approval_id=request.id, actor_id=actor_id)

            await self.approvals.close(request, ApprovalStatus.WITHDRAWN, HistoryOutcome.WITHDRAWN, actor_id, comment)
            logger.info("Approval %s withdrawn by %s (doc=%s)", request.id, actor_id, document_id)
            return request

    async def expire_stale_approvals(self, now: Optional[datetime] = None) -> List[str]:
        """Reject Open requests older than the configured TTL. Disabled when the TTL is 0."""
        if self.approval_ttl_hours <= 0:
            return []

        expired = []
        for stale in await self.approvals.stale_requests(self.approval_ttl_hours, now):
            async with self._document_lock(stale.document_id):
                request = await self.approvals.get(stale.id)
                if not request.is_open:
                    continue
                await self.approvals.close(
                    request, ApprovalStatus.EXPIRED, HistoryOutcome.EXPIRED, config.SYSTEM_ACTOR,
                    f"No decision within {self.approval_ttl_hours:g} hours",
                )
                logger.warning(
                    "Approval %s expired after %s hours (doc=%s)",
                    request.id, self.approval_ttl_hours, request.document_id
                )
                expired.append(request.id)
        return expired

    async def get_approval(self, approval_id: str) -> ApprovalRequest:
        return await self.approvals.get(approval_id)

    async def pending_approvals_for(self, approver_id: str) -> List[ApprovalRequest]:
        return await self.approvals.pending_for(approver_id)

    async def approval_history(self, document_id: str) -> List[ApprovalRequest]:
        await self._get_document(document_id)
        return await self.approvals.for_document(document_id)

    # =========================================================================
    # READS
    # =========================================================================

    async def workflow_status(self, document_id: str) -> Dict[str, Any]:
        document = await self._get_document(document_id)
        history = [e.to_dict() for e in await self.history.for_document(document_id)]

        if not document.is_assigned:
            return {
                "document_id": document_id,
                "circuit_id": None,
                "current_status_id": None,
                "available_transitions": [],
                "pending_approval": None,
                "is_circuit_completed": False,
                "progress_percentage": 0,
                "history": history,
            }

        circuit = await self.registry.get_circuit(document.circuit_id)
        pending = await self.approvals.open_request_for(document_id)
        return {
            "document_id": document_id,
            "circuit_id": circuit.id,
            "current_status_id": document.current_status_id,
            "available_transitions": [
                s.to_dict() for s in AvailableTransitions(circuit, document.current_status_id)
            ],
            "pending_approval": pending.to_dict() if pending else None,
            "is_circuit_completed": document.is_circuit_completed,
            "progress_percentage": await self._progress(document, circuit),
            "history": history,
        }

    async def circuit_history(self, document_id: str) -> List[HistoryEntry]:
        await self._get_document(document_id)
        return await self.history.for_document(document_id)

    async def pending_documents(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Documents inside a circuit that have not finished it, with time spent at their status."""
        now = now or utc_now()
        circuits: Dict[str, Optional[Circuit]] = {}
        pending = []
        for document in await self.documents.list_pending():
            if document.circuit_id not in circuits:
                circuits[document.circuit_id] = await self.registry.store.get(document.circuit_id)
            circuit = circuits[document.circuit_id]
            status = circuit.get_status(document.current_status_id) if circuit else None
            request = await self.approvals.open_request_for(document.id)
            pending.append({
                "document_id": document.id,
                "circuit_id": document.circuit_id,
                "circuit_title": circuit.title if circuit else None,
                "current_status_id": document.current_status_id,
                "current_status_title": status.title if status else None,
                "days_in_current_status": (now - document.updated_at).days if document.updated_at else 0,
                "pending_approval_id": request.id if request else None,
            })
        return pending

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _get_document(self, document_id: str) -> Document:
        document = await self.documents.get(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id=document_id)
        return document

    async def _circuit_of(self, document: Document) -> Circuit:
        if not document.is_assigned:
            raise NotAssignedError(document_id=document.id)
        return await self.registry.get_circuit(document.circuit_id)

    async def _backtrackable_circuit(self, document: Document) -> Circuit:
        circuit = await self._circuit_of(document)
        await self._ensure_no_open_request(document.id)
        if not circuit.allow_backtrack:
            raise BacktrackNotAllowedError(circuit_id=circuit.id, document_id=document.id)
        return circuit

    async def _ensure_no_open_request(self, document_id: str) -> None:
        request = await self.approvals.open_request_for(document_id)
        if request is not None:
            raise TransitionInProgressError(
                "Document is waiting for approval",
                document_id=document_id,
                approval_id=request.id,
            )

    @staticmethod
    def _ensure_not_completed(document: Document, circuit: Circuit) -> None:
        current = circuit.get_status(document.current_status_id)
        if current is not None and current.is_final:
            raise CircuitCompletedError(
                document_id=document.id,
                current_status_id=document.current_status_id,
            )

    @staticmethod
    def _parse_decision(decision: Union[Decision, str]) -> Decision:
        if isinstance(decision, Decision):
            return decision
        for candidate in Decision:
            if str(decision).lower() == candidate.value.lower():
                return candidate
        raise ValidationError(
            f"Unknown decision '{decision}'",
            valid=[d.value for d in Decision],
        )

    async def _apply_step(
        self,
        document: Document,
        circuit: Circuit,
        step: Step,
        actor_id: str,
        comment: Optional[str],
        approval_request_id: Optional[str] = None
    ) -> HistoryEntry:
        """Save the document at the step's next status; the caller appends the returned entry."""
        from_status_id = document.current_status_id
        target = circuit.get_status(step.next_status_id)

        document.current_status_id = step.next_status_id
        document.is_circuit_completed = bool(target and target.is_final)
        document.updated_at = utc_now()
        await self.documents.save(document)

        logger.info(
            "Workflow transition: doc=%s, circuit=%s, %s -> %s (step=%s, actor=%s)",
            document.id, circuit.id, from_status_id, step.next_status_id, step.id, actor_id
        )
        if document.is_circuit_completed:
            logger.info("Document %s completed circuit %s", document.id, circuit.id)
        return self.history.build_transition(
            document.id, from_status_id, step.next_status_id, HistoryOutcome.COMPLETED,
            actor_id, step_id=step.id, comment=comment, approval_request_id=approval_request_id,
        )

    async def _return_to(
        self,
        document: Document,
        circuit: Circuit,
        target_status_id: str,
        step_id: Optional[str],
        actor_id: str,
        comment: Optional[str]
    ) -> Document:
        from_status_id = document.current_status_id
        target = circuit.get_status(target_status_id)
        document.current_status_id = target_status_id
        document.is_circuit_completed = bool(target and target.is_final)
        document.updated_at = utc_now()
        await self.documents.save(document)

        await self.history.record_transition(
            document.id, from_status_id, target_status_id, HistoryOutcome.RETURNED,
            actor_id, step_id=step_id, comment=comment,
        )
        logger.info(
            "Document %s returned: %s -> %s (actor=%s)",
            document.id, from_status_id, target_status_id, actor_id
        )
        return document

    async def _on_approval_resolved(
        self,
        request: ApprovalRequest,
        verdict: ApprovalStatus,
        actor_id: str
    ) -> List[HistoryEntry]:
        """Commit or reject the parked move. Runs under the document lock, before the request is saved."""
        if verdict == ApprovalStatus.REJECTED:
            logger.info("Transition rejected: doc=%s, approval=%s", request.document_id, request.id)
            return [self.history.build_approval_event(request, HistoryOutcome.REJECTED, actor_id)]

        document = await self._get_document(request.document_id)
        circuit = await self._circuit_of(document)
        step = circuit.get_step(request.step_id)
        if step is None or document.current_status_id != request.from_status_id:
            logger.error(
                "Accepted approval %s no longer matches doc %s (status=%s)",
                request.id, document.id, document.current_status_id
            )
            return []
        entry = await self._apply_step(
            document, circuit, step, actor_id, request.comment, approval_request_id=request.id
        )
        return [entry]

    async def _progress(self, document: Document, circuit: Circuit) -> int:
        required = [s.id for s in circuit.statuses if s.is_required]
        if not required:
            return 100 if document.is_circuit_completed else 0

        completed = {e.to_status_id for e in await self.history.completed_path(document.id)}
        if circuit.initial_status is not None:
            completed.add(circuit.initial_status.id)
        done = sum(1 for status_id in required if status_id in completed)
        return int(done / len(required) * 100)
