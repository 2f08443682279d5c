"""
Circuit Hub - Approval Gate & Tracker

ApprovalGate is pure rule logic: who may respond right now and what verdict a
set of responses resolves to.

ApprovalTracker owns ApprovalRequest records. It snapshots a step's rule when a
gated move is attempted, records responses, and hands every verdict to the
resolution handler registered by the workflow engine before the request is
saved as resolved.

Resolution rules (evaluated after each accepted response):
- Single: the one response is final
- Group/ANY: first Approve accepts; Reject only once every member rejected
- Group/ALL: every member must Approve; first Reject rejects
- Group/SEQUENTIAL: members respond in order; last Approve accepts, any Reject rejects

A snapshot with zero eligible approvers resolves Accepted at creation so that a
misconfigured or emptied group cannot strand a document.
"""

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from .config import SYSTEM_ACTOR
from .errors import (
    AlreadyRespondedError, ApprovalNotFoundError, NotAnApproverError,
    NotYourTurnError, RequestClosedError, TransitionInProgressError,
)
from .history import HistoryLog
from .models import (
    ApprovalRequest, ApprovalResponse, ApprovalRule, ApprovalStatus, Decision,
    GroupApproval, HistoryEntry, HistoryOutcome, RuleType, SingleApprover, Step,
    new_id, utc_now,
)
from .persistence import ApprovalStore, InMemoryApprovalStore
from .stores import UserDirectory

logger = logging.getLogger(__name__)

# (request, verdict, actor_id) -> history entries to append once the request is saved
ResolutionHandler = Callable[[ApprovalRequest, ApprovalStatus, str], Awaitable[List[HistoryEntry]]]


# =============================================================================
# GATE
# =============================================================================

class ApprovalGate:
    """Stateless evaluation of approval rules."""

    @staticmethod
    async def snapshot_rule(
        rule: Optional[ApprovalRule],
        directory: UserDirectory
    ) -> Optional[ApprovalRule]:
        """
        Freeze a step's rule for a new request, keeping only eligible approvers.

        Returns None when no eligible approver remains. Sequential order is kept.
        """
        if rule is None:
            return None

        eligible = []
        for approver_id in rule.approver_ids:
            if await directory.is_eligible_approver(approver_id):
                eligible.append(approver_id)
            else:
                logger.info("Approver %s is not eligible and was left out of the snapshot", approver_id)

        if not eligible:
            return None
        if isinstance(rule, SingleApprover):
            return SingleApprover(eligible[0])
        return GroupApproval(approver_ids=tuple(eligible), rule_type=rule.rule_type)

    @staticmethod
    def is_sequential(request: ApprovalRequest) -> bool:
        rule = request.rule_snapshot
        return isinstance(rule, GroupApproval) and rule.rule_type == RuleType.SEQUENTIAL

    @staticmethod
    def next_in_turn(request: ApprovalRequest) -> Optional[str]:
        """The approver whose response is awaited (SEQUENTIAL only)."""
        if not ApprovalGate.is_sequential(request):
            return None
        responded = set(request.responded_ids())
        return next((a for a in request.approver_ids if a not in responded), None)

    @staticmethod
    def check_can_respond(request: ApprovalRequest, approver_id: str) -> None:
        if not request.is_open:
            raise RequestClosedError(approval_id=request.id, status=request.status.value)
        if approver_id not in request.approver_ids:
            raise NotAnApproverError(approval_id=request.id, approver_id=approver_id)
        if request.response_for(approver_id) is not None:
            raise AlreadyRespondedError(approval_id=request.id, approver_id=approver_id)
        if ApprovalGate.is_sequential(request):
            expected = ApprovalGate.next_in_turn(request)
            if approver_id != expected:
                raise NotYourTurnError(
                    approval_id=request.id,
                    approver_id=approver_id,
                    expected_approver_id=expected,
                )

    @staticmethod
    def can_respond_now(request: ApprovalRequest, approver_id: str) -> bool:
        try:
            ApprovalGate.check_can_respond(request, approver_id)
        except (RequestClosedError, NotAnApproverError, AlreadyRespondedError, NotYourTurnError):
            return False
        return True

    @staticmethod
    def evaluate(request: ApprovalRequest) -> Optional[ApprovalStatus]:
        """Verdict for the responses so far, or None while undecided."""
        rule = request.rule_snapshot
        if rule is None or not rule.approver_ids:
            return ApprovalStatus.ACCEPTED

        decisions = {r.approver_id: r.decision for r in request.responses}

        if isinstance(rule, SingleApprover):
            decision = decisions.get(rule.approver_id)
            if decision is None:
                return None
            return ApprovalStatus.ACCEPTED if decision == Decision.APPROVE else ApprovalStatus.REJECTED

        members = rule.approver_ids
        approvals = sum(1 for a in members if decisions.get(a) == Decision.APPROVE)
        rejections = sum(1 for a in members if decisions.get(a) == Decision.REJECT)

        if rule.rule_type == RuleType.ANY:
            if approvals:
                return ApprovalStatus.ACCEPTED
            if rejections == len(members):
                return ApprovalStatus.REJECTED
            return None

        # ALL and SEQUENTIAL: any decline rejects, unanimous approval accepts
        if rejections:
            return ApprovalStatus.REJECTED
        if approvals == len(members):
            return ApprovalStatus.ACCEPTED
        return None


# =============================================================================
# TRACKER
# =============================================================================

class ApprovalTracker:
    """
    Owns approval requests and their responses.

    A write collects its history entries while it works and persists at the
    end: the resolution handler first, then the request, then the history.
    A handler failure therefore leaves the stored request exactly as it was.
    """

    def __init__(
        self,
        directory: UserDirectory,
        history: HistoryLog,
        store: Optional[ApprovalStore] = None,
        auto_approve_initiator: bool = False
    ):
        self.directory = directory
        self.history = history
        self.store = store or InMemoryApprovalStore()
        self.auto_approve_initiator = auto_approve_initiator
        self._resolution_handler: Optional[ResolutionHandler] = None

    def set_resolution_handler(self, handler: ResolutionHandler) -> None:
        """Register the callback run (under the document lock) when a request resolves."""
        self._resolution_handler = handler

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get(self, approval_id: str) -> ApprovalRequest:
        request = await self.store.get(approval_id)
        if request is None:
            raise ApprovalNotFoundError(approval_id=approval_id)
        return request

    async def open_request_for(self, document_id: str) -> Optional[ApprovalRequest]:
        return await self.store.open_for_document(document_id)

    async def for_document(self, document_id: str) -> List[ApprovalRequest]:
        return await self.store.for_document(document_id)

    async def pending_for(self, approver_id: str) -> List[ApprovalRequest]:
        """Open requests the approver can answer right now."""
        return [r for r in await self.store.list_open() if ApprovalGate.can_respond_now(r, approver_id)]

    async def stale_requests(self, ttl_hours: float, now: Optional[datetime] = None) -> List[ApprovalRequest]:
        cutoff = (now or utc_now()) - timedelta(hours=ttl_hours)
        return [r for r in await self.store.list_open() if r.created_at < cutoff]

    # =========================================================================
    # WRITES
    # =========================================================================

    async def open_request(
        self,
        document_id: str,
        step: Step,
        actor_id: str,
        comment: Optional[str] = None
    ) -> ApprovalRequest:
        """Create the request for a gated move and resolve it if it can be resolved already."""
        existing = await self.open_request_for(document_id)
        if existing is not None:
            raise TransitionInProgressError(
                document_id=document_id,
                approval_id=existing.id,
            )

        snapshot = await ApprovalGate.snapshot_rule(step.approval_rule, self.directory)
        request = ApprovalRequest(
            id=new_id(),
            document_id=document_id,
            step_id=step.id,
            from_status_id=step.current_status_id,
            to_status_id=step.next_status_id,
            rule_snapshot=snapshot,
            requested_by=actor_id,
            comment=comment,
        )
        entries = [self.history.build_approval_event(request, HistoryOutcome.APPROVAL_REQUESTED, actor_id, comment)]

        logger.info(
            "Approval requested: id=%s, doc=%s, step=%s, approvers=%s",
            request.id, document_id, step.id, list(request.approver_ids)
        )

        if not request.approver_ids:
            logger.warning(
                "Step %s has no eligible approvers; auto-approving request %s for doc %s",
                step.id, request.id, document_id
            )
            await self._finish(request, entries, SYSTEM_ACTOR)
            return request

        entries += self._auto_approve_initiator(request)
        await self._finish(request, entries, actor_id)
        return request

    async def submit_response(
        self,
        approval_id: str,
        approver_id: str,
        decision: Decision,
        comment: Optional[str] = None
    ) -> ApprovalRequest:
        """Record one approver's decision and resolve the request if the rule is satisfied."""
        request = await self.get(approval_id)
        ApprovalGate.check_can_respond(request, approver_id)

        entries = [self._add_response(request, approver_id, decision, comment)]
        if decision == Decision.APPROVE and ApprovalGate.evaluate(request) is None:
            entries += self._auto_approve_initiator(request)
        await self._finish(request, entries, approver_id)
        return request

    async def close(
        self,
        request: ApprovalRequest,
        status: ApprovalStatus,
        outcome: HistoryOutcome,
        actor_id: str,
        comment: Optional[str] = None
    ) -> None:
        """Close an open request without a verdict (withdrawal, expiry)."""
        if not request.is_open:
            raise RequestClosedError(approval_id=request.id, status=request.status.value)
        request.status = status
        request.resolved_at = utc_now()
        await self.store.save(request)
        await self.history.record_approval_event(request, outcome, actor_id, comment)
        logger.info("Approval %s closed as %s", request.id, status.value)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _add_response(
        self,
        request: ApprovalRequest,
        approver_id: str,
        decision: Decision,
        comment: Optional[str],
        automatic: bool = False
    ) -> HistoryEntry:
        request.responses.append(ApprovalResponse(
            approver_id=approver_id,
            decision=decision,
            comment=comment,
            automatic=automatic,
        ))
        logger.info(
            "Approval response: id=%s, approver=%s, decision=%s%s",
            request.id, approver_id, decision.value, " (automatic)" if automatic else ""
        )
        return self.history.build_approval_event(
            request, HistoryOutcome.APPROVAL_RESPONDED, approver_id,
            comment=f"{decision.value}: {comment}" if comment else decision.value,
        )

    def _auto_approve_initiator(self, request: ApprovalRequest) -> List[HistoryEntry]:
        if not self.auto_approve_initiator:
            return []
        initiator = request.requested_by
        if not ApprovalGate.can_respond_now(request, initiator):
            return []
        return [self._add_response(
            request, initiator, Decision.APPROVE,
            "Auto-approved as initiator is an eligible approver",
            automatic=True,
        )]

    async def _finish(self, request: ApprovalRequest, entries: List[HistoryEntry], actor_id: str) -> None:
        verdict = ApprovalGate.evaluate(request)
        if verdict is not None and self._resolution_handler is not None:
            entries = entries + await self._resolution_handler(request, verdict, actor_id)
        if verdict is not None:
            request.status = verdict
            request.resolved_at = utc_now()
            logger.info("Approval %s resolved %s (doc=%s)", request.id, verdict.value, request.document_id)

        await self.store.save(request)
        await self.history.append(*entries)
