"""
Circuit Hub - History Log

Append-only record of every transition and approval decision. Entries are
frozen and never mutated or deleted; the build_* methods construct entries and
append is the only writer, so callers can persist other records first and
write the history last.
"""

import logging
from typing import List, Optional

from .errors import ValidationError
from .models import ApprovalRequest, HistoryEntry, HistoryOutcome
from .persistence import HistoryStore, InMemoryHistoryStore

logger = logging.getLogger(__name__)


TRANSITION_OUTCOMES = frozenset({
    HistoryOutcome.ASSIGNED,
    HistoryOutcome.COMPLETED,
    HistoryOutcome.RETURNED,
    HistoryOutcome.REINITIALIZED,
})

APPROVAL_OUTCOMES = frozenset({
    HistoryOutcome.APPROVAL_REQUESTED,
    HistoryOutcome.APPROVAL_RESPONDED,
    HistoryOutcome.REJECTED,
    HistoryOutcome.WITHDRAWN,
    HistoryOutcome.EXPIRED,
})


class HistoryLog:
    """Per-document chronological history."""

    def __init__(self, store: Optional[HistoryStore] = None):
        self.store = store or InMemoryHistoryStore()

    # =========================================================================
    # BUILDING
    # =========================================================================

    @staticmethod
    def build_transition(
        document_id: str,
        from_status_id: Optional[str],
        to_status_id: Optional[str],
        outcome: HistoryOutcome,
        actor_id: str,
        step_id: Optional[str] = None,
        comment: Optional[str] = None,
        approval_request_id: Optional[str] = None
    ) -> HistoryEntry:
        if outcome not in TRANSITION_OUTCOMES:
            raise ValidationError(f"'{outcome.value}' is not a transition outcome")

        return HistoryEntry(
            document_id=document_id,
            from_status_id=from_status_id,
            to_status_id=to_status_id,
            step_id=step_id,
            actor_id=actor_id,
            outcome=outcome,
            comment=comment,
            approval_request_id=approval_request_id,
        )

    @staticmethod
    def build_approval_event(
        request: ApprovalRequest,
        outcome: HistoryOutcome,
        actor_id: str,
        comment: Optional[str] = None
    ) -> HistoryEntry:
        if outcome not in APPROVAL_OUTCOMES:
            raise ValidationError(f"'{outcome.value}' is not an approval outcome")

        return HistoryEntry(
            document_id=request.document_id,
            from_status_id=request.from_status_id,
            to_status_id=request.to_status_id,
            step_id=request.step_id,
            actor_id=actor_id,
            outcome=outcome,
            comment=comment,
            approval_request_id=request.id,
        )

    # =========================================================================
    # WRITING
    # =========================================================================

    async def append(self, *entries: HistoryEntry) -> None:
        if entries:
            await self.store.append(entries)

    async def record_transition(self, document_id: str, from_status_id: Optional[str],
                                to_status_id: Optional[str], outcome: HistoryOutcome,
                                actor_id: str, **kwargs) -> HistoryEntry:
        entry = self.build_transition(document_id, from_status_id, to_status_id, outcome, actor_id, **kwargs)
        await self.append(entry)
        return entry

    async def record_approval_event(self, request: ApprovalRequest, outcome: HistoryOutcome,
                                    actor_id: str, comment: Optional[str] = None) -> HistoryEntry:
        entry = self.build_approval_event(request, outcome, actor_id, comment)
        await self.append(entry)
        return entry

    # =========================================================================
    # READING
    # =========================================================================

    async def for_document(self, document_id: str) -> List[HistoryEntry]:
        """Full chronological history of a document."""
        return await self.store.for_document(document_id)

    async def completed_path(self, document_id: str) -> List[HistoryEntry]:
        """
        Completed entries still on the document's path.

        A Returned entry undoes Completed entries back to the status it
        returned to (just the latest one for a single step back); a
        Reinitialized entry clears the path.
        """
        path: List[HistoryEntry] = []
        for entry in await self.store.for_document(document_id):
            if entry.outcome == HistoryOutcome.COMPLETED:
                path.append(entry)
            elif entry.outcome == HistoryOutcome.RETURNED:
                while path:
                    undone = path.pop()
                    if undone.from_status_id == entry.to_status_id:
                        break
            elif entry.outcome == HistoryOutcome.REINITIALIZED:
                path.clear()
        return path

    async def most_recent_completed(self, document_id: str) -> Optional[HistoryEntry]:
        """Most recent Completed entry not already undone by a return."""
        path = await self.completed_path(document_id)
        return path[-1] if path else None
