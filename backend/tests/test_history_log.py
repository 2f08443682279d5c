"""
Unit tests for the append-only history log.
Tests services/circuit/history.py
"""
import dataclasses
import pytest

from services.circuit import (
    ApprovalRequest, HistoryLog, HistoryOutcome, InMemoryHistoryStore, SingleApprover,
)
from services.circuit.errors import ValidationError


@pytest.fixture
def log():
    return HistoryLog()


def _request():
    return ApprovalRequest(
        id="req-1",
        document_id="7",
        step_id="s2",
        from_status_id="review",
        to_status_id="approved",
        rule_snapshot=SingleApprover("42"),
    )


class TestHistoryLog:
    """Recording and reading history."""

    @pytest.mark.asyncio
    async def test_entries_are_chronological(self, log):
        await log.record_transition("7", None, "draft", HistoryOutcome.ASSIGNED, "alice")
        await log.record_transition("7", "draft", "review", HistoryOutcome.COMPLETED, "alice", step_id="s1")
        await log.record_approval_event(_request(), HistoryOutcome.APPROVAL_REQUESTED, "alice")

        outcomes = [e.outcome for e in await log.for_document("7")]
        assert outcomes == [
            HistoryOutcome.ASSIGNED,
            HistoryOutcome.COMPLETED,
            HistoryOutcome.APPROVAL_REQUESTED,
        ]

    @pytest.mark.asyncio
    async def test_entries_are_immutable(self, log):
        """History entries cannot be edited after the fact."""
        entry = await log.record_transition("7", None, "draft", HistoryOutcome.ASSIGNED, "alice")

        with pytest.raises(dataclasses.FrozenInstanceError):
            entry.comment = "rewritten"

    @pytest.mark.asyncio
    async def test_reads_return_copies(self, log):
        """Mutating a read does not change the log."""
        await log.record_transition("7", None, "draft", HistoryOutcome.ASSIGNED, "alice")

        (await log.for_document("7")).clear()

        assert len(await log.for_document("7")) == 1

    @pytest.mark.asyncio
    async def test_unknown_document_has_no_history(self, log):
        assert await log.for_document("nope") == []
        assert await log.most_recent_completed("nope") is None

    @pytest.mark.asyncio
    async def test_approval_event_references_request(self, log):
        entry = await log.record_approval_event(_request(), HistoryOutcome.REJECTED, "42", "no")

        assert entry.approval_request_id == "req-1"
        assert (entry.from_status_id, entry.to_status_id) == ("review", "approved")

    def test_outcomes_are_checked(self):
        """Transition and approval builders only take their own outcomes."""
        with pytest.raises(ValidationError):
            HistoryLog.build_transition("7", "a", "b", HistoryOutcome.REJECTED, "alice")
        with pytest.raises(ValidationError):
            HistoryLog.build_approval_event(_request(), HistoryOutcome.COMPLETED, "alice")

    @pytest.mark.asyncio
    async def test_built_entries_are_not_stored_until_appended(self, log):
        entry = log.build_transition("7", None, "draft", HistoryOutcome.ASSIGNED, "alice")
        assert await log.for_document("7") == []

        await log.append(entry)

        assert await log.for_document("7") == [entry]

    @pytest.mark.asyncio
    async def test_history_lives_in_the_store(self):
        """A second log over the same store reads the same entries."""
        store = InMemoryHistoryStore()
        await HistoryLog(store).record_transition("7", None, "draft", HistoryOutcome.ASSIGNED, "alice")

        assert [e.to_status_id for e in await HistoryLog(store).for_document("7")] == ["draft"]


class TestCompletedPath:
    """The undo stack behind the return operations."""

    @pytest.mark.asyncio
    async def test_returns_pop_completed_moves(self, log):
        await log.record_transition("7", "a", "b", HistoryOutcome.COMPLETED, "x")
        await log.record_transition("7", "b", "c", HistoryOutcome.COMPLETED, "x")
        await log.record_transition("7", "c", "b", HistoryOutcome.RETURNED, "x")

        assert (await log.most_recent_completed("7")).to_status_id == "b"
        assert [e.to_status_id for e in await log.completed_path("7")] == ["b"]

    @pytest.mark.asyncio
    async def test_return_over_several_moves(self, log):
        """Returning to an earlier status undoes every move made since leaving it."""
        await log.record_transition("7", "a", "b", HistoryOutcome.COMPLETED, "x")
        await log.record_transition("7", "b", "c", HistoryOutcome.COMPLETED, "x")
        await log.record_transition("7", "c", "d", HistoryOutcome.COMPLETED, "x")
        await log.record_transition("7", "d", "b", HistoryOutcome.RETURNED, "x")

        assert [e.to_status_id for e in await log.completed_path("7")] == ["b"]

    @pytest.mark.asyncio
    async def test_reinitialize_clears_path(self, log):
        await log.record_transition("7", "a", "b", HistoryOutcome.COMPLETED, "x")
        await log.record_transition("7", "b", "a", HistoryOutcome.REINITIALIZED, "x")

        assert await log.completed_path("7") == []

    @pytest.mark.asyncio
    async def test_approval_events_do_not_affect_path(self, log):
        await log.record_transition("7", "a", "b", HistoryOutcome.COMPLETED, "x")
        await log.record_approval_event(_request(), HistoryOutcome.WITHDRAWN, "x")

        assert (await log.most_recent_completed("7")).to_status_id == "b"
