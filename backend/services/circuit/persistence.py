"""
Circuit Hub - Engine Record Stores

Persistence for the records the engine owns:
- CircuitStore: circuit definitions with their statuses and steps embedded
- ApprovalStore: approval requests and their responses
- HistoryStore: the append-only per-document history

Like the collaborator stores, each has an in-memory implementation and a
MongoDB implementation. The Mongo history store appends to a circuit_history
array on the document record itself, next to the circuit fields.
"""

import copy
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from .errors import DocumentNotFoundError
from .models import ApprovalRequest, ApprovalStatus, Circuit, HistoryEntry

logger = logging.getLogger(__name__)


# =============================================================================
# CIRCUITS
# =============================================================================

class CircuitStore(ABC):
    """Circuit definitions."""

    @abstractmethod
    async def get(self, circuit_id: str) -> Optional[Circuit]:
        """Return the circuit, or None if it does not exist."""

    @abstractmethod
    async def list(self) -> List[Circuit]:
        """Return every circuit."""

    @abstractmethod
    async def save(self, circuit: Circuit) -> None:
        """Insert or replace the whole circuit definition."""

    @abstractmethod
    async def delete(self, circuit_id: str) -> None:
        """Remove the circuit definition."""


class InMemoryCircuitStore(CircuitStore):
    """Dict-backed circuit store. Returns copies, like InMemoryDocumentStore."""

    def __init__(self):
        self._circuits: Dict[str, Circuit] = {}

    async def get(self, circuit_id: str) -> Optional[Circuit]:
        circuit = self._circuits.get(circuit_id)
        return copy.deepcopy(circuit) if circuit else None

    async def list(self) -> List[Circuit]:
        return [copy.deepcopy(c) for c in self._circuits.values()]

    async def save(self, circuit: Circuit) -> None:
        self._circuits[circuit.id] = copy.deepcopy(circuit)

    async def delete(self, circuit_id: str) -> None:
        self._circuits.pop(circuit_id, None)


class MongoCircuitStore(CircuitStore):
    """Circuit store over the circuits collection."""

    def __init__(self, collection):
        self.collection = collection

    async def get(self, circuit_id: str) -> Optional[Circuit]:
        record = await self.collection.find_one({"id": circuit_id}, {"_id": 0})
        return Circuit.from_dict(record) if record else None

    async def list(self) -> List[Circuit]:
        records = await self.collection.find({}, {"_id": 0}).to_list(None)
        return [Circuit.from_dict(r) for r in records]

    async def save(self, circuit: Circuit) -> None:
        await self.collection.replace_one({"id": circuit.id}, circuit.to_dict(), upsert=True)

    async def delete(self, circuit_id: str) -> None:
        await self.collection.delete_one({"id": circuit_id})


# =============================================================================
# APPROVAL REQUESTS
# =============================================================================

class ApprovalStore(ABC):
    """Approval requests, open and closed."""

    @abstractmethod
    async def get(self, approval_id: str) -> Optional[ApprovalRequest]:
        """Return the request, or None if it does not exist."""

    @abstractmethod
    async def save(self, request: ApprovalRequest) -> None:
        """Insert or replace the request with its responses."""

    @abstractmethod
    async def open_for_document(self, document_id: str) -> Optional[ApprovalRequest]:
        """Return the document's Open request, if any."""

    @abstractmethod
    async def for_document(self, document_id: str) -> List[ApprovalRequest]:
        """Return every request of the document, oldest first."""

    @abstractmethod
    async def list_open(self) -> List[ApprovalRequest]:
        """Return every Open request, oldest first."""


class InMemoryApprovalStore(ApprovalStore):

    def __init__(self):
        self._requests: Dict[str, ApprovalRequest] = {}

    async def get(self, approval_id: str) -> Optional[ApprovalRequest]:
        request = self._requests.get(approval_id)
        return copy.deepcopy(request) if request else None

    async def save(self, request: ApprovalRequest) -> None:
        self._requests[request.id] = copy.deepcopy(request)

    async def open_for_document(self, document_id: str) -> Optional[ApprovalRequest]:
        for request in self._requests.values():
            if request.document_id == document_id and request.is_open:
                return copy.deepcopy(request)
        return None

    async def for_document(self, document_id: str) -> List[ApprovalRequest]:
        return self._sorted(r for r in self._requests.values() if r.document_id == document_id)

    async def list_open(self) -> List[ApprovalRequest]:
        return self._sorted(r for r in self._requests.values() if r.is_open)

    @staticmethod
    def _sorted(requests) -> List[ApprovalRequest]:
        return [copy.deepcopy(r) for r in sorted(requests, key=lambda r: r.created_at)]


class MongoApprovalStore(ApprovalStore):
    """Approval store over the approval_requests collection."""

    def __init__(self, collection):
        self.collection = collection

    async def get(self, approval_id: str) -> Optional[ApprovalRequest]:
        record = await self.collection.find_one({"id": approval_id}, {"_id": 0})
        return ApprovalRequest.from_dict(record) if record else None

    async def save(self, request: ApprovalRequest) -> None:
        await self.collection.replace_one({"id": request.id}, request.to_dict(), upsert=True)

    async def open_for_document(self, document_id: str) -> Optional[ApprovalRequest]:
        record = await self.collection.find_one(
            {"document_id": document_id, "status": ApprovalStatus.OPEN.value},
            {"_id": 0}
        )
        return ApprovalRequest.from_dict(record) if record else None

    async def for_document(self, document_id: str) -> List[ApprovalRequest]:
        records = await self.collection.find(
            {"document_id": document_id}, {"_id": 0}
        ).sort("created_at", 1).to_list(None)
        return [ApprovalRequest.from_dict(r) for r in records]

    async def list_open(self) -> List[ApprovalRequest]:
        records = await self.collection.find(
            {"status": ApprovalStatus.OPEN.value}, {"_id": 0}
        ).sort("created_at", 1).to_list(None)
        return [ApprovalRequest.from_dict(r) for r in records]


# =============================================================================
# HISTORY
# =============================================================================

class HistoryStore(ABC):
    """Append-only storage; there is no update or delete."""

    @abstractmethod
    async def append(self, entries: Sequence[HistoryEntry]) -> None:
        """Append entries, keeping their order."""

    @abstractmethod
    async def for_document(self, document_id: str) -> List[HistoryEntry]:
        """Return the document's entries in the order they were appended."""


class InMemoryHistoryStore(HistoryStore):

    def __init__(self):
        self._entries: Dict[str, List[HistoryEntry]] = defaultdict(list)

    async def append(self, entries: Sequence[HistoryEntry]) -> None:
        for entry in entries:
            self._entries[entry.document_id].append(entry)

    async def for_document(self, document_id: str) -> List[HistoryEntry]:
        return list(self._entries.get(document_id, []))


class MongoHistoryStore(HistoryStore):
    """History kept in a circuit_history array on each hub_documents record."""

    def __init__(self, collection):
        self.collection = collection

    async def append(self, entries: Sequence[HistoryEntry]) -> None:
        by_document: Dict[str, List[dict]] = defaultdict(list)
        for entry in entries:
            by_document[entry.document_id].append(entry.to_dict())

        for document_id, records in by_document.items():
            result = await self.collection.update_one(
                {"id": document_id},
                {"$push": {"circuit_history": {"$each": records}}}
            )
            if result.matched_count == 0:
                raise DocumentNotFoundError(
                    "Document vanished before its history was written",
                    document_id=document_id,
                )

    async def for_document(self, document_id: str) -> List[HistoryEntry]:
        record = await self.collection.find_one({"id": document_id}, {"_id": 0, "circuit_history": 1})
        if not record:
            return []
        return [HistoryEntry.from_dict(e) for e in record.get("circuit_history") or []]
