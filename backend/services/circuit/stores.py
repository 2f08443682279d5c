"""
Circuit Hub - Collaborator Stores

The engine consumes two external collaborators through these abstractions:
- DocumentStore: persists circuit_id/current_status_id on the document record,
  which is owned by the document CRUD layer
- UserDirectory: resolves approver identities and eligibility

Each has an in-memory implementation (tests, local runs) and a MongoDB
implementation backed by motor.
"""

import dataclasses
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from .config import WORKFLOW_ADMIN_ROLES
from .errors import DocumentExistsError, DocumentNotFoundError
from .models import ApprovalRequest, Document, utc_now

logger = logging.getLogger(__name__)

DOCUMENT_PROJECTION = {
    "_id": 0, "id": 1, "circuit_id": 1, "current_status_id": 1,
    "is_circuit_completed": 1, "workflow_status_updated_utc": 1,
}


# =============================================================================
# DOCUMENT STORE
# =============================================================================

class DocumentStore(ABC):
    """Read/write access to the circuit fields of document records."""

    @abstractmethod
    async def get(self, document_id: str) -> Optional[Document]:
        """Return the document, or None if it does not exist."""

    @abstractmethod
    async def create(self, document_id: str) -> Document:
        """Register a new, unassigned document. Raises DocumentExistsError."""

    @abstractmethod
    async def save(self, document: Document) -> None:
        """Persist the circuit fields of an existing document. Raises DocumentNotFoundError."""

    @abstractmethod
    async def list_by_circuit(self, circuit_id: str) -> List[Document]:
        """Return every document that references the circuit."""

    @abstractmethod
    async def list_pending(self) -> List[Document]:
        """Return assigned documents that have not completed their circuit."""


class InMemoryDocumentStore(DocumentStore):
    """
    Dict-backed document store.

    Returns copies so that callers cannot mutate stored state without save().
    """

    def __init__(self, document_ids: Optional[Iterable[str]] = None):
        self._documents: Dict[str, Document] = {}
        for document_id in document_ids or []:
            self.add(document_id)

    def add(self, document_id: str) -> Document:
        """Register a status-less document, as the CRUD layer would on create."""
        document = Document(id=document_id, updated_at=utc_now())
        self._documents[document_id] = document
        return dataclasses.replace(document)

    async def get(self, document_id: str) -> Optional[Document]:
        document = self._documents.get(document_id)
        return dataclasses.replace(document) if document else None

    async def create(self, document_id: str) -> Document:
        if document_id in self._documents:
            raise DocumentExistsError(document_id=document_id)
        return self.add(document_id)

    async def save(self, document: Document) -> None:
        if document.id not in self._documents:
            raise DocumentNotFoundError(document_id=document.id)
        self._documents[document.id] = dataclasses.replace(document)

    async def list_by_circuit(self, circuit_id: str) -> List[Document]:
        return [
            dataclasses.replace(d) for d in self._documents.values()
            if d.circuit_id == circuit_id
        ]

    async def list_pending(self) -> List[Document]:
        return [
            dataclasses.replace(d) for d in self._documents.values()
            if d.is_assigned and not d.is_circuit_completed
        ]


class MongoDocumentStore(DocumentStore):
    """Document store over the hub_documents collection."""

    def __init__(self, collection):
        self.collection = collection

    async def get(self, document_id: str) -> Optional[Document]:
        record = await self.collection.find_one({"id": document_id}, DOCUMENT_PROJECTION)
        if not record:
            return None
        return Document.from_dict(record)

    async def create(self, document_id: str) -> Document:
        if await self.collection.find_one({"id": document_id}, {"_id": 0, "id": 1}):
            raise DocumentExistsError(document_id=document_id)
        document = Document(id=document_id, updated_at=utc_now())
        record = document.to_dict()
        record["created_utc"] = record["workflow_status_updated_utc"]
        await self.collection.insert_one(record)
        return document

    async def save(self, document: Document) -> None:
        fields = document.to_dict()
        fields.pop("id")
        result = await self.collection.update_one({"id": document.id}, {"$set": fields})
        if result.matched_count == 0:
            raise DocumentNotFoundError(
                "Document vanished before its circuit fields were saved",
                document_id=document.id,
            )

    async def list_by_circuit(self, circuit_id: str) -> List[Document]:
        records = await self.collection.find({"circuit_id": circuit_id}, DOCUMENT_PROJECTION).to_list(None)
        return [Document.from_dict(r) for r in records]

    async def list_pending(self) -> List[Document]:
        records = await self.collection.find(
            {"circuit_id": {"$ne": None}, "is_circuit_completed": {"$ne": True}},
            DOCUMENT_PROJECTION
        ).to_list(None)
        return [Document.from_dict(r) for r in records]


# =============================================================================
# USER DIRECTORY
# =============================================================================

class UserDirectory(ABC):
    """
    Resolves users for the approval gate.

    Authority over a request (who may withdraw it) is decided here: the actor
    who requested the move, any approver named on the rule snapshot, or any
    user holding one of the admin roles.
    """

    def __init__(self, admin_roles: Optional[Iterable[str]] = None):
        self.admin_roles = set(admin_roles if admin_roles is not None else WORKFLOW_ADMIN_ROLES)

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Return {"id", "roles", "is_active"} for the user, or None."""

    async def is_eligible_approver(self, user_id: str) -> bool:
        user = await self.get_user(user_id)
        return bool(user and user.get("is_active", True))

    async def has_authority(self, user_id: str, request: ApprovalRequest) -> bool:
        if user_id == request.requested_by or user_id in request.approver_ids:
            return True
        user = await self.get_user(user_id)
        if not user:
            return False
        return bool(self.admin_roles.intersection(user.get("roles", [])))


class StaticUserDirectory(UserDirectory):
    """
    In-memory user directory.

    With strict=False (the default) unknown ids resolve to active users with no
    roles, which suits deployments where identities live elsewhere.
    """

    def __init__(
        self,
        users: Optional[Iterable[Dict[str, Any]]] = None,
        strict: bool = False,
        admin_roles: Optional[Iterable[str]] = None
    ):
        super().__init__(admin_roles)
        self.strict = strict
        self._users: Dict[str, Dict[str, Any]] = {}
        for user in users or []:
            self.add_user(user["id"], roles=user.get("roles"), is_active=user.get("is_active", True))

    def add_user(self, user_id: str, roles: Optional[Iterable[str]] = None, is_active: bool = True) -> None:
        self._users[user_id] = {"id": user_id, "roles": list(roles or []), "is_active": is_active}

    def deactivate(self, user_id: str) -> None:
        if user_id in self._users:
            self._users[user_id]["is_active"] = False
        else:
            self.add_user(user_id, is_active=False)

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        user = self._users.get(user_id)
        if user is None and not self.strict:
            return {"id": user_id, "roles": [], "is_active": True}
        return user


class MongoUserDirectory(UserDirectory):
    """User directory over the users collection."""

    def __init__(self, collection, admin_roles: Optional[Iterable[str]] = None):
        super().__init__(admin_roles)
        self.collection = collection

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        record = await self.collection.find_one(
            {"id": user_id},
            {"_id": 0, "id": 1, "role": 1, "roles": 1, "is_active": 1}
        )
        if not record:
            return None
        roles = record.get("roles") or ([record["role"]] if record.get("role") else [])
        return {"id": record["id"], "roles": roles, "is_active": record.get("is_active", True)}
