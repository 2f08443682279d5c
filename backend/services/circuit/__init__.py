"""
Circuit Hub - Document Circuit Engine

Moves documents through ordered sets of statuses ("circuits"), gated by
configurable approval rules.

Components:
- CircuitRegistry: statuses, steps and circuit activation
- ApprovalGate / ApprovalTracker: approval rules, requests and responses
- HistoryLog: append-only transition and approval history
- persistence: circuit, approval request and history stores (in-memory or MongoDB)
- WorkflowEngine: the per-document state machine
"""

from .approval import ApprovalGate, ApprovalTracker
from .engine import AvailableTransitions, WorkflowEngine
from .errors import ErrorCategory, WorkflowError
from .history import HistoryLog
from .models import (
    ApprovalRequest, ApprovalResponse, ApprovalStatus, Circuit, Decision,
    Document, GroupApproval, HistoryEntry, HistoryOutcome, RuleType,
    SingleApprover, Status, Step, rule_from_dict,
)
from .persistence import (
    ApprovalStore, CircuitStore, HistoryStore,
    InMemoryApprovalStore, InMemoryCircuitStore, InMemoryHistoryStore,
    MongoApprovalStore, MongoCircuitStore, MongoHistoryStore,
)
from .registry import CircuitRegistry
from .stores import (
    DocumentStore, InMemoryDocumentStore, MongoDocumentStore,
    MongoUserDirectory, StaticUserDirectory, UserDirectory,
)

__all__ = [
    'ApprovalGate', 'ApprovalTracker',
    'AvailableTransitions', 'WorkflowEngine',
    'ErrorCategory', 'WorkflowError',
    'HistoryLog',
    'ApprovalRequest', 'ApprovalResponse', 'ApprovalStatus', 'Circuit', 'Decision',
    'Document', 'GroupApproval', 'HistoryEntry', 'HistoryOutcome', 'RuleType',
    'SingleApprover', 'Status', 'Step', 'rule_from_dict',
    'ApprovalStore', 'CircuitStore', 'HistoryStore',
    'InMemoryApprovalStore', 'InMemoryCircuitStore', 'InMemoryHistoryStore',
    'MongoApprovalStore', 'MongoCircuitStore', 'MongoHistoryStore',
    'CircuitRegistry',
    'DocumentStore', 'InMemoryDocumentStore', 'MongoDocumentStore',
    'MongoUserDirectory', 'StaticUserDirectory', 'UserDirectory',
]
