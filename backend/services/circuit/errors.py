"""
Circuit Hub - Workflow Errors

Error taxonomy for the circuit engine. Every failure is raised synchronously
with enough context (ids, current state) for the caller to pick a corrective
action. Nothing here is retried automatically.

Categories:
- validation: malformed input, never retried
- state_conflict: the document/request is busy or already answered
- structural: permanent until the underlying resource changes
- not_found: unknown document/circuit/status/step/request id
- authorization: the actor may not act on this request
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    STATE_CONFLICT = "state_conflict"
    STRUCTURAL = "structural"
    NOT_FOUND = "not_found"
    AUTHORIZATION = "authorization"


class WorkflowError(Exception):
    """Base class for all engine errors."""

    category = ErrorCategory.VALIDATION
    default_message = "Workflow error"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.default_message
        self.context: Dict[str, Any] = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": self.message,
            "error": type(self).__name__,
            "category": self.category.value,
            "context": self.context,
        }


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationError(WorkflowError):
    category = ErrorCategory.VALIDATION
    default_message = "Invalid input"


class NoSuchTransitionError(WorkflowError):
    category = ErrorCategory.VALIDATION
    default_message = "No step leads from the current status to the target status"


class AmbiguousTransitionError(WorkflowError):
    category = ErrorCategory.VALIDATION
    default_message = "More than one outgoing step; choose a target status explicitly"


class NotAssignedError(WorkflowError):
    category = ErrorCategory.VALIDATION
    default_message = "Document is not assigned to a circuit"


class StatusNotOnPathError(WorkflowError):
    category = ErrorCategory.VALIDATION
    default_message = "Target status is not on the document's completed path"


# =============================================================================
# STATE CONFLICTS
# =============================================================================

class TransitionInProgressError(WorkflowError):
    category = ErrorCategory.STATE_CONFLICT
    default_message = "A transition is already in progress for this document"


class AlreadyAssignedError(WorkflowError):
    category = ErrorCategory.STATE_CONFLICT
    default_message = "Document is already assigned to a circuit"


class DocumentExistsError(WorkflowError):
    category = ErrorCategory.STATE_CONFLICT
    default_message = "Document already exists"


class AlreadyRespondedError(WorkflowError):
    category = ErrorCategory.STATE_CONFLICT
    default_message = "Approver has already responded to this request"


class NotYourTurnError(WorkflowError):
    category = ErrorCategory.STATE_CONFLICT
    default_message = "Another approver must respond first"


class RequestClosedError(WorkflowError):
    category = ErrorCategory.STATE_CONFLICT
    default_message = "Approval request is already resolved"


class NoHistoryError(WorkflowError):
    category = ErrorCategory.STATE_CONFLICT
    default_message = "No previous status found in the document history"


class CircuitCompletedError(WorkflowError):
    category = ErrorCategory.STATE_CONFLICT
    default_message = "Document has reached a final status"


# =============================================================================
# STRUCTURAL
# =============================================================================

class DuplicateStepError(WorkflowError):
    category = ErrorCategory.STRUCTURAL
    default_message = "A step with this current and next status already exists"


class CircuitActiveError(WorkflowError):
    category = ErrorCategory.STRUCTURAL
    default_message = "Circuit is active; its structure cannot be changed"


class CircuitInactiveError(WorkflowError):
    category = ErrorCategory.STRUCTURAL
    default_message = "Circuit is not active"


class NoStepsError(WorkflowError):
    category = ErrorCategory.STRUCTURAL
    default_message = "Circuit has no steps"


class MissingInitialStatusError(WorkflowError):
    category = ErrorCategory.STRUCTURAL
    default_message = "Circuit does not have an initial status defined"


class DuplicateInitialStatusError(WorkflowError):
    category = ErrorCategory.STRUCTURAL
    default_message = "Circuit already has an initial status"


class InUseError(WorkflowError):
    category = ErrorCategory.STRUCTURAL
    default_message = "Resource is in use"


class BacktrackNotAllowedError(WorkflowError):
    category = ErrorCategory.STRUCTURAL
    default_message = "This circuit does not allow backtracking"


# =============================================================================
# NOT FOUND
# =============================================================================

class NotFoundError(WorkflowError):
    category = ErrorCategory.NOT_FOUND
    default_message = "Not found"


class DocumentNotFoundError(NotFoundError):
    default_message = "Document not found"


class CircuitNotFoundError(NotFoundError):
    default_message = "Circuit not found"


class StatusNotFoundError(NotFoundError):
    default_message = "Status not found"


class StepNotFoundError(NotFoundError):
    default_message = "Step not found"


class ApprovalNotFoundError(NotFoundError):
    default_message = "Approval request not found"


# =============================================================================
# AUTHORIZATION
# =============================================================================

class NotAnApproverError(WorkflowError):
    category = ErrorCategory.AUTHORIZATION
    default_message = "User is not an approver for this request"


class NotAuthorizedError(WorkflowError):
    category = ErrorCategory.AUTHORIZATION
    default_message = "User has no authority over this step"
