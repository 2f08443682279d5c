"""
Circuit Hub - Circuit, Status & Step Registry

Holds circuit definitions: the statuses a document can occupy and the steps
(directed edges) between them.

Every read goes to the circuit store and every edit saves the whole circuit
back, so there is no cached copy to drift from what is stored. While a circuit
is active its structure is frozen: structural edits are rejected outright
instead of being synchronized with in-flight transitions.
"""

import logging
from typing import Any, Dict, List, Optional

from .errors import (
    CircuitActiveError, CircuitNotFoundError, DuplicateInitialStatusError,
    DuplicateStepError, InUseError, MissingInitialStatusError, NoStepsError,
    StatusNotFoundError, StepNotFoundError, ValidationError,
)
from .models import ApprovalRule, Circuit, Status, Step, new_id
from .persistence import CircuitStore, InMemoryCircuitStore
from .stores import DocumentStore

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class CircuitRegistry:
    """Circuit definitions and their structural invariants."""

    def __init__(self, document_store: DocumentStore, store: Optional[CircuitStore] = None):
        self.document_store = document_store
        self.store = store or InMemoryCircuitStore()

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def get_circuit(self, circuit_id: str) -> Circuit:
        circuit = await self.store.get(circuit_id)
        if circuit is None:
            raise CircuitNotFoundError(circuit_id=circuit_id)
        return circuit

    async def list_circuits(self, active_only: bool = False) -> List[Circuit]:
        return [c for c in await self.store.list() if c.is_active or not active_only]

    async def get_status(self, circuit_id: str, status_id: str) -> Status:
        return self._status_in(await self.get_circuit(circuit_id), status_id)

    async def get_step(self, circuit_id: str, step_id: str) -> Step:
        return self._step_in(await self.get_circuit(circuit_id), step_id)

    async def find_step(self, circuit_id: str, current_status_id: str, next_status_id: str) -> Optional[Step]:
        circuit = await self.get_circuit(circuit_id)
        return circuit.find_step(current_status_id, next_status_id)

    async def outgoing_steps(self, circuit_id: str, status_id: str) -> List[Step]:
        circuit = await self.get_circuit(circuit_id)
        return [s for s in circuit.steps if s.current_status_id == status_id]

    # =========================================================================
    # CIRCUITS
    # =========================================================================

    async def create_circuit(self, title: str, description: str = "", allow_backtrack: bool = True) -> Circuit:
        if not title or not title.strip():
            raise ValidationError("Circuit title is required")

        circuit = Circuit(
            id=new_id(),
            title=title.strip(),
            description=description or "",
            allow_backtrack=allow_backtrack,
        )
        await self.store.save(circuit)
        logger.info("Circuit created: id=%s, title=%s", circuit.id, circuit.title)
        return circuit

    async def update_circuit(
        self,
        circuit_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        allow_backtrack: Optional[bool] = None
    ) -> Circuit:
        circuit = await self._editable_circuit(circuit_id)
        if title is not None:
            if not title.strip():
                raise ValidationError("Circuit title is required")
            circuit.title = title.strip()
        if description is not None:
            circuit.description = description
        if allow_backtrack is not None:
            circuit.allow_backtrack = allow_backtrack
        await self.store.save(circuit)
        return circuit

    async def activate_circuit(self, circuit_id: str) -> Circuit:
        circuit = await self.get_circuit(circuit_id)
        if circuit.is_active:
            return circuit
        if not circuit.steps:
            raise NoStepsError(circuit_id=circuit_id)
        if circuit.initial_status is None:
            raise MissingInitialStatusError(circuit_id=circuit_id)

        circuit.is_active = True
        await self.store.save(circuit)
        logger.info("Circuit activated: id=%s, steps=%d", circuit_id, len(circuit.steps))
        return circuit

    async def deactivate_circuit(self, circuit_id: str) -> Circuit:
        """Deactivate a circuit; documents still in flight block deactivation."""
        circuit = await self.get_circuit(circuit_id)
        if not circuit.is_active:
            return circuit

        in_flight = await self.in_flight_documents(circuit_id)
        if in_flight:
            raise InUseError(
                "Circuit has documents in flight",
                circuit_id=circuit_id,
                document_ids=in_flight,
            )

        circuit.is_active = False
        await self.store.save(circuit)
        logger.info("Circuit deactivated: id=%s", circuit_id)
        return circuit

    async def delete_circuit(self, circuit_id: str) -> None:
        circuit = await self.get_circuit(circuit_id)
        documents = await self.document_store.list_by_circuit(circuit_id)
        if documents:
            raise InUseError(
                "Cannot delete circuit that is in use by documents",
                circuit_id=circuit_id,
                document_ids=[d.id for d in documents],
            )
        if circuit.is_active:
            raise CircuitActiveError(circuit_id=circuit_id)

        await self.store.delete(circuit_id)
        logger.info("Circuit deleted: id=%s", circuit_id)

    async def in_flight_documents(self, circuit_id: str) -> List[str]:
        """Ids of documents inside the circuit that have not reached a final status."""
        circuit = await self.get_circuit(circuit_id)
        in_flight = []
        for document in await self.document_store.list_by_circuit(circuit_id):
            if document.current_status_id is None:
                continue
            status = circuit.get_status(document.current_status_id)
            if status is None or not status.is_final:
                in_flight.append(document.id)
        return in_flight

    async def circuit_has_documents(self, circuit_id: str) -> Dict[str, Any]:
        """Whether any document, finished or not, is assigned to the circuit."""
        await self.get_circuit(circuit_id)
        documents = await self.document_store.list_by_circuit(circuit_id)
        return {
            "circuit_id": circuit_id,
            "has_documents": bool(documents),
            "document_count": len(documents),
        }

    # =========================================================================
    # STATUSES
    # =========================================================================

    async def add_status(
        self,
        circuit_id: str,
        title: str,
        is_required: bool = False,
        is_initial: bool = False,
        is_final: bool = False
    ) -> Status:
        circuit = await self._editable_circuit(circuit_id)
        if not title or not title.strip():
            raise ValidationError("Status title is required")
        if is_initial and circuit.initial_status is not None:
            raise DuplicateInitialStatusError(
                circuit_id=circuit_id,
                initial_status_id=circuit.initial_status.id,
            )

        status = Status(
            id=new_id(),
            circuit_id=circuit_id,
            title=title.strip(),
            is_required=is_required,
            is_initial=is_initial,
            is_final=is_final,
        )
        circuit.statuses.append(status)
        await self.store.save(circuit)
        return status

    async def update_status(
        self,
        circuit_id: str,
        status_id: str,
        title: Optional[str] = None,
        is_required: Optional[bool] = None,
        is_initial: Optional[bool] = None,
        is_final: Optional[bool] = None
    ) -> Status:
        circuit = await self._editable_circuit(circuit_id)
        status = self._status_in(circuit, status_id)

        if title is not None:
            if not title.strip():
                raise ValidationError("Status title is required")
            status.title = title.strip()
        if is_initial:
            current_initial = circuit.initial_status
            if current_initial is not None and current_initial.id != status_id:
                raise DuplicateInitialStatusError(
                    circuit_id=circuit_id,
                    initial_status_id=current_initial.id,
                )
        if is_initial is not None:
            status.is_initial = is_initial
        if is_required is not None:
            status.is_required = is_required
        if is_final is not None:
            status.is_final = is_final
        await self.store.save(circuit)
        return status

    async def remove_status(self, circuit_id: str, status_id: str) -> None:
        circuit = await self._editable_circuit(circuit_id)
        status = self._status_in(circuit, status_id)

        referencing = [
            s.id for s in circuit.steps
            if status_id in (s.current_status_id, s.next_status_id)
        ]
        if referencing:
            raise InUseError(
                "Status is referenced by steps",
                circuit_id=circuit_id,
                status_id=status_id,
                step_ids=referencing,
            )
        circuit.statuses.remove(status)
        await self.store.save(circuit)

    # =========================================================================
    # STEPS
    # =========================================================================

    async def create_step(
        self,
        circuit_id: str,
        current_status_id: str,
        next_status_id: str,
        requires_approval: bool = False,
        rule: Optional[ApprovalRule] = None,
        title: str = ""
    ) -> Step:
        circuit = await self._editable_circuit(circuit_id)
        self._check_edge(circuit, current_status_id, next_status_id)

        step = Step(
            id=new_id(),
            circuit_id=circuit_id,
            current_status_id=current_status_id,
            next_status_id=next_status_id,
            title=title or self._default_step_title(circuit, current_status_id, next_status_id),
            requires_approval=requires_approval,
            approval_rule=rule if requires_approval else None,
        )
        circuit.steps.append(step)
        await self.store.save(circuit)
        logger.info(
            "Step created: circuit=%s, %s -> %s, requires_approval=%s",
            circuit_id, current_status_id, next_status_id, requires_approval
        )
        return step

    async def update_step(
        self,
        circuit_id: str,
        step_id: str,
        current_status_id: Optional[str] = None,
        next_status_id: Optional[str] = None,
        requires_approval: Optional[bool] = None,
        rule: Optional[ApprovalRule] = _UNSET,
        title: Optional[str] = None
    ) -> Step:
        circuit = await self._editable_circuit(circuit_id)
        step = self._step_in(circuit, step_id)

        new_current = current_status_id or step.current_status_id
        new_next = next_status_id or step.next_status_id
        if (new_current, new_next) != (step.current_status_id, step.next_status_id):
            self._check_edge(circuit, new_current, new_next)
            step.current_status_id = new_current
            step.next_status_id = new_next

        if title is not None:
            step.title = title
        if requires_approval is not None:
            step.requires_approval = requires_approval
        if rule is not _UNSET:
            step.approval_rule = rule
        if not step.requires_approval:
            step.approval_rule = None
        await self.store.save(circuit)
        return step

    async def remove_step(self, circuit_id: str, step_id: str) -> None:
        circuit = await self._editable_circuit(circuit_id)
        circuit.steps.remove(self._step_in(circuit, step_id))
        await self.store.save(circuit)

    # =========================================================================
    # VALIDATION
    # =========================================================================

    async def validate_circuit(self, circuit_id: str) -> Dict[str, Any]:
        """
        Check a circuit definition for problems.

        Errors make the circuit unusable; warnings flag configurations that
        will behave unexpectedly (e.g. gated steps that auto-approve).
        """
        circuit = await self.get_circuit(circuit_id)
        errors: List[str] = []
        warnings: List[str] = []

        if not circuit.statuses:
            errors.append("Circuit must have at least one status")
        if not circuit.steps:
            errors.append("Circuit must have at least one step")

        initial_count = sum(1 for s in circuit.statuses if s.is_initial)
        if initial_count == 0:
            errors.append("Circuit must have an initial status")
        elif initial_count > 1:
            errors.append("Circuit cannot have more than one initial status")

        if not any(s.is_final for s in circuit.statuses):
            errors.append("Circuit must have at least one final status")

        status_ids = {s.id for s in circuit.statuses}
        for step in circuit.steps:
            if step.current_status_id not in status_ids:
                errors.append(f"Step {step.title} has an invalid current status")
            if step.next_status_id not in status_ids:
                errors.append(f"Step {step.title} has an invalid next status")
            if step.requires_approval and not (step.approval_rule and step.approval_rule.approver_ids):
                warnings.append(f"Step {step.title} requires approval but has no approvers configured")

        return {
            "circuit_id": circuit_id,
            "is_valid": not errors,
            "errors": errors,
            "warnings": warnings,
        }

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _editable_circuit(self, circuit_id: str) -> Circuit:
        circuit = await self.get_circuit(circuit_id)
        if circuit.is_active:
            raise CircuitActiveError(circuit_id=circuit_id)
        return circuit

    @staticmethod
    def _status_in(circuit: Circuit, status_id: str) -> Status:
        status = circuit.get_status(status_id)
        if status is None:
            raise StatusNotFoundError(circuit_id=circuit.id, status_id=status_id)
        return status

    @staticmethod
    def _step_in(circuit: Circuit, step_id: str) -> Step:
        step = circuit.get_step(step_id)
        if step is None:
            raise StepNotFoundError(circuit_id=circuit.id, step_id=step_id)
        return step

    def _check_edge(self, circuit: Circuit, current_status_id: str, next_status_id: str) -> None:
        if not current_status_id or not next_status_id:
            raise ValidationError("Both current and next status are required")
        if current_status_id == next_status_id:
            raise ValidationError(
                "A step cannot loop onto its own status",
                status_id=current_status_id,
            )
        for status_id in (current_status_id, next_status_id):
            if circuit.get_status(status_id) is None:
                raise StatusNotFoundError(circuit_id=circuit.id, status_id=status_id)
        if circuit.find_step(current_status_id, next_status_id) is not None:
            raise DuplicateStepError(
                circuit_id=circuit.id,
                current_status_id=current_status_id,
                next_status_id=next_status_id,
            )

    @staticmethod
    def _default_step_title(circuit: Circuit, current_status_id: str, next_status_id: str) -> str:
        return f"{circuit.get_status(current_status_id).title} -> {circuit.get_status(next_status_id).title}"
