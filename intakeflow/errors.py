"""Exception taxonomy for the flow engine and its collaborators.

Build-time problems surface as ``StructuralValidationError`` carrying every
defect at once.  Run-time problems are either recovered locally (bad answers,
external-service failures) or surfaced to the caller as retryable conflicts.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from intakeflow.flows.validator import ValidationIssue


class IntakeFlowError(Exception):
    """Base class for every error raised by this package."""


# ── Build time ───────────────────────────────────────────────────────


class StructuralValidationError(IntakeFlowError):
    """A flow definition violates one or more structural invariants."""

    def __init__(self, errors: list[ValidationIssue]):
        self.errors = list(errors)
        lines = "\n".join(f"  - {issue.message}" for issue in self.errors)
        super().__init__(f"Flow definition has {len(self.errors)} error(s):\n{lines}")


# ── Run time ─────────────────────────────────────────────────────────


class InputValidationError(IntakeFlowError):
    """An answer failed its ``inputType`` or pattern checks."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ExternalServiceError(IntakeFlowError):
    """A collaborator call timed out or failed."""

    def __init__(self, call_kind: str, message: str):
        self.call_kind = call_kind
        super().__init__(f"{call_kind}: {message}")


class ConcurrencyConflictError(IntakeFlowError):
    """A shared-resource mutation lost a race.  Safe to retry."""

    retryable = True


class SlotConflictError(ConcurrencyConflictError):
    """The requested slot is already held or booked by another session."""

    def __init__(self, slot_id: str):
        self.slot_id = slot_id
        super().__init__(f"Slot {slot_id} is already reserved")


class FlowNotFoundError(IntakeFlowError):
    """No validated graph is registered under the requested version."""


class SessionNotFoundError(IntakeFlowError):
    """No session is stored under the requested id."""


class SessionClosedError(IntakeFlowError):
    """The session already reached a terminal status."""


class FlowCycleError(IntakeFlowError):
    """A single step tried to re-enter a node it already visited."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node {node_id} was revisited within one step")


# ── Scheduling ───────────────────────────────────────────────────────


class SchedulingError(IntakeFlowError):
    """Base class for slot, reservation and booking failures."""


class SlotNotFoundError(SchedulingError):
    pass


class ReservationNotFoundError(SchedulingError):
    pass


class ReservationExpiredError(SchedulingError):
    pass
