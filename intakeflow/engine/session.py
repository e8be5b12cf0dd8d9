"""Per-conversation state read and written by the interpreter."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from intakeflow.flows.models import FlowGraph

# Derived facts that short-circuit the flow into a human handoff.
ESCALATION_FLAGS = (
    "max_attempts_exceeded",
    "human_requested",
    "negative_sentiment_detected",
    "escalate_to_handoff",
)


class SessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ESCALATED = "escalated"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SessionState(BaseModel):
    """One conversation bound to a single flow version.

    Mutated only by ``FlowInterpreter`` (and by the conversation service when
    it records external signals in ``derived``).  ``revision`` increases on
    every durable save and backs the repository's optimistic check.
    """

    session_id: str
    flow_id: str
    flow_version: str
    current_node_id: str
    contact: str | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    collected: dict[str, Any] = Field(default_factory=dict)
    derived: dict[str, Any] = Field(default_factory=dict)
    attempt_counters: dict[str, int] = Field(default_factory=dict)
    resume_stack: list[str] = Field(default_factory=list)
    scheduling: dict[str, Any] = Field(default_factory=dict)
    handoff: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    revision: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("attempt_counters")
    @classmethod
    def _non_negative(cls, counters: dict[str, int]) -> dict[str, int]:
        for node_id, count in counters.items():
            if count < 0:
                raise ValueError(f"attempt counter for {node_id} is negative")
        return counters

    @classmethod
    def start(
        cls, graph: FlowGraph, session_id: str, *, contact: str | None = None,
    ) -> SessionState:
        """A fresh session positioned on the graph's start node."""
        return cls(
            session_id=session_id,
            flow_id=graph.meta.id,
            flow_version=graph.version_key,
            current_node_id=graph.start_node_id,
            contact=contact,
        )

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE

    @property
    def escalation_pending(self) -> bool:
        return any(self.derived.get(flag) for flag in ESCALATION_FLAGS)

    def scopes(self) -> dict[str, dict[str, Any]]:
        """Named value scopes used by predicates, templates and projection."""
        return {
            "collected": self.collected,
            "derived": self.derived,
            "scheduling": self.scheduling,
        }

    def touch(self) -> None:
        self.updated_at = _utcnow()
