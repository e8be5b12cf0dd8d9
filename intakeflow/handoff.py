"""Human-handoff resolution: reasons, priority, ticket and click-to-call token.

Reason codes are appended in a fixed precedence order and every matching
condition is included, so the first entry is always the primary cause.
Priority never resolves to ``low`` automatically; that level is reserved for
manual override by an operator.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from intakeflow.engine.session import SessionState

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_MINUTES = 10

# (label, candidate paths); the first present path wins
SUMMARY_FIELDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Address", ("derived.address_one_line", "collected.address")),
    ("Services", ("collected.services_requested",)),
    ("Frequency", ("collected.frequency",)),
)


class TicketStatus(StrEnum):
    OPEN = "open"
    ASSIGNED = "assigned"
    RESOLVED = "resolved"
    CLOSED = "closed"


class Priority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class HandoffTicket(BaseModel):
    ticket_id: str
    session_id: str
    status: TicketStatus = TicketStatus.OPEN
    priority: Priority = Priority.NORMAL
    reason_codes: list[str] = Field(min_length=1)
    summary: str
    assigned_to: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ClickToCallToken(BaseModel):
    token_id: str
    session_id: str
    token: str
    expires_at: datetime


# ── Reasons & priority ───────────────────────────────────────────────


def resolve_reasons(session: SessionState) -> list[str]:
    """Return the ordered, non-empty list of escalation reason codes."""
    derived = session.derived
    reasons: list[str] = []
    if derived.get("human_requested"):
        reasons.append("customer_requested_human")
    if derived.get("negative_sentiment_detected"):
        reasons.append("negative_sentiment")
    if derived.get("max_attempts_exceeded"):
        reasons.append(f"max_attempts_exceeded_{derived.get('exceeded_state')}")
    if derived.get("escalate_to_handoff"):
        reasons.append("objection_escalation")
    if not reasons:
        reasons.append("unknown")
    return reasons


def resolve_priority(reasons: list[str], session: SessionState) -> Priority:
    derived = session.derived
    if "negative_sentiment" in reasons:
        return Priority.HIGH
    if derived.get("urgency") == "high" or derived.get("timeline") == "asap":
        return Priority.HIGH
    return Priority.NORMAL


# ── Ticket ───────────────────────────────────────────────────────────


def _lookup(session: SessionState, path: str) -> Any:
    scope, _, name = path.partition(".")
    return session.scopes()[scope].get(name)


def build_handoff_summary(session: SessionState, reasons: list[str]) -> str:
    """Human-readable digest an operator reads before taking over."""
    parts = [
        f"Customer Contact: {session.contact or 'unknown'}",
        f"Current State: {session.current_node_id}",
        f"Reason(s): {', '.join(reasons)}",
    ]
    for label, paths in SUMMARY_FIELDS:
        for path in paths:
            value = _lookup(session, path)
            if not value:
                continue
            if isinstance(value, (list, tuple)):
                value = ", ".join(str(v) for v in value)
            parts.append(f"{label}: {value}")
            break
    return "\n".join(parts)


def create_handoff_ticket(
    session: SessionState,
    reasons: list[str] | None = None,
    priority: Priority | None = None,
) -> HandoffTicket:
    """Combine resolved reasons/priority and a summary into an open ticket."""
    reasons = reasons or resolve_reasons(session)
    priority = priority or resolve_priority(reasons, session)
    ticket = HandoffTicket(
        ticket_id=uuid.uuid4().hex,
        session_id=session.session_id,
        priority=priority,
        reason_codes=reasons,
        summary=build_handoff_summary(session, reasons),
    )
    logger.info(
        "Handoff ticket %s for session %s (priority=%s, reasons=%s)",
        ticket.ticket_id, session.session_id, ticket.priority, ",".join(reasons),
    )
    return ticket


# ── Click-to-call ────────────────────────────────────────────────────


def generate_click_to_call_token(
    session_id: str,
    ttl_minutes: int = DEFAULT_TOKEN_TTL_MINUTES,
    *,
    now: datetime | None = None,
) -> ClickToCallToken:
    now = now or datetime.now(UTC)
    return ClickToCallToken(
        token_id=uuid.uuid4().hex,
        session_id=session_id,
        token=secrets.token_urlsafe(16)[:12],
        expires_at=now + timedelta(minutes=ttl_minutes),
    )


def is_token_expired(token: ClickToCallToken, now: datetime | None = None) -> bool:
    """A token is expired once the current time is past ``expires_at``."""
    return (now or datetime.now(UTC)) > token.expires_at


def build_click_to_call_url(token: str, base_url: str) -> str:
    return f"{base_url.rstrip('/')}/api/click-to-call/{token}"
