"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from intakeflow.engine.session import SessionStatus


class AdvanceRequest(BaseModel):
    """One inbound event from a channel adapter."""

    flow_version: str = Field(
        ..., min_length=1, max_length=200,
        description="Flow key, either 'id@version' or 'id' for the latest version",
    )
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Unique session identifier for conversation continuity",
    )
    answer: str | list[str] | int | float | bool | None = Field(
        None, description="Raw answer; omit on first contact",
    )
    contact: str | None = Field(None, max_length=200, description="Phone number or email")


class AdvanceResponse(BaseModel):
    """What to send back to the customer for this turn."""

    session_id: str
    flow_version: str
    status: SessionStatus
    messages: list[str]
    outcome: dict[str, Any] | None = None
    ticket_id: str | None = None
    click_to_call_url: str | None = None


class ValidationIssueOut(BaseModel):
    kind: str
    message: str
    node_id: str | None = None


class ValidateResponse(BaseModel):
    ok: bool
    errors: list[ValidationIssueOut] = Field(default_factory=list)
    warnings: list[ValidationIssueOut] = Field(default_factory=list)
    version: str | None = None
    node_count: int = 0
    question_count: int = 0


class ReserveRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=100)


class ConfirmRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=100)


class ClickToCallResponse(BaseModel):
    session_id: str
    expires_at: datetime
    ticket_id: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "intakeflow"
    flows: list[str] = Field(default_factory=list)
