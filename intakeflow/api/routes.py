"""FastAPI route definitions for the IntakeFlow API."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Request

from intakeflow.api.schemas import (
    AdvanceRequest,
    AdvanceResponse,
    ClickToCallResponse,
    ConfirmRequest,
    HealthResponse,
    ReserveRequest,
    ValidateResponse,
    ValidationIssueOut,
)
from intakeflow.conversation import ConversationService
from intakeflow.engine.session import SessionState
from intakeflow.errors import (
    ConcurrencyConflictError,
    ExternalServiceError,
    FlowNotFoundError,
    ReservationExpiredError,
    ReservationNotFoundError,
    SessionNotFoundError,
    SlotNotFoundError,
)
from intakeflow.flows.validator import validate
from intakeflow.handoff import HandoffTicket, is_token_expired
from intakeflow.scheduling import Booking, Reservation, SchedulingSlot
from intakeflow.services.router import (
    ConfirmBookingRequest,
    ListSlotsRequest,
    ReserveSlotRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()

INTERNAL_ERROR_DETAIL = "An internal error occurred. Please try again."


def _get_service(request: Request) -> ConversationService:
    """Retrieve the conversation service from app state.

    The service is built once during the FastAPI lifespan (see
    ``server.py``) together with its repository and flow registry.
    """
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return service


def _internal_error(request: Request, what: str) -> HTTPException:
    # Full traceback stays in the server log; the client gets a generic detail.
    request_id = getattr(request.state, "request_id", "?")
    logger.exception("[%s] Error %s", request_id, what)
    return HTTPException(status_code=500, detail=INTERNAL_ERROR_DETAIL)


# ── Health ───────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    service = getattr(request.app.state, "service", None)
    flows = service.registry.versions() if service is not None else []
    return HealthResponse(flows=flows)


# ── Sessions ─────────────────────────────────────────────────────────


@router.post("/sessions/advance", response_model=AdvanceResponse)
async def advance_session(body: AdvanceRequest, request: Request):
    """Feed one inbound answer to a session and return the reply to send.

    The first call for a new ``session_id`` starts the session on the
    requested flow version; later calls stay on the version the session
    started with.
    """
    service = _get_service(request)
    try:
        reply = await service.advance(
            body.flow_version, body.session_id, body.answer, contact=body.contact,
        )
    except FlowNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConcurrencyConflictError as exc:
        raise HTTPException(status_code=409, detail="Session was updated concurrently; retry.") from exc
    except Exception as exc:
        raise _internal_error(request, "advancing session") from exc

    return AdvanceResponse(
        session_id=reply.session_id,
        flow_version=reply.flow_version,
        status=reply.status,
        messages=reply.messages,
        outcome=reply.outcome.model_dump(mode="json") if reply.outcome else None,
        ticket_id=reply.ticket_id,
        click_to_call_url=reply.click_to_call_url,
    )


@router.get("/sessions/{session_id}", response_model=SessionState)
async def get_session(session_id: str, request: Request):
    service = _get_service(request)
    try:
        return await service.get_session(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


# ── Flows ────────────────────────────────────────────────────────────


@router.post("/flows/validate", response_model=ValidateResponse)
async def validate_flow(
    definition: Any = Body(...),
    require_reachable: bool = False,
):
    """Validate a flow document without registering it."""
    result = validate(definition, require_reachable=require_reachable)

    def _issues(items) -> list[ValidationIssueOut]:
        return [
            ValidationIssueOut(kind=i.kind.value, message=i.message, node_id=i.node_id)
            for i in items
        ]

    graph = result.graph
    return ValidateResponse(
        ok=result.ok,
        errors=_issues(result.errors),
        warnings=_issues(result.warnings),
        version=graph.version_key if graph else None,
        node_count=len(graph.nodes) if graph else 0,
        question_count=graph.question_count if graph else 0,
    )


# ── Scheduling ───────────────────────────────────────────────────────


@router.get("/slots", response_model=list[SchedulingSlot])
async def list_slots(request: Request, session_id: str | None = None):
    service = _get_service(request)
    try:
        response = await service.router.dispatch(ListSlotsRequest(session_id=session_id))
    except ExternalServiceError as exc:
        raise HTTPException(status_code=503, detail="Scheduling is temporarily unavailable.") from exc
    return response.slots


@router.post("/slots/{slot_id}/reservations", response_model=Reservation, status_code=201)
async def reserve_slot(slot_id: str, body: ReserveRequest, request: Request):
    service = _get_service(request)
    try:
        return await service.router.dispatch(
            ReserveSlotRequest(session_id=body.session_id, slot_id=slot_id),
        )
    except SlotNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConcurrencyConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ExternalServiceError as exc:
        raise HTTPException(status_code=503, detail="Scheduling is temporarily unavailable.") from exc


@router.post("/reservations/{reservation_id}/confirm", response_model=Booking)
async def confirm_reservation(reservation_id: str, body: ConfirmRequest, request: Request):
    """Confirm a held reservation.  Repeat calls return the same booking."""
    service = _get_service(request)
    try:
        return await service.router.dispatch(
            ConfirmBookingRequest(session_id=body.session_id, reservation_id=reservation_id),
        )
    except ReservationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ReservationExpiredError as exc:
        raise HTTPException(status_code=410, detail=str(exc)) from exc
    except ExternalServiceError as exc:
        raise HTTPException(status_code=503, detail="Scheduling is temporarily unavailable.") from exc


# ── Handoff ──────────────────────────────────────────────────────────


@router.get("/handoff/tickets/{ticket_id}", response_model=HandoffTicket)
async def get_ticket(ticket_id: str, request: Request):
    service = _get_service(request)
    ticket = await service.get_ticket(ticket_id)
    if ticket is None:
        raise HTTPException(status_code=404, detail=f"Ticket {ticket_id} not found")
    return ticket


@router.get("/click-to-call/{token}", response_model=ClickToCallResponse)
async def click_to_call(token: str, request: Request):
    """Resolve a click-to-call link.  Expired links answer 410."""
    service = _get_service(request)
    found = await service.get_click_to_call(token)
    if found is None:
        raise HTTPException(status_code=404, detail="Unknown click-to-call link")
    if is_token_expired(found):
        raise HTTPException(status_code=410, detail="This click-to-call link has expired")

    ticket_id = None
    try:
        session = await service.get_session(found.session_id)
        ticket_id = session.handoff.get("ticket_id")
    except SessionNotFoundError:
        logger.warning("Token %s points at missing session %s", token, found.session_id)
    return ClickToCallResponse(
        session_id=found.session_id, expires_at=found.expires_at, ticket_id=ticket_id,
    )
