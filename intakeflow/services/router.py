"""Typed dispatch of collaborator calls.

Every external call the conversation layer makes is a request message with
a fixed ``call_kind``.  ``ToolRouter.dispatch`` looks up the registered
handler for the message type and runs it in a worker thread under a
per-kind timeout.

* Timeouts and unexpected failures become ``ExternalServiceError`` so the
  caller can answer with a canned fallback.
* Domain errors (``SchedulingError``, ``ConcurrencyConflictError``) pass
  through unchanged so callers can map them to specific responses.
* Every call records success/failure metrics.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, Field

from intakeflow.config import Settings
from intakeflow.errors import ExternalServiceError, IntakeFlowError
from intakeflow.flows.models import QuestionNode
from intakeflow.scheduling import Booking, Reservation, SchedulingSlot, SlotScheduler
from intakeflow.services.extraction import ExtractionResult, FieldExtractor
from intakeflow.services.metrics import MetricsClient
from intakeflow.services.record_sink import RecordSinkClient

logger = logging.getLogger(__name__)


# ── Request / response messages ──────────────────────────────────────


class ToolRequest(BaseModel):
    call_kind: ClassVar[str]


class ExtractFieldsRequest(ToolRequest):
    call_kind: ClassVar[str] = "extract_fields"
    node: QuestionNode
    answer: str


class DeliverRecordRequest(ToolRequest):
    call_kind: ClassVar[str] = "deliver_record"
    session_id: str
    flow_id: str
    record: dict[str, Any]


class DeliverRecordResponse(BaseModel):
    delivered: bool
    response: dict[str, Any] = Field(default_factory=dict)


class ListSlotsRequest(ToolRequest):
    call_kind: ClassVar[str] = "list_slots"
    session_id: str | None = None
    window_days: int | None = None
    max_slots: int | None = None


class ListSlotsResponse(BaseModel):
    slots: list[SchedulingSlot]


class ReserveSlotRequest(ToolRequest):
    call_kind: ClassVar[str] = "reserve_slot"
    session_id: str
    slot_id: str


class ConfirmBookingRequest(ToolRequest):
    call_kind: ClassVar[str] = "confirm_booking"
    session_id: str
    reservation_id: str


# Seconds; a registration may override its own.
DEFAULT_TIMEOUTS: dict[str, float] = {
    "extract_fields": 8.0,
    "deliver_record": 30.0,
    "list_slots": 5.0,
    "reserve_slot": 5.0,
    "confirm_booking": 5.0,
}
FALLBACK_TIMEOUT_SECONDS = 10.0

R = TypeVar("R", bound=ToolRequest)


class ToolRouter:
    """Maps request types to handlers and runs them with timeouts."""

    def __init__(self, metrics: MetricsClient | None = None):
        self._handlers: dict[type[ToolRequest], tuple[Callable[[Any], Any], float]] = {}
        self._metrics = metrics or MetricsClient(enabled=False)

    def register(
        self,
        request_type: type[R],
        handler: Callable[[R], Any],
        *,
        timeout: float | None = None,
    ) -> None:
        if timeout is None:
            timeout = DEFAULT_TIMEOUTS.get(request_type.call_kind, FALLBACK_TIMEOUT_SECONDS)
        self._handlers[request_type] = (handler, timeout)
        logger.debug("Registered %s handler (timeout=%.1fs)", request_type.call_kind, timeout)

    def has_handler(self, request_type: type[ToolRequest]) -> bool:
        return request_type in self._handlers

    async def dispatch(self, request: ToolRequest) -> Any:
        """Run the handler registered for ``type(request)``."""
        kind = request.call_kind
        entry = self._handlers.get(type(request))
        if entry is None:
            raise ExternalServiceError(kind, "no handler registered")
        handler, timeout = entry

        t0 = time.perf_counter()
        try:
            result = await asyncio.wait_for(asyncio.to_thread(handler, request), timeout)
        except TimeoutError:
            elapsed = (time.perf_counter() - t0) * 1000
            self._metrics.record_call_failure(kind, "timeout", latency_ms=elapsed)
            logger.warning("%s timed out after %.1fs", kind, timeout)
            raise ExternalServiceError(kind, f"timed out after {timeout:.1f}s") from None
        except IntakeFlowError as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            self._metrics.record_call_failure(kind, type(exc).__name__, latency_ms=elapsed)
            raise
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            self._metrics.record_call_failure(kind, type(exc).__name__, latency_ms=elapsed)
            logger.exception("%s failed", kind)
            raise ExternalServiceError(kind, str(exc) or type(exc).__name__) from exc

        elapsed = (time.perf_counter() - t0) * 1000
        self._metrics.record_call_success(kind, latency_ms=elapsed)
        return result


# ── Wiring ───────────────────────────────────────────────────────────


def build_router(
    settings: Settings,
    scheduler: SlotScheduler,
    *,
    extractor: FieldExtractor | None = None,
    sink: RecordSinkClient | None = None,
    metrics: MetricsClient | None = None,
) -> ToolRouter:
    """Register every collaborator the configuration makes available."""
    router = ToolRouter(metrics)

    def _list_slots(req: ListSlotsRequest) -> ListSlotsResponse:
        slots = scheduler.list_available(
            req.session_id, window_days=req.window_days, max_slots=req.max_slots,
        )
        return ListSlotsResponse(slots=slots)

    def _reserve(req: ReserveSlotRequest) -> Reservation:
        return scheduler.reserve_slot(req.session_id, scheduler.slot_by_id(req.slot_id))

    def _confirm(req: ConfirmBookingRequest) -> Booking:
        return scheduler.confirm_booking(req.session_id, req.reservation_id)

    router.register(ListSlotsRequest, _list_slots)
    router.register(ReserveSlotRequest, _reserve)
    router.register(ConfirmBookingRequest, _confirm)

    if extractor is not None:
        def _extract(req: ExtractFieldsRequest) -> ExtractionResult:
            return extractor.extract(req.node, req.answer)

        router.register(
            ExtractFieldsRequest, _extract, timeout=settings.extraction_timeout_seconds,
        )

    if sink is not None:
        def _deliver(req: DeliverRecordRequest) -> DeliverRecordResponse:
            response = sink.deliver(req.record, session_id=req.session_id, flow_id=req.flow_id)
            return DeliverRecordResponse(delivered=True, response=response)

        router.register(DeliverRecordRequest, _deliver)

    return router
