"""Conversation entry point used by channel adapters (SMS, web chat, CLI).

``ConversationService.advance`` is the only place where a session is loaded,
stepped and saved.  Events for the same ``session_id`` are serialized with an
``asyncio.Lock`` held from load through durable save; different sessions run
in parallel.  Blocking work (repository I/O, collaborator calls) runs in
worker threads so the event loop stays free.

The end user never sees a technical error: collaborator failures become a
canned reply and engine faults become a handoff-style fallback.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Any

from pydantic import BaseModel, Field

from intakeflow.config import Settings
from intakeflow.engine.interpreter import FlowInterpreter
from intakeflow.engine.outcomes import Completed, Escalated, Outcome, Prompt, StepResult
from intakeflow.engine.session import SessionState, SessionStatus
from intakeflow.engine.signals import apply_signals
from intakeflow.errors import ExternalServiceError, FlowCycleError, SessionNotFoundError
from intakeflow.flows.compiler import FlowRegistry
from intakeflow.flows.models import FlowGraph, QuestionNode
from intakeflow.handoff import (
    ClickToCallToken,
    HandoffTicket,
    build_click_to_call_url,
    generate_click_to_call_token,
)
from intakeflow.scheduling import SlotScheduler
from intakeflow.services.extraction import FieldExtractor
from intakeflow.services.metrics import MetricsClient
from intakeflow.services.record_sink import RecordSinkClient
from intakeflow.services.router import (
    DeliverRecordRequest,
    ExtractFieldsRequest,
    ToolRouter,
    build_router,
)
from intakeflow.services.storage import Repository, build_repository

logger = logging.getLogger(__name__)

# ── Canned replies ───────────────────────────────────────────────────

FALLBACK_REPLY = (
    "Sorry, something went wrong on our side. "
    "A member of our team will follow up with you shortly."
)
EXTRACTION_FALLBACK_REPLY = "Sorry, I didn't quite catch that. Let's try again."
HANDOFF_NOTICE = (
    "Thanks for your patience. I'm passing you to a member of our team. "
    "Tap to call us now: {url}"
)
CLOSED_NOTICE = {
    SessionStatus.COMPLETED: "You're all set! We already have everything we need.",
    SessionStatus.ESCALATED: "A member of our team has your request and will be in touch shortly.",
}


class ConversationReply(BaseModel):
    """What a channel adapter needs to render one turn."""

    session_id: str
    flow_version: str
    status: SessionStatus
    messages: list[str] = Field(default_factory=list)
    outcome: Outcome | None = None
    ticket_id: str | None = None
    click_to_call_url: str | None = None


class ConversationService:
    """Loads, steps and persists sessions, one event at a time per session."""

    def __init__(
        self,
        settings: Settings,
        registry: FlowRegistry,
        repository: Repository,
        interpreter: FlowInterpreter,
        router: ToolRouter,
        metrics: MetricsClient | None = None,
    ):
        self._settings = settings
        self._registry = registry
        self._repository = repository
        self._interpreter = interpreter
        self._router = router
        self._metrics = metrics or MetricsClient(enabled=False)
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def registry(self) -> FlowRegistry:
        return self._registry

    @property
    def router(self) -> ToolRouter:
        return self._router

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    # ── Main entry point ─────────────────────────────────────────────

    async def advance(
        self,
        flow_version: str,
        session_id: str,
        inbound_answer: Any = None,
        *,
        contact: str | None = None,
    ) -> ConversationReply:
        """Process one inbound event and return the reply to send."""
        async with self._lock_for(session_id):
            session = await asyncio.to_thread(self._repository.get_session, session_id)

            if session is None:
                graph = self._registry.get(flow_version)
                session = self._interpreter.start_session(graph, session_id, contact=contact)
                # First contact: any text only matters for escalation signals.
                apply_signals(session, _as_text(inbound_answer), graph.handoff_policy)
                answer = None
            else:
                graph = self._registry.get(session.flow_version)
                if not session.is_active:
                    return self._closed_reply(session)
                apply_signals(session, _as_text(inbound_answer), graph.handoff_policy)
                try:
                    answer = await self._prepare_answer(graph, session, inbound_answer)
                except ExternalServiceError:
                    return await self._reprompt(graph, session)

            try:
                step = self._interpreter.run_step(graph, session, answer)
            except FlowCycleError:
                logger.exception("Session %s hit a cycle in flow %s", session_id, graph.version_key)
                return ConversationReply(
                    session_id=session_id,
                    flow_version=session.flow_version,
                    status=session.status,
                    messages=[FALLBACK_REPLY],
                )

            reply = await self._finish(graph, session, step)
            await asyncio.to_thread(self._repository.save_session, session)
            return reply

    async def get_session(self, session_id: str) -> SessionState:
        session = await asyncio.to_thread(self._repository.get_session, session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    async def get_ticket(self, ticket_id: str) -> HandoffTicket | None:
        return await asyncio.to_thread(self._repository.get_ticket, ticket_id)

    async def get_click_to_call(self, token: str) -> ClickToCallToken | None:
        return await asyncio.to_thread(self._repository.get_token, token)

    def close(self) -> None:
        """Flush metrics and release the repository."""
        self._metrics.flush()
        self._repository.close()

    # ── Helpers ──────────────────────────────────────────────────────

    async def _prepare_answer(
        self, graph: FlowGraph, session: SessionState, inbound_answer: Any,
    ) -> Any:
        """Run field extraction for ``extract`` questions; otherwise pass through."""
        node = graph.node(session.current_node_id)
        text = _as_text(inbound_answer)
        if not (
            isinstance(node, QuestionNode)
            and node.extract
            and text
            and self._router.has_handler(ExtractFieldsRequest)
        ):
            return inbound_answer

        result = await self._router.dispatch(ExtractFieldsRequest(node=node, answer=text))
        if result.human_requested:
            session.derived["human_requested"] = True
        if result.sentiment == "negative":
            session.derived["negative_sentiment_detected"] = True
        return result.value if result.value is not None else inbound_answer

    async def _reprompt(self, graph: FlowGraph, session: SessionState) -> ConversationReply:
        """Collaborator failed: apologize and repeat the current prompt."""
        step = self._interpreter.run_step(graph, session)
        reply = await self._finish(graph, session, step)
        reply.messages.insert(0, EXTRACTION_FALLBACK_REPLY)
        await asyncio.to_thread(self._repository.save_session, session)
        return reply

    async def _finish(
        self, graph: FlowGraph, session: SessionState, step: StepResult,
    ) -> ConversationReply:
        outcome = step.outcome
        messages = list(step.messages)
        reply = ConversationReply(
            session_id=session.session_id,
            flow_version=session.flow_version,
            status=session.status,
            outcome=outcome,
        )

        if isinstance(outcome, Prompt):
            if outcome.error:
                messages.append(outcome.error)
            messages.append(outcome.text)
        elif isinstance(outcome, Completed):
            if outcome.text:
                messages.append(outcome.text)
            await self._deliver(graph, session, outcome)
            self._metrics.record_outcome(graph.meta.id, "completed")
        elif isinstance(outcome, Escalated):
            url = await self._issue_handoff(session, outcome.ticket)
            reply.ticket_id = outcome.ticket.ticket_id
            reply.click_to_call_url = url
            messages.append(HANDOFF_NOTICE.format(url=url))
            self._metrics.record_outcome(graph.meta.id, "escalated")

        reply.messages = messages
        reply.status = session.status
        return reply

    async def _deliver(self, graph: FlowGraph, session: SessionState, outcome: Completed) -> None:
        if not outcome.record or not self._router.has_handler(DeliverRecordRequest):
            return
        request = DeliverRecordRequest(
            session_id=session.session_id, flow_id=graph.meta.id, record=outcome.record,
        )
        try:
            await self._router.dispatch(request)
            session.derived["record_delivered"] = True
        except ExternalServiceError:
            # The record stays on session.result for a later redelivery.
            session.derived["record_delivered"] = False
            logger.warning("Record delivery failed for session %s", session.session_id)

    async def _issue_handoff(self, session: SessionState, ticket: HandoffTicket) -> str:
        token = generate_click_to_call_token(
            session.session_id, self._settings.click_to_call_ttl_minutes,
        )
        url = build_click_to_call_url(token.token, self._settings.public_base_url)
        await asyncio.to_thread(self._repository.save_ticket, ticket)
        await asyncio.to_thread(self._repository.save_token, token)
        session.handoff.update({
            "token": token.token,
            "token_expires_at": token.expires_at.isoformat(),
            "click_to_call_url": url,
        })
        return url

    def _closed_reply(self, session: SessionState) -> ConversationReply:
        return ConversationReply(
            session_id=session.session_id,
            flow_version=session.flow_version,
            status=session.status,
            messages=[CLOSED_NOTICE[session.status]],
            ticket_id=session.handoff.get("ticket_id"),
            click_to_call_url=session.handoff.get("click_to_call_url"),
        )


def _as_text(answer: Any) -> str | None:
    if isinstance(answer, str):
        return answer
    return None


# ── Wiring ───────────────────────────────────────────────────────────


def build_service(settings: Settings) -> ConversationService:
    """Assemble the service and every collaborator ``settings`` enables."""
    registry = FlowRegistry.from_directory(
        settings.flows_dir, require_reachable=settings.require_reachable_nodes,
    )
    repository = build_repository(settings)
    repository.open()
    metrics = MetricsClient(enabled=settings.metrics_enabled)
    scheduler = SlotScheduler(repository, settings)

    extractor = FieldExtractor(settings) if settings.extraction_enabled else None
    if extractor is None:
        logger.info("ANTHROPIC_API_KEY not set; answers are parsed without field extraction")
    sink = None
    if settings.record_sink_url:
        sink = RecordSinkClient(settings.record_sink_url, settings.record_sink_token)

    router = build_router(settings, scheduler, extractor=extractor, sink=sink, metrics=metrics)
    interpreter = FlowInterpreter(settings, scheduler=scheduler)
    return ConversationService(settings, registry, repository, interpreter, router, metrics)
