"""Session state machine over a validated ``FlowGraph``.

``advance`` handles exactly one node per call and returns one ``Outcome``.
``run_step`` is what channel adapters call per inbound event: it keeps
advancing through message nodes (and the node reached after a valid answer)
until the flow needs input, completes, or escalates.

The interpreter itself is synchronous and does no I/O other than the
injected ``SlotScheduler``; field extraction and record delivery are the
conversation service's job.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any, assert_never

from intakeflow.config import Settings
from intakeflow.engine.inputs import parse_answer, parse_slot_choice, parse_yes_no
from intakeflow.engine.outcomes import (
    Advanced,
    Completed,
    Escalated,
    InputSpec,
    Outcome,
    Prompt,
    StepResult,
)
from intakeflow.engine.projection import project_record
from intakeflow.engine.session import SessionState, SessionStatus
from intakeflow.errors import (
    FlowCycleError,
    InputValidationError,
    SchedulingError,
    SessionClosedError,
    SlotConflictError,
)
from intakeflow.flows.models import (
    ActivationNode,
    Branch,
    DeriveRule,
    FlowGraph,
    FollowUp,
    MessageNode,
    QuestionNode,
    ReviewNode,
)
from intakeflow.flows.predicates import MISSING, evaluate, resolve_path
from intakeflow.handoff import create_handoff_ticket
from intakeflow.scheduling import SchedulingSlot, SlotScheduler

logger = logging.getLogger(__name__)

_TEMPLATE_RE = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")

SLOT_CONFLICT_MESSAGE = "Sorry, that time was just taken. Here are the latest openings."
NO_SLOTS_REASON = "no_slots_available"
BOOKING_FAILED_REASON = "booking_failed"


def render_text(template: str | None, session: SessionState) -> str:
    """Fill ``{{scope.path}}`` placeholders; unknown placeholders stay as-is."""
    if not template:
        return ""
    scopes = session.scopes()

    def _sub(match: re.Match[str]) -> str:
        value = resolve_path(match.group(1), scopes)
        if value is MISSING or value is None:
            return match.group(0)
        if isinstance(value, (list, tuple)):
            return ", ".join(str(v) for v in value)
        return str(value)

    return _TEMPLATE_RE.sub(_sub, template)


def _numbered(options: list[dict[str, str]]) -> str:
    return "\n".join(f"{i}) {opt['label']}" for i, opt in enumerate(options, start=1))


class FlowInterpreter:
    """Advances ``SessionState`` through a ``FlowGraph`` one event at a time."""

    def __init__(self, settings: Settings, *, scheduler: SlotScheduler | None = None):
        self._settings = settings
        self._scheduler = scheduler

    def start_session(
        self, graph: FlowGraph, session_id: str, *, contact: str | None = None,
    ) -> SessionState:
        session = SessionState.start(graph, session_id, contact=contact)
        logger.info("Session %s started on %s", session_id, graph.version_key)
        return session

    # ── Public entry points ──────────────────────────────────────────

    def advance(self, graph: FlowGraph, session: SessionState, answer: Any = None) -> Outcome:
        """Process one node.  Mutates *session* in place."""
        if not session.is_active:
            raise SessionClosedError(f"Session {session.session_id} is {session.status}")
        if session.escalation_pending:
            return self._escalate(session)

        node = graph.node(session.current_node_id)
        if isinstance(node, MessageNode):
            return self._advance_message(session, node)
        elif isinstance(node, QuestionNode):
            return self._advance_question(graph, session, node, answer)
        elif isinstance(node, ReviewNode):
            return self._advance_review(graph, session, node, answer)
        elif isinstance(node, ActivationNode):
            return self._advance_activation(graph, session, node)
        else:
            assert_never(node)

    def run_step(self, graph: FlowGraph, session: SessionState, answer: Any = None) -> StepResult:
        """Advance until the flow waits for input or terminates.

        Re-entering a node already visited in this step raises
        ``FlowCycleError``, so each step is bounded by the node count.
        """
        messages: list[str] = []
        visited = {session.current_node_id}
        outcome = self.advance(graph, session, answer)
        while isinstance(outcome, Advanced):
            if outcome.text:
                messages.append(outcome.text)
            if outcome.node_id in visited:
                raise FlowCycleError(outcome.node_id)
            visited.add(outcome.node_id)
            outcome = self.advance(graph, session)
        return StepResult(messages=messages, outcome=outcome)

    # ── Node handlers ────────────────────────────────────────────────

    def _advance_message(self, session: SessionState, node: MessageNode) -> Outcome:
        text = render_text(node.text, session)
        return self._move(session, node.next or node.default_next, text)

    def _advance_question(
        self, graph: FlowGraph, session: SessionState, node: QuestionNode, answer: Any,
    ) -> Outcome:
        if node.input_type == "slot_choice":
            return self._advance_slot_choice(graph, session, node, answer)
        if answer is None:
            return self._prompt(session, node)

        try:
            value = parse_answer(node, answer)
        except InputValidationError as exc:
            return self._reject(graph, session, node, exc)
        return self._accept(graph, session, node, value)

    def _advance_slot_choice(
        self, graph: FlowGraph, session: SessionState, node: QuestionNode, answer: Any,
    ) -> Outcome:
        scheduler = self._require_scheduler()
        offered = session.scheduling.get("offered")
        if answer is None or not offered:
            if not self._offer_slots(session, scheduler):
                logger.warning("Session %s: no slots available for %s", session.session_id, node.id)
                return self._escalate(session, [NO_SLOTS_REASON])
            return self._prompt(session, node)

        try:
            chosen = parse_slot_choice(answer, offered)
        except InputValidationError as exc:
            return self._reject(graph, session, node, exc)

        slot = SchedulingSlot.model_validate(chosen)
        try:
            reservation = scheduler.reserve_slot(session.session_id, slot)
        except SlotConflictError:
            if not self._offer_slots(session, scheduler):
                return self._escalate(session, [NO_SLOTS_REASON])
            return self._prompt(session, node, error=SLOT_CONFLICT_MESSAGE)

        session.scheduling.update({
            "selected_slot": chosen,
            "slot_display": slot.display,
            "reservation_id": reservation.reservation_id,
        })
        return self._accept(graph, session, node, slot.id)

    def _advance_review(
        self, graph: FlowGraph, session: SessionState, node: ReviewNode, answer: Any,
    ) -> Outcome:
        if answer is None:
            return Prompt(
                node_id=node.id,
                text=render_text(node.text, session),
                input_spec=InputSpec(input_type="yes_no", required=False),
            )
        try:
            confirmed = parse_yes_no(answer) == "yes"
        except InputValidationError:
            confirmed = None
        session.derived["review_confirmed"] = confirmed
        if session.escalation_pending:
            return self._escalate(session)
        target = self._next_target(graph, session, node.follow_ups, node.transitions,
                                   node.default_next or node.next, confirmed)
        return self._move(session, target)

    def _advance_activation(
        self, graph: FlowGraph, session: SessionState, node: ActivationNode,
    ) -> Outcome:
        if node.confirms_booking:
            reservation_id = session.scheduling.get("reservation_id")
            if reservation_id:
                try:
                    booking = self._require_scheduler().confirm_booking(
                        session.session_id, reservation_id,
                    )
                except SchedulingError:
                    logger.exception("Session %s: booking confirmation failed", session.session_id)
                    return self._escalate(session, [BOOKING_FAILED_REASON])
                session.derived["job_id"] = booking.job_id
                session.scheduling["job_id"] = booking.job_id
            else:
                logger.warning(
                    "Session %s reached %s without a held slot", session.session_id, node.id,
                )

        record = project_record(graph.config_mappings, session)
        session.result = record
        session.status = SessionStatus.COMPLETED
        logger.info("Session %s completed at %s", session.session_id, node.id)
        return Completed(record=record, text=render_text(node.text, session) or None)

    # ── Answer handling ──────────────────────────────────────────────

    def _accept(
        self, graph: FlowGraph, session: SessionState, node: QuestionNode, value: Any,
    ) -> Outcome:
        if value is not None:
            session.collected[node.answer_key] = value
        session.attempt_counters[node.id] = 0
        for rule in node.derive:
            session.derived[rule.fact] = self._derive(rule, value)
        if session.escalation_pending:
            return self._escalate(session)

        target = self._next_target(graph, session, node.follow_ups, node.transitions,
                                   node.default_next or node.next, value)
        return self._move(session, target)

    def _reject(
        self, graph: FlowGraph, session: SessionState, node: QuestionNode, exc: InputValidationError,
    ) -> Outcome:
        attempts = session.attempt_counters.get(node.id, 0) + 1
        session.attempt_counters[node.id] = attempts
        limit = self._retry_limit(graph, node)
        logger.debug(
            "Session %s: invalid answer for %s (%d/%d): %s",
            session.session_id, node.id, attempts, limit, exc.message,
        )
        if attempts > limit:
            session.derived["max_attempts_exceeded"] = True
            session.derived["exceeded_state"] = node.id
            return self._escalate(session)
        error = node.validation.error if node.validation and node.validation.error else exc.message
        return self._prompt(session, node, error=error)

    @staticmethod
    def _derive(rule: DeriveRule, value: Any) -> Any:
        if rule.map is None:
            return value if value is not None else rule.default
        if isinstance(value, (list, tuple)):
            return [rule.map.get(str(v), rule.default) for v in value]
        return rule.map.get(str(value), rule.default)

    def _retry_limit(self, graph: FlowGraph, node: QuestionNode) -> int:
        if node.max_retries is not None:
            return node.max_retries
        if graph.handoff_policy.max_retries is not None:
            return graph.handoff_policy.max_retries
        return self._settings.max_retries

    # ── Transitions ──────────────────────────────────────────────────

    def _next_target(
        self,
        graph: FlowGraph,
        session: SessionState,
        follow_ups: tuple[FollowUp, ...],
        transitions: tuple[Branch, ...],
        fallback: str | None,
        answer: Any,
    ) -> str | None:
        lookup = self._lookup(session, answer)

        main = fallback
        for branch in transitions:
            if evaluate(branch.when, lookup):
                main = branch.next
                break

        for follow_up in follow_ups:
            if follow_up.ask in session.resume_stack or self._answered(graph, session, follow_up.ask):
                continue
            if evaluate(follow_up.when, lookup):
                if main:
                    session.resume_stack.append(main)
                logger.debug("Session %s: follow-up %s before %s", session.session_id, follow_up.ask, main)
                return follow_up.ask
        return main

    @staticmethod
    def _lookup(session: SessionState, answer: Any) -> Callable[[str], Any]:
        scopes = session.scopes()

        def lookup(path: str) -> Any:
            if path == "answer":
                return MISSING if answer is None else answer
            return resolve_path(path, scopes)

        return lookup

    @staticmethod
    def _answered(graph: FlowGraph, session: SessionState, node_id: str) -> bool:
        node = graph.node(node_id)
        return isinstance(node, QuestionNode) and node.answer_key in session.collected

    def _move(self, session: SessionState, target: str | None, text: str | None = None) -> Outcome:
        if target is None and session.resume_stack:
            target = session.resume_stack.pop()
        if target is None:
            session.result = {}
            session.status = SessionStatus.COMPLETED
            logger.info("Session %s completed at %s (no onward node)", session.session_id, session.current_node_id)
            return Completed(record={}, text=text or None)
        session.current_node_id = target
        return Advanced(node_id=target, text=text or None)

    # ── Prompts ──────────────────────────────────────────────────────

    def _prompt(self, session: SessionState, node: QuestionNode, *, error: str | None = None) -> Prompt:
        if node.input_type == "slot_choice":
            options = [
                {"key": slot["id"], "label": slot["display"]}
                for slot in session.scheduling.get("offered", [])
            ]
        else:
            options = [{"key": o.key, "label": o.label} for o in node.options]

        text = render_text(node.prompt, session)
        if options:
            text = f"{text}\n{_numbered(options)}"
        return Prompt(
            node_id=node.id,
            text=text,
            input_spec=InputSpec(input_type=node.input_type, options=options, required=node.required),
            error=error,
            attempt=session.attempt_counters.get(node.id, 0),
        )

    def _offer_slots(self, session: SessionState, scheduler: SlotScheduler) -> bool:
        slots = scheduler.list_available(session.session_id)
        session.scheduling["offered"] = [s.model_dump(mode="json") for s in slots]
        return bool(slots)

    def _require_scheduler(self) -> SlotScheduler:
        if self._scheduler is None:
            raise SchedulingError("This flow needs a SlotScheduler but none was configured")
        return self._scheduler

    # ── Escalation ───────────────────────────────────────────────────

    def _escalate(self, session: SessionState, reasons: list[str] | None = None) -> Escalated:
        ticket = create_handoff_ticket(session, reasons)
        session.status = SessionStatus.ESCALATED
        session.handoff.update({
            "ticket_id": ticket.ticket_id,
            "reasons": list(ticket.reason_codes),
            "priority": ticket.priority.value,
        })
        reservation_id = session.scheduling.get("reservation_id")
        if self._scheduler and reservation_id and not session.scheduling.get("job_id"):
            self._scheduler.release_reservation(session.session_id, reservation_id)
        return Escalated(ticket=ticket)
