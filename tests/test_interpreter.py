"""Tests for the flow interpreter (state machine over a validated graph)."""

from __future__ import annotations

import pytest

from intakeflow.config import Settings
from intakeflow.engine.interpreter import (
    BOOKING_FAILED_REASON,
    NO_SLOTS_REASON,
    SLOT_CONFLICT_MESSAGE,
    FlowInterpreter,
    render_text,
)
from intakeflow.engine.outcomes import Advanced, Completed, Escalated, Prompt
from intakeflow.engine.session import SessionState, SessionStatus
from intakeflow.errors import FlowCycleError, SessionClosedError
from intakeflow.flows.validator import build_graph
from intakeflow.scheduling import ReservationStatus, SlotScheduler

ANSWERS_TO_SLOT = [
    "1,2",                    # services (asks the cleanup follow-up)
    "Lots of oak leaves",     # cleanup_details
    "12 Elm St, Cambridge",   # address
    "2",                      # frequency -> biweekly
    "asap",                   # timeline
    "pat@example.com",        # email
]


def _start(interpreter, graph, session_id="s1"):
    session = interpreter.start_session(graph, session_id, contact="+16175550100")
    step = interpreter.run_step(graph, session)
    return session, step


def _answer_all(interpreter, graph, session, answers):
    step = None
    for answer in answers:
        step = interpreter.run_step(graph, session, answer)
    return step


def _question(node_id: str, **fields) -> dict:
    node = {"id": node_id, "type": "question", "question": f"{node_id}?", "inputType": "free_text"}
    node.update(fields)
    return node


class TestHappyPath:
    def test_start_shows_welcome_then_first_question(self, interpreter, lawn_graph):
        session, step = _start(interpreter, lawn_graph)
        assert step.messages[0].startswith("Hi! Thanks for reaching out")
        assert isinstance(step.outcome, Prompt)
        assert step.outcome.node_id == "services"
        assert "1) Mowing" in step.outcome.text
        assert step.outcome.input_spec.input_type == "multi_select"
        assert session.current_node_id == "services"

    def test_full_intake_books_and_projects(self, interpreter, lawn_graph, repository):
        session, _ = _start(interpreter, lawn_graph)
        step = _answer_all(interpreter, lawn_graph, session, ANSWERS_TO_SLOT)
        assert step.outcome.node_id == "pick_slot"
        assert [o["label"] for o in step.outcome.input_spec.options] == [
            "Tue 9-11am", "Wed 2-4pm", "Thu 10am-12pm",
        ]

        step = interpreter.run_step(lawn_graph, session, "1")
        assert step.outcome.node_id == "review"
        assert step.outcome.text == (
            "Here's what I have: mowing, cleanup at 12 Elm St, Cambridge, biweekly, "
            "estimate visit Tue 9-11am. Reply YES to confirm or NO to pick another time."
        )

        step = interpreter.run_step(lawn_graph, session, "yes")
        outcome = step.outcome
        assert isinstance(outcome, Completed)
        assert session.status is SessionStatus.COMPLETED

        job_id = session.derived["job_id"]
        assert job_id.startswith("job_")
        assert session.scheduling["job_id"] == job_id
        assert job_id in outcome.text
        assert outcome.record == {
            "customer": {"email": "pat@example.com"},
            "property": {"address": "12 Elm St, Cambridge"},
            "service": {
                "types": ["mowing", "cleanup"],
                "includesMowing": True,
                "frequency": "BIWEEKLY",
                "notes": "Lots of oak leaves",
            },
            "schedule": {
                "slotId": "slot_20261020_09",
                "jobId": job_id,
                "priority": "high",
            },
        }
        assert session.result == outcome.record

    def test_activation_maps_list_answers(self, interpreter, lawn_document, repository):
        lawn_document["configMappings"].append({
            "targetPath": "service.codes",
            "sourceNodeId": "services",
            "transform": "mapValue",
            "transformParams": {"map": {"mowing": "MOW", "cleanup": "CLN"}},
        })
        graph = build_graph(lawn_document)
        session, _ = _start(interpreter, graph)
        _answer_all(interpreter, graph, session, ANSWERS_TO_SLOT + ["1"])

        step = interpreter.run_step(graph, session, "yes")
        assert isinstance(step.outcome, Completed)
        assert step.outcome.record["service"]["codes"] == ["MOW", "CLN"]

        reservation = repository.get_reservation(session.scheduling["reservation_id"])
        assert reservation.status is ReservationStatus.CONFIRMED

    def test_derive_rules(self, interpreter, lawn_graph):
        session, _ = _start(interpreter, lawn_graph)
        _answer_all(interpreter, lawn_graph, session, ANSWERS_TO_SLOT)
        assert session.derived["address_one_line"] == "12 Elm St, Cambridge"
        assert session.derived["timeline"] == "asap"
        assert session.derived["urgency"] == "high"


class TestFollowUps:
    def test_follow_up_then_resume(self, interpreter, lawn_graph):
        session, _ = _start(interpreter, lawn_graph)
        step = interpreter.run_step(lawn_graph, session, "cleanup")
        assert step.outcome.node_id == "cleanup_details"
        assert session.resume_stack == ["address"]

        step = interpreter.run_step(lawn_graph, session, "skip")
        assert step.outcome.node_id == "address"
        assert session.resume_stack == []
        assert session.collected["cleanup_notes"] is None

    def test_no_follow_up_when_predicate_fails(self, interpreter, lawn_graph):
        session, _ = _start(interpreter, lawn_graph)
        step = interpreter.run_step(lawn_graph, session, "mowing")
        assert step.outcome.node_id == "address"
        assert session.resume_stack == []

    def test_follow_up_skipped_when_already_answered(self, interpreter, lawn_graph):
        session, _ = _start(interpreter, lawn_graph)
        session.collected["cleanup_notes"] = "already told you"
        step = interpreter.run_step(lawn_graph, session, "cleanup")
        assert step.outcome.node_id == "address"


class TestTransitions:
    @pytest.fixture
    def branching_graph(self, make_flow):
        return build_graph(make_flow([
            _question(
                "has_dog",
                inputType="yes_no",
                transitions=[
                    {"when": {"field": "answer", "equals": "yes"}, "next": "dog_name"},
                    {"when": "always", "next": "gate_code"},
                ],
            ),
            _question("dog_name", next="gate_code"),
            _question("gate_code"),
        ]))

    def test_first_matching_branch_wins(self, interpreter, branching_graph):
        session = interpreter.start_session(branching_graph, "s1")
        step = interpreter.run_step(branching_graph, session, "yes")
        assert step.outcome.node_id == "dog_name"

    def test_catch_all_branch(self, interpreter, branching_graph):
        session = interpreter.start_session(branching_graph, "s1")
        step = interpreter.run_step(branching_graph, session, "no")
        assert step.outcome.node_id == "gate_code"

    def test_missing_onward_node_completes(self, interpreter, branching_graph):
        session = interpreter.start_session(branching_graph, "s1")
        interpreter.run_step(branching_graph, session, "no")
        step = interpreter.run_step(branching_graph, session, "1234")
        assert isinstance(step.outcome, Completed)
        assert step.outcome.record == {}
        assert session.status is SessionStatus.COMPLETED

    def test_advance_handles_one_node(self, interpreter, make_flow):
        graph = build_graph(make_flow([
            {"id": "hello", "type": "message", "text": "Hello {{contact}}", "next": "q1"},
            _question("q1"),
        ]))
        session = interpreter.start_session(graph, "s1")
        outcome = interpreter.advance(graph, session)
        assert isinstance(outcome, Advanced)
        assert outcome.node_id == "q1"
        assert outcome.text == "Hello {{contact}}"


class TestRetriesAndEscalation:
    def test_invalid_answer_reprompts_with_custom_error(self, interpreter, lawn_graph):
        session, _ = _start(interpreter, lawn_graph)
        _answer_all(interpreter, lawn_graph, session, ANSWERS_TO_SLOT[:5])
        step = interpreter.run_step(lawn_graph, session, "not an email")
        assert isinstance(step.outcome, Prompt)
        assert step.outcome.error == "Please send a valid email like name@example.com."
        assert step.outcome.attempt == 1

    def test_third_invalid_answer_escalates(self, interpreter, lawn_graph):
        session, _ = _start(interpreter, lawn_graph)
        _answer_all(interpreter, lawn_graph, session, ANSWERS_TO_SLOT[:5])
        step = _answer_all(interpreter, lawn_graph, session, ["nope", "still nope", "no"])

        assert isinstance(step.outcome, Escalated)
        ticket = step.outcome.ticket
        assert ticket.reason_codes == ["max_attempts_exceeded_email"]
        assert ticket.priority == "high"  # timeline was asap
        assert session.status is SessionStatus.ESCALATED
        assert session.derived["exceeded_state"] == "email"
        assert session.handoff["ticket_id"] == ticket.ticket_id

    def test_valid_answer_resets_counter(self, interpreter, lawn_graph):
        session, _ = _start(interpreter, lawn_graph)
        _answer_all(interpreter, lawn_graph, session, ANSWERS_TO_SLOT[:5])
        _answer_all(interpreter, lawn_graph, session, ["nope", "pat@example.com"])
        assert session.attempt_counters["email"] == 0

    def test_node_max_retries_overrides_policy(self, interpreter, make_flow):
        graph = build_graph(make_flow([_question("zip", inputType="zip_list", maxRetries=0)]))
        session = interpreter.start_session(graph, "s1")
        step = interpreter.run_step(graph, session, "nowhere")
        assert isinstance(step.outcome, Escalated)

    def test_settings_max_retries_is_the_fallback(self, scheduler, make_flow):
        interpreter = FlowInterpreter(Settings(max_retries=1), scheduler=scheduler)
        graph = build_graph(make_flow([_question("zip", inputType="zip_list")]))
        session = interpreter.start_session(graph, "s1")
        assert isinstance(interpreter.run_step(graph, session, "x").outcome, Prompt)
        assert isinstance(interpreter.run_step(graph, session, "x").outcome, Escalated)

    def test_pending_signal_escalates_before_node(self, interpreter, lawn_graph):
        session, _ = _start(interpreter, lawn_graph)
        session.derived["human_requested"] = True
        session.derived["negative_sentiment_detected"] = True
        step = interpreter.run_step(lawn_graph, session, "1")
        assert step.outcome.ticket.reason_codes == ["customer_requested_human", "negative_sentiment"]
        assert step.outcome.ticket.priority == "high"
        assert "services_requested" not in session.collected

    def test_closed_session_rejects_events(self, interpreter, lawn_graph):
        session, _ = _start(interpreter, lawn_graph)
        session.status = SessionStatus.ESCALATED
        with pytest.raises(SessionClosedError):
            interpreter.advance(lawn_graph, session, "hello")


class TestScheduling:
    def _to_slot_prompt(self, interpreter, graph, session_id="s1"):
        session, _ = _start(interpreter, graph, session_id)
        step = _answer_all(interpreter, graph, session, ANSWERS_TO_SLOT)
        return session, step

    def test_choice_holds_slot(self, interpreter, lawn_graph, repository):
        session, _ = self._to_slot_prompt(interpreter, lawn_graph)
        interpreter.run_step(lawn_graph, session, "2")
        assert session.collected["slot_id"] == "slot_20261021_14"
        assert session.scheduling["slot_display"] == "Wed 2-4pm"
        reservation = repository.get_reservation(session.scheduling["reservation_id"])
        assert reservation.status is ReservationStatus.HELD
        assert reservation.session_id == "s1"

    def test_invalid_choice_costs_an_attempt(self, interpreter, lawn_graph):
        session, _ = self._to_slot_prompt(interpreter, lawn_graph)
        step = interpreter.run_step(lawn_graph, session, "7")
        assert step.outcome.error == "Please reply with a number from 1 to 3."
        assert session.attempt_counters["pick_slot"] == 1

    def test_conflict_reoffers_without_counting(self, interpreter, lawn_graph, scheduler):
        session, _ = self._to_slot_prompt(interpreter, lawn_graph)
        scheduler.reserve_slot("someone-else", scheduler.slot_by_id("slot_20261020_09"))

        step = interpreter.run_step(lawn_graph, session, "1")
        assert isinstance(step.outcome, Prompt)
        assert step.outcome.error == SLOT_CONFLICT_MESSAGE
        assert [o["key"] for o in step.outcome.input_spec.options] == [
            "slot_20261021_14", "slot_20261022_10", "slot_20261023_13",
        ]
        assert session.attempt_counters.get("pick_slot", 0) == 0

    def test_review_no_goes_back_and_releases_old_hold(self, interpreter, lawn_graph, repository):
        session, _ = self._to_slot_prompt(interpreter, lawn_graph)
        interpreter.run_step(lawn_graph, session, "1")
        first_hold = session.scheduling["reservation_id"]

        step = interpreter.run_step(lawn_graph, session, "no")
        assert session.derived["review_confirmed"] is False
        assert step.outcome.node_id == "pick_slot"

        interpreter.run_step(lawn_graph, session, "2")
        assert session.scheduling["reservation_id"] != first_hold
        assert repository.get_reservation(first_hold).status is ReservationStatus.RELEASED

    def test_no_slots_escalates(self, repository, clock, lawn_graph):
        settings = Settings(slot_window_days=0)
        interpreter = FlowInterpreter(
            settings, scheduler=SlotScheduler(repository, settings, clock=clock),
        )
        session, _ = _start(interpreter, lawn_graph)
        step = _answer_all(interpreter, lawn_graph, session, ANSWERS_TO_SLOT)
        assert isinstance(step.outcome, Escalated)
        assert step.outcome.ticket.reason_codes == [NO_SLOTS_REASON]

    def test_expired_hold_escalates_at_activation(self, interpreter, lawn_graph, clock, repository):
        session, _ = self._to_slot_prompt(interpreter, lawn_graph)
        interpreter.run_step(lawn_graph, session, "1")
        clock.advance(minutes=30)

        step = interpreter.run_step(lawn_graph, session, "yes")
        assert isinstance(step.outcome, Escalated)
        assert step.outcome.ticket.reason_codes == [BOOKING_FAILED_REASON]
        assert "job_id" not in session.derived
        reservation = repository.get_reservation(session.scheduling["reservation_id"])
        assert reservation.status is ReservationStatus.RELEASED

    def test_escalation_releases_hold(self, interpreter, lawn_graph, repository):
        session, _ = self._to_slot_prompt(interpreter, lawn_graph)
        interpreter.run_step(lawn_graph, session, "1")
        session.derived["human_requested"] = True

        step = interpreter.run_step(lawn_graph, session, "yes")
        assert isinstance(step.outcome, Escalated)
        reservation = repository.get_reservation(session.scheduling["reservation_id"])
        assert reservation.status is ReservationStatus.RELEASED


class TestCycles:
    def test_revisit_within_one_step_raises(self, interpreter, make_flow):
        graph = build_graph(make_flow([
            _question("q1", next="again"),
            {"id": "again", "type": "message", "text": "Once more", "next": "q1"},
        ]))
        session = interpreter.start_session(graph, "s1")
        with pytest.raises(FlowCycleError) as exc_info:
            interpreter.run_step(graph, session, "anything")
        assert exc_info.value.node_id == "q1"


class TestRenderText:
    def test_fills_known_and_keeps_unknown(self):
        session = SessionState(
            session_id="s1", flow_id="f", flow_version="f@1", current_node_id="n",
            collected={"services": ["mowing", "aeration"]},
            derived={"urgency": "low"},
        )
        assert render_text("{{collected.services}} ({{ derived.urgency }}) {{derived.nope}}", session) == (
            "mowing, aeration (low) {{derived.nope}}"
        )

    def test_empty_template(self):
        session = SessionState(session_id="s1", flow_id="f", flow_version="f@1", current_node_id="n")
        assert render_text(None, session) == ""
