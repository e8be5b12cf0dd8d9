"""Tests for slot generation and the hold/confirm lifecycle."""

from __future__ import annotations

from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import pytest

from intakeflow.errors import (
    ReservationExpiredError,
    ReservationNotFoundError,
    SlotConflictError,
    SlotNotFoundError,
)
from intakeflow.scheduling import ReservationStatus, generate_slots

NEW_YORK = ZoneInfo("America/New_York")
# Monday 2026-10-19, 08:00 in New York
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


class TestGenerateSlots:
    def test_three_slots_in_a_week(self):
        slots = generate_slots(7, 3, now=NOW, tz=NEW_YORK)
        assert [s.id for s in slots] == [
            "slot_20261020_09", "slot_20261021_14", "slot_20261022_10",
        ]
        assert [s.display for s in slots] == ["Tue 9-11am", "Wed 2-4pm", "Thu 10am-12pm"]
        assert all(s.starts_at > NOW for s in slots)
        assert [s.starts_at for s in slots] == sorted(s.starts_at for s in slots)

    def test_window_limits_day_offsets(self):
        slots = generate_slots(2, 10, now=NOW, tz=NEW_YORK)
        assert [s.id for s in slots] == ["slot_20261020_09", "slot_20261021_14"]

    def test_all_patterns(self):
        slots = generate_slots(30, 10, now=NOW, tz=NEW_YORK)
        assert len(slots) == 6
        assert slots[-1].display == "Sun 11am-1pm"
        assert slots[3].display == "Fri 1-3pm"

    def test_slot_window_is_two_hours(self):
        slot = generate_slots(7, 1, now=NOW, tz=NEW_YORK)[0]
        assert slot.start_time == "9:00"
        assert slot.end_time == "11:00"
        assert (slot.ends_at - slot.starts_at).total_seconds() == 7200

    def test_deterministic(self):
        assert generate_slots(7, 3, now=NOW, tz=NEW_YORK) == generate_slots(7, 3, now=NOW, tz=NEW_YORK)

    def test_zero_window_has_no_slots(self):
        assert generate_slots(0, 3, now=NOW, tz=NEW_YORK) == []


class TestListAvailable:
    def test_excludes_slots_held_by_others(self, scheduler):
        scheduler.reserve_slot("other", scheduler.slot_by_id("slot_20261020_09"))
        ids = [s.id for s in scheduler.list_available("s1")]
        assert ids == ["slot_20261021_14", "slot_20261022_10", "slot_20261023_13"]

    def test_own_hold_stays_visible(self, scheduler):
        scheduler.reserve_slot("s1", scheduler.slot_by_id("slot_20261020_09"))
        assert scheduler.list_available("s1")[0].id == "slot_20261020_09"

    def test_expired_hold_frees_slot(self, scheduler, clock):
        scheduler.reserve_slot("other", scheduler.slot_by_id("slot_20261020_09"))
        clock.advance(minutes=16)
        assert scheduler.list_available("s1")[0].id == "slot_20261020_09"

    def test_unknown_slot(self, scheduler):
        with pytest.raises(SlotNotFoundError):
            scheduler.slot_by_id("slot_19990101_09")


class TestReserveAndConfirm:
    def test_reserve_holds_with_ttl(self, scheduler, clock):
        reservation = scheduler.reserve_slot("s1", scheduler.slot_by_id("slot_20261021_14"))
        assert reservation.reservation_id.startswith("res_")
        assert reservation.status is ReservationStatus.HELD
        assert (reservation.expires_at - clock.now).total_seconds() == 15 * 60

    def test_second_session_conflicts(self, scheduler):
        slot = scheduler.slot_by_id("slot_20261021_14")
        scheduler.reserve_slot("s1", slot)
        with pytest.raises(SlotConflictError) as exc_info:
            scheduler.reserve_slot("s2", slot)
        assert exc_info.value.slot_id == "slot_20261021_14"

    def test_same_session_reclaims_its_hold(self, scheduler):
        slot = scheduler.slot_by_id("slot_20261021_14")
        first = scheduler.reserve_slot("s1", slot)
        again = scheduler.reserve_slot("s1", slot)
        assert again.reservation_id == first.reservation_id

    def test_confirm_is_idempotent(self, scheduler):
        reservation = scheduler.reserve_slot("s1", scheduler.slot_by_id("slot_20261021_14"))
        booking = scheduler.confirm_booking("s1", reservation.reservation_id)
        again = scheduler.confirm_booking("s1", reservation.reservation_id)
        assert booking.job_id.startswith("job_")
        assert again.job_id == booking.job_id

    def test_confirmed_booking_outlives_hold_ttl(self, scheduler, clock):
        reservation = scheduler.reserve_slot("s1", scheduler.slot_by_id("slot_20261021_14"))
        booking = scheduler.confirm_booking("s1", reservation.reservation_id)
        clock.advance(hours=2)
        assert scheduler.confirm_booking("s1", reservation.reservation_id) == booking
        with pytest.raises(SlotConflictError):
            scheduler.reserve_slot("s2", scheduler.slot_by_id("slot_20261021_14"))

    def test_expired_hold_cannot_be_confirmed(self, scheduler, clock):
        reservation = scheduler.reserve_slot("s1", scheduler.slot_by_id("slot_20261021_14"))
        clock.advance(minutes=16)
        with pytest.raises(ReservationExpiredError):
            scheduler.confirm_booking("s1", reservation.reservation_id)

    def test_confirm_requires_owner(self, scheduler):
        reservation = scheduler.reserve_slot("s1", scheduler.slot_by_id("slot_20261021_14"))
        with pytest.raises(ReservationNotFoundError):
            scheduler.confirm_booking("s2", reservation.reservation_id)
        with pytest.raises(ReservationNotFoundError):
            scheduler.confirm_booking("s1", "res_missing")

    def test_release_frees_slot(self, scheduler, repository):
        slot = scheduler.slot_by_id("slot_20261021_14")
        reservation = scheduler.reserve_slot("s1", slot)
        scheduler.release_reservation("s1", reservation.reservation_id)
        assert repository.get_reservation(reservation.reservation_id).status is ReservationStatus.RELEASED
        assert scheduler.reserve_slot("s2", slot).session_id == "s2"
