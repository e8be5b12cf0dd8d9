"""Appointment slot generation and the two-phase hold → confirm lifecycle.

Slots come from a fixed set of (day offset, start hour) patterns, each a
2-hour window, realized against the business-local current date.  Slot ids
embed the absolute date (``slot_20261019_09``) so the same window keeps the
same identity no matter which day it was offered on.

Reservation is the one shared-mutable resource across sessions.  The
repository performs an atomic check-and-set: a slot is available, held by one
session, or booked.  Confirmation is idempotent: confirming the same
reservation twice returns the original booking and its ``job_id``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from intakeflow.config import Settings
from intakeflow.errors import (
    ReservationExpiredError,
    ReservationNotFoundError,
    SlotConflictError,
    SlotNotFoundError,
)

if TYPE_CHECKING:
    from intakeflow.services.storage import Repository

logger = logging.getLogger(__name__)

# (day offset, start hour, label)
SLOT_PATTERNS: tuple[tuple[int, int, str], ...] = (
    (1, 9, "AM"),
    (2, 14, "PM"),
    (3, 10, "AM"),
    (4, 13, "PM"),
    (5, 9, "AM"),
    (6, 11, "AM"),
)
SLOT_DURATION_HOURS = 2


class SchedulingSlot(BaseModel):
    id: str
    display: str
    date: date
    start_time: str
    end_time: str
    starts_at: datetime
    ends_at: datetime


class ReservationStatus(StrEnum):
    HELD = "held"
    CONFIRMED = "confirmed"
    RELEASED = "released"


class Reservation(BaseModel):
    reservation_id: str
    session_id: str
    slot_id: str
    slot_display: str
    status: ReservationStatus = ReservationStatus.HELD
    created_at: datetime
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        """Confirmed bookings and unexpired holds block the slot."""
        if self.status is ReservationStatus.CONFIRMED:
            return True
        return self.status is ReservationStatus.HELD and now <= self.expires_at


class Booking(BaseModel):
    job_id: str
    reservation_id: str
    session_id: str
    slot_id: str
    confirmed_at: datetime


def _format_hour(hour: int) -> tuple[int, str]:
    suffix = "am" if hour < 12 else "pm"
    return (hour - 12 if hour > 12 else hour), suffix


def _format_window(start_hour: int, end_hour: int) -> str:
    """``9-11am``, ``2-4pm``, ``11am-1pm``."""
    start, start_suffix = _format_hour(start_hour)
    end, end_suffix = _format_hour(end_hour)
    if start_suffix == end_suffix:
        return f"{start}-{end}{end_suffix}"
    return f"{start}{start_suffix}-{end}{end_suffix}"


def generate_slots(
    window_days: int,
    max_slots: int,
    *,
    now: datetime,
    tz: ZoneInfo,
) -> list[SchedulingSlot]:
    """Realize the first *max_slots* patterns inside *window_days*.

    Deterministic for a given *now*; ascending by start; strictly future.
    """
    local_now = now.astimezone(tz)
    today = local_now.date()
    slots: list[SchedulingSlot] = []
    for day_offset, hour, _label in SLOT_PATTERNS:
        if len(slots) >= max_slots:
            break
        if day_offset > window_days:
            continue
        slot_date = today + timedelta(days=day_offset)
        starts_at = datetime.combine(slot_date, time(hour), tzinfo=tz)
        if starts_at <= local_now:
            continue
        end_hour = hour + SLOT_DURATION_HOURS
        slots.append(
            SchedulingSlot(
                id=f"slot_{slot_date:%Y%m%d}_{hour:02d}",
                display=f"{slot_date:%a} {_format_window(hour, end_hour)}",
                date=slot_date,
                start_time=f"{hour}:00",
                end_time=f"{end_hour}:00",
                starts_at=starts_at,
                ends_at=starts_at + timedelta(hours=SLOT_DURATION_HOURS),
            )
        )
    slots.sort(key=lambda s: s.starts_at)
    return slots


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SlotScheduler:
    """Lists, holds and books slots on top of an injected repository."""

    def __init__(
        self,
        repository: Repository,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._repository = repository
        self._settings = settings
        self._tz = ZoneInfo(settings.timezone)
        self._clock = clock

    # ── Listing ──────────────────────────────────────────────────────

    def generate_slots(
        self, window_days: int | None = None, max_slots: int | None = None,
    ) -> list[SchedulingSlot]:
        return generate_slots(
            window_days if window_days is not None else self._settings.slot_window_days,
            max_slots if max_slots is not None else self._settings.max_slots_offered,
            now=self._clock(),
            tz=self._tz,
        )

    def list_available(
        self,
        session_id: str | None = None,
        *,
        window_days: int | None = None,
        max_slots: int | None = None,
    ) -> list[SchedulingSlot]:
        """Generated slots minus those held or booked by other sessions."""
        limit = max_slots if max_slots is not None else self._settings.max_slots_offered
        taken = {
            r.slot_id
            for r in self._repository.live_reservations(self._clock())
            if r.session_id != session_id
        }
        candidates = self.generate_slots(window_days, len(SLOT_PATTERNS))
        return [s for s in candidates if s.id not in taken][:limit]

    def slot_by_id(self, slot_id: str) -> SchedulingSlot:
        for slot in self.generate_slots(max(p[0] for p in SLOT_PATTERNS), len(SLOT_PATTERNS)):
            if slot.id == slot_id:
                return slot
        raise SlotNotFoundError(f"Slot {slot_id} is not currently offered")

    # ── Hold / confirm ───────────────────────────────────────────────

    def reserve_slot(self, session_id: str, slot: SchedulingSlot) -> Reservation:
        """Place a hold.  Raises ``SlotConflictError`` if another session holds it."""
        now = self._clock()
        candidate = Reservation(
            reservation_id=f"res_{uuid.uuid4().hex[:16]}",
            session_id=session_id,
            slot_id=slot.id,
            slot_display=slot.display,
            created_at=now,
            expires_at=now + timedelta(minutes=self._settings.hold_ttl_minutes),
        )
        holder = self._repository.claim_slot(candidate, now)
        if holder.session_id != session_id:
            logger.info(
                "Slot %s conflict: session %s lost to %s",
                slot.id, session_id, holder.session_id,
            )
            raise SlotConflictError(slot.id)
        if holder.reservation_id == candidate.reservation_id:
            logger.info("Slot %s held for session %s (%s)", slot.id, session_id, holder.reservation_id)
        return holder

    def confirm_booking(self, session_id: str, reservation_id: str) -> Booking:
        """Convert a hold into a booking.  Repeat calls return the same booking."""
        reservation = self._repository.get_reservation(reservation_id)
        if reservation is None or reservation.session_id != session_id:
            raise ReservationNotFoundError(f"Reservation {reservation_id} not found")

        existing = self._repository.get_booking(reservation_id)
        if existing is not None:
            logger.debug("Reservation %s already confirmed as %s", reservation_id, existing.job_id)
            return existing

        now = self._clock()
        if not reservation.is_live(now):
            raise ReservationExpiredError(f"Reservation {reservation_id} is no longer held")

        booking = Booking(
            job_id=f"job_{uuid.uuid4().hex[:16]}",
            reservation_id=reservation_id,
            session_id=session_id,
            slot_id=reservation.slot_id,
            confirmed_at=now,
        )
        booking = self._repository.confirm_reservation(booking)
        logger.info("Reservation %s confirmed as job %s", reservation_id, booking.job_id)
        return booking

    def release_reservation(self, session_id: str, reservation_id: str) -> None:
        reservation = self._repository.get_reservation(reservation_id)
        if reservation is None or reservation.session_id != session_id:
            raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
        self._repository.release_reservation(reservation_id)
        logger.info("Reservation %s released", reservation_id)
