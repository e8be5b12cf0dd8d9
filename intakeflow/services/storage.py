"""Persistence for sessions, handoff artifacts and slot reservations.

Two interchangeable backends share one interface:

• ``InMemoryRepository``: dicts guarded by a ``threading.Lock``.  Used in
  tests and for single-process local runs.
• ``SQLiteRepository``: one SQLite file (or ``:memory:``), JSON payload
  columns, an ``RLock`` around every statement and a transaction around every
  multi-step mutation.

Sessions are saved with an optimistic revision check: a save whose
``revision`` differs from the stored one raises ``ConcurrencyConflictError``.
Slot claims are atomic check-and-set operations so two sessions can never
both hold (or book) the same slot.
"""

from __future__ import annotations

import abc
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from intakeflow.config import Settings
from intakeflow.engine.session import SessionState
from intakeflow.errors import ConcurrencyConflictError, ReservationExpiredError, ReservationNotFoundError
from intakeflow.handoff import ClickToCallToken, HandoffTicket
from intakeflow.scheduling import Booking, Reservation, ReservationStatus

logger = logging.getLogger(__name__)


def _stale(session: SessionState, stored_revision: int) -> ConcurrencyConflictError:
    return ConcurrencyConflictError(
        f"Session {session.session_id} was modified concurrently "
        f"(have revision {session.revision}, stored {stored_revision})"
    )


class Repository(abc.ABC):
    """Storage interface used by the conversation service and scheduler."""

    def open(self) -> None:
        """Acquire underlying resources.  Idempotent."""

    def close(self) -> None:
        """Release underlying resources."""

    def __enter__(self) -> Repository:
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ── Sessions ─────────────────────────────────────────────────────

    @abc.abstractmethod
    def get_session(self, session_id: str) -> SessionState | None: ...

    @abc.abstractmethod
    def save_session(self, session: SessionState) -> SessionState:
        """Persist *session*, bumping its revision.  Raises on a stale revision."""

    # ── Handoff ──────────────────────────────────────────────────────

    @abc.abstractmethod
    def save_ticket(self, ticket: HandoffTicket) -> None: ...

    @abc.abstractmethod
    def get_ticket(self, ticket_id: str) -> HandoffTicket | None: ...

    @abc.abstractmethod
    def save_token(self, token: ClickToCallToken) -> None: ...

    @abc.abstractmethod
    def get_token(self, token: str) -> ClickToCallToken | None:
        """Look a click-to-call token up by its public value."""

    # ── Reservations ─────────────────────────────────────────────────

    @abc.abstractmethod
    def claim_slot(self, candidate: Reservation, now: datetime) -> Reservation:
        """Atomically hold ``candidate.slot_id`` unless a live reservation exists.

        Returns the reservation now holding the slot: *candidate* on success,
        the session's existing hold when it re-claims its own slot, or another
        session's reservation on conflict.  A successful claim releases any
        other hold the same session still had.
        """

    @abc.abstractmethod
    def get_reservation(self, reservation_id: str) -> Reservation | None: ...

    @abc.abstractmethod
    def get_booking(self, reservation_id: str) -> Booking | None: ...

    @abc.abstractmethod
    def confirm_reservation(self, booking: Booking) -> Booking:
        """Mark the reservation confirmed and store *booking*.

        If the reservation was already confirmed the original booking is
        returned unchanged.
        """

    @abc.abstractmethod
    def release_reservation(self, reservation_id: str) -> None: ...

    @abc.abstractmethod
    def live_reservations(self, now: datetime) -> list[Reservation]:
        """Confirmed reservations plus holds that have not expired at *now*."""


# ── In-memory ────────────────────────────────────────────────────────


class InMemoryRepository(Repository):
    """Process-local repository backed by plain dicts."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, SessionState] = {}
        self._tickets: dict[str, HandoffTicket] = {}
        self._tokens: dict[str, ClickToCallToken] = {}
        self._reservations: dict[str, Reservation] = {}
        self._bookings: dict[str, Booking] = {}

    def get_session(self, session_id: str) -> SessionState | None:
        with self._lock:
            stored = self._sessions.get(session_id)
            return stored.model_copy(deep=True) if stored else None

    def save_session(self, session: SessionState) -> SessionState:
        with self._lock:
            stored = self._sessions.get(session.session_id)
            stored_revision = stored.revision if stored else 0
            if stored_revision != session.revision:
                raise _stale(session, stored_revision)
            session.revision += 1
            session.touch()
            self._sessions[session.session_id] = session.model_copy(deep=True)
            return session

    def save_ticket(self, ticket: HandoffTicket) -> None:
        with self._lock:
            self._tickets[ticket.ticket_id] = ticket.model_copy(deep=True)

    def get_ticket(self, ticket_id: str) -> HandoffTicket | None:
        with self._lock:
            return self._tickets.get(ticket_id)

    def save_token(self, token: ClickToCallToken) -> None:
        with self._lock:
            self._tokens[token.token] = token

    def get_token(self, token: str) -> ClickToCallToken | None:
        with self._lock:
            return self._tokens.get(token)

    def claim_slot(self, candidate: Reservation, now: datetime) -> Reservation:
        with self._lock:
            for existing in self._reservations.values():
                if existing.slot_id == candidate.slot_id and existing.is_live(now):
                    return existing
            for reservation_id, existing in list(self._reservations.items()):
                if existing.session_id == candidate.session_id and existing.status is ReservationStatus.HELD:
                    self._reservations[reservation_id] = existing.model_copy(
                        update={"status": ReservationStatus.RELEASED}
                    )
            self._reservations[candidate.reservation_id] = candidate
            return candidate

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        with self._lock:
            return self._reservations.get(reservation_id)

    def get_booking(self, reservation_id: str) -> Booking | None:
        with self._lock:
            return self._bookings.get(reservation_id)

    def confirm_reservation(self, booking: Booking) -> Booking:
        with self._lock:
            existing = self._bookings.get(booking.reservation_id)
            if existing is not None:
                return existing
            reservation = self._reservations.get(booking.reservation_id)
            if reservation is None:
                raise ReservationNotFoundError(f"Reservation {booking.reservation_id} not found")
            if not reservation.is_live(booking.confirmed_at):
                raise ReservationExpiredError(f"Reservation {booking.reservation_id} is no longer held")
            self._reservations[reservation.reservation_id] = reservation.model_copy(
                update={"status": ReservationStatus.CONFIRMED}
            )
            self._bookings[booking.reservation_id] = booking
            return booking

    def release_reservation(self, reservation_id: str) -> None:
        with self._lock:
            reservation = self._reservations.get(reservation_id)
            if reservation is not None and reservation.status is ReservationStatus.HELD:
                self._reservations[reservation_id] = reservation.model_copy(
                    update={"status": ReservationStatus.RELEASED}
                )

    def live_reservations(self, now: datetime) -> list[Reservation]:
        with self._lock:
            return [r for r in self._reservations.values() if r.is_live(now)]


# ── SQLite ───────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    revision INTEGER NOT NULL,
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS tickets (
    ticket_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS tokens (
    token TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS reservations (
    reservation_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    slot_id TEXT NOT NULL,
    status TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS reservations_slot ON reservations (slot_id, status);
CREATE TABLE IF NOT EXISTS bookings (
    reservation_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    data TEXT NOT NULL
);
"""


class SQLiteRepository(Repository):
    """Durable repository in a single SQLite database."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None

    def open(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            # check_same_thread=False: every access goes through self._lock
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            with self._conn:
                self._conn.executescript(_SCHEMA)
            logger.info("SQLite repository opened at %s", self.db_path)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.open()
        return self._conn

    # ── Sessions ─────────────────────────────────────────────────────

    def get_session(self, session_id: str) -> SessionState | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM sessions WHERE session_id = ?", (session_id,),
            ).fetchone()
        return SessionState.model_validate_json(row["data"]) if row else None

    def save_session(self, session: SessionState) -> SessionState:
        with self._lock, self.conn:
            row = self.conn.execute(
                "SELECT revision FROM sessions WHERE session_id = ?", (session.session_id,),
            ).fetchone()
            stored_revision = row["revision"] if row else 0
            if stored_revision != session.revision:
                raise _stale(session, stored_revision)
            session.revision += 1
            session.touch()
            self.conn.execute(
                "INSERT OR REPLACE INTO sessions (session_id, revision, data) VALUES (?, ?, ?)",
                (session.session_id, session.revision, session.model_dump_json()),
            )
        return session

    # ── Handoff ──────────────────────────────────────────────────────

    def save_ticket(self, ticket: HandoffTicket) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO tickets (ticket_id, session_id, data) VALUES (?, ?, ?)",
                (ticket.ticket_id, ticket.session_id, ticket.model_dump_json()),
            )

    def get_ticket(self, ticket_id: str) -> HandoffTicket | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM tickets WHERE ticket_id = ?", (ticket_id,),
            ).fetchone()
        return HandoffTicket.model_validate_json(row["data"]) if row else None

    def save_token(self, token: ClickToCallToken) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO tokens (token, session_id, data) VALUES (?, ?, ?)",
                (token.token, token.session_id, token.model_dump_json()),
            )

    def get_token(self, token: str) -> ClickToCallToken | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM tokens WHERE token = ?", (token,),
            ).fetchone()
        return ClickToCallToken.model_validate_json(row["data"]) if row else None

    # ── Reservations ─────────────────────────────────────────────────

    def _reservations_where(self, clause: str, params: tuple) -> list[Reservation]:
        rows = self.conn.execute(f"SELECT data FROM reservations WHERE {clause}", params).fetchall()
        return [Reservation.model_validate_json(r["data"]) for r in rows]

    def _write_reservation(self, reservation: Reservation) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO reservations (reservation_id, session_id, slot_id, status, data) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                reservation.reservation_id,
                reservation.session_id,
                reservation.slot_id,
                reservation.status.value,
                reservation.model_dump_json(),
            ),
        )

    def claim_slot(self, candidate: Reservation, now: datetime) -> Reservation:
        with self._lock, self.conn:
            for existing in self._reservations_where(
                "slot_id = ? AND status != ?", (candidate.slot_id, ReservationStatus.RELEASED.value),
            ):
                if existing.is_live(now):
                    return existing
            for existing in self._reservations_where(
                "session_id = ? AND status = ?", (candidate.session_id, ReservationStatus.HELD.value),
            ):
                self._write_reservation(existing.model_copy(update={"status": ReservationStatus.RELEASED}))
            self._write_reservation(candidate)
        return candidate

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        with self._lock:
            found = self._reservations_where("reservation_id = ?", (reservation_id,))
        return found[0] if found else None

    def get_booking(self, reservation_id: str) -> Booking | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM bookings WHERE reservation_id = ?", (reservation_id,),
            ).fetchone()
        return Booking.model_validate_json(row["data"]) if row else None

    def confirm_reservation(self, booking: Booking) -> Booking:
        with self._lock, self.conn:
            existing = self.get_booking(booking.reservation_id)
            if existing is not None:
                return existing
            reservation = self.get_reservation(booking.reservation_id)
            if reservation is None:
                raise ReservationNotFoundError(f"Reservation {booking.reservation_id} not found")
            if not reservation.is_live(booking.confirmed_at):
                raise ReservationExpiredError(f"Reservation {booking.reservation_id} is no longer held")
            self._write_reservation(reservation.model_copy(update={"status": ReservationStatus.CONFIRMED}))
            self.conn.execute(
                "INSERT INTO bookings (reservation_id, job_id, data) VALUES (?, ?, ?)",
                (booking.reservation_id, booking.job_id, booking.model_dump_json()),
            )
        return booking

    def release_reservation(self, reservation_id: str) -> None:
        with self._lock, self.conn:
            reservation = self.get_reservation(reservation_id)
            if reservation is not None and reservation.status is ReservationStatus.HELD:
                self._write_reservation(reservation.model_copy(update={"status": ReservationStatus.RELEASED}))

    def live_reservations(self, now: datetime) -> list[Reservation]:
        with self._lock:
            candidates = self._reservations_where(
                "status != ?", (ReservationStatus.RELEASED.value,),
            )
        return [r for r in candidates if r.is_live(now)]


def build_repository(settings: Settings) -> Repository:
    """SQLite when ``DATABASE_PATH`` is configured, in-memory otherwise."""
    if settings.database_path:
        return SQLiteRepository(settings.database_path)
    logger.info("DATABASE_PATH not set; sessions are kept in memory only")
    return InMemoryRepository()
