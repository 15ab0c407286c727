import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from travel_assistant.errors import OwnershipError
from travel_assistant.models import BookingSummary, Flight
from travel_assistant.providers.booking_store import BookingStoreClient, booking_id_of, summaries
from travel_assistant.providers.resilient import ERROR, Envelope
from travel_assistant.session import Session, SessionStore

logger = logging.getLogger(__name__)


class SagaStatus(str, Enum):
    COMPLETED = "COMPLETED"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"


class ReschedulePhase(str, Enum):
    IDLE = "IDLE"
    AWAITING_DATE = "AWAITING_DATE"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"


@dataclass
class RescheduleResult:
    status: SagaStatus
    code: Optional[str] = None
    reason: Optional[str] = None
    new_booking_id: Optional[str] = None
    envelope: Optional[Envelope] = None

    @property
    def ok(self) -> bool:
        return self.status == SagaStatus.COMPLETED


def reschedule_phase(session: Session) -> ReschedulePhase:
    if not session.reschedule_target_booking_id:
        return ReschedulePhase.IDLE
    if not session.reschedule_new_date:
        return ReschedulePhase.AWAITING_DATE
    return ReschedulePhase.AWAITING_CONFIRMATION


def _err(env: Envelope) -> str:
    return env.message or f"HTTP {env.http_status}"


class BookingOrchestrator:
    """
    Booking operations on top of the booking store.
    Reschedule runs as a create-then-cancel saga: the replacement booking is
    created first and deleted again if the original cannot be cancelled.
    """

    def __init__(self, store: BookingStoreClient, sessions: SessionStore):
        self.store = store
        self.sessions = sessions

    # ---------------------------
    # Single-step operations
    # ---------------------------
    def create(self, session_id: Optional[str], user_id: str, trip_id: str, price: float) -> Envelope:
        env = self.store.create(user_id, trip_id, price)
        if env.ok:
            bid = booking_id_of(env.data)
            if bid and session_id:
                self.sessions.record_booking(session_id, bid)
            logger.info("Booking %s created for %s (%s)", bid, user_id, trip_id)
        return env

    def get(self, booking_id: str) -> tuple[Envelope, Optional[BookingSummary]]:
        env = self.store.get(booking_id)
        if not env.ok or not isinstance(env.data, dict):
            return env, None
        return env, BookingSummary.from_dict(env.data)

    def _check_owner(self, summary: BookingSummary, active_user_id: str):
        if summary.user_id != active_user_id:
            raise OwnershipError(summary.id, summary.user_id, active_user_id)

    def cancel(self, booking_id: str, active_user_id: Optional[str] = None) -> Envelope:
        if active_user_id:
            env, summary = self.get(booking_id)
            if summary is None:
                return env
            self._check_owner(summary, active_user_id)
            if not summary.active:
                return Envelope(ERROR, 409, f"Booking {booking_id} is already cancelled", env.data)

        env = self.store.cancel(booking_id)
        if env.ok:
            logger.info("Booking %s cancelled", booking_id)
        return env

    def list_for_user(self, user_id: Optional[str]) -> tuple[Envelope, list[BookingSummary]]:
        env = self.store.list()
        if not env.ok:
            return env, []
        items = summaries(env.data)
        if user_id:
            items = [b for b in items if b.user_id == user_id]
        return env, items

    def active_for_user(self, user_id: Optional[str]) -> tuple[Envelope, list[BookingSummary]]:
        env, items = self.list_for_user(user_id)
        return env, [b for b in items if b.active]

    # ---------------------------
    # Reschedule saga
    # ---------------------------
    def reschedule(
        self,
        session_id: str,
        target_booking_id: str,
        new_date: str,
        chosen_flight: Flight,
        active_user_id: Optional[str],
    ) -> RescheduleResult:
        result = self._run_reschedule(target_booking_id, new_date, chosen_flight, active_user_id)
        if result.ok:
            self.sessions.complete_reschedule(session_id, result.new_booking_id)
        else:
            self.sessions.clear_reschedule(session_id)
        logger.info(
            "Reschedule of %s to %s: %s %s",
            target_booking_id, new_date, result.status.value, result.code or "",
        )
        return result

    def _run_reschedule(
        self,
        target_booking_id: str,
        new_date: str,
        chosen_flight: Flight,
        active_user_id: Optional[str],
    ) -> RescheduleResult:
        if not active_user_id:
            return RescheduleResult(SagaStatus.FAILED, "USER_REQUIRED", "No active user for this session")
        if chosen_flight.date != new_date:
            return RescheduleResult(
                SagaStatus.FAILED, "DATE_MISMATCH",
                f"{chosen_flight.trip_id} does not fly on {new_date}",
            )

        # phase 1: replacement booking
        created = self.store.create(active_user_id, chosen_flight.trip_id, chosen_flight.price)
        new_id = booking_id_of(created.data) if created.ok else None
        if not new_id:
            reason = _err(created) if not created.ok else "booking store returned no booking id"
            return RescheduleResult(SagaStatus.FAILED, "CREATE_FAILED", reason, envelope=created)

        # phase 2: verify and cancel the original
        env, target = self.get(target_booking_id)
        if target is None:
            return self._compensate(new_id, "TARGET_NOT_FOUND", f"Booking {target_booking_id}: {_err(env)}", env)
        try:
            self._check_owner(target, active_user_id)
        except OwnershipError as e:
            return self._compensate(new_id, OwnershipError.code, str(e), env)
        if not target.active:
            return self._compensate(new_id, "TARGET_NOT_ACTIVE", f"Booking {target_booking_id} is already cancelled", env)

        cancelled = self.store.cancel(target_booking_id)
        if not cancelled.ok:
            return self._compensate(
                new_id, "CANCEL_FAILED",
                f"Could not cancel {target_booking_id}: {_err(cancelled)}", cancelled,
            )

        return RescheduleResult(SagaStatus.COMPLETED, new_booking_id=new_id, envelope=created)

    def _compensate(self, new_id: str, code: str, reason: str, env: Envelope) -> RescheduleResult:
        removed = self.store.delete(new_id)
        if removed.ok:
            return RescheduleResult(SagaStatus.ROLLED_BACK, code, reason, new_booking_id=new_id, envelope=env)

        logger.error("Compensation failed, booking %s left behind: %s", new_id, _err(removed))
        return RescheduleResult(
            SagaStatus.FAILED,
            "COMPENSATION_FAILED",
            f"{reason}; the new booking {new_id} could not be removed ({_err(removed)})",
            new_booking_id=new_id,
            envelope=removed,
        )
