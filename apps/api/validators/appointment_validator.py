"""Appointment validation logic"""
import threading
from datetime import date, datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select, func

from errors import AuthorizationError, PendingLimitError, SlotTakenError, ValidationError
from models import ACTIVE_STATUSES, Appointment, AppointmentStatus, TERMINAL_STATUSES, User
from services.slots import Slot, closed_day_name, find_slot, is_inside_same_day_cutoff
from validators.business_rules import ClinicRules
from validators.time_validator import (
    hours_until,
    validate_not_in_past,
    validate_open_day,
    validate_within_booking_horizon,
)

# Serializes check-then-insert within this process; the partial unique index
# on (appointment_date, time_slot) covers races between processes.
_booking_lock = threading.RLock()


def validate_can_book(user: User) -> None:
    if user.is_admin:
        raise AuthorizationError("Admin cannot book appointments")
    if user.is_blocked:
        raise AuthorizationError("Your account is blocked")


def validate_bookable_slot(label: Optional[str]) -> Slot:
    slot = find_slot(label)
    if slot is None:
        raise ValidationError(f"Invalid time slot: {label}")
    if not slot.is_bookable:
        raise ValidationError("Lunch break cannot be booked")
    return slot


def validate_booking_date(day: date, slot: Slot, now: datetime, rules: ClinicRules) -> None:
    today = now.date()
    validate_not_in_past(day, today)
    validate_within_booking_horizon(day, today, rules)
    if is_inside_same_day_cutoff(slot, day, now, rules):
        raise ValidationError(
            f"Same-day bookings need at least {rules.same_day_cutoff_minutes} minutes notice"
        )
    validate_open_day(day, rules, closed_day_name(rules))


def validate_cancellation_policy(
    appointment: Appointment,
    actor: User,
    now: datetime,
    rules: ClinicRules,
) -> None:
    """Validate cancellation is allowed per policy"""
    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise ValidationError("Already cancelled")

    if appointment.status == AppointmentStatus.COMPLETED.value:
        raise ValidationError("Cannot cancel completed appointment")

    if actor.is_admin:
        return

    slot = find_slot(appointment.time_slot)
    if slot is None:
        return
    if hours_until(slot.starts_at(appointment.appointment_date), now) < rules.cancellation_cutoff_hours:
        raise ValidationError(
            f"Cannot cancel within {rules.cancellation_cutoff_hours} hours of appointment. "
            "Please contact the clinic."
        )


def validate_not_terminal(appointment: Appointment, action: str) -> None:
    if appointment.status in TERMINAL_STATUSES:
        raise ValidationError(f"Cannot {action} a {appointment.status} appointment")


class BookingConflictGuard:
    """Enforces one active appointment per (date, slot) and the pending cap"""

    def __init__(self, session: Session, rules: ClinicRules):
        self.session = session
        self.rules = rules

    def slot_taken(self, day: date, label: str, exclude_appointment_id: Optional[int] = None) -> bool:
        query = select(Appointment.id).where(
            Appointment.appointment_date == day,
            Appointment.time_slot == label,
            Appointment.status.in_(ACTIVE_STATUSES),
        )
        if exclude_appointment_id:
            query = query.where(Appointment.id != exclude_appointment_id)
        return self.session.exec(query).first() is not None

    def pending_count(self, user_id: int) -> int:
        return self.session.exec(
            select(func.count(Appointment.id)).where(
                Appointment.user_id == user_id,
                Appointment.status == AppointmentStatus.PENDING.value,
            )
        ).one()

    def check(self, user_id: int, day: date, label: str, exclude_appointment_id: Optional[int] = None) -> None:
        if self.slot_taken(day, label, exclude_appointment_id):
            raise SlotTakenError()
        if exclude_appointment_id is None and self.pending_count(user_id) >= self.rules.max_pending_appointments:
            raise PendingLimitError(
                f"Maximum {self.rules.max_pending_appointments} pending appointments allowed"
            )

    def commit_booking(self, appointment: Appointment) -> Appointment:
        """Run the checks and insert under the booking lock"""
        with _booking_lock:
            self.check(appointment.user_id, appointment.appointment_date, appointment.time_slot)
            self.session.add(appointment)
            self._commit()
        self.session.refresh(appointment)
        return appointment

    def commit_move(self, appointment: Appointment, day: date, label: str, moved_at: datetime) -> Appointment:
        """Move an existing appointment to (day, label) under the booking lock"""
        with _booking_lock:
            self.check(appointment.user_id, day, label, exclude_appointment_id=appointment.id)
            appointment.appointment_date = day
            appointment.time_slot = label
            appointment.rescheduled_at = moved_at
            self.session.add(appointment)
            self._commit()
        self.session.refresh(appointment)
        return appointment

    def _commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError:
            # Another process claimed the slot between check and commit
            self.session.rollback()
            raise SlotTakenError()
