"""
Appointment lifecycle: booking, cancellation, reschedule and status changes.

Every operation validates in a fixed order, persists through the conflict
guard, and hands notifications to ``defer`` so they run after the response.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from errors import AuthorizationError, NotFoundError, ValidationError
from models import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    ConsultationType,
    Payment,
    PaymentMethod,
    PaymentStatus,
    TransactionStatus,
    User,
)
from services.pricing import PricingResolver
from services.slots import SlotAvailability, closed_day_name, resolve_availability, slot_sort_key
from utils.notification_service import (
    NotificationDispatcher,
    render_booking_confirmation,
    render_cancellation_notice,
    render_reschedule_confirmation,
)
from validators.appointment_validator import (
    BookingConflictGuard,
    validate_bookable_slot,
    validate_booking_date,
    validate_can_book,
    validate_cancellation_policy,
    validate_not_terminal,
)
from validators.business_rules import ClinicRules
from validators.contact_validator import format_phone_number, normalize_email
from validators.time_validator import parse_calendar_date

logger = logging.getLogger(__name__)

CONSULTATION_TYPES = {c.value for c in ConsultationType}
PAYMENT_METHODS = {m.value for m in PaymentMethod}

# Allowed admin status changes: current status -> target status
ADMIN_TRANSITIONS = {
    AppointmentStatus.PENDING.value: AppointmentStatus.CONFIRMED.value,
    AppointmentStatus.CONFIRMED.value: AppointmentStatus.COMPLETED.value,
}


def _run_now(func, *args, **kwargs):
    func(*args, **kwargs)


def display_date(day: date) -> str:
    return day.strftime("%d %b %Y")


def settled_payment_message(payment: Payment) -> str:
    if payment.status == TransactionStatus.SUCCESS.value:
        return "Payment already verified"
    return f"Payment already {payment.status}"


@dataclass
class BookingRequest:
    date: Any
    time_slot: Optional[str]
    pain_type: Optional[str] = None
    consultation_type: Optional[str] = None
    reason: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    notify_via: Optional[str] = None


@dataclass
class BookingResult:
    appointment: Appointment
    amount: int
    currency: str


class AppointmentLifecycleManager:
    def __init__(
        self,
        session: Session,
        rules: ClinicRules,
        pricing: PricingResolver,
        dispatcher: NotificationDispatcher,
        now: Optional[Callable[[], datetime]] = None,
        defer: Optional[Callable[..., None]] = None,
    ):
        self.session = session
        self.rules = rules
        self.pricing = pricing
        self.dispatcher = dispatcher
        self.now = now or rules.now
        self.defer = defer or _run_now
        self.guard = BookingConflictGuard(session, rules)

    # Queries

    def claimed_labels(self, day: date) -> List[str]:
        return list(self.session.exec(
            select(Appointment.time_slot).where(
                Appointment.appointment_date == day,
                Appointment.status.in_(ACTIVE_STATUSES),
            )
        ).all())

    def availability(self, day_value: Any) -> Tuple[date, List[SlotAvailability], Optional[str]]:
        """Slots for a date plus a message when the clinic is closed"""
        day = parse_calendar_date(day_value)
        slots = resolve_availability(day, self.claimed_labels(day), self.now(), self.rules)
        if not slots:
            return day, [], f"Clinic is closed on {closed_day_name(self.rules)}s"
        return day, slots, None

    def get(self, appointment_id: int) -> Appointment:
        appointment = self.session.get(Appointment, appointment_id)
        if not appointment:
            raise NotFoundError("Appointment not found")
        return appointment

    def get_for(self, appointment_id: int, actor: User, allow_admin: bool = True) -> Appointment:
        appointment = self.get(appointment_id)
        if appointment.user_id != actor.id and not (allow_admin and actor.is_admin):
            raise AuthorizationError("Not authorized to access this appointment")
        return appointment

    def list_for_user(self, user: User, status: Optional[str] = None, upcoming: bool = False) -> List[Appointment]:
        query = select(Appointment).where(Appointment.user_id == user.id)
        if status:
            query = query.where(Appointment.status == status)
        if upcoming:
            query = query.where(
                Appointment.appointment_date >= self.now().date(),
                Appointment.status.in_(ACTIVE_STATUSES),
            )
        return self._sorted(self.session.exec(query).all())

    def list_all(self, status: Optional[str] = None, day: Optional[date] = None) -> List[Appointment]:
        query = select(Appointment)
        if status:
            query = query.where(Appointment.status == status)
        if day:
            query = query.where(Appointment.appointment_date == day)
        return self._sorted(self.session.exec(query).all())

    @staticmethod
    def _sorted(appointments) -> List[Appointment]:
        # Newest date first, slots in day order within a date
        by_slot = sorted(appointments, key=lambda a: slot_sort_key(a.time_slot))
        return sorted(by_slot, key=lambda a: a.appointment_date, reverse=True)

    def user_stats(self, user: User) -> Dict[str, Any]:
        appointments = self.session.exec(select(Appointment).where(Appointment.user_id == user.id)).all()
        counts = {s.value: 0 for s in AppointmentStatus}
        total_spent = 0
        for appointment in appointments:
            counts[appointment.status] = counts.get(appointment.status, 0) + 1
            if (
                appointment.status == AppointmentStatus.COMPLETED.value
                and appointment.payment_status == PaymentStatus.PAID.value
            ):
                total_spent += appointment.amount
        return {
            "total": len(appointments),
            **counts,
            "totalSpent": total_spent,
            "currency": self.pricing.currency,
        }

    # Commands

    def book(self, user: User, request: BookingRequest) -> BookingResult:
        validate_can_book(user)
        if not request.date or not request.time_slot:
            raise ValidationError("Date and time slot are required")

        slot = validate_bookable_slot(request.time_slot)
        day = parse_calendar_date(request.date)
        validate_booking_date(day, slot, self.now(), self.rules)

        consultation_type = request.consultation_type or ConsultationType.REGULAR.value
        if consultation_type not in CONSULTATION_TYPES:
            raise ValidationError(f"Invalid consultation type: {consultation_type}")
        pain_type = (request.pain_type or "").strip() or "Other"

        amount = self.pricing.resolve(pain_type, consultation_type)
        appointment = Appointment(
            user_id=user.id,
            appointment_date=day,
            time_slot=slot.label,
            pain_type=pain_type,
            consultation_type=consultation_type,
            amount=amount,
            reason=(request.reason or "").strip(),
        )
        appointment = self.guard.commit_booking(appointment)
        logger.info(f"Appointment {appointment.id} booked by user {user.id} for {day} {slot.label}")

        phone, email = self._contacts(user, request.phone, request.email)
        message = render_booking_confirmation(
            self.rules.clinic_name, user.name, display_date(day), slot.label,
            pain_type, self.rules.admin_identifier,
        )
        self.defer(self.dispatcher.dispatch, phone, email, message, request.notify_via)

        return BookingResult(appointment=appointment, amount=amount, currency=self.pricing.currency)

    def cancel(self, appointment_id: int, actor: User) -> Appointment:
        appointment = self.get_for(appointment_id, actor)
        validate_cancellation_policy(appointment, actor, self.now(), self.rules)

        appointment.status = AppointmentStatus.CANCELLED.value
        appointment.cancelled_at = datetime.utcnow()
        appointment.cancelled_by = actor.id
        self.session.add(appointment)
        self.session.commit()
        self.session.refresh(appointment)
        logger.info(f"Appointment {appointment.id} cancelled by user {actor.id}")

        owner = self.session.get(User, appointment.user_id)
        if owner:
            message = render_cancellation_notice(
                self.rules.clinic_name, owner.name, display_date(appointment.appointment_date),
                appointment.time_slot, self.rules.admin_identifier,
            )
            self.defer(self.dispatcher.dispatch, owner.phone, owner.email, message)
        return appointment

    def reschedule(self, appointment_id: int, actor: User, new_date: Any, new_time_slot: Optional[str]) -> Appointment:
        if not new_date or not new_time_slot:
            raise ValidationError("New date and time slot are required")

        appointment = self.get_for(appointment_id, actor, allow_admin=False)
        validate_not_terminal(appointment, "reschedule")

        slot = validate_bookable_slot(new_time_slot)
        day = parse_calendar_date(new_date, "new date")
        validate_booking_date(day, slot, self.now(), self.rules)

        old_date, old_slot = appointment.appointment_date, appointment.time_slot
        appointment = self.guard.commit_move(appointment, day, slot.label, datetime.utcnow())
        logger.info(f"Appointment {appointment.id} moved from {old_date} {old_slot} to {day} {slot.label}")

        message = render_reschedule_confirmation(
            self.rules.clinic_name, actor.name, display_date(old_date), old_slot,
            display_date(day), slot.label,
        )
        self.defer(self.dispatcher.dispatch, actor.phone, actor.email, message)
        return appointment

    def update_payment_method(self, appointment_id: int, actor: User, method: Optional[str]) -> Appointment:
        if method not in PAYMENT_METHODS:
            raise ValidationError("Invalid payment method")

        appointment = self.get_for(appointment_id, actor, allow_admin=False)
        validate_not_terminal(appointment, "update")

        appointment.payment_method = method
        if method == PaymentMethod.CLINIC.value:
            appointment.payment_status = PaymentStatus.PENDING.value
        self.session.add(appointment)
        self.session.commit()
        self.session.refresh(appointment)
        return appointment

    def transition_status(self, appointment_id: int, target: Optional[str], actor: User) -> Appointment:
        """Admin-only confirm/complete"""
        if not actor.is_admin:
            raise AuthorizationError("Admin access required")

        appointment = self.get(appointment_id)
        if ADMIN_TRANSITIONS.get(appointment.status) != target:
            raise ValidationError(f"Cannot change status from {appointment.status} to {target}")

        appointment.status = target
        self.session.add(appointment)
        self.session.commit()
        self.session.refresh(appointment)
        logger.info(f"Appointment {appointment.id} marked {target} by admin {actor.id}")
        return appointment

    def mark_paid(self, appointment: Appointment, payment_id: int) -> Appointment:
        """Record a successful online payment; a pending booking becomes confirmed"""
        appointment.payment_status = PaymentStatus.PAID.value
        appointment.payment_method = PaymentMethod.ONLINE.value
        appointment.payment_id = payment_id
        if appointment.status == AppointmentStatus.PENDING.value:
            appointment.status = AppointmentStatus.CONFIRMED.value
        self.session.add(appointment)
        return appointment

    def settle_payment(
        self,
        payment: Payment,
        gateway_payment_id: str,
        gateway_order_id: str,
        signature: Optional[str],
    ) -> Appointment:
        """Mark a verified pending payment successful and its appointment paid"""
        if payment.status != TransactionStatus.PENDING.value:
            raise ValidationError(settled_payment_message(payment))

        appointment = self.get(payment.appointment_id)
        if appointment.status == AppointmentStatus.CANCELLED.value:
            raise ValidationError("Cannot pay for cancelled appointment")

        payment.status = TransactionStatus.SUCCESS.value
        payment.razorpay_payment_id = gateway_payment_id
        payment.razorpay_order_id = gateway_order_id
        payment.razorpay_signature = signature
        payment.failure_reason = None
        payment.paid_at = datetime.utcnow()
        self.session.add(payment)
        self.mark_paid(appointment, payment.id)

        try:
            self.session.commit()
        except IntegrityError:
            # Another payment for this appointment succeeded first
            self.session.rollback()
            raise ValidationError("Appointment already paid")

        self.session.refresh(payment)
        self.session.refresh(appointment)
        logger.info(f"Payment {payment.id} settled for appointment {appointment.id}")
        return appointment

    @staticmethod
    def _contacts(user: User, phone: Optional[str], email: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        phone = format_phone_number(phone) if phone else user.phone
        email = normalize_email(email) if email else user.email
        return phone, email
