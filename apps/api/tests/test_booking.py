import threading
from datetime import date, datetime

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from auth import get_password_hash
from database import build_engine, create_db_and_tables
from errors import AuthorizationError, NotFoundError, PendingLimitError, SlotTakenError, ValidationError
from models import Appointment, AppointmentStatus, PaymentStatus, User
from services.booking import AppointmentLifecycleManager, BookingRequest
from services.pricing import DEFAULT_PRICING, PricingResolver

TUESDAY = "2026-03-03"
WEDNESDAY = "2026-03-04"
SUNDAY = "2026-03-08"

TEN = "10:00 AM - 10:50 AM"
ELEVEN = "11:00 AM - 11:50 AM"
TWELVE = "12:00 PM - 12:50 PM"
TWO = "02:00 PM - 02:50 PM"
LUNCH = "01:00 PM - 02:00 PM"


def _book(manager, user, day=TUESDAY, slot=TEN, **kwargs):
    return manager.book(user, BookingRequest(date=day, time_slot=slot, **kwargs)).appointment


def _manager_at(session, rules, dispatcher, now):
    return AppointmentLifecycleManager(
        session, rules, PricingResolver(DEFAULT_PRICING), dispatcher, now=lambda: now,
    )


class TestBooking:
    def test_book_persists_prices_and_notifies(self, manager, make_user, dispatcher):
        user = make_user(email="patient@example.com")
        result = manager.book(user, BookingRequest(
            date=TUESDAY, time_slot=TEN, pain_type="Back Pain", notify_via="email",
        ))

        assert result.amount == 600
        assert result.currency == "INR"
        appointment = result.appointment
        assert appointment.id is not None
        assert appointment.appointment_date == date(2026, 3, 3)
        assert appointment.status == AppointmentStatus.PENDING.value
        assert appointment.payment_status == PaymentStatus.PENDING.value

        assert len(dispatcher.sent) == 1
        sent = dispatcher.sent[0]
        assert sent.phone == user.phone
        assert sent.email == "patient@example.com"
        assert sent.prefer == "email"
        assert TEN in sent.message.sms_text

    def test_iso_timestamp_dates_are_accepted(self, manager, make_user):
        appointment = _book(manager, make_user(), day="2026-03-03T00:00:00.000Z")
        assert appointment.appointment_date == date(2026, 3, 3)

    def test_default_pain_and_consultation_type(self, manager, make_user):
        appointment = _book(manager, make_user())
        assert appointment.pain_type == "Other"
        assert appointment.consultation_type == "regular"
        assert appointment.amount == 500

    def test_admin_cannot_book(self, manager, make_user):
        admin = make_user(is_admin=True)
        with pytest.raises(AuthorizationError):
            _book(manager, admin)

    def test_blocked_user_cannot_book(self, manager, make_user):
        with pytest.raises(AuthorizationError):
            _book(manager, make_user(is_blocked=True))

    @pytest.mark.parametrize("day, slot, message", [
        (None, TEN, "required"),
        (TUESDAY, None, "required"),
        (TUESDAY, LUNCH, "Lunch"),
        (TUESDAY, "09:00 AM - 09:50 AM", "Invalid time slot"),
        ("2026-03-01", TEN, "past"),
        ("2026-03-10", TEN, "7 days"),
        (SUNDAY, TEN, "Sunday"),
        ("not-a-date", TEN, "Invalid date"),
    ])
    def test_booking_validation_failures(self, manager, make_user, day, slot, message):
        with pytest.raises(ValidationError) as exc_info:
            _book(manager, make_user(), day=day, slot=slot)
        assert message in exc_info.value.message

    def test_unknown_consultation_type_is_rejected(self, manager, make_user):
        with pytest.raises(ValidationError):
            _book(manager, make_user(), consultation_type="vip")

    def test_same_day_booking_respects_cutoff(self, session, rules, dispatcher, make_user):
        manager = _manager_at(session, rules, dispatcher, datetime(2026, 3, 2, 9, 45))
        user = make_user()
        with pytest.raises(ValidationError):
            _book(manager, user, day="2026-03-02", slot=TEN)
        assert _book(manager, user, day="2026-03-02", slot=ELEVEN).id is not None

    def test_slot_taken_is_refused(self, manager, make_user):
        _book(manager, make_user())
        with pytest.raises(SlotTakenError):
            _book(manager, make_user())

    def test_pending_cap_and_release_on_cancel(self, manager, make_user):
        user = make_user()
        first = _book(manager, user, slot=TEN)
        _book(manager, user, slot=ELEVEN)
        _book(manager, user, slot=TWELVE)

        with pytest.raises(PendingLimitError):
            _book(manager, user, slot=TWO)

        manager.cancel(first.id, user)
        assert _book(manager, user, slot=TWO).id is not None

    def test_confirmed_appointments_do_not_count_towards_cap(self, manager, make_user):
        user = make_user()
        admin = make_user(is_admin=True)
        first = _book(manager, user, slot=TEN)
        _book(manager, user, slot=ELEVEN)
        _book(manager, user, slot=TWELVE)
        manager.transition_status(first.id, "confirmed", admin)
        assert _book(manager, user, slot=TWO).id is not None


class TestAvailability:
    def test_active_then_cancelled_appointment(self, manager, make_user):
        user = make_user()
        appointment = _book(manager, user, slot=ELEVEN)

        _, slots, message = manager.availability(TUESDAY)
        assert message is None
        assert {s.slot.label: s.is_booked for s in slots}[ELEVEN] is True

        manager.cancel(appointment.id, user)
        _, slots, _ = manager.availability(TUESDAY)
        assert {s.slot.label: s.is_booked for s in slots}[ELEVEN] is False

    def test_closed_day_message(self, manager):
        day, slots, message = manager.availability(SUNDAY)
        assert slots == []
        assert message == "Clinic is closed on Sundays"


class TestCancellation:
    def test_cancel_pending_records_timestamp_and_actor(self, manager, make_user, dispatcher):
        user = make_user()
        appointment = _book(manager, user)

        cancelled = manager.cancel(appointment.id, user)
        assert cancelled.status == AppointmentStatus.CANCELLED.value
        assert cancelled.cancelled_at is not None
        assert cancelled.cancelled_by == user.id
        assert "cancelled" in dispatcher.sent[-1].message.sms_text

    def test_cancel_cancelled_fails(self, manager, make_user):
        user = make_user()
        appointment = _book(manager, user)
        manager.cancel(appointment.id, user)
        with pytest.raises(ValidationError, match="Already cancelled"):
            manager.cancel(appointment.id, user)

    def test_cancel_completed_fails(self, manager, make_user):
        user = make_user()
        admin = make_user(is_admin=True)
        appointment = _book(manager, user)
        manager.transition_status(appointment.id, "confirmed", admin)
        manager.transition_status(appointment.id, "completed", admin)
        with pytest.raises(ValidationError, match="completed"):
            manager.cancel(appointment.id, user)

    def test_other_user_cannot_cancel(self, manager, make_user):
        appointment = _book(manager, make_user())
        with pytest.raises(AuthorizationError):
            manager.cancel(appointment.id, make_user())

    def test_missing_appointment(self, manager, make_user):
        with pytest.raises(NotFoundError):
            manager.cancel(9999, make_user())

    def test_owner_cutoff_applies_but_admin_is_exempt(self, session, rules, dispatcher, make_user):
        user = make_user()
        admin = make_user(is_admin=True)
        early = _manager_at(session, rules, dispatcher, datetime(2026, 3, 2, 8, 0))
        appointment = _book(early, user, day="2026-03-02", slot=TEN)

        # One hour before the slot
        late = _manager_at(session, rules, dispatcher, datetime(2026, 3, 2, 9, 0))
        with pytest.raises(ValidationError, match="2 hours"):
            late.cancel(appointment.id, user)

        cancelled = late.cancel(appointment.id, admin)
        assert cancelled.cancelled_by == admin.id


class TestReschedule:
    def test_reschedule_moves_slot(self, manager, make_user, dispatcher):
        user = make_user()
        appointment = _book(manager, user, slot=TEN)

        moved = manager.reschedule(appointment.id, user, WEDNESDAY, TWO)
        assert moved.appointment_date == date(2026, 3, 4)
        assert moved.time_slot == TWO
        assert moved.rescheduled_at is not None
        assert "rescheduled" in dispatcher.sent[-1].message.sms_text

        # The old slot is free again
        _, slots, _ = manager.availability(TUESDAY)
        assert {s.slot.label: s.is_booked for s in slots}[TEN] is False

    def test_reschedule_to_own_slot_is_allowed(self, manager, make_user):
        user = make_user()
        appointment = _book(manager, user, slot=TEN)
        moved = manager.reschedule(appointment.id, user, TUESDAY, TEN)
        assert moved.time_slot == TEN

    def test_reschedule_into_held_slot_leaves_original(self, session, manager, make_user):
        first_user, second_user = make_user(), make_user()
        held = _book(manager, first_user, slot=TEN)
        mine = _book(manager, second_user, slot=ELEVEN)

        with pytest.raises(SlotTakenError):
            manager.reschedule(mine.id, second_user, TUESDAY, held.time_slot)

        session.expire_all()
        stored = session.get(Appointment, mine.id)
        assert stored.time_slot == ELEVEN
        assert stored.appointment_date == date(2026, 3, 3)
        assert stored.rescheduled_at is None

    def test_reschedule_requires_both_fields(self, manager, make_user):
        user = make_user()
        appointment = _book(manager, user)
        with pytest.raises(ValidationError, match="required"):
            manager.reschedule(appointment.id, user, WEDNESDAY, None)

    def test_reschedule_refused_on_terminal_state(self, manager, make_user):
        user = make_user()
        appointment = _book(manager, user)
        manager.cancel(appointment.id, user)
        with pytest.raises(ValidationError):
            manager.reschedule(appointment.id, user, WEDNESDAY, TWO)

    @pytest.mark.parametrize("day", ["2026-03-01", SUNDAY])
    def test_reschedule_revalidates_dates(self, manager, make_user, day):
        user = make_user()
        appointment = _book(manager, user)
        with pytest.raises(ValidationError):
            manager.reschedule(appointment.id, user, day, TWO)

    def test_reschedule_beyond_horizon_is_refused(self, manager, make_user):
        user = make_user()
        appointment = _book(manager, user)
        with pytest.raises(ValidationError, match="7 days in advance"):
            manager.reschedule(appointment.id, user, "2027-03-02", TWO)

    def test_reschedule_into_started_slot_is_refused(self, session, rules, dispatcher, make_user):
        afternoon = _manager_at(session, rules, dispatcher, datetime(2026, 3, 2, 16, 30))
        user = make_user()
        appointment = _book(afternoon, user)

        _, slots, _ = afternoon.availability("2026-03-02")
        assert {s.slot.label: s.is_booked for s in slots}[TEN] is True

        with pytest.raises(ValidationError, match="notice"):
            afternoon.reschedule(appointment.id, user, "2026-03-02", TEN)

        session.expire_all()
        assert session.get(Appointment, appointment.id).appointment_date == date(2026, 3, 3)


class TestStatusAndPayments:
    def test_admin_transitions(self, manager, make_user):
        user = make_user()
        admin = make_user(is_admin=True)
        appointment = _book(manager, user)

        with pytest.raises(ValidationError):
            manager.transition_status(appointment.id, "completed", admin)
        with pytest.raises(AuthorizationError):
            manager.transition_status(appointment.id, "confirmed", user)

        assert manager.transition_status(appointment.id, "confirmed", admin).status == "confirmed"
        assert manager.transition_status(appointment.id, "completed", admin).status == "completed"

    def test_clinic_payment_method_resets_status(self, session, manager, make_user):
        user = make_user()
        appointment = _book(manager, user)
        appointment.payment_status = PaymentStatus.FAILED.value
        session.add(appointment)
        session.commit()

        updated = manager.update_payment_method(appointment.id, user, "clinic")
        assert updated.payment_method == "clinic"
        assert updated.payment_status == PaymentStatus.PENDING.value

        with pytest.raises(ValidationError):
            manager.update_payment_method(appointment.id, user, "bitcoin")

    def test_mark_paid_confirms_pending(self, session, manager, make_user):
        appointment = _book(manager, make_user())
        manager.mark_paid(appointment, payment_id=42)
        session.commit()
        assert appointment.status == "confirmed"
        assert appointment.payment_status == "paid"
        assert appointment.payment_method == "online"
        assert appointment.payment_id == 42

    def test_list_and_stats(self, session, manager, make_user):
        user = make_user()
        admin = make_user(is_admin=True)
        a = _book(manager, user, day=TUESDAY, slot=ELEVEN)
        b = _book(manager, user, day=TUESDAY, slot=TEN)
        c = _book(manager, user, day=WEDNESDAY, slot=TEN)

        listed = manager.list_for_user(user)
        assert [x.id for x in listed] == [c.id, b.id, a.id]

        manager.transition_status(a.id, "confirmed", admin)
        manager.mark_paid(a, payment_id=1)
        session.commit()
        manager.transition_status(a.id, "completed", admin)
        manager.cancel(b.id, user)

        assert [x.id for x in manager.list_for_user(user, status="cancelled")] == [b.id]
        assert [x.id for x in manager.list_for_user(user, upcoming=True)] == [c.id]

        stats = manager.user_stats(user)
        assert stats["total"] == 3
        assert stats["completed"] == 1
        assert stats["cancelled"] == 1
        assert stats["pending"] == 1
        assert stats["totalSpent"] == 500
        assert stats["currency"] == "INR"


class TestConflictIndex:
    def test_unique_index_rejects_second_active_row(self, session, make_user):
        user = make_user()
        day = date(2026, 3, 3)
        session.add(Appointment(user_id=user.id, appointment_date=day, time_slot=TEN))
        session.commit()

        session.add(Appointment(user_id=user.id, appointment_date=day, time_slot=TEN, status="confirmed"))
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

    def test_cancelled_rows_do_not_hold_the_slot(self, session, make_user):
        user = make_user()
        day = date(2026, 3, 3)
        session.add(Appointment(user_id=user.id, appointment_date=day, time_slot=TEN, status="cancelled"))
        session.add(Appointment(user_id=user.id, appointment_date=day, time_slot=TEN, status="cancelled"))
        session.add(Appointment(user_id=user.id, appointment_date=day, time_slot=TEN))
        session.commit()


def test_concurrent_bookings_for_one_slot(tmp_path, rules, dispatcher):
    engine = build_engine(f"sqlite:///{tmp_path / 'concurrent.db'}")
    create_db_and_tables(engine)

    with Session(engine) as setup:
        users = [
            User(name=f"Patient {i}", phone=f"+91987650000{i}", password_hash=get_password_hash("password123"),
                 is_verified=True)
            for i in range(2)
        ]
        setup.add_all(users)
        setup.commit()
        user_ids = [u.id for u in users]

    barrier = threading.Barrier(len(user_ids))
    outcomes = []
    outcomes_lock = threading.Lock()

    def attempt(user_id):
        with Session(engine) as db_session:
            user = db_session.get(User, user_id)
            manager = _manager_at(db_session, rules, dispatcher, datetime(2026, 3, 2, 9, 0))
            barrier.wait()
            try:
                _book(manager, user, slot=TWO)
                result = "booked"
            except SlotTakenError:
                result = "taken"
            with outcomes_lock:
                outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(uid,)) for uid in user_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["booked", "taken"]
    engine.dispose()
