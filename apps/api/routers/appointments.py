"""Appointment booking endpoints"""
from fastapi import APIRouter, Depends, status
from sqlmodel import Session
from typing import Optional
import logging

from database import get_session
from models import User
from dependencies import get_current_user, get_lifecycle_manager, get_rules
from schemas import (
    BookAppointmentRequest,
    PaymentMethodUpdate,
    RescheduleRequest,
    serialize_appointment,
)
from services.booking import AppointmentLifecycleManager, BookingRequest
from services.pricing import load_pricing_table
from validators.business_rules import ClinicRules

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointments", tags=["appointments"])


@router.get("/pricing")
def get_pricing(
    session: Session = Depends(get_session),
    rules: ClinicRules = Depends(get_rules),
):
    """Active pricing table (public)"""
    return {"success": True, "pricing": load_pricing_table(session, rules)}


@router.get("/slots/{date}")
def get_available_slots(
    date: str,
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    """Slot availability for a date (public)"""
    day, slots, message = manager.availability(date)
    if message:
        return {"success": True, "slots": [], "message": message}
    return {
        "success": True,
        "slots": [s.to_dict() for s in slots],
        "date": day.isoformat(),
    }


@router.post("/book", status_code=status.HTTP_201_CREATED)
def book_appointment(
    payload: BookAppointmentRequest,
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    result = manager.book(current_user, BookingRequest(
        date=payload.date,
        time_slot=payload.time_slot,
        pain_type=payload.pain_type,
        consultation_type=payload.consultation_type,
        reason=payload.reason,
        phone=payload.phone,
        email=payload.email,
        notify_via=payload.notify_via,
    ))
    return {
        "success": True,
        "message": "Appointment booked successfully! Please complete payment.",
        "appointment": serialize_appointment(result.appointment),
        "amount": result.amount,
        "currency": result.currency,
        "paymentRequired": True,
    }


@router.patch("/{appointment_id}/payment-method")
def update_payment_method(
    appointment_id: int,
    payload: PaymentMethodUpdate,
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    appointment = manager.update_payment_method(appointment_id, current_user, payload.payment_method)
    return {
        "success": True,
        "message": "Payment method updated",
        "appointment": serialize_appointment(appointment),
    }


@router.get("/my-appointments")
def get_my_appointments(
    status: Optional[str] = None,
    upcoming: bool = False,
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    appointments = manager.list_for_user(current_user, status=status, upcoming=upcoming)
    return {
        "success": True,
        "appointments": [serialize_appointment(a, current_user) for a in appointments],
        "total": len(appointments),
    }


@router.get("/stats/user")
def get_user_stats(
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    return {"success": True, "stats": manager.user_stats(current_user)}


@router.get("/{appointment_id}")
def get_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    appointment = manager.get_for(appointment_id, current_user)
    owner = manager.session.get(User, appointment.user_id)
    return {"success": True, "appointment": serialize_appointment(appointment, owner)}


@router.delete("/{appointment_id}")
def cancel_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    appointment = manager.cancel(appointment_id, current_user)
    return {
        "success": True,
        "message": "Appointment cancelled",
        "appointment": serialize_appointment(appointment),
    }


@router.patch("/{appointment_id}/reschedule")
def reschedule_appointment(
    appointment_id: int,
    payload: RescheduleRequest,
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    appointment = manager.reschedule(appointment_id, current_user, payload.new_date, payload.new_time_slot)
    return {
        "success": True,
        "message": "Appointment rescheduled successfully",
        "appointment": serialize_appointment(appointment),
    }
