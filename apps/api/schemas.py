from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from models import Appointment, Payment, User


class CamelModel(BaseModel):
    """Accepts camelCase JSON keys (and snake_case field names)"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Auth request schemas
class SendOTPRequest(CamelModel):
    phone: Optional[str] = None
    email: Optional[str] = None
    method: Optional[str] = None  # sms | email | both


class VerifyOTPRequest(CamelModel):
    phone: Optional[str] = None
    email: Optional[str] = None
    otp: Optional[str] = None
    name: Optional[str] = None
    password: Optional[str] = None


class LoginRequest(CamelModel):
    identifier: Optional[str] = None
    password: Optional[str] = None


class ForgotPasswordRequest(CamelModel):
    phone: Optional[str] = None
    email: Optional[str] = None


class ResetPasswordRequest(CamelModel):
    phone: Optional[str] = None
    email: Optional[str] = None
    otp: Optional[str] = None
    new_password: Optional[str] = None


class ResendOTPRequest(CamelModel):
    phone: Optional[str] = None
    email: Optional[str] = None
    type: str = "registration"


class UpdateProfileRequest(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None  # "" removes the email


class ChangePasswordRequest(CamelModel):
    current_password: Optional[str] = None
    new_password: Optional[str] = None


# Appointment request schemas
class BookAppointmentRequest(CamelModel):
    date: Optional[str] = None
    time_slot: Optional[str] = None
    pain_type: Optional[str] = None
    consultation_type: Optional[str] = None
    reason: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    notify_via: Optional[str] = None


class PaymentMethodUpdate(CamelModel):
    payment_method: Optional[str] = None


class RescheduleRequest(CamelModel):
    new_date: Optional[str] = None
    new_time_slot: Optional[str] = None


# Payment request schemas
class CreateOrderRequest(CamelModel):
    appointment_id: int


class VerifyPaymentRequest(CamelModel):
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    payment_id: Optional[int] = None


# Admin request schemas
class AppointmentStatusUpdate(CamelModel):
    status: Optional[str] = None


class BlockUserRequest(CamelModel):
    blocked: bool = True


class PricingUpdate(CamelModel):
    pricing: Dict[str, Any]


# Response serializers
def serialize_user(user: User, detailed: bool = False) -> Dict[str, Any]:
    data = {
        "id": user.id,
        "name": user.name,
        "phone": user.phone,
        "email": user.email or None,
        "isAdmin": user.is_admin,
    }
    if detailed:
        data["isVerified"] = user.is_verified
        data["isBlocked"] = user.is_blocked
        data["createdAt"] = user.created_at.isoformat() if user.created_at else None
    return data


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_appointment(appointment: Appointment, user: Optional[User] = None) -> Dict[str, Any]:
    data = {
        "id": appointment.id,
        "userId": appointment.user_id,
        "date": appointment.appointment_date.isoformat(),
        "timeSlot": appointment.time_slot,
        "painType": appointment.pain_type,
        "consultationType": appointment.consultation_type,
        "amount": appointment.amount,
        "paymentStatus": appointment.payment_status,
        "paymentMethod": appointment.payment_method,
        "paymentId": appointment.payment_id,
        "status": appointment.status,
        "reason": appointment.reason,
        "notes": appointment.notes,
        "cancelledAt": _iso(appointment.cancelled_at),
        "cancelledBy": appointment.cancelled_by,
        "rescheduledAt": _iso(appointment.rescheduled_at),
        "createdAt": _iso(appointment.created_at),
    }
    if user is not None:
        data["user"] = {"id": user.id, "name": user.name, "phone": user.phone, "email": user.email}
    return data


def serialize_payment(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "userId": payment.user_id,
        "appointmentId": payment.appointment_id,
        "orderId": payment.order_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "razorpayPaymentId": payment.razorpay_payment_id,
        "razorpayOrderId": payment.razorpay_order_id,
        "method": payment.method,
        "failureReason": payment.failure_reason,
        "refundStatus": payment.refund_status,
        "refundAmount": payment.refund_amount,
        "paidAt": _iso(payment.paid_at),
        "createdAt": _iso(payment.created_at),
    }
