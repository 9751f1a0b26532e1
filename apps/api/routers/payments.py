"""Online payment endpoints (Razorpay)"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlmodel import Session, select
from typing import Optional
import time
import logging

from database import get_session
from models import AppointmentStatus, Payment, TransactionStatus, User
from dependencies import (
    get_current_user,
    get_dispatcher,
    get_lifecycle_manager,
    get_payment_gateway,
    get_rules,
    require_admin,
)
from rate_limit import limiter, PAYMENT_LIMIT
from schemas import CreateOrderRequest, VerifyPaymentRequest, serialize_payment
from services.booking import AppointmentLifecycleManager, display_date, settled_payment_message
from services.payment_gateway import RazorpayGateway
from utils.notification_service import NotificationDispatcher, render_payment_receipt
from validators.business_rules import ClinicRules

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


def _require_gateway(gateway: Optional[RazorpayGateway]) -> RazorpayGateway:
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment service not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET"
        )
    return gateway


def _successful_payment(session: Session, appointment_id: int) -> Optional[Payment]:
    return session.exec(
        select(Payment).where(
            Payment.appointment_id == appointment_id,
            Payment.status == TransactionStatus.SUCCESS.value,
        )
    ).first()


@router.post("/create-order")
@limiter.limit(PAYMENT_LIMIT)
def create_order(
    request: Request,
    payload: CreateOrderRequest,
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
    gateway: Optional[RazorpayGateway] = Depends(get_payment_gateway),
):
    """Create a gateway order for the caller's appointment"""
    gateway = _require_gateway(gateway)
    session = manager.session

    appointment = manager.get_for(payload.appointment_id, current_user, allow_admin=False)
    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise HTTPException(status_code=400, detail="Cannot pay for cancelled appointment")

    if _successful_payment(session, appointment.id):
        raise HTTPException(status_code=400, detail="Appointment already paid")

    currency = manager.pricing.currency
    order = gateway.create_order(
        appointment.amount,
        currency,
        receipt=f"receipt_{appointment.id}_{int(time.time())}",
        notes={
            "appointmentId": str(appointment.id),
            "userId": str(current_user.id),
            "userName": current_user.name,
        },
    )

    payment = Payment(
        user_id=current_user.id,
        appointment_id=appointment.id,
        order_id=order["id"],
        amount=appointment.amount,
        currency=currency,
        status=TransactionStatus.PENDING.value,
    )
    session.add(payment)
    session.commit()
    session.refresh(payment)
    logger.info(f"Payment order {payment.order_id} created for appointment {appointment.id}")

    return {
        "success": True,
        "orderId": order["id"],
        "amount": order.get("amount"),
        "currency": order.get("currency", currency),
        "key": gateway.key_id,
        "paymentId": payment.id,
    }


@router.post("/verify-payment")
@limiter.limit(PAYMENT_LIMIT)
def verify_payment(
    request: Request,
    payload: VerifyPaymentRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
    gateway: Optional[RazorpayGateway] = Depends(get_payment_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    rules: ClinicRules = Depends(get_rules),
):
    """Verify the checkout signature and settle the appointment"""
    gateway = _require_gateway(gateway)
    session = manager.session

    if not payload.razorpay_order_id or not payload.razorpay_payment_id:
        raise HTTPException(status_code=400, detail="Order id and payment id are required")

    if payload.payment_id:
        payment = session.get(Payment, payload.payment_id)
    else:
        payment = session.exec(select(Payment).where(Payment.order_id == payload.razorpay_order_id)).first()

    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")

    if payment.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not authorized")

    # Settled payments are immutable apart from refund fields
    if payment.status != TransactionStatus.PENDING.value:
        raise HTTPException(status_code=400, detail=settled_payment_message(payment))

    if payment.order_id != payload.razorpay_order_id or not gateway.verify_signature(
        payload.razorpay_order_id, payload.razorpay_payment_id, payload.razorpay_signature
    ):
        payment.status = TransactionStatus.FAILED.value
        payment.failure_reason = "Invalid signature"
        session.add(payment)
        session.commit()
        logger.warning(f"Invalid payment signature for order {payload.razorpay_order_id}")
        raise HTTPException(status_code=400, detail="Invalid payment signature")

    existing = _successful_payment(session, payment.appointment_id)
    if existing and existing.id != payment.id:
        raise HTTPException(status_code=400, detail="Appointment already paid")

    appointment = manager.settle_payment(
        payment, payload.razorpay_payment_id, payload.razorpay_order_id, payload.razorpay_signature
    )

    message = render_payment_receipt(
        rules.clinic_name, current_user.name, payment.amount, payment.currency,
        payload.razorpay_payment_id, display_date(appointment.appointment_date), appointment.time_slot,
    )
    background_tasks.add_task(dispatcher.dispatch, current_user.phone, current_user.email, message)

    return {
        "success": True,
        "message": "Payment verified successfully",
        "payment": serialize_payment(payment),
    }


@router.get("/payment/{appointment_id}")
def get_payment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    """Latest payment for an appointment"""
    appointment = manager.get_for(appointment_id, current_user)
    payment = manager.session.exec(
        select(Payment)
        .where(Payment.appointment_id == appointment.id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
    ).first()
    return {"success": True, "payment": serialize_payment(payment) if payment else None}


@router.get("/all-payments")
def get_all_payments(
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
):
    payments = session.exec(select(Payment).order_by(Payment.created_at.desc(), Payment.id.desc())).all()
    successful = [p for p in payments if p.status == TransactionStatus.SUCCESS.value]
    stats = {
        "total": len(payments),
        "successful": len(successful),
        "pending": sum(1 for p in payments if p.status == TransactionStatus.PENDING.value),
        "failed": sum(1 for p in payments if p.status == TransactionStatus.FAILED.value),
        "totalRevenue": sum(p.amount for p in successful),
    }
    return {"success": True, "payments": [serialize_payment(p) for p in payments], "stats": stats}
