from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session, select
from typing import Optional
import logging
from database import get_session
from models import User
from schemas import AppointmentStatusUpdate, BlockUserRequest, serialize_appointment, serialize_user
from dependencies import get_lifecycle_manager, require_admin
from services.booking import AppointmentLifecycleManager
from validators.time_validator import parse_calendar_date

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


@router.get("/users")
def list_all_users(
    current_user: User = Depends(require_admin),
    session: Session = Depends(get_session)
):
    """List all users (admin only)"""
    users = session.exec(select(User).order_by(User.created_at.desc())).all()
    return {"success": True, "users": [serialize_user(u, detailed=True) for u in users]}


@router.patch("/users/{user_id}/block")
def set_user_blocked(
    user_id: int,
    payload: BlockUserRequest,
    current_user: User = Depends(require_admin),
    session: Session = Depends(get_session)
):
    """Block or unblock a user account (admin only)"""
    user = session.get(User, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    if user.id == current_user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot block your own account"
        )

    user.is_blocked = payload.blocked
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"Admin {current_user.id} set blocked={payload.blocked} for user {user.id}")

    return {
        "success": True,
        "message": "User blocked" if user.is_blocked else "User unblocked",
        "user": serialize_user(user, detailed=True),
    }


@router.get("/appointments")
def list_all_appointments(
    status: Optional[str] = None,
    date: Optional[str] = None,
    current_user: User = Depends(require_admin),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    """List all appointments, optionally filtered by status and date (admin only)"""
    day = parse_calendar_date(date) if date else None
    appointments = manager.list_all(status=status, day=day)
    users = {u.id: u for u in manager.session.exec(select(User)).all()}
    return {
        "success": True,
        "appointments": [serialize_appointment(a, users.get(a.user_id)) for a in appointments],
        "total": len(appointments),
    }


@router.patch("/appointments/{appointment_id}/status")
def update_appointment_status(
    appointment_id: int,
    payload: AppointmentStatusUpdate,
    current_user: User = Depends(require_admin),
    manager: AppointmentLifecycleManager = Depends(get_lifecycle_manager),
):
    """Confirm or complete an appointment (admin only)"""
    appointment = manager.transition_status(appointment_id, payload.status, current_user)
    return {
        "success": True,
        "message": f"Appointment {appointment.status}",
        "appointment": serialize_appointment(appointment),
    }
