from typing import Optional, Any, Dict
from datetime import datetime, date
from sqlmodel import Field, SQLModel
from sqlalchemy import Column, String, JSON, Index, text
from enum import Enum

ACTIVE_STATUS_CLAUSE = "status IN ('pending', 'confirmed')"
SUCCESS_STATUS_CLAUSE = "status = 'success'"


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


ACTIVE_STATUSES = (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value)
TERMINAL_STATUSES = (AppointmentStatus.CANCELLED.value, AppointmentStatus.COMPLETED.value)


class ConsultationType(str, Enum):
    REGULAR = "regular"
    FOLLOW_UP = "followUp"
    EMERGENCY = "emergency"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    ONLINE = "online"
    CLINIC = "clinic"
    CASH = "cash"
    PENDING = "pending"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class OTPPurpose(str, Enum):
    REGISTRATION = "registration"
    PASSWORD_RESET = "password_reset"


class OTPMethod(str, Enum):
    SMS = "sms"
    EMAIL = "email"
    BOTH = "both"


class SettingType(str, Enum):
    PRICING = "pricing"
    GENERAL = "general"
    NOTIFICATION = "notification"
    PAYMENT = "payment"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    phone: Optional[str] = Field(default=None, unique=True, index=True)
    email: Optional[str] = Field(default=None, unique=True, index=True)
    password_hash: str
    is_admin: bool = Field(default=False)
    is_verified: bool = Field(default=False)
    is_blocked: bool = Field(default=False)
    last_login: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Appointment(SQLModel, table=True):
    """A booked clinic visit; never deleted, only moved between statuses"""
    __table_args__ = (
        # At most one active appointment per (date, slot)
        Index(
            "uq_appointment_active_slot",
            "appointment_date",
            "time_slot",
            unique=True,
            sqlite_where=text(ACTIVE_STATUS_CLAUSE),
            postgresql_where=text(ACTIVE_STATUS_CLAUSE),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    appointment_date: date = Field(index=True)
    time_slot: str
    pain_type: str = Field(default="Other")
    consultation_type: str = Field(default="regular", sa_column=Column(String(20), nullable=False))
    amount: int = Field(default=0, ge=0)
    payment_status: str = Field(default="pending", sa_column=Column(String(20), nullable=False))
    payment_method: str = Field(default="pending", sa_column=Column(String(20), nullable=False))
    payment_id: Optional[int] = None  # latest successful Payment.id
    reason: str = Field(default="")
    notes: str = Field(default="")
    status: str = Field(default="pending", sa_column=Column(String(20), nullable=False, index=True))
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None  # user_id who cancelled
    rescheduled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class OTPRecord(SQLModel, table=True):
    """One-time code sent to a phone and/or email"""
    id: Optional[int] = Field(default=None, primary_key=True)
    phone: Optional[str] = Field(default=None, index=True)
    email: Optional[str] = Field(default=None, index=True)
    code: str
    purpose: str = Field(sa_column=Column(String(20), nullable=False))
    method: str = Field(default="sms", sa_column=Column(String(10), nullable=False))
    expires_at: datetime
    attempts: int = Field(default=0)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class Payment(SQLModel, table=True):
    """Online payment attempt for an appointment"""
    __table_args__ = (
        # At most one successful payment per appointment
        Index(
            "uq_payment_success_appointment",
            "appointment_id",
            unique=True,
            sqlite_where=text(SUCCESS_STATUS_CLAUSE),
            postgresql_where=text(SUCCESS_STATUS_CLAUSE),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    appointment_id: int = Field(foreign_key="appointment.id", index=True)
    order_id: str = Field(unique=True, index=True)
    amount: int
    currency: str = Field(default="INR")
    status: str = Field(default="pending", sa_column=Column(String(20), nullable=False, index=True))
    razorpay_payment_id: Optional[str] = None
    razorpay_order_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    method: Optional[str] = None
    bank: Optional[str] = None
    wallet: Optional[str] = None
    vpa: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_status: Optional[str] = None
    refund_amount: Optional[int] = None
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ClinicSetting(SQLModel, table=True):
    """Admin-editable settings document, one row per type"""
    id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(sa_column=Column(String(20), unique=True, nullable=False))
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    updated_by: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
