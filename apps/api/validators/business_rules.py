"""Clinic business rules configuration"""
import os
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from validators.contact_validator import format_phone_number, is_email_identifier, normalize_email


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


class ClinicRules(BaseModel):
    """Runtime configuration for booking, OTP and pricing behaviour.

    Built once at startup (``ClinicRules.from_env()``) and handed to the
    services that need it, so tests can construct their own instance.
    """
    clinic_name: str = "Eswari Physiotherapy"
    admin_identifier: Optional[str] = None
    currency: str = "INR"
    timezone: str = "Asia/Kolkata"
    pricing_mode: str = "production"

    # OTP rules
    max_otp_per_day: int = 5
    otp_validity_minutes: int = 5
    otp_resend_cooldown_seconds: int = 60
    otp_retention_minutes: int = 10
    otp_max_attempts: int = 5

    # Appointment rules
    max_pending_appointments: int = 3
    advance_booking_days: int = 7
    same_day_cutoff_minutes: int = 30
    cancellation_cutoff_hours: int = 2
    closed_weekday: int = 6  # 0=Monday, 6=Sunday

    # Notification delivery
    notification_timeout_seconds: float = 15.0

    @classmethod
    def from_env(cls) -> "ClinicRules":
        return cls(
            clinic_name=os.getenv("CLINIC_NAME", cls.model_fields["clinic_name"].default),
            admin_identifier=os.getenv("ADMIN_PHONE") or None,
            timezone=os.getenv("CLINIC_TIMEZONE", "Asia/Kolkata"),
            pricing_mode=os.getenv("PRICING_MODE", "production").lower(),
            max_otp_per_day=_env_int("MAX_OTP_PER_DAY", 5),
            otp_validity_minutes=_env_int("OTP_VALIDITY_MINUTES", 5),
            max_pending_appointments=_env_int("MAX_PENDING_APPOINTMENTS", 3),
            advance_booking_days=_env_int("ADVANCE_BOOKING_DAYS", 7),
            same_day_cutoff_minutes=_env_int("SAME_DAY_CUTOFF_MINUTES", 30),
            cancellation_cutoff_hours=_env_int("CANCELLATION_CUTOFF_HOURS", 2),
        )

    def now(self) -> datetime:
        """Current wall-clock time at the clinic, as a naive datetime"""
        return datetime.now(ZoneInfo(self.timezone)).replace(tzinfo=None)

    def is_admin_identity(self, phone: Optional[str], email: Optional[str]) -> bool:
        if not self.admin_identifier:
            return False
        if is_email_identifier(self.admin_identifier):
            return bool(email) and normalize_email(self.admin_identifier) == email
        return bool(phone) and format_phone_number(self.admin_identifier) == phone
