"""Date validation utilities"""
from datetime import date, datetime, timedelta
from typing import Optional, Union

from errors import ValidationError
from validators.business_rules import ClinicRules


def parse_calendar_date(value: Union[str, date, datetime, None], field_name: str = "date") -> date:
    """Parse 'YYYY-MM-DD' (or an ISO timestamp, keeping only its date part)"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        raise ValidationError(f"{field_name} is required")
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value}. Use YYYY-MM-DD format")


def validate_not_in_past(day: date, today: date) -> None:
    """Date-only comparison, so today is always allowed"""
    if day < today:
        raise ValidationError("Cannot book past dates")


def validate_within_booking_horizon(day: date, today: date, rules: ClinicRules) -> None:
    if day > today + timedelta(days=rules.advance_booking_days):
        raise ValidationError(f"Bookings only {rules.advance_booking_days} days in advance")


def validate_open_day(day: date, rules: ClinicRules, closed_day_name: Optional[str] = None) -> None:
    if day.weekday() == rules.closed_weekday:
        raise ValidationError(f"Closed on {closed_day_name or 'this day'}s")


def hours_until(moment: datetime, now: datetime) -> float:
    return (moment - now).total_seconds() / 3600
