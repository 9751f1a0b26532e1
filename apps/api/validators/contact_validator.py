"""Phone number and email validation utilities"""
import re
from typing import Optional

INDIAN_MOBILE_PATTERN = re.compile(r'^(\+91)?[6-9]\d{9}$')
EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
OTP_PATTERN = re.compile(r'^\d{6}$')


def format_phone_number(phone: str) -> str:
    """Normalize a phone number to +91XXXXXXXXXX where possible"""
    phone = re.sub(r'\s', '', phone.strip())
    if not phone.startswith('+91'):
        phone = phone.lstrip('0')
        if len(phone) == 10:
            phone = '+91' + phone
    return phone


def is_valid_indian_phone(phone: str) -> bool:
    return bool(INDIAN_MOBILE_PATTERN.match(re.sub(r'\s', '', phone)))


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


def is_valid_otp(code: Optional[str]) -> bool:
    return bool(code) and bool(OTP_PATTERN.match(code))


def is_email_identifier(identifier: str) -> bool:
    return '@' in identifier
