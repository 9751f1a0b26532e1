"""Shared request rate limiter"""
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"

limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)

# Limits for the endpoints that reach SMS/email or the payment gateway
OTP_LIMIT = "5/minute"
LOGIN_LIMIT = "10/minute"
PAYMENT_LIMIT = "10/minute"
