"""Razorpay order creation and checkout signature verification"""
import hashlib
import hmac
import logging
import os
from typing import Any, Dict, Optional

import razorpay
from razorpay.errors import BadRequestError, GatewayError, ServerError

from errors import ServiceUnavailableError

logger = logging.getLogger(__name__)


def to_paise(amount_rupees: int) -> int:
    return int(amount_rupees) * 100


class RazorpayGateway:
    def __init__(self, key_id: str, key_secret: str):
        self.key_id = key_id
        self.key_secret = key_secret
        self.client = razorpay.Client(auth=(key_id, key_secret))

    def create_order(self, amount: int, currency: str, receipt: str, notes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Create an order for ``amount`` rupees; the gateway is sent paise"""
        try:
            return self.client.order.create({
                "amount": to_paise(amount),
                "currency": currency,
                "receipt": receipt,
                "notes": notes or {},
            })
        except (BadRequestError, GatewayError, ServerError) as e:
            logger.error(f"Razorpay order creation failed: {e}")
            raise ServiceUnavailableError("Failed to create payment order")

    def verify_signature(self, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        """HMAC-SHA256 of 'order_id|payment_id' keyed with the secret"""
        if not signature:
            return False
        generated_signature = hmac.new(
            self.key_secret.encode(),
            f"{order_id}|{payment_id}".encode(),
            hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(generated_signature, signature)


def build_gateway_from_env() -> Optional[RazorpayGateway]:
    key_id = os.getenv("RAZORPAY_KEY_ID", "")
    key_secret = os.getenv("RAZORPAY_KEY_SECRET", "")
    if not (key_id and key_secret):
        logger.warning("RAZORPAY credentials not configured. Online payments disabled.")
        return None
    return RazorpayGateway(key_id, key_secret)
