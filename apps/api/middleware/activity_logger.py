"""Activity logging middleware"""
import logging
import time
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("clinic.activity")

SKIP_PATHS = ("/health", "/docs", "/openapi.json", "/redoc", "/favicon.ico")


def client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def determine_activity(method: str, path: str) -> Optional[str]:
    """Name the user-facing action behind a request, if it is one we track"""
    if path.startswith("/api/auth/"):
        action = path.rsplit("/", 1)[-1]
        if action in ("login", "logout", "verify-otp", "reset-password", "change-password"):
            return f"auth_{action.replace('-', '_')}"
        return None

    if path.startswith("/api/appointments"):
        if method == "POST" and path.endswith("/book"):
            return "appointment_book"
        if method == "DELETE":
            return "appointment_cancel"
        if method == "PATCH" and path.endswith("/reschedule"):
            return "appointment_reschedule"
        if method == "PATCH" and path.endswith("/payment-method"):
            return "appointment_payment_method"
        return None

    if path.startswith("/api/payments/") and method == "POST":
        return "payment_" + path.rsplit("/", 1)[-1].replace("-", "_")

    if path.startswith("/api/admin/") or path.startswith("/api/settings/"):
        if method in ("PATCH", "PUT"):
            return "admin_update"

    return None


class ActivityLoggingMiddleware(BaseHTTPMiddleware):
    """Logs tracked user actions with outcome, caller and timing"""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if any(path.startswith(skip) for skip in SKIP_PATHS):
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        activity = determine_activity(request.method, path)
        if activity:
            user_id = getattr(request.state, "user_id", None)
            level = logging.INFO if response.status_code < 400 else logging.WARNING
            logger.log(
                level,
                f"{activity} user={user_id or '-'} ip={client_ip(request)} "
                f"status={response.status_code} took={elapsed_ms:.0f}ms",
            )
        else:
            logger.debug(f"{request.method} {path} -> {response.status_code} ({elapsed_ms:.0f}ms)")

        return response
