from datetime import datetime
from typing import Callable, Optional
from fastapi import BackgroundTasks, Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlmodel import Session
from database import get_session
from models import User
from auth import decode_token
from services.booking import AppointmentLifecycleManager
from services.otp_service import OTPService
from services.payment_gateway import RazorpayGateway
from services.pricing import PricingResolver, get_pricing_resolver
from utils.notification_service import NotificationDispatcher, build_default_dispatcher
from validators.business_rules import ClinicRules

security = HTTPBearer(auto_error=False)


def get_rules(request: Request) -> ClinicRules:
    rules = getattr(request.app.state, "rules", None)
    if rules is None:
        rules = ClinicRules.from_env()
        request.app.state.rules = rules
    return rules


def get_clock(rules: ClinicRules = Depends(get_rules)) -> Callable[[], datetime]:
    """Clinic-local clock; overridden in tests to pin 'now'"""
    return rules.now


def get_dispatcher(request: Request, rules: ClinicRules = Depends(get_rules)) -> NotificationDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        dispatcher = build_default_dispatcher(rules.notification_timeout_seconds)
        request.app.state.dispatcher = dispatcher
    return dispatcher


def get_payment_gateway(request: Request) -> Optional[RazorpayGateway]:
    return getattr(request.app.state, "payment_gateway", None)


def get_pricing(
    session: Session = Depends(get_session),
    rules: ClinicRules = Depends(get_rules),
) -> PricingResolver:
    return get_pricing_resolver(session, rules)


def get_lifecycle_manager(
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    rules: ClinicRules = Depends(get_rules),
    pricing: PricingResolver = Depends(get_pricing),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AppointmentLifecycleManager:
    return AppointmentLifecycleManager(
        session,
        rules,
        pricing,
        dispatcher,
        now=clock,
        defer=background_tasks.add_task,
    )


def get_otp_service(
    session: Session = Depends(get_session),
    rules: ClinicRules = Depends(get_rules),
) -> OTPService:
    return OTPService(session, rules)


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session: Session = Depends(get_session)
) -> User:
    """Get current authenticated user"""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No token, authorization denied"
        )

    payload = decode_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials"
        )

    try:
        user = session.get(User, int(payload["sub"]))
    except ValueError:
        user = None

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )

    if user.is_blocked:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your account has been blocked"
        )

    # Raw token and claims for logout, user id for the activity log
    request.state.token = credentials.credentials
    request.state.token_payload = payload
    request.state.user_id = user.id
    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user
