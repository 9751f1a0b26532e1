from datetime import datetime
from typing import Optional, Tuple
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status, Request
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select
from database import get_session
from models import OTPMethod, OTPPurpose, User
from schemas import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    ResendOTPRequest,
    ResetPasswordRequest,
    SendOTPRequest,
    UpdateProfileRequest,
    VerifyOTPRequest,
    serialize_user,
)
from auth import get_password_hash, verify_password, create_access_token, revoke_token
from dependencies import get_current_user, get_dispatcher, get_otp_service, get_rules
from rate_limit import limiter, LOGIN_LIMIT, OTP_LIMIT
from services.otp_service import OTPService
from utils.notification_service import (
    EMAIL_CHANNEL,
    NotificationDispatcher,
    render_otp,
    render_password_notice,
    render_welcome,
)
from errors import ConflictError
from validators.business_rules import ClinicRules
from validators.contact_validator import (
    format_phone_number,
    is_email_identifier,
    is_valid_email,
    is_valid_indian_phone,
    normalize_email,
)
from validators.password_validator import validate_password
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])

OTP_PURPOSES = {p.value for p in OTPPurpose}


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


def _clean_phone(phone: Optional[str]) -> Optional[str]:
    if not phone or not phone.strip():
        return None
    phone = format_phone_number(phone)
    if not is_valid_indian_phone(phone):
        raise _bad_request("Please enter a valid 10-digit Indian mobile number")
    return phone


def _clean_email(email: Optional[str]) -> Optional[str]:
    if not email or not email.strip():
        return None
    email = normalize_email(email)
    if not is_valid_email(email):
        raise _bad_request("Please enter a valid email address")
    return email


def _identity(phone: Optional[str], email: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    phone, email = _clean_phone(phone), _clean_email(email)
    if not phone and not email:
        raise _bad_request("Phone number or email is required")
    return phone, email


def _find_user(session: Session, phone: Optional[str], email: Optional[str]) -> Optional[User]:
    if phone:
        return session.exec(select(User).where(User.phone == phone)).first()
    return session.exec(select(User).where(User.email == email)).first()


def _default_method(phone: Optional[str], email: Optional[str], requested: Optional[str]) -> str:
    if requested in {m.value for m in OTPMethod}:
        return requested
    return OTPMethod.SMS.value if phone else OTPMethod.EMAIL.value


def _queue_otp(
    background_tasks: BackgroundTasks,
    dispatcher: NotificationDispatcher,
    rules: ClinicRules,
    phone: Optional[str],
    email: Optional[str],
    code: str,
    method: str,
    name: Optional[str] = None,
):
    message = render_otp(rules.clinic_name, name, code, rules.otp_validity_minutes)
    if method == OTPMethod.BOTH.value:
        if phone:
            background_tasks.add_task(dispatcher.dispatch, phone, None, message)
        if email:
            background_tasks.add_task(dispatcher.dispatch, None, email, message)
        return
    prefer = EMAIL_CHANNEL if method == OTPMethod.EMAIL.value else None
    background_tasks.add_task(dispatcher.dispatch, phone, email, message, prefer)


def _otp_response(message: str, phone: Optional[str], email: Optional[str], rules: ClinicRules) -> dict:
    return {
        "success": True,
        "message": message,
        "phone": phone,
        "email": email,
        "expiryTime": rules.otp_validity_minutes,
    }


@router.post("/send-otp")
@limiter.limit(OTP_LIMIT)
def send_otp(
    request: Request,
    payload: SendOTPRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    otp_service: OTPService = Depends(get_otp_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    rules: ClinicRules = Depends(get_rules),
):
    """Send a registration OTP to a phone number and/or email"""
    phone, email = _identity(payload.phone, payload.email)

    existing_user = _find_user(session, phone, email)
    if existing_user and existing_user.is_verified:
        raise _bad_request("This account is already registered. Please login instead.")

    method = _default_method(phone, email, payload.method)
    record = otp_service.issue(phone, email, OTPPurpose.REGISTRATION.value, method)
    _queue_otp(background_tasks, dispatcher, rules, phone, email, record.code, method)

    return _otp_response("OTP sent successfully", phone, email, rules)


@router.post("/verify-otp", status_code=status.HTTP_201_CREATED)
def verify_otp(
    payload: VerifyOTPRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    otp_service: OTPService = Depends(get_otp_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    rules: ClinicRules = Depends(get_rules),
):
    """Verify a registration OTP and create (or activate) the account"""
    if not payload.otp or not payload.name or not payload.password:
        raise _bad_request("OTP, name and password are required")

    phone, email = _identity(payload.phone, payload.email)

    name = payload.name.strip()
    if len(name) < 2:
        raise _bad_request("Name must be at least 2 characters long")
    validate_password(payload.password)

    existing_user = _find_user(session, phone, email)
    if email:
        email_owner = session.exec(select(User).where(User.email == email)).first()
        if email_owner and (existing_user is None or email_owner.id != existing_user.id):
            raise _bad_request("This email is already registered with another account")

    otp_service.verify(phone, email, payload.otp, OTPPurpose.REGISTRATION.value)

    if existing_user and existing_user.is_verified:
        raise _bad_request("Account already registered. Please login.")

    user = existing_user or User(name=name, password_hash="")
    user.name = name
    user.phone = phone or user.phone
    user.email = email or user.email
    user.password_hash = get_password_hash(payload.password)
    user.is_admin = rules.is_admin_identity(user.phone, user.email)
    user.is_verified = True
    user.is_blocked = False
    session.add(user)
    try:
        session.commit()
    except IntegrityError:
        # Lost a race with another registration for the same contact
        session.rollback()
        raise ConflictError("This phone number or email is already registered")
    session.refresh(user)

    otp_service.consume(phone, email, OTPPurpose.REGISTRATION.value)
    logger.info(f"User {user.id} registered (admin={user.is_admin})")

    message = render_welcome(rules.clinic_name, user.name, rules.admin_identifier)
    background_tasks.add_task(dispatcher.dispatch, user.phone, user.email, message)

    return {
        "success": True,
        "message": "Registration successful!",
        "token": create_access_token(user.id),
        "user": serialize_user(user),
    }


@router.post("/login")
@limiter.limit(LOGIN_LIMIT)
def login(
    request: Request,
    payload: LoginRequest,
    session: Session = Depends(get_session),
):
    """Login with phone number or email plus password"""
    if not payload.identifier or not payload.password:
        raise _bad_request("Please enter your phone number/email and password")

    identifier = payload.identifier.strip()
    if is_email_identifier(identifier):
        email = normalize_email(identifier)
        if not is_valid_email(email):
            raise _bad_request("Please enter a valid email address")
        user = session.exec(select(User).where(User.email == email)).first()
    else:
        phone = format_phone_number(identifier)
        if not is_valid_indian_phone(phone):
            raise _bad_request("Please enter a valid phone number")
        user = session.exec(select(User).where(User.phone == phone)).first()

    if not user:
        raise _bad_request("Invalid credentials. Please check your phone/email and password.")

    if not user.is_verified:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your account is not verified. Please complete registration."
        )

    if user.is_blocked:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your account has been blocked. Please contact the clinic."
        )

    if not verify_password(payload.password, user.password_hash):
        raise _bad_request("Invalid credentials. Please check your phone/email and password.")

    user.last_login = datetime.utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)

    return {
        "success": True,
        "message": "Login successful!",
        "token": create_access_token(user.id),
        "user": serialize_user(user),
    }


@router.post("/forgot-password")
@limiter.limit(OTP_LIMIT)
def forgot_password(
    request: Request,
    payload: ForgotPasswordRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    otp_service: OTPService = Depends(get_otp_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    rules: ClinicRules = Depends(get_rules),
):
    """Send a password reset OTP"""
    phone, email = _identity(payload.phone, payload.email)

    user = _find_user(session, phone, email)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No account found with these details"
        )
    if user.is_blocked:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your account is blocked. Please contact the clinic."
        )

    method = OTPMethod.SMS.value if phone else OTPMethod.EMAIL.value
    record = otp_service.issue(phone, email, OTPPurpose.PASSWORD_RESET.value, method)
    # One delivery to the account's contacts, starting with the requested channel;
    # the other channel is only tried if that attempt fails
    _queue_otp(background_tasks, dispatcher, rules, user.phone, user.email, record.code, method, user.name)

    return _otp_response("OTP sent successfully for password reset", phone, email, rules)


@router.post("/reset-password")
def reset_password(
    payload: ResetPasswordRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    otp_service: OTPService = Depends(get_otp_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    rules: ClinicRules = Depends(get_rules),
):
    if not payload.otp or not payload.new_password:
        raise _bad_request("OTP and new password are required")

    phone, email = _identity(payload.phone, payload.email)
    validate_password(payload.new_password)

    otp_service.verify(phone, email, payload.otp, OTPPurpose.PASSWORD_RESET.value)

    user = _find_user(session, phone, email)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    if verify_password(payload.new_password, user.password_hash):
        raise _bad_request("New password cannot be the same as your current password")

    user.password_hash = get_password_hash(payload.new_password)
    user.password_changed_at = datetime.utcnow()
    session.add(user)
    session.commit()

    otp_service.consume(phone, email, OTPPurpose.PASSWORD_RESET.value)
    logger.info(f"Password reset for user {user.id}")

    message = render_password_notice(rules.clinic_name, user.name, True, rules.admin_identifier)
    background_tasks.add_task(dispatcher.dispatch, user.phone, user.email, message)

    return {
        "success": True,
        "message": "Password reset successfully. You can now login with your new password."
    }


@router.post("/resend-otp")
@limiter.limit(OTP_LIMIT)
def resend_otp(
    request: Request,
    payload: ResendOTPRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    otp_service: OTPService = Depends(get_otp_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    rules: ClinicRules = Depends(get_rules),
):
    if payload.type not in OTP_PURPOSES:
        raise _bad_request("Invalid OTP type")

    phone, email = _identity(payload.phone, payload.email)
    method = OTPMethod.SMS.value if phone else OTPMethod.EMAIL.value
    record = otp_service.issue(phone, email, payload.type, method)

    user = _find_user(session, phone, email)
    _queue_otp(background_tasks, dispatcher, rules, phone, email, record.code, method, user.name if user else None)

    return _otp_response("OTP resent successfully", phone, email, rules)


@router.get("/me")
def get_me(current_user: User = Depends(get_current_user)):
    return {"success": True, "user": serialize_user(current_user, detailed=True)}


@router.put("/update-profile")
def update_profile(
    payload: UpdateProfileRequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    if payload.name is not None:
        name = payload.name.strip()
        if len(name) < 2:
            raise _bad_request("Name must be at least 2 characters long")
        current_user.name = name

    if "email" in payload.model_fields_set:
        if not payload.email:
            if not current_user.phone:
                raise _bad_request("Cannot remove the only contact on the account")
            current_user.email = None
        else:
            email = _clean_email(payload.email)
            taken = session.exec(
                select(User).where(User.email == email, User.id != current_user.id)
            ).first()
            if taken:
                raise _bad_request("This email is already registered with another account")
            current_user.email = email

    session.add(current_user)
    session.commit()
    session.refresh(current_user)

    return {
        "success": True,
        "message": "Profile updated successfully",
        "user": serialize_user(current_user),
    }


@router.post("/change-password")
def change_password(
    payload: ChangePasswordRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    rules: ClinicRules = Depends(get_rules),
):
    if not payload.current_password or not payload.new_password:
        raise _bad_request("Current password and new password are required")

    validate_password(payload.new_password, "New password")

    if not verify_password(payload.current_password, current_user.password_hash):
        raise _bad_request("Current password is incorrect")

    if payload.current_password == payload.new_password:
        raise _bad_request("New password must be different from current password")

    current_user.password_hash = get_password_hash(payload.new_password)
    current_user.password_changed_at = datetime.utcnow()
    session.add(current_user)
    session.commit()

    message = render_password_notice(rules.clinic_name, current_user.name, False, rules.admin_identifier)
    background_tasks.add_task(dispatcher.dispatch, current_user.phone, current_user.email, message)

    return {"success": True, "message": "Password changed successfully"}


@router.post("/logout")
def logout(request: Request, current_user: User = Depends(get_current_user)):
    """Revoke the presented token until it expires"""
    revoke_token(request.state.token, request.state.token_payload)
    logger.info(f"User {current_user.id} logged out")
    return {"success": True, "message": "Logged out successfully"}
