"""One-time code issue and verification"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import or_
from sqlmodel import Session, select, func

from errors import RateLimitError, ValidationError
from models import OTPRecord, OTPMethod
from validators.business_rules import ClinicRules
from validators.contact_validator import is_valid_otp

logger = logging.getLogger(__name__)

def generate_otp() -> str:
    """Random 6-digit numeric code (never starts with 0)"""
    return str(100000 + secrets.randbelow(900000))


class OTPService:
    """Issues, rate-limits, verifies and consumes OTP records.

    An identity is a phone number, or an email address when no phone is
    given. Callers normalize both before passing them in.
    """

    def __init__(self, session: Session, rules: ClinicRules, now: Optional[Callable[[], datetime]] = None):
        self.session = session
        self.rules = rules
        self.now = now or datetime.utcnow

    def _identity_clause(self, phone: Optional[str], email: Optional[str]):
        if phone:
            return OTPRecord.phone == phone
        if email:
            return OTPRecord.email == email
        raise ValidationError("Phone number or email is required")

    def purge_stale(self) -> int:
        """Delete records older than the retention window"""
        cutoff = self.now() - timedelta(minutes=self.rules.otp_retention_minutes)
        stale = self.session.exec(select(OTPRecord).where(OTPRecord.created_at < cutoff)).all()
        for record in stale:
            self.session.delete(record)
        if stale:
            self.session.commit()
            logger.debug(f"Purged {len(stale)} stale OTP records")
        return len(stale)

    def sent_today(self, phone: Optional[str], email: Optional[str]) -> int:
        start_of_day = self.now().replace(hour=0, minute=0, second=0, microsecond=0)
        return self.session.exec(
            select(func.count(OTPRecord.id)).where(
                self._identity_clause(phone, email),
                OTPRecord.created_at >= start_of_day,
            )
        ).one()

    def issue(
        self,
        phone: Optional[str],
        email: Optional[str],
        purpose: str,
        method: str = OTPMethod.SMS.value,
    ) -> OTPRecord:
        """Create a fresh code for the identity or raise RateLimitError"""
        identity = self._identity_clause(phone, email)
        self.purge_stale()

        # The daily count only sees records inside the retention window, so the
        # cap is applied against sends since midnight that still exist.
        if self.sent_today(phone, email) >= self.rules.max_otp_per_day:
            raise RateLimitError(
                f"Maximum OTP limit reached for today ({self.rules.max_otp_per_day} OTPs). "
                "Please try again tomorrow."
            )

        now = self.now()
        recent = self.session.exec(
            select(OTPRecord.id).where(
                identity,
                OTPRecord.purpose == purpose,
                OTPRecord.created_at > now - timedelta(seconds=self.rules.otp_resend_cooldown_seconds),
            )
        ).first()
        if recent is not None:
            raise RateLimitError(
                f"Please wait {self.rules.otp_resend_cooldown_seconds} seconds before requesting a new OTP"
            )

        record = OTPRecord(
            phone=phone,
            email=email,
            code=generate_otp(),
            purpose=purpose,
            method=method,
            expires_at=now + timedelta(minutes=self.rules.otp_validity_minutes),
            created_at=now,
        )
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        logger.info(f"OTP issued for {phone or email} ({purpose})")
        return record

    def verify(self, phone: Optional[str], email: Optional[str], code: str, purpose: str) -> OTPRecord:
        """Check ``code`` against the identity's latest record for ``purpose``"""
        if not is_valid_otp(code):
            raise ValidationError("Please enter a valid 6-digit OTP")

        record = self.session.exec(
            select(OTPRecord)
            .where(self._identity_clause(phone, email), OTPRecord.purpose == purpose)
            .order_by(OTPRecord.created_at.desc(), OTPRecord.id.desc())
        ).first()
        if record is None:
            raise ValidationError("Invalid OTP. Please check and try again.")

        now = self.now()
        if record.code != code:
            if record.expires_at > now:
                record.attempts += 1
                if record.attempts >= self.rules.otp_max_attempts:
                    self.session.delete(record)
                    self.session.commit()
                    raise ValidationError("Too many incorrect attempts. Please request a new OTP.")
                self.session.add(record)
                self.session.commit()
            raise ValidationError("Invalid OTP. Please check and try again.")

        if record.expires_at <= now:
            raise ValidationError("OTP has expired. Please request a new one.")
        return record

    def consume(self, phone: Optional[str], email: Optional[str], purpose: str) -> None:
        """Delete every record of ``purpose`` for the identity (phone or email)"""
        clauses = []
        if phone:
            clauses.append(OTPRecord.phone == phone)
        if email:
            clauses.append(OTPRecord.email == email)
        if not clauses:
            return
        records = self.session.exec(
            select(OTPRecord).where(or_(*clauses), OTPRecord.purpose == purpose)
        ).all()
        for record in records:
            self.session.delete(record)
        self.session.commit()
