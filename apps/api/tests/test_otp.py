from datetime import datetime, timedelta

import pytest
from sqlmodel import select

from errors import RateLimitError, ValidationError
from models import OTPRecord
from services.otp_service import OTPService, generate_otp
from validators.business_rules import ClinicRules

PHONE = "+919876543210"
REGISTRATION = "registration"
RESET = "password_reset"


class Clock:
    def __init__(self, start):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 2, 9, 0))


@pytest.fixture
def otp_service(session, clock):
    return OTPService(session, ClinicRules(max_otp_per_day=3), now=clock)


def _records(session):
    return session.exec(select(OTPRecord)).all()


def test_generated_codes_are_six_digits():
    for _ in range(50):
        code = generate_otp()
        assert len(code) == 6
        assert code.isdigit()


def test_issue_creates_record_with_expiry(otp_service, clock):
    record = otp_service.issue(PHONE, None, REGISTRATION)
    assert record.phone == PHONE
    assert record.expires_at == clock() + timedelta(minutes=5)
    assert record.attempts == 0


def test_identity_is_required(otp_service):
    with pytest.raises(ValidationError):
        otp_service.issue(None, None, REGISTRATION)


def test_resend_cooldown(otp_service, clock):
    otp_service.issue(PHONE, None, REGISTRATION)
    clock.advance(seconds=30)
    with pytest.raises(RateLimitError):
        otp_service.issue(PHONE, None, REGISTRATION)

    # Cooldown is per purpose
    otp_service.issue(PHONE, None, RESET)

    clock.advance(seconds=31)
    otp_service.issue(PHONE, None, REGISTRATION)


def test_daily_cap(otp_service, clock):
    for _ in range(3):
        otp_service.issue(PHONE, None, REGISTRATION)
        clock.advance(seconds=61)

    with pytest.raises(RateLimitError) as exc_info:
        otp_service.issue(PHONE, None, REGISTRATION)
    assert exc_info.value.status_code == 429


def test_email_identity(otp_service):
    record = otp_service.issue(None, "a@example.com", REGISTRATION, "email")
    assert otp_service.verify(None, "a@example.com", record.code, REGISTRATION).id == record.id


def test_verify_success(otp_service):
    record = otp_service.issue(PHONE, None, REGISTRATION)
    assert otp_service.verify(PHONE, None, record.code, REGISTRATION).id == record.id


def test_verify_rejects_malformed_code(otp_service):
    otp_service.issue(PHONE, None, REGISTRATION)
    with pytest.raises(ValidationError, match="6-digit"):
        otp_service.verify(PHONE, None, "12ab", REGISTRATION)


def test_wrong_code_counts_attempts_then_discards(session, otp_service):
    otp_service.issue(PHONE, None, REGISTRATION)

    for expected_attempts in range(1, 5):
        with pytest.raises(ValidationError, match="Invalid OTP"):
            otp_service.verify(PHONE, None, "000000", REGISTRATION)
        assert _records(session)[0].attempts == expected_attempts

    with pytest.raises(ValidationError, match="Too many"):
        otp_service.verify(PHONE, None, "000000", REGISTRATION)
    assert _records(session) == []


def test_expired_code(otp_service, clock):
    record = otp_service.issue(PHONE, None, REGISTRATION)
    clock.advance(minutes=6)
    with pytest.raises(ValidationError, match="expired"):
        otp_service.verify(PHONE, None, record.code, REGISTRATION)


def test_code_for_other_purpose_does_not_verify(otp_service):
    record = otp_service.issue(PHONE, None, REGISTRATION)
    with pytest.raises(ValidationError):
        otp_service.verify(PHONE, None, record.code, RESET)


def test_consume_deletes_only_that_purpose(session, otp_service, clock):
    otp_service.issue(PHONE, None, REGISTRATION)
    otp_service.issue(PHONE, None, RESET)

    otp_service.consume(PHONE, None, REGISTRATION)

    remaining = _records(session)
    assert [r.purpose for r in remaining] == [RESET]


def test_stale_records_are_purged_on_send(session, otp_service, clock):
    otp_service.issue(PHONE, None, REGISTRATION)
    clock.advance(minutes=11)
    otp_service.issue("+919876543211", None, REGISTRATION)

    assert [r.phone for r in _records(session)] == ["+919876543211"]
