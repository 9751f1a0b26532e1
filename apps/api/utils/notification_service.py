"""SMS and email notification delivery with channel fallback"""
import os
import logging
import smtplib
import ssl
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, List, Optional, Tuple

from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

logger = logging.getLogger(__name__)

DELIVERED = "delivered"
UNDELIVERED = "undelivered"

PHONE_CHANNEL = "sms"
EMAIL_CHANNEL = "email"


@dataclass
class Message:
    """A rendered notification: SMS text plus email subject/body"""
    sms_text: str
    subject: str
    html: str


@dataclass
class ChannelAttempt:
    channel: str
    success: bool
    detail: Optional[str] = None


@dataclass
class DeliveryReport:
    status: str
    channel: Optional[str] = None
    attempts: List[ChannelAttempt] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return self.status == DELIVERED


class SmsChannel:
    """SMS via Twilio"""

    name = PHONE_CHANNEL

    def __init__(self, timeout: float = 15.0):
        self.account_sid = os.getenv("TWILIO_ACCOUNT_SID")
        self.auth_token = os.getenv("TWILIO_AUTH_TOKEN")
        self.sms_from = os.getenv("TWILIO_SMS_FROM")  # e.g., +1234567890

        if self.account_sid and self.auth_token:
            self.client = Client(
                self.account_sid,
                self.auth_token,
                http_client=TwilioHttpClient(timeout=timeout),
            )
        else:
            self.client = None
            logger.warning("Twilio credentials not configured. SMS channel disabled.")

    def is_configured(self) -> bool:
        return self.client is not None and bool(self.sms_from)

    def send(self, to_phone: str, message: Message) -> Tuple[bool, Optional[str]]:
        """
        Send SMS via Twilio

        Returns:
            (success: bool, message_sid or error: str)
        """
        if not self.is_configured():
            return False, "SMS channel not configured"

        try:
            message_obj = self.client.messages.create(
                from_=self.sms_from,
                body=message.sms_text,
                to=to_phone
            )
            return True, message_obj.sid
        except TwilioRestException as e:
            logger.error(f"Twilio error sending to {to_phone}: {e}")
            return False, f"Twilio error: {e}"


class EmailChannel:
    """Email via SMTP (STARTTLS)"""

    name = EMAIL_CHANNEL

    def __init__(self, timeout: float = 15.0):
        self.host = os.getenv("SMTP_HOST", "smtp.gmail.com")
        self.port = int(os.getenv("SMTP_PORT", "587"))
        self.username = os.getenv("SMTP_USER") or os.getenv("EMAIL_USER")
        self.password = os.getenv("SMTP_PASSWORD") or os.getenv("EMAIL_APP_PASSWORD")
        self.from_address = os.getenv("EMAIL_FROM", self.username or "")
        self.timeout = timeout

        if not (self.username and self.password):
            logger.warning("SMTP credentials not configured. Email channel disabled.")

    def is_configured(self) -> bool:
        return bool(self.username and self.password)

    def send(self, to_email: str, message: Message) -> Tuple[bool, Optional[str]]:
        if not self.is_configured():
            return False, "Email channel not configured"

        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self.from_address
        msg["To"] = to_email
        msg.attach(MIMEText(message.sms_text, "plain"))
        msg.attach(MIMEText(message.html, "html"))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls(context=ssl.create_default_context())
                server.login(self.username, self.password)
                server.sendmail(self.from_address, [to_email], msg.as_string())
            return True, None
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP error sending to {to_email}: {e}")
            return False, f"SMTP error: {e}"


class NotificationDispatcher:
    """Delivers a message over phone then email (or email first on request).

    ``dispatch`` never raises: every channel failure, exception or timeout is
    recorded in the returned report. When no channel delivers, the message is
    written to the log and ``on_undelivered`` is called with the report.
    """

    def __init__(
        self,
        phone_channel=None,
        email_channel=None,
        timeout: float = 15.0,
        on_undelivered: Optional[Callable[[DeliveryReport, Message], None]] = None,
    ):
        self.phone_channel = phone_channel
        self.email_channel = email_channel
        self.timeout = timeout
        self.on_undelivered = on_undelivered
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="notify")

    def _plan(self, phone: Optional[str], email: Optional[str], prefer: Optional[str]):
        phone_step = (self.phone_channel, phone) if phone and self.phone_channel else None
        email_step = (self.email_channel, email) if email and self.email_channel else None
        if prefer == EMAIL_CHANNEL:
            steps = [email_step, phone_step]
        else:
            steps = [phone_step, email_step]
        return [step for step in steps if step]

    def _attempt(self, channel, recipient: str, message: Message) -> ChannelAttempt:
        try:
            future = self._executor.submit(channel.send, recipient, message)
            success, detail = future.result(timeout=self.timeout)
            return ChannelAttempt(channel=channel.name, success=bool(success), detail=detail)
        except FutureTimeout:
            logger.error(f"{channel.name} channel timed out after {self.timeout}s")
            return ChannelAttempt(channel=channel.name, success=False, detail="timeout")
        except Exception as e:
            logger.exception(f"{channel.name} channel raised while sending")
            return ChannelAttempt(channel=channel.name, success=False, detail=str(e))

    def dispatch(
        self,
        phone: Optional[str],
        email: Optional[str],
        message: Message,
        prefer: Optional[str] = None,
    ) -> DeliveryReport:
        report = DeliveryReport(status=UNDELIVERED)
        for channel, recipient in self._plan(phone, email, prefer):
            attempt = self._attempt(channel, recipient, message)
            report.attempts.append(attempt)
            if attempt.success:
                report.status = DELIVERED
                report.channel = attempt.channel
                logger.info(f"Notification delivered via {attempt.channel} to {recipient}")
                return report

        logger.warning(
            f"Notification undelivered (phone={phone}, email={email}, "
            f"attempts={[a.channel for a in report.attempts]})"
        )
        # Console fallback so the message is still recoverable in development
        logger.info(f"Undelivered message body: {message.sms_text}")
        if self.on_undelivered:
            try:
                self.on_undelivered(report, message)
            except Exception:
                logger.exception("on_undelivered hook failed")
        return report


# Template rendering functions

def _html_page(clinic_name: str, heading: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1 style="color: #e67e22;">{clinic_name}</h1>
    <h2>{heading}</h2>
    {body}
    <p style="color: #666; font-size: 12px;">This is an automated email. Please do not reply.</p>
  </div>
</body>
</html>"""


def render_otp(clinic_name: str, name: Optional[str], otp: str, validity_minutes: int) -> Message:
    return Message(
        sms_text=(
            f"Your OTP for {clinic_name} is: {otp}. Valid for {validity_minutes} minutes. "
            "Do not share this code."
        ),
        subject=f"Your OTP for {clinic_name}",
        html=_html_page(
            clinic_name,
            "OTP Verification",
            f"<p>Dear {name or 'Patient'},</p>"
            f"<p>Your One-Time Password is:</p><p style=\"font-size: 32px; letter-spacing: 5px;\"><strong>{otp}</strong></p>"
            f"<p>This OTP is valid for {validity_minutes} minutes only. Please do not share it with anyone.</p>",
        ),
    )


def render_booking_confirmation(clinic_name: str, name: str, date: str, time: str, pain_type: str, contact: Optional[str]) -> Message:
    contact_line = f" Contact: {contact}" if contact else ""
    return Message(
        sms_text=f"Appointment confirmed at {clinic_name} on {date} at {time}.{contact_line}",
        subject=f"Appointment Confirmed - {date}",
        html=_html_page(
            clinic_name,
            "Appointment Confirmed",
            f"<p>Dear {name},</p><p>Your appointment has been booked.</p>"
            f"<ul><li>Date: {date}</li><li>Time: {time}</li><li>Treatment: {pain_type}</li></ul>"
            "<p>Please arrive 10 minutes before your scheduled time.</p>",
        ),
    )


def render_reschedule_confirmation(clinic_name: str, name: str, old_date: str, old_time: str, new_date: str, new_time: str) -> Message:
    return Message(
        sms_text=(
            f"Your appointment at {clinic_name} has been rescheduled from {old_date} {old_time} "
            f"to {new_date} at {new_time}."
        ),
        subject=f"Appointment Rescheduled - {new_date}",
        html=_html_page(
            clinic_name,
            "Appointment Rescheduled",
            f"<p>Dear {name},</p>"
            f"<p>Previous schedule: {old_date} at {old_time}</p>"
            f"<p>New schedule: <strong>{new_date} at {new_time}</strong></p>",
        ),
    )


def render_cancellation_notice(clinic_name: str, name: str, date: str, time: str, contact: Optional[str]) -> Message:
    contact_line = f" Contact: {contact}" if contact else ""
    return Message(
        sms_text=f"Your appointment at {clinic_name} on {date} at {time} has been cancelled.{contact_line}",
        subject="Appointment Cancelled",
        html=_html_page(
            clinic_name,
            "Appointment Cancelled",
            f"<p>Dear {name},</p><p>Your appointment on {date} at {time} has been cancelled.</p>"
            "<p>If you wish to reschedule, please book a new appointment.</p>",
        ),
    )


def render_welcome(clinic_name: str, name: str, contact: Optional[str]) -> Message:
    return Message(
        sms_text=f"Welcome to {clinic_name}, {name}! You can now book appointments online.",
        subject=f"Welcome to {clinic_name}",
        html=_html_page(
            clinic_name,
            f"Welcome {name}!",
            "<p>Your account has been successfully created.</p><p>You can now book appointments online.</p>"
            + (f"<p>Contact us: {contact}</p>" if contact else ""),
        ),
    )


def render_password_notice(clinic_name: str, name: str, reset: bool, contact: Optional[str]) -> Message:
    action = "reset" if reset else "changed"
    return Message(
        sms_text=f"Your {clinic_name} password was {action}. If this wasn't you, contact us immediately.",
        subject=f"Password {action.capitalize()} Successfully",
        html=_html_page(
            clinic_name,
            f"Password {action.capitalize()}",
            f"<p>Hi {name},</p><p>Your password has been successfully {action}.</p>"
            "<p>If you didn't make this change, please contact us immediately.</p>"
            + (f"<p>Contact: {contact}</p>" if contact else ""),
        ),
    )


def render_payment_receipt(clinic_name: str, name: str, amount: int, currency: str, payment_id: str, date: str, time: str) -> Message:
    return Message(
        sms_text=f"Payment of {currency} {amount} received for your {clinic_name} appointment on {date} at {time}. Ref: {payment_id}",
        subject="Payment Received",
        html=_html_page(
            clinic_name,
            "Payment Received",
            f"<p>Dear {name},</p><p>We received your payment of <strong>{currency} {amount}</strong>.</p>"
            f"<ul><li>Payment ID: {payment_id}</li><li>Appointment: {date} at {time}</li></ul>",
        ),
    )


def build_default_dispatcher(timeout: float = 15.0) -> NotificationDispatcher:
    return NotificationDispatcher(
        phone_channel=SmsChannel(timeout=timeout),
        email_channel=EmailChannel(timeout=timeout),
        timeout=timeout,
    )
