"""
Outbound transports

Email, SMS and push are interchangeable delivery sinks with one contract:

    send(recipient, content, **extras) -> DeliveryResult

A transport never raises for a failed send; it returns success=False with
an error code. The delivery coordinator only needs `is_retryable(code)`
to decide between re-queueing and failing.
"""

import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Any, Dict, Optional, Tuple

import requests

from rundown.core.config import settings

logger = logging.getLogger(__name__)


# Error codes that will fail the same way on every retry.
NON_RETRYABLE_ERRORS = frozenset({
    "invalid_recipient",
    "unsubscribed",
    "bad_request",
    "validation_error",
})

# Twilio error codes: https://www.twilio.com/docs/api/errors
TWILIO_INVALID_RECIPIENT_CODES = {21211, 21214, 21614}
TWILIO_UNSUBSCRIBED_CODES = {21610}

EXPO_ERROR_CODES = {
    "DeviceNotRegistered": "unsubscribed",
    "InvalidCredentials": "bad_request",
    "MessageTooBig": "bad_request",
    "MessageRateExceeded": "rate_limited",
}


@dataclass
class DeliveryResult:
    success: bool
    provider_message_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return not self.success and is_retryable(self.error_code)


def is_retryable(error_code: Optional[str]) -> bool:
    """Unknown codes are treated as transient."""
    return error_code not in NON_RETRYABLE_ERRORS


def classify_http_status(status_code: int) -> str:
    if status_code == 400:
        return "bad_request"
    if status_code == 422:
        return "validation_error"
    if status_code == 429:
        return "rate_limited"
    if status_code >= 500:
        return "server_error"
    return f"http_{status_code}"


class EmailTransport:
    """SMTP sink. With email disabled (local dev) sends are logged and reported as delivered."""

    channel = "email"

    def __init__(
        self,
        smtp_server: Optional[str] = None,
        smtp_port: Optional[int] = None,
        smtp_username: Optional[str] = None,
        smtp_password: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        enabled: Optional[bool] = None,
    ):
        self.smtp_server = smtp_server or settings.SMTP_SERVER
        self.smtp_port = smtp_port or settings.SMTP_PORT
        self.smtp_username = smtp_username if smtp_username is not None else settings.SMTP_USERNAME
        self.smtp_password = smtp_password if smtp_password is not None else settings.SMTP_PASSWORD
        self.from_email = from_email or settings.FROM_EMAIL
        self.from_name = from_name or settings.FROM_NAME
        self.enabled = settings.EMAIL_ENABLED if enabled is None else enabled

    def send(
        self,
        recipient: str,
        content: str,
        subject: Optional[str] = None,
        html: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> DeliveryResult:
        subject = subject or settings.FROM_NAME

        if not self.enabled:
            logger.info(f"Email disabled, would send to {recipient}: {subject}")
            return DeliveryResult(success=True)

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{self.from_name} <{self.from_email}>"
        msg['To'] = recipient
        msg['Message-ID'] = make_msgid(domain=self.from_email.split("@")[-1])
        for name, value in (headers or {}).items():
            msg[name] = value

        msg.attach(MIMEText(content, 'plain'))
        if html:
            msg.attach(MIMEText(html, 'html'))

        if not (self.smtp_username and self.smtp_password):
            # Local development - just log
            logger.info(f"Would send email to {recipient}: {subject}")
            logger.debug(f"Content: {content[:200]}...")
            return DeliveryResult(success=True, provider_message_id=msg['Message-ID'])

        try:
            server = smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=settings.EXTERNAL_API_TIMEOUT)
            try:
                server.starttls()
                server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)
            finally:
                server.quit()
        except smtplib.SMTPRecipientsRefused as e:
            logger.warning(f"Recipient refused for {recipient}: {e}")
            return DeliveryResult(success=False, error_code="invalid_recipient", error_message=str(e))
        except smtplib.SMTPResponseException as e:
            code = "invalid_recipient" if e.smtp_code in (550, 553) else "smtp_error"
            logger.error(f"SMTP error sending to {recipient}: {e.smtp_code} {e.smtp_error!r}")
            return DeliveryResult(success=False, error_code=code, error_message=str(e))
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending email to {recipient}: {str(e)}")
            return DeliveryResult(success=False, error_code="network_error", error_message=str(e))

        return DeliveryResult(success=True, provider_message_id=msg['Message-ID'])


class SmsTransport:
    """Twilio Messages API over HTTPS."""

    channel = "sms"

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        api_base: Optional[str] = None,
        enabled: Optional[bool] = None,
        timeout: Optional[int] = None,
    ):
        self.account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number or settings.TWILIO_FROM_NUMBER
        self.api_base = (api_base or settings.TWILIO_API_BASE).rstrip("/")
        self.enabled = settings.SMS_ENABLED if enabled is None else enabled
        self.timeout = timeout or settings.EXTERNAL_API_TIMEOUT

    def send(self, recipient: str, content: str, **_extras: Any) -> DeliveryResult:
        if not self.enabled:
            logger.info(f"SMS disabled, would send to {recipient}: {content[:60]}")
            return DeliveryResult(success=True)

        url = f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"
        try:
            r = requests.post(
                url,
                data={"To": recipient, "From": self.from_number, "Body": content},
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Twilio request failed for {recipient}: {e}")
            return DeliveryResult(success=False, error_code="network_error", error_message=str(e))

        if r.status_code in (200, 201):
            body = r.json()
            return DeliveryResult(success=True, provider_message_id=body.get("sid"))

        error_code, error_message = self._classify_error(r)
        logger.warning(f"Twilio rejected SMS to {recipient}: {r.status_code} {error_code}")
        return DeliveryResult(success=False, error_code=error_code, error_message=error_message)

    @staticmethod
    def _classify_error(r: requests.Response) -> Tuple[str, str]:
        try:
            body = r.json()
        except ValueError:
            body = {}
        twilio_code = body.get("code")
        message = body.get("message") or r.text[:200]

        if twilio_code in TWILIO_UNSUBSCRIBED_CODES:
            return "unsubscribed", message
        if twilio_code in TWILIO_INVALID_RECIPIENT_CODES:
            return "invalid_recipient", message
        return classify_http_status(r.status_code), message


class PushTransport:
    """Expo push service. `recipient` is the device's Expo push token."""

    channel = "push"

    def __init__(self, push_url: Optional[str] = None, enabled: Optional[bool] = None, timeout: Optional[int] = None):
        self.push_url = push_url or settings.EXPO_PUSH_URL
        self.enabled = settings.PUSH_ENABLED if enabled is None else enabled
        self.timeout = timeout or settings.EXTERNAL_API_TIMEOUT

    def send(
        self,
        recipient: str,
        content: str,
        title: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        **_extras: Any,
    ) -> DeliveryResult:
        if not self.enabled:
            logger.info(f"Push disabled, would notify {recipient[:12]}...: {title or content[:60]}")
            return DeliveryResult(success=True)

        payload = {
            "to": recipient,
            "title": title or settings.FROM_NAME,
            "body": content,
            "sound": "default",
            "priority": "high",
            "data": data or {},
        }
        try:
            r = requests.post(self.push_url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Expo push request failed: {e}")
            return DeliveryResult(success=False, error_code="network_error", error_message=str(e))

        if r.status_code != 200:
            return DeliveryResult(
                success=False,
                error_code=classify_http_status(r.status_code),
                error_message=r.text[:200],
            )

        ticket = (r.json() or {}).get("data") or {}
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}
        if ticket.get("status") == "ok":
            return DeliveryResult(success=True, provider_message_id=ticket.get("id"))

        expo_error = (ticket.get("details") or {}).get("error")
        return DeliveryResult(
            success=False,
            error_code=EXPO_ERROR_CODES.get(expo_error, "push_error"),
            error_message=ticket.get("message"),
        )


@dataclass
class Transports:
    """The sinks available to a delivery pass."""
    email: Any
    sms: Any
    push: Any

    def for_contact(self, contact) -> Optional[Tuple[str, Any, str]]:
        """(channel, transport, address) for a contact; email preferred over SMS."""
        if contact.email:
            return "email", self.email, contact.email
        if contact.phone:
            return "sms", self.sms, contact.phone
        return None


def build_transports() -> Transports:
    return Transports(email=EmailTransport(), sms=SmsTransport(), push=PushTransport())
