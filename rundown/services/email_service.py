"""
Email Service

Renders the emails the accountability pipeline sends: the check-in to a
contact, the invite a new contact receives, and the notice a user gets
when one of their contacts opts out. Sending goes through EmailTransport.
"""

import html
import re
from typing import Optional, Tuple

from rundown.core.config import settings
from rundown.services.transports import DeliveryResult, EmailTransport
import logging

logger = logging.getLogger(__name__)

SUBJECT_FALLBACK = "Accountability Check-In"
MAX_SUBJECT_LENGTH = 60

_SENTENCE_SPLIT = re.compile(r"[.!?]")


def email_subject(message_text: str) -> str:
    """
    First sentence of the message, or a generic subject if it runs long.
    """
    first_sentence = _SENTENCE_SPLIT.split(message_text, maxsplit=1)[0]
    if len(first_sentence) > MAX_SUBJECT_LENGTH or not first_sentence.strip():
        return SUBJECT_FALLBACK
    return first_sentence.strip()


def opt_out_url(token: str) -> str:
    base = settings.PUBLIC_API_BASE_URL.rstrip("/")
    return f"{base}/v1/accountability/opt-out?token={token}"


def _paragraphs(text: str) -> str:
    parts = [p for p in text.split("\n\n") if p.strip()]
    return "".join(
        f'<p style="margin: 16px 0; line-height: 1.5;">{html.escape(p).replace(chr(10), "<br>")}</p>'
        for p in parts
    )


def _wrap(title: str, body_html: str, footer_html: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{html.escape(title)}</title>
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif; background-color: #f9fafb; margin: 0; padding: 0;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <div style="background-color: #ffffff; border-radius: 12px; padding: 32px;">
      <div style="border-left: 4px solid #f97316; padding-left: 20px; margin-bottom: 24px;">
        <h2 style="margin: 0; color: #111827; font-size: 20px;">{html.escape(title)}</h2>
      </div>
      <div style="color: #374151; font-size: 16px;">
        {body_html}
      </div>
      <div style="margin-top: 32px; padding-top: 24px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 14px;">
        {footer_html}
      </div>
    </div>
  </div>
</body>
</html>"""


def render_accountability_email(
    message_text: str,
    opt_out_token: str,
    progress_line: Optional[str] = None,
) -> Tuple[str, str, str]:
    """(subject, html, text) for an accountability check-in."""
    subject = email_subject(message_text)
    unsubscribe = opt_out_url(opt_out_token)

    body = _paragraphs(message_text)
    if progress_line:
        body += f'<p style="margin: 16px 0; color: #6b7280;">{html.escape(progress_line)}</p>'

    footer = (
        "<p>This is an automated accountability message from Rundown. Your friend signed up "
        "to receive these check-ins to help them stay on track with their fitness goals.</p>"
        f'<p><a href="{html.escape(unsubscribe)}">Stop receiving these updates</a></p>'
    )

    text_parts = [message_text]
    if progress_line:
        text_parts.append(progress_line)
    text_parts.append(f"Stop receiving these updates: {unsubscribe}")

    return subject, _wrap(SUBJECT_FALLBACK, body, footer), "\n\n".join(text_parts)


class EmailService:
    """Sends the non-pipeline emails: invites and opt-out notices."""

    def __init__(self, transport: Optional[EmailTransport] = None):
        self.transport = transport or EmailTransport()

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: str,
        headers: Optional[dict] = None,
    ) -> DeliveryResult:
        result = self.transport.send(to_email, text_content, subject=subject, html=html_content, headers=headers)
        if not result.success:
            logger.error(f"Error sending email to {to_email}: {result.error_code} {result.error_message}")
        return result

    def send_contact_invite(self, to_email: str, contact_name: Optional[str], user_name: str, token: str) -> DeliveryResult:
        """Tell a new contact who added them and how to opt out."""
        unsubscribe = opt_out_url(token)
        learn_more = f"{settings.WEB_APP_BASE_URL.rstrip('/')}/accountability"
        greeting = contact_name or "there"

        text = "\n\n".join([
            f"Hey {greeting},",
            f"{user_name} is using Rundown to stay consistent and listed you as their accountability buddy.",
            "You'll get an email if they miss a weekly goal so you can nudge them.",
            f"Need to stop? Opt out anytime: {unsubscribe}",
        ])
        body = _paragraphs("\n\n".join([
            f"Hey {greeting},",
            f"{user_name} is using Rundown to stay consistent and listed you as their accountability buddy.",
            "You'll get an email if they miss a weekly goal so you can nudge them.",
        ]))
        body += f'<p><a href="{html.escape(learn_more)}">Learn how Rundown works</a></p>'
        footer = (
            f'<p>Need to stop? <a href="{html.escape(unsubscribe)}">Opt out anytime</a>. '
            f"Questions: {html.escape(settings.SUPPORT_EMAIL)}</p>"
        )

        return self.send_email(
            to_email,
            f"{user_name} invited you to keep them accountable",
            _wrap("You're an accountability buddy", body, footer),
            text,
            headers={"X-Entity-Ref-ID": token},
        )

    def send_opt_out_notice(self, to_email: str, contact_name: str) -> DeliveryResult:
        """Tell a user that one of their contacts opted out."""
        manage_url = f"{settings.WEB_APP_BASE_URL.rstrip('/')}/settings/accountability"
        text = "\n\n".join([
            f"{contact_name} opted out of accountability emails.",
            "We stopped sending them updates immediately.",
            f"Add another buddy inside the app: {manage_url}",
        ])
        body = _paragraphs("\n\n".join([
            f"{contact_name} opted out of accountability emails.",
            "We stopped sending them updates immediately.",
        ]))
        body += f'<p><a href="{html.escape(manage_url)}">Manage your accountability contacts</a></p>'
        footer = f"<p>Questions: {html.escape(settings.SUPPORT_EMAIL)}</p>"

        return self.send_email(
            to_email,
            f"{contact_name} opted out of Rundown reminders",
            _wrap("A contact opted out", body, footer),
            text,
        )
