"""Email subject and body rendering."""

from rundown.services.email_service import (
    SUBJECT_FALLBACK,
    EmailService,
    email_subject,
    render_accountability_email,
)
from rundown.services.transports import DeliveryResult


class RecordingEmailTransport:
    def __init__(self):
        self.sent = []

    def send(self, recipient, content, **extras):
        self.sent.append({"recipient": recipient, "content": content, **extras})
        return DeliveryResult(success=True)


class TestEmailSubject:

    def test_first_sentence(self):
        assert email_subject("Great news! Sam crushed their running goal this week.") == "Great news"

    def test_long_first_sentence_uses_fallback(self):
        text = "Your workout buddy Sam is making excuses again with their running goal and needs tough love. Really."
        assert email_subject(text) == SUBJECT_FALLBACK

    def test_exactly_sixty_characters_kept(self):
        sentence = "x" * 60
        assert email_subject(sentence + ". more") == sentence

    def test_no_punctuation_uses_whole_message(self):
        assert email_subject("Sam ran today") == "Sam ran today"


class TestAccountabilityEmail:

    def test_body_has_progress_and_opt_out_link(self):
        subject, html, text = render_accountability_email(
            "Hey! Sam missed their goal.\n\nSend them some love.",
            "tok-123",
            "This week's progress: 1 out of 3 runs completed",
        )
        assert subject == "Hey"
        assert "/v1/accountability/opt-out?token=tok-123" in html
        assert "1 out of 3 runs completed" in html
        assert "opt-out?token=tok-123" in text
        assert html.count("<p style=\"margin: 16px 0; line-height: 1.5;\">") == 2

    def test_message_is_html_escaped(self):
        _, html, _ = render_accountability_email("<script>alert(1)</script>", "t")
        assert "<script>" not in html


class TestEmailService:

    def test_invite_includes_token_header(self):
        transport = RecordingEmailTransport()
        EmailService(transport).send_contact_invite("buddy@example.com", "Alex", "Sam", "tok-9")
        sent = transport.sent[0]
        assert sent["subject"] == "Sam invited you to keep them accountable"
        assert sent["headers"] == {"X-Entity-Ref-ID": "tok-9"}
        assert "tok-9" in sent["content"]

    def test_opt_out_notice(self):
        transport = RecordingEmailTransport()
        EmailService(transport).send_opt_out_notice("owner@example.com", "Alex")
        assert transport.sent[0]["subject"] == "Alex opted out of Rundown reminders"
