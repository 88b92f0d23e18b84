"""
Accountability contacts

Adding, removing and opting out the people who receive a user's
accountability messages.

Contacts are never hard-deleted. Removing one (by the user) or opting out
(by the contact, through the tokenised link in every email) flips
is_active; opting out also stamps opted_out_at, which the delivery pass
treats as final until the user re-adds the address.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from rundown.core.config import settings
from rundown.core.exceptions import ContactLimitError
from rundown.models import Contact, User, utc_now
from rundown.services.audit_log import record_event
from rundown.services.email_service import EmailService
from rundown.services.transports import PushTransport

logger = logging.getLogger(__name__)

OPT_OUT_MISSING = "missing"
OPT_OUT_NOT_FOUND = "not_found"
OPT_OUT_ALREADY = "already_opted_out"
OPT_OUT_DONE = "opted_out"


@dataclass
class OptOutResult:
    status: str
    contact: Optional[Contact] = None

    @property
    def success(self) -> bool:
        return self.status in (OPT_OUT_DONE, OPT_OUT_ALREADY)


def mint_opt_out_token() -> str:
    return secrets.token_urlsafe(24)


def _normalize_email(email: Optional[str]) -> Optional[str]:
    email = (email or "").strip().lower()
    return email or None


def list_contacts(db: Session, user_id: UUID, active_only: bool = True) -> List[Contact]:
    q = db.query(Contact).filter(Contact.user_id == user_id)
    if active_only:
        q = q.filter(Contact.is_active.is_(True), Contact.opted_out_at.is_(None))
    return q.order_by(Contact.created_at.asc()).all()


def count_active_contacts(db: Session, user_id: UUID) -> int:
    return (
        db.query(Contact)
        .filter(Contact.user_id == user_id, Contact.is_active.is_(True), Contact.opted_out_at.is_(None))
        .count()
    )


def add_contact(
    db: Session,
    user: User,
    *,
    name: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    relationship_type: Optional[str] = None,
    send_invite: bool = True,
    email_service: Optional[EmailService] = None,
) -> Contact:
    """
    Add (or reactivate) a contact for `user`.

    Re-adding an address that previously opted out or was removed
    reactivates that row with a fresh opt-out token. Raises
    ContactLimitError when the user already has the maximum number of
    active contacts, ValueError when neither email nor phone is given.
    """
    email = _normalize_email(email)
    phone = (phone or "").strip() or None
    if not email and not phone:
        raise ValueError("A contact needs an email address or a phone number")

    q = db.query(Contact).filter(Contact.user_id == user.id)
    existing = q.filter(Contact.email == email).first() if email else q.filter(Contact.phone == phone).first()

    if existing is not None and existing.is_active and existing.opted_out_at is None:
        return existing

    if count_active_contacts(db, user.id) >= settings.MAX_ACTIVE_CONTACTS:
        raise ContactLimitError(f"Users can have at most {settings.MAX_ACTIVE_CONTACTS} active contacts")

    if existing is not None:
        contact = existing
        contact.is_active = True
        contact.opted_out_at = None
        contact.opt_out_token = mint_opt_out_token()
        contact.name = name or contact.name
        contact.phone = phone or contact.phone
        contact.relationship_type = relationship_type or contact.relationship_type
        event_type = "contact.reactivated"
    else:
        contact = Contact(
            user_id=user.id,
            name=name,
            email=email,
            phone=phone,
            relationship_type=relationship_type,
            opt_out_token=mint_opt_out_token(),
        )
        db.add(contact)
        event_type = "contact.added"

    db.flush()
    record_event(
        db,
        event_type,
        user_id=user.id,
        contact_id=contact.id,
        payload={"relationship": contact.relationship_type},
    )
    db.commit()

    if send_invite and contact.email:
        send_contact_invite(db, user, contact, email_service=email_service)

    return contact


def send_contact_invite(
    db: Session,
    user: User,
    contact: Contact,
    email_service: Optional[EmailService] = None,
) -> bool:
    """Email the contact an introduction with their opt-out link."""
    email_service = email_service or EmailService()
    result = email_service.send_contact_invite(
        contact.email,
        contact.name,
        user.display_name,
        contact.opt_out_token,
    )
    if not result.success:
        return False

    contact.invited_at = utc_now()
    record_event(
        db,
        "contact.invited",
        user_id=user.id,
        contact_id=contact.id,
        payload={"relationship": contact.relationship_type},
    )
    db.commit()
    return True


def remove_contact(db: Session, user_id: UUID, contact_id: UUID) -> Optional[Contact]:
    contact = db.query(Contact).filter(Contact.id == contact_id, Contact.user_id == user_id).first()
    if contact is None:
        return None
    if contact.is_active:
        contact.is_active = False
        record_event(db, "contact.removed", user_id=user_id, contact_id=contact.id)
        db.commit()
    return contact


def opt_out_contact(
    db: Session,
    token: Optional[str],
    now: Optional[datetime] = None,
    email_service: Optional[EmailService] = None,
    push_transport: Optional[PushTransport] = None,
) -> OptOutResult:
    """
    Mark the contact behind `token` as opted out.

    Idempotent: a second call with the same token reports
    already_opted_out and changes nothing.
    """
    if not token:
        return OptOutResult(OPT_OUT_MISSING)

    contact = db.query(Contact).filter(Contact.opt_out_token == token).first()
    if contact is None:
        return OptOutResult(OPT_OUT_NOT_FOUND)

    if contact.opted_out_at is not None:
        return OptOutResult(OPT_OUT_ALREADY, contact)

    contact.is_active = False
    contact.opted_out_at = now or utc_now()
    record_event(
        db,
        "contact.opted_out",
        user_id=contact.user_id,
        contact_id=contact.id,
        payload={"via": "email_link"},
    )
    db.commit()
    logger.info(f"Contact {contact.id} opted out of updates for user {contact.user_id}")

    notify_owner_of_opt_out(db, contact, email_service=email_service, push_transport=push_transport)
    return OptOutResult(OPT_OUT_DONE, contact)


def notify_owner_of_opt_out(
    db: Session,
    contact: Contact,
    email_service: Optional[EmailService] = None,
    push_transport: Optional[PushTransport] = None,
) -> None:
    """Email and push the contact's owner. Failures are logged only."""
    user = db.get(User, contact.user_id)
    if user is None:
        return

    contact_name = contact.name or "Your contact"

    if user.email:
        try:
            (email_service or EmailService()).send_opt_out_notice(user.email, contact_name)
        except Exception as e:
            logger.error(f"Failed to send owner notification email for contact {contact.id}: {e}")

    if not user.push_token:
        logger.debug(f"User {user.id} has no push token; skipping opt-out push")
        return

    try:
        result = (push_transport or PushTransport()).send(
            user.push_token,
            "Add a new accountability buddy so we keep someone in the loop each week.",
            title=f"{contact_name} opted out",
            data={"type": "buddy_opt_out", "contact_id": str(contact.id)},
        )
        if not result.success:
            logger.warning(f"Opt-out push to user {user.id} failed: {result.error_code}")
    except Exception as e:
        logger.error(f"Failed to send push notification for contact {contact.id}: {e}")
