"""
Contacts API Router

Service-facing endpoints for a user's accountability contacts.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from rundown.core.auth import require_service_key
from rundown.core.database import get_db
from rundown.core.exceptions import ConflictError, ContactLimitError, NotFoundError, ValidationError
from rundown.models import User
from rundown.services.contacts import add_contact, list_contacts, remove_contact

router = APIRouter(
    prefix="/v1/users/{user_id}/contacts",
    tags=["Contacts"],
    dependencies=[Depends(require_service_key)],
)


class ContactCreateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    relationship: Optional[str] = None
    send_invite: bool = True


class ContactResponse(BaseModel):
    id: UUID
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    relationship_type: Optional[str] = None
    is_active: bool
    opted_out_at: Optional[datetime] = None
    invited_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


def _get_user(db: Session, user_id: UUID) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User", str(user_id))
    return user


@router.get("", response_model=List[ContactResponse])
def get_contacts(user_id: UUID, db: Session = Depends(get_db)):
    _get_user(db, user_id)
    return list_contacts(db, user_id, active_only=False)


@router.post("", response_model=ContactResponse, status_code=201)
def create_contact(user_id: UUID, request: ContactCreateRequest, db: Session = Depends(get_db)):
    """Add a contact (max 5 active) and send them an invite email."""
    user = _get_user(db, user_id)
    try:
        return add_contact(
            db,
            user,
            name=request.name,
            email=request.email,
            phone=request.phone,
            relationship_type=request.relationship,
            send_invite=request.send_invite,
        )
    except ContactLimitError as e:
        raise ConflictError(str(e))
    except ValueError as e:
        raise ValidationError(str(e), field="contact")


@router.delete("/{contact_id}", response_model=ContactResponse)
def delete_contact(user_id: UUID, contact_id: UUID, db: Session = Depends(get_db)):
    """Deactivate a contact. The row is kept for history."""
    contact = remove_contact(db, user_id, contact_id)
    if contact is None:
        raise NotFoundError("Contact", str(contact_id))
    return contact
