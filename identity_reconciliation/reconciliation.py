from dataclasses import dataclass, field
from typing import List, Optional

from .contacts import LinkedContacts
from .linking import LinkingEngine


class InvalidRequest(ValueError):
    """Neither an email nor a phone number was supplied."""

    def __init__(self, message: str = "Either email or phoneNumber must be provided"):
        super().__init__(message)


@dataclass
class ReconciliationResult:
    primary_contact_id: int
    emails: List[str] = field(default_factory=list)
    phone_numbers: List[str] = field(default_factory=list)
    secondary_contact_ids: List[int] = field(default_factory=list)


class ReconciliationService:
    """Routes an identify request to the matching engine entry point and flattens the result."""

    def __init__(self, engine: LinkingEngine):
        self.engine = engine

    def reconcile(self, email: Optional[str] = None, phone_number: Optional[str] = None) -> ReconciliationResult:
        if email and phone_number:
            linked = self.engine.link_contacts(email, phone_number)
        elif email:
            linked = self.engine.link_contacts_by_email(email)
        elif phone_number:
            linked = self.engine.link_contacts_by_phone_number(phone_number)
        else:
            raise InvalidRequest()

        return format_result(linked)


def format_result(linked: LinkedContacts) -> ReconciliationResult:
    primary = linked.primary
    contacts = [primary] + list(linked.secondary)

    # dict keys keep first-seen order, so the primary's values lead
    emails = dict.fromkeys(c.email for c in contacts if c.email)
    phone_numbers = dict.fromkeys(c.phone_number for c in contacts if c.phone_number)

    return ReconciliationResult(
        primary_contact_id=primary.id,
        emails=list(emails),
        phone_numbers=list(phone_numbers),
        secondary_contact_ids=[c.id for c in linked.secondary],
    )
