"""
Contact model and the store interface used by the linking engine.

A cluster is one primary contact plus every secondary whose linked_id
points at it. Secondaries always point at a primary, never at another
secondary.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, ContextManager, Iterable, List, Optional, Protocol, Tuple, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


@dataclass(frozen=True)
class Contact:
    id: int
    email: Optional[str]
    phone_number: Optional[str]
    link_precedence: LinkPrecedence
    linked_id: Optional[int]
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    @property
    def is_primary(self) -> bool:
        return self.link_precedence == LinkPrecedence.PRIMARY

    @property
    def cluster_id(self) -> int:
        """Id of the primary this contact belongs under."""
        return self.linked_id if self.linked_id is not None else self.id


@dataclass
class NewContact:
    email: Optional[str] = None
    phone_number: Optional[str] = None
    link_precedence: LinkPrecedence = LinkPrecedence.PRIMARY
    linked_id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class LinkedContacts:
    """A single cluster: its primary (if one was found) and its secondaries."""

    primary: Optional[Contact] = None
    secondary: List[Contact] = field(default_factory=list)


@dataclass
class ContactClusters:
    """Every cluster touched by a lookup. Email and phone may hit two clusters."""

    primary: List[Contact] = field(default_factory=list)
    secondary: List[Contact] = field(default_factory=list)

    @property
    def members(self) -> List[Contact]:
        return self.primary + self.secondary

    @property
    def is_empty(self) -> bool:
        return not self.primary and not self.secondary

    @property
    def dangling(self) -> List[Contact]:
        """Secondaries whose primary is not part of this result."""
        primary_ids = {c.id for c in self.primary}
        return [c for c in self.secondary if c.linked_id not in primary_ids]


class StoreError(Exception):
    """A contact store operation failed; the enclosing transaction was rolled back."""


class StoreUnavailable(StoreError):
    """The contact store could not be reached or stopped responding."""


def split_by_precedence(contacts: Iterable[Contact]) -> Tuple[List[Contact], List[Contact]]:
    primaries: List[Contact] = []
    secondaries: List[Contact] = []
    for contact in contacts:
        if contact.is_primary:
            primaries.append(contact)
        else:
            secondaries.append(contact)
    return primaries, secondaries


class ContactSession(Protocol):
    """Operations available inside one store transaction."""

    def find_by_email(self, email: str, for_update: bool = False) -> LinkedContacts:
        ...

    def find_by_phone(self, phone_number: str, for_update: bool = False) -> LinkedContacts:
        ...

    def find_by_email_or_phone(
        self, email: Optional[str], phone_number: Optional[str], for_update: bool = False
    ) -> ContactClusters:
        ...

    def insert(self, contact: NewContact) -> Contact:
        ...

    def update_to_secondary(
        self, contact_id: int, new_primary_id: int, updated_at: Optional[datetime] = None
    ) -> None:
        ...


class ContactStore(Protocol):
    """A backend the linking engine can run against."""

    def transaction(self) -> ContextManager[ContactSession]:
        ...

    def with_transaction(self, fn: Callable[[ContactSession], T]) -> T:
        ...

    def create_schema(self) -> None:
        ...
