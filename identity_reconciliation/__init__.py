"""Customer identity reconciliation across email / phone number contact records."""

from .contacts import Contact, LinkedContacts, LinkPrecedence, StoreError, StoreUnavailable
from .linking import LinkingEngine
from .reconciliation import InvalidRequest, ReconciliationResult, ReconciliationService

__all__ = [
    "Contact",
    "InvalidRequest",
    "LinkPrecedence",
    "LinkedContacts",
    "LinkingEngine",
    "ReconciliationResult",
    "ReconciliationService",
    "StoreError",
    "StoreUnavailable",
]
