"""
SQL shared by the contact store adapters.

The cluster lookup runs in two phases: the seed rows matching the given
email and/or phone number yield the set of cluster ids
(COALESCE(linked_id, id)), then every contact whose id or linked_id is in
that set is selected. Matching on the seed key alone would miss members
that share neither value with the request.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Iterator, List, Mapping, Optional, Sequence, Tuple

from ..contacts import (
    Contact,
    ContactClusters,
    LinkedContacts,
    LinkPrecedence,
    NewContact,
    T,
    as_utc,
    split_by_precedence,
    utcnow,
)

logger = logging.getLogger(__name__)

CONTACT_COLUMNS = (
    "id, phone_number, email, linked_id, link_precedence, created_at, updated_at, deleted_at"
)

CLUSTER_QUERY = """
    WITH seed AS (
        SELECT DISTINCT COALESCE(linked_id, id) AS cluster_id
        FROM contacts
        WHERE {seed_filter}
    )
    SELECT {columns}
    FROM contacts
    WHERE id IN (SELECT cluster_id FROM seed)
       OR linked_id IN (SELECT cluster_id FROM seed)
    ORDER BY id ASC{lock}
"""

UPDATE_TO_SECONDARY = """
    UPDATE contacts
    SET linked_id = {p}, link_precedence = 'secondary', updated_at = {p}
    WHERE id = {p} OR linked_id = {p}
"""


class SQLContactSession:
    """Dialect-neutral implementation of the contact session.

    Subclasses supply the placeholder style, row fetching, the insert and
    the lock hooks.
    """

    placeholder = "?"

    def __init__(self, conn: Any):
        self.conn = conn

    # ==================== DIALECT HOOKS ====================

    def _fetch_all(self, sql: str, params: Sequence[Any]) -> List[Mapping[str, Any]]:
        raise NotImplementedError

    def _execute(self, sql: str, params: Sequence[Any]) -> None:
        raise NotImplementedError

    def _insert_row(self, values: Tuple[Any, ...]) -> int:
        raise NotImplementedError

    def _lock_clause(self, for_update: bool) -> str:
        return ""

    def _lock_keys(self, keys: Sequence[str]) -> None:
        """Hook for backends that need to serialize on keys with no rows yet."""

    def _to_db_time(self, value: datetime) -> Any:
        return value

    def _from_db_time(self, value: Any) -> Optional[datetime]:
        return value

    # ==================== CLUSTER QUERIES ====================

    def find_by_email(self, email: str, for_update: bool = False) -> LinkedContacts:
        clusters = self._find_clusters("email = {p}", (email,), [f"email:{email}"], for_update)
        return self._single_cluster(clusters)

    def find_by_phone(self, phone_number: str, for_update: bool = False) -> LinkedContacts:
        clusters = self._find_clusters(
            "phone_number = {p}", (phone_number,), [f"phone:{phone_number}"], for_update
        )
        return self._single_cluster(clusters)

    def find_by_email_or_phone(
        self, email: Optional[str], phone_number: Optional[str], for_update: bool = False
    ) -> ContactClusters:
        keys = []
        if email is not None:
            keys.append(f"email:{email}")
        if phone_number is not None:
            keys.append(f"phone:{phone_number}")
        return self._find_clusters(
            "email = {p} OR phone_number = {p}", (email, phone_number), keys, for_update
        )

    def cluster_query(self, seed_filter: str, for_update: bool = False) -> str:
        return CLUSTER_QUERY.format(
            seed_filter=seed_filter.format(p=self.placeholder),
            columns=CONTACT_COLUMNS,
            lock=self._lock_clause(for_update),
        )

    def _find_clusters(
        self, seed_filter: str, params: Tuple[Any, ...], keys: List[str], for_update: bool
    ) -> ContactClusters:
        if for_update:
            self._lock_keys(sorted(keys))
        # rows come back (and are locked) in id order; callers see creation order
        rows = self._fetch_all(self.cluster_query(seed_filter, for_update), params)
        contacts = sorted((self._to_contact(row) for row in rows), key=lambda c: (c.created_at, c.id))
        primaries, secondaries = split_by_precedence(contacts)
        return ContactClusters(primary=primaries, secondary=secondaries)

    def _single_cluster(self, clusters: ContactClusters) -> LinkedContacts:
        if not clusters.primary:
            return LinkedContacts(primary=None, secondary=[])
        primary = clusters.primary[0]
        if len(clusters.primary) > 1:
            logger.warning(
                "Single-key lookup touched %d primaries %s; using the oldest",
                len(clusters.primary),
                [c.id for c in clusters.primary],
            )
        secondary = [c for c in clusters.secondary if c.linked_id == primary.id]
        return LinkedContacts(primary=primary, secondary=secondary)

    # ==================== MUTATIONS ====================

    def insert(self, contact: NewContact) -> Contact:
        created_at = as_utc(contact.created_at) if contact.created_at else utcnow()
        precedence = LinkPrecedence(contact.link_precedence)
        contact_id = self._insert_row(
            (
                contact.phone_number,
                contact.email,
                contact.linked_id,
                precedence.value,
                self._to_db_time(created_at),
                self._to_db_time(created_at),
            )
        )
        return Contact(
            id=contact_id,
            email=contact.email,
            phone_number=contact.phone_number,
            link_precedence=precedence,
            linked_id=contact.linked_id,
            created_at=created_at,
            updated_at=created_at,
        )

    def update_to_secondary(
        self, contact_id: int, new_primary_id: int, updated_at: Optional[datetime] = None
    ) -> None:
        """Demote a contact under new_primary_id, re-pointing its own secondaries too."""
        stamp = self._to_db_time(as_utc(updated_at) if updated_at else utcnow())
        self._execute(
            UPDATE_TO_SECONDARY.format(p=self.placeholder),
            (new_primary_id, stamp, contact_id, contact_id),
        )

    def _to_contact(self, row: Mapping[str, Any]) -> Contact:
        return Contact(
            id=row["id"],
            email=row["email"],
            phone_number=row["phone_number"],
            link_precedence=LinkPrecedence(row["link_precedence"]),
            linked_id=row["linked_id"],
            created_at=self._from_db_time(row["created_at"]),
            updated_at=self._from_db_time(row["updated_at"]),
            deleted_at=self._from_db_time(row["deleted_at"]),
        )


class SQLContactStore:
    """Common transaction plumbing; adapters implement transaction()."""

    def transaction(self) -> Iterator[SQLContactSession]:
        raise NotImplementedError

    def with_transaction(self, fn: Callable[[SQLContactSession], T]) -> T:
        with self.transaction() as session:
            return fn(session)

    def create_schema(self) -> None:
        raise NotImplementedError
