"""
Identity linking engine.

Classifies an incoming (email, phone number) pair against the clusters
already in the store and decides, inside one transaction per call, whether
to create a new primary contact, merge two clusters, or leave things as
they are.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional

from .contacts import (
    Contact,
    ContactClusters,
    ContactSession,
    ContactStore,
    LinkedContacts,
    LinkPrecedence,
    NewContact,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_CLUSTER_READS = 3


class LinkingEngine:
    """
    Resolves contacts into identity clusters.

    Holds no state between calls; all coordination between concurrent
    requests comes from the store's transactions and locks.
    """

    def __init__(self, store: ContactStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or utcnow

    # ==================== ENTRY POINTS ====================

    def link_contacts(self, email: str, phone_number: str) -> LinkedContacts:
        """Link a contact carrying both an email and a phone number."""
        with self.store.transaction() as session:
            clusters = self._read_locked_clusters(session, email, phone_number)

            if clusters.is_empty:
                primary = self._create_primary(session, email=email, phone_number=phone_number)
                return LinkedContacts(primary=primary, secondary=[])

            if not clusters.primary:
                return self._adopt_orphans(session, clusters, email, phone_number)

            if len(clusters.primary) == 1:
                return self._link_into_cluster(session, clusters, email, phone_number)

            return self._merge_clusters(session, clusters)

    def link_contacts_by_email(self, email: str) -> LinkedContacts:
        with self.store.transaction() as session:
            linked = session.find_by_email(email)
            if linked.primary is not None:
                logger.debug(f"Email matched cluster {linked.primary.id}")
                return linked
            return LinkedContacts(primary=self._create_primary(session, email=email), secondary=[])

    def link_contacts_by_phone_number(self, phone_number: str) -> LinkedContacts:
        with self.store.transaction() as session:
            linked = session.find_by_phone(phone_number)
            if linked.primary is not None:
                logger.debug(f"Phone number matched cluster {linked.primary.id}")
                return linked
            return LinkedContacts(
                primary=self._create_primary(session, phone_number=phone_number), secondary=[]
            )

    def _read_locked_clusters(
        self, session: ContactSession, email: str, phone_number: str
    ) -> ContactClusters:
        """
        Locked cluster read, repeated while a secondary points at a primary
        the result does not include.

        A read that waited on another transaction's locks can see a cluster
        as it was before that transaction moved it. Every repeat is a new
        statement and so sees the committed move.
        """
        clusters = session.find_by_email_or_phone(email, phone_number, for_update=True)
        for _ in range(MAX_CLUSTER_READS - 1):
            if not clusters.dangling:
                return clusters
            logger.debug(
                f"Re-reading clusters; secondaries {[c.id for c in clusters.dangling]} "
                f"point outside the result"
            )
            clusters = session.find_by_email_or_phone(email, phone_number, for_update=True)
        if clusters.dangling:
            logger.warning(
                f"Secondaries {[c.id for c in clusters.dangling]} still point outside the "
                f"locked result after {MAX_CLUSTER_READS} reads; relinking them"
            )
        return clusters

    # ==================== DECISIONS ====================

    def _create_primary(
        self,
        session: ContactSession,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> Contact:
        contact = session.insert(
            NewContact(
                email=email,
                phone_number=phone_number,
                link_precedence=LinkPrecedence.PRIMARY,
                created_at=self.clock(),
            )
        )
        logger.info(f"Created primary contact {contact.id}")
        return contact

    def _link_into_cluster(
        self, session: ContactSession, clusters: ContactClusters, email: str, phone_number: str
    ) -> LinkedContacts:
        """Both values resolve into one existing cluster."""
        old_primary = clusters.primary[0]
        members = clusters.members
        has_email = any(c.email == email for c in members)
        has_phone = any(c.phone_number == phone_number for c in members)

        if has_email and has_phone:
            if not clusters.dangling:
                logger.debug(f"Contact already known in cluster {old_primary.id}")
                return LinkedContacts(primary=old_primary, secondary=clusters.secondary)
            stamp = self._absorb(session, clusters.dangling, old_primary)
            return LinkedContacts(
                primary=old_primary,
                secondary=self._relinked(clusters.secondary, old_primary, stamp),
            )

        # The pair is new to the cluster: record it as the new primary and
        # move the whole cluster underneath it.
        new_primary = self._create_primary(session, email=email, phone_number=phone_number)
        demoted = self._demote(session, old_primary, new_primary)
        if clusters.dangling:
            self._absorb(session, clusters.dangling, new_primary)
        logger.info(
            f"Cluster {old_primary.id} relinked under new primary {new_primary.id} "
            f"({len(clusters.secondary)} secondaries moved)"
        )
        secondary = self._relinked(clusters.secondary, new_primary, demoted.updated_at)
        return LinkedContacts(primary=new_primary, secondary=secondary + [demoted])

    def _merge_clusters(self, session: ContactSession, clusters: ContactClusters) -> LinkedContacts:
        """Email and phone number belong to different clusters; the oldest primary wins."""
        # sorted() is stable, so equal created_at keeps the first-seen primary as the older one
        ordered = sorted(clusters.primary, key=lambda c: c.created_at)
        oldest, younger = ordered[0], ordered[1:]

        demoted: List[Contact] = []
        for contact in younger:
            demoted.append(self._demote(session, contact, oldest))
        if clusters.dangling:
            self._absorb(session, clusters.dangling, oldest)

        logger.info(f"Merged clusters {[c.id for c in younger]} into {oldest.id}")
        stamp = demoted[-1].updated_at
        secondary = self._relinked(clusters.secondary, oldest, stamp)
        return LinkedContacts(primary=oldest, secondary=secondary + demoted)

    def _adopt_orphans(
        self, session: ContactSession, clusters: ContactClusters, email: str, phone_number: str
    ) -> LinkedContacts:
        """Only secondaries were found, none of their primaries.

        They already belong to an identity, so the pair becomes a primary and
        the clusters they point at are moved underneath it.
        """
        new_primary = self._create_primary(session, email=email, phone_number=phone_number)
        stamp = self._absorb(session, clusters.dangling, new_primary)
        return LinkedContacts(
            primary=new_primary, secondary=self._relinked(clusters.secondary, new_primary, stamp)
        )

    def _absorb(self, session: ContactSession, dangling: List[Contact], primary: Contact) -> datetime:
        """Move the clusters behind dangling secondaries under primary."""
        now = self.clock()
        cluster_ids = sorted({c.cluster_id for c in dangling} - {primary.id})
        for cluster_id in cluster_ids:
            session.update_to_secondary(cluster_id, primary.id, updated_at=now)
        logger.info(f"Clusters {cluster_ids} relinked under {primary.id}")
        return now

    def _demote(self, session: ContactSession, contact: Contact, new_primary: Contact) -> Contact:
        now = self.clock()
        session.update_to_secondary(contact.id, new_primary.id, updated_at=now)
        return replace(
            contact,
            link_precedence=LinkPrecedence.SECONDARY,
            linked_id=new_primary.id,
            updated_at=now,
        )

    @staticmethod
    def _relinked(secondaries: List[Contact], primary: Contact, updated_at: datetime) -> List[Contact]:
        """Secondaries as they read after their cluster moved under primary."""
        return [
            c if c.linked_id == primary.id else replace(c, linked_id=primary.id, updated_at=updated_at)
            for c in secondaries
        ]
