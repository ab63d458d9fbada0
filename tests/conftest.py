import itertools
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from identity_reconciliation.contacts import LinkPrecedence, NewContact
from identity_reconciliation.db_setup import init_db
from identity_reconciliation.linking import LinkingEngine
from identity_reconciliation.reconciliation import ReconciliationService
from identity_reconciliation.stores.sqlite import SQLiteContactStore

BASE_TIME = datetime(2023, 4, 1, 12, 0, tzinfo=timezone.utc)


def random_email():
    return f"{uuid.uuid4().hex[:12]}@testmail.com"


def random_phone():
    return f"+91{uuid.uuid4().int % 10**10:010d}"


class TickingClock:
    """Returns a strictly increasing time on every call."""

    def __init__(self, start=BASE_TIME, step=timedelta(seconds=1)):
        self._times = (start + step * i for i in itertools.count())
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return next(self._times)


@pytest.fixture
def store(tmp_path):
    store = SQLiteContactStore(str(tmp_path / "contacts.db"), busy_timeout=10.0)
    init_db(store)
    return store


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def engine(store, clock):
    return LinkingEngine(store, clock=clock)


@pytest.fixture
def service(engine):
    return ReconciliationService(engine)


@pytest.fixture
def add_contact(store):
    """Insert a contact straight into the store, bypassing the engine."""

    def _add(email=None, phone_number=None, linked_id=None, created_at=None):
        precedence = LinkPrecedence.SECONDARY if linked_id else LinkPrecedence.PRIMARY
        with store.transaction() as session:
            return session.insert(
                NewContact(
                    email=email,
                    phone_number=phone_number,
                    link_precedence=precedence,
                    linked_id=linked_id,
                    created_at=created_at,
                )
            )

    return _add


@pytest.fixture
def fetch_all(store):
    """All contacts in the table, by id."""

    def _fetch():
        with store.transaction() as session:
            rows = session._fetch_all("SELECT * FROM contacts ORDER BY id", ())
            return {row["id"]: session._to_contact(row) for row in rows}

    return _fetch
