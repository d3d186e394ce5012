from datetime import date, datetime, timedelta, timezone

import pytest

from aggregation import by_category, totals
from backend import Document, Identity
from context import create_context
from config import Settings
from database import memory_session_factory
from errors import BackendError, SubscriptionError, ValidationError, WriteError, WriteErrorReason
from local_backend import LocalDocumentStore
from models import TransactionKind
from schemas import Transaction
from store import (
    LiveTransactionStore,
    SubscriptionState,
    newest_first,
    transaction_query_strategy,
)

ANA = Identity(uid="u1", email="ana@example.com")
BUDI = Identity(uid="u2", email="budi@example.com")


class ManualRegistration:
    def __init__(self, query, on_snapshot, on_error) -> None:
        self.query = query
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.removed = False

    def remove(self) -> None:
        self.removed = True


class ManualDocuments:
    """Document store whose listeners fire only when the test says so."""

    def __init__(self, write_error: BackendError = None) -> None:
        self.registrations = []
        self.writes = []
        self.write_error = write_error

    def listen(self, query, on_snapshot, on_error):
        registration = ManualRegistration(query, on_snapshot, on_error)
        self.registrations.append(registration)
        return registration

    def add(self, collection, data):
        self.writes.append(("add", collection, dict(data)))
        if self.write_error:
            raise self.write_error
        return "new-id"

    def update(self, collection, doc_id, data, *, owner):
        self.writes.append(("update", doc_id, dict(data)))
        if self.write_error:
            raise self.write_error

    def delete(self, collection, doc_id, *, owner):
        self.writes.append(("delete", doc_id, owner))
        if self.write_error:
            raise self.write_error

    def poll(self):
        pass


class RecordingDocumentStore(LocalDocumentStore):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.queries = []

    def _run_query(self, query):
        self.queries.append(query)
        return super()._run_query(query)


def _settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        use_local_backend=True,
        firebase_api_key="",
        firebase_project_id="",
        firebase_auth_domain="",
        auth_emulator_host=None,
        firestore_emulator_host=None,
        request_timeout_secs=5,
        poll_interval_secs=15,
        timezone="Asia/Jakarta",
        locale="en",
        session_secret="test-secret",
        log_level="INFO",
    )


def _doc(doc_id, owner="u1", amount=100, created=None, kind="pengeluaran") -> Document:
    data = {
        "userId": owner,
        "nominal": amount,
        "tanggal": "2024-03-10",
        "kategori": "Makanan",
        "nama": "Lunch",
        "catatan": "",
        "type": kind,
    }
    if created is not None:
        data["createdAt"] = created
    return Document(id=doc_id, data=data)


def _payload(**overrides):
    payload = {
        "amount": 50000,
        "date": "2024-03-10",
        "category": "Makanan",
        "name": "Lunch",
        "kind": "expense",
    }
    payload.update(overrides)
    return payload


def test_primary_query_is_owner_filtered_newest_first():
    strategy = transaction_query_strategy("u1")

    assert strategy.primary.filters == (("userId", "u1"),)
    assert strategy.primary.order_by.field == "createdAt"
    assert strategy.primary.order_by.descending
    assert strategy.fallback.filters == strategy.primary.filters
    assert strategy.fallback.order_by is None


def test_newest_first_puts_pending_timestamps_first():
    base = datetime(2024, 3, 10, tzinfo=timezone.utc)
    txns = [
        Transaction.from_document(_doc("old", created=base)),
        Transaction.from_document(_doc("pending")),
        Transaction.from_document(_doc("new", created=base + timedelta(hours=1))),
    ]

    ordered = newest_first(txns, now=base + timedelta(days=1))

    assert [txn.id for txn in ordered] == ["pending", "new", "old"]


def test_snapshot_replaces_cache_and_activates():
    documents = ManualDocuments()
    store = LiveTransactionStore(documents, locale="en")

    store.subscribe(ANA)
    assert store.state == SubscriptionState.subscribing

    documents.registrations[0].on_snapshot([_doc("a"), _doc("b")])
    documents.registrations[0].on_snapshot([_doc("b")])

    assert store.state == SubscriptionState.active
    assert [txn.id for txn in store.transactions] == ["b"]


def test_permission_denied_switches_to_fallback_with_client_sort():
    base = datetime(2024, 3, 10, tzinfo=timezone.utc)
    documents = ManualDocuments()
    store = LiveTransactionStore(documents, locale="en")
    subscription = store.subscribe(ANA)
    primary = documents.registrations[0]

    primary.on_error(BackendError("permission-denied", "Missing or insufficient permissions."))

    assert store.state == SubscriptionState.recovering
    assert primary.removed
    fallback = documents.registrations[1]
    assert fallback.query.order_by is None
    assert fallback.query.filters == (("userId", "u1"),)

    fallback.on_snapshot(
        [
            _doc("old", created=base),
            _doc("pending"),
            _doc("new", created=base + timedelta(minutes=5)),
        ]
    )

    assert store.state == SubscriptionState.active
    assert store.transactions[0].id == "pending"
    assert [txn.id for txn in store.transactions[1:]] == ["new", "old"]
    assert subscription.using_fallback


def test_primary_callback_after_fallback_switch_is_ignored():
    documents = ManualDocuments()
    store = LiveTransactionStore(documents)
    store.subscribe(ANA)
    primary = documents.registrations[0]
    primary.on_error(BackendError("permission-denied"))
    documents.registrations[1].on_snapshot([_doc("fresh")])

    primary.on_snapshot([_doc("stale")])

    assert [txn.id for txn in store.transactions] == ["fresh"]


def test_local_store_fallback_end_to_end():
    factory = memory_session_factory()
    documents = RecordingDocumentStore(factory, deny_ordered_queries=True)
    store = LiveTransactionStore(documents, locale="en")
    store.subscribe(ANA)

    store.create(_payload(name="first"))
    store.create(_payload(name="second"))

    assert store.state == SubscriptionState.active
    assert [txn.name for txn in store.transactions] == ["second", "first"]
    assert documents.queries[0].order_by is not None
    assert all(query.order_by is None for query in documents.queries[1:])


def test_other_errors_surface_without_retry():
    documents = ManualDocuments()
    store = LiveTransactionStore(documents, locale="en")
    subscription = store.subscribe(ANA)
    documents.registrations[0].on_snapshot([_doc("a")])

    documents.registrations[0].on_error(BackendError("unavailable", "socket closed"))

    assert store.state == SubscriptionState.error
    assert store.error.message == "Transactions could not be loaded"
    assert "socket" not in store.error.message
    assert len(documents.registrations) == 1
    assert [txn.id for txn in store.transactions] == ["a"]
    with pytest.raises(SubscriptionError):
        list(subscription)

    store.retry()
    assert len(documents.registrations) == 2
    assert store.state == SubscriptionState.subscribing
    assert store.error is None


def test_unbind_clears_cache_and_stops_delivery():
    documents = ManualDocuments()
    store = LiveTransactionStore(documents)
    store.bind(ANA)
    registration = documents.registrations[0]
    registration.on_snapshot([_doc("a")])

    store.bind(None)
    registration.on_snapshot([_doc("a"), _doc("b")])

    assert registration.removed
    assert store.state == SubscriptionState.unsubscribed
    assert store.transactions == ()
    assert store.error is None


def test_identity_switch_drops_previous_subscription():
    documents = ManualDocuments()
    store = LiveTransactionStore(documents)
    store.bind(ANA)
    first = documents.registrations[0]

    store.bind(BUDI)
    first.on_snapshot([_doc("ana-txn")])
    documents.registrations[1].on_snapshot([_doc("budi-txn", owner="u2")])

    assert first.removed
    assert [txn.id for txn in store.transactions] == ["budi-txn"]
    assert store.identity == BUDI


def test_bind_same_identity_keeps_subscription():
    documents = ManualDocuments()
    store = LiveTransactionStore(documents)
    first = store.bind(ANA)
    assert store.bind(Identity(uid="u1", email="ana@example.com", id_token="t")) is first
    assert len(documents.registrations) == 1


def test_foreign_and_malformed_documents_are_dropped():
    documents = ManualDocuments()
    store = LiveTransactionStore(documents)
    store.subscribe(ANA)
    broken = Document(id="broken", data={"userId": "u1", "nominal": "abc"})

    documents.registrations[0].on_snapshot([_doc("mine"), _doc("theirs", owner="u2"), broken])

    assert [txn.id for txn in store.transactions] == ["mine"]


def test_subscription_streams_snapshots_until_cancelled():
    documents = ManualDocuments()
    store = LiveTransactionStore(documents)
    subscription = store.subscribe(ANA)
    documents.registrations[0].on_snapshot([_doc("a")])

    assert [snap.sequence for snap in subscription.drain()] == [1]
    assert subscription.drain() == []
    documents.registrations[0].on_snapshot([_doc("c")])
    subscription.cancel()
    documents.registrations[0].on_snapshot([_doc("late")])

    snapshots = list(subscription)
    assert [[txn.id for txn in snap.transactions] for snap in snapshots] == [["c"]]
    with pytest.raises(RuntimeError):
        iter(subscription)


def test_unread_snapshots_are_replaced_by_the_latest():
    documents = ManualDocuments()
    store = LiveTransactionStore(documents)
    subscription = store.subscribe(ANA)
    registration = documents.registrations[0]

    for count in range(1, 51):
        registration.on_snapshot([_doc(f"t{n}") for n in range(count)])

    buffered = subscription.drain()
    assert [snap.sequence for snap in buffered] == [50]
    assert len(buffered[0].transactions) == 50
    assert len(store.transactions) == 50
    subscription.cancel()
    assert list(subscription) == []


def test_writes_without_identity_fail_before_remote_call():
    documents = ManualDocuments()
    store = LiveTransactionStore(documents, locale="en")

    with pytest.raises(WriteError) as created:
        store.create({"amount": "not even valid"})
    with pytest.raises(WriteError) as updated:
        store.update("x", {"amount": 1})
    with pytest.raises(WriteError) as deleted:
        store.delete("x")

    for excinfo in (created, updated, deleted):
        assert excinfo.value.reason == WriteErrorReason.unauthenticated
    assert created.value.message == "You need to log in first"
    assert documents.writes == []


def test_create_stamps_owner_and_defaults():
    documents = ManualDocuments()
    store = LiveTransactionStore(documents)
    store.subscribe(ANA)

    store.create({"amount": "50000", "category": "Makanan", "name": "Lunch", "kind": "pengeluaran"})

    _, collection, data = documents.writes[0]
    assert collection == "transactions"
    assert data["userId"] == "u1"
    assert data["nominal"] == 50000
    assert data["catatan"] == ""
    assert data["type"] == "pengeluaran"
    date.fromisoformat(data["tanggal"])
    assert store.transactions == ()


def test_update_refuses_identity_fields():
    documents = ManualDocuments()
    store = LiveTransactionStore(documents)
    store.subscribe(ANA)

    with pytest.raises(ValidationError) as excinfo:
        store.update("a", {"owner_id": "u2", "amount": 5})

    assert "owner_id" in excinfo.value.fields
    assert documents.writes == []


def test_update_always_requests_fresh_update_timestamp():
    documents = ManualDocuments()
    store = LiveTransactionStore(documents)
    store.subscribe(ANA)

    store.update("a", {"amount": 70000})

    _, doc_id, data = documents.writes[0]
    assert doc_id == "a"
    assert data["nominal"] == 70000
    assert "updatedAt" in data
    assert "createdAt" not in data


@pytest.mark.parametrize(
    "code, reason, text",
    [
        ("unavailable", WriteErrorReason.network_failure, "Network connection problem"),
        ("deadline-exceeded", WriteErrorReason.network_failure, "Network connection problem"),
        ("permission-denied", WriteErrorReason.remote_rejected, "Failed to add transaction"),
    ],
)
def test_backend_write_failures_are_categorized(code, reason, text):
    store = LiveTransactionStore(ManualDocuments(BackendError(code, "raw upstream")), locale="en")
    store.subscribe(ANA)

    with pytest.raises(WriteError) as excinfo:
        store.create(_payload())

    assert excinfo.value.reason == reason
    assert excinfo.value.message == text


def test_create_update_delete_flow_through_live_cache():
    context = create_context(_settings(), session_factory=memory_session_factory())
    context.register("ana@example.com", "secret1")
    store = context.store

    txn_id = store.create(_payload(amount=50000, kind="income", category="Gaji", name="Salary"))
    assert [txn.amount for txn in store.transactions] == [50000]
    assert store.transactions[0].kind == TransactionKind.income
    summary = totals(store.transactions)
    assert (summary.income, summary.expense, summary.balance) == (50000, 0, 50000)

    store.update(txn_id, {"amount": 70000})
    assert store.transactions[0].amount == 70000
    assert store.transactions[0].created_at is not None
    assert store.transactions[0].updated_at >= store.transactions[0].created_at

    store.delete(txn_id)
    assert store.transactions == ()
    assert totals(store.transactions).balance == 0

    context.logout()
    assert store.state == SubscriptionState.unsubscribed


def test_category_kind_follows_last_transaction_in_snapshot():
    context = create_context(_settings(), session_factory=memory_session_factory())
    context.register("ana@example.com", "secret1")
    context.store.create(_payload(amount=5, category="Food", kind="income"))
    context.store.create(_payload(amount=10, category="Food", kind="expense"))

    # Snapshot is newest first: the expense arrives before the income.
    grouped = by_category(context.store.transactions)

    assert grouped["Food"].amount == 15
    assert grouped["Food"].kind == TransactionKind.income


def test_other_users_writes_are_rejected_remotely():
    factory = memory_session_factory()
    shared = LocalDocumentStore(factory)
    ana = create_context(_settings(), session_factory=factory, documents=shared)
    budi = create_context(_settings(), session_factory=factory, documents=shared)
    ana.register("ana@example.com", "secret1")
    budi.register("budi@example.com", "secret1")
    txn_id = ana.store.create(_payload())

    with pytest.raises(WriteError) as excinfo:
        budi.store.delete(txn_id)

    assert excinfo.value.reason == WriteErrorReason.remote_rejected
    assert budi.store.transactions == ()
    assert len(ana.store.transactions) == 1
