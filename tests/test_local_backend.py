import threading
from datetime import datetime, timezone

import pytest

from backend import SERVER_TIMESTAMP, OrderBy, QueryDescriptor
from database import memory_session_factory
from errors import BackendError
from local_backend import LocalDocumentStore


def _frozen_clock():
    moment = datetime(2024, 3, 10, 8, 0, tzinfo=timezone.utc)
    return lambda: moment


OWNED = QueryDescriptor("transactions", filters=(("userId", "u1"),))
ORDERED = QueryDescriptor(
    "transactions", filters=(("userId", "u1"),), order_by=OrderBy("createdAt", descending=True)
)


def test_server_timestamps_are_resolved_and_strictly_increasing():
    store = LocalDocumentStore(memory_session_factory(), clock=_frozen_clock())
    first = store.add("transactions", {"userId": "u1", "createdAt": SERVER_TIMESTAMP})
    second = store.add("transactions", {"userId": "u1", "createdAt": SERVER_TIMESTAMP})

    documents = {doc.id: doc for doc in store._run_query(OWNED)}

    assert isinstance(documents[first].data["createdAt"], datetime)
    assert documents[second].data["createdAt"] > documents[first].data["createdAt"]


def test_ordered_query_sorts_descending_and_drops_missing_field():
    factory = memory_session_factory()
    store = LocalDocumentStore(factory)
    older = store.add("transactions", {"userId": "u1", "createdAt": SERVER_TIMESTAMP})
    newer = store.add("transactions", {"userId": "u1", "createdAt": SERVER_TIMESTAMP})
    store.add("transactions", {"userId": "u1"})
    store.add("transactions", {"userId": "u2", "createdAt": SERVER_TIMESTAMP})

    ordered = store._run_query(ORDERED)

    assert [doc.id for doc in ordered] == [newer, older]
    assert len(store._run_query(OWNED)) == 3


def test_deny_ordered_queries_rejects_with_permission_denied():
    store = LocalDocumentStore(memory_session_factory(), deny_ordered_queries=True)
    errors = []

    registration = store.listen(ORDERED, lambda docs: None, errors.append)

    assert [exc.code for exc in errors] == ["permission-denied"]
    assert not registration.active
    assert store.listener_count() == 0


def test_update_and_delete_check_owner():
    store = LocalDocumentStore(memory_session_factory())
    doc_id = store.add("transactions", {"userId": "u1", "nominal": 10})

    with pytest.raises(BackendError) as denied:
        store.update("transactions", doc_id, {"nominal": 99}, owner=("userId", "u2"))
    with pytest.raises(BackendError) as missing:
        store.delete("transactions", "nope", owner=("userId", "u1"))

    assert denied.value.code == "permission-denied"
    assert missing.value.code == "not-found"
    store.update("transactions", doc_id, {"nominal": 20}, owner=("userId", "u1"))
    assert store._run_query(OWNED)[0].data == {"userId": "u1", "nominal": 20}


def test_listener_fires_only_when_result_changes():
    store = LocalDocumentStore(memory_session_factory())
    snapshots = []
    registration = store.listen(OWNED, snapshots.append, lambda exc: None)

    store.poll()
    store.add("transactions", {"userId": "u1", "nominal": 1})
    store.add("transactions", {"userId": "u2", "nominal": 1})
    store.poll()

    assert [len(docs) for docs in snapshots] == [0, 1]

    registration.remove()
    store.add("transactions", {"userId": "u1", "nominal": 2})
    assert len(snapshots) == 2


class PausingDocumentStore(LocalDocumentStore):
    """Holds the next query result until released, like a slow poll."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.pause_next = False
        self.queried = threading.Event()
        self.release = threading.Event()

    def _run_query(self, query):
        documents = super()._run_query(query)
        if self.pause_next:
            self.pause_next = False
            self.queried.set()
            assert self.release.wait(timeout=5)
        return documents


def test_slow_poll_cannot_overwrite_newer_write_result():
    store = PausingDocumentStore(memory_session_factory())
    snapshots = []
    store.listen(OWNED, snapshots.append, lambda exc: None)
    store.add("transactions", {"userId": "u1", "nominal": 1})

    store.pause_next = True
    poller = threading.Thread(target=store.poll)
    poller.start()
    assert store.queried.wait(timeout=5)

    writer = threading.Thread(
        target=store.add, args=("transactions", {"userId": "u1", "nominal": 2})
    )
    writer.start()
    # The write's refresh waits behind the poll that is still in flight.
    writer.join(timeout=0.2)
    store.release.set()
    poller.join(timeout=5)
    writer.join(timeout=5)

    assert not poller.is_alive() and not writer.is_alive()
    assert len(snapshots[-1]) == 2
