"""Boundary between the app core and the hosted identity/document services.

Two adapters implement it: ``local_backend`` (SQLAlchemy, for development and
tests) and ``firebase_backend`` (REST, production). Both share
``ListenerHub`` for live queries: a listener receives the complete result of
its query once on registration and again whenever the result changes, either
after a write made through the same adapter or on ``poll()``.
"""

from __future__ import annotations

import logging
import secrets
import string
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol

from errors import BackendError

logger = logging.getLogger(__name__)


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


# Placeholder value asking the backend to stamp the field with its own clock.
SERVER_TIMESTAMP = _ServerTimestamp()

_ID_ALPHABET = string.ascii_letters + string.digits


def generate_document_id(length: int = 20) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


@dataclass(frozen=True)
class Identity:
    uid: str
    email: str
    id_token: Optional[str] = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class QueryDescriptor:
    collection: str
    filters: tuple[tuple[str, Any], ...] = ()
    order_by: Optional[OrderBy] = None

    def without_order(self) -> "QueryDescriptor":
        return QueryDescriptor(collection=self.collection, filters=self.filters)

    def matches(self, data: Mapping[str, Any]) -> bool:
        return all(data.get(name) == value for name, value in self.filters)


@dataclass(frozen=True)
class Document:
    id: str
    data: Mapping[str, Any]

    def fingerprint(self) -> tuple[str, str]:
        return self.id, repr(sorted(self.data.items()))


SnapshotCallback = Callable[[list[Document]], None]
ErrorCallback = Callable[[BackendError], None]


class IdentityBackend(Protocol):
    def sign_in(self, email: str, secret: str) -> Identity: ...

    def sign_up(self, email: str, secret: str) -> Identity: ...

    def sign_out(self) -> None: ...

    def current_identity(self) -> Optional[Identity]: ...


class DocumentStore(Protocol):
    def listen(
        self,
        query: QueryDescriptor,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> "ListenerRegistration": ...

    def add(self, collection: str, data: Mapping[str, Any]) -> str: ...

    def update(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        owner: tuple[str, Any],
    ) -> None: ...

    def delete(
        self, collection: str, doc_id: str, *, owner: tuple[str, Any]
    ) -> None: ...

    def poll(self) -> None: ...


class ListenerRegistration:
    def __init__(
        self,
        hub: "ListenerHub",
        query: QueryDescriptor,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> None:
        self.hub = hub
        self.query = query
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True
        self.fingerprint: Optional[tuple] = None
        # Held from query through delivery so refreshes of one listener never
        # interleave.
        self.lock = threading.RLock()

    def remove(self) -> None:
        self.active = False
        self.hub._discard(self)


class ListenerHub:
    """Listener bookkeeping shared by the document store adapters.

    Subclasses implement ``_run_query``. Callbacks are invoked without the hub
    lock held so a callback may remove its own (or any) registration.
    """

    def __init__(self) -> None:
        self._listeners: list[ListenerRegistration] = []
        self._lock = threading.RLock()

    def _run_query(self, query: QueryDescriptor) -> list[Document]:
        raise NotImplementedError

    def listen(
        self,
        query: QueryDescriptor,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> ListenerRegistration:
        registration = ListenerRegistration(self, query, on_snapshot, on_error)
        # Locked before it is published so a concurrent poll waits for the
        # first result.
        with registration.lock:
            with self._lock:
                self._listeners.append(registration)
            logger.debug(f"listener_added: collection={query.collection}")
            self._refresh(registration)
        return registration

    def poll(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for registration in listeners:
            self._refresh(registration)

    def refresh_collection(self, collection: str) -> None:
        with self._lock:
            listeners = [
                r for r in self._listeners if r.query.collection == collection
            ]
        for registration in listeners:
            self._refresh(registration)

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _discard(self, registration: ListenerRegistration) -> None:
        with self._lock:
            if registration in self._listeners:
                self._listeners.remove(registration)

    def _refresh(self, registration: ListenerRegistration) -> None:
        # A refresh that started earlier finishes delivering before a later one
        # runs its query, so a listener never receives an older result last.
        with registration.lock:
            if not registration.active:
                return
            try:
                documents = self._run_query(registration.query)
            except BackendError as exc:
                # A failed listener is terminated, like a rejected live query.
                registration.remove()
                logger.warning(
                    f"listener_failed: collection={registration.query.collection} "
                    f"code={exc.code} detail={exc.detail!r}"
                )
                registration.on_error(exc)
                return
            fingerprint = tuple(doc.fingerprint() for doc in documents)
            if fingerprint == registration.fingerprint:
                return
            registration.fingerprint = fingerprint
            if registration.active:
                registration.on_snapshot(documents)
