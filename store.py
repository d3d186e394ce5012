"""Live, owner-scoped cache of transactions backed by a document store.

A ``LiveTransactionStore`` keeps at most one ``Subscription`` open. Each
subscription first listens with the primary query (owner filter, newest
first). If the store rejects that query with ``permission-denied`` it switches
to the filter-only fallback query and orders results on the client. Every
snapshot replaces the cache wholesale.

Lifecycle::

    idle -> subscribing -> active
                 |-> recovering -> active     (permission-denied on primary)
                 |-> error                    (anything else; caller retries)
    any -> unsubscribed                       (identity gone)

Writes go straight to the document store. The cache is never updated
optimistically; it changes only when the listener delivers a new snapshot.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from backend import Document, DocumentStore, Identity, OrderBy, QueryDescriptor
from errors import (
    BackendError,
    SubscriptionError,
    ValidationError,
    WriteError,
    WriteErrorReason,
)
from schemas import (
    TRANSACTIONS_COLLECTION,
    Fields,
    Transaction,
    TransactionIn,
    TransactionUpdate,
    parse_payload,
)

logger = logging.getLogger(__name__)

PERMISSION_DENIED = "permission-denied"
NETWORK_FAILURE_CODES = {"unavailable", "deadline-exceeded", "network-failure"}


class SubscriptionState(str, Enum):
    idle = "idle"
    subscribing = "subscribing"
    active = "active"
    recovering = "recovering"
    error = "error"
    unsubscribed = "unsubscribed"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def newest_first(
    transactions: Iterable[Transaction], *, now: Optional[datetime] = None
) -> list[Transaction]:
    """Order by ``created_at`` descending; records still waiting for a server
    timestamp count as created ``now`` and therefore sort first."""
    now = _as_utc(now or datetime.now(timezone.utc))
    return sorted(
        transactions,
        key=lambda txn: _as_utc(txn.created_at) if txn.created_at else now,
        reverse=True,
    )


@dataclass(frozen=True)
class QueryStrategy:
    primary: QueryDescriptor
    fallback: QueryDescriptor
    sort: Callable[..., list[Transaction]] = newest_first

    def should_fall_back(self, error: BackendError) -> bool:
        return error.code == PERMISSION_DENIED


def transaction_query_strategy(owner_id: str) -> QueryStrategy:
    primary = QueryDescriptor(
        collection=TRANSACTIONS_COLLECTION,
        filters=((Fields.owner, owner_id),),
        order_by=OrderBy(Fields.created_at, descending=True),
    )
    return QueryStrategy(primary=primary, fallback=primary.without_order())


@dataclass(frozen=True)
class Snapshot:
    transactions: tuple[Transaction, ...]
    sequence: int
    from_fallback: bool = False


class Subscription:
    """Handle for one identity's live query.

    Iterating yields applied snapshots in delivery order, blocking until the
    next one arrives. Only the newest snapshot not yet taken is buffered: a
    reader that falls behind skips straight to the latest state (sequence
    numbers show the gap). The stream ends after ``cancel()`` and raises
    ``SubscriptionError`` if the query failed. It can be iterated once.
    """

    def __init__(
        self,
        store: "LiveTransactionStore",
        identity: Identity,
        strategy: QueryStrategy,
    ) -> None:
        self.store = store
        self.identity = identity
        self.strategy = strategy
        self.using_fallback = False
        self.error: Optional[SubscriptionError] = None
        self._lock = store._lock
        self._ready = threading.Condition(self._lock)
        self._pending: Optional[Snapshot] = None
        self._closed = False
        self._registration = None
        self._generation = 0
        self._sequence = 0
        self._cancelled = False
        self._iterated = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> None:
        self.store._transition(self, SubscriptionState.subscribing)
        self._listen(self.strategy.primary, fallback=False)

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._release()
            self._close()
        logger.debug(f"subscription_cancelled: uid={self.identity.uid}")

    def drain(self) -> list[Snapshot]:
        """Take the buffered snapshot, if any, without blocking."""
        with self._lock:
            pending, self._pending = self._pending, None
        return [pending] if pending is not None else []

    def __iter__(self) -> Iterator[Snapshot]:
        with self._lock:
            if self._iterated:
                raise RuntimeError("A subscription can only be iterated once")
            self._iterated = True
        return self._stream()

    def _stream(self) -> Iterator[Snapshot]:
        while True:
            with self._ready:
                while self._pending is None and not self._closed:
                    self._ready.wait()
                snapshot, self._pending = self._pending, None
            if snapshot is None:
                if self.error is not None:
                    raise self.error
                return
            yield snapshot

    def _publish(self, snapshot: Snapshot) -> None:
        with self._ready:
            # Replaces an unread snapshot; the buffer never holds more than one.
            self._pending = snapshot
            self._ready.notify_all()

    def _close(self) -> None:
        with self._ready:
            self._closed = True
            self._ready.notify_all()

    def _listen(self, query: QueryDescriptor, *, fallback: bool) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._generation += 1
            generation = self._generation
            self.using_fallback = fallback
            registration = self.store.documents.listen(
                query,
                lambda documents: self._deliver(generation, documents),
                lambda exc: self._fail(generation, exc),
            )
            if self._cancelled or generation != self._generation:
                # Cancelled or superseded while the first result was delivered.
                registration.remove()
            else:
                self._registration = registration

    def _release(self) -> None:
        if self._registration is not None:
            self._registration.remove()
            self._registration = None

    def _deliver(self, generation: int, documents: list[Document]) -> None:
        with self._lock:
            if self._cancelled or generation != self._generation:
                logger.debug(
                    f"stale_snapshot_ignored: uid={self.identity.uid} "
                    f"generation={generation}"
                )
                return
            transactions = self.store._decode(documents, self.identity)
            if self.using_fallback:
                transactions = self.strategy.sort(transactions)
            self._sequence += 1
            snapshot = Snapshot(
                transactions=tuple(transactions),
                sequence=self._sequence,
                from_fallback=self.using_fallback,
            )
            self.store._apply(self, snapshot)
            self._publish(snapshot)

    def _fail(self, generation: int, exc: BackendError) -> None:
        with self._lock:
            if self._cancelled or generation != self._generation:
                return
            if not self.using_fallback and self.strategy.should_fall_back(exc):
                logger.warning(
                    f"primary_query_denied: uid={self.identity.uid} "
                    f"detail={exc.detail!r} action=fallback"
                )
                self.store._transition(self, SubscriptionState.recovering)
                self._release()
                self._listen(self.strategy.fallback, fallback=True)
                return
            logger.error(
                f"subscription_failed: uid={self.identity.uid} code={exc.code} "
                f"fallback={self.using_fallback} detail={exc.detail!r}"
            )
            self.error = SubscriptionError(exc.code, exc.detail, locale=self.store.locale)
            self._release()
            self.store._fail(self, self.error)
            self._close()


class LiveTransactionStore:
    def __init__(
        self,
        documents: DocumentStore,
        *,
        locale: Optional[str] = None,
        strategy_factory: Callable[[str], QueryStrategy] = transaction_query_strategy,
    ) -> None:
        self.documents = documents
        self.locale = locale
        self.strategy_factory = strategy_factory
        self._lock = threading.RLock()
        self._state = SubscriptionState.idle
        self._transactions: tuple[Transaction, ...] = ()
        self._error: Optional[SubscriptionError] = None
        self._identity: Optional[Identity] = None
        self._subscription: Optional[Subscription] = None

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def transactions(self) -> tuple[Transaction, ...]:
        return self._transactions

    @property
    def error(self) -> Optional[SubscriptionError]:
        return self._error

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def subscription(self) -> Optional[Subscription]:
        return self._subscription

    def bind(self, identity: Optional[Identity]) -> Optional[Subscription]:
        """Follow the session's identity: subscribe, switch or unsubscribe."""
        if identity is None:
            self.unsubscribe()
            return None
        with self._lock:
            current = self._subscription
            if (
                current is not None
                and not current.cancelled
                and self._identity == identity
            ):
                return current
            return self.subscribe(identity)

    def subscribe(self, identity: Identity) -> Subscription:
        with self._lock:
            self._teardown()
            self._identity = identity
            self._transactions = ()
            self._error = None
            subscription = Subscription(
                self, identity, self.strategy_factory(identity.uid)
            )
            self._subscription = subscription
            logger.info(f"subscription_started: uid={identity.uid}")
            subscription.start()
            return subscription

    def unsubscribe(self) -> None:
        with self._lock:
            had_subscription = self._teardown()
            self._identity = None
            self._transactions = ()
            self._error = None
            self._state = SubscriptionState.unsubscribed
        if had_subscription:
            logger.info("subscription_released")

    def retry(self) -> Subscription:
        with self._lock:
            identity = self._identity
        if identity is None:
            raise SubscriptionError("unauthenticated", locale=self.locale)
        logger.info(f"subscription_retry: uid={identity.uid}")
        return self.subscribe(identity)

    def create(self, data: Union[TransactionIn, Mapping[str, Any]]) -> str:
        identity = self._require_identity("create")
        payload = parse_payload(TransactionIn, data, locale=self.locale)
        document = payload.to_document(identity.uid)
        doc_id = self._write(
            "create", lambda: self.documents.add(TRANSACTIONS_COLLECTION, document)
        )
        logger.info(f"transaction_created: uid={identity.uid} id={doc_id}")
        return doc_id

    def update(
        self,
        transaction_id: str,
        changes: Union[TransactionUpdate, Mapping[str, Any]],
    ) -> None:
        identity = self._require_identity("update")
        if not transaction_id:
            raise ValidationError(["id"], locale=self.locale)
        payload = parse_payload(TransactionUpdate, changes, locale=self.locale)
        document = payload.to_document()
        self._write(
            "update",
            lambda: self.documents.update(
                TRANSACTIONS_COLLECTION,
                transaction_id,
                document,
                owner=(Fields.owner, identity.uid),
            ),
        )
        logger.info(f"transaction_updated: uid={identity.uid} id={transaction_id}")

    def delete(self, transaction_id: str) -> None:
        identity = self._require_identity("delete")
        if not transaction_id:
            raise ValidationError(["id"], locale=self.locale)
        self._write(
            "delete",
            lambda: self.documents.delete(
                TRANSACTIONS_COLLECTION,
                transaction_id,
                owner=(Fields.owner, identity.uid),
            ),
        )
        logger.info(f"transaction_deleted: uid={identity.uid} id={transaction_id}")

    def _require_identity(self, operation: str) -> Identity:
        identity = self._identity
        if identity is None:
            logger.info(f"{operation}_rejected: reason=unauthenticated")
            raise WriteError(
                WriteErrorReason.unauthenticated, operation, locale=self.locale
            )
        return identity

    def _write(self, operation: str, call: Callable[[], Any]) -> Any:
        try:
            return call()
        except BackendError as exc:
            if exc.code in NETWORK_FAILURE_CODES:
                reason = WriteErrorReason.network_failure
            else:
                reason = WriteErrorReason.remote_rejected
            logger.warning(
                f"{operation}_failed: code={exc.code} detail={exc.detail!r}"
            )
            raise WriteError(
                reason, operation, detail=exc.detail, locale=self.locale
            ) from exc

    def _teardown(self) -> bool:
        subscription = self._subscription
        self._subscription = None
        if subscription is None:
            return False
        subscription.cancel()
        return True

    def _transition(self, subscription: Subscription, state: SubscriptionState) -> None:
        if subscription is self._subscription:
            logger.debug(f"subscription_state: {self._state.value}->{state.value}")
            self._state = state

    def _apply(self, subscription: Subscription, snapshot: Snapshot) -> None:
        if subscription is not self._subscription:
            return
        self._transactions = snapshot.transactions
        self._error = None
        self._transition(subscription, SubscriptionState.active)

    def _fail(self, subscription: Subscription, error: SubscriptionError) -> None:
        if subscription is not self._subscription:
            return
        self._error = error
        self._transition(subscription, SubscriptionState.error)

    def _decode(
        self, documents: list[Document], identity: Identity
    ) -> list[Transaction]:
        transactions = []
        for document in documents:
            try:
                txn = Transaction.from_document(document)
            except PydanticValidationError as exc:
                logger.warning(
                    f"document_skipped: id={document.id} errors={exc.error_count()}"
                )
                continue
            if txn.owner_id != identity.uid:
                logger.warning(f"foreign_document_dropped: id={document.id}")
                continue
            transactions.append(txn)
        return transactions
