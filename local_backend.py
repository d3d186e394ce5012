"""In-process development backend persisted with SQLAlchemy.

Behaves like the hosted services at the boundary: the same error codes, server
assigned timestamps, owner checks on writes, and live queries. Setting
``deny_ordered_queries`` makes every filter+order query fail with
``permission-denied``, as an access policy of the hosted store can.
"""

from __future__ import annotations

import logging
import re
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker
from werkzeug.security import check_password_hash, generate_password_hash

from backend import (
    SERVER_TIMESTAMP,
    Document,
    Identity,
    ListenerHub,
    QueryDescriptor,
    generate_document_id,
)
from database import session_scope
from errors import AuthErrorCode, BackendError
from models import LocalAccount, StoredDocument

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_SECRET_LENGTH = 6
MAX_FAILED_ATTEMPTS = 5
FAILED_ATTEMPT_WINDOW = timedelta(minutes=5)

_TIMESTAMP_KEY = "__timestamp__"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalIdentityBackend:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self._current: Optional[Identity] = None
        self._failures: dict[str, list[datetime]] = {}

    def current_identity(self) -> Optional[Identity]:
        return self._current

    def sign_up(self, email: str, secret: str) -> Identity:
        email = email.strip().lower()
        if not EMAIL_RE.match(email):
            raise BackendError(AuthErrorCode.invalid_email.value, email)
        if len(secret) < MIN_SECRET_LENGTH:
            raise BackendError(
                AuthErrorCode.weak_secret.value,
                f"Password should be at least {MIN_SECRET_LENGTH} characters",
            )
        with session_scope(self.session_factory) as session:
            existing = session.scalar(
                select(LocalAccount).where(LocalAccount.email == email)
            )
            if existing:
                raise BackendError(AuthErrorCode.already_in_use.value, email)
            account = LocalAccount(
                uid=uuid.uuid4().hex[:28],
                email=email,
                password_hash=generate_password_hash(secret),
            )
            session.add(account)
            session.flush()
            identity = Identity(uid=account.uid, email=account.email)
        logger.info(f"local_sign_up: uid={identity.uid}")
        self._current = identity
        return identity

    def sign_in(self, email: str, secret: str) -> Identity:
        email = email.strip().lower()
        if not EMAIL_RE.match(email):
            raise BackendError(AuthErrorCode.invalid_email.value, email)
        if self._is_rate_limited(email):
            raise BackendError(AuthErrorCode.rate_limited.value, email)
        with session_scope(self.session_factory) as session:
            account = session.scalar(
                select(LocalAccount).where(LocalAccount.email == email)
            )
            if account is None:
                self._record_failure(email)
                raise BackendError(AuthErrorCode.user_not_found.value, email)
            if account.disabled:
                raise BackendError(AuthErrorCode.disabled.value, email)
            if not check_password_hash(account.password_hash, secret):
                self._record_failure(email)
                raise BackendError(AuthErrorCode.wrong_secret.value, email)
            identity = Identity(uid=account.uid, email=account.email)
        self._failures.pop(email, None)
        self._current = identity
        return identity

    def sign_out(self) -> None:
        self._current = None

    def set_disabled(self, email: str, disabled: bool = True) -> None:
        with session_scope(self.session_factory) as session:
            account = session.scalar(
                select(LocalAccount).where(LocalAccount.email == email.strip().lower())
            )
            if account is None:
                raise BackendError(AuthErrorCode.user_not_found.value, email)
            account.disabled = disabled

    def _recent_failures(self, email: str) -> list[datetime]:
        cutoff = self.clock() - FAILED_ATTEMPT_WINDOW
        recent = [ts for ts in self._failures.get(email, []) if ts >= cutoff]
        self._failures[email] = recent
        return recent

    def _is_rate_limited(self, email: str) -> bool:
        return len(self._recent_failures(email)) >= MAX_FAILED_ATTEMPTS

    def _record_failure(self, email: str) -> None:
        self._recent_failures(email).append(self.clock())


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return {_TIMESTAMP_KEY: value.isoformat()}
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict) and set(value) == {_TIMESTAMP_KEY}:
        return datetime.fromisoformat(value[_TIMESTAMP_KEY])
    return value


def _sort_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.timestamp()
    return value


class LocalDocumentStore(ListenerHub):
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        deny_ordered_queries: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__()
        self.session_factory = session_factory
        self.deny_ordered_queries = deny_ordered_queries
        self.clock = clock
        self._stamp_lock = threading.Lock()
        self._last_stamp: Optional[datetime] = None

    def _server_time(self) -> datetime:
        # Strictly increasing so creation order survives equal clock readings.
        with self._stamp_lock:
            now = self.clock()
            if self._last_stamp is not None and now <= self._last_stamp:
                now = self._last_stamp + timedelta(microseconds=1)
            self._last_stamp = now
            return now

    def _resolve(self, data: Mapping[str, Any]) -> dict[str, Any]:
        stamp = None
        resolved: dict[str, Any] = {}
        for key, value in data.items():
            if value is SERVER_TIMESTAMP:
                stamp = stamp or self._server_time()
                value = stamp
            resolved[key] = _encode(value)
        return resolved

    def _run_query(self, query: QueryDescriptor) -> list[Document]:
        if query.order_by is not None and self.deny_ordered_queries:
            raise BackendError(
                "permission-denied", "Missing or insufficient permissions."
            )
        with session_scope(self.session_factory) as session:
            rows = session.scalars(
                select(StoredDocument)
                .where(StoredDocument.collection == query.collection)
                .order_by(StoredDocument.id)
            ).all()
            documents = [
                Document(
                    id=row.id,
                    data={key: _decode(value) for key, value in row.data.items()},
                )
                for row in rows
            ]
        documents = [doc for doc in documents if query.matches(doc.data)]
        if query.order_by is not None:
            order = query.order_by
            # Documents without the ordering field are not part of the result.
            documents = [doc for doc in documents if doc.data.get(order.field) is not None]
            documents.sort(
                key=lambda doc: _sort_value(doc.data[order.field]),
                reverse=order.descending,
            )
        return documents

    def add(self, collection: str, data: Mapping[str, Any]) -> str:
        doc_id = generate_document_id()
        with session_scope(self.session_factory) as session:
            session.add(
                StoredDocument(id=doc_id, collection=collection, data=self._resolve(data))
            )
        logger.debug(f"document_added: collection={collection} id={doc_id}")
        self.refresh_collection(collection)
        return doc_id

    def update(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        owner: tuple[str, Any],
    ) -> None:
        with session_scope(self.session_factory) as session:
            row = self._owned_row(session, collection, doc_id, owner)
            merged = dict(row.data)
            merged.update(self._resolve(data))
            row.data = merged
        self.refresh_collection(collection)

    def delete(self, collection: str, doc_id: str, *, owner: tuple[str, Any]) -> None:
        with session_scope(self.session_factory) as session:
            row = self._owned_row(session, collection, doc_id, owner)
            session.delete(row)
        self.refresh_collection(collection)

    @staticmethod
    def _owned_row(session, collection: str, doc_id: str, owner: tuple[str, Any]):
        row = session.get(StoredDocument, doc_id)
        if row is None or row.collection != collection:
            raise BackendError("not-found", f"No document to update: {collection}/{doc_id}")
        field_name, expected = owner
        if row.data.get(field_name) != expected:
            raise BackendError(
                "permission-denied", "Missing or insufficient permissions."
            )
        return row
