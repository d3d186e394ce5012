"""Explicit per-session wiring of the session provider and the live store.

One ``SessionContext`` stands for one signed-in browser session: its own
identity backend, its own store binding. ``ContextRegistry`` keeps them keyed
by the session cookie value.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from typing import Callable, Iterator, Optional

from sqlalchemy.orm import sessionmaker

from backend import DocumentStore, Identity, IdentityBackend
from config import Settings, get_settings
from cookies import SESSION_MAX_AGE_HOURS
from errors import ConfigurationError
from firebase_backend import FirebaseIdentityBackend, FirestoreDocumentStore
from local_backend import LocalDocumentStore, LocalIdentityBackend
from session import SessionProvider
from store import LiveTransactionStore

logger = logging.getLogger(__name__)


class SessionContext:
    def __init__(self, provider: SessionProvider, store: LiveTransactionStore) -> None:
        self.provider = provider
        self.store = store

    @property
    def identity(self) -> Optional[Identity]:
        return self.provider.current_identity()

    def login(self, email: str, secret: str) -> Identity:
        identity = self.provider.login(email, secret)
        self.store.bind(identity)
        return identity

    def register(self, email: str, secret: str) -> Identity:
        identity = self.provider.register(email, secret)
        self.store.bind(identity)
        return identity

    def logout(self) -> None:
        # The store lets go of the identity even if the backend call fails.
        try:
            self.provider.logout()
        finally:
            self.store.bind(None)

    def close(self) -> None:
        self.store.bind(None)


def create_backends(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    documents: Optional[DocumentStore] = None,
) -> tuple[IdentityBackend, DocumentStore]:
    """Build the identity backend and document store selected by ``settings``.

    ``documents`` lets several local contexts share one document store so that
    a write made in one session reaches listeners in the others.
    """
    settings = settings or get_settings()
    if settings.use_local_backend:
        if session_factory is None:
            from database import SessionLocal

            session_factory = SessionLocal
        identity = LocalIdentityBackend(session_factory)
        return identity, documents or LocalDocumentStore(session_factory)

    missing = settings.missing_firebase_keys()
    if missing:
        logger.error(f"firebase_config_incomplete: missing={','.join(missing)}")
        raise ConfigurationError(
            f"Missing Firebase configuration: {', '.join(missing)}"
        )
    remote = FirebaseIdentityBackend(settings)
    return remote, FirestoreDocumentStore(settings, token_provider=remote.id_token)


def create_context(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[sessionmaker] = None,
    documents: Optional[DocumentStore] = None,
) -> SessionContext:
    settings = settings or get_settings()
    identity, store_backend = create_backends(settings, session_factory, documents)
    return SessionContext(
        SessionProvider(identity, locale=settings.locale),
        LiveTransactionStore(store_backend, locale=settings.locale),
    )


class ContextRegistry:
    """Contexts keyed by session cookie value, each with the cookie's expiry.

    An expired entry is never handed out again. ``evict_expired`` closes the
    expired contexts so their live queries stop being polled.
    """

    def __init__(
        self,
        max_age_secs: int = SESSION_MAX_AGE_HOURS * 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_age_secs = max_age_secs
        self.clock = clock
        self._contexts: dict[str, tuple[SessionContext, float]] = {}
        self._lock = threading.Lock()

    def add(self, context: SessionContext) -> str:
        key = secrets.token_urlsafe(24)
        with self._lock:
            self._contexts[key] = (context, self.clock() + self.max_age_secs)
        return key

    def renew(self, key: str) -> None:
        with self._lock:
            entry = self._contexts.get(key)
            if entry is not None:
                self._contexts[key] = (entry[0], self.clock() + self.max_age_secs)

    def get(self, key: Optional[str]) -> Optional[SessionContext]:
        if not key:
            return None
        with self._lock:
            entry = self._contexts.get(key)
            if entry is None:
                return None
            context, expires_at = entry
            if self.clock() <= expires_at:
                return context
            del self._contexts[key]
        logger.info("session_expired: evicted=1")
        context.close()
        return None

    def evict_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [
                key for key, (_, expires_at) in self._contexts.items() if now > expires_at
            ]
            contexts = [self._contexts.pop(key)[0] for key in expired]
        for context in contexts:
            context.close()
        if contexts:
            logger.info(f"session_expired: evicted={len(contexts)}")
        return len(contexts)

    def discard(self, key: Optional[str]) -> None:
        if not key:
            return
        with self._lock:
            entry = self._contexts.pop(key, None)
        if entry is not None:
            entry[0].close()

    def clear(self) -> None:
        with self._lock:
            contexts = [context for context, _ in self._contexts.values()]
            self._contexts.clear()
        for context in contexts:
            context.close()

    def __iter__(self) -> Iterator[SessionContext]:
        with self._lock:
            return iter([context for context, _ in self._contexts.values()])

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)
