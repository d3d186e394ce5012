from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings


def _is_memory(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:")


def create_engine_for(database_url: str) -> Engine:
    """Engine for the local backend store.

    An in-memory sqlite database lives on a single shared connection so every
    session (and the listener refreshes running on other threads) sees it.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)
    options: dict[str, object] = {"connect_args": {"check_same_thread": False}}
    if _is_memory(database_url):
        options["poolclass"] = StaticPool
    eng = create_engine(database_url, **options)
    journal = "MEMORY" if _is_memory(database_url) else "WAL"

    @event.listens_for(eng, "connect")
    def _sqlite_pragmas(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute(f"PRAGMA journal_mode={journal};")
        cursor.execute("PRAGMA busy_timeout=5000;")
        cursor.close()

    return eng


def session_factory_for(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = create_engine_for(get_settings().database_url)
SessionLocal = session_factory_for(engine)


class Base(DeclarativeBase):
    pass


def create_schema(bind: Optional[Engine] = None) -> None:
    # Importing models registers the local backend tables on Base.metadata.
    import models  # noqa: F401

    Base.metadata.create_all(bind or engine)


def memory_session_factory() -> sessionmaker:
    """Fresh, schema-initialised in-memory local store."""
    eng = create_engine_for("sqlite://")
    create_schema(eng)
    return session_factory_for(eng)


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
