"""Connection lifecycle for the Conversation Store.

:class:`Database` owns the SQLAlchemy engine and session factory. It is
created once by the application container and passed to the repositories
that need it; nothing in this module keeps module-level state.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.errors import PersistenceError
from . import Base

logger = logging.getLogger(__name__)


def as_sqlalchemy_url(url: str) -> str:
    """Use the psycopg (v3) driver for bare ``postgresql://`` URLs."""

    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        return "postgresql+psycopg://" + url[len("postgresql://"):]
    return url


def get_engine(database_url: str, **kwargs: object) -> Engine:
    """Create a SQLAlchemy engine for ``database_url``.

    SQLite engines get a ``gen_random_uuid`` function and foreign keys
    enabled so cascading deletes behave like PostgreSQL.
    """

    url = as_sqlalchemy_url(database_url)
    if url.startswith("sqlite"):
        connect_args = dict(kwargs.pop("connect_args", {}) or {})  # type: ignore[arg-type]
        connect_args.setdefault("check_same_thread", False)
        kwargs["connect_args"] = connect_args
    engine = create_engine(url, **kwargs)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, _connection_record):  # pragma: no cover - dialect hook
            dbapi_connection.create_function("gen_random_uuid", 0, lambda: str(uuid.uuid4()))
            dbapi_connection.execute("PRAGMA foreign_keys=ON")

    return engine


class Database:
    """Engine/session-factory holder with idempotent connect and close."""

    def __init__(self, database_url: str, **engine_kwargs: object) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is not configured.")
        self.database_url = database_url
        self._engine_kwargs = engine_kwargs
        self._engine: Engine | None = None
        self._factory: sessionmaker[Session] | None = None
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> Engine:
        return self.connect()

    def connect(self) -> Engine:
        """Create the engine on first use; later calls return the same engine."""

        with self._lock:
            if self._engine is None:
                self._engine = get_engine(self.database_url, **self._engine_kwargs)
                self._factory = sessionmaker(
                    bind=self._engine, expire_on_commit=False, future=True
                )
                logger.info("Conversation store connected (%s)", self._engine.dialect.name)
            return self._engine

    def close(self) -> None:
        """Dispose the engine. Safe to call when already closed."""

        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
                logger.info("Conversation store closed")
            self._engine = None
            self._factory = None

    def create_schema(self) -> None:
        """Create missing tables for all declared models."""

        Base.metadata.create_all(self.connect())

    def drop_schema(self) -> None:
        Base.metadata.drop_all(self.connect())

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Provide a transactional scope around a series of operations.

        Database failures are re-raised as :class:`PersistenceError`.
        """

        self.connect()
        assert self._factory is not None
        session = self._factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(f"Database operation failed: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


__all__ = ["Base", "Database", "as_sqlalchemy_url", "get_engine"]
