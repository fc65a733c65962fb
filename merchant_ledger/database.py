"""
Database engine, session factory and atomic transaction helper.

Money-moving operations run inside ``Database.atomic()``: the session is
committed when the block exits cleanly and rolled back on any exception.
Row locks are taken with ``with_for_update()``; SQLite has no row locks, so
every SQLite transaction is started with ``BEGIN IMMEDIATE`` which takes the
database write lock up front and serializes writers instead.
"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .errors import PersistenceFailure
from .tables import Base

logger = logging.getLogger(__name__)


def build_engine(url: str, lock_timeout: float = 30.0) -> Engine:
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": lock_timeout},
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            # let SQLAlchemy emit BEGIN itself
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=int(lock_timeout),
    )


class Database:
    def __init__(self, url: str, lock_timeout: float = 30.0):
        self.url = url
        self.engine = build_engine(url, lock_timeout)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Read-only session; whatever it holds is rolled back on exit."""
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            logger.error(f"Database read failed: {e}")
            raise PersistenceFailure() from e
        finally:
            session.rollback()
            session.close()

    @contextmanager
    def atomic(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Transaction rolled back due to database error: {e}")
            raise PersistenceFailure() from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
