"""Engine and transaction scope for the ledger database."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from loguru import logger
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from .config import DatabaseSettings
from .schema import Base


def _install_sqlite_hooks(engine: Engine) -> None:
    # pysqlite's implicit transactions do not cover reads and break SAVEPOINT.
    # Take over BEGIN ourselves and make it IMMEDIATE so that every ledger
    # transaction holds the write lock from its first statement.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    def __init__(self, settings: DatabaseSettings):
        connect_args = {}
        self.is_sqlite = settings.url.startswith("sqlite")
        if self.is_sqlite:
            connect_args["timeout"] = 30
        self.engine = create_engine(settings.url, echo=settings.echo, connect_args=connect_args)
        if self.is_sqlite:
            _install_sqlite_hooks(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info("Ledger schema ready on {}", self.engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """One database transaction: commit on success, roll back on any error."""
        session = self._session_factory()
        try:
            with session.begin():
                yield session
        finally:
            session.close()


__all__ = ["Database"]
