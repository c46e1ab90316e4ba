from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .tables import Base

logger = structlog.get_logger()


def _build_engine(url: str, echo: bool) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    kwargs = {"echo": echo, "connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    # SQLite has no row locks: FOR UPDATE is dropped by the dialect, so every
    # transaction takes the database write lock up front instead.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


class Database:
    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine = _build_engine(url, echo)
        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info("schema_ready", url=self.engine.url.render_as_string(hide_password=True))

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self, session: Optional[Session] = None) -> Iterator[Session]:
        """
        Scoped unit of work. Commits when the block exits normally and rolls
        back on any exception. Passing an open session joins it instead, so
        the outermost caller owns the commit.
        """
        if session is not None:
            yield session
            return

        session = self._sessionmaker()
        try:
            with session.begin():
                yield session
        finally:
            session.close()
