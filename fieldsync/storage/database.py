"""Database handle passed explicitly to every service that persists state."""

from contextlib import contextmanager
from typing import Iterator

import structlog
from sqlalchemy import Engine, MetaData, create_engine, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

log = structlog.stdlib.get_logger()


def make_engine(url: str, echo: bool = False) -> Engine:
    """Create a SQLAlchemy engine with SQLite-friendly defaults.

    Args:
        url: Database connection URL
        echo: Log every SQL statement

    Returns:
        A SQLAlchemy Engine instance
    """
    kwargs: dict = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            # one shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
    return create_engine(url, **kwargs)


class Database:
    """Engine, session factory and schema for one store.

    Instances are created by the application entry point and handed to the
    services that need them; nothing in fieldsync keeps a module-level engine.
    """

    def __init__(self, url: str, metadata: MetaData, echo: bool = False):
        self.url = url
        self._metadata = metadata
        self.engine = make_engine(url, echo=echo)
        self._sessionmaker = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        log.info("database_initialized", dialect=self.engine.dialect.name)

    def create_all(self) -> None:
        """Create any missing tables."""
        self._metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Open a session and commit on success, roll back on error."""
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def scope(self, session: Session | None = None) -> Iterator[Session]:
        """Reuse the caller's session, or open a transaction of our own."""
        if session is not None:
            yield session
            return
        with self.transaction() as own:
            yield own

    def ping(self) -> None:
        """Run a trivial query; raises if the database is unreachable."""
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))

    def dispose(self) -> None:
        self.engine.dispose()
