from __future__ import annotations

import logging
from collections.abc import Generator

from fastapi import HTTPException, Request, status
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


logger = logging.getLogger("erasmus_crm.database")


class Base(DeclarativeBase):
    pass


class DatabaseNotConfiguredError(RuntimeError):
    pass


class Database:
    """Process-wide storage handle.

    Built once during application startup and handed to request handlers via
    ``get_db``. Without a connection URL the handle is *degraded*: it hands out
    no sessions, reads render as empty results and writes are rejected.
    """

    def __init__(self, url: str | None, *, echo: bool = False) -> None:
        self.url = url
        self.engine: Engine | None = None
        self.session_factory: sessionmaker[Session] | None = None
        if url:
            connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
            self.engine = create_engine(url, echo=echo, pool_pre_ping=True, connect_args=connect_args)
            self.session_factory = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)

    @classmethod
    def from_settings(cls, url: str | None, *, allow_degraded: bool) -> Database:
        if not url:
            if not allow_degraded:
                raise DatabaseNotConfiguredError("DATABASE_URL is not set and degraded storage is disabled")
            logger.warning("database.degraded", extra={"status": "no database_url configured"})
        return cls(url)

    @property
    def available(self) -> bool:
        return self.session_factory is not None

    def open_session(self) -> Session | None:
        if self.session_factory is None:
            return None
        return self.session_factory()

    def dispose(self) -> None:
        if self.engine is not None:
            self.engine.dispose()


def get_db(request: Request) -> Generator[Session | None, None, None]:
    database: Database | None = getattr(request.app.state, "database", None)
    session = database.open_session() if database is not None else None
    if session is None:
        yield None
        return
    try:
        yield session
    finally:
        session.close()


def require_session(session: Session | None) -> Session:
    if session is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="database not available")
    return session
