"""Database engine and session management shared by all services."""
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    pass


def _build_engine(url: str):
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    sqlite_engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

    # pysqlite defers BEGIN until the first write, so reads would escape the
    # transaction; take the write lock up front instead.
    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, _):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _begin_immediate(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return sqlite_engine


engine = _build_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
