"""Engine, session factory and declarative base shared by all services."""
from contextlib import contextmanager
from typing import Generator, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import get_settings
from .errors import InfrastructureError

settings = get_settings()

_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    connect_args=_connect_args,
)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


@event.listens_for(Engine, "connect")
def _configure_sqlite_connection(dbapi_connection, _connection_record) -> None:
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        # pysqlite otherwise defers BEGIN until the first write; transactions
        # are started by _begin_sqlite_immediate instead.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@event.listens_for(Engine, "begin")
def _begin_sqlite_immediate(conn) -> None:
    """Take the SQLite write lock when a transaction starts.

    SQLite ignores ``SELECT ... FOR UPDATE``, so the lock that keeps two
    writers from both passing a read-then-insert check is the database lock.
    A second writer waits for the busy timeout and then fails with
    "database is locked".
    """
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or roll all of it back.

    Domain errors propagate unchanged; driver/ORM failures are raised as
    InfrastructureError chained to the original exception.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise InfrastructureError("Storage operation failed", original=exc) from exc
    except BaseException:
        db.rollback()
        raise
