from contextlib import contextmanager
from sqlalchemy import event
from sqlmodel import create_engine, Session
from sqlmodel import SQLModel
import os

DB_FILE = os.path.join(os.path.dirname(__file__), "rides.db")
_default_url = f"sqlite:///{DB_FILE}"
DATABASE_URL = os.environ.get("DATABASE_URL", _default_url)


def make_engine(url: str, echo: bool = False):
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo)

    # SQLite needs check_same_thread=False; Postgres does not
    sqlite_engine = create_engine(url, echo=echo, connect_args={"check_same_thread": False, "timeout": 30})

    @event.listens_for(sqlite_engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    # take the write lock up front so racing writers queue instead of
    # failing with "database is locked" when they upgrade a read lock
    @event.listens_for(sqlite_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return sqlite_engine


engine = make_engine(DATABASE_URL)


def init_db():
    # register every table on the metadata before creating it
    import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session():
    # objects stay readable after commit so services can return them
    return Session(engine, expire_on_commit=False)


@contextmanager
def transaction():
    """Session bound to one transaction: commit on exit, rollback on error."""
    with get_session() as session:
        with session.begin():
            yield session
