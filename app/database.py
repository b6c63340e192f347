from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from app.config import settings


def _build_database_url() -> str:
    raw_url = settings.database_url
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return raw_url


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


def enable_sqlite_write_locks(engine: Engine) -> Engine:
    """Make every SQLite transaction take the write lock when it begins.

    SQLite ignores ``FOR UPDATE`` and pysqlite defers ``BEGIN`` until the
    first write, so two read-check-write transactions could interleave.
    """
    if engine.dialect.name != "sqlite":
        return engine

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


DATABASE_URL = _build_database_url()
engine = enable_sqlite_write_locks(
    create_engine(
        DATABASE_URL, pool_pre_ping=True, connect_args=_connect_args(DATABASE_URL)
    )
)
SessionLocal = sessionmaker(
    bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
)
Base = declarative_base()


def init_db() -> None:
    from app.models import otp as _otp  # noqa: F401

    Base.metadata.create_all(bind=engine)
