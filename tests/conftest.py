import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, enable_sqlite_write_locks
from app.models import otp as _otp_model  # noqa: F401
from app.schemas.otp import Otp, OtpStatus
from app.services.memory_store import InMemoryOtpStore
from app.services.otp_store import SqlOtpStore

START = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ScriptedGenerator:
    def __init__(self, *codes: str) -> None:
        self._codes = list(codes)
        self.contexts = []

    def generate(self, ctx=None) -> str:
        self.contexts.append(ctx)
        if not self._codes:
            raise AssertionError("no scripted codes left")
        return self._codes.pop(0)


def make_otp(user_id="alice", code="123456", created_at=START, **overrides) -> Otp:
    values = dict(
        user_id=user_id,
        code=code,
        status=OtpStatus.CREATED,
        created_at=created_at,
        expires_at=created_at + timedelta(minutes=2),
    )
    values.update(overrides)
    return Otp(**values)


@pytest.fixture
def sql_engine():
    engine = enable_sqlite_write_locks(
        create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sql_engine):
    return sessionmaker(
        bind=sql_engine, autoflush=False, autocommit=False, expire_on_commit=False
    )


@pytest.fixture
def sql_store(session_factory):
    return SqlOtpStore(session_factory)


@pytest.fixture
def memory_store():
    return InMemoryOtpStore()


@pytest.fixture(params=["sql", "memory"])
def store(request):
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def file_engine(tmp_path):
    engine = enable_sqlite_write_locks(
        create_engine(
            f"sqlite:///{tmp_path / 'otp.db'}",
            connect_args={"check_same_thread": False},
        )
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()
