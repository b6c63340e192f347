import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import ContextManager, Iterator, Optional, Protocol

from sqlalchemy import select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.models.otp import OtpEntry
from app.schemas.otp import Otp, OtpStatus
from app.services.context import RequestContext, check_context
from app.services.errors import OtpErrorKind, StorageError, otp_error

LOGGER = logging.getLogger(__name__)


class StoreScope(Protocol):
    ctx: Optional[RequestContext]


class OtpStore(Protocol):
    """Persistence contract for OTP records.

    Every operation runs in its own unit of work unless an explicit ``scope``
    obtained from :meth:`transaction` is passed, in which case it joins that
    transaction.
    """

    def transaction(
        self, ctx: Optional[RequestContext] = None
    ) -> ContextManager[StoreScope]:
        ...

    def create(
        self,
        otp: Otp,
        *,
        ctx: Optional[RequestContext] = None,
        scope: Optional[StoreScope] = None,
    ) -> Otp:
        ...

    def find_by_user_and_code(
        self,
        user_id: str,
        code: str,
        *,
        ctx: Optional[RequestContext] = None,
        scope: Optional[StoreScope] = None,
        for_update: bool = False,
    ) -> Otp:
        ...

    def update(
        self,
        otp: Otp,
        *,
        ctx: Optional[RequestContext] = None,
        scope: Optional[StoreScope] = None,
    ) -> None:
        ...

    def get_last_by_user(
        self,
        user_id: str,
        *,
        ctx: Optional[RequestContext] = None,
        scope: Optional[StoreScope] = None,
    ) -> Otp:
        ...


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_otp(entry: OtpEntry) -> Otp:
    return Otp(
        id=entry.id,
        user_id=entry.user_id,
        code=entry.code,
        status=OtpStatus(entry.status),
        created_at=_as_utc(entry.created_at),
        expires_at=_as_utc(entry.expires_at),
        validated_at=_as_utc(entry.validated_at),
    )


def _is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    if getattr(orig, "sqlstate", None) == "23505":
        return True
    if getattr(orig, "pgcode", None) == "23505":
        return True
    message = str(orig)
    return "UNIQUE constraint failed" in message or "Duplicate entry" in message


@dataclass
class SqlScope:
    session: Session
    ctx: Optional[RequestContext] = None

    def check(self) -> None:
        check_context(self.ctx)


class SqlOtpStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def transaction(self, ctx: Optional[RequestContext] = None) -> Iterator[SqlScope]:
        check_context(ctx)
        session = self._session_factory()
        try:
            try:
                self._apply_statement_timeout(session, ctx)
            except SQLAlchemyError as exc:
                raise StorageError("failed to start OTP transaction") from exc
            yield SqlScope(session=session, ctx=ctx)
            try:
                session.commit()
            except SQLAlchemyError as exc:
                raise StorageError("failed to commit OTP transaction") from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def create(
        self,
        otp: Otp,
        *,
        ctx: Optional[RequestContext] = None,
        scope: Optional[SqlScope] = None,
    ) -> Otp:
        with self._scoped(scope, ctx) as active:
            active.check()
            entry = OtpEntry(
                user_id=otp.user_id,
                code=otp.code,
                status=otp.status.value,
                created_at=otp.created_at,
                expires_at=otp.expires_at,
                validated_at=otp.validated_at,
            )
            try:
                active.session.add(entry)
                active.session.flush()
            except IntegrityError as exc:
                if _is_unique_violation(exc):
                    raise otp_error(OtpErrorKind.DUPLICATE) from exc
                raise StorageError("failed to create OTP") from exc
            except SQLAlchemyError as exc:
                raise StorageError("failed to create OTP") from exc
            otp.id = entry.id
        return otp

    def find_by_user_and_code(
        self,
        user_id: str,
        code: str,
        *,
        ctx: Optional[RequestContext] = None,
        scope: Optional[SqlScope] = None,
        for_update: bool = False,
    ) -> Otp:
        stmt = select(OtpEntry).where(
            OtpEntry.user_id == user_id,
            OtpEntry.code == code,
        )
        if for_update:
            stmt = stmt.with_for_update()
        with self._scoped(scope, ctx) as active:
            active.check()
            try:
                entry = active.session.execute(stmt).scalar_one_or_none()
            except SQLAlchemyError as exc:
                raise StorageError("failed to load OTP") from exc
            if entry is None:
                raise otp_error(OtpErrorKind.NOT_FOUND)
            return _to_otp(entry)

    def update(
        self,
        otp: Otp,
        *,
        ctx: Optional[RequestContext] = None,
        scope: Optional[SqlScope] = None,
    ) -> None:
        stmt = (
            update(OtpEntry)
            .where(OtpEntry.id == otp.id)
            .values(status=otp.status.value, validated_at=otp.validated_at)
        )
        with self._scoped(scope, ctx) as active:
            active.check()
            try:
                active.session.execute(stmt)
            except SQLAlchemyError as exc:
                raise StorageError("failed to update OTP") from exc

    def get_last_by_user(
        self,
        user_id: str,
        *,
        ctx: Optional[RequestContext] = None,
        scope: Optional[SqlScope] = None,
    ) -> Otp:
        stmt = (
            select(OtpEntry)
            .where(OtpEntry.user_id == user_id)
            .order_by(OtpEntry.created_at.desc(), OtpEntry.id.desc())
            .limit(1)
        )
        with self._scoped(scope, ctx) as active:
            active.check()
            try:
                entry = active.session.execute(stmt).scalar_one_or_none()
            except SQLAlchemyError as exc:
                raise StorageError("failed to load last OTP") from exc
            if entry is None:
                raise otp_error(OtpErrorKind.NOT_FOUND)
            return _to_otp(entry)

    @contextmanager
    def _scoped(
        self, scope: Optional[SqlScope], ctx: Optional[RequestContext]
    ) -> Iterator[SqlScope]:
        if scope is not None:
            if ctx is not None and scope.ctx is None:
                scope.ctx = ctx
            yield scope
            return
        with self.transaction(ctx) as own_scope:
            yield own_scope

    @staticmethod
    def _apply_statement_timeout(
        session: Session, ctx: Optional[RequestContext]
    ) -> None:
        if ctx is None or ctx.remaining() is None:
            return
        if session.get_bind().dialect.name != "postgresql":
            return
        timeout_ms = max(1, int(ctx.remaining() * 1000))
        LOGGER.debug("Applying statement_timeout=%sms", timeout_ms)
        session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
