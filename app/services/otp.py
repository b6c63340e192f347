import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from app.config import settings
from app.database import SessionLocal
from app.schemas.otp import Otp, OtpStatus
from app.services.context import RequestContext
from app.services.errors import (
    CodeGenerationError,
    InternalError,
    OtpError,
    OtpErrorKind,
    StorageError,
    otp_error,
)
from app.services.memory_store import InMemoryOtpStore
from app.services.otp_generator import CodeGenerator, SecureCodeGenerator
from app.services.otp_store import OtpStore, SqlOtpStore, StoreScope

LOGGER = logging.getLogger(__name__)

OTP_VALIDITY = timedelta(minutes=2)
OTP_RATE_LIMIT_WINDOW = timedelta(minutes=2)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OtpService:
    """Issues and validates one-time passcodes.

    Status only moves forward: ``created`` to ``validated`` on a successful
    validation, or ``created`` to ``expired`` when a validation attempt
    arrives after ``expires_at``. Expiry is recorded lazily; nothing sweeps
    stale records.
    """

    def __init__(
        self,
        store: OtpStore,
        generator: CodeGenerator,
        *,
        validity: timedelta = OTP_VALIDITY,
        rate_limit_window: timedelta = OTP_RATE_LIMIT_WINDOW,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._generator = generator
        self._validity = validity
        self._rate_limit_window = rate_limit_window
        self._clock = clock

    def create(self, user_id: str, ctx: Optional[RequestContext] = None) -> Otp:
        with self._store.transaction(ctx) as scope:
            self._enforce_rate_limit(user_id, ctx, scope)
            try:
                code = self._generator.generate(ctx)
            except CodeGenerationError as exc:
                raise InternalError("failed to generate OTP code") from exc

            now = self._clock()
            otp = Otp(
                user_id=user_id,
                code=code,
                status=OtpStatus.CREATED,
                created_at=now,
                expires_at=now + self._validity,
            )
            self._store.create(otp, ctx=ctx, scope=scope)

        LOGGER.info("Created OTP id=%s for user_id=%s", otp.id, user_id)
        return otp

    def validate(
        self, user_id: str, code: str, ctx: Optional[RequestContext] = None
    ) -> Otp:
        with self._store.transaction(ctx) as scope:
            otp = self._store.find_by_user_and_code(
                user_id, code, ctx=ctx, scope=scope, for_update=True
            )
            failure = self._check_status(otp, ctx, scope)
            if failure is None:
                self._mark_validated(otp, ctx, scope)

        # Raised after commit so the lazy expiry write is kept.
        if failure is not None:
            raise failure
        return otp

    def _enforce_rate_limit(
        self, user_id: str, ctx: Optional[RequestContext], scope: StoreScope
    ) -> None:
        try:
            last = self._store.get_last_by_user(user_id, ctx=ctx, scope=scope)
        except OtpError as exc:
            if exc.kind == OtpErrorKind.NOT_FOUND:
                return
            raise

        # Measured from created_at, not expires_at; an OTP that expired but
        # was never marked so still blocks until the window passes.
        if last.status != OtpStatus.CREATED:
            return
        if self._clock() - last.created_at < self._rate_limit_window:
            LOGGER.info("Rate limit hit for user_id=%s", user_id)
            raise otp_error(OtpErrorKind.RATE_LIMIT_EXCEEDED)

    def _check_status(
        self, otp: Otp, ctx: Optional[RequestContext], scope: StoreScope
    ) -> Optional[OtpError]:
        # Already-used wins over expiry.
        if otp.status == OtpStatus.VALIDATED:
            return otp_error(OtpErrorKind.ALREADY_USED)

        if otp.status == OtpStatus.EXPIRED:
            return otp_error(OtpErrorKind.EXPIRED)

        if self._clock() > otp.expires_at:
            otp.status = OtpStatus.EXPIRED
            self._store.update(otp, ctx=ctx, scope=scope)
            return otp_error(OtpErrorKind.EXPIRED)

        return None

    def _mark_validated(
        self, otp: Otp, ctx: Optional[RequestContext], scope: StoreScope
    ) -> None:
        otp.status = OtpStatus.VALIDATED
        otp.validated_at = self._clock()
        try:
            self._store.update(otp, ctx=ctx, scope=scope)
        except StorageError as exc:
            raise InternalError(f"failed to update OTP status: {exc}") from exc


def build_otp_store() -> OtpStore:
    if settings.otp_store_backend == "memory":
        return InMemoryOtpStore()
    if settings.otp_store_backend != "sql":
        raise RuntimeError(
            f"Unknown OTP_STORE_BACKEND '{settings.otp_store_backend}'"
        )
    return SqlOtpStore(SessionLocal)


otp_service = OtpService(
    build_otp_store(),
    SecureCodeGenerator(),
    validity=timedelta(seconds=settings.otp_validity_seconds),
    rate_limit_window=timedelta(seconds=settings.otp_rate_limit_seconds),
)
