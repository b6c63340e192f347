import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from app.schemas.otp import Otp
from app.services.context import RequestContext, check_context
from app.services.errors import OtpErrorKind, StorageError, otp_error


@dataclass
class MemoryScope:
    ctx: Optional[RequestContext] = None
    undo: List[Callable[[], None]] = field(default_factory=list)

    def check(self) -> None:
        check_context(self.ctx)


class InMemoryOtpStore:
    """Process-local OTP store.

    Every operation holds a re-entrant lock; a transaction holds it for its
    whole block, so a read-check-write inside one is serialized against all
    other operations. Writes made in a transaction are journaled and undone
    in reverse order if the block raises.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rows: Dict[int, Otp] = {}
        self._by_key: Dict[Tuple[str, str], int] = {}
        self._by_user: Dict[str, List[int]] = {}
        self._next_id = 1

    @contextmanager
    def transaction(self, ctx: Optional[RequestContext] = None) -> Iterator[MemoryScope]:
        check_context(ctx)
        with self._lock:
            scope = MemoryScope(ctx=ctx)
            try:
                yield scope
            except BaseException:
                for undo in reversed(scope.undo):
                    undo()
                raise

    def create(
        self,
        otp: Otp,
        *,
        ctx: Optional[RequestContext] = None,
        scope: Optional[MemoryScope] = None,
    ) -> Otp:
        with self._scoped(scope, ctx) as active:
            active.check()
            key = (otp.user_id, otp.code)
            if key in self._by_key:
                raise otp_error(OtpErrorKind.DUPLICATE)
            otp.id = self._next_id
            self._next_id += 1
            self._rows[otp.id] = replace(otp)
            self._by_key[key] = otp.id
            self._by_user.setdefault(otp.user_id, []).append(otp.id)
            active.undo.append(lambda: self._remove(otp.id, key))
        return otp

    def find_by_user_and_code(
        self,
        user_id: str,
        code: str,
        *,
        ctx: Optional[RequestContext] = None,
        scope: Optional[MemoryScope] = None,
        for_update: bool = False,
    ) -> Otp:
        with self._scoped(scope, ctx) as active:
            active.check()
            otp_id = self._by_key.get((user_id, code))
            if otp_id is None:
                raise otp_error(OtpErrorKind.NOT_FOUND)
            return replace(self._rows[otp_id])

    def update(
        self,
        otp: Otp,
        *,
        ctx: Optional[RequestContext] = None,
        scope: Optional[MemoryScope] = None,
    ) -> None:
        with self._scoped(scope, ctx) as active:
            active.check()
            row = self._rows.get(otp.id)
            if row is None:
                raise StorageError(f"OTP {otp.id} does not exist")
            previous = (row.status, row.validated_at)
            row.status = otp.status
            row.validated_at = otp.validated_at
            active.undo.append(lambda: self._restore(row, previous))

    def get_last_by_user(
        self,
        user_id: str,
        *,
        ctx: Optional[RequestContext] = None,
        scope: Optional[MemoryScope] = None,
    ) -> Otp:
        with self._scoped(scope, ctx) as active:
            active.check()
            rows = [self._rows[otp_id] for otp_id in self._by_user.get(user_id, ())]
            if not rows:
                raise otp_error(OtpErrorKind.NOT_FOUND)
            last = max(rows, key=lambda row: (row.created_at, row.id))
            return replace(last)

    def _remove(self, otp_id: int, key: Tuple[str, str]) -> None:
        row = self._rows.pop(otp_id)
        del self._by_key[key]
        self._by_user[row.user_id].remove(otp_id)

    @staticmethod
    def _restore(row: Otp, previous) -> None:
        row.status, row.validated_at = previous

    @contextmanager
    def _scoped(
        self, scope: Optional[MemoryScope], ctx: Optional[RequestContext]
    ) -> Iterator[MemoryScope]:
        if scope is not None:
            if ctx is not None and scope.ctx is None:
                scope.ctx = ctx
            yield scope
            return
        check_context(ctx)
        with self._lock:
            yield MemoryScope(ctx=ctx)
