import secrets
from typing import Optional, Protocol

from app.schemas.otp import OTP_LENGTH
from app.services.context import RequestContext, check_context
from app.services.errors import CodeGenerationError


class CodeGenerator(Protocol):
    def generate(self, ctx: Optional[RequestContext] = None) -> str:
        ...


class SecureCodeGenerator:
    """Uniform random numeric codes from the OS CSPRNG, zero-padded."""

    def __init__(self, code_length: int = OTP_LENGTH) -> None:
        self._code_length = code_length

    def generate(self, ctx: Optional[RequestContext] = None) -> str:
        check_context(ctx)
        try:
            value = secrets.randbelow(10**self._code_length)
        except (OSError, NotImplementedError) as exc:
            raise CodeGenerationError("secure random source unavailable") from exc
        return str(value).zfill(self._code_length)
