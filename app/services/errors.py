from enum import Enum
from typing import Optional


class OtpErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "otp_not_found"
    DUPLICATE = "duplicate_otp_code"
    RATE_LIMIT_EXCEEDED = "otp_rate_limit_exceeded"
    EXPIRED = "otp_expired"
    ALREADY_USED = "otp_used"


_DEFAULT_MESSAGES = {
    OtpErrorKind.INVALID_REQUEST: (
        "Invalid request: Please check the request body and try again"
    ),
    OtpErrorKind.NOT_FOUND: "OTP Not Found",
    OtpErrorKind.DUPLICATE: "OTP Code Already Exists",
    OtpErrorKind.RATE_LIMIT_EXCEEDED: (
        "OTP requested too frequently, please wait before requesting again"
    ),
    OtpErrorKind.EXPIRED: "OTP has expired",
    OtpErrorKind.ALREADY_USED: "OTP has already been used",
}


class OtpError(Exception):
    """Domain failure surfaced to callers, identified by its kind."""

    def __init__(self, kind: OtpErrorKind, message: Optional[str] = None) -> None:
        self.kind = OtpErrorKind(kind)
        self.message = message or _DEFAULT_MESSAGES[self.kind]
        super().__init__(f"{self.code}: {self.message}")

    @property
    def code(self) -> str:
        return self.kind.value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OtpError):
            return NotImplemented
        return self.kind == other.kind

    def __hash__(self) -> int:
        return hash(self.kind)


def otp_error(kind: OtpErrorKind, message: Optional[str] = None) -> OtpError:
    return OtpError(kind, message)


class InternalError(RuntimeError):
    pass


class StorageError(InternalError):
    pass


class CodeGenerationError(InternalError):
    pass


class OperationCancelled(InternalError):
    pass
