from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

OTP_LENGTH = 6


class OtpStatus(str, Enum):
    CREATED = "created"
    VALIDATED = "validated"
    EXPIRED = "expired"


@dataclass
class Otp:
    user_id: str
    code: str
    status: OtpStatus
    created_at: datetime
    expires_at: datetime
    validated_at: Optional[datetime] = None
    id: Optional[int] = None


class OtpRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)


class OtpResponse(BaseModel):
    user_id: str
    otp: str


class OtpValidateRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)
    otp: str = Field(min_length=OTP_LENGTH, max_length=OTP_LENGTH, pattern=r"^[0-9]{6}$")


class OtpValidateResponse(BaseModel):
    user_id: str
    message: str


class ErrorResponse(BaseModel):
    error: str
    error_description: str
