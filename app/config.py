import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv(override=True)


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw_value = os.getenv(name, default)
    return tuple(item.strip() for item in raw_value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./otp_service.db")
    otp_store_backend: str = os.getenv("OTP_STORE_BACKEND", "sql").strip().lower()
    otp_validity_seconds: int = int(os.getenv("OTP_VALIDITY_SECONDS", "120"))
    otp_rate_limit_seconds: int = int(os.getenv("OTP_RATE_LIMIT_SECONDS", "120"))
    request_timeout_seconds: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "5"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    cors_origins: tuple[str, ...] = _env_list("CORS_ORIGINS", "*")


settings = Settings()
