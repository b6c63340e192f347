from sqlalchemy import Column, DateTime, Index, Integer, String, UniqueConstraint

from app.database import Base


class OtpEntry(Base):
    __tablename__ = "otp_codes"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(255), nullable=False)
    code = Column(String(6), nullable=False)
    status = Column(String(16), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    validated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "code", name="uq_otp_user_code"),
        Index("ix_otp_user_created", "user_id", "created_at"),
    )
