import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Enum, ForeignKey, Index

from diaglab.database import Base
from diaglab.models.users import enum_values


class OTPPurpose(str, enum.Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    LOGIN_2FA = "login_2fa"


class OTPChannel(str, enum.Enum):
    EMAIL = "email"
    PHONE = "phone"


class OTPCode(Base):
    __tablename__ = "otp_codes"
    __table_args__ = (
        Index("ix_otp_codes_user_purpose", "user_id", "purpose", "is_used"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    purpose = Column(Enum(OTPPurpose, native_enum=False, length=32, values_callable=enum_values), nullable=False)
    channel = Column(
        Enum(OTPChannel, native_enum=False, length=16, values_callable=enum_values),
        default=OTPChannel.EMAIL,
        nullable=False
    )
    reference = Column(String(32), unique=True, index=True, nullable=False)  # Opaque id returned to clients
    code_hash = Column(String, nullable=False)  # bcrypt hash, the plain code is never stored
    is_used = Column(Boolean, default=False, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)
    last_attempt_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<OTPCode user={self.user_id} {self.purpose.value} {'USED' if self.is_used else 'ACTIVE'}>"

    def is_expired(self, now: datetime = None) -> bool:
        """Check if the code is past its absolute expiry"""
        return (now or datetime.utcnow()) >= self.expires_at

    def is_max_attempts_exceeded(self) -> bool:
        """Check if maximum attempts exceeded"""
        return self.attempts >= self.max_attempts

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)
