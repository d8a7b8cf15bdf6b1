import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum

from diaglab.database import Base


class UserRole(str, enum.Enum):
    PATIENT = "patient"
    CENTER_ADMIN = "center_admin"
    PLATFORM_ADMIN = "platform_admin"


def enum_values(enum_cls):
    """Persist enum values rather than member names"""
    return [member.value for member in enum_cls]


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    first_name = Column(String(50), nullable=True)
    last_name = Column(String(50), nullable=True)
    phone = Column(String(20), nullable=True)
    role = Column(
        Enum(UserRole, native_enum=False, length=32, values_callable=enum_values),
        default=UserRole.PATIENT,
        nullable=False
    )
    is_active = Column(Boolean, default=True, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part) or "there"

    def __repr__(self):
        return f"<User {self.email} {self.role.value if self.role else None}>"
