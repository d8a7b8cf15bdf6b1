import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Enum, JSON

from diaglab.database import Base
from diaglab.models.users import enum_values


class AuditSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AuditOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class AuditEvent(Base):
    """Append-only record of a security-relevant action"""
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(Integer, nullable=True, index=True)  # Absent for anonymous failures
    action = Column(String(64), nullable=False, index=True)
    resource_type = Column(String(64), nullable=True)
    resource_id = Column(String(64), nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    severity = Column(Enum(AuditSeverity, native_enum=False, length=16, values_callable=enum_values), nullable=False)
    outcome = Column(Enum(AuditOutcome, native_enum=False, length=16, values_callable=enum_values), nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditEvent {self.action} {self.severity.value}>"
