from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from diaglab.models.audit import AuditSeverity, AuditOutcome
from diaglab.schemas.message import CamelModel


class RateLimitStatus(CamelModel):
    action: str
    identity: str
    limit: int
    remaining: int
    reset_at: str
    blocked: bool


class RateLimitBlockRequest(CamelModel):
    seconds: int = Field(default=15 * 60, gt=0, le=7 * 24 * 60 * 60)


class RateLimitBlockResponse(CamelModel):
    success: bool = True
    blocked_until: datetime


class AuditEventOut(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    actor_id: Optional[int] = None
    action: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict[str, Any]
    severity: AuditSeverity
    outcome: AuditOutcome
    ip_address: Optional[str] = None
    created_at: datetime


class AuditEventList(CamelModel):
    events: List[AuditEventOut]
    count: int
