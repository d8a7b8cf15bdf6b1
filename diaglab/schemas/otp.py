from datetime import datetime
from typing import Optional

from diaglab.models.otp import OTPPurpose
from diaglab.schemas.message import CamelModel


class OTPRequest(CamelModel):
    # Format checks happen in the route so that failures can be audited
    email: Optional[str] = None
    purpose: OTPPurpose = OTPPurpose.EMAIL_VERIFICATION


class OTPVerifyRequest(CamelModel):
    email: Optional[str] = None
    code: Optional[str] = None
    purpose: OTPPurpose = OTPPurpose.EMAIL_VERIFICATION


class OTPSendResponse(CamelModel):
    success: bool
    message: str
    expires_at: datetime
    reference: str


class OTPVerifyResponse(CamelModel):
    success: bool
    message: str
    user_id: int


class OTPStatus(CamelModel):
    exists: bool
    is_used: bool
    is_expired: bool
    attempts_remaining: int
    expires_at: Optional[str] = None


class OTPCleanupResponse(CamelModel):
    message: str
    expired_removed: int
    used_removed: int
    counters_removed: int
