from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from diaglab.config import settings
from diaglab.database import get_db
from diaglab.exceptions import NotFoundError
from diaglab.middleware.auth import Principal, with_auth, require_platform_admin
from diaglab.models.audit import AuditSeverity
from diaglab.models.otp import OTPPurpose
from diaglab.schemas.admin import (
    RateLimitStatus,
    RateLimitBlockRequest,
    RateLimitBlockResponse,
    AuditEventOut,
    AuditEventList,
)
from diaglab.schemas.message import SuccessMessage
from diaglab.schemas.otp import OTPStatus, OTPCleanupResponse
from diaglab.schemas.users import UserOut, AdminUserUpdate, UserListResponse, UserUpdateResponse, Pagination
from diaglab.services import auth as auth_service
from diaglab.services import otp as otp_service
from diaglab.services import rate_limiter
from diaglab.services.audit import audit_logger, AuditFilter
from diaglab.utils.logger import get_logger

logger = get_logger("admin_routes")

router = APIRouter(prefix="/api/admin", tags=["admin"])

platform_admin = with_auth(require_platform_admin())


def _known_action(action: str) -> str:
    if action not in rate_limiter.get_policies():
        raise NotFoundError(f"Unknown rate limit action: {action}")
    return action


@router.get("/users", response_model=UserListResponse)
def list_users(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=auth_service.MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
    principal: Principal = Depends(platform_admin),
):
    """
    List user accounts, newest first
    """
    users, total = auth_service.list_users(db, page, limit)
    audit_logger.log_data_access("view", request, principal.user_id, "users", details={
        "page": page,
        "limit": limit,
        "returned": len(users),
    })
    return UserListResponse(
        users=[UserOut.model_validate(user) for user in users],
        pagination=Pagination(page=page, limit=limit, total=total, pages=(total + limit - 1) // limit),
    )


@router.patch("/users/{user_id}", response_model=UserUpdateResponse)
def update_user(
    user_id: int,
    changes: AdminUserUpdate,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(platform_admin),
):
    """
    Change a user's role or status flags

    Takes effect for the user on their next login.
    """
    user, applied = auth_service.admin_update_user(db, user_id, changes)
    audit_logger.log_data_access("update", request, principal.user_id, "user", user.id, {
        "changed_fields": sorted(applied),
        "changes": applied,
    })
    return UserUpdateResponse(message="User updated successfully", user=UserOut.model_validate(user))


@router.get("/rate-limits/{action}/{identity}", response_model=RateLimitStatus)
def get_rate_limit_status(
    action: str,
    identity: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(platform_admin),
):
    """Current counter state for an identity without counting a request"""
    status = rate_limiter.get_status(db, _known_action(action), identity)
    return RateLimitStatus(action=action, identity=identity, **status)


@router.delete("/rate-limits/{action}/{identity}", response_model=SuccessMessage)
def reset_rate_limit(
    action: str,
    identity: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(platform_admin),
):
    removed = rate_limiter.reset(db, _known_action(action), identity)
    audit_logger.log_data_access("delete", request, principal.user_id, "rate_limit", f"{action}:{identity}")
    message = "Rate limit reset" if removed else "No rate limit state for this identity"
    return SuccessMessage(message=message)


@router.post("/rate-limits/{action}/{identity}/block", response_model=RateLimitBlockResponse)
def block_identity(
    action: str,
    identity: str,
    request: Request,
    body: Optional[RateLimitBlockRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(platform_admin),
):
    """
    Block an identity for an action until the given number of seconds pass
    """
    seconds = (body or RateLimitBlockRequest()).seconds
    blocked_until = rate_limiter.block(db, _known_action(action), identity, seconds)
    audit_logger.log_security("manual_block", request, {
        "limit_type": action,
        "identity": identity,
        "seconds": seconds,
        "admin_id": principal.user_id,
    })
    return RateLimitBlockResponse(blocked_until=blocked_until)


@router.get("/audit-events", response_model=AuditEventList)
def list_audit_events(
    request: Request,
    actor_id: Optional[int] = Query(None, alias="actorId"),
    action: Optional[str] = None,
    severity: Optional[AuditSeverity] = None,
    ip_address: Optional[str] = Query(None, alias="ipAddress"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    principal: Principal = Depends(platform_admin),
):
    """
    Query the audit trail, newest first
    """
    audit_filter = AuditFilter(
        actor_id=actor_id,
        action=action,
        severity=severity,
        ip_address=ip_address,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    events = audit_logger.query_events(db, audit_filter)
    audit_logger.log_data_access("view", request, principal.user_id, "audit_events", details={
        "returned": len(events),
    })
    return AuditEventList(events=[AuditEventOut.model_validate(event) for event in events], count=len(events))


@router.get("/otp-status/{user_id}/{purpose}", response_model=OTPStatus)
def get_otp_status(
    user_id: int,
    purpose: OTPPurpose,
    db: Session = Depends(get_db),
    principal: Principal = Depends(platform_admin),
):
    """
    Status of the most recent code for a user and purpose

    Reports whether a code exists, if it is used or expired, and how many
    attempts remain. Never exposes the code.
    """
    return OTPStatus(**otp_service.get_otp_status(db, user_id, purpose))


@router.post("/otp-cleanup", response_model=OTPCleanupResponse)
def cleanup_otps(
    db: Session = Depends(get_db),
    principal: Principal = Depends(platform_admin),
):
    """
    Remove expired codes, old used codes and elapsed rate limit counters

    Can also be called by a scheduled job running as a platform admin.
    """
    logger.info(f"OTP cleanup started by admin {principal.user_id}")
    expired_count = otp_service.cleanup_expired_codes(db)
    used_count = otp_service.cleanup_used_codes(db, settings.OTP_USED_RETENTION_DAYS)
    counter_count = rate_limiter.cleanup_expired_counters(db)

    return OTPCleanupResponse(
        message="OTP cleanup completed",
        expired_removed=expired_count,
        used_removed=used_count,
        counters_removed=counter_count,
    )
