import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, List

from fastapi import Request
from sqlalchemy.orm import Session

from diaglab.database import SessionLocal
from diaglab.models.audit import AuditEvent, AuditSeverity, AuditOutcome
from diaglab.utils.helpers import get_client_ip, get_user_agent
from diaglab.utils.logger import get_logger

logger = get_logger("audit")

# Keys whose values must never reach the audit trail
REDACTED_KEYS = {"code", "otp", "otp_code", "password", "new_password", "token"}


@dataclass
class AuditFilter:
    actor_id: Optional[int] = None
    action: Optional[str] = None
    severity: Optional[AuditSeverity] = None
    ip_address: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = 50
    offset: int = 0


def _redact(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    cleaned = {}
    for key, value in (details or {}).items():
        if value is None:
            continue
        cleaned[key] = "[REDACTED]" if key in REDACTED_KEYS else value
    # Round-trip through JSON so enums and datetimes are stored as plain values
    return json.loads(json.dumps(cleaned, default=str))


def _request_details(request: Request) -> Dict[str, Any]:
    return {"endpoint": request.url.path, "method": request.method}


class AuditLogger:
    """
    Append-only recorder for security-relevant events

    Every write happens in a session of its own, so recording an event never
    commits or rolls back the caller's unit of work. Failures are logged and
    swallowed: an audit problem must not change the outcome of the operation
    being audited.
    """

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def log(
        self,
        action: str,
        actor_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: AuditSeverity = AuditSeverity.MEDIUM,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        db = None
        try:
            event = AuditEvent(
                actor_id=actor_id,
                action=action,
                details=_redact(details),
                severity=severity,
                outcome=outcome,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=datetime.utcnow(),
            )
            logger.info(
                f"[AUDIT] action={action} actor={actor_id or 'anonymous'} severity={severity.value} "
                f"outcome={outcome.value} resource={resource_type}:{event.resource_id} ip={ip_address or 'unknown'}"
            )
            db = self.session_factory()
            db.add(event)
            db.commit()
            db.refresh(event)
            return event
        except Exception as e:
            logger.error(f"Failed to record audit event '{action}': {str(e)}", exc_info=True)
            if db is not None:
                db.rollback()
            return None
        finally:
            if db is not None:
                db.close()

    def log_auth(
        self,
        kind: str,
        request: Request,
        user_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        """Record login_attempt / login_success / login_failed / logout / register events"""
        failed = "failed" in kind
        return self.log(
            action=kind,
            actor_id=user_id,
            details={**(details or {}), **_request_details(request)},
            severity=AuditSeverity.HIGH if failed else AuditSeverity.MEDIUM,
            outcome=AuditOutcome.FAILURE if failed else AuditOutcome.SUCCESS,
            resource_type="authentication",
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
        )

    def log_data_access(
        self,
        kind: str,
        request: Request,
        actor_id: int,
        resource_type: str,
        resource_id: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        """Record view / create / update / delete / export of protected data"""
        return self.log(
            action=f"data_{kind}",
            actor_id=actor_id,
            details={**(details or {}), **_request_details(request)},
            severity=AuditSeverity.HIGH if kind == "delete" else AuditSeverity.MEDIUM,
            resource_type=resource_type,
            resource_id=resource_id,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
        )

    def log_security(
        self,
        kind: str,
        request: Request,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        """Record rate_limit_exceeded / invalid_token / unauthorized_access / suspicious_activity"""
        return self.log(
            action=f"security_{kind}",
            details={**(details or {}), **_request_details(request)},
            severity=AuditSeverity.HIGH,
            outcome=AuditOutcome.FAILURE,
            resource_type="security",
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
        )

    def log_otp(
        self,
        kind: str,
        user_id: Optional[int] = None,
        channel: str = "email",
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        """Record generate / send / send_failed / verify_success / verify_failed events"""
        failed = "failed" in kind
        return self.log(
            action=f"otp_{kind}",
            actor_id=user_id,
            details={**(details or {}), "channel": channel},
            severity=AuditSeverity.MEDIUM if failed else AuditSeverity.LOW,
            outcome=AuditOutcome.FAILURE if failed else AuditOutcome.SUCCESS,
            resource_type="otp_verification",
        )

    def query_events(self, db: Session, audit_filter: AuditFilter) -> List[AuditEvent]:
        """Return matching events, newest first"""
        query = db.query(AuditEvent)
        if audit_filter.actor_id is not None:
            query = query.filter(AuditEvent.actor_id == audit_filter.actor_id)
        if audit_filter.action:
            query = query.filter(AuditEvent.action == audit_filter.action)
        if audit_filter.severity:
            query = query.filter(AuditEvent.severity == audit_filter.severity)
        if audit_filter.ip_address:
            query = query.filter(AuditEvent.ip_address == audit_filter.ip_address)
        if audit_filter.start_date:
            query = query.filter(AuditEvent.created_at >= audit_filter.start_date)
        if audit_filter.end_date:
            query = query.filter(AuditEvent.created_at <= audit_filter.end_date)
        return (
            query.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
            .offset(audit_filter.offset)
            .limit(audit_filter.limit)
            .all()
        )


audit_logger = AuditLogger()
