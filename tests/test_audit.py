from datetime import datetime, timedelta

from diaglab.models.audit import AuditEvent, AuditSeverity, AuditOutcome
from diaglab.services.audit import AuditLogger, AuditFilter, audit_logger


def _broken_session_factory():
    raise RuntimeError("audit store unavailable")


def test_log_persists_event(db):
    event = audit_logger.log(
        action="data_view",
        actor_id=5,
        details={"page": 1},
        resource_type="users",
        resource_id=42,
        ip_address="10.0.0.1",
    )

    assert event is not None
    stored = db.query(AuditEvent).filter(AuditEvent.id == event.id).first()
    assert stored.action == "data_view"
    assert stored.actor_id == 5
    assert stored.resource_id == "42"
    assert stored.details == {"page": 1}
    assert stored.severity == AuditSeverity.MEDIUM
    assert stored.outcome == AuditOutcome.SUCCESS


def test_sensitive_detail_keys_are_redacted(db):
    audit_logger.log("otp_verify_failed", details={"code": "123456", "password": "secret", "reason": "x"})

    stored = db.query(AuditEvent).first()
    assert stored.details == {"code": "[REDACTED]", "password": "[REDACTED]", "reason": "x"}


def test_failures_are_swallowed():
    failing = AuditLogger(session_factory=_broken_session_factory)

    assert failing.log("login_attempt") is None


def test_otp_events_are_prefixed_and_classified(db):
    audit_logger.log_otp("send", 3, "email", {"purpose": "password_reset"})
    audit_logger.log_otp("verify_failed", 3, "email", {"purpose": "password_reset"})

    events = {e.action: e for e in db.query(AuditEvent).all()}
    assert events["otp_send"].severity == AuditSeverity.LOW
    assert events["otp_send"].outcome == AuditOutcome.SUCCESS
    assert events["otp_verify_failed"].severity == AuditSeverity.MEDIUM
    assert events["otp_verify_failed"].outcome == AuditOutcome.FAILURE
    assert events["otp_send"].details["channel"] == "email"


def test_query_filters_and_orders_newest_first(db):
    audit_logger.log("login_success", actor_id=1, severity=AuditSeverity.MEDIUM)
    audit_logger.log("login_failed", actor_id=1, severity=AuditSeverity.HIGH, outcome=AuditOutcome.FAILURE)
    audit_logger.log("login_success", actor_id=2, severity=AuditSeverity.MEDIUM)

    events = audit_logger.query_events(db, AuditFilter(actor_id=1))
    assert [e.action for e in events] == ["login_failed", "login_success"]

    events = audit_logger.query_events(db, AuditFilter(severity=AuditSeverity.HIGH))
    assert [e.actor_id for e in events] == [1]

    events = audit_logger.query_events(db, AuditFilter(action="login_success", limit=1))
    assert len(events) == 1
    assert events[0].actor_id == 2

    future = datetime.utcnow() + timedelta(minutes=5)
    assert audit_logger.query_events(db, AuditFilter(start_date=future)) == []
