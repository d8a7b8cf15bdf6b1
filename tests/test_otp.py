from datetime import datetime, timedelta

import pytest

from conftest import OTPRecorder
from diaglab.exceptions import InvalidOrExpiredError
from diaglab.models.audit import AuditEvent
from diaglab.models.otp import OTPCode, OTPPurpose
from diaglab.models.users import User
from diaglab.services import otp as otp_service


def _wrong(code):
    return "000000" if code != "000000" else "111111"


def _issue(db, user, purpose=OTPPurpose.EMAIL_VERIFICATION, recorder=None):
    recorder = recorder or OTPRecorder()
    result = otp_service.generate_and_send(db, user, user.email, purpose, recorder)
    return result, recorder.last_code()


def _codes(db, user):
    db.expire_all()
    return db.query(OTPCode).filter(OTPCode.user_id == user.id).order_by(OTPCode.id).all()


def test_generate_otp_is_numeric_with_requested_length():
    for _ in range(50):
        code = otp_service.generate_otp(6)
        assert len(code) == 6
        assert code.isdigit()


def test_generate_and_send_stores_hashed_code(db, unverified_patient):
    result, code = _issue(db, unverified_patient)

    assert result.success is True
    assert result.reference
    stored = _codes(db, unverified_patient)
    assert len(stored) == 1
    assert stored[0].code_hash != code
    assert stored[0].attempts == 0
    assert stored[0].max_attempts == 3
    assert stored[0].is_used is False


def test_expiry_depends_on_purpose(db, patient):
    before = datetime.utcnow()
    result, _ = _issue(db, patient, OTPPurpose.EMAIL_VERIFICATION)
    assert timedelta(minutes=29) < result.expires_at - before <= timedelta(minutes=30, seconds=5)

    result, _ = _issue(db, patient, OTPPurpose.PASSWORD_RESET)
    assert timedelta(minutes=14) < result.expires_at - before <= timedelta(minutes=15, seconds=5)

    result, _ = _issue(db, patient, OTPPurpose.LOGIN_2FA)
    assert timedelta(minutes=9) < result.expires_at - before <= timedelta(minutes=10, seconds=5)


def test_correct_code_verifies_once(db, unverified_patient):
    _, code = _issue(db, unverified_patient)

    result = otp_service.verify_otp(db, unverified_patient.email, code, OTPPurpose.EMAIL_VERIFICATION)
    assert result.success is True
    assert result.user_id == unverified_patient.id

    with pytest.raises(InvalidOrExpiredError):
        otp_service.verify_otp(db, unverified_patient.email, code, OTPPurpose.EMAIL_VERIFICATION)


def test_email_verification_marks_user_verified(db, unverified_patient):
    _, code = _issue(db, unverified_patient)

    otp_service.verify_otp(db, unverified_patient.email, code, OTPPurpose.EMAIL_VERIFICATION)

    db.expire_all()
    user = db.query(User).filter(User.id == unverified_patient.id).first()
    assert user.is_verified is True
    assert user.is_active is True


def test_wrong_codes_count_down_attempts(db, unverified_patient):
    _, code = _issue(db, unverified_patient)

    remaining = []
    for _ in range(3):
        with pytest.raises(InvalidOrExpiredError) as exc_info:
            otp_service.verify_otp(db, unverified_patient.email, _wrong(code), OTPPurpose.EMAIL_VERIFICATION)
        remaining.append(exc_info.value.attempts_remaining)

    assert remaining == [2, 1, 0]
    assert _codes(db, unverified_patient)[0].attempts == 3


def test_correct_code_fails_after_attempts_exhausted(db, unverified_patient):
    _, code = _issue(db, unverified_patient)
    for _ in range(3):
        with pytest.raises(InvalidOrExpiredError):
            otp_service.verify_otp(db, unverified_patient.email, _wrong(code), OTPPurpose.EMAIL_VERIFICATION)

    with pytest.raises(InvalidOrExpiredError) as exc_info:
        otp_service.verify_otp(db, unverified_patient.email, code, OTPPurpose.EMAIL_VERIFICATION)

    assert exc_info.value.attempts_remaining == 0
    assert _codes(db, unverified_patient)[0].attempts == 3


def test_new_code_invalidates_previous_one(db, patient):
    _, first = _issue(db, patient, OTPPurpose.PASSWORD_RESET)
    _, second = _issue(db, patient, OTPPurpose.PASSWORD_RESET)

    codes = _codes(db, patient)
    assert [c.is_used for c in codes] == [True, False]

    if first != second:
        with pytest.raises(InvalidOrExpiredError):
            otp_service.verify_otp(db, patient.email, first, OTPPurpose.PASSWORD_RESET)
    assert otp_service.verify_otp(db, patient.email, second, OTPPurpose.PASSWORD_RESET).success


def test_codes_do_not_cross_purposes(db, patient):
    _, code = _issue(db, patient, OTPPurpose.PASSWORD_RESET)

    with pytest.raises(InvalidOrExpiredError):
        otp_service.verify_otp(db, patient.email, code, OTPPurpose.LOGIN_2FA)


def test_expired_code_is_rejected(db, unverified_patient):
    _, code = _issue(db, unverified_patient)
    record = _codes(db, unverified_patient)[0]
    record.expires_at = datetime.utcnow() - timedelta(minutes=1)
    db.commit()

    with pytest.raises(InvalidOrExpiredError):
        otp_service.verify_otp(db, unverified_patient.email, code, OTPPurpose.EMAIL_VERIFICATION)


def test_unknown_email_is_rejected(db):
    with pytest.raises(InvalidOrExpiredError) as exc_info:
        otp_service.verify_otp(db, "nobody@example.com", "123456", OTPPurpose.EMAIL_VERIFICATION)
    assert exc_info.value.status_code == 400


def test_delivery_failure_keeps_code_and_reports_failure(db, patient):
    recorder = OTPRecorder()
    recorder.succeed = False

    result, _ = _issue(db, patient, recorder=recorder)

    assert result.success is False
    assert result.error
    assert len(_codes(db, patient)) == 1
    actions = [e.action for e in db.query(AuditEvent).all()]
    assert "otp_generate" in actions
    assert "otp_send_failed" in actions


def test_plain_code_never_reaches_audit_trail(db, unverified_patient):
    _, code = _issue(db, unverified_patient)
    with pytest.raises(InvalidOrExpiredError):
        otp_service.verify_otp(db, unverified_patient.email, _wrong(code), OTPPurpose.EMAIL_VERIFICATION)
    otp_service.verify_otp(db, unverified_patient.email, code, OTPPurpose.EMAIL_VERIFICATION)

    for event in db.query(AuditEvent).all():
        assert code not in [str(value) for value in event.details.values()]


def test_status_reports_latest_code(db, patient):
    assert otp_service.get_otp_status(db, patient.id, OTPPurpose.PASSWORD_RESET)["exists"] is False

    _, code = _issue(db, patient, OTPPurpose.PASSWORD_RESET)
    with pytest.raises(InvalidOrExpiredError):
        otp_service.verify_otp(db, patient.email, _wrong(code), OTPPurpose.PASSWORD_RESET)

    status = otp_service.get_otp_status(db, patient.id, OTPPurpose.PASSWORD_RESET)
    assert status["exists"] is True
    assert status["is_used"] is False
    assert status["is_expired"] is False
    assert status["attempts_remaining"] == 2


def test_cleanup_removes_expired_and_old_used_codes(db, patient):
    _issue(db, patient, OTPPurpose.PASSWORD_RESET)
    _issue(db, patient, OTPPurpose.LOGIN_2FA)
    _issue(db, patient, OTPPurpose.EMAIL_VERIFICATION)
    expired, old_used, live = _codes(db, patient)
    expired.expires_at = datetime.utcnow() - timedelta(minutes=1)
    old_used.is_used = True
    old_used.created_at = datetime.utcnow() - timedelta(days=8)
    db.commit()

    assert otp_service.cleanup_expired_codes(db) == 1
    assert otp_service.cleanup_used_codes(db, days_old=7) == 1
    assert [c.id for c in _codes(db, patient)] == [live.id]


def test_email_verification_never_reactivates_account(db, unverified_patient):
    _, code = _issue(db, unverified_patient)
    unverified_patient.is_active = False
    db.commit()

    with pytest.raises(InvalidOrExpiredError):
        otp_service.verify_otp(db, unverified_patient.email, code, OTPPurpose.EMAIL_VERIFICATION)

    db.expire_all()
    user = db.query(User).filter(User.id == unverified_patient.id).first()
    assert user.is_active is False
    assert user.is_verified is False
    assert _codes(db, unverified_patient)[0].is_used is False


def test_email_verification_is_refused_for_verified_account(db, patient):
    _, code = _issue(db, patient)

    with pytest.raises(InvalidOrExpiredError):
        otp_service.verify_otp(db, patient.email, code, OTPPurpose.EMAIL_VERIFICATION)

    reasons = [e.details.get("reason") for e in db.query(AuditEvent).filter(AuditEvent.action == "otp_verify_failed")]
    assert reasons == ["account_not_eligible"]


def test_eligibility_by_purpose(db, patient, unverified_patient):
    assert otp_service.is_eligible(unverified_patient, OTPPurpose.EMAIL_VERIFICATION) is True
    assert otp_service.is_eligible(patient, OTPPurpose.EMAIL_VERIFICATION) is False
    assert otp_service.is_eligible(patient, OTPPurpose.PASSWORD_RESET) is True
