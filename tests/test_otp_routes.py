from datetime import datetime, timedelta

from fastapi.testclient import TestClient

from conftest import auth_headers
from diaglab.models.audit import AuditEvent
from diaglab.models.otp import OTPCode
from diaglab.models.users import User


def _request(client, email, purpose="email_verification", **kwargs):
    return client.post("/api/auth/otp-secure", json={"email": email, "purpose": purpose}, **kwargs)


def _verify(client, email, code, purpose="email_verification", **kwargs):
    return client.patch("/api/auth/otp-secure", json={"email": email, "code": code, "purpose": purpose}, **kwargs)


def _wrong(code):
    return "000000" if code != "000000" else "111111"


def test_request_otp(client: TestClient, unverified_patient: User, otp_recorder):
    response = _request(client, unverified_patient.email)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["reference"]
    assert "expiresAt" in data
    assert "code" not in data
    assert otp_recorder.sent[-1]["destination"] == unverified_patient.email
    assert otp_recorder.sent[-1]["expiry_minutes"] == 30


def test_request_otp_for_unknown_email_looks_the_same(client: TestClient, otp_recorder):
    response = _request(client, "nobody@example.com")

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["message"] == "If the email exists, an OTP will be sent"
    assert otp_recorder.sent == []


def test_request_otp_rejects_malformed_email(client: TestClient, db):
    response = _request(client, "not-an-email")

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
    assert db.query(AuditEvent).filter(AuditEvent.action == "security_invalid_otp_request").count() == 1


def test_request_otp_rejects_unknown_purpose(client: TestClient, patient: User):
    assert _request(client, patient.email, purpose="phone_login").status_code == 400


def test_delivery_failure_is_a_generic_500(client: TestClient, unverified_patient: User, otp_recorder):
    otp_recorder.succeed = False

    response = _request(client, unverified_patient.email)

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error", "code": "INTERNAL_ERROR"}


def test_verify_otp(client: TestClient, unverified_patient: User, otp_recorder, db):
    _request(client, unverified_patient.email)
    code = otp_recorder.last_code()

    response = _verify(client, unverified_patient.email, code)

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["userId"] == unverified_patient.id
    db.expire_all()
    assert db.query(User).filter(User.id == unverified_patient.id).first().is_verified is True


def test_code_is_single_use(client: TestClient, patient: User, otp_recorder):
    _request(client, patient.email, "login_2fa")
    code = otp_recorder.last_code()

    assert _verify(client, patient.email, code, "login_2fa").status_code == 200
    response = _verify(client, patient.email, code, "login_2fa")
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_OR_EXPIRED"


def test_three_wrong_codes_lock_the_code(client: TestClient, unverified_patient: User, otp_recorder):
    _request(client, unverified_patient.email)
    code = otp_recorder.last_code()

    remaining = []
    for _ in range(3):
        response = _verify(client, unverified_patient.email, _wrong(code))
        assert response.status_code == 400
        remaining.append(response.json()["attemptsRemaining"])
    assert remaining == [2, 1, 0]

    # Correct code after the cap is still rejected
    response = _verify(client, unverified_patient.email, code)
    assert response.status_code == 400
    assert response.json()["attemptsRemaining"] == 0


def test_verify_rejects_malformed_code(client: TestClient, patient: User, db):
    for bad in ("12345", "1234567", "12a456", ""):
        response = _verify(client, patient.email, bad)
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    # Format failures never touch a stored code
    assert db.query(OTPCode).count() == 0


def test_rerequest_invalidates_previous_code(client: TestClient, patient: User, otp_recorder):
    _request(client, patient.email, "password_reset")
    first = otp_recorder.last_code()
    _request(client, patient.email, "password_reset")
    second = otp_recorder.last_code()

    if first != second:
        assert _verify(client, patient.email, first, "password_reset").status_code == 400
    assert _verify(client, patient.email, second, "password_reset").status_code == 200


def test_email_verification_code_expires_after_thirty_minutes(
    client: TestClient, unverified_patient: User, otp_recorder, db
):
    _request(client, unverified_patient.email)
    code = otp_recorder.last_code()

    record = db.query(OTPCode).filter(OTPCode.user_id == unverified_patient.id).first()
    assert timedelta(minutes=29) < record.expires_at - record.created_at <= timedelta(minutes=30)
    # Age the code to 31 minutes
    record.created_at = datetime.utcnow() - timedelta(minutes=31)
    record.expires_at = record.created_at + timedelta(minutes=30)
    db.commit()

    response = _verify(client, unverified_patient.email, code)

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_OR_EXPIRED"


def test_otp_request_rate_limit(client: TestClient, patient: User):
    for _ in range(5):
        assert _request(client, patient.email).status_code == 200

    response = _request(client, patient.email)
    assert response.status_code == 429
    assert response.json()["retryAfter"] > 0


def test_otp_verify_rate_limit(client: TestClient, patient: User):
    for _ in range(5):
        _verify(client, patient.email, "123456")

    response = _verify(client, patient.email, "123456")
    assert response.status_code == 429
    assert response.json()["retryAfter"] > 0


def test_verification_audit_trail(client: TestClient, unverified_patient: User, otp_recorder, db):
    _request(client, unverified_patient.email)
    code = otp_recorder.last_code()
    _verify(client, unverified_patient.email, _wrong(code))
    _verify(client, unverified_patient.email, code)

    actions = [e.action for e in db.query(AuditEvent).order_by(AuditEvent.id).all()]
    assert actions.index("otp_generate") < actions.index("otp_send")
    assert "otp_verify_failed" in actions
    assert actions[-1] == "otp_verify_success"


def test_deactivated_account_cannot_reactivate_itself(
    client: TestClient, unverified_patient: User, platform_admin: User, otp_recorder, db
):
    # A code issued before the deactivation
    _request(client, unverified_patient.email)
    code = otp_recorder.last_code()

    response = client.patch(
        f"/api/admin/users/{unverified_patient.id}",
        json={"isActive": False},
        headers=auth_headers(platform_admin),
    )
    assert response.status_code == 200

    # A fresh request looks like any other but sends nothing
    response = _request(client, unverified_patient.email)
    assert response.status_code == 200
    assert response.json()["message"] == "If the email exists, an OTP will be sent"
    assert len(otp_recorder.sent) == 1

    response = _verify(client, unverified_patient.email, code)
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_OR_EXPIRED"

    db.expire_all()
    user = db.query(User).filter(User.id == unverified_patient.id).first()
    assert user.is_active is False
    assert user.is_verified is False


def test_verified_account_gets_uniform_response_without_code(client: TestClient, patient: User, otp_recorder):
    response = _request(client, patient.email)

    assert response.status_code == 200
    assert response.json()["message"] == "If the email exists, an OTP will be sent"
    assert otp_recorder.sent == []
