import uuid
from datetime import datetime, timedelta

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from diaglab.database import get_db
from diaglab.exceptions import ValidationError, EmailError
from diaglab.middleware.rate_limit import rate_limit
from diaglab.schemas.otp import OTPRequest, OTPVerifyRequest, OTPSendResponse, OTPVerifyResponse
from diaglab.services import otp as otp_service
from diaglab.services.audit import audit_logger
from diaglab.services.auth import get_user_by_email
from diaglab.utils.email import get_otp_sender
from diaglab.utils.helpers import is_valid_email, is_valid_otp_code, normalize_email, mask_email
from diaglab.utils.logger import get_logger

logger = get_logger("otp_routes")

router = APIRouter(prefix="/api/auth", tags=["otp"])

UNIFORM_SEND_MESSAGE = "If the email exists, an OTP will be sent"


def reject_invalid(request: Request, reason: str, message: str):
    audit_logger.log_security("invalid_otp_request", request, {"reason": reason})
    raise ValidationError(message)


def issue_code(db: Session, email: str, purpose, sender) -> OTPSendResponse:
    """
    Issue a code to the account behind an email, if there is one

    Unknown addresses, and accounts the purpose does not apply to, get a
    response shaped exactly like a real one and nothing is sent.

    Raises:
        EmailError: If the code could not be delivered to an existing account
    """
    user = get_user_by_email(db, email)
    if not user or not otp_service.is_eligible(user, purpose):
        logger.info(f"OTP requested for unknown or ineligible account {mask_email(email)}, purpose: {purpose.value}")
        expires_at = datetime.utcnow() + timedelta(minutes=otp_service.get_expiry_minutes(purpose))
        return OTPSendResponse(
            success=True,
            message=UNIFORM_SEND_MESSAGE,
            expires_at=expires_at,
            reference=uuid.uuid4().hex,
        )

    result = otp_service.generate_and_send(db, user, user.email, purpose, sender)
    if not result.success:
        raise EmailError(result.error or "Failed to send OTP", details={"user_id": user.id})

    return OTPSendResponse(
        success=True,
        message=UNIFORM_SEND_MESSAGE,
        expires_at=result.expires_at,
        reference=result.reference,
    )


@router.post(
    "/otp-secure",
    response_model=OTPSendResponse,
    dependencies=[Depends(rate_limit("otp_request"))],
)
def request_otp(
    payload: OTPRequest,
    request: Request,
    db: Session = Depends(get_db),
    sender=Depends(get_otp_sender),
):
    """
    Request a one-time code

    Any earlier unused code for the same purpose stops working.
    """
    if not is_valid_email(payload.email):
        reject_invalid(request, "invalid_email_format", "A valid email address is required")

    email = normalize_email(payload.email)
    logger.info(f"OTP request for {mask_email(email)}, purpose: {payload.purpose.value}")
    return issue_code(db, email, payload.purpose, sender)


@router.patch(
    "/otp-secure",
    response_model=OTPVerifyResponse,
    dependencies=[Depends(rate_limit("otp_verify"))],
)
def verify_otp(
    payload: OTPVerifyRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """
    Verify a one-time code

    Each code may be checked at most OTP_MAX_ATTEMPTS times and succeeds at
    most once.
    """
    if not is_valid_email(payload.email):
        reject_invalid(request, "invalid_email_format", "A valid email address is required")
    if not is_valid_otp_code(payload.code):
        reject_invalid(request, "invalid_code_format", "Verification code must be 6 digits")

    result = otp_service.verify_otp(db, normalize_email(payload.email), payload.code, payload.purpose)
    background_tasks.add_task(otp_service.run_cleanup)
    return OTPVerifyResponse(
        success=True,
        message="Verification successful",
        user_id=result.user_id,
    )
