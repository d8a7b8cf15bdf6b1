from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session

from diaglab.config import settings
from diaglab.database import get_db
from diaglab.exceptions import AuthenticationError, ValidationError
from diaglab.middleware.auth import Principal, with_auth, require_authenticated
from diaglab.middleware.rate_limit import rate_limit
from diaglab.models.otp import OTPPurpose
from diaglab.routes.otp import issue_code, reject_invalid
from diaglab.schemas.auth import (
    LoginRequest,
    LoginResponse,
    SecurityInfo,
    RegisterRequest,
    RegisterResponse,
    ForgotPasswordRequest,
    ForgotPasswordVerifyRequest,
)
from diaglab.schemas.message import SuccessMessage
from diaglab.schemas.otp import OTPSendResponse
from diaglab.schemas.users import UserOut
from diaglab.services import auth as auth_service
from diaglab.services import otp as otp_service
from diaglab.services.audit import audit_logger
from diaglab.utils import security
from diaglab.utils.email import get_otp_sender
from diaglab.utils.helpers import is_valid_email, is_valid_otp_code, normalize_email, mask_email
from diaglab.utils.logger import get_logger

logger = get_logger("auth_routes")

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.AUTH_COOKIE_NAME,
        value=token,
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        httponly=True,
        secure=True,
        samesite="strict",
        path="/",
    )


@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("register"))],
)
def register(
    payload: RegisterRequest,
    request: Request,
    db: Session = Depends(get_db),
    sender=Depends(get_otp_sender),
):
    """
    Register a patient account and send the email-verification code
    """
    user = auth_service.create_user(db, payload)
    audit_logger.log_auth("register", request, user.id, {"email": mask_email(user.email)})

    result = otp_service.generate_and_send(db, user, user.email, OTPPurpose.EMAIL_VERIFICATION, sender)
    if not result.success:
        # The account stands; the user can ask for a new code
        logger.error(f"Verification code delivery failed for new user {user.id}")

    return RegisterResponse(
        message="Registration successful. Please verify your email.",
        user=UserOut.model_validate(user),
    )


@router.post(
    "/login-secure",
    response_model=LoginResponse,
    dependencies=[Depends(rate_limit("login"))],
)
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    """
    Exchange email and password for a bearer token

    In production the token is also set as an httpOnly cookie.
    """
    audit_logger.log_auth("login_attempt", request, details={
        "email": mask_email(payload.email) if payload.email else None,
    })

    if not payload.email or not payload.password:
        audit_logger.log_auth("login_failed", request, details={"reason": "missing_credentials"})
        raise ValidationError("Email and password are required")
    if not is_valid_email(payload.email):
        audit_logger.log_auth("login_failed", request, details={"reason": "invalid_email_format"})
        raise ValidationError("A valid email address is required")

    email = normalize_email(payload.email)
    user = auth_service.authenticate_user(db, email, payload.password)
    if not user:
        audit_logger.log_auth("login_failed", request, details={
            "reason": "invalid_credentials",
            "email": mask_email(email),
        })
        raise AuthenticationError("Invalid email or password")

    if not user.is_active:
        audit_logger.log_auth("login_failed", request, user.id, {"reason": "account_inactive"})
        raise AuthenticationError("Account deactivated")

    auth_service.update_last_login(db, user)

    expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    token = security.create_user_token(user, expires_delta)
    if settings.is_production:
        _set_auth_cookie(response, token)

    audit_logger.log_auth("login_success", request, user.id, {"role": user.role.value})
    logger.info(f"Login successful for user {user.id}")

    return LoginResponse(
        message="Login successful",
        token=token,
        user=UserOut.model_validate(user),
        security=SecurityInfo(token_expires_at=datetime.utcnow() + expires_delta),
    )


@router.post("/logout", response_model=SuccessMessage)
def logout(
    request: Request,
    response: Response,
    principal: Principal = Depends(with_auth(require_authenticated(require_active=False, require_verified=False))),
):
    """Clear the session cookie; bearer tokens simply expire"""
    response.delete_cookie(settings.AUTH_COOKIE_NAME, path="/")
    audit_logger.log_auth("logout", request, principal.user_id)
    return SuccessMessage(message="Logged out successfully")


@router.post(
    "/forgot-password/request",
    response_model=OTPSendResponse,
    dependencies=[Depends(rate_limit("password_reset"))],
)
def forgot_password_request(
    payload: ForgotPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    sender=Depends(get_otp_sender),
):
    """Send a password-reset code; the response never reveals whether the account exists"""
    if not is_valid_email(payload.email):
        reject_invalid(request, "invalid_email_format", "A valid email address is required")

    return issue_code(db, normalize_email(payload.email), OTPPurpose.PASSWORD_RESET, sender)


@router.post(
    "/forgot-password/verify",
    response_model=SuccessMessage,
    dependencies=[Depends(rate_limit("otp_verify"))],
)
def forgot_password_verify(
    payload: ForgotPasswordVerifyRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Set a new password using a password-reset code
    """
    if not is_valid_email(payload.email):
        reject_invalid(request, "invalid_email_format", "A valid email address is required")
    if not is_valid_otp_code(payload.code):
        reject_invalid(request, "invalid_code_format", "Verification code must be 6 digits")

    result = otp_service.verify_otp(db, normalize_email(payload.email), payload.code, OTPPurpose.PASSWORD_RESET)
    auth_service.update_password(db, result.user_id, payload.new_password)
    audit_logger.log_auth("password_reset", request, result.user_id)

    return SuccessMessage(message="Password has been reset successfully")
