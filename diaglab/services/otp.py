import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from diaglab.config import settings
from diaglab.database import SessionLocal
from diaglab.models.otp import OTPCode, OTPPurpose, OTPChannel
from diaglab.models.users import User
from diaglab.exceptions import InvalidOrExpiredError, RateLimitError, handle_database_error
from diaglab.services.audit import audit_logger
from diaglab.services import rate_limiter
from diaglab.utils import security
from diaglab.utils.helpers import mask_email
from diaglab.utils.logger import get_logger

logger = get_logger("otp")

# sender(destination, name, code, purpose, expiry_minutes) -> bool
OTPSender = Callable[..., bool]


@dataclass
class OTPSendResult:
    success: bool
    reference: str
    expires_at: datetime
    error: Optional[str] = None


@dataclass
class OTPVerifyResult:
    success: bool
    user_id: int


def get_expiry_minutes(purpose: OTPPurpose) -> int:
    return {
        OTPPurpose.EMAIL_VERIFICATION: settings.OTP_EXPIRY_EMAIL_VERIFICATION_MINUTES,
        OTPPurpose.PASSWORD_RESET: settings.OTP_EXPIRY_PASSWORD_RESET_MINUTES,
        OTPPurpose.LOGIN_2FA: settings.OTP_EXPIRY_LOGIN_2FA_MINUTES,
    }[purpose]


def generate_otp(length: int = 6) -> str:
    """
    Generate a random numeric code

    Args:
        length: Number of digits

    Returns:
        str: Uniformly distributed digits, leading zeros kept
    """
    return ''.join(secrets.choice(string.digits) for _ in range(length))


def is_eligible(user: User, purpose: OTPPurpose) -> bool:
    """Email verification only applies to active accounts that are not verified yet"""
    if purpose == OTPPurpose.EMAIL_VERIFICATION:
        return bool(user.is_active) and not user.is_verified
    return True


def _check_resend_cooldown(db: Session, user_id: int, purpose: OTPPurpose) -> None:
    cooldown = settings.OTP_RESEND_COOLDOWN_SECONDS
    if cooldown <= 0:
        return
    since = datetime.utcnow() - timedelta(seconds=cooldown)
    recent = db.query(OTPCode).filter(
        OTPCode.user_id == user_id,
        OTPCode.purpose == purpose,
        OTPCode.created_at > since
    ).order_by(OTPCode.created_at.desc()).first()
    if recent:
        retry_after = recent.created_at + timedelta(seconds=cooldown) - datetime.utcnow()
        raise RateLimitError(
            "OTP requested too recently. Please wait before requesting another.",
            retry_after_ms=int(retry_after.total_seconds() * 1000)
        )


def invalidate_existing_codes(db: Session, user_id: int, purpose: OTPPurpose) -> int:
    """Retire every unused code for (user, purpose) so codes never stack"""
    return db.query(OTPCode).filter(
        OTPCode.user_id == user_id,
        OTPCode.purpose == purpose,
        OTPCode.is_used.is_(False)
    ).update({OTPCode.is_used: True}, synchronize_session=False)


def generate_and_send(
    db: Session,
    user: User,
    destination: str,
    purpose: OTPPurpose,
    sender: OTPSender,
    channel: OTPChannel = OTPChannel.EMAIL,
) -> OTPSendResult:
    """
    Create a new code for (user, purpose) and deliver it

    Any earlier unused code for the same pair is superseded. If delivery
    fails the stored code is kept; it simply expires.

    Args:
        db: Database session
        user: Owner of the code
        destination: Email address (or phone number) to deliver to
        purpose: What the code may be used for
        sender: Delivery callable returning True on success
        channel: Delivery channel recorded on the code

    Returns:
        OTPSendResult

    Raises:
        RateLimitError: If the resend cooldown has not elapsed
        DatabaseError: If the code cannot be stored
    """
    _check_resend_cooldown(db, user.id, purpose)

    expiry_minutes = get_expiry_minutes(purpose)
    otp_code = generate_otp(settings.OTP_LENGTH)
    now = datetime.utcnow()
    expires_at = now + timedelta(minutes=expiry_minutes)

    try:
        superseded = invalidate_existing_codes(db, user.id, purpose)
        record = OTPCode(
            user_id=user.id,
            reference=uuid.uuid4().hex,
            purpose=purpose,
            channel=channel,
            code_hash=security.hash_otp_code(otp_code),
            is_used=False,
            attempts=0,
            max_attempts=settings.OTP_MAX_ATTEMPTS,
            created_at=now,
            expires_at=expires_at,
        )
        db.add(record)
        db.commit()
        db.refresh(record)
    except SQLAlchemyError as e:
        db.rollback()
        raise handle_database_error(e, "create OTP")

    logger.info(f"OTP created for user {user.id}, purpose: {purpose.value} ({superseded} superseded)")
    audit_logger.log_otp("generate", user.id, channel.value, {
        "purpose": purpose.value,
        "expires_at": expires_at.isoformat(),
        "superseded": superseded,
    })

    try:
        delivered = sender(destination, user.full_name, otp_code, purpose.value, expiry_minutes)
    except Exception as e:
        logger.error(f"OTP delivery raised for user {user.id}: {str(e)}", exc_info=True)
        delivered = False

    if not delivered:
        logger.warning(f"OTP delivery failed for user {user.id}, purpose: {purpose.value}")
        audit_logger.log_otp("send_failed", user.id, channel.value, {
            "purpose": purpose.value,
            "reason": "delivery_failed",
            "destination": mask_email(destination),
        })
        return OTPSendResult(
            success=False,
            reference=record.reference,
            expires_at=expires_at,
            error="Failed to send OTP",
        )

    audit_logger.log_otp("send", user.id, channel.value, {
        "purpose": purpose.value,
        "destination": mask_email(destination),
    })
    return OTPSendResult(success=True, reference=record.reference, expires_at=expires_at)


def _fail(reason: str, user_id: Optional[int], purpose: OTPPurpose, channel: str = "email",
          attempts_remaining: Optional[int] = None, message: str = "Invalid or expired verification code",
          **details):
    audit_logger.log_otp("verify_failed", user_id, channel, {
        "purpose": purpose.value,
        "reason": reason,
        "attempts_remaining": attempts_remaining,
        **details,
    })
    return InvalidOrExpiredError(message, attempts_remaining=attempts_remaining)


def verify_otp(db: Session, email: str, otp_code: str, purpose: OTPPurpose) -> OTPVerifyResult:
    """
    Verify a code for the account behind an email address

    Only the newest unused, unexpired code for (user, purpose) is considered.
    A wrong guess is counted before the call fails, and once the attempt cap
    is reached the code stays unusable even for the right value.

    Args:
        db: Database session
        email: Account email
        otp_code: Submitted code
        purpose: Purpose the code must have been issued for

    Returns:
        OTPVerifyResult with the owning user id

    Raises:
        InvalidOrExpiredError: Unknown account, no live code, wrong code or exhausted code
        DatabaseError: If database operation fails
    """
    try:
        user = db.query(User).filter(User.email == email).first()
        if not user:
            logger.warning(f"OTP verification failed: no account for {mask_email(email)}")
            raise _fail("user_not_found", None, purpose, email=mask_email(email))

        if not is_eligible(user, purpose):
            logger.warning(f"OTP verification refused: user {user.id} is not eligible for {purpose.value}")
            raise _fail("account_not_eligible", user.id, purpose)

        now = datetime.utcnow()
        record = db.query(OTPCode).filter(
            OTPCode.user_id == user.id,
            OTPCode.purpose == purpose,
            OTPCode.is_used.is_(False),
            OTPCode.expires_at > now
        ).order_by(OTPCode.created_at.desc(), OTPCode.id.desc()).first()

        if not record:
            logger.warning(f"OTP verification failed: no live code for user {user.id}, purpose {purpose.value}")
            raise _fail("code_not_found_or_expired", user.id, purpose)

        channel = record.channel.value
        if record.is_max_attempts_exceeded():
            logger.warning(f"OTP verification failed: max attempts exceeded for user {user.id}")
            raise _fail("max_attempts_exceeded", user.id, purpose, channel, attempts_remaining=0,
                        message="Maximum verification attempts exceeded. Please request a new code.")

        if not security.verify_otp_code(otp_code, record.code_hash):
            counted = db.query(OTPCode).filter(
                OTPCode.id == record.id,
                OTPCode.is_used.is_(False),
                OTPCode.attempts < OTPCode.max_attempts
            ).update(
                {OTPCode.attempts: OTPCode.attempts + 1, OTPCode.last_attempt_at: now},
                synchronize_session=False
            )
            db.commit()
            db.refresh(record)
            if not counted:
                raise _fail("max_attempts_exceeded", user.id, purpose, channel, attempts_remaining=0,
                            message="Maximum verification attempts exceeded. Please request a new code.")
            logger.warning(f"OTP verification failed: wrong code for user {user.id}")
            raise _fail("invalid_code", user.id, purpose, channel,
                        attempts_remaining=record.attempts_remaining,
                        message="Invalid verification code")

        # Conditional update so two concurrent correct submissions cannot both win
        claimed = db.query(OTPCode).filter(
            OTPCode.id == record.id,
            OTPCode.is_used.is_(False),
            OTPCode.attempts < OTPCode.max_attempts,
            OTPCode.expires_at > now
        ).update(
            {OTPCode.is_used: True, OTPCode.used_at: now, OTPCode.last_attempt_at: now},
            synchronize_session=False
        )
        if not claimed:
            db.rollback()
            raise _fail("already_used", user.id, purpose, channel)

        if purpose == OTPPurpose.EMAIL_VERIFICATION:
            user.is_verified = True
        db.commit()
    except InvalidOrExpiredError:
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise handle_database_error(e, "verify OTP")

    logger.info(f"OTP verified successfully for user {user.id}, purpose: {purpose.value}")
    audit_logger.log_otp("verify_success", user.id, channel, {"purpose": purpose.value})
    return OTPVerifyResult(success=True, user_id=user.id)


def get_otp_status(db: Session, user_id: int, purpose: OTPPurpose) -> dict:
    """
    Get the status of the most recent code for a user and purpose

    Returns:
        dict: OTP status information
    """
    record = db.query(OTPCode).filter(
        OTPCode.user_id == user_id,
        OTPCode.purpose == purpose
    ).order_by(OTPCode.created_at.desc(), OTPCode.id.desc()).first()

    if not record:
        return {
            "exists": False,
            "is_used": False,
            "is_expired": False,
            "attempts_remaining": 0
        }

    return {
        "exists": True,
        "is_used": record.is_used,
        "is_expired": record.is_expired(),
        "attempts_remaining": record.attempts_remaining,
        "expires_at": record.expires_at.isoformat()
    }


def cleanup_expired_codes(db: Session) -> int:
    """
    Delete codes past their expiry

    Returns:
        int: Number of expired codes deleted

    Raises:
        DatabaseError: If database operation fails
    """
    try:
        expired_count = db.query(OTPCode).filter(
            OTPCode.expires_at <= datetime.utcnow()
        ).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise handle_database_error(e, "cleanup expired OTPs")

    if expired_count > 0:
        logger.info(f"Cleaned up {expired_count} expired OTPs")
    return expired_count


def cleanup_used_codes(db: Session, days_old: int = 7) -> int:
    """
    Delete used codes older than the retention period

    Returns:
        int: Number of used codes deleted
    """
    cutoff_date = datetime.utcnow() - timedelta(days=days_old)
    try:
        used_count = db.query(OTPCode).filter(
            OTPCode.is_used.is_(True),
            OTPCode.created_at < cutoff_date
        ).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise handle_database_error(e, "cleanup used OTPs")

    if used_count > 0:
        logger.info(f"Cleaned up {used_count} used OTPs older than {days_old} days")
    return used_count


def run_cleanup() -> None:
    """Opportunistic sweep scheduled as a background task after verifications"""
    db = SessionLocal()
    try:
        cleanup_expired_codes(db)
        rate_limiter.cleanup_expired_counters(db)
    except Exception as e:
        logger.error(f"Background OTP cleanup failed: {str(e)}", exc_info=True)
    finally:
        db.close()
