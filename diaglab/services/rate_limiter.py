import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from sqlalchemy import or_
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from diaglab.config import settings
from diaglab.models.rate_limit import RateLimitCounter
from diaglab.exceptions import RateLimitError, handle_database_error
from diaglab.utils.helpers import UNKNOWN_CLIENT
from diaglab.utils.logger import get_logger, log_database_operation

logger = get_logger("rate_limiter")


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window_seconds: int
    block_seconds: Optional[int] = None  # Lockout applied when the limit trips


def get_policies() -> Dict[str, RateLimitPolicy]:
    """Per-action policies, resolved from settings on each call"""
    return {
        "login": RateLimitPolicy(
            settings.RATE_LIMIT_LOGIN_MAX_ATTEMPTS,
            settings.RATE_LIMIT_LOGIN_WINDOW_SECONDS,
            settings.RATE_LIMIT_LOGIN_BLOCK_SECONDS or None,
        ),
        "register": RateLimitPolicy(
            settings.RATE_LIMIT_REGISTER_MAX_ATTEMPTS,
            settings.RATE_LIMIT_REGISTER_WINDOW_SECONDS,
        ),
        "otp_request": RateLimitPolicy(
            settings.RATE_LIMIT_OTP_REQUEST_MAX_ATTEMPTS,
            settings.RATE_LIMIT_OTP_REQUEST_WINDOW_SECONDS,
        ),
        "otp_verify": RateLimitPolicy(
            settings.RATE_LIMIT_OTP_VERIFY_MAX_ATTEMPTS,
            settings.RATE_LIMIT_OTP_VERIFY_WINDOW_SECONDS,
            settings.RATE_LIMIT_OTP_VERIFY_BLOCK_SECONDS or None,
        ),
        "password_reset": RateLimitPolicy(
            settings.RATE_LIMIT_PASSWORD_RESET_MAX_ATTEMPTS,
            settings.RATE_LIMIT_PASSWORD_RESET_WINDOW_SECONDS,
        ),
        "api_general": RateLimitPolicy(1000, 15 * 60),
        "api_sensitive": RateLimitPolicy(100, 15 * 60),
        "global": RateLimitPolicy(2000, 15 * 60),
    }


def get_policy(action: str) -> RateLimitPolicy:
    policies = get_policies()
    return policies.get(action, policies["api_general"])


def _counter_query(db: Session, action: str, identity: str):
    return db.query(RateLimitCounter).filter(
        RateLimitCounter.action == action,
        RateLimitCounter.identity == identity
    )


def _not_blocked(now: datetime):
    return or_(RateLimitCounter.blocked_until.is_(None), RateLimitCounter.blocked_until <= now)


def _ms_until(moment: datetime, now: datetime) -> int:
    return max(1, int((moment - now).total_seconds() * 1000))


def check_limit(
    db: Session,
    action: str,
    identity: Optional[str],
    policy: Optional[RateLimitPolicy] = None
) -> None:
    """
    Count one request for (action, identity) in the current fixed window

    The counter moves only through conditional UPDATEs, so concurrent
    requests can never push it past the limit.

    Args:
        db: Database session
        action: Action category, e.g. "login" or "otp_verify"
        identity: Client IP or user id; empty values share the "unknown" bucket
        policy: Optional override of the configured policy

    Raises:
        RateLimitError: If the caller is over the limit or blocked
        DatabaseError: If the counter store fails
    """
    policy = policy or get_policy(action)
    identity = identity or UNKNOWN_CLIENT

    try:
        for _ in range(2):
            now = datetime.utcnow()
            window_cutoff = now - timedelta(seconds=policy.window_seconds)

            # Live window with room left
            updated = _counter_query(db, action, identity).filter(
                RateLimitCounter.window_start > window_cutoff,
                RateLimitCounter.count < policy.max_requests,
                _not_blocked(now)
            ).update({RateLimitCounter.count: RateLimitCounter.count + 1}, synchronize_session=False)
            db.commit()
            if updated:
                return

            # Window elapsed: start a new one
            updated = _counter_query(db, action, identity).filter(
                RateLimitCounter.window_start <= window_cutoff,
                _not_blocked(now)
            ).update(
                {
                    RateLimitCounter.count: 1,
                    RateLimitCounter.window_start: now,
                    RateLimitCounter.blocked_until: None,
                },
                synchronize_session=False
            )
            db.commit()
            if updated:
                return

            counter = _counter_query(db, action, identity).populate_existing().first()
            if counter is None:
                try:
                    db.add(RateLimitCounter(action=action, identity=identity, count=1, window_start=now))
                    db.commit()
                    return
                except IntegrityError:
                    # Another request created the row first; go round again
                    db.rollback()
                    continue

            _reject(db, counter, policy, now)

        # Still racing after the retry: treat as over the limit for a short moment
        raise RateLimitError("Rate limit exceeded. Try again shortly.", retry_after_ms=1000)
    except RateLimitError:
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise handle_database_error(e, f"rate limit check for {action}")


def _reject(db: Session, counter: RateLimitCounter, policy: RateLimitPolicy, now: datetime) -> None:
    window_end = counter.window_start + timedelta(seconds=policy.window_seconds)
    blocked_until = counter.blocked_until

    if blocked_until is None or blocked_until <= now:
        if policy.block_seconds:
            blocked_until = now + timedelta(seconds=policy.block_seconds)
            _counter_query(db, counter.action, counter.identity).filter(
                _not_blocked(now)
            ).update({RateLimitCounter.blocked_until: blocked_until}, synchronize_session=False)
            db.commit()
            logger.warning(f"Blocking {counter.action}:{counter.identity} until {blocked_until.isoformat()}")
        else:
            blocked_until = None

    details: Dict[str, Any] = {"limit": policy.max_requests, "remaining": 0}
    if blocked_until is not None and blocked_until > now:
        retry_after_ms = _ms_until(blocked_until, now)
        details["reset_at"] = blocked_until.isoformat()
        message = f"Rate limit exceeded. Blocked for {math.ceil(retry_after_ms / 1000)} more seconds."
    else:
        retry_after_ms = _ms_until(window_end, now)
        details["reset_at"] = window_end.isoformat()
        message = f"Rate limit exceeded. Try again in {math.ceil(retry_after_ms / 1000)} seconds."

    logger.warning(f"Rate limit exceeded for {counter.action}:{counter.identity}")
    raise RateLimitError(message, retry_after_ms=retry_after_ms, details=details)


def get_status(db: Session, action: str, identity: str) -> Dict[str, Any]:
    """
    Current limit state for (action, identity) without counting a request

    Returns:
        dict: limit, remaining, reset_at (ISO) and blocked flag
    """
    policy = get_policy(action)
    now = datetime.utcnow()
    counter = _counter_query(db, action, identity or UNKNOWN_CLIENT).first()
    blocked = bool(counter and counter.blocked_until and counter.blocked_until > now)

    if counter is None or counter.window_start + timedelta(seconds=policy.window_seconds) <= now:
        return {
            "limit": policy.max_requests,
            "remaining": policy.max_requests,
            "reset_at": (now + timedelta(seconds=policy.window_seconds)).isoformat(),
            "blocked": blocked,
        }

    return {
        "limit": policy.max_requests,
        "remaining": max(0, policy.max_requests - counter.count),
        "reset_at": (counter.window_start + timedelta(seconds=policy.window_seconds)).isoformat(),
        "blocked": blocked,
    }


def block(db: Session, action: str, identity: str, seconds: int) -> datetime:
    """Manually block an identity for an action"""
    now = datetime.utcnow()
    blocked_until = now + timedelta(seconds=seconds)
    try:
        counter = _counter_query(db, action, identity).first()
        if counter is None:
            db.add(RateLimitCounter(
                action=action, identity=identity, count=0, window_start=now, blocked_until=blocked_until
            ))
        else:
            counter.blocked_until = blocked_until
        db.commit()
        logger.info(f"Manually blocked {action}:{identity} for {seconds} seconds")
        return blocked_until
    except SQLAlchemyError as e:
        db.rollback()
        raise handle_database_error(e, "block rate limit identity")


def reset(db: Session, action: str, identity: str) -> bool:
    """Forget the counter (and any block) for an identity"""
    try:
        deleted = _counter_query(db, action, identity).delete(synchronize_session=False)
        db.commit()
        logger.info(f"Rate limit reset for {action}:{identity}")
        return deleted > 0
    except SQLAlchemyError as e:
        db.rollback()
        raise handle_database_error(e, "reset rate limit")


@log_database_operation("cleanup expired rate limit counters")
def cleanup_expired_counters(db: Session) -> int:
    """
    Delete counters whose window and block have both elapsed

    Returns:
        int: Number of counters removed
    """
    now = datetime.utcnow()
    removed = 0
    policies = get_policies()
    try:
        for action, policy in policies.items():
            cutoff = now - timedelta(seconds=policy.window_seconds)
            removed += db.query(RateLimitCounter).filter(
                RateLimitCounter.action == action,
                RateLimitCounter.window_start <= cutoff,
                _not_blocked(now)
            ).delete(synchronize_session=False)

        # Unlisted actions were counted under the fallback policy
        fallback_cutoff = now - timedelta(seconds=policies["api_general"].window_seconds)
        removed += db.query(RateLimitCounter).filter(
            RateLimitCounter.action.notin_(list(policies)),
            RateLimitCounter.window_start <= fallback_cutoff,
            _not_blocked(now)
        ).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise handle_database_error(e, "cleanup rate limit counters")

    if removed:
        logger.info(f"Cleaned up {removed} expired rate limit counters")
    return removed
