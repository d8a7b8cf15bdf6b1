from fastapi import Depends, Request
from sqlalchemy.orm import Session

from diaglab.config import settings
from diaglab.database import get_db
from diaglab.exceptions import RateLimitError
from diaglab.services import rate_limiter
from diaglab.services.audit import audit_logger
from diaglab.utils.helpers import get_client_ip


def rate_limit(action: str):
    """
    Dependency factory counting the request against the action's limit

    Keyed by client IP. A tripped limit is audited before the 429 is raised.
    """
    def dependency(request: Request, db: Session = Depends(get_db)) -> None:
        if not settings.RATE_LIMIT_ENABLED:
            return
        try:
            rate_limiter.check_limit(db, action, get_client_ip(request))
        except RateLimitError as e:
            audit_logger.log_security("rate_limit_exceeded", request, {
                "limit_type": action,
                "retry_after_ms": e.retry_after_ms,
            })
            raise

    return dependency
