"""
Bearer-token authentication and role gating

The principal is rebuilt from the signed token on every request and is never
re-read from storage, so role or status changes take effect only when a new
token is issued (at most ACCESS_TOKEN_EXPIRE_MINUTES later).

Routes declare their requirement as a dependency:

    @router.get("/admin/users")
    def list_users(principal: Principal = Depends(with_auth(require_platform_admin()))):
        ...

A 401 or 403 is audited and raised before the route body runs.
"""
from dataclasses import dataclass
from typing import Iterable, Optional, FrozenSet

from fastapi import Request

from diaglab.config import settings
from diaglab.exceptions import AuthenticationError, AuthorizationError
from diaglab.models.users import UserRole
from diaglab.services.audit import audit_logger
from diaglab.utils import security
from diaglab.utils.logger import get_logger

logger = get_logger("auth_middleware")

Role = UserRole


@dataclass(frozen=True)
class Principal:
    user_id: int
    email: str
    role: Role
    is_active: bool
    is_verified: bool


@dataclass(frozen=True)
class AuthRequirement:
    allowed_roles: Optional[FrozenSet[Role]] = None  # None admits every role
    require_active: bool = True
    require_verified: bool = True

    def is_satisfied_by(self, principal: Principal) -> bool:
        return self.allowed_roles is None or principal.role in self.allowed_roles


def require_any_role(roles: Iterable[Role], require_active: bool = True,
                     require_verified: bool = True) -> AuthRequirement:
    return AuthRequirement(frozenset(roles), require_active, require_verified)


def require_authenticated(require_active: bool = True, require_verified: bool = True) -> AuthRequirement:
    return AuthRequirement(None, require_active, require_verified)


def require_patient(**options) -> AuthRequirement:
    return require_any_role([Role.PATIENT], **options)


def require_center_admin(**options) -> AuthRequirement:
    return require_any_role([Role.CENTER_ADMIN], **options)


def require_platform_admin(**options) -> AuthRequirement:
    return require_any_role([Role.PLATFORM_ADMIN], **options)


def require_admin(**options) -> AuthRequirement:
    return require_any_role([Role.CENTER_ADMIN, Role.PLATFORM_ADMIN], **options)


def extract_token(request: Request) -> Optional[str]:
    """Bearer header first, then the httpOnly session cookie"""
    auth_header = request.headers.get("authorization")
    if auth_header:
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
        return None
    return request.cookies.get(settings.AUTH_COOKIE_NAME) or None


def principal_from_claims(payload: dict) -> Principal:
    try:
        return Principal(
            user_id=int(payload["sub"]),
            email=payload["email"],
            role=Role(payload["role"]),
            is_active=bool(payload.get("is_active", False)),
            is_verified=bool(payload.get("is_verified", False)),
        )
    except (KeyError, TypeError, ValueError):
        raise AuthenticationError("Invalid token")


def authenticate(request: Request, requirement: AuthRequirement) -> Principal:
    """
    Resolve and gate the caller

    Raises:
        AuthenticationError: Missing, malformed, expired or forged token; inactive or unverified account
        AuthorizationError: Role does not satisfy the requirement
    """
    token = extract_token(request)
    if not token:
        logger.warning(f"Missing credential for {request.method} {request.url.path}")
        raise AuthenticationError("Authentication required")

    payload = security.decode_access_token(token)
    if payload is None:
        logger.warning(f"Invalid token for {request.method} {request.url.path}")
        raise AuthenticationError("Invalid token")

    principal = principal_from_claims(payload)

    if requirement.require_active and not principal.is_active:
        raise AuthenticationError("Account deactivated")
    if requirement.require_verified and not principal.is_verified:
        raise AuthenticationError("Account not verified")

    if not requirement.is_satisfied_by(principal):
        logger.warning(
            f"Forbidden: user {principal.user_id} with role {principal.role.value} "
            f"on {request.method} {request.url.path}"
        )
        raise AuthorizationError("Insufficient permissions", details={
            "user_id": principal.user_id,
            "role": principal.role.value,
        })

    request.state.principal = principal
    return principal


def with_auth(requirement: Optional[AuthRequirement] = None):
    """
    Build a dependency that authenticates the request and returns its Principal

    Rejections are written to the audit trail before the 401 or 403 is raised.
    """
    requirement = requirement or require_authenticated()

    def dependency(request: Request) -> Principal:
        try:
            return authenticate(request, requirement)
        except AuthenticationError as e:
            audit_logger.log_security("unauthorized_access", request, {"reason": e.message})
            raise
        except AuthorizationError as e:
            audit_logger.log_security("forbidden_access", request, {
                **e.details,
                "required_roles": sorted(role.value for role in requirement.allowed_roles or ()),
            })
            raise

    return dependency
