from fastapi import APIRouter, Depends

from diaglab.middleware.auth import Principal, with_auth, require_authenticated
from diaglab.schemas.users import PrincipalOut

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/me", response_model=PrincipalOut)
def read_current_principal(
    principal: Principal = Depends(with_auth(require_authenticated(require_verified=False)))
):
    """
    Get the caller as described by their token
    """
    return PrincipalOut(
        user_id=principal.user_id,
        email=principal.email,
        role=principal.role,
        is_active=principal.is_active,
        is_verified=principal.is_verified,
    )
