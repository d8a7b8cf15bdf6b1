from datetime import datetime
from typing import Optional

from pydantic import field_validator

from diaglab.schemas.message import CamelModel
from diaglab.schemas.users import UserOut, UserCreate, validate_password_strength


class LoginRequest(CamelModel):
    # Presence is checked in the route so that failures can be audited
    email: Optional[str] = None
    password: Optional[str] = None


class SecurityInfo(CamelModel):
    token_expires_at: datetime
    requires_mfa: bool = False


class LoginResponse(CamelModel):
    success: bool = True
    message: str
    token: str
    user: UserOut
    security: SecurityInfo


class RegisterRequest(UserCreate):
    pass


class RegisterResponse(CamelModel):
    success: bool = True
    message: str
    user: UserOut
    requires_verification: bool = True


class ForgotPasswordRequest(CamelModel):
    email: Optional[str] = None


class ForgotPasswordVerifyRequest(CamelModel):
    email: Optional[str] = None
    code: Optional[str] = None
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v):
        return validate_password_strength(v)
