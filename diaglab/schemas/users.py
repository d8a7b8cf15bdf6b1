import re
from datetime import datetime
from typing import List, Optional

from pydantic import ConfigDict, EmailStr, field_validator
from pydantic.alias_generators import to_camel

from diaglab.models.users import UserRole
from diaglab.schemas.message import CamelModel


def validate_password_strength(v: str) -> str:
    if len(v) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if not re.search(r"[A-Z]", v):
        raise ValueError("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", v):
        raise ValueError("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", v):
        raise ValueError("Password must contain at least one number")
    if not re.search(r"[^A-Za-z0-9]", v):
        raise ValueError("Password must contain at least one special character")
    return v


class UserBase(CamelModel):
    email: EmailStr
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None


class UserCreate(UserBase):
    first_name: str
    last_name: str
    password: str

    @field_validator("first_name", "last_name")
    @classmethod
    def validate_name(cls, v):
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Name must be at least 2 characters")
        if len(v) > 50:
            raise ValueError("Name must be less than 50 characters")
        if not re.match(r"^[a-zA-Z\s\-']+$", v):
            raise ValueError("Name can only contain letters, spaces, hyphens, and apostrophes")
        return v

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        if not v:
            return None

        # Remove any spaces, dashes, or parentheses
        cleaned_number = re.sub(r'[\s\-\(\)]', '', v)
        digits = cleaned_number[1:] if cleaned_number.startswith('+') else cleaned_number
        if not digits.isdigit():
            raise ValueError("Phone number can only contain digits")
        if len(digits) < 10 or len(digits) > 15:
            raise ValueError("Phone number must be between 10 and 15 digits")
        return cleaned_number

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        return validate_password_strength(v)


class UserOut(UserBase):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    email: str
    role: UserRole
    is_active: bool
    is_verified: bool
    last_login: Optional[datetime] = None


class PrincipalOut(CamelModel):
    user_id: int
    email: str
    role: UserRole
    is_active: bool
    is_verified: bool


class AdminUserUpdate(CamelModel):
    """The only fields a platform admin may change; anything else is rejected"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    role: Optional[UserRole] = None
    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class UserListResponse(CamelModel):
    success: bool = True
    users: List[UserOut]
    pagination: Pagination


class UserUpdateResponse(CamelModel):
    success: bool = True
    message: str
    user: UserOut
