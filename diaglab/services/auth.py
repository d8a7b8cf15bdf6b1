from datetime import datetime
from typing import Optional, Tuple, List

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from diaglab.schemas.users import UserCreate, AdminUserUpdate
from diaglab.models.users import User, UserRole
from diaglab.exceptions import ConflictError, NotFoundError, handle_database_error
from diaglab.utils import security
from diaglab.utils.helpers import mask_email
from diaglab.utils.logger import get_logger

logger = get_logger("auth")

MAX_PAGE_SIZE = 100


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email.strip().lower()).first()


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    """
    Authenticate user with email and password

    Args:
        db: Database session
        email: User email
        password: User password

    Returns:
        User object if authentication successful, None otherwise
    """
    try:
        user = get_user_by_email(db, email)
    except SQLAlchemyError as e:
        raise handle_database_error(e, "user authentication")

    if not user:
        # Hash anyway so an unknown email costs the same as a wrong password
        security.get_password_hash(password)
        logger.warning(f"Authentication failed: User not found for email {mask_email(email)}")
        return None
    if not security.verify_password(password, user.hashed_password):
        logger.warning(f"Authentication failed: Invalid password for user {user.id}")
        return None
    logger.info(f"User authenticated successfully: {user.id}")
    return user


def create_user(db: Session, user: UserCreate, role: UserRole = UserRole.PATIENT) -> User:
    """
    Create new user

    The account starts unverified; it becomes usable once the
    email-verification code is confirmed.

    Raises:
        ConflictError: If user already exists
        DatabaseError: If database operation fails
    """
    email = user.email.strip().lower()
    if get_user_by_email(db, email):
        logger.warning(f"User creation failed: Email already registered {mask_email(email)}")
        raise ConflictError("Email already registered")

    db_user = User(
        email=email,
        hashed_password=security.get_password_hash(user.password),
        first_name=user.first_name,
        last_name=user.last_name,
        phone=user.phone,
        role=role,
        is_active=True,
        is_verified=False,
    )
    try:
        db.add(db_user)
        db.commit()
        db.refresh(db_user)
    except IntegrityError:
        db.rollback()
        raise ConflictError("Email already registered")
    except SQLAlchemyError as e:
        db.rollback()
        raise handle_database_error(e, "create user")

    logger.info(f"User created successfully: {db_user.id}")
    return db_user


def update_last_login(db: Session, user: User) -> None:
    try:
        user.last_login = datetime.utcnow()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise handle_database_error(e, "update last login")


def update_password(db: Session, user_id: int, new_password: str) -> User:
    """Replace a user's password hash"""
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError("User not found")
    try:
        user.hashed_password = security.get_password_hash(new_password)
        db.commit()
        db.refresh(user)
    except SQLAlchemyError as e:
        db.rollback()
        raise handle_database_error(e, "update password")

    logger.info(f"Password updated for user {user_id}")
    return user


def list_users(db: Session, page: int = 1, limit: int = 20) -> Tuple[List[User], int]:
    """
    Page through users, newest first

    Returns:
        tuple: (users on the page, total number of users)
    """
    page = max(1, page)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    query = db.query(User)
    total = query.count()
    users = (
        query.order_by(User.created_at.desc(), User.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return users, total


def admin_update_user(db: Session, user_id: int, changes: AdminUserUpdate) -> Tuple[User, dict]:
    """
    Apply an admin edit to role and status flags

    Returns:
        tuple: (updated user, dict of the fields that were sent)

    Raises:
        NotFoundError: If the user does not exist
    """
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError("User not found")

    applied = changes.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in applied.items():
        setattr(user, field, value)
    try:
        db.commit()
        db.refresh(user)
    except SQLAlchemyError as e:
        db.rollback()
        raise handle_database_error(e, "update user")

    logger.info(f"User {user_id} updated by admin: {sorted(applied)}")
    return user, applied
