import os
import tempfile

# Settings are read at import time, so the environment must be ready first
_db_dir = tempfile.mkdtemp(prefix="diaglab-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key-that-is-long-enough-for-hs256"
os.environ["ENVIRONMENT"] = "test"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_LOGIN_MAX_ATTEMPTS"] = "3"

import pytest
from fastapi.testclient import TestClient

from diaglab.main import app
from diaglab.database import Base, engine, SessionLocal
from diaglab.models.users import User, UserRole
from diaglab.utils.email import get_otp_sender
from diaglab.utils.security import get_password_hash, create_user_token

TEST_PASSWORD = "Str0ng!Pass"


class OTPRecorder:
    """Stands in for the email sender and keeps every code it was given"""

    def __init__(self):
        self.sent = []
        self.succeed = True

    def __call__(self, destination, name, otp_code, purpose, expiry_minutes=15):
        self.sent.append({
            "destination": destination,
            "name": name,
            "code": otp_code,
            "purpose": purpose,
            "expiry_minutes": expiry_minutes,
        })
        return self.succeed

    def last_code(self, destination=None):
        for message in reversed(self.sent):
            if destination is None or message["destination"] == destination:
                return message["code"]
        raise AssertionError(f"No code was sent to {destination}")


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def otp_recorder():
    recorder = OTPRecorder()
    app.dependency_overrides[get_otp_sender] = lambda: recorder
    yield recorder
    app.dependency_overrides.pop(get_otp_sender, None)


@pytest.fixture
def client(otp_recorder):
    return TestClient(app)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def make_user(db, email, role=UserRole.PATIENT, is_active=True, is_verified=True, password=TEST_PASSWORD):
    user = User(
        email=email,
        first_name="Test",
        last_name="User",
        hashed_password=get_password_hash(password),
        role=role,
        is_active=is_active,
        is_verified=is_verified,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def patient(db):
    return make_user(db, "patient@example.com")


@pytest.fixture
def unverified_patient(db):
    return make_user(db, "new.patient@example.com", is_verified=False)


@pytest.fixture
def center_admin(db):
    return make_user(db, "center@example.com", role=UserRole.CENTER_ADMIN)


@pytest.fixture
def platform_admin(db):
    return make_user(db, "admin@example.com", role=UserRole.PLATFORM_ADMIN)


def auth_headers(user):
    return {"Authorization": f"Bearer {create_user_token(user)}"}
