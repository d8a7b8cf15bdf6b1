from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_NAME: str = "NVHealth Labs API"
    ENVIRONMENT: str = "development"  # "development", "production" or "test"

    # PostgreSQL Database
    DATABASE_URL: Optional[str] = None  # Overrides the POSTGRES_* settings when set
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "diaglab"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 30
    DB_CONNECT_TIMEOUT: int = 10  # seconds
    DB_STATEMENT_TIMEOUT_MS: int = 30000

    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours
    AUTH_COOKIE_NAME: str = "auth_token"
    BCRYPT_ROUNDS: int = 12

    # Email configuration
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    EMAILS_FROM: Optional[str] = None
    SMTP_TLS: bool = True  # Default to True for security
    SMTP_SSL: bool = False  # Typically use either TLS or SSL, not both
    SMTP_TIMEOUT: int = 10  # seconds

    # One-time codes
    OTP_LENGTH: int = 6
    OTP_MAX_ATTEMPTS: int = 3
    OTP_EXPIRY_EMAIL_VERIFICATION_MINUTES: int = 30
    OTP_EXPIRY_PASSWORD_RESET_MINUTES: int = 15
    OTP_EXPIRY_LOGIN_2FA_MINUTES: int = 10
    OTP_RESEND_COOLDOWN_SECONDS: int = 0  # 0 disables the cooldown
    OTP_USED_RETENTION_DAYS: int = 7

    # Rate limiting (fixed windows)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_LOGIN_MAX_ATTEMPTS: int = 5
    RATE_LIMIT_LOGIN_WINDOW_SECONDS: int = 15 * 60
    RATE_LIMIT_LOGIN_BLOCK_SECONDS: int = 30 * 60
    RATE_LIMIT_REGISTER_MAX_ATTEMPTS: int = 3
    RATE_LIMIT_REGISTER_WINDOW_SECONDS: int = 60 * 60
    RATE_LIMIT_OTP_REQUEST_MAX_ATTEMPTS: int = 5
    RATE_LIMIT_OTP_REQUEST_WINDOW_SECONDS: int = 60 * 60
    RATE_LIMIT_OTP_VERIFY_MAX_ATTEMPTS: int = 5
    RATE_LIMIT_OTP_VERIFY_WINDOW_SECONDS: int = 15 * 60
    RATE_LIMIT_OTP_VERIFY_BLOCK_SECONDS: int = 15 * 60
    RATE_LIMIT_PASSWORD_RESET_MAX_ATTEMPTS: int = 3
    RATE_LIMIT_PASSWORD_RESET_WINDOW_SECONDS: int = 60 * 60

    @field_validator("SECRET_KEY")
    @classmethod
    def validate_secret_key(cls, v):
        if len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @field_validator("SMTP_PORT", mode="before")
    @classmethod
    def cast_smtp_port(cls, v):
        if v is None or v == "":
            return 587
        # Remove comments and whitespace
        if isinstance(v, str):
            v = v.split('#')[0].strip()
        return int(v)

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


settings = Settings()
