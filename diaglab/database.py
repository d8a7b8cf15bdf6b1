from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import text

from diaglab.config import settings
from diaglab.utils.logger import get_logger
from diaglab.exceptions import DatabaseError, handle_database_error

logger = get_logger("database")

SQLALCHEMY_DATABASE_URL = settings.SQLALCHEMY_DATABASE_URI


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # SQLite is only used for local runs and tests
        return {"connect_args": {"check_same_thread": False, "timeout": settings.DB_CONNECT_TIMEOUT}}
    return {
        "pool_pre_ping": True,  # Checks connection health before using
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_CONNECT_TIMEOUT,
        "connect_args": {
            "connect_timeout": settings.DB_CONNECT_TIMEOUT,
            "options": f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS}",
        },
    }


try:
    engine = create_engine(SQLALCHEMY_DATABASE_URL, **_engine_options(SQLALCHEMY_DATABASE_URL))
    logger.info("Database engine created successfully")
except Exception as e:
    logger.error(f"Failed to create database engine: {str(e)}", exc_info=True)
    raise DatabaseError("Failed to initialize database connection", details={"original_error": str(e)})

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Database dependency that provides a database session

    Yields:
        Session: Database session

    Raises:
        DatabaseError: If database connection fails
    """
    db = SessionLocal()
    try:
        logger.debug("Database session created")
        yield db
    except SQLAlchemyError as e:
        logger.error(f"Database session error: {str(e)}", exc_info=True)
        db.rollback()
        raise handle_database_error(e, "database session")
    finally:
        try:
            db.close()
            logger.debug("Database session closed")
        except Exception as e:
            logger.error(f"Error closing database session: {str(e)}")


def init_db():
    """Create all tables registered on Base"""
    # Import models so they register with Base.metadata
    from diaglab.models import users, otp, rate_limit, audit  # noqa: F401

    Base.metadata.create_all(bind=engine)


def check_database_connection():
    """
    Test database connection

    Returns:
        bool: True if connection successful, False otherwise
    """
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        db.close()
        logger.info("Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"Database connection test failed: {str(e)}", exc_info=True)
        return False
