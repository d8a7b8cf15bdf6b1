from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

from diaglab.exceptions import BaseCustomException, to_response_body
from diaglab.models.audit import AuditSeverity, AuditOutcome
from diaglab.services.audit import audit_logger
from diaglab.utils.helpers import get_client_ip
from diaglab.utils.logger import get_logger

logger = get_logger("error_handler")


def _internal_error_response(request: Request, exc: Exception, kind: str) -> JSONResponse:
    audit_logger.log(
        action="system_error",
        details={
            "error_type": kind,
            "error": str(exc),
            "endpoint": request.url.path,
            "method": request.method,
        },
        severity=AuditSeverity.HIGH,
        outcome=AuditOutcome.FAILURE,
        ip_address=get_client_ip(request),
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error", "code": "INTERNAL_ERROR"}
    )


def setup_error_handlers(app):
    """
    Set up error handlers for the FastAPI app

    Args:
        app: FastAPI application instance
    """

    @app.exception_handler(BaseCustomException)
    async def custom_exception_handler(request: Request, exc: BaseCustomException):
        """Handle custom exceptions"""
        if exc.status_code >= 500:
            logger.error(f"{exc.__class__.__name__}: {exc.message}", extra={"details": exc.details})
            return _internal_error_response(request, exc, exc.__class__.__name__)
        logger.info(f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=to_response_body(exc),
            headers=exc.headers()
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Malformed request bodies are a 400 like every other validation failure"""
        errors = [
            {"field": ".".join(str(part) for part in error.get("loc", ())[1:]), "message": error.get("msg")}
            for error in exc.errors()
        ]
        logger.info(f"Validation error on {request.method} {request.url.path}: {errors}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Validation error",
                "code": "VALIDATION_ERROR",
                "details": errors
            }
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError):
        """Handle database errors"""
        logger.error(f"Database error: {str(exc)}", exc_info=True)
        return _internal_error_response(request, exc, "DatabaseError")

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle any other unexpected errors"""
        logger.error(f"Unexpected error: {str(exc)}", exc_info=True)
        return _internal_error_response(request, exc, "InternalServerError")
