from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from diaglab.config import settings
from diaglab.routes import auth, otp, users, admin
from diaglab.database import init_db, check_database_connection
from diaglab.middleware.error_handler import setup_error_handlers
from diaglab.utils.logger import setup_logger

# Setup logging
logger = setup_logger(log_file="logs/app.log" if settings.is_production else None)

# Create database tables
try:
    init_db()
    logger.info("Database tables created successfully")
except Exception as e:
    logger.error(f"Failed to create database tables: {str(e)}", exc_info=True)

app = FastAPI(
    title=settings.APP_NAME,
    description="Authentication, OTP verification and rate limiting for the diagnostics lab platform",
    version="0.1.0"
)

# Setup error handlers
setup_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, replace with the web app's exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.router)
app.include_router(otp.router)
app.include_router(users.router)
app.include_router(admin.router)


@app.get("/")
def read_root():
    logger.info("Root endpoint accessed")
    return {
        "message": f"{settings.APP_NAME} is running",
        "database": "ok" if check_database_connection() else "unavailable",
    }


@app.on_event("startup")
async def startup_event():
    logger.info(f"Application starting up ({settings.ENVIRONMENT})")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Application shutting down")
