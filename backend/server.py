from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import payments, webhooks, likes, matches, chats
from services.errors import (
    EngineError,
    ValidationError,
    ConflictError,
    NotFoundError,
    PolicyDenied,
    ExternalServiceError,
    GatewayPayloadError,
)

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXPIRY_SWEEP_INTERVAL_MINUTES = int(os.getenv("EXPIRY_SWEEP_INTERVAL_MINUTES", "30"))
PAYMENT_REQUEST_SWEEP_INTERVAL_MINUTES = int(os.getenv("PAYMENT_REQUEST_SWEEP_INTERVAL_MINUTES", "5"))
MATCH_REPAIR_INTERVAL_MINUTES = int(os.getenv("MATCH_REPAIR_INTERVAL_MINUTES", "10"))

# Initialize scheduler with MongoDB job store for persistence
# Jobs will survive server restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'dating_app')

jobstores = {}
if not os.getenv("PYTEST_RUNNING"):
    try:
        from pymongo import MongoClient
        mongo_client = MongoClient(mongo_url)
        jobstores['default'] = MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=mongo_client
        )
        logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
    except Exception as e:
        logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
        jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores)

from job_runner import (
    run_subscription_expiry_sweep,
    run_payment_request_expiry,
    run_match_repair,
)

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Dating App API")
    await database.connect()

    # Downgrade subscriptions whose grace period has elapsed
    scheduler.add_job(
        run_subscription_expiry_sweep,
        IntervalTrigger(minutes=EXPIRY_SWEEP_INTERVAL_MINUTES),
        id="subscription_expiry_sweep",
        name="Subscription Expiry Sweep",
        replace_existing=True
    )

    # Auto-cancel stale payment requests; completes half-applied payments
    scheduler.add_job(
        run_payment_request_expiry,
        IntervalTrigger(minutes=PAYMENT_REQUEST_SWEEP_INTERVAL_MINUTES),
        id="payment_request_expiry",
        name="Payment Request Expiry",
        replace_existing=True
    )

    scheduler.add_job(
        run_match_repair,
        IntervalTrigger(minutes=MATCH_REPAIR_INTERVAL_MINUTES),
        id="match_repair",
        name="Match Repair",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Dating App API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Dating App API",
    description="Subscriptions, payments and matching",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(payments.router)
app.include_router(webhooks.router)
app.include_router(likes.router)
app.include_router(matches.router)
app.include_router(chats.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Engine errors carry a machine-readable code; status depends on the error class
ERROR_STATUS_CODES = {
    ValidationError: 400,
    GatewayPayloadError: 400,
    PolicyDenied: 403,
    NotFoundError: 404,
    ConflictError: 409,
    ExternalServiceError: 502,
}


def engine_error_status(exc: EngineError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_class):
            return status_code
    return 500


@app.exception_handler(EngineError)
async def engine_exception_handler(request: Request, exc: EngineError):
    status_code = engine_error_status(exc)
    if status_code >= 500:
        logger.error(f"Engine error on {request.url.path}: {exc.code} {exc.message}")
    else:
        logger.info(f"Request rejected on {request.url.path}: {exc.code}")
    return JSONResponse(
        status_code=status_code,
        content={"code": exc.code, "message": exc.message}
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": errors, "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
