from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import admin, auth, checkout, coach, error_reports, payments, pro, results, sessions, voice, webhooks

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

from job_runner import run_paused_session_reminders


def _log_stripe_mode():
    """Log test/live mode from the key prefix; never the key itself."""
    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_SECRET_KEY / STRIPE_API_KEY is not set. Checkout and verification will fail.")
        return
    logger.info("STRIPE_MODE = %s (from Stripe key prefix)", "test" if stripe_key.startswith("sk_test_") else "live")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Talendro Interview Coach API")
    await database.connect()
    _log_stripe_mode()

    run_scheduler = not os.environ.get("PYTEST_RUNNING")
    if run_scheduler:
        # Paused-session reminders, hourly on the hour
        scheduler.add_job(
            run_paused_session_reminders,
            CronTrigger(minute=0),
            id="paused_session_reminders",
            name="Paused Session Reminders",
            replace_existing=True
        )
        scheduler.start()
        logger.info("Background job scheduler started")

    yield

    logger.info("Shutting down Talendro Interview Coach API")
    if run_scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Talendro Interview Coach API",
    description="AI interview preparation - prep packets, mock interviews and voice practice",
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
app.include_router(checkout.router)
app.include_router(payments.router)
app.include_router(pro.router)
app.include_router(coach.router)
app.include_router(sessions.router)
app.include_router(results.router)
app.include_router(voice.router)
app.include_router(error_reports.router)
app.include_router(auth.router)
app.include_router(webhooks.router)
app.include_router(admin.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Talendro Interview Coach",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Validation errors carry a request_id so support can match a report to the log line
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_errors(errors), "request_id": request_id},
    )


def jsonable_errors(errors):
    # pydantic v2 puts the raw exception under ctx for some validators
    return [{k: v for k, v in e.items() if k != "ctx"} for e in errors]


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
