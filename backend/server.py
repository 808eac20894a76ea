from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database
from routes import admin, billing, webhooks, webhooks_config

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
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

LIFECYCLE_SCAN_INTERVAL_MINUTES = int(os.environ.get("LIFECYCLE_SCAN_INTERVAL_MINUTES", "60"))
WEBHOOK_RETRY_SWEEP_SECONDS = int(os.environ.get("WEBHOOK_RETRY_SWEEP_SECONDS", "60"))
UNDER_TEST = os.environ.get("PYTEST_RUNNING") == "1"

# Initialize scheduler with MongoDB job store for persistence
# Jobs will survive server restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'billing_lifecycle')

jobstores = {}
if not UNDER_TEST:
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

# Import job runners from shared module (used by scheduler and admin run-now)
from job_runner import (
    run_lifecycle_scan,
    run_webhook_retry_sweep,
    run_subscription_reconciliation,
)


def configure_jobs(target: AsyncIOScheduler) -> None:
    # Trial/grace/cancellation deadlines and advance notices
    target.add_job(
        run_lifecycle_scan,
        IntervalTrigger(minutes=LIFECYCLE_SCAN_INTERVAL_MINUTES),
        id="lifecycle_scan",
        name="Lifecycle Scan",
        replace_existing=True,
        max_instances=1,
    )

    # Webhook deliveries whose retry time has elapsed
    target.add_job(
        run_webhook_retry_sweep,
        IntervalTrigger(seconds=WEBHOOK_RETRY_SWEEP_SECONDS),
        id="webhook_retry_sweep",
        name="Webhook Retry Sweep",
        replace_existing=True,
        max_instances=1,
    )

    # Nightly full reconciliation against Stripe at 3:00 AM UTC
    target.add_job(
        run_subscription_reconciliation,
        CronTrigger(hour=3, minute=0),
        id="subscription_reconciliation",
        name="Subscription Reconciliation",
        replace_existing=True,
        max_instances=1,
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Billing Lifecycle API")
    if UNDER_TEST:
        yield
        return

    # Missing processor credentials are fatal at startup
    from services.processor_client import processor_client
    processor_client.ensure_configured()
    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    logger.info("STRIPE_MODE = %s (from Stripe key prefix)", "test" if "_test_" in stripe_key else "live")

    from services.plan_registry import plan_registry
    missing = plan_registry.missing_price_ids()
    if missing:
        logger.warning("Stripe price IDs not configured for plans: %s (raw price ids will be stored)", ", ".join(missing))

    await database.connect()

    configure_jobs(scheduler)
    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Billing Lifecycle API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")

    # In-flight deliveries finish; anything still PENDING is picked up by the next sweep
    from services.webhook_dispatcher import webhook_dispatcher
    await webhook_dispatcher.drain()
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Billing Lifecycle API",
    description="Subscription reconciliation and lifecycle webhooks",
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
app.include_router(billing.router)
app.include_router(webhooks.router)
app.include_router(webhooks_config.router)
app.include_router(admin.router)


# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


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
