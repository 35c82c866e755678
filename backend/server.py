from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from errors import EngineError
from middleware import engine_error_handler
from routes import billing, subscription
from services.session_registry import session_registry
from job_runner import run_scheduled_change_sweep

SCHEDULED_CHANGE_SWEEP_MINUTES = int(os.environ.get("SCHEDULED_CHANGE_SWEEP_MINUTES", "5"))

scheduler = AsyncIOScheduler()


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Subscription & Entitlement Engine")

    # Downgrades land at the period boundary; revalidate sessions once they are due
    scheduler.add_job(
        run_scheduled_change_sweep,
        IntervalTrigger(minutes=SCHEDULED_CHANGE_SWEEP_MINUTES),
        id="scheduled_change_sweep",
        name="Scheduled Plan Change Sweep",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Subscription & Entitlement Engine")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await app.state.session_registry.close_all()


# Create FastAPI app
app = FastAPI(
    title="Subscription & Entitlement Engine",
    description="Plan catalog, entitlements, access gating and payment confirmation",
    version="1.0.0",
    lifespan=lifespan
)
app.state.session_registry = session_registry

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(subscription.router)
app.include_router(billing.router)

app.add_exception_handler(EngineError, engine_error_handler)


@app.get("/api")
async def root():
    return {
        "service": "Subscription & Entitlement Engine",
        "status": "operational"
    }


# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development"),
        "sessions": len(app.state.session_registry.sessions()),
    }


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
    # ctx may hold the raw exception object
    return [{key: value for key, value in e.items() if key != "ctx"} for e in errors]


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
