from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import asyncio
import os
import logging

import redis

from app.database import SessionLocal
from app.routes import movies, ratings, admin
from app.middleware.security import SecurityHeadersMiddleware
from app.services.background_jobs import background_jobs
from app.services.rating_consumer import rating_consumer
from app.services.rating_events import event_publisher
from app.services.search_index import search_index
from app.services.sync_service import sync_service

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


def _enabled(name: str) -> bool:
    return os.getenv(name, "true").lower() == "true"


async def _startup_sync():
    """Create the index if needed and resync it when it drifted from the store"""
    try:
        sync_id = await asyncio.to_thread(sync_service.check_and_sync)
        if sync_id:
            logger.info(f"Startup sync {sync_id} finished")
    except Exception as e:
        logger.error(f"✗ Startup sync failed: {str(e)}")


# ============================================
# Application Lifespan Management
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan events

    Startup:
    - Ensure the search index exists and sync it in the background
    - Start the rating stream consumer
    - Start background jobs (stream monitor, index reconcile)

    Shutdown:
    - Stop the consumer and background jobs gracefully
    """
    # Startup
    logger.info("=" * 60)
    logger.info("🚀 CineSearch API Starting...")
    logger.info(f"   Environment: {os.getenv('ENVIRONMENT', 'development')}")
    logger.info(f"   API key: {'configured' if os.getenv('API_KEY') else 'NOT configured'}")
    logger.info("=" * 60)

    startup_task = None
    if _enabled("ENABLE_STARTUP_SYNC"):
        startup_task = asyncio.create_task(_startup_sync())

    consumer_started = False
    if _enabled("ENABLE_RATING_CONSUMER"):
        try:
            rating_consumer.start()
            consumer_started = True
        except Exception as e:
            logger.error(f"Failed to start rating consumer: {str(e)}")

    try:
        background_jobs.start()
    except Exception as e:
        logger.error(f"Failed to start background jobs: {str(e)}")

    yield

    # Shutdown
    logger.info("=" * 60)
    logger.info("🛑 CineSearch API Shutting Down...")
    if consumer_started:
        await rating_consumer.stop()
        logger.info("   Rating consumer stopped")
    if startup_task is not None and not startup_task.done():
        startup_task.cancel()
    try:
        background_jobs.shutdown()
        logger.info("   Background jobs stopped")
    except Exception as e:
        logger.error(f"Error stopping background jobs: {str(e)}")
    logger.info("=" * 60)


# Create FastAPI app with lifespan handler
app = FastAPI(
    title="CineSearch API",
    description="Movie and TV catalog with natural-language search and event-driven ratings",
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# ============================================
# Security Configuration
# ============================================

# CORS - Whitelist allowed origins
allowed_origins = [
    "http://localhost:3000",
    "http://localhost:5173",
]
if production_url := os.getenv("FRONTEND_URL"):
    allowed_origins.append(production_url)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.add_middleware(SecurityHeadersMiddleware)

# Trusted Hosts - Production only
if os.getenv("ENVIRONMENT") == "production":
    if trusted_hosts := [host for host in os.getenv("TRUSTED_HOSTS", "").split(",") if host]:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

# ============================================
# Exception Handlers
# ============================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Bad query/body/path values are client errors (400), not 422"""
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))

    return JSONResponse(
        status_code=400,
        content={"detail": "; ".join(messages) or "Invalid request"}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Catch-all handler for anything the routes did not map"""
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

# ============================================
# Routes
# ============================================

@app.get("/", tags=["Health"])
def root():
    """Basic health check"""
    return {
        "message": "CineSearch API",
        "version": API_VERSION,
        "status": "healthy",
        "docs": "/docs"
    }


@app.get("/health", tags=["Health"])
def health_check():
    """Detailed health check for monitoring"""
    database = "connected"
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        database = f"unavailable: {e}"
    finally:
        db.close()

    try:
        stream = {
            "status": "connected",
            "pending": event_publisher.pending_count(),
            "length": event_publisher.stream_length()
        }
    except redis.RedisError as e:
        stream = {"status": "unavailable", "error": str(e)}

    healthy = database == "connected" and stream["status"] == "connected"

    return {
        "status": "healthy" if healthy else "degraded",
        "api_version": API_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": database,
        "rating_stream": stream,
        "rating_consumer": rating_consumer.get_status(),
        "search": search_index.health()
    }


app.include_router(movies.router)
app.include_router(ratings.router)
app.include_router(admin.router)  # Background jobs management

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
