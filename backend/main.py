"""
FastAPI application entry point for the capacity engine.

Run with:
    uvicorn main:app --app-dir backend
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from capacity_engine.api.routes import admin_capacity
from capacity_engine.api.routes import admin_plans
from capacity_engine.api.routes import entitlements
from capacity_engine.capacity.errors import CapacityError
from capacity_engine.config.capacity_settings import get_capacity_settings

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting capacity engine API")

    app.state.capacity_settings = get_capacity_settings().get_all()
    logger.info("Capacity settings loaded", extra={"settings": app.state.capacity_settings})

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL is not set. Database-backed endpoints will return 503.")
        app.state.database_configured = False
    else:
        masked = database_url.split("@")[-1] if "@" in database_url else "(no @ found, URL may be malformed)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

    yield

    logger.info("Shutting down capacity engine API")


# Create FastAPI app
app = FastAPI(
    title="Capacity Engine API",
    description="Slot capacity allocation and entitlements for trainer accounts",
    version="0.1.0",
    lifespan=lifespan
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CapacityError)
async def capacity_error_handler(request: Request, exc: CapacityError):
    """Render capacity errors with their HTTP status and machine-readable code."""
    log = logger.warning if exc.http_status < 500 else logger.error
    log("Capacity request failed", extra={
        "path": request.url.path,
        "error_code": exc.error_code,
        "http_status": exc.http_status,
    })
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.get("/health")
async def health():
    """Liveness probe."""
    return {"status": "ok"}


# Trainer-facing capacity routes
app.include_router(entitlements.router)

# Admin overrides and reports
app.include_router(admin_capacity.router)

# Plan catalog management
app.include_router(admin_plans.router)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
