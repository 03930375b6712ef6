"""
FastAPI Backend for the US Household Income pipeline.

Serves the cleaned snapshot and accepts raw records; every append refreshes
the snapshot before the response is returned.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.routes import records, snapshot
from income_pipeline.config import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting US Household Income API...")

    try:
        from income_pipeline.database import create_all_tables

        create_all_tables()
    except SQLAlchemyError as e:
        logger.warning(f"[STARTUP] Failed to create tables: {e}")

    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="US Household Income API",
    description="Cleaned household income snapshot with automatic refresh",
    version="1.0.0",
    lifespan=lifespan,
)

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.api.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)

# Include routers
app.include_router(snapshot.router, prefix="/api/snapshot", tags=["snapshot"])
app.include_router(records.router, prefix="/api/records", tags=["records"])


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "version": "1.0.0", "service": "US Household Income API"}
