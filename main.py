"""
PayGuard - FastAPI Application Entry Point

Hosts the payroll integrity services: lifespan management of database
connections and ledger confirmation polls, error handlers and health.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from payguard.config import settings
from payguard.database import init_db, close_db, async_session_factory
from payguard.services.explanation_enrichment import close_enricher
from payguard.services.ledger_client import close_ledger_client
from payguard.utils.error_handling import setup_exception_handlers

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI.
    Handles startup and shutdown events.
    """
    logger.info(f"Starting {settings.app_name}...")
    logger.info(f"Environment: {settings.app_env}")

    # Initialize database (dev only - use migrations in production)
    if settings.is_development:
        await init_db()
        logger.info("Database tables initialized")

    if not settings.ledger_configured:
        logger.warning("Ledger not configured: batches will be stored as failed (not chain-proven)")
    if not settings.enrichment_enabled:
        logger.info("Explanation enrichment disabled: template explanations only")

    yield

    logger.info(f"Shutting down {settings.app_name}...")
    # Cancel outstanding confirmation polls before the database goes away
    await close_ledger_client()
    await close_enricher()
    await close_db()
    logger.info("Database connections closed")


app = FastAPI(
    title=settings.app_name,
    description="Payroll integrity screening with on-chain identity and batch proofs",
    version="0.1.0",
    docs_url="/api/docs" if settings.is_development else None,
    redoc_url=None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_exception_handlers(app)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": settings.app_name,
        "status": "running",
        "environment": settings.app_env,
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    database = "connected"
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {e}")
        database = "unavailable"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database,
        "ledger": "configured" if settings.ledger_configured else "not_configured",
        "enrichment": "enabled" if settings.enrichment_enabled else "disabled",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.is_development)
