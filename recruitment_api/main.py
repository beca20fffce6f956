"""
FastAPI application entry point for the recruitment list service.

Provides REST API for:
- Recruitment list management and permissions
- List members, notes and available responses
- Triggering and resetting participant and research data syncs
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from recruitment_api.config import settings
from recruitment_api.db import init_schema
from recruitment_sync import __version__


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(),
    ]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting recruitment list service...")

    try:
        init_schema()
    except Exception as e:
        logger.error(f"Failed to initialize database schema: {e}")
        raise

    logger.info("Recruitment list service started")
    yield

    logger.info("Shutting down recruitment list service...")


# Create FastAPI application
app = FastAPI(
    title="Recruitment List Service",
    description="Recruitment lists synchronized from the study system",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "schema": settings.db_schema,
    }


# Import and include routers
from recruitment_api.routers import recruitment_lists
app.include_router(recruitment_lists.router, prefix="/api/v1/recruitment-lists", tags=["recruitment-lists"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "recruitment_api.main:app",
        host="0.0.0.0",
        port=8080,
        reload=settings.debug,
    )
