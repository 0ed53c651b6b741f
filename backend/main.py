"""
Scanner Bridge - Main Application
FastAPI WebSocket service that drives SANE scanners for web clients
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from scanner_bridge.api import scanner
from scanner_bridge.core.config import settings
from scanner_bridge.services.cleanup import cleanup_scheduler
from scanner_bridge.services.connection_registry import connection_registry
from scanner_bridge.services.job_controller import job_controller

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info(f"Scanner Bridge starting on port {settings.WS_PORT}")
    Path(settings.SCANS_DIR).mkdir(parents=True, exist_ok=True)
    logger.info(f"Scanner Bridge ready on ws://localhost:{settings.WS_PORT}")

    yield

    # Shutdown
    logger.info("Shutting down Scanner Bridge...")
    await job_controller.shutdown()
    await cleanup_scheduler.shutdown()
    logger.info("Scanner Bridge stopped")


app = FastAPI(
    title=settings.APP_NAME,
    description="WebSocket bridge between web clients and SANE document scanners",
    version=settings.APP_VERSION,
    lifespan=lifespan
)

app.include_router(scanner.router, tags=["Scanner"])


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": f"{settings.APP_NAME} API",
        "version": settings.APP_VERSION,
        "websocket": "/"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "connections": len(connection_registry),
        "active_scans": job_controller.active_jobs
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.WS_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
