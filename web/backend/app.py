#!/usr/bin/env python3
"""
Notification Engine - FastAPI Application

HTTP Submit and Query API for the notification engine, with automatic
API documentation.

Usage:
    python -m web.backend.app

Then open:
    - http://localhost:8080/docs - API Documentation (Swagger UI)
    - http://localhost:8080/redoc - Alternative API Documentation
"""

import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from notification.exceptions import NotificationError

from .config import get_config
from .dependencies import shutdown_engine
from .exceptions import (
    notification_exception_handler,
    http_exception_handler,
    general_exception_handler
)
from .routers import notifications_router

logger = logging.getLogger(__name__)

# Load configuration
config = get_config()

# Create FastAPI app
app = FastAPI(
    title="Notification API",
    description="Submit notifications and query per-user notification state",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.web.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register exception handlers
app.add_exception_handler(NotificationError, notification_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

# Include routers
app.include_router(notifications_router)


@app.on_event("shutdown")
def on_shutdown():
    shutdown_engine()


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "notification-api"}


def main():
    """Run the web server."""
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, config.logging.level),
        format=config.logging.format
    )
    logger.info(f"Starting Notification API on {config.web.host}:{config.web.port}")
    logger.info(f"API Docs: http://{config.web.host}:{config.web.port}/docs")

    uvicorn.run(
        "web.backend.app:app",
        host=config.web.host,
        port=config.web.port,
        reload=False,
        log_level="info"
    )


if __name__ == "__main__":
    main()
