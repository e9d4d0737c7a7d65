#!/usr/bin/env python3
"""
Error handlers for the web application.
"""

import logging
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse

from notification.exceptions import (
    DeduplicationUnavailable,
    InvalidTransitionError,
    NotificationError,
    NotificationNotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)


def status_code_for(exc: NotificationError) -> int:
    if isinstance(exc, NotificationNotFound):
        return 404
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, InvalidTransitionError):
        return 409
    if isinstance(exc, DeduplicationUnavailable):
        return 503
    return 500


async def notification_exception_handler(
    request: Request,
    exc: NotificationError
) -> JSONResponse:
    """
    Handle engine exceptions.

    Args:
        request: The FastAPI request.
        exc: The engine exception.

    Returns:
        JSONResponse with error details.
    """
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"Engine error in {request.url.path}: {exc}", exc_info=True)
    else:
        logger.info(f"Rejected {request.url.path}: {exc}")

    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": str(exc),
            "type": exc.__class__.__name__
        }
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException
) -> JSONResponse:
    """
    Handle FastAPI HTTP exceptions with consistent format.
    """
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
            "type": "HTTPException"
        }
    )


async def general_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """
    Handle unexpected exceptions.
    """
    logger.exception(f"Unexpected error in {request.url.path}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "type": "InternalError"
        }
    )
