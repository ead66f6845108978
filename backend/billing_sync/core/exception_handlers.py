"""
FastAPI exception handlers for custom exceptions.

WHY: Exception handlers convert our custom exceptions into properly
formatted JSON responses with correct HTTP status codes. For the webhook
endpoint the status code is the whole contract: 2xx acknowledges, anything
else makes the provider redeliver.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing_sync.core.exceptions import AppException

logger = logging.getLogger(__name__)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Handle custom AppException and its subclasses.

    Args:
        request: The FastAPI request object
        exc: The custom exception instance

    Returns:
        JSONResponse with error details
    """
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        f"{exc.__class__.__name__}: {exc.message}",
        extra={
            "path": request.url.path,
            "status_code": exc.status_code,
            "retryable": exc.retryable,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Handle Pydantic validation errors.

    Args:
        request: The FastAPI request object
        exc: The Pydantic validation error

    Returns:
        JSONResponse with validation error details
    """
    errors = []
    for error in exc.errors():
        errors.append(
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
        )

    return JSONResponse(
        status_code=400,
        content={
            "error": "ValidationError",
            "message": "Request validation failed",
            "status_code": 400,
            "retryable": False,
            "details": {"errors": errors},
        },
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """
    Handle Starlette HTTP exceptions (404, 405 raised before our routes).

    Args:
        request: The FastAPI request object
        exc: The HTTP exception

    Returns:
        JSONResponse with error details
    """
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTPException",
            "message": exc.detail,
            "status_code": exc.status_code,
            "retryable": False,
            "details": None,
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unexpected exceptions.

    WHY: Log the full traceback but return a generic error so no
    implementation detail leaks. A 500 also makes the provider retry.

    Args:
        request: The FastAPI request object
        exc: The unexpected exception

    Returns:
        JSONResponse with generic error message
    """
    logger.exception(
        f"Unhandled error on {request.method} {request.url.path}",
        exc_info=exc,
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "InternalServerError",
            "message": "An unexpected error occurred",
            "status_code": 500,
            "retryable": True,
            "details": None,
        },
    )
