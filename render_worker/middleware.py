from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging
import traceback

from render_worker.errors import AdmissionError, QueueFull

logger = logging.getLogger(__name__)

QUEUE_FULL_RETRY_AFTER_SECONDS = 5

def add_error_handling_middleware(app: FastAPI):
    """Add error handling middleware to FastAPI app"""

    @app.exception_handler(AdmissionError)
    async def admission_exception_handler(request: Request, exc: AdmissionError):
        """Rejected submissions"""
        logger.warning(f"Rejected submission ({exc.code}): {exc.message}")
        headers = None
        if isinstance(exc, QueueFull):
            headers = {"Retry-After": str(QUEUE_FULL_RETRY_AFTER_SECONDS)}
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "code": exc.status_code,
                "error": exc.code,
                "message": exc.message,
                "hint": exc.hint,
                "retryable": exc.retryable
            },
            headers=headers
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with proper error format"""
        logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "code": exc.status_code,
                "message": exc.detail,
                "hint": "Check the request parameters and try again",
                "retryable": exc.status_code >= 500
            }
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error(f"Request validation failed: {exc.errors()}")
        return JSONResponse(
            status_code=400,
            content={
                "code": 400,
                "message": "Invalid request parameters",
                "hint": str(exc.errors()),
                "retryable": False
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions"""
        logger.error(f"Unhandled exception: {str(exc)}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return JSONResponse(
            status_code=500,
            content={
                "code": 500,
                "message": "Internal server error",
                "hint": "Please try again later or contact support",
                "retryable": True
            }
        )
