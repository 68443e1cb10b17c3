"""
Application error taxonomy.

Services raise these; the handlers registered in main.py turn them into the
``{"success": false, "message": ...}`` envelope with the matching status code.
"""

from typing import Any, Dict, List, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_content(self) -> Dict[str, Any]:
        content: Dict[str, Any] = {"success": False, "message": self.message}
        if self.details:
            content["details"] = self.details
        return content


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class Unauthorized(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required"


class Forbidden(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You do not have access to this resource"


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class AlreadyExists(AppError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource already exists"


class SlotUnavailable(AppError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Selected slots are no longer available"


class GatewayUnavailable(AppError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Payment gateway is unavailable, please try again"


class ServerError(AppError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error"


def _format_validation_errors(exc: RequestValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else error.get("msg", ""))
    return messages


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_content())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = _format_validation_errors(exc)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": errors[0] if errors else "Invalid request", "errors": errors},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "message": ServerError.default_message},
    )
