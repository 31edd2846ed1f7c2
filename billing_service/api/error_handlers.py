"""
Custom exception handlers for FastAPI.

Every failure is rendered with the same envelope::

    {"error": {"type", "code", "message", "description"?, "field"?},
     "meta": {"request_id", "timestamp"}}
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.status import HTTP_400_BAD_REQUEST, HTTP_500_INTERNAL_SERVER_ERROR

from billing_service.core.errors import BillingError
from billing_service.core.observability import capture_exception
from billing_service.models.tables import utcnow
from billing_service.utils.helpers import isoformat_z

logger = logging.getLogger(__name__)

_LOCATION_PREFIXES = {"body", "query", "path", "header", "cookie"}


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("x-request-id")
    if not request_id:
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id
    return request_id


def error_response(request: Request, status_code: int, error: Dict[str, Any]) -> JSONResponse:
    request_id = get_request_id(request)
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "meta": {"request_id": request_id, "timestamp": isoformat_z(utcnow())},
        },
        headers={"X-Request-ID": request_id},
    )


def _field_from_loc(loc: Any) -> Optional[str]:
    parts = [str(p) for p in (loc or ()) if p not in _LOCATION_PREFIXES]
    return ".".join(parts) or None


def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed code=%s: %s", request.method, request.url.path, exc.code, exc.message)
    return error_response(request, exc.status_code, exc.to_dict())


def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    message = str(first.get("msg") or "Invalid request")
    # pydantic prefixes messages raised from field validators
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    error: Dict[str, Any] = {
        "type": "validation_error",
        "code": "VALIDATION_FAILED",
        "message": message,
    }
    field = _field_from_loc(first.get("loc"))
    if field:
        error["field"] = field
    if len(errors) > 1:
        error["description"] = f"{len(errors)} validation errors; first reported"
    return error_response(request, HTTP_400_BAD_REQUEST, error)


def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        error = {"type": "not_found", "code": "ROUTE_NOT_FOUND", "message": f"No route for {request.url.path}"}
    elif exc.status_code == 405:
        error = {"type": "not_found", "code": "METHOD_NOT_ALLOWED", "message": f"{request.method} not allowed"}
    else:
        error = {"type": "internal_error" if exc.status_code >= 500 else "validation_error",
                 "code": f"HTTP_{exc.status_code}",
                 "message": str(exc.detail)}
    return error_response(request, exc.status_code, error)


def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    capture_exception(exc)
    return error_response(
        request,
        HTTP_500_INTERNAL_SERVER_ERROR,
        {"type": "internal_error", "code": "INTERNAL_ERROR", "message": "Internal server error"},
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
