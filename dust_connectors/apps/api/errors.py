from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from dust_connectors.core.errors import (
    AuthExpiredError,
    ConfigurationError,
    ConnectorStateError,
    ConnectorsError,
    ExternalRevokeError,
    InvalidRequestError,
    NotFoundError,
    OAuthTargetMismatchError,
    ProviderNotSupportedError,
)


logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins.
_ERROR_TYPES: list[tuple[type[ConnectorsError], int, str]] = [
    (ProviderNotSupportedError, 400, "connector_provider_not_supported"),
    (OAuthTargetMismatchError, 400, "connector_oauth_target_mismatch"),
    (InvalidRequestError, 400, "invalid_request_error"),
    (AuthExpiredError, 400, "connector_auth_expired"),
    (NotFoundError, 404, "connector_not_found"),
    (ConnectorStateError, 409, "connector_state_conflict"),
    (ExternalRevokeError, 502, "external_revoke_failed"),
]

_DEFAULT_ERROR_TYPES: dict[int, str] = {
    400: "invalid_request_error",
    401: "unauthorized",
    404: "connector_not_found",
    405: "invalid_request_error",
    409: "connector_state_conflict",
    422: "invalid_request_error",
    500: "internal_server_error",
}


def error_payload(error_type: str, message: str) -> dict[str, Any]:
    return {"error": {"type": error_type, "message": message}}


def classify_error(exc: ConnectorsError) -> tuple[int, str]:
    for error_class, status_code, error_type in _ERROR_TYPES:
        if isinstance(exc, error_class):
            return status_code, error_type
    return 500, "internal_server_error"


async def connectors_exception_handler(request: Request, exc: ConnectorsError) -> JSONResponse:
    status_code, error_type = classify_error(exc)
    if status_code >= 500:
        logger.error(
            "request_failed path=%s error_type=%s error=%s",
            request.url.path,
            error_type,
            exc,
            exc_info=isinstance(exc, ConfigurationError),
        )
    return JSONResponse(content=error_payload(error_type, str(exc)), status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    # Normalize HTTPExceptions (auth, unknown routes) into the shared error envelope.
    error_type = _DEFAULT_ERROR_TYPES.get(exc.status_code, "invalid_request_error")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        content=error_payload(error_type, message),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Body validation failures are plain invalid requests for callers.
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid request: {location} {first.get('msg', '')}".strip()
    return JSONResponse(content=error_payload("invalid_request_error", message), status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("request_unhandled_error path=%s", request.url.path)
    return JSONResponse(
        content=error_payload("internal_server_error", "Internal server error"),
        status_code=500,
    )
