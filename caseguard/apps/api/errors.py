from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from caseguard.apps.api.response import error_response
from caseguard.core.errors import CaseGuardError


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    503: "SERVICE_UNAVAILABLE",
}
_FALLBACK_MESSAGE = "Request failed"


def _envelope(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


def parse_http_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    """Split an HTTPException detail into (code, message, extra details).

    Routes raise ``detail={"code": ..., "message": ...}``; anything else gets
    the code registered for its status.
    """
    code = _STATUS_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, str):
        return code, detail, None
    if not isinstance(detail, dict):
        return code, _FALLBACK_MESSAGE, None
    extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
    return str(detail.get("code") or code), str(detail.get("message") or _FALLBACK_MESSAGE), extra or None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # FastAPI's HTTPException subclasses Starlette's, so one handler covers both.
    code, message, details = parse_http_detail(exc.detail, exc.status_code)
    return _envelope(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def caseguard_exception_handler(request: Request, exc: CaseGuardError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("api_domain_error code=%s path=%s", exc.code, request.url.path, exc_info=exc)
    return _envelope(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=str(exc) or exc.code,
        details=exc.details(),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Stack traces stay in the log.
    logger.exception("api_unhandled_error path=%s", request.url.path, exc_info=exc)
    return _envelope(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(CaseGuardError, caseguard_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
