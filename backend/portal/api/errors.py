"""Global error handlers producing the `{success, message, code, request_id}` envelope."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from portal.api.request_id import get_request_id
from portal.domain.messaging.exceptions import MessagingError
from portal.obs import logging as obs_logging

_LOG = obs_logging.get_logger("portal.http")

_HTTP_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


def _envelope(request: Request, status_code: int, message: str, code: str, **extra) -> JSONResponse:
    payload = {
        "success": False,
        "message": message,
        "code": code,
        "request_id": get_request_id(request),
        **extra,
    }
    return JSONResponse(status_code=status_code, content=payload)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(MessagingError)
    async def messaging_exc_handler(request: Request, exc: MessagingError):  # type: ignore[override]
        if exc.status_code >= 500:
            _LOG.error("messaging.internal_error", extra={"detail": exc.message})
        return _envelope(request, exc.status_code, exc.message, exc.code)

    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        code = _HTTP_CODES.get(exc.status_code, "INTERNAL_ERROR" if exc.status_code >= 500 else "HTTP_ERROR")
        return _envelope(request, exc.status_code, str(exc.detail), code)

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        errors = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return _envelope(request, 400, "validation_error", "VALIDATION_ERROR", errors=errors)

    @app.exception_handler(Exception)
    async def unhandled_exc_handler(request: Request, exc: Exception):  # type: ignore[override]
        _LOG.exception("http.unhandled_error", extra={"path": request.url.path})
        return _envelope(request, 500, "internal_error", "INTERNAL_ERROR")
