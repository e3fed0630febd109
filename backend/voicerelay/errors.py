"""Application error taxonomy and the handlers that render it as ``{"error": ...}``."""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base error carrying the HTTP status it maps to."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class MissingCredentialError(AppError):
    status_code = 401


class InvalidCredentialError(AppError):
    status_code = 401


class MalformedRequestError(AppError):
    status_code = 400


class NotFoundError(AppError):
    """Absent rows and rows owned by someone else are reported the same way."""

    status_code = 404


class UpstreamError(AppError):
    """Storage, database or third-party API failure."""

    status_code = 500


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return error_response(exc.status_code, exc.message)


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": message},
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query"))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return error_response(400, "; ".join(parts) or "Invalid request")


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return error_response(500, "Internal server error")


async def catch_unexpected_errors(request: Request, call_next):
    """Unhandled exceptions become a 500 ``{error}`` response. Runs inside CORSMiddleware."""
    try:
        return await call_next(request)
    except Exception as exc:
        return await _unexpected_error_handler(request, exc)


def register_error_handlers(app: FastAPI) -> None:
    """Install the handlers. Call before adding CORSMiddleware."""
    app.middleware("http")(catch_unexpected_errors)
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)
