import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("photo_catalog")


class CatalogError(Exception):
    """Base for every failure a handler reports to the request layer."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationFailed(CatalogError):
    code = "VALIDATION_FAILED"
    status_code = 400


class Unauthenticated(CatalogError):
    code = "UNAUTHENTICATED"
    status_code = 401


class NotAuthorized(CatalogError):
    code = "NOT_AUTHORIZED"
    status_code = 403


class NotFound(CatalogError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidStateTransition(CatalogError):
    code = "INVALID_STATE_TRANSITION"
    status_code = 409


class UpstreamFailure(CatalogError):
    code = "UPSTREAM_FAILURE"
    status_code = 502


_HTTP_CODES = {
    400: ValidationFailed.code,
    401: Unauthenticated.code,
    403: NotAuthorized.code,
    404: NotFound.code,
    409: InvalidStateTransition.code,
    429: "RATE_LIMITED",
}


def error_body(code: str, message: str) -> dict[str, str]:
    return {"code": code, "message": message}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CatalogError)
    async def catalog_error_handler(request: Request, exc: CatalogError):
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
        return JSONResponse(
            error_body(exc.code, exc.message), status_code=exc.status_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg")
        else:
            message = "Invalid request"
        return JSONResponse(error_body(ValidationFailed.code, message), status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        code = _HTTP_CODES.get(exc.status_code, "HTTP_ERROR")
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(
            error_body(code, detail),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("event=unhandled_error path=%s", request.url.path)
        return JSONResponse(
            error_body(CatalogError.code, "An unexpected error occurred"), status_code=500
        )
