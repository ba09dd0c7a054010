"""Error kinds → HTTP responses. Bodies are always ``{error, message}``."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from creditflow.services.errors import ApprovalError, ErrorKind
from creditflow.services.pipeline import Err, Result, to_err

logger = logging.getLogger(__name__)

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.INVALID_TRANSITION: 400,
    ErrorKind.INSUFFICIENT_CREDITS: 400,
    ErrorKind.EXCEEDS_HOLD: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.CONSISTENCY: 500,
    ErrorKind.TRANSIENT: 503,
}

HTTP_ERROR_CODES: dict[int, str] = {
    400: "ValidationError",
    401: "Unauthenticated",
    403: "Forbidden",
    404: "NotFound",
    405: "MethodNotAllowed",
    409: "Conflict",
}


class PipelineFailure(Exception):
    """Carries an ``Err`` out of an endpoint to the exception handler."""

    def __init__(self, err: Err) -> None:
        super().__init__(err.message)
        self.err = err


def unwrap(result: Result):
    if isinstance(result, Err):
        raise PipelineFailure(result)
    return result.value


def error_response(err: Err) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_KIND[err.kind],
        content={"error": err.code, "message": err.message},
    )


async def pipeline_failure_handler(request: Request, exc: PipelineFailure) -> JSONResponse:
    return error_response(exc.err)


async def approval_error_handler(request: Request, exc: ApprovalError) -> JSONResponse:
    return error_response(to_err(exc))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": "ValidationError", "message": message})


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": HTTP_ERROR_CODES.get(exc.status_code, "HTTPError"), "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "InternalError", "message": "Internal server error"})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PipelineFailure, pipeline_failure_handler)
    app.add_exception_handler(ApprovalError, approval_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
