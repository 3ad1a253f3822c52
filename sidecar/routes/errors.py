"""
Translate sidecar failures into JSON error responses.

Body shape: {"error": {"code", "message", "requestId"}}; duplicates also
carry the existing record.
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sidecar.infrastructure.observability.logging import get_logger
from sidecar.services.errors import DuplicateSubmission, SidecarError, UpstreamError

logger = get_logger(__name__)

HTTP_ERROR_CODES = {
    404: "not_found",
    405: "method_not_allowed",
}


def error_body(request: Request, code: str, message: str) -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "requestId": getattr(request.state, "request_id", None),
        }
    }


async def sidecar_error_handler(request: Request, exc: SidecarError) -> JSONResponse:
    status_code = exc.status_code
    message = exc.message
    if isinstance(exc, UpstreamError) and status_code >= 500:
        # Upstream detail stays in the logs.
        message = "CRM request failed"

    log = logger.warning if status_code < 500 else logger.error
    log(
        "Request failed",
        path=request.url.path,
        status_code=status_code,
        error_code=exc.error_code,
        error=exc.message,
        error_type=type(exc).__name__,
    )

    body = error_body(request, exc.error_code, message)
    if isinstance(exc, DuplicateSubmission):
        body["error"]["existingRecord"] = exc.existing_record.model_dump(by_alias=True)
    return JSONResponse(status_code=status_code, content=body)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))

    logger.warning(
        "Request validation failed",
        path=request.url.path,
        method=request.method,
        error_count=len(errors),
        error=message,
    )
    return JSONResponse(status_code=400, content=error_body(request, "invalid_request", message))


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = HTTP_ERROR_CODES.get(exc.status_code, "http_error")
    message = exc.detail if isinstance(exc.detail, str) else code.replace("_", " ").capitalize()
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(request, code, message),
        headers=getattr(exc, "headers", None),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SidecarError, sidecar_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
