import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .observability import REQUEST_ID_HEADER, get_request_id, log_ctx, log_ctx_json

logger = logging.getLogger("inhabit-errors")


class InhabitError(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class InvalidInputError(InhabitError):
    """Malformed input rejected before any computation. Never retried."""

    def __init__(self, field: str, issue: str):
        super().__init__(
            code="VALIDATION_FAILED",
            message="Validation failed",
            status_code=400,
            details={"fieldErrors": [{"field": field, "issue": issue}]},
        )
        self.field = field
        self.issue = issue


class NotFoundError(InhabitError):
    def __init__(self, resource: str, resource_id: Any):
        super().__init__(
            code="NOT_FOUND",
            message=f"{resource.capitalize()} not found",
            status_code=404,
            details={"resource": resource, "id": str(resource_id)},
        )


def setup_error_handlers(app: FastAPI) -> None:
    def _error_response(request: Request, status_code: int, code: str, message: str, details: dict) -> JSONResponse:
        response = JSONResponse(
            status_code=status_code,
            content={"error": {"code": code, "message": message, "details": details}},
        )
        request_id = get_request_id(request)
        if request_id:
            response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.exception_handler(InhabitError)
    async def inhabit_error_handler(request: Request, exc: InhabitError):
        return _error_response(request, exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        field_errors = [
            {"field": ".".join(str(part) for part in error["loc"]), "issue": error["msg"]}
            for error in exc.errors()
        ]
        return _error_response(
            request,
            400,
            "VALIDATION_FAILED",
            "Validation failed",
            {"fieldErrors": field_errors},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        code = {401: "UNAUTHORIZED", 403: "FORBIDDEN", 404: "NOT_FOUND"}.get(exc.status_code, "INTERNAL_ERROR")
        message = exc.detail if isinstance(exc.detail, str) else "Error"
        return _error_response(request, exc.status_code, code, message, {})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception context=%s",
            log_ctx_json(log_ctx(request, extra={"status_code": 500})),
            exc_info=True,
        )
        return _error_response(request, 500, "INTERNAL_ERROR", "Internal server error", {})
