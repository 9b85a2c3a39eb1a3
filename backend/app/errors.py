"""Error taxonomy shared by the services and the HTTP layer.

Every rejected request is rendered as ``{"error": <kind>, "detail": <detail>}``
with the status code bound to the error class.
"""

from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class ServiceError(Exception):
    kind = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: Any = None):
        self.detail = detail if detail is not None else self.kind
        super().__init__(str(self.detail))


class ValidationError(ServiceError):
    kind = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class Unauthorized(ServiceError):
    kind = "unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(ServiceError):
    kind = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(ServiceError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class Conflict(ServiceError):
    kind = "conflict"
    status_code = status.HTTP_409_CONFLICT


class PolicyViolation(ServiceError):
    kind = "policy_violation"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class UpstreamError(ServiceError):
    kind = "upstream_error"
    status_code = status.HTTP_502_BAD_GATEWAY


def error_body(kind: str, detail: Any) -> dict:
    return {"error": kind, "detail": detail}


def register_error_handlers(application: FastAPI) -> None:
    @application.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.kind, exc.detail))

    @application.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=ValidationError.status_code,
            content=error_body(ValidationError.kind, jsonable_encoder(exc.errors())),
        )
