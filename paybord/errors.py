"""Error taxonomy for the reconciliation pipeline.

Each error carries the HTTP status it maps to. Only authentication and
validation failures are rejections a provider should see; storage and
gateway outages map to 503 so the caller retries an idempotent operation.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_503_SERVICE_UNAVAILABLE,
)


class PaybordError(Exception):
    http_status = HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AuthenticationError(PaybordError):
    """Missing (400) or wrong (401) webhook signature."""

    http_status = HTTP_401_UNAUTHORIZED

    def __init__(self, message: str, status_code: int = HTTP_401_UNAUTHORIZED):
        super().__init__(message)
        self.http_status = status_code


class ValidationError(PaybordError):
    http_status = HTTP_400_BAD_REQUEST


class MalformedEventError(ValidationError):
    """Recognized event type with an unusable payload."""


class NotFoundError(PaybordError):
    http_status = HTTP_404_NOT_FOUND


class InvalidStateError(PaybordError):
    """Operation not permitted from the entity's current status."""

    http_status = HTTP_409_CONFLICT


class DownstreamFailure(PaybordError):
    """Storage or provider unavailable. Safe to retry."""

    http_status = HTTP_503_SERVICE_UNAVAILABLE


class GatewayUnavailableError(DownstreamFailure):
    """The charge attempt never got a definitive answer from the gateway."""


async def paybord_error_handler(request: Request, exc: PaybordError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content={"error": exc.message})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PaybordError, paybord_error_handler)
