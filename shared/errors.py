"""
Error taxonomy shared by both services and its mapping onto HTTP responses.
"""

import logging
from datetime import datetime

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for errors surfaced by the order and payment services."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Internal Server Error"


class NotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "Not Found"

    def __init__(self, resource: str, key: object, field: str = "id"):
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} not found with {field}: {key}")


class UserNotFound(NotFound):
    def __init__(self, user_id: int):
        super().__init__("User", user_id)


class ProductNotFound(NotFound):
    def __init__(self, product_id: int):
        super().__init__("Product", product_id)


class InvalidInput(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Bad Request"


class InvalidStateTransition(InvalidInput):
    pass


class DuplicatePayment(InvalidInput):
    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Payment already exists for order ID: {order_id}")


class InsufficientStock(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Bad Request"

    def __init__(self, product_name: str, requested: int):
        self.product_name = product_name
        self.requested = requested
        super().__init__(f"Insufficient stock for product: {product_name}")


class StockReservationFailed(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Bad Request"


class UpstreamUnavailable(ServiceError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = "Service Unavailable"


class PublishFailed(ServiceError):
    """The broker rejected or never acknowledged a record."""

    def __init__(self, topic: str, key: str, reason: str):
        self.topic = topic
        self.key = key
        self.reason = reason
        super().__init__(f"Failed to publish to {topic} (key={key}): {reason}")


def _error_body(status_code: int, error: str, message: str) -> dict:
    return {
        "status": status_code,
        "error": error,
        "message": message,
        "timestamp": datetime.utcnow().isoformat(),
    }


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    logger.info(
        "Request failed with %s",
        type(exc).__name__,
        extra={
            "path": request.url.path,
            "request_id": getattr(request.state, "request_id", None),
            "error": str(exc),
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.status_code, exc.error, str(exc)),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled exception",
        extra={
            "path": request.url.path,
            "request_id": getattr(request.state, "request_id", None),
            "error_type": type(exc).__name__,
        },
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            ServiceError.error,
            "An unexpected error occurred",
        ),
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
