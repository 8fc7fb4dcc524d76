import logging

from fastapi import APIRouter, Depends, Request, status

from payment_service.models import PaymentStatus
from payment_service.schemas import PaymentRequest, PaymentResponse
from payment_service.service import PaymentService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_payment_service(request: Request) -> PaymentService:
    return request.app.state.payment_service


@router.post("", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def process_payment(
    body: PaymentRequest,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
) -> PaymentResponse:
    logger.info(
        "Received process_payment request",
        extra={"request_id": getattr(request.state, "request_id", "unknown"), "order_id": body.order_id},
    )
    payment = await service.process_payment(body)
    return PaymentResponse.model_validate(payment)


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(payment_id: int, service: PaymentService = Depends(get_payment_service)) -> PaymentResponse:
    return PaymentResponse.model_validate(await service.get_payment(payment_id))


@router.get("/order/{order_id}", response_model=PaymentResponse)
async def get_payment_by_order(
    order_id: int, service: PaymentService = Depends(get_payment_service)
) -> PaymentResponse:
    return PaymentResponse.model_validate(await service.get_payment_by_order(order_id))


@router.get("", response_model=list[PaymentResponse])
async def list_payments(service: PaymentService = Depends(get_payment_service)) -> list[PaymentResponse]:
    return [PaymentResponse.model_validate(p) for p in await service.list_payments()]


@router.get("/status/{payment_status}", response_model=list[PaymentResponse])
async def list_payments_by_status(
    payment_status: PaymentStatus, service: PaymentService = Depends(get_payment_service)
) -> list[PaymentResponse]:
    return [PaymentResponse.model_validate(p) for p in await service.list_payments_by_status(payment_status)]


@router.post("/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    payment_id: int,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
) -> PaymentResponse:
    logger.info(
        "Received refund request",
        extra={"request_id": getattr(request.state, "request_id", "unknown"), "payment_id": payment_id},
    )
    return PaymentResponse.model_validate(await service.refund_payment(payment_id))
