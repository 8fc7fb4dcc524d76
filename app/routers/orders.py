import logging

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients import CatalogClient, IdentityClient
from app.config import settings
from app.database import get_db
from app.models.order import OrderStatus
from app.schemas.order import OrderCreate, OrderResponse
from app.services import order_service

router = APIRouter()
logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def get_identity_client(request: Request) -> IdentityClient:
    return IdentityClient(request.app.state.http_client, settings.auth_service_url)


def get_catalog_client(request: Request) -> CatalogClient:
    return CatalogClient(request.app.state.http_client, settings.product_service_url)


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def place_order(
    body: OrderCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: IdentityClient = Depends(get_identity_client),
    catalog: CatalogClient = Depends(get_catalog_client),
) -> OrderResponse:
    request_id = _request_id(request)
    logger.info(
        "Received place_order request",
        extra={"request_id": request_id, "user_id": body.user_id, "product_id": body.product_id},
    )
    order = await order_service.place_order(db, body, identity, catalog, request_id)

    relay = getattr(request.app.state, "outbox_relay", None)
    if relay is not None:
        relay.wake()
    return OrderResponse.model_validate(order)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: int, db: AsyncSession = Depends(get_db)) -> OrderResponse:
    order = await order_service.get_order(db, order_id)
    return OrderResponse.model_validate(order)


@router.get("/user/{user_id}", response_model=list[OrderResponse])
async def get_orders_by_user(user_id: int, db: AsyncSession = Depends(get_db)) -> list[OrderResponse]:
    orders = await order_service.list_orders_by_user(db, user_id)
    return [OrderResponse.model_validate(o) for o in orders]


@router.get("", response_model=list[OrderResponse])
async def get_all_orders(db: AsyncSession = Depends(get_db)) -> list[OrderResponse]:
    orders = await order_service.list_orders(db)
    return [OrderResponse.model_validate(o) for o in orders]


@router.patch("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: int,
    status: OrderStatus,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    logger.info(
        "Received update_order_status request",
        extra={"request_id": _request_id(request), "order_id": order_id, "status": status.value},
    )
    order = await order_service.update_order_status(db, order_id, status)
    return OrderResponse.model_validate(order)


@router.delete("/{order_id}", response_model=OrderResponse)
async def cancel_order(order_id: int, request: Request, db: AsyncSession = Depends(get_db)) -> OrderResponse:
    logger.info(
        "Received cancel_order request",
        extra={"request_id": _request_id(request), "order_id": order_id},
    )
    order = await order_service.cancel_order(db, order_id)
    return OrderResponse.model_validate(order)
