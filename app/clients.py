"""
HTTP clients for the collaborators the order service calls synchronously.

Every call has a bounded timeout (set on the shared httpx.AsyncClient);
timeouts, transport errors and unreadable bodies surface as UpstreamUnavailable,
except on the stock reservation where a non-2xx or transport failure is a
StockReservationFailed.
"""

import logging

import httpx

from app.schemas.order import ProductSnapshot
from shared.errors import (
    ProductNotFound,
    StockReservationFailed,
    UpstreamUnavailable,
    UserNotFound,
)

logger = logging.getLogger(__name__)


def _unwrap(response: httpx.Response):
    # Collaborators wrap payloads as {"success": ..., "message": ..., "data": ...}
    body = response.json()
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


class IdentityClient:
    def __init__(self, http: httpx.AsyncClient, base_url: str):
        self._http = http
        self._base_url = base_url.rstrip("/")

    async def verify_user(self, user_id: int) -> None:
        try:
            response = await self._http.get(f"{self._base_url}/auth/users/{user_id}")
        except httpx.HTTPError as exc:
            logger.error("Auth service unreachable", extra={"user_id": user_id, "error": str(exc)})
            raise UpstreamUnavailable(f"Failed to validate user: {exc}") from exc

        if response.status_code == 404:
            raise UserNotFound(user_id)
        if response.is_error:
            raise UpstreamUnavailable(f"Failed to validate user: auth service returned {response.status_code}")


class CatalogClient:
    def __init__(self, http: httpx.AsyncClient, base_url: str):
        self._http = http
        self._base_url = base_url.rstrip("/")

    async def get_product(self, product_id: int) -> ProductSnapshot:
        try:
            response = await self._http.get(f"{self._base_url}/products/{product_id}")
        except httpx.HTTPError as exc:
            logger.error("Product service unreachable", extra={"product_id": product_id, "error": str(exc)})
            raise UpstreamUnavailable(f"Failed to fetch product details: {exc}") from exc

        if response.status_code == 404:
            raise ProductNotFound(product_id)
        if response.is_error:
            raise UpstreamUnavailable(
                f"Failed to fetch product details: product service returned {response.status_code}"
            )
        try:
            return ProductSnapshot.model_validate(_unwrap(response))
        except ValueError as exc:
            logger.error("Unreadable product response", extra={"product_id": product_id, "error": str(exc)})
            raise UpstreamUnavailable("Failed to fetch product details: unreadable response") from exc

    async def check_stock(self, product_id: int, quantity: int) -> bool:
        try:
            response = await self._http.get(
                f"{self._base_url}/products/{product_id}/check-stock",
                params={"quantity": quantity},
            )
            response.raise_for_status()
            available = _unwrap(response)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Stock check failed", extra={"product_id": product_id, "error": str(exc)})
            raise UpstreamUnavailable(f"Failed to check stock: {exc}") from exc

        if not isinstance(available, bool):
            raise UpstreamUnavailable(f"Failed to check stock: unexpected answer {available!r}")
        return available

    async def reserve_stock(self, product_id: int, quantity: int) -> ProductSnapshot | None:
        """
        Reduce stock by `quantity`. Any 2xx means the stock was taken; the
        returned snapshot is None when the body could not be read.
        """
        try:
            response = await self._http.post(
                f"{self._base_url}/products/{product_id}/reduce-stock",
                json={"quantity": quantity},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "Failed to reduce stock",
                extra={"product_id": product_id, "quantity": quantity, "error": str(exc)},
            )
            raise StockReservationFailed(f"Failed to reduce stock: {exc}") from exc

        try:
            return ProductSnapshot.model_validate(_unwrap(response))
        except ValueError as exc:
            logger.warning(
                "Stock reduced but response was unreadable",
                extra={"product_id": product_id, "quantity": quantity, "error": str(exc)},
            )
            return None
