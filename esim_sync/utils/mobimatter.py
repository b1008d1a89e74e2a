import httpx
import logging
from typing import Any

from esim_sync.config import Settings
from esim_sync.exceptions import (
    InvalidResponse,
    OrderCreateRejected,
    ProviderRejected,
    ProviderUnavailable,
)
from esim_sync.models import ActivationArtifact, Failed, OrderLookup, Outcome, Pending, Ready

logger = logging.getLogger(__name__)

# lineItemDetails names carrying the activation artifact
QR_CODE_DETAIL = "QR_CODE"
LPA_CODE_DETAILS = ("LOCAL_PROFILE_ACTIVATION_CODE", "ACTIVATION_CODE")


def _result(data: Any) -> dict:
    if isinstance(data, dict) and isinstance(data.get("result"), dict):
        return data["result"]
    return {}


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def extract_activation(result: dict) -> ActivationArtifact | None:
    """Pulls the QR image / LPA code out of an order body, if provisioned.

    Placeholders such as `"activation": "PENDING"` count as not provisioned.
    """
    activation = result.get("activation")
    if not isinstance(activation, dict):
        activation = {}
    image_url = _text(activation.get("imageUrl"))
    lpa_code = _text(activation.get("activationCode"))

    line_item = result.get("orderLineItem")
    details = line_item.get("lineItemDetails") if isinstance(line_item, dict) else None
    if not isinstance(details, list):
        details = []
    for item in details:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        value = _text(item.get("value"))
        if not value:
            continue
        if name == QR_CODE_DETAIL and not image_url:
            image_url = value
        elif name in LPA_CODE_DETAILS and not lpa_code:
            lpa_code = value

    artifact = ActivationArtifact(image_url=image_url, lpa_code=lpa_code)
    return None if artifact.is_empty else artifact


class MobimatterClient:
    """Thin client over the Mobimatter v2 API.

    Every method except create_order and list_products returns an outcome
    (Ready / Pending / Failed) instead of raising.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.base_url = settings.mobimatter_api_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=settings.http_timeout)

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "api-key": self.settings.mobimatter_api_key,
            "merchantId": self.settings.mobimatter_merchant_id,
        }

    async def close(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            return await self._client.request(method, url, headers=self.headers, **kwargs)
        except httpx.RequestError as e:
            logger.error(f"Network error calling Mobimatter {method} {url}: {e}")
            raise ProviderUnavailable(f"Network error: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise InvalidResponse(f"Non-JSON response from Mobimatter: {response.text[:200]}") from e

    @staticmethod
    def _failure(response: httpx.Response, action: str) -> Failed:
        message = f"{action} failed: {response.status_code} - {response.text[:200]}"
        if response.status_code >= 500 or response.status_code == 429:
            return Failed(error=ProviderUnavailable(message))
        return Failed(error=ProviderRejected(message))

    # --- Orders ---

    async def create_order(self, product_id: str, customer_email: str) -> str:
        """Creates a provider order and returns its public order code."""
        logger.info(f"Creating Mobimatter order for product {product_id}...")
        response = await self._request(
            "POST", "/order", json={"productId": product_id, "customerEmail": customer_email}
        )
        if response.is_error:
            raise ProviderUnavailable(f"Order create failed: {response.status_code} - {response.text[:200]}")

        result = _result(self._json(response))
        order_code = result.get("orderId") or result.get("orderCode") or result.get("externalOrderCode")
        if not order_code:
            raise OrderCreateRejected(f"Order create response has no order identifier: {response.text[:200]}")

        logger.info(f"Mobimatter order created: {order_code}")
        return str(order_code)

    async def complete_order(self, order_code: str) -> Outcome:
        """Completes an order. Completing twice is reported as success."""
        try:
            response = await self._request(
                "PUT", "/order/complete", json={"orderId": order_code, "notes": "Completed by storefront sync"}
            )
        except ProviderUnavailable as e:
            return Failed(error=e)

        if response.is_success:
            logger.info(f"Mobimatter order {order_code} completed")
            return Ready(value=True)
        if "already" in response.text.lower() and "complete" in response.text.lower():
            logger.info(f"Mobimatter order {order_code} was already completed")
            return Ready(value=True)

        logger.warning(f"Completion of {order_code} failed: {response.status_code} - {response.text[:200]}")
        return self._failure(response, "Order complete")

    async def lookup_order_by_code(self, order_code: str) -> Outcome:
        """Resolves the public order code to the provider's internal id.

        A freshly created order may not be indexed yet: 404 or an empty result
        is Pending, not an error.
        """
        try:
            response = await self._request("GET", f"/order/by-code/{order_code}")
        except ProviderUnavailable as e:
            return Failed(error=e)

        if response.status_code == 404:
            return Pending(reason=f"Order {order_code} not indexed yet")
        if response.is_error:
            return self._failure(response, "Order lookup")

        try:
            result = _result(self._json(response))
        except InvalidResponse as e:
            return Failed(error=e)

        internal_id = result.get("id")
        if not internal_id:
            return Pending(reason=f"Order {order_code} not indexed yet")
        return Ready(value=OrderLookup(internal_id=str(internal_id), status=result.get("orderState")))

    async def get_activation_artifact(self, internal_id: str) -> Outcome:
        try:
            response = await self._request("GET", f"/order/{internal_id}")
        except ProviderUnavailable as e:
            return Failed(error=e)

        if response.status_code == 404:
            return Pending(reason=f"Order {internal_id} not found yet")
        if response.is_error:
            return self._failure(response, "Order fetch")

        try:
            result = _result(self._json(response))
        except InvalidResponse as e:
            return Failed(error=e)

        artifact = extract_activation(result)
        if artifact is None:
            return Pending(reason=f"Activation for {internal_id} not provisioned yet")
        return Ready(value=artifact)

    async def send_activation_email(self, internal_id: str, email: str) -> Outcome:
        try:
            response = await self._request(
                "POST",
                "/order/send-order-confirmation-to-customer",
                json={"orderId": internal_id, "customerEmail": email},
            )
        except ProviderUnavailable as e:
            return Failed(error=e)

        if response.is_error:
            return self._failure(response, "Confirmation email")
        logger.info(f"Confirmation email requested for order {internal_id}")
        return Ready(value=True)

    # --- Usage / top-up ---

    async def get_usage(self, internal_id: str) -> Outcome:
        try:
            response = await self._request("GET", f"/provider/usage/{internal_id}")
        except ProviderUnavailable as e:
            return Failed(error=e)

        if response.is_error:
            return self._failure(response, "Usage lookup")
        try:
            return Ready(value=self._json(response))
        except InvalidResponse as e:
            return Failed(error=e)

    async def top_up(self, product_id: str, add_on_identifier: str) -> Outcome:
        try:
            response = await self._request(
                "POST", "/order", json={"productId": product_id, "addOnIdentifier": add_on_identifier}
            )
        except ProviderUnavailable as e:
            return Failed(error=e)

        if response.is_error:
            return self._failure(response, "Top-up")
        try:
            return Ready(value=self._json(response))
        except InvalidResponse as e:
            return Failed(error=e)

    # --- Catalog ---

    async def list_products(self) -> list[dict]:
        logger.info("Fetching products from Mobimatter...")
        response = await self._request("GET", "/products")
        if response.is_error:
            raise ProviderUnavailable(f"Product listing failed: {response.status_code} - {response.text[:200]}")

        data = self._json(response)
        products = data.get("result") if isinstance(data, dict) else data
        if not isinstance(products, list):
            raise InvalidResponse("Invalid product array from Mobimatter")
        logger.info(f"Fetched {len(products)} products from Mobimatter.")
        return products
