import httpx
import logging
from typing import Any

from esim_sync.config import Settings
from esim_sync.exceptions import DeliveryFailure, InvalidResponse
from esim_sync.models import ActivationArtifact

logger = logging.getLogger(__name__)

METAFIELD_NAMESPACE = "esim"
HANDLE_PREFIX = "mobimatter-"

FIND_BY_HANDLE_QUERY = """
query findProduct($query: String!) {
  products(first: 1, query: $query) {
    edges { node { id handle title } }
  }
}
"""

LIST_PRODUCTS_QUERY = """
query listProducts($query: String!, $after: String) {
  products(first: 250, query: $query, after: $after) {
    edges { node { id handle title } }
    pageInfo { hasNextPage endCursor }
  }
}
"""

PRODUCT_CREATE_MUTATION = """
mutation productCreate($input: ProductInput!, $media: [CreateMediaInput!]) {
  productCreate(input: $input, media: $media) {
    product { id handle title }
    userErrors { field message }
  }
}
"""


def numeric_id(gid: str) -> str:
    """gid://shopify/Product/123 -> 123"""
    return str(gid).rsplit("/", 1)[-1]


def artifact_note(artifact: ActivationArtifact, provider_order_code: str) -> str:
    lines = [f"eSIM order {provider_order_code}"]
    if artifact.image_url:
        lines.append(f"QR code: {artifact.image_url}")
    if artifact.lpa_code:
        lines.append(f"Activation code: {artifact.lpa_code}")
    return "\n".join(lines)


class ShopifyClient:
    """Admin API client for order delivery and catalog listings."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.base_url = f"https://{settings.shopify_store_domain}/admin/api/{settings.shopify_api_version}"
        self._client = client or httpx.AsyncClient(timeout=settings.http_timeout)

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": self.settings.shopify_admin_api_key,
        }

    async def close(self):
        await self._client.aclose()

    async def _rest(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = await self._client.request(method, url, headers=self.headers, **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error from Shopify {method} {path}: {e.response.status_code} - {e.response.text}")
            raise DeliveryFailure(f"Shopify {method} {path} failed: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Network error calling Shopify {method} {path}: {e}")
            raise DeliveryFailure(f"Shopify {method} {path} failed: {e}") from e

    async def graphql(self, query: str, variables: dict | None = None) -> dict[str, Any]:
        resp = await self._rest("POST", "/graphql.json", json={"query": query, "variables": variables or {}})
        try:
            body = resp.json()
        except ValueError as e:
            raise InvalidResponse(f"Non-JSON response from Shopify GraphQL: {resp.text[:200]}") from e
        if body.get("errors"):
            raise DeliveryFailure(f"Shopify GraphQL errors: {body['errors']}")
        return body.get("data") or {}

    # --- Orders ---

    async def attach_artifact(self, order_id: str, artifact: ActivationArtifact, provider_order_code: str):
        """Writes the activation artifact to the order note and metafields.

        Safe to call repeatedly: later calls overwrite earlier values.
        """
        await self._rest(
            "PUT",
            f"/orders/{order_id}.json",
            json={"order": {"id": order_id, "note": artifact_note(artifact, provider_order_code)}},
        )

        metafields = {"mobimatter_order_id": provider_order_code}
        if artifact.image_url:
            metafields["qr_code"] = artifact.image_url
        if artifact.lpa_code:
            metafields["activation_code"] = artifact.lpa_code

        for key, value in metafields.items():
            await self._rest(
                "POST",
                f"/orders/{order_id}/metafields.json",
                json={
                    "metafield": {
                        "namespace": METAFIELD_NAMESPACE,
                        "key": key,
                        "type": "single_line_text_field",
                        "value": value,
                    }
                },
            )
        logger.info(f"Shopify order {order_id} updated with eSIM {provider_order_code} activation")

    # --- Catalog ---

    async def find_product_by_handle(self, handle: str) -> dict | None:
        data = await self.graphql(FIND_BY_HANDLE_QUERY, {"query": f"handle:{handle}"})
        edges = (data.get("products") or {}).get("edges") or []
        for edge in edges:
            if edge["node"].get("handle") == handle:
                return edge["node"]
        return None

    async def list_integration_products(self) -> list[dict]:
        """All products whose handle carries the integration prefix."""
        products, after = [], None
        while True:
            data = await self.graphql(LIST_PRODUCTS_QUERY, {"query": f"handle:{HANDLE_PREFIX}*", "after": after})
            page = data.get("products") or {}
            products.extend(
                edge["node"] for edge in page.get("edges") or []
                if edge["node"].get("handle", "").startswith(HANDLE_PREFIX)
            )
            info = page.get("pageInfo") or {}
            if not info.get("hasNextPage"):
                return products
            after = info.get("endCursor")

    async def upsert_catalog_item(self, item: dict) -> dict | None:
        """Creates the listing unless one with the same handle exists.

        Returns the created product node, or None when it was skipped.
        """
        handle = item["input"]["handle"]
        if await self.find_product_by_handle(handle):
            logger.info(f"Product {handle} already exists, skipping")
            return None

        data = await self.graphql(PRODUCT_CREATE_MUTATION, item)
        payload = data.get("productCreate") or {}
        errors = payload.get("userErrors") or []
        if errors or not payload.get("product"):
            raise DeliveryFailure(f"productCreate for {handle} failed: {errors}")
        logger.info(f"Created Shopify product {handle}")
        return payload["product"]

    async def remove_catalog_item(self, product_gid: str):
        await self._rest("DELETE", f"/products/{numeric_id(product_gid)}.json")
        logger.info(f"Deleted Shopify product {product_gid}")
