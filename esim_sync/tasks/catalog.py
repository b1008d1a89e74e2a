import html
import logging

from esim_sync.config import Settings
from esim_sync.exceptions import ESIMSyncError
from esim_sync.models import CatalogSummary
from esim_sync.utils.mobimatter import MobimatterClient
from esim_sync.utils.shopify import HANDLE_PREFIX, METAFIELD_NAMESPACE, ShopifyClient
from esim_sync.worker import celery_app, run_async

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Unnamed eSIM"
DEFAULT_VENDOR = "Mobimatter"


def product_handle(product: dict) -> str:
    return f"{HANDLE_PREFIX}{product.get('uniqueId')}".lower()


def product_details(product: dict) -> dict[str, str]:
    """Flattens Mobimatter's productDetails name/value list."""
    return {
        (item.get("name") or "").strip(): item.get("value")
        for item in product.get("productDetails") or []
    }


def country_display(code: str) -> str:
    """'fr' -> regional-indicator flag followed by 'FR'."""
    if not code or len(code) != 2 or not code.isalpha():
        return f"\U0001F310 {code}"
    code = code.upper()
    flag = "".join(chr(127397 + ord(char)) for char in code)
    return f"{flag} {code}"


def product_title(product: dict, details: dict | None = None) -> str:
    details = product_details(product) if details is None else details
    return details.get("PLAN_TITLE") or product.get("productFamilyName") or DEFAULT_TITLE


def build_catalog_item(product: dict) -> dict:
    """Maps a Mobimatter product onto productCreate variables."""
    details = product_details(product)
    title = product_title(product, details)
    countries = [c for c in product.get("countries") or [] if c]
    data_limit = f"{details.get('PLAN_DATA_LIMIT') or 'unlimited'} {details.get('PLAN_DATA_UNIT') or 'GB'}"
    validity = details.get("PLAN_VALIDITY") or "?"
    network = "5G" if details.get("FIVEG") == "1" else "4G"
    topup = "Available" if details.get("TOPUP") == "1" else "Not Available"

    description = "\n".join([
        '<div class="esim-description">',
        f"<h3>{html.escape(title)}</h3>",
        f"<p><strong>Countries:</strong> {html.escape(', '.join(country_display(c) for c in countries))}</p>",
        f"<p><strong>Data:</strong> {html.escape(data_limit)}</p>",
        f"<p><strong>Validity:</strong> {html.escape(str(validity))} days</p>",
        f"<p><strong>Network:</strong> {network}</p>",
        "</div>",
    ])

    metafields = [
        {"namespace": METAFIELD_NAMESPACE, "key": "countries", "type": "multi_line_text_field",
         "value": "\n".join(countries)},
        {"namespace": METAFIELD_NAMESPACE, "key": "fiveg", "type": "single_line_text_field", "value": network},
        {"namespace": METAFIELD_NAMESPACE, "key": "topup", "type": "single_line_text_field", "value": topup},
        {"namespace": METAFIELD_NAMESPACE, "key": "validity", "type": "single_line_text_field",
         "value": str(validity)},
        {"namespace": METAFIELD_NAMESPACE, "key": "data_limit", "type": "single_line_text_field",
         "value": data_limit},
    ]

    product_input = {
        "title": title,
        "handle": product_handle(product),
        "descriptionHtml": description,
        "vendor": product.get("providerName") or DEFAULT_VENDOR,
        "productType": "eSIM",
        "tags": ["eSIM", network, *[c.upper() for c in countries]],
        "status": "ACTIVE",
        "metafields": metafields,
    }

    price = product.get("retailPrice")
    if price is not None:
        product_input["variants"] = [{
            "price": f"{float(price):.2f}",
            "sku": str(product.get("uniqueId")),
            "inventoryPolicy": "CONTINUE",
            "taxable": True,
        }]

    media = []
    if product.get("providerLogo"):
        media.append({"originalSource": product["providerLogo"], "mediaContentType": "IMAGE", "alt": title})

    return {"input": product_input, "media": media}


class CatalogSync:
    """Mirrors the Mobimatter product listing into the Shopify catalog.

    Listings are first-write-wins: an existing handle is skipped, never
    rewritten. With prune=True, integration listings whose product vanished
    from Mobimatter are deleted.
    """

    def __init__(self, provider: MobimatterClient, target: ShopifyClient, limit: int | None = None):
        self.provider = provider
        self.target = target
        self.limit = limit

    async def run(self, prune: bool = False) -> CatalogSummary:
        summary = CatalogSummary()
        products = await self.provider.list_products()
        if self.limit is not None:
            products = products[:self.limit]

        if prune:
            await self._prune(products, summary)

        for product in products:
            title = product_title(product)
            if not product.get("uniqueId"):
                logger.warning(f"Product '{title}' has no uniqueId, skipping")
                summary.failed.append(title)
                continue
            try:
                created = await self.target.upsert_catalog_item(build_catalog_item(product))
            except (ESIMSyncError, ValueError) as e:
                logger.error(f"Failed to create {title}: {e}")
                summary.failed.append(title)
                continue

            if created is None:
                logger.info(f"Skipped: {title}")
                summary.skipped.append(title)
            else:
                logger.info(f"Created: {title}")
                summary.created.append(title)

        logger.info(
            f"Catalog sync finished: {len(summary.created)} created, {len(summary.skipped)} skipped, "
            f"{len(summary.failed)} failed, {len(summary.removed)} removed"
        )
        return summary

    async def _prune(self, products: list[dict], summary: CatalogSummary):
        # a truncated listing would look like removals
        if self.limit is not None:
            logger.warning("Catalog sync limit is set, skipping removal of stale products")
            return

        current = {product_handle(p) for p in products if p.get("uniqueId")}
        for node in await self.target.list_integration_products():
            if node["handle"] in current:
                continue
            try:
                await self.target.remove_catalog_item(node["id"])
            except ESIMSyncError as e:
                logger.error(f"Failed to remove {node['handle']}: {e}")
                summary.failed.append(node["handle"])
                continue
            logger.info(f"Removed: {node['handle']}")
            summary.removed.append(node["handle"])


async def _sync_catalog(prune: bool = False) -> dict:
    settings = Settings.from_env()
    provider = MobimatterClient(settings)
    target = ShopifyClient(settings)
    try:
        summary = await CatalogSync(provider, target, settings.catalog_sync_limit).run(prune=prune)
    finally:
        await provider.close()
        await target.close()
    return summary.model_dump()


@celery_app.task(name="sync_catalog")
def sync_catalog(prune: bool = False):
    return run_async(_sync_catalog, prune=prune)
