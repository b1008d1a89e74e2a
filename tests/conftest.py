import json
from collections import deque

import httpx
import pytest

from esim_sync.config import RetryPolicy, Settings
from esim_sync.models import PendingOrder
from esim_sync.tasks.orders import CompletionOrchestrator
from esim_sync.utils.mobimatter import MobimatterClient
from esim_sync.utils.shopify import ShopifyClient

MOBIMATTER_URL = "https://mobimatter.test/api/v2"
SHOP_DOMAIN = "esim-shop.myshopify.com"


def make_settings(**overrides) -> Settings:
    values = dict(
        mobimatter_api_key="key-123",
        mobimatter_merchant_id="merchant-42",
        shopify_store_domain=SHOP_DOMAIN,
        shopify_admin_api_key="shpat_test",
        mobimatter_api_url=MOBIMATTER_URL,
        complete_retry=RetryPolicy(attempts=3, delay=5.0),
        lookup_retry=RetryPolicy(attempts=5, delay=5.0, initial_delay=10.0),
        artifact_retry=RetryPolicy(attempts=5, delay=5.0),
    )
    values.update(overrides)
    return Settings(**values)


class ProviderStub:
    """Scriptable Mobimatter API behind httpx.MockTransport.

    `lookup_pending` / `artifact_pending` are the number of polls answered
    with "not ready" before the real answer, per order code / internal id.
    """

    def __init__(self):
        self.calls = []
        self.next_code = deque(["MM123"])
        self.create_status = 200
        self.create_body = None
        self.complete_statuses = deque()
        self.lookup_pending = {}
        self.artifact_pending = {}
        self.scripted = {}  # (call name, code or internal id) -> (status, json body)
        self.email_status = 200
        self.internal_ids = {}
        self.products = []
        self.usage = {"result": {"usedMb": 120, "totalMb": 5120}}

    def internal_id(self, code: str) -> str:
        return self.internal_ids.setdefault(code, f"id-{code}")

    def names(self):
        return [name for name, _ in self.calls]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api/v2")
        body = json.loads(request.content or b"null")
        method = request.method

        if method == "POST" and path == "/order" and body and body.get("addOnIdentifier"):
            self.calls.append(("topup", body))
            return httpx.Response(200, json={"result": {"orderId": "TOPUP-1"}})
        if method == "POST" and path == "/order":
            self.calls.append(("create", body))
            if isinstance(self.create_body, str):
                return httpx.Response(self.create_status, text=self.create_body)
            if self.create_body is not None:
                return httpx.Response(self.create_status, json=self.create_body)
            code = self.next_code.popleft() if self.next_code else f"MM{len(self.calls)}"
            return httpx.Response(self.create_status, json={"result": {"orderId": code}})
        if method == "PUT" and path == "/order/complete":
            self.calls.append(("complete", body["orderId"]))
            status = self.complete_statuses.popleft() if self.complete_statuses else 200
            return httpx.Response(status, text="" if status == 200 else "error")
        if method == "GET" and path.startswith("/order/by-code/"):
            code = path.rsplit("/", 1)[-1]
            self.calls.append(("lookup", code))
            if ("lookup", code) in self.scripted:
                status, payload = self.scripted[("lookup", code)]
                return httpx.Response(status, json=payload)
            if self.lookup_pending.get(code, 0) > 0:
                self.lookup_pending[code] -= 1
                return httpx.Response(404, json={"message": "Order not found"})
            return httpx.Response(200, json={"result": {"id": self.internal_id(code), "orderState": "Completed"}})
        if method == "POST" and path == "/order/send-order-confirmation-to-customer":
            self.calls.append(("email", body))
            return httpx.Response(self.email_status, text="ok")
        if method == "GET" and path.startswith("/order/"):
            internal_id = path.rsplit("/", 1)[-1]
            self.calls.append(("artifact", internal_id))
            if ("artifact", internal_id) in self.scripted:
                status, payload = self.scripted[("artifact", internal_id)]
                return httpx.Response(status, json=payload)
            if self.artifact_pending.get(internal_id, 0) > 0:
                self.artifact_pending[internal_id] -= 1
                return httpx.Response(200, json={"result": {"id": internal_id, "activation": None}})
            return httpx.Response(200, json={"result": {
                "id": internal_id,
                "activation": {"imageUrl": f"https://qr.test/{internal_id}.png"},
                "orderLineItem": {"lineItemDetails": [
                    {"name": "LOCAL_PROFILE_ACTIVATION_CODE", "value": f"LPA:1$smdp.test${internal_id}"},
                ]},
            }})
        if method == "GET" and path.startswith("/provider/usage/"):
            self.calls.append(("usage", path.rsplit("/", 1)[-1]))
            return httpx.Response(200, json=self.usage)
        if method == "GET" and path == "/products":
            self.calls.append(("products", None))
            return httpx.Response(200, json={"result": self.products})
        return httpx.Response(404, json={"message": f"unexpected {method} {path}"})


class ShopifyStub:
    """Scriptable Shopify Admin API behind httpx.MockTransport."""

    def __init__(self):
        self.calls = []
        self.products = {}  # handle -> node
        self.fail_orders = False
        self.fail_create = set()
        self.page_size = 250

    def add_product(self, handle: str, title: str = "Existing"):
        gid = f"gid://shopify/Product/{len(self.products) + 1000}"
        self.products[handle] = {"id": gid, "handle": handle, "title": title}

    def deliveries(self):
        return [args for name, *args in self.calls if name == "note"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.split("/admin/api/", 1)[1].split("/", 1)[1]
        body = json.loads(request.content or b"null")

        if path.startswith("orders/"):
            if self.fail_orders:
                return httpx.Response(500, text="boom")
            order_id = path.split("/")[1].removesuffix(".json")
            if path.endswith("metafields.json"):
                metafield = body["metafield"]
                self.calls.append(("metafield", order_id, metafield["key"], metafield["value"]))
            else:
                self.calls.append(("note", order_id, body["order"]["note"]))
            return httpx.Response(200, json={})

        if request.method == "DELETE" and path.startswith("products/"):
            product_id = path.split("/")[1].removesuffix(".json")
            self.calls.append(("delete", product_id))
            for handle, node in list(self.products.items()):
                if node["id"].endswith(f"/{product_id}"):
                    del self.products[handle]
            return httpx.Response(200, json={})

        query = body["query"]
        variables = body.get("variables") or {}
        if "findProduct" in query:
            handle = variables["query"].removeprefix("handle:")
            self.calls.append(("find", handle))
            edges = [{"node": self.products[handle]}] if handle in self.products else []
            return httpx.Response(200, json={"data": {"products": {"edges": edges}}})
        if "listProducts" in query:
            self.calls.append(("list", variables.get("after")))
            nodes = sorted(self.products.values(), key=lambda n: n["handle"])
            start = int(variables.get("after") or 0)
            page = nodes[start:start + self.page_size]
            has_next = start + self.page_size < len(nodes)
            return httpx.Response(200, json={"data": {"products": {
                "edges": [{"node": n} for n in page],
                "pageInfo": {"hasNextPage": has_next, "endCursor": str(start + self.page_size)},
            }}})
        if "productCreate" in query:
            handle = variables["input"]["handle"]
            self.calls.append(("create", handle))
            if handle in self.fail_create:
                return httpx.Response(200, json={"data": {"productCreate": {
                    "product": None, "userErrors": [{"field": ["title"], "message": "Title is invalid"}],
                }}})
            self.add_product(handle, variables["input"]["title"])
            return httpx.Response(200, json={"data": {"productCreate": {
                "product": self.products[handle], "userErrors": [],
            }}})
        return httpx.Response(400, json={"errors": [{"message": "unknown query"}]})


class MemoryPendingOrderStore:
    """In-memory stand-in for PendingOrderStore with the same semantics."""

    def __init__(self):
        self.rows = {}
        self._next_id = 1
        self.replace_calls = 0
        self.dead_letters = []

    async def append(self, order: PendingOrder) -> PendingOrder:
        stored = order.model_copy(update={"id": self._next_id})
        self.rows[stored.id] = stored
        self._next_id += 1
        return stored.model_copy()

    async def list_all(self, limit=None):
        # last_attempt NULLS FIRST, then created_at, then id
        rows = sorted(self.rows.values(), key=lambda o: (
            o.last_attempt is not None, o.last_attempt or o.created_at, o.created_at, o.id,
        ))
        if limit is not None:
            rows = rows[:limit]
        return [row.model_copy() for row in rows]

    async def remove(self, order: PendingOrder):
        self.rows.pop(order.id, None)

    async def replace(self, listed, remaining, dead=None):
        self.replace_calls += 1
        self.dead_letters.extend(order.model_copy() for order in dead or [])
        keep = {order.id for order in remaining}
        for order in listed:
            if order.id not in keep:
                self.rows.pop(order.id, None)
        for order in remaining:
            if order.id in self.rows:
                self.rows[order.id] = order.model_copy()


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def provider_stub():
    return ProviderStub()


@pytest.fixture
def shopify_stub():
    return ShopifyStub()


@pytest.fixture
async def provider(settings, provider_stub):
    client = MobimatterClient(settings, httpx.AsyncClient(transport=httpx.MockTransport(provider_stub)))
    yield client
    await client.close()


@pytest.fixture
async def target(settings, shopify_stub):
    client = ShopifyClient(settings, httpx.AsyncClient(transport=httpx.MockTransport(shopify_stub)))
    yield client
    await client.close()


@pytest.fixture
def store():
    return MemoryPendingOrderStore()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def orchestrator(provider, target, store, settings, sleep):
    return CompletionOrchestrator(provider, target, store, settings, sleep=sleep)


@pytest.fixture
def paid_order():
    return {
        "id": 1001,
        "email": "a@b.com",
        "line_items": [{"sku": "PLAN-5GB-EU", "quantity": 1}],
    }
