import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from esim_sync.config import Settings
from esim_sync.db import PendingOrderStore, close_db_pool, get_pool, init_db_pool
from esim_sync.exceptions import (
    ConfigurationError,
    ESIMSyncError,
    ProviderRejected,
    ProviderTransient,
    UnexpectedError,
    ValidationError,
)
from esim_sync.models import Failed, OrderPaidEvent, Pending
from esim_sync.tasks.catalog import CatalogSync
from esim_sync.tasks.orders import CompletionOrchestrator, process_order_paid
from esim_sync.tasks.recovery import RecoveryPass
from esim_sync.utils.mobimatter import MobimatterClient
from esim_sync.utils.shopify import ShopifyClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db_pool()
    yield
    await close_db_pool()


app = FastAPI(title="esim-sync", lifespan=lifespan)

STATUS_BY_ERROR = (
    (ValidationError, 400),
    (ConfigurationError, 500),
    (ProviderTransient, 502),
    (ProviderRejected, 502),
)


def error_response(error: ESIMSyncError) -> JSONResponse:
    status_code = next((code for kind, code in STATUS_BY_ERROR if isinstance(error, kind)), 500)
    return JSONResponse(status_code=status_code, content={"error": error.kind, "message": str(error)})


@app.exception_handler(ESIMSyncError)
async def handle_sync_error(request: Request, exc: ESIMSyncError):
    logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc}")
    return error_response(exc)


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception):
    logger.exception(f"Unexpected error in {request.method} {request.url.path}: {exc}")
    return error_response(UnexpectedError("Unexpected error occurred"))


# --- Dependencies ---

def get_settings() -> Settings:
    return Settings.from_env()


def get_store() -> PendingOrderStore:
    return PendingOrderStore(get_pool())


async def get_provider(settings: Settings = Depends(get_settings)):
    provider = MobimatterClient(settings)
    try:
        yield provider
    finally:
        await provider.close()


async def get_target(settings: Settings = Depends(get_settings)):
    target = ShopifyClient(settings)
    try:
        yield target
    finally:
        await target.close()


async def read_json(request: Request):
    try:
        return await request.json()
    except ValueError as e:
        raise ValidationError("Invalid JSON body") from e


# --- Order webhooks ---

@app.post("/webhooks/orders/paid")
async def order_paid(request: Request, settings: Settings = Depends(get_settings),
                     provider: MobimatterClient = Depends(get_provider),
                     target: ShopifyClient = Depends(get_target),
                     store: PendingOrderStore = Depends(get_store)):
    event = OrderPaidEvent.parse(await read_json(request))
    logger.info(f"Received paid Shopify order {event.id} (SKU {event.sku}, {event.email})")
    result = await CompletionOrchestrator(provider, target, store, settings).fulfill(event)
    return result.model_dump()


@app.post("/webhooks/orders/paid/background", status_code=202, dependencies=[Depends(get_settings)])
async def order_paid_background(request: Request):
    payload = await read_json(request)
    event = OrderPaidEvent.parse(payload)
    task = process_order_paid.delay(payload)
    logger.info(f"Queued paid Shopify order {event.id} as task {task.id}")
    return {"status": "queued", "order_id": event.id, "task_id": task.id}


# --- Scheduled triggers ---

@app.post("/tasks/recover")
async def recover(settings: Settings = Depends(get_settings),
                  provider: MobimatterClient = Depends(get_provider),
                  target: ShopifyClient = Depends(get_target),
                  store: PendingOrderStore = Depends(get_store)):
    orchestrator = CompletionOrchestrator(provider, target, store, settings)
    summary = await RecoveryPass(
        orchestrator, store, settings.recovery_batch_size, settings.recovery_max_attempts,
    ).run()
    return summary.model_dump()


@app.post("/tasks/catalog-sync")
async def catalog_sync(prune: bool = False, settings: Settings = Depends(get_settings),
                       provider: MobimatterClient = Depends(get_provider),
                       target: ShopifyClient = Depends(get_target)):
    summary = await CatalogSync(provider, target, settings.catalog_sync_limit).run(prune=prune)
    return summary.model_dump()


# --- eSIM self-service ---

class TopUpRequest(BaseModel):
    product_id: str = Field(alias="productId", min_length=1)
    add_on_identifier: str = Field(alias="addOnIdentifier", min_length=1)


def outcome_response(outcome):
    if isinstance(outcome, Failed):
        return error_response(outcome.error)
    if isinstance(outcome, Pending):
        return JSONResponse(status_code=404, content={"error": "not_found", "message": outcome.reason})
    return outcome.value


@app.get("/esim/usage/{order_id}")
async def usage(order_id: str, provider: MobimatterClient = Depends(get_provider)):
    return outcome_response(await provider.get_usage(order_id))


@app.post("/esim/topup")
async def topup(request: Request, provider: MobimatterClient = Depends(get_provider)):
    body = await read_json(request)
    try:
        topup_request = TopUpRequest.model_validate(body)
    except ValueError as e:
        raise ValidationError("Missing addOnIdentifier or productId") from e
    return outcome_response(await provider.top_up(topup_request.product_id, topup_request.add_on_identifier))


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
