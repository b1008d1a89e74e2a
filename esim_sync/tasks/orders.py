import asyncio
import logging
from contextlib import asynccontextmanager

from esim_sync.config import RetryPolicy, Settings
from esim_sync.db import PendingOrderStore, get_pool
from esim_sync.exceptions import DeliveryFailure, ProviderRejected, ProviderTransient
from esim_sync.models import (
    ActivationArtifact,
    Failed,
    FulfillmentResult,
    OrderPaidEvent,
    Outcome,
    PendingOrder,
    Ready,
)
from esim_sync.utils.mobimatter import MobimatterClient
from esim_sync.utils.shopify import ShopifyClient
from esim_sync.worker import celery_app, run_async

logger = logging.getLogger(__name__)

DELIVERED = "delivered"
PARKED = "parked"
DELIVERY_FAILED = "delivery_failed"
REJECTED = "rejected"


def _rejected(outcome) -> bool:
    return isinstance(outcome, Failed) and isinstance(outcome.error, ProviderRejected)


class CompletionOrchestrator:
    """Drives one order from provider creation to delivery on the storefront.

    Created -> Completing -> AwaitingArtifact -> Delivered, with Parked
    (written to the pending store) when the bounded polls run out.
    """

    def __init__(self, provider: MobimatterClient, target: ShopifyClient, store: PendingOrderStore,
                 settings: Settings, sleep=asyncio.sleep):
        self.provider = provider
        self.target = target
        self.store = store
        self.settings = settings
        self.sleep = sleep

    async def _poll(self, label: str, call, policy: RetryPolicy, initial_delay: bool = True) -> Outcome:
        """Calls `call` up to policy.attempts times until it returns Ready.

        Pending and transient failures are retried after policy.delay;
        ProviderRejected stops the loop at once.
        """
        if initial_delay and policy.initial_delay:
            logger.info(f"Waiting {policy.initial_delay}s before {label}...")
            await self.sleep(policy.initial_delay)

        outcome = None
        for attempt in range(1, policy.attempts + 1):
            outcome = await call()
            if isinstance(outcome, Ready):
                return outcome
            if _rejected(outcome):
                logger.error(f"{label} rejected: {outcome.reason}")
                return outcome
            logger.warning(f"{label} attempt {attempt}/{policy.attempts} not ready: {outcome.reason}")
            if attempt < policy.attempts:
                await self.sleep(policy.delay)
        return outcome

    async def fulfill(self, event: OrderPaidEvent) -> FulfillmentResult:
        """Handles a paid storefront order end to end.

        Raises ProviderTransient/ProviderRejected/InvalidResponse when the
        order cannot be created or completed, and ProviderRejected when a
        later lookup or artifact fetch is refused. Exhausted completion and
        unexpected errors after completion park the order before raising so
        a recovery pass can pick it up.
        """
        order_code = await self.provider.create_order(event.sku, event.email)
        pending = PendingOrder(
            provider_order_code=order_code,
            destination_order_id=event.id,
            customer_email=event.email,
            sku=event.sku,
            product_id=event.sku,
        )

        outcome = await self._poll(
            f"Completion of {order_code}", lambda: self.provider.complete_order(order_code),
            self.settings.complete_retry,
        )
        if not isinstance(outcome, Ready):
            if _rejected(outcome):
                raise outcome.error
            pending.last_error = outcome.reason
            await self.store.append(pending)
            raise ProviderTransient(f"Mobimatter order {order_code} could not be completed: {outcome.reason}")

        # the provider order is completed from here on: it must end up delivered or parked
        try:
            result = await self._advance(pending, initial_delay=True)
        except Exception as e:
            logger.exception(f"Unexpected error after completing {order_code}, parking it: {e}")
            pending.last_error = f"Unexpected error: {e}"
            pending.attempts += 1
            await self.store.append(pending)
            raise

        if result.status == REJECTED:
            raise ProviderRejected(f"Mobimatter order {order_code} was rejected: {pending.last_error}")
        if result.status == PARKED:
            await self.store.append(pending)
        return result

    async def resume(self, pending: PendingOrder) -> FulfillmentResult:
        """Continues a parked order from where it stopped.

        Without a provider id, completion is re-attempted first (completing
        an already completed order is harmless). `pending` is updated in place.
        """
        if not pending.provider_order_id:
            outcome = await self.provider.complete_order(pending.provider_order_code)
            if _rejected(outcome):
                return self._reject(pending, outcome)
            if not isinstance(outcome, Ready):
                logger.warning(f"Completion of parked order {pending.provider_order_code} failed: {outcome.reason}")
                pending.last_error = outcome.reason
                pending.attempts += 1
                return self._result(PARKED, pending)
        return await self._advance(pending, initial_delay=False)

    async def _advance(self, pending: PendingOrder, initial_delay: bool) -> FulfillmentResult:
        code = pending.provider_order_code

        if not pending.provider_order_id:
            outcome = await self._poll(
                f"Lookup of {code}", lambda: self.provider.lookup_order_by_code(code),
                self.settings.lookup_retry, initial_delay=initial_delay,
            )
            if _rejected(outcome):
                return self._reject(pending, outcome)
            if not isinstance(outcome, Ready):
                return self._park(pending, outcome)
            pending.provider_order_id = outcome.value.internal_id
            logger.info(f"Order {code} resolved to internal id {pending.provider_order_id}")

        internal_id = pending.provider_order_id
        outcome = await self._poll(
            f"Activation of {internal_id}", lambda: self.provider.get_activation_artifact(internal_id),
            self.settings.artifact_retry,
        )
        if _rejected(outcome):
            return self._reject(pending, outcome)
        if not isinstance(outcome, Ready):
            return self._park(pending, outcome)

        return await self.deliver(pending, outcome.value)

    def _park(self, pending: PendingOrder, outcome: Outcome) -> FulfillmentResult:
        pending.last_error = outcome.reason if outcome is not None else "no attempts made"
        pending.attempts += 1
        logger.warning(
            f"Parking order {pending.provider_order_code} (internal id: {pending.provider_order_id}): {pending.last_error}"
        )
        return self._result(PARKED, pending)

    def _reject(self, pending: PendingOrder, outcome: Failed) -> FulfillmentResult:
        pending.last_error = outcome.reason
        logger.error(f"Order {pending.provider_order_code} rejected by Mobimatter, not retrying: {outcome.reason}")
        return self._result(REJECTED, pending)

    async def deliver(self, pending: PendingOrder, artifact: ActivationArtifact) -> FulfillmentResult:
        """Attaches the artifact to the storefront order, then sends the email.

        The email is best effort and never changes the result.
        """
        try:
            await self.target.attach_artifact(pending.destination_order_id, artifact, pending.provider_order_code)
        except DeliveryFailure as e:
            logger.error(f"Delivery of {pending.provider_order_code} to order {pending.destination_order_id} failed: {e}")
            pending.last_error = str(e)
            return self._result(DELIVERY_FAILED, pending)

        result = self._result(DELIVERED, pending)
        if self.settings.send_activation_email:
            outcome = await self.provider.send_activation_email(pending.provider_order_id, pending.customer_email)
            if isinstance(outcome, Ready):
                result.email_sent = True
            else:
                logger.warning(f"Email for {pending.provider_order_code} failed: {outcome.reason}")
        logger.info(f"Order {pending.provider_order_code} delivered to Shopify order {pending.destination_order_id}")
        return result

    @staticmethod
    def _result(status: str, pending: PendingOrder) -> FulfillmentResult:
        return FulfillmentResult(
            status=status,
            order_code=pending.provider_order_code,
            provider_order_id=pending.provider_order_id,
            destination_order_id=pending.destination_order_id,
        )


@asynccontextmanager
async def open_orchestrator(settings: Settings, store: PendingOrderStore | None = None):
    """Orchestrator wired to real HTTP clients; closes them on exit."""
    provider = MobimatterClient(settings)
    target = ShopifyClient(settings)
    try:
        yield CompletionOrchestrator(provider, target, store or PendingOrderStore(get_pool()), settings)
    finally:
        await provider.close()
        await target.close()


async def _process_order_paid(payload: dict) -> dict:
    settings = Settings.from_env()
    event = OrderPaidEvent.parse(payload)
    logger.info(f"Processing paid Shopify order {event.id} (SKU {event.sku})")
    async with open_orchestrator(settings) as orchestrator:
        result = await orchestrator.fulfill(event)
    return result.model_dump()


@celery_app.task(name="process_order_paid")
def process_order_paid(payload: dict):
    """Background variant of the order-paid webhook."""
    return run_async(_process_order_paid, payload)
