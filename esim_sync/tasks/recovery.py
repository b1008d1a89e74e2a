import logging

from esim_sync.config import Settings
from esim_sync.db import PendingOrderStore, get_pool
from esim_sync.models import PendingOrder, RecoverySummary, utcnow
from esim_sync.tasks.orders import DELIVERED, PARKED, REJECTED, CompletionOrchestrator, open_orchestrator
from esim_sync.worker import celery_app, run_async

logger = logging.getLogger(__name__)


class RecoveryPass:
    """Consumes one batch of the pending store and resumes every entry.

    A failing entry never stops the pass: it stays in the store with its
    error recorded for the next run, until it reaches `max_attempts` and is
    moved to the dead-letter table. Batches rotate by last attempt, so stuck
    entries cannot starve newer ones.
    """

    def __init__(self, orchestrator: CompletionOrchestrator, store: PendingOrderStore, batch_size: int = 20,
                 max_attempts: int = 10):
        self.orchestrator = orchestrator
        self.store = store
        self.batch_size = batch_size
        self.max_attempts = max_attempts

    async def run(self) -> RecoverySummary:
        summary = RecoverySummary()
        listed = await self.store.list_all(limit=self.batch_size)
        if not listed:
            logger.info("No pending orders to recover.")
            return summary

        logger.info(f"Found {len(listed)} pending orders to recover.")
        remaining = []
        dead = []
        for pending in listed:
            summary.processed += 1
            logger.info(f"Checking {pending.provider_order_code} (attempt {pending.attempts + 1})...")
            try:
                result = await self.orchestrator.resume(pending)
                status = result.status
            except Exception as e:
                logger.exception(f"Error recovering {pending.provider_order_code}: {e}")
                pending.attempts += 1
                pending.last_error = f"Unexpected error: {e}"
                summary.failed += 1
                status = PARKED
            pending.last_attempt = utcnow()

            if status == PARKED:
                if pending.attempts >= self.max_attempts:
                    self._dead_letter(pending, dead, summary)
                else:
                    remaining.append(pending)
            elif status == DELIVERED:
                summary.delivered += 1
            elif status == REJECTED:
                logger.error(f"Dropping rejected order {pending.provider_order_code}: {pending.last_error}")
                summary.failed += 1
            else:
                # artifact obtained but not delivered; not retried automatically
                summary.failed += 1

        summary.still_pending = len(remaining)
        await self.store.replace(listed, remaining, dead)
        logger.info(
            f"Recovery finished: {summary.delivered} delivered, {summary.still_pending} still pending, "
            f"{summary.failed} failed, {summary.dead_lettered} dead-lettered"
        )
        return summary

    def _dead_letter(self, pending: PendingOrder, dead: list, summary: RecoverySummary):
        logger.warning(
            f"Order {pending.provider_order_code} reached max attempts ({self.max_attempts}). "
            f"Moving to dead letter: {pending.last_error}"
        )
        dead.append(pending)
        summary.dead_lettered += 1


async def _recover_pending_orders() -> dict:
    settings = Settings.from_env()
    store = PendingOrderStore(get_pool())
    async with open_orchestrator(settings, store) as orchestrator:
        summary = await RecoveryPass(
            orchestrator, store, settings.recovery_batch_size, settings.recovery_max_attempts,
        ).run()
    return summary.model_dump()


@celery_app.task(name="recover_pending_orders")
def recover_pending_orders():
    return run_async(_recover_pending_orders)
