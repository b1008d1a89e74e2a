import os
import logging
import asyncio
from celery import Celery

from esim_sync.db import init_db_pool, close_db_pool

# --- Logging ---
LOG_FILE = os.getenv("LOG_FILE", "esim_sync_worker.log")
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOG_FILE),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://redis:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', 'redis://redis:6379/0')
RECOVERY_INTERVAL = float(os.getenv('RECOVERY_INTERVAL', '300'))
CATALOG_SYNC_INTERVAL = float(os.getenv('CATALOG_SYNC_INTERVAL', '3600'))

celery_app = Celery(
    'esim_sync',
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=['esim_sync.tasks.orders', 'esim_sync.tasks.recovery', 'esim_sync.tasks.catalog']
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    beat_schedule={
        'recover-pending-esims': {
            'task': 'recover_pending_orders',
            'schedule': RECOVERY_INTERVAL,
        },
        'sync-catalog': {
            'task': 'sync_catalog',
            'schedule': CATALOG_SYNC_INTERVAL,
            'kwargs': {'prune': True},
        },
    }
)


def run_async(fn, *args, **kwargs):
    """Runs a task coroutine in a fresh event loop with its own DB pool.

    The pool is bound to the loop that created it, so it lives exactly as
    long as this asyncio.run call.
    """
    async def _runner():
        await init_db_pool()
        try:
            return await fn(*args, **kwargs)
        finally:
            await close_db_pool()

    return asyncio.run(_runner())


if __name__ == '__main__':
    celery_app.start()
