import asyncpg
import os
import logging

from esim_sync.models import PendingOrder

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DB_POOL = None

SCHEMA = """
CREATE TABLE IF NOT EXISTS pending_esims (
    id SERIAL PRIMARY KEY,
    provider_order_code TEXT NOT NULL,
    provider_order_id TEXT,
    destination_order_id TEXT NOT NULL,
    customer_email TEXT NOT NULL,
    sku TEXT NOT NULL,
    product_id TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_attempt TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS pending_esims_created_at_idx ON pending_esims (created_at);
CREATE TABLE IF NOT EXISTS dead_letter_esims (
    id SERIAL PRIMARY KEY,
    original_pending_id INTEGER NOT NULL,
    provider_order_code TEXT NOT NULL,
    provider_order_id TEXT,
    destination_order_id TEXT NOT NULL,
    customer_email TEXT NOT NULL,
    sku TEXT NOT NULL,
    attempts INTEGER NOT NULL,
    final_error_message TEXT,
    failed_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

COLUMNS = (
    "id, provider_order_code, provider_order_id, destination_order_id, customer_email, "
    "sku, product_id, attempts, last_error, created_at, last_attempt"
)


async def init_db_pool(dsn: str | None = None):
    """Opens the asyncpg pool and makes sure the schema exists."""
    global DB_POOL
    dsn = dsn or DATABASE_URL
    if not dsn:
        logger.error("DATABASE_URL is not set. Cannot initialize DB Pool.")
        return
    try:
        DB_POOL = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=10)
        logger.info("Database connection pool initialized.")
        await PendingOrderStore(DB_POOL).init_schema()
    except (OSError, asyncpg.PostgresError):
        logger.exception("Failed to initialize database connection pool")
        DB_POOL = None


async def close_db_pool():
    global DB_POOL
    if DB_POOL:
        await DB_POOL.close()
        logger.info("Database connection pool closed.")
        DB_POOL = None


def get_pool():
    return DB_POOL


def _row_to_order(row) -> PendingOrder:
    return PendingOrder(**dict(row))


class PendingOrderStore:
    """Orders awaiting asynchronous completion, one row per order.

    Rows are inserted and deleted individually so a recovery pass finishing
    never drops an order appended while it ran.
    """

    def __init__(self, pool):
        self.pool = pool

    def _connection(self):
        if not self.pool:
            logger.error("DB Pool is not initialized. Cannot get connection.")
            raise ConnectionError("Database pool not available")
        return self.pool.acquire()

    async def init_schema(self):
        async with self._connection() as conn:
            await conn.execute(SCHEMA)

    async def append(self, order: PendingOrder) -> PendingOrder:
        async with self._connection() as conn:
            row = await conn.fetchrow(f"""
                INSERT INTO pending_esims (provider_order_code, provider_order_id, destination_order_id,
                                           customer_email, sku, product_id, attempts, last_error, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING {COLUMNS}
            """, order.provider_order_code, order.provider_order_id, order.destination_order_id,
                order.customer_email, order.sku, order.product_id, order.attempts, order.last_error,
                order.created_at)
        logger.info(f"Order {order.provider_order_code} (Shopify {order.destination_order_id}) parked in pending_esims")
        return _row_to_order(row)

    async def list_all(self, limit: int | None = None) -> list[PendingOrder]:
        """Current contents, least recently attempted first.

        Never-attempted rows come before everything else, so a batch of
        stuck rows cannot hide newer ones. No pool or no table means empty.
        """
        if not self.pool:
            logger.warning("DB Pool is not initialized, treating pending store as empty.")
            return []
        try:
            async with self._connection() as conn:
                rows = await conn.fetch(f"""
                    SELECT {COLUMNS} FROM pending_esims
                    ORDER BY last_attempt ASC NULLS FIRST, created_at ASC, id ASC
                    LIMIT $1
                """, limit)
        except asyncpg.UndefinedTableError:
            logger.warning("pending_esims table does not exist yet, treating as empty.")
            return []
        return [_row_to_order(row) for row in rows]

    async def remove(self, order: PendingOrder):
        async with self._connection() as conn:
            await conn.execute("DELETE FROM pending_esims WHERE id = $1", order.id)

    async def replace(self, listed: list[PendingOrder], remaining: list[PendingOrder],
                      dead: list[PendingOrder] | None = None):
        """Makes the `listed` snapshot equal to `remaining` in one transaction.

        Rows of `listed` missing from `remaining` are deleted, rows in
        `remaining` get their enriched fields written back. Rows in `dead`
        are copied to dead_letter_esims before being deleted. Rows appended
        after `listed` was read are left alone.
        """
        dead = dead or []
        keep = {order.id for order in remaining}
        done = [order.id for order in listed if order.id not in keep]
        async with self._connection() as conn:
            async with conn.transaction():
                for order in dead:
                    await conn.execute("""
                        INSERT INTO dead_letter_esims (original_pending_id, provider_order_code, provider_order_id,
                                                       destination_order_id, customer_email, sku, attempts,
                                                       final_error_message)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """, order.id, order.provider_order_code, order.provider_order_id, order.destination_order_id,
                        order.customer_email, order.sku, order.attempts, order.last_error)
                if done:
                    await conn.execute("DELETE FROM pending_esims WHERE id = ANY($1::int[])", done)
                for order in remaining:
                    await conn.execute("""
                        UPDATE pending_esims
                        SET provider_order_id = $1,
                            attempts = $2,
                            last_error = $3,
                            last_attempt = $4
                        WHERE id = $5
                    """, order.provider_order_id, order.attempts, order.last_error, order.last_attempt, order.id)
        logger.info(
            f"Pending store updated: {len(done)} removed ({len(dead)} dead-lettered), {len(remaining)} still pending"
        )
