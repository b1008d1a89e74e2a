import os
import logging

from pydantic import BaseModel

from esim_sync.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# --- Defaults ---
MOBIMATTER_API_URL = "https://api.mobimatter.com/mobimatter/api/v2"
SHOPIFY_API_VERSION = "2025-04"
HTTP_TIMEOUT = 15.0

REQUIRED_ENV = (
    "MOBIMATTER_API_KEY",
    "MOBIMATTER_MERCHANT_ID",
    "SHOPIFY_STORE_DOMAIN",
    "SHOPIFY_ADMIN_API_KEY",
)


class RetryPolicy(BaseModel):
    """Bounded polling: `attempts` tries, `delay` seconds between them."""
    attempts: int
    delay: float
    initial_delay: float = 0.0


class Settings(BaseModel):
    mobimatter_api_key: str
    mobimatter_merchant_id: str
    shopify_store_domain: str
    shopify_admin_api_key: str

    mobimatter_api_url: str = MOBIMATTER_API_URL
    shopify_api_version: str = SHOPIFY_API_VERSION
    database_url: str | None = None
    http_timeout: float = HTTP_TIMEOUT

    complete_retry: RetryPolicy = RetryPolicy(attempts=3, delay=5.0)
    lookup_retry: RetryPolicy = RetryPolicy(attempts=5, delay=5.0, initial_delay=10.0)
    artifact_retry: RetryPolicy = RetryPolicy(attempts=5, delay=5.0)

    recovery_batch_size: int = 20
    recovery_max_attempts: int = 10
    catalog_sync_limit: int | None = None
    send_activation_email: bool = True

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        """Builds settings from environment variables.

        Raises ConfigurationError listing every missing required variable.
        """
        env = os.environ if environ is None else environ
        missing = [name for name in REQUIRED_ENV if not env.get(name)]
        if missing:
            logger.error(f"Missing required environment variables: {', '.join(missing)}")
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        def _float(name, default):
            value = env.get(name)
            return float(value) if value not in (None, "") else default

        def _int(name, default):
            value = env.get(name)
            return int(value) if value not in (None, "") else default

        try:
            return cls(
                mobimatter_api_key=env["MOBIMATTER_API_KEY"],
                mobimatter_merchant_id=env["MOBIMATTER_MERCHANT_ID"],
                shopify_store_domain=env["SHOPIFY_STORE_DOMAIN"],
                shopify_admin_api_key=env["SHOPIFY_ADMIN_API_KEY"],
                mobimatter_api_url=env.get("MOBIMATTER_API_URL") or MOBIMATTER_API_URL,
                shopify_api_version=env.get("SHOPIFY_API_VERSION") or SHOPIFY_API_VERSION,
                database_url=env.get("DATABASE_URL") or None,
                http_timeout=_float("HTTP_TIMEOUT", HTTP_TIMEOUT),
                complete_retry=RetryPolicy(
                    attempts=_int("COMPLETE_ATTEMPTS", 3),
                    delay=_float("COMPLETE_DELAY", 5.0),
                ),
                lookup_retry=RetryPolicy(
                    attempts=_int("LOOKUP_ATTEMPTS", 5),
                    delay=_float("LOOKUP_DELAY", 5.0),
                    initial_delay=_float("LOOKUP_INITIAL_DELAY", 10.0),
                ),
                artifact_retry=RetryPolicy(
                    attempts=_int("ARTIFACT_ATTEMPTS", 5),
                    delay=_float("ARTIFACT_DELAY", 5.0),
                ),
                recovery_batch_size=_int("RECOVERY_BATCH_SIZE", 20),
                recovery_max_attempts=_int("RECOVERY_MAX_ATTEMPTS", 10),
                catalog_sync_limit=_int("CATALOG_SYNC_LIMIT", None),
                send_activation_email=env.get("SEND_ACTIVATION_EMAIL", "true").lower() not in ("0", "false", "no"),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e
