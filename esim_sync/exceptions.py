"""Error kinds shared by the clients, the orchestrator and the entry points."""


class ESIMSyncError(Exception):
    """Base class for every error raised by esim_sync."""

    kind = "error"


class ConfigurationError(ESIMSyncError):
    """A required credential or setting is missing. Never retried."""

    kind = "configuration_error"


class ValidationError(ESIMSyncError):
    """Malformed inbound event or unparsable upstream payload."""

    kind = "validation_error"


class InvalidResponse(ValidationError):
    kind = "invalid_response"


class ProviderTransient(ESIMSyncError):
    """Network failure or 5xx from the provider; retried with a bound."""

    kind = "provider_transient"


class ProviderUnavailable(ProviderTransient):
    kind = "provider_unavailable"


class ProviderPending(ESIMSyncError):
    """The provider answered correctly but the data is not ready yet."""

    kind = "provider_pending"


class ProviderRejected(ESIMSyncError):
    """The provider refused the operation. Not retried, not parked."""

    kind = "provider_rejected"


class OrderCreateRejected(ProviderRejected):
    kind = "order_create_rejected"


class DeliveryFailure(ESIMSyncError):
    """Writing delivery results to the storefront failed."""

    kind = "delivery_failure"


class UnexpectedError(ESIMSyncError):
    kind = "unexpected_error"
