from typing import Any, Dict, Optional

from paygate.shared.core.exceptions import (
    BillingError,
    PaygateException,
    ResourceNotFoundError,
)


class UnconfiguredProviderError(BillingError):
    """No adapter is registered for the requested provider."""

    def __init__(self, provider: str):
        super().__init__(
            f"Payment provider '{provider}' is not configured",
            code="provider_not_configured",
            details={"provider": provider},
        )


class UnknownProviderError(ResourceNotFoundError):
    """The provider identifier is not a supported provider."""

    def __init__(self, provider: str):
        super().__init__(
            f"Unknown payment provider '{provider}'",
            code="unknown_provider",
            details={"provider": provider},
        )


class SignatureVerificationError(BillingError):
    """Webhook signature did not match the payload."""

    def __init__(self, message: str = "Invalid webhook signature", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_signature", details=details)


class UnknownEventTypeError(PaygateException):
    """
    Raw provider event type with no canonical mapping.

    Not an error for callers: ingestion treats it as an explicit ignore.
    """

    def __init__(self, provider: str, event_type: str):
        super().__init__(
            f"Unhandled {provider} event type '{event_type}'",
            code="unknown_event_type",
            status_code=200,
            details={"provider": provider, "event_type": event_type},
        )
        self.provider = provider
        self.event_type = event_type


class MappingNotFoundError(BillingError):
    """An entity has no active mapping at the provider."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="mapping_not_found", details=details)


class UnsupportedCapabilityError(BillingError):
    """The provider does not offer the requested capability."""

    def __init__(self, provider: str, capability: str):
        super().__init__(
            f"{capability} is not supported for provider '{provider}'",
            code="unsupported_capability",
            details={"provider": provider, "capability": capability},
        )


__all__ = [
    "MappingNotFoundError",
    "SignatureVerificationError",
    "UnconfiguredProviderError",
    "UnknownEventTypeError",
    "UnknownProviderError",
    "UnsupportedCapabilityError",
]
