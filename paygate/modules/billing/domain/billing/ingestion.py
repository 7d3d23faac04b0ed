from typing import Any, Dict, Mapping, Optional

import structlog

from paygate.modules.billing.domain.billing.exceptions import (
    SignatureVerificationError,
    UnknownEventTypeError,
)
from paygate.modules.billing.domain.billing.normalizer import WebhookNormalizer
from paygate.modules.billing.domain.gateway.base import PaymentProvider
from paygate.modules.billing.domain.gateway.factory import PaymentGatewayFactory
from paygate.shared.core.constants import PAYMENT_WEBHOOK_QUEUE
from paygate.shared.core.exceptions import BillingError
from paygate.shared.core.ops_metrics import WEBHOOKS_RECEIVED
from paygate.shared.core.queue import QueueService

logger = structlog.get_logger()

SIGNATURE_HEADERS: Dict[PaymentProvider, str] = {
    PaymentProvider.STRIPE: "stripe-signature",
}
GENERIC_SIGNATURE_HEADERS = ("x-webhook-signature", "x-signature")


def extract_signature(provider: Optional[PaymentProvider], headers: Mapping[str, Any]) -> Optional[str]:
    """Provider-specific signature header, else the generic fallbacks."""
    lowered = {str(k).lower(): v for k, v in headers.items()}
    header = SIGNATURE_HEADERS.get(provider) if provider is not None else None
    candidates = (header,) if header else GENERIC_SIGNATURE_HEADERS
    for name in candidates:
        value = lowered.get(name)
        if value:
            return str(value)
    return None


class WebhookIngestionService:
    """
    Synchronous request path of an inbound webhook.

    Each step is a hard gate; nothing is enqueued unless the signature verifies.
    Business processing happens later in the queue worker.
    """

    def __init__(
        self,
        gateway_factory: PaymentGatewayFactory,
        queue: QueueService,
        normalizer: Optional[WebhookNormalizer] = None,
    ):
        self.gateway_factory = gateway_factory
        self.queue = queue
        self.normalizer = normalizer or WebhookNormalizer()

    async def ingest(
        self, provider: str, body: Optional[bytes], headers: Mapping[str, Any]
    ) -> Dict[str, Any]:
        resolved = PaymentProvider.parse(provider)
        log = logger.bind(provider=resolved.value)

        if not body:
            WEBHOOKS_RECEIVED.labels(provider=resolved.value, outcome="rejected").inc()
            raise BillingError("Webhook request body is required", code="missing_body")

        signature = extract_signature(resolved, headers)
        if not signature:
            WEBHOOKS_RECEIVED.labels(
                provider=resolved.value, outcome="invalid_signature"
            ).inc()
            raise SignatureVerificationError("Missing webhook signature header")

        gateway = self.gateway_factory.create(resolved)
        try:
            raw_event = gateway.verify_webhook_signature(body, signature)
        except SignatureVerificationError:
            WEBHOOKS_RECEIVED.labels(
                provider=resolved.value, outcome="invalid_signature"
            ).inc()
            log.warning("webhook_signature_invalid")
            raise

        log = log.bind(raw_event_id=raw_event.id, raw_event_type=raw_event.type)
        log.info("webhook_signature_verified")

        try:
            normalized = self.normalizer.normalize(resolved, raw_event)
        except UnknownEventTypeError:
            WEBHOOKS_RECEIVED.labels(provider=resolved.value, outcome="ignored").inc()
            log.info("webhook_event_ignored")
            return {"received": True}

        job_id = await self.queue.enqueue(
            PAYMENT_WEBHOOK_QUEUE, normalized.to_job_payload(raw_event)
        )
        WEBHOOKS_RECEIVED.labels(provider=resolved.value, outcome="enqueued").inc()
        log.info(
            "webhook_event_enqueued",
            job_id=job_id,
            event_type=normalized.event_type.value,
            idempotency_key=normalized.idempotency_key,
        )
        return {"received": True}
