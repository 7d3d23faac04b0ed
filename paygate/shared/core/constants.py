# Named queues (queue transport contract)
PAYMENT_WEBHOOK_QUEUE = "payment-webhook"
PAYMENT_DUNNING_QUEUE = "payment-dunning"
BILLING_NOTIFICATIONS_QUEUE = "billing-notifications"

# Job type carried by the dunning trigger job
GRACE_PERIOD_CHECK_JOB = "GRACE_PERIOD_CHECK"

# Tables that may only be written inside tenant_scope()
TENANT_SCOPED_TABLES = [
    "subscriptions",
]
