from paygate.shared.core.logging import pii_redactor


def test_redacts_secrets_and_signatures():
    event = {
        "event": "webhook_received",
        "stripe_signature": "t=1,v1=abc",
        "headers": {"Authorization": "Bearer x", "content-type": "application/json"},
        "webhook_secret": "whsec_1",
    }
    redacted = pii_redactor(None, "info", event)
    assert redacted["stripe_signature"] == "[REDACTED]"
    assert redacted["webhook_secret"] == "[REDACTED]"
    assert redacted["headers"]["Authorization"] == "[REDACTED]"
    assert redacted["headers"]["content-type"] == "application/json"


def test_redacts_emails_in_nested_values():
    event = {"event": "customer", "data": [{"note": "contact jane.doe@example.com now"}]}
    redacted = pii_redactor(None, "info", event)
    assert redacted["data"][0]["note"] == "contact [EMAIL_REDACTED] now"
