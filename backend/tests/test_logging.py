"""
Tests for log redaction.
"""

from studio_booking.core.logging import redact_secrets


def test_signature_and_tokens_are_redacted():
    event = redact_secrets(None, "info", {
        "event": "webhook_rejected",
        "signature": "t=1,v1=abc",
        "token": "eyJ...",
        "purchase_id": 7,
    })

    assert event["signature"] == "[redacted]"
    assert event["token"] == "[redacted]"
    assert event["purchase_id"] == 7
