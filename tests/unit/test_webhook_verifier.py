import json
import time
from dataclasses import replace

import pytest

from app.core.errors import AuthenticationError, ConfigurationError
from app.services.webhook_service import WebhookEventVerifier


@pytest.fixture
def verifier(gateway, config):
    return WebhookEventVerifier(gateway, config)


def test_valid_delivery_is_parsed(verifier, sign, webhook_body):
    body = webhook_body("invoice.paid", {"id": "in_1", "customer": "cus_1"}, event_id="evt_42")
    event = verifier.verify(body, sign(body))
    assert event.id == "evt_42"
    assert event.type == "invoice.paid"
    assert event.object["id"] == "in_1"


def test_unconfigured_secret(gateway, config, sign, webhook_body):
    verifier = WebhookEventVerifier(gateway, replace(config, webhook_secret=None))
    body = webhook_body("invoice.paid", {"id": "in_1"})
    with pytest.raises(ConfigurationError) as exc:
        verifier.verify(body, sign(body))
    assert exc.value.message == "Webhook not configured"


def test_missing_signature(verifier, webhook_body):
    with pytest.raises(AuthenticationError) as exc:
        verifier.verify(webhook_body("invoice.paid", {"id": "in_1"}), None)
    assert exc.value.message == "Invalid signature"


def test_wrong_secret(verifier, sign, webhook_body):
    body = webhook_body("invoice.paid", {"id": "in_1"})
    with pytest.raises(AuthenticationError) as exc:
        verifier.verify(body, sign(body, secret="whsec_someone_else"))
    assert exc.value.message == "Invalid signature"


def test_tampered_body(verifier, sign, webhook_body):
    body = webhook_body("invoice.paid", {"id": "in_1", "amount_paid": 999})
    signature = sign(body)
    tampered = body.replace(b"999", b"1")
    with pytest.raises(AuthenticationError) as exc:
        verifier.verify(tampered, signature)
    assert exc.value.message == "Invalid signature"


def test_stale_timestamp(verifier, sign, webhook_body):
    body = webhook_body("invoice.paid", {"id": "in_1"})
    with pytest.raises(AuthenticationError) as exc:
        verifier.verify(body, sign(body, timestamp=int(time.time()) - 3600))
    assert exc.value.message == "Invalid signature"


def test_signed_but_malformed_json(verifier, sign):
    body = b"{not json"
    with pytest.raises(AuthenticationError) as exc:
        verifier.verify(body, sign(body))
    assert exc.value.message == "Invalid payload"


def test_signed_event_without_object(verifier, sign):
    body = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {}}).encode("utf-8")
    with pytest.raises(AuthenticationError) as exc:
        verifier.verify(body, sign(body))
    assert exc.value.message == "Invalid payload"


def test_undecodable_body(verifier):
    with pytest.raises(AuthenticationError) as exc:
        verifier.verify(b"\xff\xfe\x00", "t=1,v1=abc")
    assert exc.value.message == "Invalid payload"
