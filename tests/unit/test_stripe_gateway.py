from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest
import stripe

from app.core.errors import ConfigurationError, GatewayCallFailure
from app.services.gateway import CheckoutSessionRequest, StripeGateway


def _request():
    return CheckoutSessionRequest(
        customer_id="cus_1",
        price_id="price_basic",
        success_url="https://app.example.com/payment/success",
        cancel_url="https://app.example.com/payment/cancel",
        client_reference_id="7",
        metadata={"user_id": "7"},
    )


def test_each_gateway_builds_its_own_client(config):
    module_http_client = getattr(stripe, "default_http_client", None)
    module_api_key = stripe.api_key
    other = replace(config, secret_key="sk_test_other", timeout_seconds=3)

    with patch("app.services.gateway.stripe.StripeClient") as client_cls, patch(
        "app.services.gateway.stripe.RequestsClient"
    ) as http_cls:
        client_cls.return_value.customers.create.return_value = MagicMock(id="cus_1")
        first = StripeGateway(config)
        second = StripeGateway(other)

        assert first.create_customer("a@example.com", None, {"user_id": "1"}) == "cus_1"
        first.create_customer("b@example.com", "B", {"user_id": "2"})
        second.create_customer("c@example.com", None, {"user_id": "3"})

    assert client_cls.call_count == 2
    assert [c.args[0] for c in client_cls.call_args_list] == ["sk_test_123", "sk_test_other"]
    assert all(c.kwargs["http_client"] is http_cls.return_value for c in client_cls.call_args_list)
    assert http_cls.call_args_list[-1].kwargs == {"timeout": 3}
    assert getattr(stripe, "default_http_client", None) is module_http_client
    assert stripe.api_key == module_api_key


def test_checkout_session_params(config):
    session = MagicMock(id="cs_1", url="https://checkout.stripe.test/c/pay/cs_1")
    session.to_dict.return_value = {"id": "cs_1"}

    with patch("app.services.gateway.stripe.StripeClient") as client_cls:
        client_cls.return_value.checkout.sessions.create.return_value = session
        result = StripeGateway(config).create_checkout_session(_request())

    params = client_cls.return_value.checkout.sessions.create.call_args.kwargs["params"]
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_basic", "quantity": 1}]
    assert params["subscription_data"] == {"metadata": {"user_id": "7"}}
    assert result.id == "cs_1"
    assert result.raw == {"id": "cs_1"}


def test_stripe_errors_become_gateway_failures(config):
    with patch("app.services.gateway.stripe.StripeClient") as client_cls:
        client_cls.return_value.checkout.sessions.create.side_effect = stripe.StripeError("card declined")
        with pytest.raises(GatewayCallFailure):
            StripeGateway(config).create_checkout_session(_request())


def test_missing_secret_key(config):
    gateway = StripeGateway(replace(config, secret_key=None))
    with pytest.raises(ConfigurationError):
        gateway.create_customer("a@example.com", None, {})
