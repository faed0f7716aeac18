import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest
import requests
import stripe

from payflow.core.config import settings
from payflow.core.errors import GatewayNotConfigured, InvalidCheckoutInput
from payflow.services import gateway_registry
from payflow.services.credential_store import decrypt_credentials, encrypt_credentials
from payflow.services.gateways.base import PaymentInitRequest, RefundRequest
from payflow.services.gateways.cod_provider import CodGatewayProvider
from payflow.services.gateways.sepay_provider import SePayGatewayProvider
from payflow.services.gateways.stripe_provider import StripeGatewayProvider

SEPAY_CREDENTIALS = {
    "api_token": "sepay-api-token",
    "bank_account_number": "0123456789",
    "bank_code": "VCB",
    "webhook_api_key": "sepay-webhook-key",
}


def _init_request(amount="19.99", currency="USD", method="card") -> PaymentInitRequest:
    return PaymentInitRequest(
        tenant_id="tenant-alpha",
        transaction_number="TXN-TEST0001",
        amount=Decimal(amount),
        currency=currency,
        payment_method=method,
        customer_email="payer@example.com",
        metadata={"checkout_session_id": "session-1"},
    )


def _stripe_provider(fake, **credentials) -> StripeGatewayProvider:
    provider = StripeGatewayProvider(client_factory=fake)
    provider.initialize({"secret_key": "sk_test_123", **credentials}, "sandbox")
    return provider


def _sepay_provider(http, **overrides) -> SePayGatewayProvider:
    provider = SePayGatewayProvider(http=http)
    provider.initialize({**SEPAY_CREDENTIALS, **overrides}, "live")
    return provider


def test_stripe_initiate_creates_intent_in_minor_units_with_idempotency_key(fake_stripe):
    fake = fake_stripe
    provider = _stripe_provider(fake, publishable_key="pk_test_abc")

    result = provider.initiate_payment(_init_request())

    assert fake.api_keys == ["sk_test_123"]
    call = fake.payment_intents.created[0]
    assert call["params"]["amount"] == 1999
    assert call["params"]["currency"] == "usd"
    assert call["params"]["receipt_email"] == "payer@example.com"
    assert call["params"]["metadata"]["checkout_session_id"] == "session-1"
    assert call["options"] == {"idempotency_key": "TXN-TEST0001"}
    assert result.success is True
    assert result.status == "requires_action"
    assert result.requires_action is True
    assert result.gateway_transaction_id == "pi_test_1"
    assert result.client_secret == "pi_test_1_secret_abc"
    assert result.additional_data["publishable_key"] == "pk_test_abc"


def test_stripe_zero_decimal_currency_is_not_scaled(fake_stripe):
    fake = fake_stripe
    provider = _stripe_provider(fake)

    provider.initiate_payment(_init_request(amount="230000", currency="VND"))

    assert fake.payment_intents.created[0]["params"]["amount"] == 230000


def test_stripe_failures_come_back_as_results(fake_stripe):
    fake = fake_stripe
    provider = _stripe_provider(fake)

    fake.payment_intents.create_error = stripe.APIConnectionError("network down")
    unavailable = provider.initiate_payment(_init_request())
    assert unavailable.success is False
    assert unavailable.error_code == "gateway_unavailable"

    fake.payment_intents.create_error = stripe.CardError("Your card was declined.", "card", "card_declined")
    declined = provider.initiate_payment(_init_request())
    assert declined.success is False
    assert declined.error_code == "declined"

    unconfigured = StripeGatewayProvider(client_factory=fake)
    unconfigured.initialize({}, "sandbox")
    missing_key = unconfigured.initiate_payment(_init_request())
    assert missing_key.success is False
    assert missing_key.error_code == "not_configured"


def test_stripe_status_lookup_maps_intent_status(fake_stripe):
    fake = fake_stripe
    provider = _stripe_provider(fake)
    created = provider.initiate_payment(_init_request())

    fake.payment_intents.intents[created.gateway_transaction_id].status = "succeeded"
    status = provider.get_payment_status(created.gateway_transaction_id)

    assert status.success is True
    assert status.status == "paid"
    assert status.amount == Decimal("19.99")

    fake.payment_intents.intents[created.gateway_transaction_id].status = "requires_capture"
    assert provider.get_payment_status(created.gateway_transaction_id).status == "authorized"


def test_stripe_refund_passes_known_reason_and_keeps_free_text_in_metadata(fake_stripe):
    fake = fake_stripe
    provider = _stripe_provider(fake)

    known = provider.refund(
        RefundRequest(gateway_transaction_id="pi_test_1", amount=Decimal("5.00"), currency="USD", reason="duplicate")
    )
    free_text = provider.refund(
        RefundRequest(gateway_transaction_id="pi_test_1", amount=Decimal("1.50"), currency="USD", reason="box damaged")
    )

    assert known.success is True
    assert known.gateway_refund_id == "re_test_1"
    assert fake.refunds.created[0] == {"payment_intent": "pi_test_1", "amount": 500, "reason": "duplicate"}
    assert free_text.success is True
    assert fake.refunds.created[1]["reason"] == "requested_by_customer"
    assert fake.refunds.created[1]["metadata"] == {"reason_detail": "box damaged"}

    fake.refunds.status = "failed"
    failed = provider.refund(
        RefundRequest(gateway_transaction_id="pi_test_1", amount=Decimal("1.00"), currency="USD")
    )
    assert failed.success is False
    assert failed.error_code == "declined"


def test_stripe_health_check_reflects_balance_call(fake_stripe):
    fake = fake_stripe
    provider = _stripe_provider(fake)
    assert provider.health_check() == "healthy"

    fake.balance.error = stripe.AuthenticationError("Invalid API Key provided")
    assert provider.health_check() == "unhealthy"

    fake.balance.error = stripe.APIError("Something went wrong")
    assert provider.health_check() == "degraded"


def test_stripe_charge_refunded_event_reports_cumulative_refund(fake_stripe):
    fake = fake_stripe
    provider = _stripe_provider(fake, webhook_secret="whsec_unit")
    payload = json.dumps(
        {
            "id": "evt_refund_1",
            "type": "charge.refunded",
            "data": {
                "object": {
                    "id": "ch_1",
                    "payment_intent": "pi_test_9",
                    "amount": 1999,
                    "amount_refunded": 500,
                    "currency": "usd",
                }
            },
        }
    )
    timestamp = int(time.time())
    digest = hmac.new(b"whsec_unit", f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()

    result = provider.validate_webhook(payload.encode("utf-8"), {"stripe-signature": f"t={timestamp},v1={digest}"})

    assert result.is_valid is True
    assert result.gateway_event_id == "evt_refund_1"
    assert result.payment_status == "partial_refund"
    assert result.gateway_transaction_id == "pi_test_9"
    assert result.amount == Decimal("5.00")


def test_sepay_initiate_renders_vietqr_with_reference_memo(fake_sepay_http):
    provider = _sepay_provider(fake_sepay_http)

    result = provider.initiate_payment(_init_request(amount="230000", currency="VND", method="bank_transfer"))

    assert result.success is True
    assert result.status == "pending"
    assert result.requires_action is False
    assert len(result.reference_code) == 16
    assert result.gateway_transaction_id == result.reference_code
    assert result.qr_url.startswith("https://qr.sepay.vn/img?")
    assert "bank=VCB" in result.qr_url
    assert result.additional_data["description"] == f"TT {result.reference_code}"


def test_sepay_initiate_rejects_other_currencies_and_missing_account(fake_sepay_http):
    provider = _sepay_provider(fake_sepay_http)
    wrong_currency = provider.initiate_payment(_init_request(amount="10", currency="USD", method="bank_transfer"))
    assert wrong_currency.success is False
    assert wrong_currency.error_code == "invalid_request"

    unconfigured = SePayGatewayProvider()
    unconfigured.initialize({"api_token": "t"}, "sandbox")
    missing = unconfigured.initiate_payment(_init_request(amount="10", currency="VND", method="bank_transfer"))
    assert missing.success is False
    assert missing.error_code == "not_configured"


def test_sepay_status_lookup_scans_recent_transfers_for_reference(fake_sepay_http):
    http = fake_sepay_http
    http.responses["/transactions/list"] = {
        "status": 200,
        "transactions": [
            {"id": "11", "transaction_content": "chuyen tien", "amount_in": "50000.00"},
            {
                "id": "12",
                "transaction_content": "IBFT TT SP123456ABCD1234 thanh toan",
                "amount_in": "230000.00",
                "transaction_date": "2026-10-17 09:41:00",
                "reference_number": "FT26290",
            },
        ],
    }
    provider = _sepay_provider(http)

    found = provider.get_payment_status("SP123456ABCD1234")
    missing = provider.get_payment_status("SP654321ABCD1234")

    assert found.success is True
    assert found.status == "paid"
    assert found.amount == Decimal("230000.00")
    assert found.additional_data["sepay_id"] == "12"
    assert missing.success is True
    assert missing.status == "pending"
    assert http.calls[0]["headers"]["Authorization"] == "Bearer sepay-api-token"
    assert http.calls[0]["params"]["account_number"] == "0123456789"


def test_sepay_status_lookup_network_error_is_unavailable(fake_sepay_http):
    http = fake_sepay_http
    http.error = requests.ConnectionError("connection reset")
    provider = _sepay_provider(http)

    result = provider.get_payment_status("SP123456ABCD1234")

    assert result.success is False
    assert result.error_code == "gateway_unavailable"


def test_sepay_refund_is_unsupported_and_never_raises(fake_sepay_http):
    provider = _sepay_provider(fake_sepay_http)

    result = provider.refund(
        RefundRequest(gateway_transaction_id="SP123456ABCD1234", amount=Decimal("230000"), currency="VND")
    )

    assert result.success is False
    assert result.error_code == "unsupported_operation"
    assert "manually" in result.error_message


def test_sepay_webhook_accepts_api_key_header_variants(fake_sepay_http):
    provider = _sepay_provider(fake_sepay_http)
    body = b'{"id": 501, "transferType": "in", "transferAmount": 230000, "content": "TT SP123456ABCD1234"}'

    for headers in (
        {"authorization": "Apikey sepay-webhook-key"},
        {"Authorization": "Bearer sepay-webhook-key"},
        {"X-API-Key": "sepay-webhook-key"},
    ):
        result = provider.validate_webhook(body, headers)
        assert result.is_valid is True
        assert result.gateway_event_id == "501"
        assert result.payment_status == "paid"
        assert result.reference_code == "SP123456ABCD1234"
        assert result.amount == Decimal("230000.00")

    assert provider.validate_webhook(body, {"Authorization": "Apikey wrong"}).is_valid is False
    assert provider.validate_webhook(b"not json", {"X-API-Key": "sepay-webhook-key"}).is_valid is False
    assert provider.validate_webhook(b'{"content": "x"}', {"X-API-Key": "sepay-webhook-key"}).is_valid is False


def test_sepay_health_check_looks_for_configured_account(fake_sepay_http):
    http = fake_sepay_http
    http.responses["/bankaccounts/list"] = {
        "status": 200,
        "bankaccounts": [{"account_number": "0123456789", "bank_short_name": "VCB"}],
    }
    provider = _sepay_provider(http)
    assert provider.health_check() == "healthy"

    http.responses["/bankaccounts/list"] = {"status": 200, "bankaccounts": [{"account_number": "999"}]}
    assert provider.health_check() == "degraded"

    http.error = requests.Timeout("timed out")
    assert provider.health_check() == "unhealthy"

    no_token = SePayGatewayProvider()
    no_token.initialize({"bank_account_number": "1", "bank_code": "VCB"}, "sandbox")
    assert no_token.health_check() == "unhealthy"


def test_cash_on_delivery_provider_has_no_gateway_side_effects():
    provider = CodGatewayProvider()
    provider.initialize({}, "live")

    result = provider.initiate_payment(_init_request(amount="230000", currency="VND", method="cod"))

    assert result.success is True
    assert result.status == "cod_pending"
    assert result.gateway_transaction_id == "cod-TXN-TEST0001"
    assert provider.get_payment_status("cod-TXN-TEST0001").status == "cod_pending"
    refund = provider.refund(RefundRequest(gateway_transaction_id="cod-1", amount=Decimal("1"), currency="VND"))
    assert refund.success is False
    assert refund.error_code == "unsupported_operation"
    assert provider.validate_webhook(b"{}", {}).is_valid is False
    assert provider.health_check() == "healthy"


def test_registry_resolves_by_method_currency_and_amount(test_context, seed_gateway):
    _, session_local = test_context
    seed_gateway("stripe", credentials={"secret_key": "sk_test_123"}, supported_currencies=["USD"])
    seed_gateway("sepay", credentials=SEPAY_CREDENTIALS, min_amount=Decimal("10000"), max_amount=Decimal("500000000"))
    seed_gateway("cod", is_active=False)

    with session_local() as db:
        resolved = gateway_registry.resolve_for_payment(
            db,
            tenant_id="tenant-alpha",
            payment_method="bank_transfer",
            amount=Decimal("230000"),
            currency="vnd",
        )
        assert resolved.config.provider == "sepay"
        assert isinstance(resolved.provider, SePayGatewayProvider)

        with pytest.raises(GatewayNotConfigured):
            gateway_registry.resolve_for_payment(
                db, tenant_id="tenant-alpha", payment_method="card", amount=Decimal("230000"), currency="VND"
            )
        with pytest.raises(GatewayNotConfigured):
            gateway_registry.resolve_for_payment(
                db, tenant_id="tenant-alpha", payment_method="bank_transfer", amount=Decimal("5000"), currency="VND"
            )
        with pytest.raises(GatewayNotConfigured):
            gateway_registry.resolve_for_payment(
                db, tenant_id="tenant-alpha", payment_method="cod", amount=Decimal("5000"), currency="VND"
            )
        with pytest.raises(InvalidCheckoutInput):
            gateway_registry.resolve_for_payment(
                db,
                tenant_id="tenant-alpha",
                payment_method="card",
                amount=Decimal("230000"),
                currency="VND",
                gateway_hint="sepay",
            )
        with pytest.raises(GatewayNotConfigured):
            gateway_registry.resolve_for_payment(
                db,
                tenant_id="tenant-beta",
                payment_method="bank_transfer",
                amount=Decimal("230000"),
                currency="VND",
            )


def test_registry_prefers_lowest_sort_order_and_honours_registration(test_context, seed_gateway):
    _, session_local = test_context
    seed_gateway("cod", sort_order=5)
    seed_gateway("cod_backup", sort_order=1, supported_methods=["cod"])

    gateway_registry.register_provider("cod_backup", CodGatewayProvider, default_methods=("cod",))
    try:
        assert "cod_backup" in gateway_registry.available_providers()
        with session_local() as db:
            first = gateway_registry.resolve_for_payment(
                db, tenant_id="tenant-alpha", payment_method="cod", amount=Decimal("100"), currency="VND"
            )
            assert first.config.provider == "cod_backup"
    finally:
        gateway_registry.unregister_provider("cod_backup")

    assert "cod_backup" not in gateway_registry.available_providers()
    with session_local() as db:
        fallback = gateway_registry.resolve_for_payment(
            db, tenant_id="tenant-alpha", payment_method="cod", amount=Decimal("100"), currency="VND"
        )
        assert fallback.config.provider == "cod"


def test_provider_for_config_decrypts_stored_webhook_secret(test_context, seed_gateway, fake_stripe):
    _, session_local = test_context
    seed_gateway("stripe", credentials={"secret_key": "sk_test_abc"}, webhook_secret="whsec_stored")

    with session_local() as db:
        resolved = gateway_registry.resolve_provider(db, tenant_id="tenant-alpha", provider="Stripe")

    assert fake_stripe.api_keys == ["sk_test_abc"]
    assert resolved.provider._webhook_secret == "whsec_stored"


def test_stored_credentials_hide_plaintext_and_depend_on_secret_key(monkeypatch):
    bundle = {"api_token": "sepay-api-token", "webhook_api_key": "sepay-webhook-key"}
    stored = encrypt_credentials(bundle)

    assert "sepay-api-token" not in stored
    assert decrypt_credentials(stored) == bundle
    assert decrypt_credentials(None) == {}

    monkeypatch.setattr(settings, "secret_key", "another-deployment-secret-key-0123456789")
    with pytest.raises(ValueError):
        decrypt_credentials(stored)


def test_unknown_provider_code_is_not_configured():
    with pytest.raises(GatewayNotConfigured):
        gateway_registry.build_provider("paypal")


def test_gateway_schemas_endpoint_lists_credential_fields(test_context):
    client, _ = test_context

    res = client.get("/payments/gateways/schemas")

    assert res.status_code == 200, res.text
    items = {item["provider"]: item for item in res.json()["items"]}
    assert sorted(items) == ["cod", "sepay", "stripe"]
    assert items["cod"]["supports_cod"] is True
    assert items["cod"]["credential_fields"] == []
    assert items["sepay"]["supports_refunds"] is False
    stripe_fields = {field["key"]: field for field in items["stripe"]["credential_fields"]}
    assert stripe_fields["secret_key"]["secret"] is True
    assert stripe_fields["publishable_key"]["required"] is False
