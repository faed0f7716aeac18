from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from payflow.core.errors import InvalidStateTransition, SessionExpired
from payflow.models.checkout import CheckoutSession
from payflow.models.payment import PaymentTransaction
from payflow.services import checkout_service, order_handoff
from payflow.services.order_handoff import (
    OrderHandoffRequest,
    OrderHandoffResult,
    StubOrderService,
    get_order_service,
    register_order_service,
)

TENANT_ID = "tenant-alpha"

SEPAY_CREDENTIALS = {
    "api_token": "sepay-api-token",
    "bank_account_number": "0123456789",
    "bank_code": "VCB",
    "webhook_api_key": "sepay-webhook-key",
}


def _headers(tenant_id: str = TENANT_ID) -> dict[str, str]:
    return {"X-Tenant-ID": tenant_id}


def _address(**overrides) -> dict:
    address = {
        "full_name": "Nguyen Van A",
        "phone": "0901234567",
        "line1": "12 Le Loi",
        "district": "District 1",
        "city": "Ho Chi Minh City",
        "country": "VN",
    }
    address.update(overrides)
    return address


def _create_session(client, *, sub_total=200000, currency="VND", tenant_id: str = TENANT_ID) -> dict:
    res = client.post(
        "/checkout/sessions",
        json={
            "cart_id": "cart-001",
            "customer_email": "shopper@example.com",
            "sub_total": sub_total,
            "currency": currency,
        },
        headers=_headers(tenant_id),
    )
    assert res.status_code == 201, res.text
    return res.json()


def _advance_to_shipping_selected(client, session_id: str, *, cost=30000) -> dict:
    address_res = client.put(
        f"/checkout/sessions/{session_id}/shipping-address",
        json={"address": _address()},
        headers=_headers(),
    )
    assert address_res.status_code == 200, address_res.text
    shipping_res = client.put(
        f"/checkout/sessions/{session_id}/shipping-method",
        json={"method": "GHN Standard", "cost": cost},
        headers=_headers(),
    )
    assert shipping_res.status_code == 200, shipping_res.text
    return shipping_res.json()


def test_checkout_session_walks_address_and_shipping_steps(test_context):
    client, _ = test_context

    session = _create_session(client, sub_total=200000, currency="VND")
    assert session["status"] == "started"
    assert session["grand_total"] == 200000
    assert session["version"] == 1

    address_res = client.put(
        f"/checkout/sessions/{session['id']}/shipping-address",
        json={"address": _address()},
        headers=_headers(),
    )
    assert address_res.status_code == 200, address_res.text
    assert address_res.json()["status"] == "address_complete"
    assert address_res.json()["billing_address"]["city"] == "Ho Chi Minh City"

    shipping_res = client.put(
        f"/checkout/sessions/{session['id']}/shipping-method",
        json={"method": "GHN Standard", "cost": 30000},
        headers=_headers(),
    )
    assert shipping_res.status_code == 200, shipping_res.text
    body = shipping_res.json()
    assert body["status"] == "shipping_selected"
    assert body["shipping_cost"] == 30000
    assert body["grand_total"] == 230000


def test_description_matched_payment_leaves_session_pending_with_qr(test_context, seed_gateway):
    client, session_local = test_context
    seed_gateway("sepay", credentials=SEPAY_CREDENTIALS)

    session = _create_session(client)
    _advance_to_shipping_selected(client, session["id"])

    res = client.put(
        f"/checkout/sessions/{session['id']}/payment-method",
        json={"payment_method": "bank_transfer"},
        headers=_headers(),
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["session"]["status"] == "payment_pending"
    payment = body["payment"]
    assert payment["provider"] == "sepay"
    assert payment["status"] == "pending"
    assert payment["requires_action"] is False
    assert payment["amount"] == 230000

    reference_code = payment["reference_code"]
    assert len(reference_code) == 16
    assert reference_code.startswith("SP")
    assert payment["gateway_transaction_id"] == reference_code
    assert f"des=TT%20{reference_code}" in payment["qr_url"]
    assert "acc=0123456789" in payment["qr_url"]
    assert "amount=230000" in payment["qr_url"]

    with session_local() as db:
        transaction = db.execute(
            select(PaymentTransaction).where(PaymentTransaction.id == payment["transaction_id"])
        ).scalar_one()
        assert transaction.reference_code == reference_code
        assert transaction.checkout_session_id == session["id"]
        assert transaction.amount == Decimal("230000.00")


def test_steps_out_of_order_are_rejected_without_changes(test_context, seed_gateway):
    client, session_local = test_context
    seed_gateway("sepay", credentials=SEPAY_CREDENTIALS)
    session = _create_session(client)

    shipping_res = client.put(
        f"/checkout/sessions/{session['id']}/shipping-method",
        json={"method": "GHN Standard", "cost": 30000},
        headers=_headers(),
    )
    assert shipping_res.status_code == 409, shipping_res.text
    assert shipping_res.json()["error"]["code"] == "invalid_state_transition"

    payment_res = client.put(
        f"/checkout/sessions/{session['id']}/payment-method",
        json={"payment_method": "bank_transfer"},
        headers=_headers(),
    )
    assert payment_res.status_code == 409, payment_res.text

    complete_res = client.post(f"/checkout/sessions/{session['id']}/complete", headers=_headers())
    assert complete_res.status_code == 409, complete_res.text

    with session_local() as db:
        stored = db.get(CheckoutSession, session["id"])
        assert stored.status == "started"
        assert stored.shipping_method is None
        assert stored.payment_transaction_id is None
        assert stored.version == 1
        assert db.execute(select(PaymentTransaction)).scalars().all() == []


def test_shipping_address_can_be_changed_before_shipping_is_chosen(test_context):
    client, _ = test_context
    session = _create_session(client)

    first = client.put(
        f"/checkout/sessions/{session['id']}/shipping-address",
        json={"address": _address()},
        headers=_headers(),
    )
    assert first.status_code == 200, first.text
    second = client.put(
        f"/checkout/sessions/{session['id']}/shipping-address",
        json={"address": _address(city="Ha Noi")},
        headers=_headers(),
    )
    assert second.status_code == 200, second.text
    assert second.json()["status"] == "address_complete"
    assert second.json()["shipping_address"]["city"] == "Ha Noi"

    _advance = client.put(
        f"/checkout/sessions/{session['id']}/shipping-method",
        json={"method": "GHN Express", "cost": 45000},
        headers=_headers(),
    )
    assert _advance.status_code == 200, _advance.text

    late_change = client.put(
        f"/checkout/sessions/{session['id']}/shipping-address",
        json={"address": _address(city="Da Nang")},
        headers=_headers(),
    )
    assert late_change.status_code == 409, late_change.text


def test_billing_address_can_differ_from_shipping(test_context):
    client, _ = test_context
    session = _create_session(client)
    _advance_to_shipping_selected(client, session["id"])

    missing = client.put(
        f"/checkout/sessions/{session['id']}/billing-address",
        json={"same_as_shipping": False},
        headers=_headers(),
    )
    assert missing.status_code == 400, missing.text
    assert missing.json()["error"]["code"] == "invalid_checkout_input"

    res = client.put(
        f"/checkout/sessions/{session['id']}/billing-address",
        json={"same_as_shipping": False, "address": _address(full_name="Cong ty ABC", city="Ha Noi")},
        headers=_headers(),
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["billing_same_as_shipping"] is False
    assert body["billing_address"]["full_name"] == "Cong ty ABC"
    assert body["shipping_address"]["full_name"] == "Nguyen Van A"
    assert body["status"] == "shipping_selected"


def test_customer_info_and_coupon_adjust_session(test_context):
    client, _ = test_context
    session = _create_session(client, sub_total=200000)

    customer_res = client.put(
        f"/checkout/sessions/{session['id']}/customer",
        json={"name": "Tran Thi B", "phone": "0907654321", "notes": "Call before delivery"},
        headers=_headers(),
    )
    assert customer_res.status_code == 200, customer_res.text
    assert customer_res.json()["customer_name"] == "Tran Thi B"
    assert customer_res.json()["customer_notes"] == "Call before delivery"

    too_big = client.post(
        f"/checkout/sessions/{session['id']}/coupon",
        json={"code": "HUGE", "discount": 250000},
        headers=_headers(),
    )
    assert too_big.status_code == 400, too_big.text

    applied = client.post(
        f"/checkout/sessions/{session['id']}/coupon",
        json={"code": "save20k", "discount": 20000},
        headers=_headers(),
    )
    assert applied.status_code == 200, applied.text
    assert applied.json()["coupon_code"] == "SAVE20K"

    shipped = _advance_to_shipping_selected(client, session["id"], cost=30000)
    assert shipped["grand_total"] == 210000

    removed = client.delete(f"/checkout/sessions/{session['id']}/coupon", headers=_headers())
    assert removed.status_code == 200, removed.text
    assert removed.json()["coupon_code"] is None
    assert removed.json()["grand_total"] == 230000


def test_expired_session_is_swept_and_cannot_complete(test_context):
    client, session_local = test_context
    session = _create_session(client)
    _advance_to_shipping_selected(client, session["id"])

    with session_local() as db:
        db.execute(
            update(CheckoutSession)
            .where(CheckoutSession.id == session["id"])
            .values(
                expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
                version=CheckoutSession.version + 1,
            )
        )
        db.commit()

    sweep = client.post("/checkout/sessions/expire-due")
    assert sweep.status_code == 200, sweep.text
    assert sweep.json()["expired_session_ids"] == [session["id"]]

    fetched = client.get(f"/checkout/sessions/{session['id']}", headers=_headers())
    assert fetched.json()["status"] == "expired"

    complete_res = client.post(f"/checkout/sessions/{session['id']}/complete", headers=_headers())
    assert complete_res.status_code == 410, complete_res.text
    assert complete_res.json()["error"]["code"] == "session_expired"

    abandon_res = client.post(f"/checkout/sessions/{session['id']}/abandon", headers=_headers())
    assert abandon_res.status_code == 410, abandon_res.text

    second_sweep = client.post("/checkout/sessions/expire-due")
    assert second_sweep.json()["expired_count"] == 0


def test_session_past_deadline_rejects_steps_before_sweep(test_context):
    client, session_local = test_context
    session = _create_session(client)

    with session_local() as db:
        db.execute(
            update(CheckoutSession)
            .where(CheckoutSession.id == session["id"])
            .values(
                expires_at=datetime.now(timezone.utc) - timedelta(seconds=5),
                version=CheckoutSession.version + 1,
            )
        )
        db.commit()

    res = client.put(
        f"/checkout/sessions/{session['id']}/shipping-address",
        json={"address": _address()},
        headers=_headers(),
    )
    assert res.status_code == 410, res.text

    extend_res = client.post(f"/checkout/sessions/{session['id']}/extend", headers=_headers())
    assert extend_res.status_code == 410, extend_res.text


def test_sweep_with_injected_clock_then_complete_fails(test_context):
    _, session_local = test_context
    started_at = datetime(2026, 10, 17, 8, 0, tzinfo=timezone.utc)

    with session_local() as db:
        checkout = checkout_service.create_session(
            db,
            tenant_id=TENANT_ID,
            cart_id="cart-ttl",
            customer_email="ttl@example.com",
            sub_total=Decimal("200000"),
            currency="VND",
            now=started_at,
        )
        session_id = checkout.id

        assert checkout_service.expire_due_sessions(db, now=started_at + timedelta(minutes=29)) == []
        expired = checkout_service.expire_due_sessions(db, now=started_at + timedelta(minutes=31))
        assert expired == [session_id]

        stored = checkout_service.get_session(db, tenant_id=TENANT_ID, session_id=session_id)
        assert stored.status == "expired"
        with pytest.raises(SessionExpired):
            checkout_service.complete(
                db,
                stored,
                order_id="order-1",
                order_number="ORD-1",
                now=started_at + timedelta(minutes=32),
            )


def test_extend_pushes_deadline_forward(test_context):
    client, _ = test_context
    session = _create_session(client)
    original_deadline = datetime.fromisoformat(session["expires_at"])

    res = client.post(
        f"/checkout/sessions/{session['id']}/extend",
        json={"minutes": 90},
        headers=_headers(),
    )
    assert res.status_code == 200, res.text
    assert datetime.fromisoformat(res.json()["expires_at"]) > original_deadline


def test_abandon_is_terminal(test_context):
    client, _ = test_context
    session = _create_session(client)

    res = client.post(f"/checkout/sessions/{session['id']}/abandon", headers=_headers())
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "abandoned"

    again = client.post(f"/checkout/sessions/{session['id']}/abandon", headers=_headers())
    assert again.status_code == 409, again.text

    address_res = client.put(
        f"/checkout/sessions/{session['id']}/shipping-address",
        json={"address": _address()},
        headers=_headers(),
    )
    assert address_res.status_code == 409, address_res.text


def test_abandon_past_deadline_fails_without_changes(test_context):
    _, session_local = test_context
    started_at = datetime(2026, 10, 17, 8, 0, tzinfo=timezone.utc)

    with session_local() as db:
        checkout = checkout_service.create_session(
            db,
            tenant_id=TENANT_ID,
            cart_id="cart-late-abandon",
            customer_email="late@example.com",
            sub_total=Decimal("200000"),
            currency="VND",
            now=started_at,
        )
        session_id = checkout.id

        with pytest.raises(SessionExpired):
            checkout_service.abandon(db, checkout, now=started_at + timedelta(minutes=31))

    with session_local() as db:
        stored = checkout_service.get_session(db, tenant_id=TENANT_ID, session_id=session_id)
        assert stored.status == "started"
        assert stored.version == 1
        assert checkout_service.expire_due_sessions(db, now=started_at + timedelta(minutes=31)) == [session_id]


def test_cash_on_delivery_completes_with_order_handoff(test_context, seed_gateway):
    client, _ = test_context
    seed_gateway("cod")
    session = _create_session(client)
    _advance_to_shipping_selected(client, session["id"])

    selected = client.put(
        f"/checkout/sessions/{session['id']}/payment-method",
        json={"payment_method": "cod"},
        headers=_headers(),
    )
    assert selected.status_code == 200, selected.text
    assert selected.json()["session"]["status"] == "payment_pending"
    payment = selected.json()["payment"]
    assert payment["status"] == "cod_pending"

    completed = client.post(f"/checkout/sessions/{session['id']}/complete", headers=_headers())
    assert completed.status_code == 200, completed.text
    body = completed.json()
    assert body["status"] == "completed"
    assert body["order_id"]
    assert body["order_number"].startswith("ORD-")

    collected = client.post(
        f"/payments/transactions/{payment['transaction_id']}/cod-collected",
        json={"collector_name": "Courier 7"},
        headers=_headers(),
    )
    assert collected.status_code == 200, collected.text
    assert collected.json()["status"] == "cod_collected"
    assert collected.json()["cod_collector_name"] == "Courier 7"

    twice = client.post(
        f"/payments/transactions/{payment['transaction_id']}/cod-collected",
        headers=_headers(),
    )
    assert twice.status_code == 409, twice.text


def test_complete_with_explicit_order_ids(test_context, seed_gateway):
    client, _ = test_context
    seed_gateway("cod")
    session = _create_session(client)
    _advance_to_shipping_selected(client, session["id"])
    selected = client.put(
        f"/checkout/sessions/{session['id']}/payment-method",
        json={"payment_method": "cod"},
        headers=_headers(),
    )
    assert selected.status_code == 200, selected.text

    res = client.post(
        f"/checkout/sessions/{session['id']}/complete",
        json={"order_id": "order-123", "order_number": "ORD-123"},
        headers=_headers(),
    )
    assert res.status_code == 200, res.text
    assert res.json()["order_id"] == "order-123"
    assert res.json()["order_number"] == "ORD-123"


def test_payment_method_without_matching_gateway_is_not_configured(test_context, seed_gateway):
    client, session_local = test_context
    seed_gateway("sepay", credentials=SEPAY_CREDENTIALS)
    session = _create_session(client)
    _advance_to_shipping_selected(client, session["id"])

    res = client.put(
        f"/checkout/sessions/{session['id']}/payment-method",
        json={"payment_method": "card"},
        headers=_headers(),
    )
    assert res.status_code == 404, res.text
    assert res.json()["error"]["code"] == "gateway_not_configured"

    with session_local() as db:
        assert db.get(CheckoutSession, session["id"]).status == "shipping_selected"


def test_sessions_are_scoped_to_tenant_header(test_context):
    client, _ = test_context
    session = _create_session(client)

    other = client.get(f"/checkout/sessions/{session['id']}", headers=_headers("tenant-beta"))
    assert other.status_code == 404, other.text
    assert other.json()["error"]["code"] == "checkout_session_not_found"

    missing = client.get(f"/checkout/sessions/{session['id']}")
    assert missing.status_code == 400, missing.text


def test_service_guard_checks_expired_before_state(test_context):
    _, session_local = test_context
    now = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)

    with session_local() as db:
        checkout = checkout_service.create_session(
            db,
            tenant_id=TENANT_ID,
            cart_id="cart-guard",
            customer_email="guard@example.com",
            sub_total=Decimal("1000"),
            currency="VND",
            now=now,
        )
        with pytest.raises(InvalidStateTransition):
            checkout_service.select_shipping_method(db, checkout, method="Std", cost=Decimal("10"), now=now)
        with pytest.raises(SessionExpired):
            checkout_service.set_shipping_address(
                db,
                checkout,
                address=_address(),
                now=now + timedelta(minutes=30),
            )
        db.refresh(checkout)
        assert checkout.status == "started"
        assert checkout.shipping_address is None


class _FixedOrderService:
    name = "fixed"

    def __init__(self):
        self.requests = []

    def create_order(self, request):
        self.requests.append(request)
        return OrderHandoffResult(order_id="order-fixed-1", order_number="ORD-FIXED1")


def test_order_handoff_uses_supplied_order_service(test_context, seed_gateway, monkeypatch):
    _, session_local = test_context
    monkeypatch.setattr(order_handoff, "_ORDER_SERVICES", dict(order_handoff._ORDER_SERVICES))
    seed_gateway("cod")
    service = _FixedOrderService()
    register_order_service(service)
    assert get_order_service("Fixed") is service
    with pytest.raises(ValueError):
        get_order_service("missing")

    with session_local() as db:
        checkout = checkout_service.create_session(
            db,
            tenant_id=TENANT_ID,
            cart_id="cart-handoff",
            customer_email="Handoff@Example.com",
            sub_total=Decimal("150000"),
            currency="vnd",
        )
        assert checkout.customer_email == "handoff@example.com"
        assert checkout.currency == "VND"
        checkout = checkout_service.set_customer_notes(db, checkout, notes="  Leave at the door  ")
        assert checkout.customer_notes == "Leave at the door"
        checkout_service.set_shipping_address(db, checkout, address=_address())
        checkout_service.select_shipping_method(db, checkout, method="Pickup", cost=Decimal("0"))
        selection = checkout_service.select_payment_method(db, checkout, payment_method="cod")

        completed = checkout_service.complete_with_order_handoff(db, selection.session, order_service=service)

        assert completed.status == "completed"
        assert completed.order_id == "order-fixed-1"
        assert completed.order_number == "ORD-FIXED1"
        handoff = service.requests[0]
        assert handoff.checkout_session_id == completed.id
        assert handoff.idempotency_key == completed.id
        assert handoff.payment_transaction_id == selection.transaction.id
        assert handoff.grand_total == "150000.00"

        with pytest.raises(InvalidStateTransition):
            checkout_service.set_customer_notes(db, completed, notes="too late")


def test_stub_order_service_returns_same_order_for_repeated_handoff():
    service = StubOrderService()
    request = OrderHandoffRequest(
        tenant_id=TENANT_ID,
        checkout_session_id="session-1",
        cart_id="cart-1",
        user_id=None,
        customer_email="repeat@example.com",
        grand_total="230000.00",
        currency="VND",
        payment_transaction_id="txn-1",
        idempotency_key="session-1",
    )

    first = service.create_order(request)
    retried = service.create_order(request)
    other_tenant = service.create_order(replace(request, tenant_id="tenant-beta"))

    assert retried == first
    assert first.order_number.startswith("ORD-")
    assert other_tenant.order_id != first.order_id
