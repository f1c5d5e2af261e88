import json

import pytest

from app.core.exceptions import AuthenticationError
from app.models.order_session import PaymentStatus
from app.services.conversation import handle_message
from app.services import payment_webhooks
from app.services.payment_webhooks import correlation_refs, handle_webhook, notification_phone
from app.services.whatsapp import parse_inbound
from tests.fakes import FakeLogistics, UnreachableSheetsLedger
from tests.factories import PHONE, delivery_form, razorpay_event, sign, wa_form, wa_order, wa_text

pytestmark = pytest.mark.asyncio


async def _prepaid_order(services, phone=PHONE):
    for payload in (
        wa_text("place order", phone),
        wa_order([{"product_retailer_id": "ezg1lu6edm", "quantity": 2, "item_price": 100.00}], phone),
        wa_form(delivery_form("prepaid"), phone),
    ):
        await handle_message(services, parse_inbound(payload))
    return await services.store.find_latest_by_phone(phone)


async def _deliver(services, body: bytes, event_id: str | None = None):
    return await handle_webhook(services, body, sign(body), event_id=event_id)


async def test_bad_signature_rejected_without_side_effects(services):
    session = await _prepaid_order(services)
    body = razorpay_event("payment_link.paid", reference_id=session.order_id)
    with pytest.raises(AuthenticationError):
        await handle_webhook(services, body, sign(body, "wrong-secret"))
    with pytest.raises(AuthenticationError):
        await handle_webhook(services, body, None)
    assert session.payment_status == PaymentStatus.AWAITING_PAYMENT
    assert services.logistics.shipments == []
    assert services.ledger.tags() == ["awaiting_payment"]


async def test_tampered_body_rejected(services):
    session = await _prepaid_order(services)
    body = razorpay_event("payment_link.paid", reference_id=session.order_id)
    signature = sign(body)
    tampered = body.replace(b"20000", b"1")
    with pytest.raises(AuthenticationError):
        await handle_webhook(services, tampered, signature)


async def test_paid_triggers_shipment_and_ledger(services):
    session = await _prepaid_order(services)
    result = await _deliver(services, razorpay_event("payment_link.paid", reference_id=session.order_id))

    assert result == {"status": "ok", "note": "shipped"}
    assert session.payment_status == PaymentStatus.PAID
    assert session.carrier_ref == "WB0001"
    assert session.amount_paise == 20000
    assert services.logistics.quotes[0][3] == "Pre-paid"
    shipment = services.logistics.shipments[0]
    assert shipment.payment_mode == "Prepaid"
    assert shipment.cod_amount_paise == 0
    assert services.ledger.tags() == ["awaiting_payment", "paid"]
    texts = services.messenger.all_text()
    assert "Payment successful" in texts
    assert "Tracking number: WB0001" in texts


async def test_replayed_paid_event_is_idempotent(services):
    session = await _prepaid_order(services)
    body = razorpay_event("payment_link.paid", reference_id=session.order_id)
    await _deliver(services, body)
    again = await _deliver(services, body)

    assert again["note"] == "already processed"
    assert len(services.logistics.shipments) == 1
    assert services.ledger.tags().count("paid") == 1


async def test_link_paid_and_payment_captured_pair_handled_once(services):
    session = await _prepaid_order(services)
    await _deliver(services, razorpay_event("payment_link.paid", reference_id=session.order_id), "evt_link")
    second = await _deliver(
        services, razorpay_event("payment.captured", notes_order_id=session.order_id), "evt_capture"
    )

    assert second["note"] == "already processed"
    assert len(services.logistics.shipments) == 1
    assert services.ledger.tags().count("paid") == 1


async def test_duplicate_event_id_short_circuits(services):
    session = await _prepaid_order(services)
    body = razorpay_event("payment.failed", reference_id=session.order_id)
    await _deliver(services, body, "evt_1")
    result = await _deliver(services, body, "evt_1")
    assert result == {"status": "ok", "note": "duplicate event"}
    failures = [t for t in services.messenger.all_text().splitlines() if "Payment failed" in t]
    assert len(failures) == 1


async def test_resolves_by_phone_when_reference_missing(services):
    session = await _prepaid_order(services)
    result = await _deliver(services, razorpay_event("payment.captured", contact="+91 99999 99999"))
    assert result["note"] == "shipped"
    assert session.payment_status == PaymentStatus.PAID


async def test_phone_fallback_picks_newest_session(services):
    older = await _prepaid_order(services)
    newer = await _prepaid_order(services)
    assert older.order_id != newer.order_id
    await _deliver(services, razorpay_event("payment.captured", contact=PHONE))
    assert newer.payment_status == PaymentStatus.PAID
    assert older.payment_status == PaymentStatus.AWAITING_PAYMENT


async def test_reference_id_wins_over_phone(services):
    older = await _prepaid_order(services)
    newer = await _prepaid_order(services)
    await _deliver(services, razorpay_event("payment_link.paid", reference_id=older.order_id, contact=PHONE))
    assert older.payment_status == PaymentStatus.PAID
    assert newer.payment_status == PaymentStatus.AWAITING_PAYMENT


async def test_unresolvable_notification_acknowledged(services):
    await _prepaid_order(services)
    result = await _deliver(services, razorpay_event("payment_link.paid", reference_id="OUO-missing"))
    assert result == {"status": "ok", "note": "ignored: no matching order"}
    assert services.logistics.shipments == []


async def test_failed_then_paid(services):
    session = await _prepaid_order(services)
    failed = await _deliver(services, razorpay_event("payment.failed", reference_id=session.order_id))
    assert failed["note"] == "failed"
    assert session.payment_status == PaymentStatus.FAILED
    assert "https://rzp.io/i/test1" in services.messenger.last_text()

    paid = await _deliver(services, razorpay_event("payment_link.paid", reference_id=session.order_id))
    assert paid["note"] == "shipped"
    assert session.payment_status == PaymentStatus.PAID


async def test_expired_link_then_late_payment_ignored(services):
    session = await _prepaid_order(services)
    expired = await _deliver(services, razorpay_event("payment_link.expired", reference_id=session.order_id))
    assert expired["note"] == "expired"
    assert "expired" in services.messenger.last_text()

    late = await _deliver(services, razorpay_event("payment_link.paid", reference_id=session.order_id))
    assert late["note"] == "ignored: session is expired"
    assert session.payment_status == PaymentStatus.EXPIRED
    assert services.logistics.shipments == []


async def test_failed_after_paid_ignored(services):
    session = await _prepaid_order(services)
    await _deliver(services, razorpay_event("payment_link.paid", reference_id=session.order_id))
    result = await _deliver(services, razorpay_event("payment.failed", reference_id=session.order_id))
    assert result["note"] == "ignored: session is paid"
    assert session.payment_status == PaymentStatus.PAID


async def test_shipment_failure_after_payment_reports_pending(services):
    services.logistics = FakeLogistics(ship_ok=False)
    session = await _prepaid_order(services)
    result = await _deliver(services, razorpay_event("payment_link.paid", reference_id=session.order_id))

    assert result["note"] == "shipment_pending"
    assert session.payment_status == PaymentStatus.PAID
    assert session.carrier_ref is None
    assert "shipment is pending" in services.messenger.last_text()
    assert services.ledger.tags() == ["awaiting_payment", "paid"]


async def test_quote_failure_does_not_block_prepaid_shipment(services):
    services.logistics = FakeLogistics(charge_paise=None)
    session = await _prepaid_order(services)
    result = await _deliver(services, razorpay_event("payment_link.paid", reference_id=session.order_id))
    assert result["note"] == "shipped"
    assert session.shipping_status == "quote_failed"
    assert services.ledger.rows[-1][1] == "paid"


async def test_unhandled_event_acknowledged(services):
    result = await _deliver(services, razorpay_event("refund.processed"))
    assert result == {"status": "ok", "note": "ignored: refund.processed"}


async def test_unparseable_body_acknowledged(services):
    result = await _deliver(services, b"not json")
    assert result["note"] == "ignored: unparseable body"


async def test_cod_session_ignores_payment_events(services):
    await handle_message(services, parse_inbound(wa_text("place order")))
    await handle_message(
        services,
        parse_inbound(wa_order([{"product_retailer_id": "ezg1lu6edm", "quantity": 1, "item_price": 100}])),
    )
    await handle_message(services, parse_inbound(wa_form(delivery_form("cod"))))
    session = await services.store.find_latest_by_phone(PHONE)
    result = await _deliver(services, razorpay_event("payment_link.paid", reference_id=session.order_id))
    assert result["note"] == "ignored: session is not_applicable"
    assert len(services.logistics.shipments) == 1


async def test_paid_acknowledged_when_ledger_unreachable(services, settings):
    session = await _prepaid_order(services)
    services.ledger = UnreachableSheetsLedger(settings)
    result = await _deliver(services, razorpay_event("payment_link.paid", reference_id=session.order_id), "evt_1")

    assert result == {"status": "ok", "note": "shipped"}
    assert session.payment_status == PaymentStatus.PAID
    assert services.ledger.attempts == 1
    assert "Tracking number: WB0001" in services.messenger.all_text()


async def test_failed_processing_lets_redelivery_through(services, monkeypatch):
    session = await _prepaid_order(services)
    real_mark_paid = payment_webhooks._HANDLERS[PaymentStatus.PAID]
    calls = []

    async def flaky_mark_paid(services, session):
        calls.append(session.order_id)
        if len(calls) == 1:
            raise RuntimeError("sheet quota exceeded")
        return await real_mark_paid(services, session)

    monkeypatch.setitem(payment_webhooks._HANDLERS, PaymentStatus.PAID, flaky_mark_paid)
    body = razorpay_event("payment_link.paid", reference_id=session.order_id)

    first = await _deliver(services, body, "evt_retry")
    assert first == {"status": "ok", "note": "error: processing failed"}
    assert session.payment_status == PaymentStatus.AWAITING_PAYMENT

    second = await _deliver(services, body, "evt_retry")
    assert second == {"status": "ok", "note": "shipped"}
    assert session.payment_status == PaymentStatus.PAID

    third = await _deliver(services, body, "evt_retry")
    assert third["note"] == "duplicate event"


async def test_event_arriving_before_its_order_is_retried(services):
    body = razorpay_event("payment.captured", contact=PHONE)
    early = await _deliver(services, body, "evt_early")
    assert early["note"] == "ignored: no matching order"

    session = await _prepaid_order(services)
    late = await _deliver(services, body, "evt_early")
    assert late["note"] == "shipped"
    assert session.payment_status == PaymentStatus.PAID


async def test_phone_fallback_skips_newer_cod_order(services):
    prepaid = await _prepaid_order(services)
    for payload in (
        wa_text("place order"),
        wa_order([{"product_retailer_id": "ezg1lu6edm", "quantity": 1, "item_price": 100}]),
        wa_form(delivery_form("cod")),
    ):
        await handle_message(services, parse_inbound(payload))
    cod = await services.store.get(services.ledger.rows[-1][2])
    assert cod.order_id != prepaid.order_id

    result = await _deliver(services, razorpay_event("payment.captured", contact=PHONE))
    assert result["note"] == "shipped"
    assert prepaid.payment_status == PaymentStatus.PAID
    assert cod.payment_status == PaymentStatus.NOT_APPLICABLE

def test_correlation_refs_order():
    data = json.loads(razorpay_event("payment_link.paid", reference_id="A", notes_order_id="B"))
    assert correlation_refs(data) == ["A", "B"]


def test_notification_phone_normalized():
    data = json.loads(razorpay_event("payment.captured", contact="+91-98765 43210"))
    assert notification_phone(data) == "919876543210"


# --- HTTP surface ---

async def test_route_rejects_bad_signature(client, services):
    body = razorpay_event("payment_link.paid", reference_id="X")
    r = await client.post(
        "/v1/payments/webhook",
        content=body,
        headers={"X-Razorpay-Signature": "deadbeef", "Content-Type": "application/json"},
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INVALID_SIGNATURE"


async def test_route_processes_signed_event(client, services):
    session = await _prepaid_order(services)
    body = razorpay_event("payment_link.paid", reference_id=session.order_id)
    r = await client.post(
        "/v1/payments/webhook",
        content=body,
        headers={
            "X-Razorpay-Signature": sign(body),
            "X-Razorpay-Event-Id": "evt_http",
            "Content-Type": "application/json",
        },
    )
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "note": "shipped"}
    assert session.payment_status == PaymentStatus.PAID


async def test_route_acknowledges_when_ledger_unreachable(client, services, settings):
    session = await _prepaid_order(services)
    services.ledger = UnreachableSheetsLedger(settings)
    body = razorpay_event("payment_link.paid", reference_id=session.order_id)
    r = await client.post(
        "/v1/payments/webhook",
        content=body,
        headers={"X-Razorpay-Signature": sign(body), "Content-Type": "application/json"},
    )
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "note": "shipped"}
