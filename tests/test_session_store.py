import pytest

from app.core.exceptions import InvalidTransitionError
from app.models.order_session import (
    ConversationPhase,
    DeliveryDetails,
    LineItem,
    OrderPhase,
    PaymentMode,
    PaymentStatus,
)
from app.storage.memory import InMemorySessionStore

pytestmark = pytest.mark.asyncio

CUSTOMER = DeliveryDetails(name="Asha", address_line1="12 MG Road", pincode="560001", phone="919999999999")


def _line(ref="ezg1lu6edm", qty=2, unit=10000) -> LineItem:
    return LineItem(product_ref=ref, quantity=qty, unit_price_paise=unit, line_total_paise=unit * qty)


async def test_promote_copies_draft_items():
    store = InMemorySessionStore()
    draft = await store.create_draft("+91 99999 99999")
    draft.product_items = [_line()]
    draft.subtotal_paise = 20000
    draft.phase = ConversationPhase.ITEMS_SELECTED

    session = await store.promote("919999999999", "ORD1", CUSTOMER, PaymentMode.PREPAID)

    assert session.phone == "919999999999"
    assert session.product_items == [_line()]
    assert session.subtotal_paise == 20000
    assert session.amount_paise == 20000
    assert session.payment_status == PaymentStatus.AWAITING_PAYMENT
    assert await store.get_draft("919999999999") is None
    assert await store.get("ORD1") is session


async def test_promote_without_draft_starts_empty():
    store = InMemorySessionStore()
    session = await store.promote("919999999999", "ORD1", CUSTOMER, PaymentMode.COD)
    assert session.product_items == []
    assert session.subtotal_paise == 0
    assert session.amount_paise == 0
    assert session.payment_status == PaymentStatus.NOT_APPLICABLE


async def test_promoted_items_are_independent_of_draft():
    store = InMemorySessionStore()
    draft = await store.create_draft("919999999999")
    draft.product_items = [_line()]
    session = await store.promote("919999999999", "ORD1", CUSTOMER, PaymentMode.PREPAID)
    draft.product_items[0].quantity = 99
    assert session.product_items[0].quantity == 2


async def test_find_latest_by_phone():
    store = InMemorySessionStore()
    await store.promote("919999999999", "ORD1", CUSTOMER, PaymentMode.PREPAID)
    await store.promote("919999999999", "ORD2", CUSTOMER, PaymentMode.PREPAID)
    await store.promote("918888888888", "ORD3", CUSTOMER, PaymentMode.PREPAID)

    latest = await store.find_latest_by_phone("+91-99999-99999")
    assert latest.order_id == "ORD2"
    assert await store.find_latest_by_phone("910000000000") is None


async def test_create_draft_replaces_previous():
    store = InMemorySessionStore()
    first = await store.create_draft("919999999999")
    first.product_items = [_line()]
    second = await store.create_draft("919999999999")
    assert second.product_items == []
    assert await store.get_draft("919999999999") is second


async def test_event_ids_deduplicated():
    store = InMemorySessionStore()
    assert await store.mark_event_seen("evt_1") is True
    assert await store.mark_event_seen("evt_1") is False
    assert await store.mark_event_seen("evt_2") is True


async def test_lock_is_per_key():
    store = InMemorySessionStore()
    assert store.lock("a") is store.lock("a")
    assert store.lock("a") is not store.lock("b")


async def test_payment_status_moves_forward_only():
    store = InMemorySessionStore()
    session = await store.promote("919999999999", "ORD1", CUSTOMER, PaymentMode.PREPAID)
    session.transition_payment(PaymentStatus.FAILED)
    session.transition_payment(PaymentStatus.PAID)
    with pytest.raises(InvalidTransitionError):
        session.transition_payment(PaymentStatus.AWAITING_PAYMENT)
    with pytest.raises(InvalidTransitionError):
        session.transition_payment(PaymentStatus.EXPIRED)
    assert session.payment_status == PaymentStatus.PAID


async def test_amount_recomputed_not_accumulated():
    store = InMemorySessionStore()
    draft = await store.create_draft("919999999999")
    draft.product_items = [_line()]
    draft.subtotal_paise = 20000
    session = await store.promote("919999999999", "ORD1", CUSTOMER, PaymentMode.COD)
    session.cod_fee_paise = 15000
    session.record_shipping_quote(8500)
    session.record_shipping_quote(8500)
    assert session.amount_paise == 20000 + 15000 + 8500
    assert session.shipping_status == "quoted"


async def test_failed_quote_is_flagged_not_silent_zero():
    store = InMemorySessionStore()
    session = await store.promote("919999999999", "ORD1", CUSTOMER, PaymentMode.COD)
    assert session.shipping_status == "not_queried"
    session.record_shipping_quote(None)
    assert session.shipping_charge_paise == 0
    assert session.shipping_quote_failed is True
    assert session.shipping_status == "quote_failed"
    assert session.phase == OrderPhase.AWAITING_PAYMENT


async def test_discard_draft():
    store = InMemorySessionStore()
    await store.create_draft("919999999999")
    await store.discard_draft("+91 99999 99999")
    assert await store.get_draft("919999999999") is None
    await store.discard_draft("919999999999")


async def test_find_latest_by_phone_prefers_payable_prepaid():
    store = InMemorySessionStore()
    prepaid = await store.promote("919999999999", "ORD1", CUSTOMER, PaymentMode.PREPAID)
    await store.promote("919999999999", "ORD2", CUSTOMER, PaymentMode.COD)
    expired = await store.promote("919999999999", "ORD3", CUSTOMER, PaymentMode.PREPAID)
    expired.transition_payment(PaymentStatus.EXPIRED)

    assert (await store.find_latest_by_phone("919999999999")).order_id == "ORD1"

    prepaid.transition_payment(PaymentStatus.FAILED)
    assert (await store.find_latest_by_phone("919999999999")).order_id == "ORD1"

    prepaid.transition_payment(PaymentStatus.PAID)
    assert (await store.find_latest_by_phone("919999999999")).order_id == "ORD3"


async def test_forgotten_event_can_be_seen_again():
    store = InMemorySessionStore()
    assert await store.mark_event_seen("evt_1") is True
    await store.forget_event("evt_1")
    assert await store.mark_event_seen("evt_1") is True
    await store.forget_event("never-seen")
