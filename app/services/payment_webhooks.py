"""Razorpay webhook: verify HMAC, resolve the order session, advance payment status (idempotent)."""

import json
from typing import TYPE_CHECKING, Any

from app.core.exceptions import AuthenticationError, ResolutionError
from app.core.logging import bind_order_context, get_logger
from app.core.phone import normalize_phone
from app.core.security import verify_razorpay_webhook
from app.models.order_session import OrderSession, PaymentMode, PaymentStatus
from app.services.whatsapp import notify
from app.workflows.fulfilment import run_prepaid_fulfilment

if TYPE_CHECKING:
    from app.deps import Services

log = get_logger(__name__)

EVENT_STATUS: dict[str, PaymentStatus] = {
    "payment.captured": PaymentStatus.PAID,
    "payment_link.paid": PaymentStatus.PAID,
    "payment.failed": PaymentStatus.FAILED,
    "payment_link.expired": PaymentStatus.EXPIRED,
    "payment_link.cancelled": PaymentStatus.EXPIRED,
}


def _entity(payload: dict[str, Any], name: str) -> dict[str, Any]:
    entity = ((payload.get("payload") or {}).get(name) or {}).get("entity")
    return entity if isinstance(entity, dict) else {}


def correlation_refs(payload: dict[str, Any]) -> list[str]:
    """Candidate order ids, most trusted first: link reference_id, then payment notes."""
    refs = []
    link_ref = _entity(payload, "payment_link").get("reference_id")
    if link_ref:
        refs.append(str(link_ref))
    notes = _entity(payload, "payment").get("notes")
    if isinstance(notes, dict) and notes.get("order_id"):
        refs.append(str(notes["order_id"]))
    return refs


def notification_phone(payload: dict[str, Any]) -> str:
    payment = _entity(payload, "payment")
    for raw in (
        payment.get("contact"),
        payment.get("customer_contact"),
        (payment.get("customer") or {}).get("contact") if isinstance(payment.get("customer"), dict) else None,
        (_entity(payload, "payment_link").get("customer") or {}).get("contact"),
    ):
        phone = normalize_phone(raw)
        if phone:
            return phone
    return ""


async def resolve_session(services: "Services", payload: dict[str, Any]) -> OrderSession:
    """Embedded order id first; phone-number fallback picks the newest session for that phone."""
    refs = correlation_refs(payload)
    for ref in refs:
        session = await services.store.get(ref)
        if session is not None:
            return session
    phone = notification_phone(payload)
    if phone:
        session = await services.store.find_latest_by_phone(phone)
        if session is not None:
            log.info("webhook_resolved_by_phone", phone=phone, order_id=session.order_id, refs=refs)
            return session
    raise ResolutionError(details={"refs": refs, "phone": phone})


async def _mark_paid(services: "Services", session: OrderSession) -> str:
    if session.payment_status == PaymentStatus.PAID:
        log.info("payment_already_processed", order_id=session.order_id)
        return "already processed"
    if session.payment_mode != PaymentMode.PREPAID or not session.can_transition(PaymentStatus.PAID):
        log.warning("payment_ignored", order_id=session.order_id, status=session.payment_status.value)
        return f"ignored: session is {session.payment_status.value}"
    session.transition_payment(PaymentStatus.PAID)
    log.info("payment_paid", order_id=session.order_id, amount_paise=session.amount_paise)
    await notify(services.messenger, session.phone, "✅ Payment successful! Your order is confirmed.")
    result = await run_prepaid_fulfilment(services, session.order_id)
    log.info("prepaid_fulfilment_done", order_id=session.order_id, outcome=result.get("outcome"))
    return result.get("outcome") or "paid"


async def _mark_failed(services: "Services", session: OrderSession) -> str:
    if not session.can_transition(PaymentStatus.FAILED):
        return f"ignored: session is {session.payment_status.value}"
    session.transition_payment(PaymentStatus.FAILED)
    log.info("payment_failed", order_id=session.order_id)
    text = "⚠️ Payment failed. Please try again with the link we sent."
    if session.payment_link_url:
        text += f"\n{session.payment_link_url}"
    await notify(services.messenger, session.phone, text)
    return "failed"


async def _mark_expired(services: "Services", session: OrderSession) -> str:
    if not session.can_transition(PaymentStatus.EXPIRED):
        return f"ignored: session is {session.payment_status.value}"
    session.transition_payment(PaymentStatus.EXPIRED)
    log.info("payment_link_expired", order_id=session.order_id)
    await notify(
        services.messenger,
        session.phone,
        "⌛ Your payment link has expired. Type 'place order' to start a new order.",
    )
    return "expired"


_HANDLERS = {
    PaymentStatus.PAID: _mark_paid,
    PaymentStatus.FAILED: _mark_failed,
    PaymentStatus.EXPIRED: _mark_expired,
}


async def handle_webhook(
    services: "Services",
    payload: bytes,
    signature: str | None,
    event_id: str | None = None,
) -> dict[str, str]:
    """Verify and apply one notification. Raises AuthenticationError on a bad signature, else returns an ack."""
    if not verify_razorpay_webhook(payload, signature, services.settings.razorpay_webhook_secret):
        log.warning("webhook_invalid_signature", event_id=event_id)
        raise AuthenticationError()
    try:
        data = json.loads(payload.decode("utf-8"))
    except ValueError:
        log.warning("webhook_unparseable", event_id=event_id)
        return {"status": "ok", "note": "ignored: unparseable body"}
    if not isinstance(data, dict):
        return {"status": "ok", "note": "ignored: unparseable body"}

    event = str(data.get("event") or "")
    target = EVENT_STATUS.get(event)
    if target is None:
        log.info("webhook_ignored", webhook_event=event)
        return {"status": "ok", "note": f"ignored: {event or 'no event'}"}

    if event_id and not await services.store.mark_event_seen(event_id):
        log.info("webhook_duplicate_event", event_id=event_id, webhook_event=event)
        return {"status": "ok", "note": "duplicate event"}

    try:
        session = await resolve_session(services, data)
    except ResolutionError as e:
        log.warning("webhook_unresolved", webhook_event=event, **e.details)
        # the order may not exist yet; let a redelivery try again
        if event_id:
            await services.store.forget_event(event_id)
        return {"status": "ok", "note": "ignored: no matching order"}

    bind_order_context(order_id=session.order_id, phone=session.phone)
    async with services.store.lock(session.order_id):
        try:
            note = await _HANDLERS[target](services, session)
        except Exception as e:
            if event_id:
                await services.store.forget_event(event_id)
            log.exception("webhook_processing_failed", webhook_event=event, order_id=session.order_id, error=str(e))
            return {"status": "ok", "note": "error: processing failed"}
    log.info("webhook_processed", webhook_event=event, order_id=session.order_id, note=note)
    return {"status": "ok", "note": note}
