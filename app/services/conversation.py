"""Chat order flow: greeting -> catalog -> item selection -> delivery details -> COD / prepaid.

Each (conversation phase, message kind) pair maps to one handler in DISPATCH. Pairs that are
not listed fall through to the "didn't understand" reply.
"""

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import ValidationError as PydanticValidationError

from app.core.exceptions import AdapterError, ValidationError
from app.core.logging import bind_order_context, get_logger
from app.core.phone import normalize_phone
from app.core.security import generate_form_token
from app.models.order_session import (
    ConversationPhase,
    DeliveryDetails,
    OrderDraft,
    OrderPhase,
    OrderSession,
    PaymentMode,
    PaymentStatus,
)
from app.services.ledger import record
from app.services.pricing import paise_to_rupees, parse_line_items, subtotal_paise
from app.services.whatsapp import InboundMessage, MessageKind, notify
from app.workflows.fulfilment import reopen_checkout, run_cod_checkout

if TYPE_CHECKING:
    from app.deps import Services

log = get_logger(__name__)

GREETINGS = frozenset({"hi", "hello", "hey", "namaste"})
START_ORDER_PHRASES = ("place order", "order now", "start order")
COD_SYNONYMS = frozenset({"cod", "cash on delivery", "cash"})

# WhatsApp fills flow_token with this when a Flow is opened from the builder preview
SENTINEL_FORM_TOKEN = "unused"

FALLBACK_MESSAGE = "Sorry, I didn't understand that. Type *hi* to get started."

Handler = Callable[["Services", InboundMessage, "OrderDraft | None"], Awaitable[None]]


class Intent:
    GREETING = "greeting"
    START_ORDER = "start_order"
    CATALOG_ORDER = "catalog_order"
    DETAILS_FORM = "details_form"
    OTHER = "other"


def classify(message: InboundMessage) -> str:
    if message.kind == MessageKind.CATALOG_ORDER:
        return Intent.CATALOG_ORDER
    if message.kind == MessageKind.DETAILS_FORM:
        return Intent.DETAILS_FORM
    if message.kind == MessageKind.TEXT:
        if message.text in GREETINGS:
            return Intent.GREETING
        if any(p in message.text for p in START_ORDER_PHRASES):
            return Intent.START_ORDER
    return Intent.OTHER


def generate_order_id() -> str:
    return f"OUO{datetime.now(timezone.utc):%y%m%d%H%M%S}{uuid.uuid4().hex[:6].upper()}"


def is_cod(mode: Any) -> bool:
    words = str(mode or "").lower().replace("_", " ").replace("-", " ").split()
    return " ".join(words) in COD_SYNONYMS


# Form field -> accepted keys in the Flow response
_FORM_FIELDS: dict[str, tuple[str, ...]] = {
    "name": ("name", "full_name", "customer_name"),
    "address_line1": ("address_line1", "address1", "address"),
    "address_line2": ("address_line2", "address2", "landmark"),
    "city": ("city",),
    "state": ("state",),
    "pincode": ("pincode", "pin", "postal_code", "zip"),
    "phone": ("phone", "contact", "mobile"),
    "email": ("email",),
}

_REQUIRED_FIELDS = ("name", "address_line1", "pincode")


def parse_delivery_details(form: dict[str, Any], fallback_phone: str) -> tuple[DeliveryDetails, PaymentMode]:
    """Flow response -> (details, payment mode). Raises ValidationError for stale or incomplete forms."""
    token = str(form.get("flow_token") or "").strip()
    if token == SENTINEL_FORM_TOKEN:
        raise ValidationError(
            "Stale or test form submission",
            "That form has expired. Please fill in the delivery form we just sent you.",
            details={"flow_token": token},
        )
    values: dict[str, str] = {}
    for field, keys in _FORM_FIELDS.items():
        for key in keys:
            raw = form.get(key)
            if raw not in (None, ""):
                values[field] = str(raw).strip()
                break
    missing = [f for f in _REQUIRED_FIELDS if not values.get(f)]
    pincode = normalize_phone(values.get("pincode"))
    if "pincode" not in missing and len(pincode) != 6:
        missing.append("pincode")
    if missing:
        raise ValidationError(
            f"Delivery form missing fields: {', '.join(missing)}",
            "Some delivery details were missing or invalid ({}). Please submit the form again.".format(
                ", ".join(missing)
            ),
            details={"missing": missing},
        )
    values["pincode"] = pincode
    values["phone"] = normalize_phone(values.get("phone")) or fallback_phone
    try:
        details = DeliveryDetails(**values)
    except PydanticValidationError as e:
        raise ValidationError(
            "Delivery form failed validation",
            "Some delivery details were invalid. Please submit the form again.",
            details={"errors": e.errors()},
        )
    mode = PaymentMode.COD if is_cod(form.get("payment_mode")) else PaymentMode.PREPAID
    return details, mode


async def _greet(services: "Services", message: InboundMessage, draft: OrderDraft | None) -> None:
    await notify(
        services.messenger,
        message.phone,
        f"Namaste 🌱 Welcome to {services.settings.brand_name}! Type 'place order' to see our catalog.",
    )


async def _show_catalog(services: "Services", message: InboundMessage, draft: OrderDraft | None) -> None:
    draft = await services.store.create_draft(message.phone)
    draft.phase = ConversationPhase.CATALOG_SHOWN
    try:
        await services.messenger.send_catalog(message.phone)
    except AdapterError as e:
        log.error("catalog_send_failed", phone=message.phone, error=e.message)
        await notify(services.messenger, message.phone, "Sorry, our catalog is unavailable right now. Please try again shortly.")
        return
    await notify(services.messenger, message.phone, "Please select items from our catalog.")


async def _select_items(services: "Services", message: InboundMessage, draft: OrderDraft | None) -> None:
    try:
        items = parse_line_items(message.order_items)
    except ValidationError as e:
        log.warning("catalog_order_rejected", phone=message.phone, error=e.message, details=e.details)
        await notify(services.messenger, message.phone, e.customer_message)
        return
    if not items:
        await notify(services.messenger, message.phone, "Your cart is empty. Please pick items from the catalog.")
        return
    draft = await services.store.create_draft(message.phone)
    draft.catalog_id = message.catalog_id
    draft.product_items = items
    draft.subtotal_paise = subtotal_paise(items)
    draft.phase = ConversationPhase.ITEMS_SELECTED
    draft.form_token = generate_form_token()
    log.info("items_selected", phone=message.phone, items=len(items), subtotal_paise=draft.subtotal_paise)
    await notify(
        services.messenger,
        message.phone,
        f"Got your order ✅ Total: ₹{paise_to_rupees(draft.subtotal_paise)}\n\nPlease share your delivery details.",
    )
    if not services.settings.whatsapp_flow_id:
        log.warning("form_not_configured", phone=message.phone)
        return
    try:
        await services.messenger.send_form(message.phone, services.settings.whatsapp_flow_id, draft.form_token)
    except AdapterError as e:
        log.error("form_send_failed", phone=message.phone, error=e.message)


async def _empty_cart(services: "Services", message: InboundMessage, draft: OrderDraft | None) -> None:
    await notify(
        services.messenger,
        message.phone,
        "Your cart is empty. Type 'place order' and pick items from the catalog first.",
    )


async def _collect_details(services: "Services", message: InboundMessage, draft: OrderDraft | None) -> None:
    try:
        details, mode = parse_delivery_details(message.form, message.phone)
    except ValidationError as e:
        log.warning("details_rejected", phone=message.phone, error=e.message, details=e.details)
        await notify(services.messenger, message.phone, e.customer_message)
        return

    order_id = generate_order_id()
    session = await services.store.promote(message.phone, order_id, details, mode)
    bind_order_context(order_id=order_id)
    log.info("order_promoted", order_id=order_id, payment_mode=mode.value, subtotal_paise=session.subtotal_paise)

    if mode == PaymentMode.COD:
        await _checkout_cod(services, session)
    else:
        await _checkout_prepaid(services, session)


async def _checkout_cod(services: "Services", session: OrderSession) -> None:
    session.cod_fee_paise = services.settings.cod_fee_paise
    session.recompute_amount()
    async with services.store.lock(session.order_id):
        result = await run_cod_checkout(services, session.order_id)
    log.info("cod_checkout_done", order_id=session.order_id, outcome=result.get("outcome"))


async def _checkout_prepaid(services: "Services", session: OrderSession) -> None:
    session.recompute_amount()
    async with services.store.lock(session.order_id):
        try:
            link = await services.payments.create_payment_link(
                amount_paise=session.amount_paise,
                description=f"Order {session.order_id} from {services.settings.brand_name}",
                customer={
                    "name": session.customer.name,
                    "contact": session.phone,
                    "email": session.customer.email,
                },
                reference_id=session.order_id,
                expires_in_seconds=services.settings.payment_link_expiry,
            )
        except AdapterError as e:
            log.error("payment_link_failed", order_id=session.order_id, error=e.message, details=e.details)
            session.phase = OrderPhase.PAYMENT_LINK_FAILED
            session.transition_payment(PaymentStatus.FAILED)
            await notify(
                services.messenger,
                session.phone,
                "Sorry, we couldn't generate your payment link right now. Please submit your details again in a few minutes.",
            )
            await reopen_checkout(services, session)
            return
        session.payment_link_id = link.link_id
        session.payment_link_url = link.short_url
        session.payment_link_expires_at = link.expires_at
        session.phase = OrderPhase.AWAITING_PAYMENT
        log.info("payment_link_created", order_id=session.order_id, link_id=link.link_id)
        await notify(
            services.messenger,
            session.phone,
            f"Order {session.order_id}: ₹{paise_to_rupees(session.amount_paise)}\n"
            f"Please complete your payment here: {link.short_url}\n"
            f"The link expires in {services.settings.payment_link_expiry // 60} minutes.",
        )
        await record(services.ledger, session, "awaiting_payment")


async def _fallback(services: "Services", message: InboundMessage, draft: OrderDraft | None) -> None:
    await notify(services.messenger, message.phone, FALLBACK_MESSAGE)


_ANY_PHASE = tuple(ConversationPhase)

DISPATCH: dict[tuple[ConversationPhase, str], Handler] = {
    **{(phase, Intent.GREETING): _greet for phase in _ANY_PHASE},
    **{(phase, Intent.START_ORDER): _show_catalog for phase in _ANY_PHASE},
    **{(phase, Intent.CATALOG_ORDER): _select_items for phase in _ANY_PHASE},
    (ConversationPhase.ITEMS_SELECTED, Intent.DETAILS_FORM): _collect_details,
    (ConversationPhase.IDLE, Intent.DETAILS_FORM): _empty_cart,
    (ConversationPhase.CATALOG_SHOWN, Intent.DETAILS_FORM): _empty_cart,
}


async def handle_message(services: "Services", message: InboundMessage) -> str:
    """Process one inbound chat message to completion; returns the intent handled."""
    bind_order_context(phone=message.phone)
    async with services.store.lock(message.phone):
        draft = await services.store.get_draft(message.phone)
        phase = draft.phase if draft else ConversationPhase.IDLE
        intent = classify(message)
        handler = DISPATCH.get((phase, intent), _fallback)
        log.info("inbound_message", kind=message.kind.value, intent=intent, phase=phase.value, handler=handler.__name__)
        await handler(services, message, draft)
    return intent
