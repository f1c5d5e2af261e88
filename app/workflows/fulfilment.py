"""Fulfilment graphs: shipping quote -> shipment -> confirmation / ledger.

COD checkout runs synchronously when delivery details arrive. Prepaid fulfilment runs
once the payment webhook marks the order paid.
"""

from typing import TYPE_CHECKING, Literal, TypedDict

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from app.core.exceptions import AdapterError
from app.core.logging import get_logger
from app.core.security import generate_form_token
from app.models.order_session import ConversationPhase, OrderPhase, OrderSession, PaymentMode
from app.services.ledger import record
from app.services.logistics import ShipmentRequest
from app.services.pricing import describe_items, paise_to_rupees, total_weight_grams
from app.services.whatsapp import notify

if TYPE_CHECKING:
    from app.deps import Services

log = get_logger(__name__)

REENTER_DETAILS_MESSAGE = (
    "⚠️ We couldn't verify your delivery details with our courier. "
    "Please check your address and pincode and submit the form again."
)


class FulfilmentState(TypedDict):
    order_id: str
    payment_class: Literal["COD", "Pre-paid"]
    quote_ok: bool
    shipped: bool
    outcome: str


def _services(config: RunnableConfig) -> "Services":
    return config["configurable"]["services"]


async def _session(config: RunnableConfig, state: FulfilmentState) -> OrderSession:
    session = await _services(config).store.get(state["order_id"])
    if session is None:
        raise LookupError(f"Order session {state['order_id']} vanished during fulfilment")
    return session


async def _quote_shipping(state: FulfilmentState, config: RunnableConfig) -> dict:
    services = _services(config)
    session = await _session(config, state)
    weight = total_weight_grams(session.product_items)
    try:
        charge = await services.logistics.quote_shipping_charge(
            services.settings.origin_pincode,
            session.customer.pincode,
            weight,
            state["payment_class"],
        )
    except AdapterError as e:
        log.warning(
            "shipping_quote_failed",
            order_id=session.order_id,
            pincode=session.customer.pincode,
            error=e.message,
            details=e.details,
        )
        session.record_shipping_quote(None)
        return {"quote_ok": False}
    session.record_shipping_quote(charge)
    log.info("shipping_quoted", order_id=session.order_id, charge_paise=charge, weight_grams=weight)
    return {"quote_ok": True}


def shipment_request_for(session: OrderSession) -> ShipmentRequest:
    c = session.customer
    is_cod = session.payment_mode == PaymentMode.COD
    return ShipmentRequest(
        order_id=session.order_id,
        name=c.name,
        address=c.address,
        city=c.city,
        state=c.state,
        pincode=c.pincode,
        phone=c.phone or session.phone,
        email=c.email,
        payment_mode="COD" if is_cod else "Prepaid",
        cod_amount_paise=session.amount_paise if is_cod else 0,
        total_amount_paise=session.amount_paise,
        weight_grams=total_weight_grams(session.product_items),
        quantity=session.total_quantity,
        products_desc=describe_items(session.product_items),
    )


async def _create_shipment(state: FulfilmentState, config: RunnableConfig) -> dict:
    services = _services(config)
    session = await _session(config, state)
    if session.carrier_ref:
        return {"shipped": True}
    result = await services.logistics.create_shipment(shipment_request_for(session))
    session.shipment_response = result.raw
    if result.success and result.carrier_ref:
        session.record_carrier_ref(result.carrier_ref)
        session.shipment_error = None
        log.info("shipment_created", order_id=session.order_id, waybill=result.carrier_ref)
        return {"shipped": True}
    session.shipment_error = result.error or "unknown"
    log.warning("shipment_failed", order_id=session.order_id, error=session.shipment_error)
    return {"shipped": False}


async def _confirm_cod(state: FulfilmentState, config: RunnableConfig) -> dict:
    services = _services(config)
    session = await _session(config, state)
    session.phase = OrderPhase.COD_PLACED
    await record(services.ledger, session, "cod_placed")
    await notify(
        services.messenger,
        session.phone,
        f"✅ Order {session.order_id} placed (Cash on Delivery).\n"
        f"Items: ₹{paise_to_rupees(session.subtotal_paise)}\n"
        f"Shipping: ₹{paise_to_rupees(session.shipping_charge_paise or 0)}\n"
        f"COD charge: ₹{paise_to_rupees(session.cod_fee_paise)}\n"
        f"Total payable on delivery: ₹{paise_to_rupees(session.amount_paise)}\n"
        f"Tracking number: {session.carrier_ref}",
    )
    return {"outcome": "cod_placed"}


async def reopen_checkout(services: "Services", session: OrderSession) -> None:
    """Put the session's items back into a draft so the customer can resubmit details."""
    draft = await services.store.create_draft(session.phone)
    draft.product_items = [i.model_copy() for i in session.product_items]
    draft.subtotal_paise = session.subtotal_paise
    draft.phase = ConversationPhase.ITEMS_SELECTED
    draft.form_token = generate_form_token()
    if not services.settings.whatsapp_flow_id:
        log.warning("form_not_configured", phone=session.phone)
        return
    try:
        await services.messenger.send_form(session.phone, services.settings.whatsapp_flow_id, draft.form_token)
    except AdapterError as e:
        log.error("form_send_failed", phone=session.phone, error=e.message)


async def _reject_cod(state: FulfilmentState, config: RunnableConfig) -> dict:
    services = _services(config)
    session = await _session(config, state)
    session.phase = OrderPhase.COD_REJECTED
    log.warning(
        "cod_rejected",
        order_id=session.order_id,
        quote_ok=state.get("quote_ok", False),
        shipped=state.get("shipped", False),
    )
    await notify(services.messenger, session.phone, REENTER_DETAILS_MESSAGE)
    await reopen_checkout(services, session)
    return {"outcome": "cod_rejected"}


async def _notify_shipment(state: FulfilmentState, config: RunnableConfig) -> dict:
    services = _services(config)
    session = await _session(config, state)
    if state.get("shipped"):
        text = f"📦 Order {session.order_id} has been handed to our courier. Tracking number: {session.carrier_ref}"
        outcome = "shipped"
    else:
        text = (
            f"Payment received for order {session.order_id}. Your shipment is pending; "
            "we'll message you the tracking number as soon as it's booked."
        )
        outcome = "shipment_pending"
    await notify(services.messenger, session.phone, text)
    return {"outcome": outcome}


async def _record_paid(state: FulfilmentState, config: RunnableConfig) -> dict:
    services = _services(config)
    session = await _session(config, state)
    await record(services.ledger, session, "paid")
    return {}


def _after_quote(state: FulfilmentState) -> str:
    return "ship" if state.get("quote_ok") else "reject"


def _after_shipment(state: FulfilmentState) -> str:
    return "confirm" if state.get("shipped") else "reject"


def build_cod_checkout_graph():
    """quote -> ship -> confirm; a failed quote or shipment goes to reject."""
    builder = StateGraph(FulfilmentState)
    builder.add_node("quote", _quote_shipping)
    builder.add_node("ship", _create_shipment)
    builder.add_node("confirm", _confirm_cod)
    builder.add_node("reject", _reject_cod)
    builder.add_edge(START, "quote")
    builder.add_conditional_edges("quote", _after_quote, {"ship": "ship", "reject": "reject"})
    builder.add_conditional_edges("ship", _after_shipment, {"confirm": "confirm", "reject": "reject"})
    builder.add_edge("confirm", END)
    builder.add_edge("reject", END)
    return builder.compile()


def build_prepaid_fulfilment_graph():
    builder = StateGraph(FulfilmentState)
    builder.add_node("quote", _quote_shipping)
    builder.add_node("ship", _create_shipment)
    builder.add_node("notify", _notify_shipment)
    builder.add_node("ledger", _record_paid)
    builder.add_edge(START, "quote")
    builder.add_edge("quote", "ship")
    builder.add_edge("ship", "notify")
    builder.add_edge("notify", "ledger")
    builder.add_edge("ledger", END)
    return builder.compile()


def _initial(order_id: str, payment_class: Literal["COD", "Pre-paid"]) -> FulfilmentState:
    return {"order_id": order_id, "payment_class": payment_class, "quote_ok": False, "shipped": False, "outcome": ""}


async def run_cod_checkout(services: "Services", order_id: str) -> dict:
    """Run COD checkout; outcome is 'cod_placed' or 'cod_rejected'."""
    graph = build_cod_checkout_graph()
    result = await graph.ainvoke(_initial(order_id, "COD"), config={"configurable": {"services": services}})
    return dict(result)


async def run_prepaid_fulfilment(services: "Services", order_id: str) -> dict:
    """Run post-payment fulfilment; outcome is 'shipped' or 'shipment_pending'."""
    graph = build_prepaid_fulfilment_graph()
    result = await graph.ainvoke(_initial(order_id, "Pre-paid"), config={"configurable": {"services": services}})
    return dict(result)
