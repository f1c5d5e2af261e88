"""Order draft (phone-keyed, pre-checkout) and order session (order-id-keyed)."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from app.core.exceptions import InvalidTransitionError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationPhase(str, Enum):
    IDLE = "idle"
    CATALOG_SHOWN = "catalog_shown"
    ITEMS_SELECTED = "items_selected"


class OrderPhase(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PAYMENT_LINK_FAILED = "payment_link_failed"
    COD_PLACED = "cod_placed"
    COD_REJECTED = "cod_rejected"


class PaymentMode(str, Enum):
    PREPAID = "Prepaid"
    COD = "COD"


class PaymentStatus(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    NOT_APPLICABLE = "not_applicable"  # COD


# Failed is not terminal: the same payment link accepts another attempt.
ALLOWED_PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.AWAITING_PAYMENT: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.EXPIRED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PAID, PaymentStatus.EXPIRED}),
    PaymentStatus.PAID: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
    PaymentStatus.NOT_APPLICABLE: frozenset(),
}


class LineItem(BaseModel):
    product_ref: str
    name: str = ""
    quantity: int
    unit_price_paise: int
    line_total_paise: int


class DeliveryDetails(BaseModel):
    name: str
    address_line1: str
    address_line2: str = ""
    city: str = ""
    state: str = ""
    pincode: str
    phone: str
    email: str = ""

    @property
    def address(self) -> str:
        return ", ".join(p for p in (self.address_line1, self.address_line2) if p)


class OrderDraft(BaseModel):
    phone: str
    phase: ConversationPhase = ConversationPhase.IDLE
    catalog_id: str | None = None
    product_items: list[LineItem] = Field(default_factory=list)
    subtotal_paise: int = 0
    form_token: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class OrderSession(BaseModel):
    order_id: str
    phone: str
    product_items: list[LineItem] = Field(default_factory=list)
    subtotal_paise: int = 0
    amount_paise: int = 0
    customer: DeliveryDetails
    payment_mode: PaymentMode
    payment_status: PaymentStatus = PaymentStatus.AWAITING_PAYMENT
    phase: OrderPhase = OrderPhase.AWAITING_PAYMENT

    cod_fee_paise: int = 0
    shipping_charge_paise: int | None = None  # None = never quoted
    shipping_quote_failed: bool = False

    payment_link_id: str | None = None
    payment_link_url: str | None = None
    payment_link_expires_at: datetime | None = None

    carrier_ref: str | None = None
    shipment_response: dict[str, Any] | None = None
    shipment_error: str | None = None

    ledger_tags: set[str] = Field(default_factory=set)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def total_quantity(self) -> int:
        return sum(i.quantity for i in self.product_items)

    @property
    def shipping_status(self) -> str:
        if self.shipping_quote_failed:
            return "quote_failed"
        if self.shipping_charge_paise is None:
            return "not_queried"
        return "quoted"

    def recompute_amount(self) -> int:
        """Amount is derived from subtotal plus charges, never accumulated."""
        amount = self.subtotal_paise
        if self.payment_mode == PaymentMode.COD:
            amount += self.cod_fee_paise + (self.shipping_charge_paise or 0)
        self.amount_paise = max(amount, 0)
        return self.amount_paise

    def record_shipping_quote(self, charge_paise: int | None) -> None:
        """None means the quote call failed: charge 0 and flag it."""
        if charge_paise is None:
            self.shipping_charge_paise = 0
            self.shipping_quote_failed = True
        else:
            self.shipping_charge_paise = charge_paise
            self.shipping_quote_failed = False
        self.recompute_amount()

    def record_carrier_ref(self, carrier_ref: str) -> None:
        if self.carrier_ref is None:
            self.carrier_ref = carrier_ref

    def can_transition(self, target: PaymentStatus) -> bool:
        return target in ALLOWED_PAYMENT_TRANSITIONS[self.payment_status]

    def transition_payment(self, target: PaymentStatus) -> None:
        if not self.can_transition(target):
            raise InvalidTransitionError(self.payment_status.value, target.value)
        self.payment_status = target

    def claim_ledger_row(self, tag: str) -> bool:
        """True the first time a tag is claimed; one ledger row per tag per session."""
        if tag in self.ledger_tags:
            return False
        self.ledger_tags.add(tag)
        return True
