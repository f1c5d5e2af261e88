"""Catalog lookup, line totals in paise, order weight."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from app.core.exceptions import ValidationError
from app.models.order_session import LineItem


@dataclass(frozen=True)
class Product:
    name: str
    weight_grams: int


# product_retailer_id -> metadata; must match the catalog linked to the WhatsApp number
PRODUCTS: dict[str, Product] = {
    "ezg1lu6edm": Product("Organic Jaggery Powder 500g", 550),
    "m519x5gv9s": Product("Cold Pressed Mustard Oil 1L", 1050),
    "esltl7pftq": Product("Himalayan Pink Salt 1kg", 1050),
    "obdqyehm1w": Product("A2 Desi Cow Ghee 500ml", 600),
    "l722c63kq9": Product("Raw Forest Honey 500g", 650),
}

_PAISE = Decimal(100)
_ONE = Decimal(1)

_BAD_ITEMS_MESSAGE = "Sorry, we couldn't read your cart. Please pick your items from the catalog again."


def to_paise(rupees: Any) -> int:
    """Rupees (str/float/int) to integer paise, half-up."""
    try:
        value = Decimal(str(rupees).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid price: {rupees!r}", _BAD_ITEMS_MESSAGE)
    if not value.is_finite():
        raise ValidationError(f"Invalid price: {rupees!r}", _BAD_ITEMS_MESSAGE)
    try:
        return int((value * _PAISE).quantize(_ONE, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        # more digits than the decimal context holds
        raise ValidationError(f"Price out of range: {rupees!r}", _BAD_ITEMS_MESSAGE)


def paise_to_rupees(paise: int) -> str:
    return f"{Decimal(paise) / _PAISE:.2f}"


def line_total_paise(unit_price: Any, quantity: int) -> int:
    """Each line is converted to paise on its own before any summing."""
    return to_paise(unit_price) * quantity


def _quantity(raw: Any) -> int:
    if raw is None or raw == "":
        return 1
    try:
        qty = int(str(raw).strip())
    except ValueError:
        raise ValidationError(f"Invalid quantity: {raw!r}", _BAD_ITEMS_MESSAGE)
    if qty < 1:
        raise ValidationError(f"Invalid quantity: {raw!r}", _BAD_ITEMS_MESSAGE)
    return qty


def parse_line_items(
    raw_items: Iterable[Mapping[str, Any]],
    catalog: Mapping[str, Product] = PRODUCTS,
) -> list[LineItem]:
    """Catalog order product_items -> LineItems. Unknown products are rejected, never zero-priced."""
    items: list[LineItem] = []
    for raw in raw_items:
        ref = str(raw.get("product_retailer_id") or "").strip()
        product = catalog.get(ref)
        if product is None:
            raise ValidationError(
                f"Unknown product: {ref!r}",
                "Sorry, one of the items you picked is no longer available. Please choose again from the catalog.",
                details={"product_ref": ref},
            )
        qty = _quantity(raw.get("quantity"))
        unit = to_paise(raw.get("item_price", 0))
        if unit < 0:
            raise ValidationError(f"Negative price for {ref}", _BAD_ITEMS_MESSAGE)
        items.append(
            LineItem(
                product_ref=ref,
                name=product.name,
                quantity=qty,
                unit_price_paise=unit,
                line_total_paise=unit * qty,
            )
        )
    return items


def subtotal_paise(items: Iterable[LineItem]) -> int:
    return sum(i.line_total_paise for i in items)


def total_weight_grams(items: Iterable[LineItem], catalog: Mapping[str, Product] = PRODUCTS) -> int:
    total = 0
    for item in items:
        product = catalog.get(item.product_ref)
        if product:
            total += product.weight_grams * item.quantity
    return total


def describe_items(items: Iterable[LineItem]) -> str:
    return ", ".join(f"{i.name or i.product_ref} x{i.quantity}" for i in items)
