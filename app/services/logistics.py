"""Delhivery: shipping rate quotes and shipment (waybill) creation."""

import json
from typing import Any, Literal

import httpx
from pydantic import BaseModel

from app.core.config import Settings, get_settings
from app.core.exceptions import AdapterError, ValidationError
from app.core.logging import get_logger
from app.services.pricing import paise_to_rupees, to_paise

log = get_logger(__name__)

PaymentClass = Literal["COD", "Pre-paid"]

RATE_PATH = "/api/kinko/v1/invoice/charges/.json"
CREATE_PATH = "/api/cmu/create.json"


class ShipmentRequest(BaseModel):
    order_id: str
    name: str
    address: str
    city: str = ""
    state: str = ""
    pincode: str
    phone: str
    email: str = ""
    payment_mode: Literal["COD", "Prepaid"]
    cod_amount_paise: int = 0
    total_amount_paise: int
    weight_grams: int
    quantity: int
    products_desc: str


class ShipmentResult(BaseModel):
    success: bool
    carrier_ref: str | None = None
    error: str | None = None
    raw: dict[str, Any] | None = None


def parse_rate_quote(data: Any) -> int:
    """Carrier charges response -> paise. Raises AdapterError when no numeric total is present."""
    entry = data[0] if isinstance(data, list) and data else data
    if not isinstance(entry, dict):
        raise AdapterError("delhivery", "Unrecognised rate response", details={"body": str(data)[:500]})
    total = entry.get("total_amount")
    if isinstance(total, bool) or not isinstance(total, (int, float, str)):
        raise AdapterError("delhivery", "Rate response has no total_amount", details={"body": str(data)[:500]})
    try:
        charge = to_paise(total)
    except ValidationError:
        raise AdapterError("delhivery", f"Non-numeric total_amount: {total!r}")
    if charge < 0:
        raise AdapterError("delhivery", f"Negative shipping charge: {total!r}")
    return charge


def parse_shipment_response(data: Any) -> ShipmentResult:
    if not isinstance(data, dict):
        return ShipmentResult(success=False, error="Unrecognised shipment response", raw={"body": str(data)[:500]})
    packages = data.get("packages") or []
    first = packages[0] if packages and isinstance(packages[0], dict) else {}
    waybill = first.get("waybill")
    if data.get("success") and waybill and str(first.get("status", "Success")).lower() == "success":
        return ShipmentResult(success=True, carrier_ref=str(waybill), raw=data)
    remarks = first.get("remarks") or data.get("rmk") or data.get("error") or "Shipment creation failed"
    if isinstance(remarks, list):
        remarks = "; ".join(str(r) for r in remarks)
    return ShipmentResult(success=False, error=str(remarks), raw=data)


class DelhiveryClient:
    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings or get_settings()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.delhivery_base_url,
            timeout=self.settings.http_timeout_seconds,
            headers={"Authorization": f"Token {self.settings.delhivery_api_token}", "Accept": "application/json"},
            transport=self._transport,
        )

    def _require_token(self) -> None:
        if not self.settings.delhivery_api_token:
            raise AdapterError("delhivery", "Delhivery not configured")

    async def quote_shipping_charge(
        self,
        origin_pincode: str,
        dest_pincode: str,
        weight_grams: int,
        payment_class: PaymentClass,
    ) -> int:
        """Shipping charge in paise."""
        self._require_token()
        params = {
            "md": "S",
            "ss": "Delivered",
            "o_pin": origin_pincode,
            "d_pin": dest_pincode,
            "cgm": max(weight_grams, 1),
            "pt": payment_class,
        }
        try:
            async with self._client() as client:
                resp = await client.get(RATE_PATH, params=params)
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException as e:
            raise AdapterError("delhivery", "Rate quote timed out", details={"error": str(e)})
        except httpx.HTTPStatusError as e:
            raise AdapterError(
                "delhivery",
                f"Rate quote failed with {e.response.status_code}",
                details={"body": e.response.text[:500]},
            )
        except httpx.HTTPError as e:
            raise AdapterError("delhivery", "Rate quote request failed", details={"error": str(e)})
        except ValueError:
            raise AdapterError("delhivery", "Rate quote body is not JSON")
        return parse_rate_quote(data)

    def _shipment_payload(self, req: ShipmentRequest) -> dict[str, Any]:
        return {
            "shipments": [
                {
                    "name": req.name,
                    "add": req.address,
                    "pin": req.pincode,
                    "city": req.city,
                    "state": req.state,
                    "country": "India",
                    "phone": req.phone,
                    "order": req.order_id,
                    "payment_mode": req.payment_mode,
                    "products_desc": req.products_desc,
                    "cod_amount": paise_to_rupees(req.cod_amount_paise) if req.payment_mode == "COD" else "0",
                    "total_amount": paise_to_rupees(req.total_amount_paise),
                    "quantity": str(req.quantity),
                    "weight": str(req.weight_grams),
                    "shipping_mode": "Surface",
                }
            ],
            "pickup_location": {"name": self.settings.pickup_location_name},
        }

    async def create_shipment(self, req: ShipmentRequest) -> ShipmentResult:
        """Never raises; the result says whether a waybill exists."""
        if not self.settings.delhivery_api_token:
            return ShipmentResult(success=False, error="Delhivery not configured")
        body = {"format": "json", "data": json.dumps(self._shipment_payload(req))}
        try:
            async with self._client() as client:
                resp = await client.post(CREATE_PATH, data=body)
                data = resp.json()
        except httpx.TimeoutException as e:
            log.warning("shipment_timeout", order_id=req.order_id, error=str(e))
            return ShipmentResult(success=False, error="Shipment creation timed out")
        except httpx.HTTPError as e:
            log.warning("shipment_request_failed", order_id=req.order_id, error=str(e))
            return ShipmentResult(success=False, error=str(e))
        except ValueError:
            return ShipmentResult(success=False, error=f"Non-JSON response ({resp.status_code})", raw={"body": resp.text[:500]})
        result = parse_shipment_response(data)
        if resp.is_error and result.success:
            result = ShipmentResult(success=False, error=f"HTTP {resp.status_code}", raw=data)
        return result
