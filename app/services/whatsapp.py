"""WhatsApp Cloud API: inbound webhook parsing and outbound messages."""

import json
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, Field

from app.core.config import Settings, get_settings
from app.core.exceptions import AdapterError
from app.core.logging import get_logger
from app.core.phone import normalize_phone

log = get_logger(__name__)


class MessageKind(str, Enum):
    TEXT = "text"
    CATALOG_ORDER = "catalog_order"
    DETAILS_FORM = "details_form"
    UNSUPPORTED = "unsupported"


class InboundMessage(BaseModel):
    phone: str
    kind: MessageKind
    message_id: str | None = None
    text: str = ""
    catalog_id: str | None = None
    order_items: list[dict[str, Any]] = Field(default_factory=list)
    form: dict[str, Any] = Field(default_factory=dict)


def _first_message(payload: dict[str, Any]) -> dict[str, Any] | None:
    try:
        messages = payload["entry"][0]["changes"][0]["value"].get("messages") or []
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    return messages[0] if messages else None


def parse_inbound(payload: dict[str, Any]) -> InboundMessage | None:
    """Webhook body -> InboundMessage. None for status callbacks and other non-message events."""
    msg = _first_message(payload)
    if not msg or not msg.get("from"):
        return None
    phone = normalize_phone(msg["from"])
    base = {"phone": phone, "message_id": msg.get("id")}
    msg_type = msg.get("type")

    if msg_type == "text":
        body = (msg.get("text") or {}).get("body") or ""
        return InboundMessage(kind=MessageKind.TEXT, text=body.strip().lower(), **base)

    if msg_type == "order":
        order = msg.get("order") or {}
        return InboundMessage(
            kind=MessageKind.CATALOG_ORDER,
            catalog_id=order.get("catalog_id"),
            order_items=list(order.get("product_items") or []),
            **base,
        )

    if msg_type == "interactive":
        interactive = msg.get("interactive") or {}
        itype = interactive.get("type")
        if itype in ("button_reply", "list_reply"):
            title = (interactive.get(itype) or {}).get("title") or ""
            return InboundMessage(kind=MessageKind.TEXT, text=title.strip().lower(), **base)
        if itype == "nfm_reply":
            raw = (interactive.get("nfm_reply") or {}).get("response_json") or "{}"
            try:
                form = json.loads(raw) if isinstance(raw, str) else dict(raw)
            except ValueError:
                log.warning("form_response_unparseable", phone=phone)
                form = {}
            return InboundMessage(kind=MessageKind.DETAILS_FORM, form=form, **base)

    return InboundMessage(kind=MessageKind.UNSUPPORTED, **base)


class WhatsAppClient:
    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings or get_settings()
        self._transport = transport

    @property
    def messages_url(self) -> str:
        s = self.settings
        return f"https://graph.facebook.com/{s.whatsapp_api_version}/{s.phone_number_id}/messages"

    async def _send(self, to: str, msg_type: str, body: dict[str, Any]) -> dict[str, Any]:
        if not self.settings.access_token or not self.settings.phone_number_id:
            raise AdapterError("whatsapp", "WhatsApp not configured")
        payload = {"messaging_product": "whatsapp", "to": to, "type": msg_type, msg_type: body}
        headers = {"Authorization": f"Bearer {self.settings.access_token}"}
        try:
            async with httpx.AsyncClient(timeout=self.settings.http_timeout_seconds, transport=self._transport) as client:
                resp = await client.post(self.messages_url, json=payload, headers=headers)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as e:
            raise AdapterError(
                "whatsapp",
                f"Send failed with {e.response.status_code}",
                details={"body": e.response.text[:500], "type": msg_type},
            )
        except httpx.HTTPError as e:
            raise AdapterError("whatsapp", "Send request failed", details={"error": str(e), "type": msg_type})
        except ValueError:
            return {}

    async def send_text(self, to: str, body: str) -> dict[str, Any]:
        return await self._send(to, "text", {"body": body})

    async def send_catalog(self, to: str) -> dict[str, Any]:
        s = self.settings
        return await self._send(
            to,
            "interactive",
            {
                "type": "product_list",
                "header": {"type": "text", "text": "Featured Products 🌟"},
                "body": {"text": "Browse our catalog and pick your favorites 🌱"},
                "footer": {"text": s.brand_name},
                "action": {
                    "catalog_id": s.whatsapp_catalog_id,
                    "sections": [
                        {
                            "title": "Our Products",
                            "product_items": [{"product_retailer_id": pid} for pid in s.catalog_product_ids],
                        }
                    ],
                },
            },
        )

    async def send_form(self, to: str, form_id: str, token: str | None = None) -> dict[str, Any]:
        """Send the delivery-details Flow; token comes back as flow_token in the reply."""
        parameters = {
            "flow_message_version": "3",
            "flow_id": form_id,
            "flow_cta": "Enter details",
            "flow_action": "navigate",
            "flow_action_payload": {"screen": "DELIVERY_DETAILS"},
        }
        if token:
            parameters["flow_token"] = token
        return await self._send(
            to,
            "interactive",
            {
                "type": "flow",
                "body": {"text": "Please share your delivery details to complete the order."},
                "action": {
                    "name": "flow",
                    "parameters": parameters,
                },
            },
        )


async def notify(messenger: WhatsAppClient, to: str, text: str) -> bool:
    """Send text; a messaging failure is logged and never aborts order processing."""
    try:
        await messenger.send_text(to, text)
    except AdapterError as e:
        log.error("notify_failed", phone=to, error=e.message, details=e.details)
        return False
    return True
