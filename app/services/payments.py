"""Razorpay hosted payment links."""

import asyncio
import time
from datetime import datetime, timezone

import razorpay
import requests
from pydantic import BaseModel
from razorpay.errors import BadRequestError as RazorpayBadRequestError
from razorpay.errors import GatewayError, ServerError

from app.core.config import MIN_PAYMENT_LINK_EXPIRY_SECONDS, Settings, get_settings
from app.core.exceptions import AdapterError


class PaymentLink(BaseModel):
    link_id: str
    short_url: str
    expires_at: datetime | None = None


class RazorpayPaymentLinks:
    def __init__(self, settings: Settings | None = None, client: razorpay.Client | None = None) -> None:
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> razorpay.Client:
        if self._client is None:
            if not self.settings.razorpay_key_id or not self.settings.razorpay_key_secret:
                raise AdapterError("razorpay", "Payments not configured")
            self._client = razorpay.Client(auth=(self.settings.razorpay_key_id, self.settings.razorpay_key_secret))
        return self._client

    async def create_payment_link(
        self,
        *,
        amount_paise: int,
        description: str,
        customer: dict,
        reference_id: str,
        expires_in_seconds: int,
    ) -> PaymentLink:
        """Create a time-boxed link; reference_id is echoed back in payment_link webhooks."""
        if amount_paise <= 0:
            raise AdapterError("razorpay", f"Refusing to create a link for {amount_paise} paise")
        expire_by = int(time.time()) + max(expires_in_seconds, MIN_PAYMENT_LINK_EXPIRY_SECONDS)
        data = {
            "amount": amount_paise,
            "currency": "INR",
            "accept_partial": False,
            "description": description,
            "customer": {k: v for k, v in customer.items() if v},
            "notify": {"sms": True, "email": bool(customer.get("email"))},
            "reminder_enable": True,
            "reference_id": reference_id,
            "expire_by": expire_by,
            "notes": {"order_id": reference_id},
        }
        timeout = self.settings.http_timeout_seconds
        client = self.client
        try:
            link = await asyncio.wait_for(
                asyncio.to_thread(client.payment_link.create, data, timeout=timeout),
                timeout=timeout + 1,
            )
        except (asyncio.TimeoutError, requests.Timeout) as e:
            raise AdapterError("razorpay", "Payment link creation timed out", details={"error": str(e)})
        except (RazorpayBadRequestError, GatewayError, ServerError) as e:
            raise AdapterError("razorpay", f"Razorpay rejected payment link: {e}")
        except requests.RequestException as e:
            raise AdapterError("razorpay", "Payment link request failed", details={"error": str(e)})
        link_id = link.get("id")
        short_url = link.get("short_url")
        if not link_id or not short_url:
            raise AdapterError("razorpay", "Payment link response missing id/short_url", details={"body": str(link)[:500]})
        expires = link.get("expire_by") or expire_by
        return PaymentLink(
            link_id=link_id,
            short_url=short_url,
            expires_at=datetime.fromtimestamp(int(expires), tz=timezone.utc),
        )
