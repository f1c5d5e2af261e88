from fastapi import APIRouter, Depends, Header, Request

from app.deps import Services, get_services
from app.services import payment_webhooks as payment_webhooks_service

router = APIRouter()


@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(None, alias="X-Razorpay-Signature"),
    x_razorpay_event_id: str | None = Header(None, alias="X-Razorpay-Event-Id"),
    services: Services = Depends(get_services),
):
    """Razorpay webhook: signature checked on the raw body; paid -> shipment + ledger (idempotent)."""
    body = await request.body()
    return await payment_webhooks_service.handle_webhook(
        services, body, x_razorpay_signature, event_id=x_razorpay_event_id
    )
