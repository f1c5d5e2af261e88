from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse

from app.core.exceptions import ForbiddenError
from app.core.logging import get_logger
from app.core.security import verify_subscription_token
from app.deps import Services, get_services
from app.services import conversation as conversation_service
from app.services.whatsapp import parse_inbound

router = APIRouter()
log = get_logger(__name__)


@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    mode: str | None = Query(None, alias="hub.mode"),
    token: str | None = Query(None, alias="hub.verify_token"),
    challenge: str = Query("", alias="hub.challenge"),
    services: Services = Depends(get_services),
):
    """Meta subscription handshake: echo hub.challenge when the verify token matches."""
    if mode == "subscribe" and verify_subscription_token(token, services.settings.verify_token):
        return PlainTextResponse(challenge)
    raise ForbiddenError("Verification failed")


@router.post("/webhook")
async def receive_message(request: Request, services: Services = Depends(get_services)):
    """Inbound messages. Always 200 so Meta does not retry; failures are logged and told to the customer."""
    try:
        payload = await request.json()
    except ValueError:
        log.warning("whatsapp_body_unparseable")
        return {"status": "ok"}
    message = parse_inbound(payload) if isinstance(payload, dict) else None
    if message is None:
        return {"status": "ok"}
    try:
        intent = await conversation_service.handle_message(services, message)
    except Exception as e:
        log.exception("message_processing_failed", phone=message.phone, kind=message.kind.value, error=str(e))
        return {"status": "ok"}
    return {"status": "ok", "intent": intent}
