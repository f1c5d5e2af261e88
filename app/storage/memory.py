"""Process-local session store. Lost on restart; back it with a database for production."""

from app.core.phone import normalize_phone
from app.models.order_session import (
    ConversationPhase,
    DeliveryDetails,
    OrderDraft,
    OrderSession,
    PaymentMode,
    PaymentStatus,
)
from app.storage.base import SessionStore

_PAYABLE = (PaymentStatus.AWAITING_PAYMENT, PaymentStatus.FAILED)


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        super().__init__()
        self._drafts: dict[str, OrderDraft] = {}
        self._sessions: dict[str, OrderSession] = {}
        self._by_phone: dict[str, list[str]] = {}
        self._seen_events: set[str] = set()

    async def create_draft(self, phone: str) -> OrderDraft:
        phone = normalize_phone(phone)
        draft = OrderDraft(phone=phone, phase=ConversationPhase.IDLE)
        self._drafts[phone] = draft
        return draft

    async def get_draft(self, phone: str) -> OrderDraft | None:
        return self._drafts.get(normalize_phone(phone))

    async def discard_draft(self, phone: str) -> None:
        self._drafts.pop(normalize_phone(phone), None)

    async def promote(
        self,
        phone: str,
        order_id: str,
        customer: DeliveryDetails,
        payment_mode: PaymentMode,
    ) -> OrderSession:
        phone = normalize_phone(phone)
        draft = self._drafts.pop(phone, None)
        items = [i.model_copy() for i in draft.product_items] if draft else []
        subtotal = draft.subtotal_paise if draft else 0
        session = OrderSession(
            order_id=order_id,
            phone=phone,
            product_items=items,
            subtotal_paise=subtotal,
            amount_paise=subtotal,
            customer=customer,
            payment_mode=payment_mode,
            payment_status=PaymentStatus.NOT_APPLICABLE if payment_mode == PaymentMode.COD else PaymentStatus.AWAITING_PAYMENT,
        )
        self._sessions[order_id] = session
        self._by_phone.setdefault(phone, []).append(order_id)
        return session

    async def get(self, order_id: str) -> OrderSession | None:
        return self._sessions.get(order_id)

    async def find_latest_by_phone(self, phone: str) -> OrderSession | None:
        ids = self._by_phone.get(normalize_phone(phone)) or []
        sessions = [s for s in (self._sessions.get(i) for i in reversed(ids)) if s is not None]
        for session in sessions:
            if session.payment_mode == PaymentMode.PREPAID and session.payment_status in _PAYABLE:
                return session
        return sessions[0] if sessions else None

    async def mark_event_seen(self, event_id: str) -> bool:
        if event_id in self._seen_events:
            return False
        self._seen_events.add(event_id)
        return True

    async def forget_event(self, event_id: str) -> None:
        self._seen_events.discard(event_id)
