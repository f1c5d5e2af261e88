import asyncio
from abc import ABC, abstractmethod

from app.models.order_session import DeliveryDetails, OrderDraft, OrderSession, PaymentMode


class SessionStore(ABC):
    """Order sessions keyed by order id, with a phone -> order ids index.

    Drafts are keyed by phone and exist only until checkout details arrive.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    @abstractmethod
    async def create_draft(self, phone: str) -> OrderDraft:
        """Start a fresh draft for phone, replacing any previous one."""
        ...

    @abstractmethod
    async def get_draft(self, phone: str) -> OrderDraft | None:
        ...

    @abstractmethod
    async def discard_draft(self, phone: str) -> None:
        ...

    @abstractmethod
    async def promote(
        self,
        phone: str,
        order_id: str,
        customer: DeliveryDetails,
        payment_mode: PaymentMode,
    ) -> OrderSession:
        """Turn the phone's draft into an order-id-keyed session.

        Items and subtotal are copied from the draft; with no draft the session starts empty.
        """
        ...

    @abstractmethod
    async def get(self, order_id: str) -> OrderSession | None:
        ...

    @abstractmethod
    async def find_latest_by_phone(self, phone: str) -> OrderSession | None:
        """Newest prepaid session for phone still awaiting payment (or failed); else the newest session.

        Heuristic only: with two in-flight prepaid orders on one phone this may pick the wrong one.
        """
        ...

    @abstractmethod
    async def mark_event_seen(self, event_id: str) -> bool:
        """Record a provider event id; False if it was already recorded."""
        ...

    @abstractmethod
    async def forget_event(self, event_id: str) -> None:
        """Drop a recorded event id so a redelivery of that event is processed again."""
        ...

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock


def get_store() -> SessionStore:
    from app.storage.memory import InMemorySessionStore
    return InMemorySessionStore()
