from app.models.order_session import (
    ConversationPhase,
    DeliveryDetails,
    LineItem,
    OrderDraft,
    OrderPhase,
    OrderSession,
    PaymentMode,
    PaymentStatus,
)

__all__ = [
    "ConversationPhase",
    "DeliveryDetails",
    "LineItem",
    "OrderDraft",
    "OrderPhase",
    "OrderSession",
    "PaymentMode",
    "PaymentStatus",
]
