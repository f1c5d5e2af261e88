"""Shared FastAPI dependencies."""

from dataclasses import dataclass
from functools import lru_cache

from app.core.config import Settings, get_settings
from app.services.ledger import SheetsLedger
from app.services.logistics import DelhiveryClient
from app.services.payments import RazorpayPaymentLinks
from app.services.whatsapp import WhatsAppClient
from app.storage.base import SessionStore, get_store


@dataclass
class Services:
    """Session store plus every outbound adapter the order flow talks to."""

    settings: Settings
    store: SessionStore
    messenger: WhatsAppClient
    payments: RazorpayPaymentLinks
    logistics: DelhiveryClient
    ledger: SheetsLedger


@lru_cache
def get_services() -> Services:
    """Dependency: process-wide services (one store for the life of the process)."""
    settings = get_settings()
    return Services(
        settings=settings,
        store=get_store(),
        messenger=WhatsAppClient(settings),
        payments=RazorpayPaymentLinks(settings),
        logistics=DelhiveryClient(settings),
        ledger=SheetsLedger(settings),
    )
