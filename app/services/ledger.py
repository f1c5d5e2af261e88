"""Order ledger: one Google Sheets row per recorded order transition."""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.core.config import Settings, get_settings
from app.core.logging import get_logger
from app.models.order_session import OrderSession
from app.services.pricing import describe_items, paise_to_rupees

log = get_logger(__name__)

SHEETS_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

LEDGER_COLUMNS = [
    "timestamp",
    "tag",
    "order_id",
    "phone",
    "name",
    "address",
    "pincode",
    "email",
    "items",
    "subtotal",
    "shipping_charge",
    "shipping_status",
    "cod_fee",
    "amount",
    "payment_mode",
    "payment_status",
    "payment_link_id",
    "waybill",
    "shipment_response",
]


def build_ledger_row(session: OrderSession, tag: str) -> list[Any]:
    c = session.customer
    shipping = "" if session.shipping_charge_paise is None else paise_to_rupees(session.shipping_charge_paise)
    return [
        datetime.now(timezone.utc).isoformat(timespec="seconds"),
        tag,
        session.order_id,
        session.phone,
        c.name,
        ", ".join(p for p in (c.address, c.city, c.state) if p),
        c.pincode,
        c.email,
        describe_items(session.product_items),
        paise_to_rupees(session.subtotal_paise),
        shipping,
        session.shipping_status,
        paise_to_rupees(session.cod_fee_paise),
        paise_to_rupees(session.amount_paise),
        session.payment_mode.value,
        session.payment_status.value,
        session.payment_link_id or "",
        session.carrier_ref or "",
        json.dumps(session.shipment_response) if session.shipment_response is not None else "",
    ]


class SheetsLedger:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._service = None

    @property
    def enabled(self) -> bool:
        s = self.settings
        return bool(s.ledger_spreadsheet_id and (s.google_service_account_file or s.google_service_account_json))

    def _credentials(self):
        s = self.settings
        if s.google_service_account_json:
            return service_account.Credentials.from_service_account_info(
                json.loads(s.google_service_account_json), scopes=SHEETS_SCOPES
            )
        return service_account.Credentials.from_service_account_file(s.google_service_account_file, scopes=SHEETS_SCOPES)

    def _sheets(self):
        if self._service is None:
            self._service = build("sheets", "v4", credentials=self._credentials(), cache_discovery=False)
        return self._service

    def _append(self, values: list[Any]) -> dict:
        return (
            self._sheets()
            .spreadsheets()
            .values()
            .append(
                spreadsheetId=self.settings.ledger_spreadsheet_id,
                range=self.settings.ledger_range,
                valueInputOption="USER_ENTERED",
                insertDataOption="INSERT_ROWS",
                body={"values": [values]},
            )
            .execute()
        )

    async def append_row(self, values: list[Any]) -> bool:
        """Append one row. Failures are logged and reported as False, never raised."""
        if not self.enabled:
            log.warning("ledger_disabled", row=values[:3])
            return False
        try:
            await asyncio.wait_for(asyncio.to_thread(self._append, values), timeout=self.settings.http_timeout_seconds)
        except asyncio.TimeoutError:
            log.error("ledger_append_timeout", row=values[:3])
            return False
        except (HttpError, GoogleAuthError, OSError, ValueError) as e:
            log.error("ledger_append_failed", row=values[:3], error=str(e))
            return False
        except Exception as e:
            # httplib2 transport errors (e.g. ServerNotFoundError) derive from Exception only
            log.exception("ledger_append_failed", row=values[:3], error=str(e))
            return False
        return True


async def record(ledger: SheetsLedger, session: OrderSession, tag: str) -> bool:
    """Write the session's row for tag once; repeated calls for the same tag are no-ops."""
    if not session.claim_ledger_row(tag):
        log.info("ledger_row_already_written", order_id=session.order_id, tag=tag)
        return False
    ok = await ledger.append_row(build_ledger_row(session, tag))
    log.info("ledger_row", order_id=session.order_id, tag=tag, written=ok)
    return ok
