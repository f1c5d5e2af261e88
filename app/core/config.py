from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_PRODUCT_IDS = ["ezg1lu6edm", "m519x5gv9s", "esltl7pftq", "obdqyehm1w", "l722c63kq9"]

# Razorpay rejects payment links that expire sooner than this
MIN_PAYMENT_LINK_EXPIRY_SECONDS = 15 * 60


def _parse_product_ids(v: Any) -> List[str]:
    if v is None or v == "":
        return _DEFAULT_PRODUCT_IDS.copy()
    if isinstance(v, list):
        return [x for x in v if isinstance(x, str) and x.strip()]
    s = str(v).strip()
    if s.startswith("["):
        import json
        try:
            out = json.loads(s)
        except ValueError:
            return _DEFAULT_PRODUCT_IDS.copy()
        return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_PRODUCT_IDS.copy()
    return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_PRODUCT_IDS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    brand_name: str = Field(default="OrangUtan Organics", alias="BRAND_NAME")

    # WhatsApp Cloud API
    verify_token: str = Field(default="", alias="VERIFY_TOKEN")
    access_token: str = Field(default="", alias="ACCESS_TOKEN")
    phone_number_id: str = Field(default="", alias="PHONE_NUMBER_ID")
    whatsapp_api_version: str = Field(default="v20.0", alias="WHATSAPP_API_VERSION")
    whatsapp_catalog_id: str = Field(default="1262132998945503", alias="WHATSAPP_CATALOG_ID")
    whatsapp_flow_id: str = Field(default="", alias="WHATSAPP_FLOW_ID")
    catalog_product_ids_raw: str = Field(
        default=",".join(_DEFAULT_PRODUCT_IDS),
        alias="WHATSAPP_CATALOG_PRODUCT_IDS",
        description="Comma-separated or JSON list of product_retailer_id values",
    )

    # Razorpay
    razorpay_key_id: str = Field(default="", alias="RAZORPAY_KEY_ID")
    razorpay_key_secret: str = Field(default="", alias="RAZORPAY_KEY_SECRET")
    razorpay_webhook_secret: str = Field(default="", alias="RAZORPAY_WEBHOOK_SECRET")
    payment_link_expiry_seconds: int = Field(default=1200, alias="PAYMENT_LINK_EXPIRY_SECONDS")

    # Delhivery
    delhivery_api_token: str = Field(default="", alias="DELHIVERY_API_TOKEN")
    delhivery_base_url: str = Field(default="https://track.delhivery.com", alias="DELHIVERY_BASE_URL")
    origin_pincode: str = Field(default="110001", alias="ORIGIN_PINCODE")
    pickup_location_name: str = Field(default="", alias="PICKUP_LOCATION_NAME")

    # Pricing (paise)
    cod_fee_paise: int = Field(default=15000, alias="COD_FEE_PAISE")

    # Google Sheets ledger
    google_service_account_file: str | None = Field(default=None, alias="GOOGLE_SERVICE_ACCOUNT_FILE")
    google_service_account_json: str | None = Field(default=None, alias="GOOGLE_SERVICE_ACCOUNT_JSON")
    ledger_spreadsheet_id: str = Field(default="", alias="LEDGER_SPREADSHEET_ID")
    ledger_range: str = Field(default="Sheet1!A1", alias="LEDGER_RANGE")

    # Outbound calls
    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    @property
    def catalog_product_ids(self) -> List[str]:
        return _parse_product_ids(getattr(self, "catalog_product_ids_raw", None))

    @property
    def payment_link_expiry(self) -> int:
        return max(self.payment_link_expiry_seconds, MIN_PAYMENT_LINK_EXPIRY_SECONDS)


@lru_cache
def get_settings() -> Settings:
    return Settings()
