from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Settings for the checkout client. Built per session, never cached globally."""

    model_config = SettingsConfigDict(
        env_prefix="UDIN_CLIENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_base_url: str = "http://localhost:8000"
    request_timeout: float = 30.0
    upload_timeout: float = 300.0
    draft_store_path: str = Field(default="~/.udin/drafts.sqlite3")

    # Checkout overlay
    checkout_name: str = "UDIN"
    checkout_description: str = "Document Processing"
    checkout_theme_color: str = "#4f46e5"
    currency: str = "INR"
    min_charge_paise: int = 100

    # One automatic retry after a gateway-reported failure
    auto_retry_gateway_failure: bool = True

    # Undelivered ledger updates are retried on each run, then abandoned
    outbox_max_attempts: int = 5
