"""
Telephony provider configuration.

Operator-wide defaults for the provider API. Per-user credentials stored in
the database take precedence field by field (see ``credentials``).
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TelephonyConfig(BaseSettings):
    """Telephony provider configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="TELEPHONY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider API
    api_base_url: str = Field(default="https://api.exotel.com")

    # Operator default credentials
    account_sid: str = Field(default="")
    api_key: str = Field(default="")
    api_token: str = Field(default="")

    # Call-detail lookups must stay bounded; a timeout counts as "unresolved"
    api_timeout_seconds: float = Field(default=10.0, gt=0, le=30)

    def call_details_url(self, account_sid: str, provider_call_id: str) -> str:
        base = self.api_base_url.rstrip("/")
        return f"{base}/v1/Accounts/{account_sid}/Calls/{provider_call_id}.json"


@lru_cache(maxsize=1)
def get_telephony_config() -> TelephonyConfig:
    return TelephonyConfig()
