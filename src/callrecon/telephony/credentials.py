"""
Provider credential resolution.

The reconciliation core only consumes ``CredentialResolver``; the
database-backed implementation below is the default wiring.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select

from callrecon.shared.database import SessionFactory
from callrecon.shared.logging import get_logger
from callrecon.telephony.config import TelephonyConfig, get_telephony_config
from callrecon.telephony.models import ProviderSettings

logger = get_logger(__name__)


def _mask(s: str, keep: int = 6) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


@dataclass(frozen=True)
class ProviderCredentials:
    """Credentials for the provider call-detail API."""

    account_sid: str = ""
    api_key: str = ""
    api_token: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.account_sid and self.api_key and self.api_token)

    def __repr__(self) -> str:
        return (
            f"ProviderCredentials(account_sid={self.account_sid!r}, "
            f"api_key={_mask(self.api_key)!r}, api_token='***')"
        )


class CredentialResolver(Protocol):
    """Resolve provider credentials for the user who placed a call."""

    async def resolve(self, user_id: int | None) -> ProviderCredentials:
        """Return credentials for ``user_id`` or operator defaults."""
        ...


def _pick(*values: str | None) -> str:
    for value in values:
        if value and value.strip():
            return value.strip()
    return ""


class SettingsCredentialResolver:
    """Look up stored provider settings with fallback to operator defaults.

    Order: the user's newest settings row, then the newest row of any owner,
    then ``TelephonyConfig``. Fallback is per field, so a row that only
    overrides the token still inherits the account from configuration.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        config: TelephonyConfig | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config or get_telephony_config()

    async def resolve(self, user_id: int | None) -> ProviderCredentials:
        row = await self._load_settings(user_id)

        credentials = ProviderCredentials(
            account_sid=_pick(row.account_sid if row else None, self._config.account_sid),
            api_key=_pick(row.api_key if row else None, self._config.api_key),
            api_token=_pick(row.api_token if row else None, self._config.api_token),
        )

        logger.debug(
            "Provider credentials resolved",
            extra={
                "user_id": user_id,
                "settings_row": row.id if row else None,
                "account_sid": _mask(credentials.account_sid),
                "complete": credentials.is_complete,
            },
        )
        return credentials

    async def _load_settings(self, user_id: int | None) -> ProviderSettings | None:
        newest_first = (ProviderSettings.created_at.desc(), ProviderSettings.id.desc())

        async with self._session_factory() as session:
            if user_id is not None:
                stmt = (
                    select(ProviderSettings)
                    .where(ProviderSettings.user_id == user_id)
                    .order_by(*newest_first)
                    .limit(1)
                )
                row = (await session.execute(stmt)).scalar_one_or_none()
                if row is not None:
                    return row

            stmt = select(ProviderSettings).order_by(*newest_first).limit(1)
            return (await session.execute(stmt)).scalar_one_or_none()
