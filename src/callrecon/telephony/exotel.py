"""
Exotel call-detail API client.

One GET per duration lookup:
``{base}/v1/Accounts/{sid}/Calls/{call_sid}.json`` with basic auth
(API key/token). The body is ``{"Call": {...}}``; accounts configured for XML
answer ``<TwilioResponse><Call>...</Call></TwilioResponse>`` instead.
"""

from __future__ import annotations

from typing import Any, Protocol
from xml.etree import ElementTree as ET

import httpx

from callrecon.shared.exceptions import ProviderAPIError
from callrecon.shared.logging import get_logger
from callrecon.telephony.config import TelephonyConfig, get_telephony_config
from callrecon.telephony.credentials import ProviderCredentials

logger = get_logger(__name__)


class CallDetailClient(Protocol):
    """Anything that can fetch a provider call record."""

    async def get_call_details(
        self,
        provider_call_id: str,
        credentials: ProviderCredentials,
    ) -> dict[str, Any]:
        """Return the provider's call record as a flat dict."""
        ...


def _parse_xml_call(body: bytes | str) -> dict[str, Any]:
    root = ET.fromstring(body)
    call = root if root.tag == "Call" else root.find("Call")
    if call is None:
        return {}
    return {child.tag: (child.text or "").strip() for child in call}


class ExotelClient:
    """Async Exotel call-detail client.

    Uses a shared ``httpx.AsyncClient``; pass one in for tests.
    """

    def __init__(
        self,
        config: TelephonyConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or get_telephony_config()
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.api_timeout_seconds)
            )
            self._owns_client = True
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def get_call_details(
        self,
        provider_call_id: str,
        credentials: ProviderCredentials,
    ) -> dict[str, Any]:
        """Fetch one call record.

        Args:
            provider_call_id: Provider call SID.
            credentials: Resolved account credentials.

        Returns:
            The ``Call`` object with the provider's field names.

        Raises:
            ProviderAPIError: On missing credentials, HTTP errors, timeouts,
                or a body without a call record.
        """
        if not credentials.is_complete:
            raise ProviderAPIError(
                message="Missing provider credentials for call-detail lookup",
                details={"provider_call_id": provider_call_id},
            )

        url = self._config.call_details_url(credentials.account_sid, provider_call_id)
        client = self._get_client()

        try:
            response = await client.get(
                url,
                auth=(credentials.api_key, credentials.api_token),
                timeout=self._config.api_timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Provider call-detail lookup rejected",
                extra={
                    "provider_call_id": provider_call_id,
                    "status_code": e.response.status_code,
                    "body": e.response.text[:500],
                },
            )
            raise ProviderAPIError(
                message=f"Provider API error: {e.response.status_code}",
                details={"provider_call_id": provider_call_id},
                status_code=e.response.status_code,
            ) from e
        except httpx.TimeoutException as e:
            logger.warning(
                "Provider call-detail lookup timed out",
                extra={
                    "provider_call_id": provider_call_id,
                    "timeout_seconds": self._config.api_timeout_seconds,
                },
            )
            raise ProviderAPIError(
                message="Provider API timeout",
                details={"provider_call_id": provider_call_id},
            ) from e
        except httpx.RequestError as e:
            logger.warning(
                "Provider call-detail request failed",
                extra={"provider_call_id": provider_call_id, "error": str(e)},
            )
            raise ProviderAPIError(
                message=f"Provider request failed: {e}",
                details={"provider_call_id": provider_call_id},
            ) from e

        call = self._extract_call(response)
        if not call:
            raise ProviderAPIError(
                message="Provider response has no call record",
                details={"provider_call_id": provider_call_id},
                status_code=response.status_code,
            )
        return call

    @staticmethod
    def _extract_call(response: httpx.Response) -> dict[str, Any]:
        content_type = response.headers.get("content-type", "")
        try:
            if "xml" in content_type or response.text.lstrip().startswith("<"):
                return _parse_xml_call(response.content)
            data = response.json()
        except (ValueError, ET.ParseError):
            return {}

        if isinstance(data, dict):
            call = data.get("Call")
            if isinstance(call, dict):
                return call
        return {}
