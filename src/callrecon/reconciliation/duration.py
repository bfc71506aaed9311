"""
Resolve the authoritative duration of a call.

Priority chain for terminal outcomes, first positive value wins:

1. callback conversation duration (talk time, matches the provider dashboard)
2. callback generic duration
3. callback start/end timestamps
4. provider call-detail API: conversation duration, then timestamps
5. provider gross duration (includes ring time), recorded with a caveat

Nothing positive means "unresolved": the caller schedules retries rather
than persisting a misleading zero.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from callrecon.calls.models import CallOutcome
from callrecon.reconciliation.events import CallbackPayload
from callrecon.reconciliation.fields import duration_between, parse_duration
from callrecon.shared.exceptions import DurationUnavailable, ProviderAPIError
from callrecon.shared.logging import get_logger
from callrecon.telephony.credentials import CredentialResolver
from callrecon.telephony.exotel import CallDetailClient

logger = get_logger(__name__)

GROSS_DURATION_FIELDS: tuple[str, ...] = ("Duration", "CallDuration")


class DurationSource(str, Enum):
    """Which link of the priority chain produced a duration."""

    NON_TERMINAL = "non_terminal"
    CALLBACK_CONVERSATION = "callback_conversation_duration"
    CALLBACK_DURATION = "callback_duration"
    CALLBACK_TIMESTAMPS = "callback_timestamps"
    PROVIDER_CONVERSATION = "provider_conversation_duration"
    PROVIDER_TIMESTAMPS = "provider_timestamps"
    PROVIDER_GROSS = "provider_gross_duration"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class DurationResolution:
    seconds: int | None = None
    source: DurationSource | None = None
    caveat: str | None = None

    @property
    def resolved(self) -> bool:
        return self.seconds is not None

    @classmethod
    def unresolved(cls) -> "DurationResolution":
        return cls()


def resolve_from_callback(callback: CallbackPayload) -> DurationResolution:
    """Priorities 1-3, using only what the callback carried."""
    seconds = parse_duration(callback.conversation_duration)
    if seconds > 0:
        return DurationResolution(seconds, DurationSource.CALLBACK_CONVERSATION)

    seconds = parse_duration(callback.duration)
    if seconds > 0:
        return DurationResolution(seconds, DurationSource.CALLBACK_DURATION)

    seconds = duration_between(callback.start_time, callback.end_time)
    if seconds > 0:
        return DurationResolution(seconds, DurationSource.CALLBACK_TIMESTAMPS)

    return DurationResolution.unresolved()


def resolve_from_call_record(call: Mapping[str, Any]) -> DurationResolution:
    """Priorities 4 and 5 against a provider call record."""
    seconds = parse_duration(call.get("ConversationDuration"))
    if seconds > 0:
        return DurationResolution(seconds, DurationSource.PROVIDER_CONVERSATION)

    seconds = duration_between(call.get("StartTime"), call.get("EndTime"))
    if seconds > 0:
        return DurationResolution(seconds, DurationSource.PROVIDER_TIMESTAMPS)

    for field in GROSS_DURATION_FIELDS:
        seconds = parse_duration(call.get(field))
        if seconds > 0:
            return DurationResolution(
                seconds,
                DurationSource.PROVIDER_GROSS,
                caveat="gross duration includes ring time; may not match the dashboard",
            )

    return DurationResolution.unresolved()


class DurationResolver:
    """Runs the priority chain, calling the provider API when needed."""

    def __init__(
        self,
        client: CallDetailClient,
        credentials: CredentialResolver,
    ) -> None:
        self._client = client
        self._credentials = credentials

    async def resolve(
        self,
        callback: CallbackPayload,
        outcome: CallOutcome,
        provider_call_id: str,
        user_id: int | None = None,
    ) -> DurationResolution:
        """Resolve the duration for one callback.

        Never raises for provider trouble: failures are logged and reported
        as an unresolved duration.
        """
        if not outcome.is_terminal:
            return DurationResolution(0, DurationSource.NON_TERMINAL)

        resolution = resolve_from_callback(callback)
        if resolution.resolved:
            return resolution

        try:
            return await self.lookup_provider(provider_call_id, user_id)
        except ProviderAPIError as e:
            logger.warning(
                "Provider duration lookup failed; leaving duration unresolved",
                extra={
                    "provider_call_id": provider_call_id,
                    "error": e.message,
                    "status_code": e.status_code,
                },
            )
        except DurationUnavailable as e:
            logger.info(
                "Provider has no duration yet",
                extra={"provider_call_id": provider_call_id, "error": e.message},
            )
        return DurationResolution.unresolved()

    async def lookup_provider(
        self,
        provider_call_id: str,
        user_id: int | None = None,
    ) -> DurationResolution:
        """Priorities 4-5 only; also the body of every retry.

        Raises:
            ProviderAPIError: Upstream failure or timeout.
            DurationUnavailable: The provider had no positive duration.
        """
        credentials = await self._credentials.resolve(user_id)
        call = await self._client.get_call_details(provider_call_id, credentials)

        resolution = resolve_from_call_record(call)
        if not resolution.resolved:
            raise DurationUnavailable(
                message="Provider call record has no positive duration",
                details={"provider_call_id": provider_call_id},
            )

        if resolution.caveat:
            logger.warning(
                "Conversation duration unavailable; using gross duration",
                extra={
                    "provider_call_id": provider_call_id,
                    "duration": resolution.seconds,
                    "caveat": resolution.caveat,
                },
            )
        return resolution
