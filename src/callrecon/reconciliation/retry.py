"""
Bounded, backing-off retries for unresolved call durations.

One chain per provider call id: sleep 30, try, sleep 60, try, sleep 120, try.
Scheduling a new chain for the same call id cancels the old one.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Awaitable, Callable, Sequence

from callrecon.shared.logging import get_logger

logger = get_logger(__name__)

DEFAULT_RETRY_DELAYS: tuple[float, ...] = (30.0, 60.0, 120.0)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class RetryTask:
    """Pending duration retry for one call."""

    provider_call_id: str
    contact_id: int
    call_attempt_id: int | None
    user_id: int | None
    attempts_remaining: int
    next_fire_at: datetime | None = None


# Returns True once the duration is resolved and persisted
RetryAttempt = Callable[[RetryTask], Awaitable[bool]]


class RetryScheduler:
    """Registry of in-flight retry chains, keyed by provider call id."""

    def __init__(
        self,
        attempt: RetryAttempt,
        delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._attempt = attempt
        self._delays = tuple(delays)
        self._sleep = sleep
        self._pending: dict[str, RetryTask] = {}
        self._runners: dict[str, asyncio.Task[None]] = {}

    @property
    def delays(self) -> tuple[float, ...]:
        return self._delays

    def schedule(
        self,
        provider_call_id: str,
        contact_id: int,
        call_attempt_id: int | None = None,
        user_id: int | None = None,
    ) -> RetryTask:
        """Start a retry chain, superseding any chain for the same call."""
        if self.cancel(provider_call_id):
            logger.info(
                "Superseded pending duration retry",
                extra={"provider_call_id": provider_call_id},
            )

        task = RetryTask(
            provider_call_id=provider_call_id,
            contact_id=contact_id,
            call_attempt_id=call_attempt_id,
            user_id=user_id,
            attempts_remaining=len(self._delays),
        )
        runner = asyncio.create_task(
            self._run(task),
            name=f"duration-retry:{provider_call_id}",
        )
        self._pending[provider_call_id] = task
        self._runners[provider_call_id] = runner
        runner.add_done_callback(partial(self._forget, provider_call_id))

        logger.info(
            "Duration retry scheduled",
            extra={
                "provider_call_id": provider_call_id,
                "contact_id": contact_id,
                "delays": list(self._delays),
            },
        )
        return task

    def cancel(self, provider_call_id: str) -> bool:
        """Cancel the pending chain for a call; True if one was pending."""
        runner = self._runners.pop(provider_call_id, None)
        self._pending.pop(provider_call_id, None)
        if runner is None or runner.done():
            return False
        runner.cancel()
        return True

    def get(self, provider_call_id: str) -> RetryTask | None:
        return self._pending.get(provider_call_id)

    def __contains__(self, provider_call_id: object) -> bool:
        return provider_call_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    async def join(self) -> None:
        """Wait for every chain currently registered to finish."""
        while self._runners:
            await asyncio.gather(*list(self._runners.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every chain and wait for them to unwind."""
        runners = list(self._runners.values())
        self._runners.clear()
        self._pending.clear()
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)

    def _forget(self, provider_call_id: str, runner: asyncio.Task[None]) -> None:
        if self._runners.get(provider_call_id) is runner:
            del self._runners[provider_call_id]
            self._pending.pop(provider_call_id, None)

    async def _run(self, task: RetryTask) -> None:
        for number, delay in enumerate(self._delays, start=1):
            task.next_fire_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
            await self._sleep(delay)
            task.attempts_remaining -= 1

            try:
                resolved = await self._attempt(task)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Duration retry attempt failed",
                    extra={"provider_call_id": task.provider_call_id, "attempt": number},
                )
                resolved = False

            if resolved:
                logger.info(
                    "Duration resolved on retry",
                    extra={"provider_call_id": task.provider_call_id, "attempt": number},
                )
                return

            logger.info(
                "Duration still unresolved",
                extra={
                    "provider_call_id": task.provider_call_id,
                    "attempt": number,
                    "attempts_remaining": task.attempts_remaining,
                },
            )

        task.next_fire_at = None
        logger.warning(
            "Duration retries exhausted; duration left unset",
            extra={
                "provider_call_id": task.provider_call_id,
                "contact_id": task.contact_id,
                "attempts": len(self._delays),
            },
        )
