"""
Stale-call monitor.

Armed once per placed call. If nothing terminal has landed when the window
closes, ``on_timeout`` force-terminates the attempt; the write itself is
conditional, so a callback that won the race turns the check into a no-op.
"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Awaitable, Callable

from callrecon.shared.logging import get_logger

logger = get_logger(__name__)

DEFAULT_STALE_TIMEOUT_SECONDS = 120.0

TimeoutHandler = Callable[[int, str], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[None]]


class StaleCallMonitor:
    """Registry of single-shot stale-call checks, keyed by provider call id."""

    def __init__(
        self,
        on_timeout: TimeoutHandler,
        timeout_seconds: float = DEFAULT_STALE_TIMEOUT_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._on_timeout = on_timeout
        self._timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._checks: dict[str, asyncio.Task[None]] = {}
        self._firing: set[str] = set()

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def arm(self, contact_id: int, provider_call_id: str) -> None:
        """Arm the check for a freshly placed call, replacing any earlier one."""
        self.cancel(provider_call_id)
        check = asyncio.create_task(
            self._watch(contact_id, provider_call_id),
            name=f"stale-call:{provider_call_id}",
        )
        self._checks[provider_call_id] = check
        check.add_done_callback(partial(self._forget, provider_call_id))
        logger.debug(
            "Stale-call check armed",
            extra={
                "provider_call_id": provider_call_id,
                "contact_id": contact_id,
                "timeout_seconds": self._timeout_seconds,
            },
        )

    def cancel(self, provider_call_id: str) -> bool:
        """Soft-cancel a pending check.

        A check that has already started firing is left alone; its write is
        conditional and yields to whatever terminal state it finds.
        """
        if provider_call_id in self._firing:
            return False
        check = self._checks.pop(provider_call_id, None)
        if check is None or check.done():
            return False
        check.cancel()
        return True

    def is_armed(self, provider_call_id: str) -> bool:
        check = self._checks.get(provider_call_id)
        return check is not None and not check.done()

    def __len__(self) -> int:
        return len(self._checks)

    async def join(self) -> None:
        while self._checks:
            await asyncio.gather(*list(self._checks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        checks = list(self._checks.values())
        self._checks.clear()
        for check in checks:
            check.cancel()
        if checks:
            await asyncio.gather(*checks, return_exceptions=True)

    def _forget(self, provider_call_id: str, check: asyncio.Task[None]) -> None:
        if self._checks.get(provider_call_id) is check:
            del self._checks[provider_call_id]

    async def _watch(self, contact_id: int, provider_call_id: str) -> None:
        await self._sleep(self._timeout_seconds)

        self._firing.add(provider_call_id)
        try:
            logger.info(
                "Stale-call window elapsed; forcing timeout",
                extra={"provider_call_id": provider_call_id, "contact_id": contact_id},
            )
            await self._on_timeout(contact_id, provider_call_id)
        except Exception:
            logger.exception(
                "Stale-call timeout handler failed",
                extra={"provider_call_id": provider_call_id, "contact_id": contact_id},
            )
        finally:
            self._firing.discard(provider_call_id)
