"""
Reconciliation service.

Orchestrates ingest → map → resolve duration → persist, and owns the two
timer registries (duration retries and stale-call checks).
"""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError

from callrecon.calls.models import CallOutcome
from callrecon.calls.repository import CallAttemptRepository
from callrecon.reconciliation.duration import DurationResolver
from callrecon.reconciliation.events import (
    CallAttemptSnapshot,
    ContactSnapshot,
    ReconciliationEvent,
    ReconciliationResult,
)
from callrecon.reconciliation.ingestor import WebhookIngestor
from callrecon.reconciliation.monitor import StaleCallMonitor
from callrecon.reconciliation.persister import PersistOutcome, StatePersister
from callrecon.reconciliation.retry import (
    DEFAULT_RETRY_DELAYS,
    RetryScheduler,
    RetryTask,
    Sleep,
)
from callrecon.reconciliation.status_mapper import map_callback
from callrecon.shared.database import SessionFactory
from callrecon.shared.exceptions import (
    DurationUnavailable,
    PersistenceError,
    ProviderAPIError,
)
from callrecon.shared.logging import correlation_id_var, get_logger

logger = get_logger(__name__)


def _result(
    provider_call_id: str,
    outcome: CallOutcome,
    persisted: PersistOutcome,
    retry_scheduled: bool = False,
) -> ReconciliationResult:
    return ReconciliationResult(
        provider_call_id=provider_call_id,
        outcome=outcome,
        applied=persisted.applied,
        retry_scheduled=retry_scheduled,
        duration_source=persisted.attempt.duration_source,
        contact=ContactSnapshot.model_validate(persisted.contact),
        call_attempt=CallAttemptSnapshot.model_validate(persisted.attempt),
    )


class ReconciliationService:
    """Entry point for callbacks, placements and stale-call timeouts."""

    def __init__(
        self,
        session_factory: SessionFactory,
        resolver: DurationResolver,
        *,
        ingestor: WebhookIngestor | None = None,
        retry_delays: tuple[float, ...] = DEFAULT_RETRY_DELAYS,
        stale_timeout_seconds: float = 120.0,
        sleep: Sleep | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._resolver = resolver
        self._ingestor = ingestor or WebhookIngestor()

        timer_kwargs: dict[str, Any] = {} if sleep is None else {"sleep": sleep}
        self.retries = RetryScheduler(
            self._retry_duration,
            delays=retry_delays,
            **timer_kwargs,
        )
        self.monitor = StaleCallMonitor(
            self.force_timeout,
            timeout_seconds=stale_timeout_seconds,
            **timer_kwargs,
        )

    async def reconcile(self, payload: Mapping[str, Any]) -> ReconciliationResult:
        """Process one provider callback.

        Raises:
            ValidationError: Malformed callback.
            NotFoundError: No owning contact.
            PersistenceError: Storage failure.
        """
        callback = self._ingestor.parse(payload)
        provider_call_id = callback.call_sid or ""
        token = correlation_id_var.set(provider_call_id)
        try:
            outcome = map_callback(callback)
            logger.info(
                "Callback received",
                extra={
                    "provider_call_id": provider_call_id,
                    "outcome": outcome.value,
                    "raw_signals": callback.raw_signals(),
                },
            )

            try:
                async with self._session_factory() as session:
                    contact = await self._ingestor.resolve_contact(session, callback)
                    existing = await CallAttemptRepository(session).get_for_call(
                        contact.id, provider_call_id
                    )
                    user_id = existing.user_id if existing is not None else None
            except SQLAlchemyError as e:
                raise self._persistence_error("contact lookup", provider_call_id, e) from e

            if outcome.is_terminal:
                self.retries.cancel(provider_call_id)

            # Provider lookups stay outside any transaction.
            resolution = await self._resolver.resolve(
                callback, outcome, provider_call_id, user_id
            )
            event = ReconciliationEvent(
                provider_call_id=provider_call_id,
                outcome=outcome,
                resolved_duration=resolution.seconds,
                duration_source=resolution.source.value if resolution.source else None,
                recording_url=callback.recording_url,
                raw_signals=callback.raw_signals(),
            )

            try:
                async with self._session_factory() as session:
                    persisted = await StatePersister(session).apply(event, contact, user_id)
            except SQLAlchemyError as e:
                raise self._persistence_error("callback", provider_call_id, e) from e

            if persisted.applied and outcome.is_terminal:
                self.monitor.cancel(provider_call_id)

            retry_scheduled = False
            if (
                persisted.applied
                and outcome is CallOutcome.COMPLETED
                and not resolution.resolved
                and not persisted.attempt.duration
            ):
                self.retries.schedule(
                    provider_call_id,
                    contact.id,
                    call_attempt_id=persisted.attempt.id,
                    user_id=persisted.attempt.user_id,
                )
                retry_scheduled = True

            return _result(provider_call_id, outcome, persisted, retry_scheduled)
        finally:
            correlation_id_var.reset(token)

    async def force_timeout(
        self,
        contact_id: int,
        provider_call_id: str,
    ) -> ReconciliationResult | None:
        """Terminate a call that never produced a terminal callback."""
        try:
            async with self._session_factory() as session:
                persisted = await StatePersister(session).apply_timeout(
                    contact_id, provider_call_id
                )
        except SQLAlchemyError as e:
            raise self._persistence_error("timeout", provider_call_id, e) from e

        if persisted is None:
            return None
        if persisted.transitioned:
            self.retries.cancel(provider_call_id)
        return _result(provider_call_id, persisted.attempt.status, persisted)

    async def track_placement(
        self,
        contact_id: int,
        provider_call_id: str,
        user_id: int | None = None,
    ) -> ReconciliationResult:
        """Record a placed call and arm its stale-call check."""
        try:
            async with self._session_factory() as session:
                persisted = await StatePersister(session).register_placement(
                    contact_id, provider_call_id, user_id
                )
        except SQLAlchemyError as e:
            raise self._persistence_error("placement", provider_call_id, e) from e

        if not persisted.attempt.status.is_terminal:
            self.monitor.arm(contact_id, provider_call_id)
        return _result(provider_call_id, persisted.attempt.status, persisted)

    async def sync_missing_durations(
        self,
        limit: int = 50,
        max_age_days: int = 7,
    ) -> int:
        """Backfill durations for recent Completed attempts that lack one.

        Returns:
            Number of attempts updated.
        """
        try:
            async with self._session_factory() as session:
                pending = [
                    (a.contact_id, a.provider_call_id, a.user_id)
                    for a in await CallAttemptRepository(session).list_missing_duration(
                        limit=limit, max_age_days=max_age_days
                    )
                ]
        except SQLAlchemyError as e:
            raise PersistenceError(
                message="Failed to list attempts missing a duration",
                details={"error": str(e)},
            ) from e

        updated = 0
        for contact_id, provider_call_id, user_id in pending:
            if not provider_call_id or provider_call_id in self.retries:
                continue
            written = await self._fill_duration(contact_id, provider_call_id, user_id)
            if written:
                updated += 1

        logger.info(
            "Duration sync finished",
            extra={"checked": len(pending), "updated": updated},
        )
        return updated

    async def shutdown(self) -> None:
        await self.retries.shutdown()
        await self.monitor.shutdown()

    async def _retry_duration(self, task: RetryTask) -> bool:
        token = correlation_id_var.set(task.provider_call_id)
        try:
            written = await self._fill_duration(
                task.contact_id, task.provider_call_id, task.user_id
            )
        finally:
            correlation_id_var.reset(token)
        # A skipped write also ends the chain: a newer write already settled it.
        return written is not None

    async def _fill_duration(
        self,
        contact_id: int,
        provider_call_id: str,
        user_id: int | None,
    ) -> bool | None:
        """One provider lookup plus a conditional write.

        Returns:
            None if the provider had no duration, otherwise whether the
            conditional write landed.
        """
        try:
            resolution = await self._resolver.lookup_provider(provider_call_id, user_id)
        except (ProviderAPIError, DurationUnavailable) as e:
            logger.info(
                "Provider lookup did not yield a duration",
                extra={"provider_call_id": provider_call_id, "error": e.message},
            )
            return None

        try:
            async with self._session_factory() as session:
                return await StatePersister(session).apply_resolved_duration(
                    contact_id,
                    provider_call_id,
                    resolution.seconds or 0,
                    resolution.source.value if resolution.source else None,
                )
        except SQLAlchemyError as e:
            raise self._persistence_error("resolved duration", provider_call_id, e) from e

    @staticmethod
    def _persistence_error(
        operation: str,
        provider_call_id: str,
        error: SQLAlchemyError,
    ) -> PersistenceError:
        logger.error(
            "Storage failure while reconciling",
            extra={
                "operation": operation,
                "provider_call_id": provider_call_id,
                "error": str(error),
            },
        )
        return PersistenceError(
            message=f"Failed to persist {operation}",
            details={"provider_call_id": provider_call_id},
        )
