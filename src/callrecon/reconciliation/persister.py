"""
State persister: applies outcomes to a Contact and its CallAttempt.

Every write is a parameterized conditional UPDATE keyed by the attempt id or
by ``(contact_id, provider_call_id)``; ``rowcount`` tells which writer won.
No locks are taken, so concurrent duplicate or racing deliveries converge on
the same final state.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from callrecon.calls.models import (
    NON_TERMINAL_OUTCOMES,
    TERMINAL_OUTCOMES,
    CallAttempt,
    CallOutcome,
    TerminalSource,
)
from callrecon.calls.repository import CallAttemptRepository
from callrecon.contacts.models import Contact
from callrecon.contacts.repository import ContactRepository
from callrecon.reconciliation.duration import DurationSource
from callrecon.reconciliation.events import ReconciliationEvent
from callrecon.shared.exceptions import NotFoundError, PersistenceError
from callrecon.shared.logging import get_logger

logger = get_logger(__name__)

# Non-terminal statuses a non-terminal event may overwrite, so In Progress
# never regresses to Initiated.
_NON_TERMINAL_PREDECESSORS: dict[CallOutcome, tuple[CallOutcome, ...]] = {
    CallOutcome.INITIATED: (CallOutcome.INITIATED,),
    CallOutcome.IN_PROGRESS: (CallOutcome.INITIATED, CallOutcome.IN_PROGRESS),
}


def _is_latest_attempt(contact_id: int, attempt_no: int) -> Any:
    """SQL guard: no attempt of the contact is newer than ``attempt_no``."""
    newer = select(CallAttempt.id).where(
        CallAttempt.contact_id == contact_id,
        CallAttempt.attempt_no > attempt_no,
    )
    return ~newer.exists()


@dataclass
class PersistOutcome:
    """What a persister write did.

    ``applied`` is False when the write lost a race and left state unchanged;
    ``transitioned`` is True only for the single write that moved the attempt
    from non-terminal to terminal.
    """

    contact: Contact
    attempt: CallAttempt
    applied: bool
    transitioned: bool = False


class StatePersister:
    """Applies reconciliation results inside one session/transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._contacts = ContactRepository(session)
        self._attempts = CallAttemptRepository(session)

    @contextmanager
    def _storage_errors(self, operation: str, **context: Any) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as e:
            logger.exception(
                "Persistence failure",
                extra={"operation": operation, **context},
            )
            raise PersistenceError(
                message=f"Failed to persist {operation}",
                details={"operation": operation, **context, "error": str(e)},
            ) from e

    async def apply(
        self,
        event: ReconciliationEvent,
        contact: Contact,
        user_id: int | None = None,
    ) -> PersistOutcome:
        """Apply one event's outcome to the contact and its attempt.

        Terminal outcomes come from provider callbacks. Non-terminal ones
        (``Initiated``, ``In Progress``) are progress reports from placement
        or dialer integrations; they move the attempt forward but never
        overwrite a terminal status and never count as an attempt.
        """
        with self._storage_errors(
            "callback",
            contact_id=contact.id,
            provider_call_id=event.provider_call_id,
        ):
            current = await self._load_contact(contact.id)
            attempt, _ = await self._attempts.get_or_create(
                current.id,
                event.provider_call_id,
                status=CallOutcome.INITIATED,
                user_id=user_id,
            )

            if event.outcome in TERMINAL_OUTCOMES:
                outcome = await self._apply_terminal(event, current, attempt)
            else:
                outcome = await self._apply_non_terminal(event, current, attempt)

            await self._session.refresh(current)
            await self._session.refresh(attempt)
            return outcome

    async def _apply_terminal(
        self,
        event: ReconciliationEvent,
        contact: Contact,
        attempt: CallAttempt,
    ) -> PersistOutcome:
        values: dict[str, Any] = {
            "status": event.outcome,
            "duration": event.resolved_duration,
            "duration_source": event.duration_source,
            "terminal_source": TerminalSource.CALLBACK,
        }
        if event.recording_url:
            values["recording_url"] = event.recording_url

        stmt = (
            update(CallAttempt)
            .where(
                CallAttempt.id == attempt.id,
                CallAttempt.status.in_(tuple(NON_TERMINAL_OUTCOMES)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)

        if result.rowcount == 1:
            await self._increment_attempts(contact.id)
            await self._mirror_contact(contact.id, attempt.attempt_no, event)
            logger.info(
                "Call attempt reached terminal state",
                extra={
                    "contact_id": contact.id,
                    "provider_call_id": event.provider_call_id,
                    "outcome": event.outcome.value,
                    "duration": event.resolved_duration,
                    "duration_source": event.duration_source,
                },
            )
            return PersistOutcome(contact, attempt, applied=True, transitioned=True)

        # Already terminal: either a correction of our own callback or a late
        # callback that lost to the stale-call timeout.
        correction: dict[str, Any] = {"status": event.outcome}
        if event.resolved_duration is not None:
            correction["duration"] = event.resolved_duration
            correction["duration_source"] = event.duration_source
        if event.recording_url:
            correction["recording_url"] = event.recording_url

        stmt = (
            update(CallAttempt)
            .where(
                CallAttempt.id == attempt.id,
                CallAttempt.status.in_(tuple(TERMINAL_OUTCOMES)),
                or_(
                    CallAttempt.terminal_source.is_(None),
                    CallAttempt.terminal_source == TerminalSource.CALLBACK,
                ),
            )
            .values(**correction)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)

        if result.rowcount == 0:
            logger.warning(
                "Callback arrived after stale-call timeout; not applied",
                extra={
                    "contact_id": contact.id,
                    "provider_call_id": event.provider_call_id,
                    "outcome": event.outcome.value,
                    "raw_signals": event.raw_signals,
                },
            )
            return PersistOutcome(contact, attempt, applied=False)

        await self._mirror_contact(contact.id, attempt.attempt_no, event)
        logger.info(
            "Terminal callback re-applied as correction",
            extra={
                "contact_id": contact.id,
                "provider_call_id": event.provider_call_id,
                "outcome": event.outcome.value,
            },
        )
        return PersistOutcome(contact, attempt, applied=True)

    async def _apply_non_terminal(
        self,
        event: ReconciliationEvent,
        contact: Contact,
        attempt: CallAttempt,
    ) -> PersistOutcome:
        stmt = (
            update(CallAttempt)
            .where(
                CallAttempt.id == attempt.id,
                CallAttempt.status.in_(_NON_TERMINAL_PREDECESSORS[event.outcome]),
            )
            .values(status=event.outcome)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            logger.info(
                "Non-terminal callback ignored; attempt already further along",
                extra={
                    "contact_id": contact.id,
                    "provider_call_id": event.provider_call_id,
                    "outcome": event.outcome.value,
                },
            )
            return PersistOutcome(contact, attempt, applied=False)

        same_call = Contact.provider_call_id == event.provider_call_id
        stmt = (
            update(Contact)
            .where(
                Contact.id == contact.id,
                _is_latest_attempt(contact.id, attempt.attempt_no),
                or_(
                    Contact.status.not_in(tuple(TERMINAL_OUTCOMES)),
                    Contact.provider_call_id.is_(None),
                    Contact.provider_call_id != event.provider_call_id,
                ),
            )
            .values(
                status=event.outcome,
                provider_call_id=event.provider_call_id,
                last_attempt=event.occurred_at,
                duration=case((same_call, Contact.duration), else_=None),
                recording_url=case((same_call, Contact.recording_url), else_=None),
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        return PersistOutcome(contact, attempt, applied=True)

    async def apply_timeout(
        self,
        contact_id: int,
        provider_call_id: str,
    ) -> PersistOutcome | None:
        """Force a still-open attempt to ``Failed`` with zero duration.

        Returns None when no attempt exists for the call.
        """
        with self._storage_errors(
            "timeout",
            contact_id=contact_id,
            provider_call_id=provider_call_id,
        ):
            attempt = await self._attempts.get_for_call(contact_id, provider_call_id)
            if attempt is None:
                logger.warning(
                    "Stale-call timeout for unknown attempt",
                    extra={"contact_id": contact_id, "provider_call_id": provider_call_id},
                )
                return None
            contact = await self._load_contact(contact_id)

            stmt = (
                update(CallAttempt)
                .where(
                    CallAttempt.id == attempt.id,
                    CallAttempt.status.in_(tuple(NON_TERMINAL_OUTCOMES)),
                )
                .values(
                    status=CallOutcome.FAILED,
                    duration=0,
                    duration_source=DurationSource.TIMEOUT.value,
                    terminal_source=TerminalSource.TIMEOUT,
                )
                .execution_options(synchronize_session=False)
            )
            result = await self._session.execute(stmt)

            transitioned = result.rowcount == 1
            if transitioned:
                await self._increment_attempts(contact_id)
                await self._mirror_contact(
                    contact_id,
                    attempt.attempt_no,
                    ReconciliationEvent(
                        provider_call_id=provider_call_id,
                        outcome=CallOutcome.FAILED,
                        resolved_duration=0,
                        duration_source=DurationSource.TIMEOUT.value,
                    ),
                )
                logger.warning(
                    "No callback within stale-call window; marked Failed",
                    extra={"contact_id": contact_id, "provider_call_id": provider_call_id},
                )
            else:
                logger.debug(
                    "Stale-call check found terminal attempt; no-op",
                    extra={"contact_id": contact_id, "provider_call_id": provider_call_id},
                )

            await self._session.refresh(contact)
            await self._session.refresh(attempt)
            return PersistOutcome(
                contact,
                attempt,
                applied=transitioned,
                transitioned=transitioned,
            )

    async def apply_resolved_duration(
        self,
        contact_id: int,
        provider_call_id: str,
        seconds: int,
        source: str | None = None,
    ) -> bool:
        """Fill a Completed attempt's missing duration.

        Only writes when the attempt is still Completed with no positive
        duration; anything else means a newer write got there first. The
        contact takes the value only while this call is its current one.
        """
        with self._storage_errors(
            "resolved_duration",
            contact_id=contact_id,
            provider_call_id=provider_call_id,
        ):
            stmt = (
                update(CallAttempt)
                .where(
                    CallAttempt.contact_id == contact_id,
                    CallAttempt.provider_call_id == provider_call_id,
                    CallAttempt.status == CallOutcome.COMPLETED,
                    or_(CallAttempt.duration.is_(None), CallAttempt.duration == 0),
                )
                .values(duration=seconds, duration_source=source)
                .execution_options(synchronize_session=False)
            )
            result = await self._session.execute(stmt)
            if result.rowcount == 0:
                logger.info(
                    "Resolved duration skipped; attempt no longer awaiting one",
                    extra={"contact_id": contact_id, "provider_call_id": provider_call_id},
                )
                return False

            stmt = (
                update(Contact)
                .where(
                    Contact.id == contact_id,
                    Contact.provider_call_id == provider_call_id,
                    Contact.status == CallOutcome.COMPLETED,
                )
                .values(duration=seconds)
                .execution_options(synchronize_session=False)
            )
            await self._session.execute(stmt)

            logger.info(
                "Resolved duration persisted",
                extra={
                    "contact_id": contact_id,
                    "provider_call_id": provider_call_id,
                    "duration": seconds,
                    "duration_source": source,
                },
            )
            return True

    async def register_placement(
        self,
        contact_id: int,
        provider_call_id: str,
        user_id: int | None = None,
    ) -> PersistOutcome:
        """Record a freshly placed call as the contact's in-flight attempt."""
        with self._storage_errors(
            "placement",
            contact_id=contact_id,
            provider_call_id=provider_call_id,
        ):
            contact = await self._load_contact(contact_id)
            attempt, created = await self._attempts.get_or_create(
                contact_id,
                provider_call_id,
                status=CallOutcome.INITIATED,
                user_id=user_id,
            )

            # A repeated placement of a known call leaves the mirror alone.
            if created:
                stmt = (
                    update(Contact)
                    .where(Contact.id == contact_id)
                    .values(
                        status=CallOutcome.INITIATED,
                        provider_call_id=provider_call_id,
                        last_attempt=datetime.now(timezone.utc),
                        duration=None,
                        recording_url=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                await self._session.execute(stmt)

            await self._session.refresh(contact)
            logger.info(
                "Call placement recorded",
                extra={
                    "contact_id": contact_id,
                    "provider_call_id": provider_call_id,
                    "attempt_no": attempt.attempt_no,
                    "user_id": user_id,
                },
            )
            return PersistOutcome(contact, attempt, applied=created)

    async def _load_contact(self, contact_id: int) -> Contact:
        contact = await self._contacts.get_by_id(contact_id)
        if contact is None:
            raise NotFoundError(
                message="Contact not found",
                details={"contact_id": contact_id},
            )
        return contact

    async def _increment_attempts(self, contact_id: int) -> None:
        stmt = (
            update(Contact)
            .where(Contact.id == contact_id)
            .values(attempts=Contact.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def _mirror_contact(
        self,
        contact_id: int,
        attempt_no: int,
        event: ReconciliationEvent,
    ) -> None:
        """Copy a terminal outcome onto the contact if it is for its latest attempt.

        Moving on to a newer call carries the call id forward and drops the
        previous call's duration and recording unless the event brings its own.
        """
        same_call = Contact.provider_call_id == event.provider_call_id
        values: dict[str, Any] = {
            "status": event.outcome,
            "provider_call_id": event.provider_call_id,
            "last_attempt": event.occurred_at,
            "duration": (
                event.resolved_duration
                if event.resolved_duration is not None
                else case((same_call, Contact.duration), else_=None)
            ),
            "recording_url": (
                event.recording_url
                if event.recording_url
                else case((same_call, Contact.recording_url), else_=None)
            ),
        }

        stmt = (
            update(Contact)
            .where(Contact.id == contact_id, _is_latest_attempt(contact_id, attempt_no))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            logger.info(
                "Contact has moved on to a newer call; mirror skipped",
                extra={
                    "contact_id": contact_id,
                    "provider_call_id": event.provider_call_id,
                    "attempt_no": attempt_no,
                },
            )
