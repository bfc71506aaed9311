"""
Repository for call attempt database operations.
"""

from datetime import datetime, timedelta, timezone
from typing import Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from callrecon.calls.models import CallAttempt, CallOutcome
from callrecon.shared.logging import get_logger

logger = get_logger(__name__)


class CallAttemptRepository:
    """Repository for call attempt database operations.

    Every lookup is a parameterized query keyed by
    ``(contact_id, provider_call_id)`` or by primary key.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def get_by_id(self, attempt_id: int) -> CallAttempt | None:
        """Get call attempt by ID.

        Args:
            attempt_id: Call attempt primary key.

        Returns:
            CallAttempt if found, None otherwise.
        """
        stmt = select(CallAttempt).where(CallAttempt.id == attempt_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_call(
        self,
        contact_id: int,
        provider_call_id: str,
    ) -> CallAttempt | None:
        """Get the call attempt row for one contact and provider call id."""
        stmt = select(CallAttempt).where(
            CallAttempt.contact_id == contact_id,
            CallAttempt.provider_call_id == provider_call_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def next_attempt_no(self, contact_id: int) -> int:
        """Return the next monotonic attempt number for a contact."""
        stmt = select(func.coalesce(func.max(CallAttempt.attempt_no), 0)).where(
            CallAttempt.contact_id == contact_id
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one()) + 1

    async def get_or_create(
        self,
        contact_id: int,
        provider_call_id: str,
        status: CallOutcome = CallOutcome.INITIATED,
        user_id: int | None = None,
    ) -> tuple[CallAttempt, bool]:
        """Locate the attempt for ``(contact_id, provider_call_id)`` or create it.

        A racing insert for the same pair trips the unique constraint; the
        savepoint is rolled back and the winner's row is returned instead.

        Returns:
            Tuple of (attempt, created).
        """
        existing = await self.get_for_call(contact_id, provider_call_id)
        if existing is not None:
            return existing, False

        attempt = CallAttempt(
            contact_id=contact_id,
            provider_call_id=provider_call_id,
            attempt_no=await self.next_attempt_no(contact_id),
            status=status,
            duration=0 if not status.is_terminal else None,
            user_id=user_id,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(attempt)
                await self._session.flush()
        except IntegrityError:
            logger.info(
                "Concurrent call attempt insert detected; reusing existing row",
                extra={"contact_id": contact_id, "provider_call_id": provider_call_id},
            )
            existing = await self.get_for_call(contact_id, provider_call_id)
            if existing is None:
                raise
            return existing, False

        await self._session.refresh(attempt)
        return attempt, True

    async def list_missing_duration(
        self,
        limit: int = 50,
        max_age_days: int = 7,
    ) -> Sequence[CallAttempt]:
        """Recent completed attempts whose duration never got resolved."""
        since = datetime.now(timezone.utc) - timedelta(days=max_age_days)
        stmt = (
            select(CallAttempt)
            .where(
                CallAttempt.status == CallOutcome.COMPLETED,
                or_(CallAttempt.duration.is_(None), CallAttempt.duration == 0),
                CallAttempt.provider_call_id.is_not(None),
                CallAttempt.provider_call_id != "",
                CallAttempt.created_at >= since,
            )
            .order_by(CallAttempt.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()
