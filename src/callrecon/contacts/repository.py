"""
Repository for contact lookups used by the reconciliation core.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callrecon.contacts.models import Contact


class ContactRepository:
    """Read access to contacts.

    Contact CRUD lives elsewhere; reconciliation only needs the lookups that
    tie a provider callback to its owner.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, contact_id: int) -> Contact | None:
        stmt = select(Contact).where(Contact.id == contact_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_provider_call_id(self, provider_call_id: str) -> Contact | None:
        """Exact match on the stored provider call id of the latest attempt."""
        stmt = (
            select(Contact)
            .where(Contact.provider_call_id == provider_call_id)
            .order_by(Contact.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def refresh(self, contact: Contact) -> Contact:
        await self._session.refresh(contact)
        return contact
