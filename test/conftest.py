"""
Pytest configuration and fixtures for reconciliation tests.
"""
from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from typing import Any, Awaitable, Callable

import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession

from callrecon.calls.models import CallAttempt, CallOutcome
from callrecon.contacts.models import Contact
from callrecon.reconciliation.duration import DurationResolver
from callrecon.reconciliation.service import ReconciliationService
from callrecon.shared.database import DatabaseManager
from callrecon.shared.exceptions import ProviderAPIError
from callrecon.telephony.credentials import ProviderCredentials

import callrecon.telephony.models  # noqa: F401


class SimulatedClock:
    """Timer sleeps park until released, then return without real waiting."""

    def __init__(self) -> None:
        self.sleeps: list[float] = []
        self._released = asyncio.Event()

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await self._released.wait()

    def release(self) -> None:
        self._released.set()

    @property
    def elapsed(self) -> float:
        return sum(self.sleeps)


class FakeCallDetailClient:
    """Scripted provider call-detail API."""

    def __init__(self, responses: list[dict[str, Any] | Exception] | None = None) -> None:
        self.responses: list[dict[str, Any] | Exception] = list(responses or [])
        self.calls: list[tuple[str, ProviderCredentials]] = []

    async def get_call_details(
        self,
        provider_call_id: str,
        credentials: ProviderCredentials,
    ) -> dict[str, Any]:
        self.calls.append((provider_call_id, credentials))
        if not self.responses:
            raise ProviderAPIError(message="No scripted provider response")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class StaticCredentialResolver:
    def __init__(self, credentials: ProviderCredentials | None = None) -> None:
        self.credentials = credentials or ProviderCredentials("AC_TEST", "key_test", "token_test")
        self.user_ids: list[int | None] = []

    async def resolve(self, user_id: int | None) -> ProviderCredentials:
        self.user_ids.append(user_id)
        return self.credentials


@pytest_asyncio.fixture
async def db_manager(tmp_path: Any) -> AsyncGenerator[DatabaseManager, None]:
    """File-backed SQLite database with every table created.

    Transactions start with BEGIN IMMEDIATE so concurrent sessions queue on
    the write lock and savepoints work under the sqlite3 driver.
    """
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'callrecon.db'}")

    @event.listens_for(manager.engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, _: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(manager.engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await manager.create_all()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def db_session(db_manager: DatabaseManager) -> AsyncGenerator[AsyncSession, None]:
    """Committing session for repository-level tests."""
    async with db_manager.session() as session:
        yield session


@pytest.fixture
def clock() -> SimulatedClock:
    return SimulatedClock()


@pytest.fixture
def provider_client() -> FakeCallDetailClient:
    return FakeCallDetailClient()


@pytest.fixture
def credential_resolver() -> StaticCredentialResolver:
    return StaticCredentialResolver()


@pytest.fixture
def duration_resolver(
    provider_client: FakeCallDetailClient,
    credential_resolver: StaticCredentialResolver,
) -> DurationResolver:
    return DurationResolver(provider_client, credential_resolver)


@pytest_asyncio.fixture
async def service(
    db_manager: DatabaseManager,
    duration_resolver: DurationResolver,
    clock: SimulatedClock,
) -> AsyncGenerator[ReconciliationService, None]:
    svc = ReconciliationService(
        db_manager.session,
        duration_resolver,
        retry_delays=(30.0, 60.0, 120.0),
        stale_timeout_seconds=120.0,
        sleep=clock.sleep,
    )
    yield svc
    await svc.shutdown()


@pytest.fixture
def make_contact(db_manager: DatabaseManager) -> Callable[..., Awaitable[Contact]]:
    """Insert a contact and return it."""

    async def _make(
        name: str = "Asha Rao",
        phone: str = "+919800000001",
        provider_call_id: str | None = None,
        status: CallOutcome = CallOutcome.NOT_CALLED,
        status_override: str | None = None,
    ) -> Contact:
        async with db_manager.session() as session:
            contact = Contact(
                name=name,
                phone=phone,
                provider_call_id=provider_call_id,
                status=status,
                status_override=status_override,
            )
            session.add(contact)
            await session.flush()
            await session.refresh(contact)
            return contact

    return _make


@pytest.fixture
def load_state(
    db_manager: DatabaseManager,
) -> Callable[[int], Awaitable[tuple[Contact, list[CallAttempt]]]]:
    """Read back a contact and all of its call attempts."""

    async def _load(contact_id: int) -> tuple[Contact, list[CallAttempt]]:
        async with db_manager.session() as session:
            contact = (
                await session.execute(select(Contact).where(Contact.id == contact_id))
            ).scalar_one()
            attempts = (
                await session.execute(
                    select(CallAttempt)
                    .where(CallAttempt.contact_id == contact_id)
                    .order_by(CallAttempt.attempt_no)
                )
            ).scalars().all()
            return contact, list(attempts)

    return _load
