"""
Shared fixtures for the sync engine tests.

Repository-backed tests run against an in-memory SQLite database; the
remote CRM is replaced by FakeCRMClient.
"""

from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.core.interfaces.crm import CRMClient, CRMListResult, CRMResult
from app.db.base import Base
from app.models import crm, sync  # noqa: F401
from app.services.sync_repository import SyncRepository


class FakeCRMClient(CRMClient):
    """In-memory remote CRM. Lists `persons`; records every write."""

    def __init__(self, persons: Optional[List[Dict[str, Any]]] = None):
        self.persons = persons or []
        self.list_results: List[CRMListResult] = []
        self.update_results: List[CRMResult] = []
        self.created_activities: List[Dict[str, Any]] = []
        self.updates: List[tuple] = []
        self.list_calls = 0
        self.connected = True

    async def test_connection(self) -> CRMResult:
        if self.connected:
            return CRMResult(success=True, remote_id=1, data={"success": True, "data": {"id": 1, "name": "Test User"}})
        return CRMResult(success=False, error="API key expired or invalid", status_code=401)

    async def list_persons(self, deadline=None) -> CRMListResult:
        self.list_calls += 1
        if self.list_results:
            return self.list_results.pop(0)
        return CRMListResult(success=True, items=list(self.persons))

    async def list_organizations(self, deadline=None) -> CRMListResult:
        return CRMListResult(success=True, items=[])

    async def create_person(self, data, deadline=None) -> CRMResult:
        return CRMResult(success=True, remote_id=1000)

    async def update_person(self, person_id, data, deadline=None) -> CRMResult:
        return await self._update("person", person_id, data)

    async def create_organization(self, data, deadline=None) -> CRMResult:
        return CRMResult(success=True, remote_id=2000)

    async def update_organization(self, org_id, data, deadline=None) -> CRMResult:
        return await self._update("organization", org_id, data)

    async def create_activity(self, data, deadline=None) -> CRMResult:
        self.created_activities.append(data)
        if self.update_results:
            return self.update_results.pop(0)
        return CRMResult(success=True, remote_id=3000 + len(self.created_activities))

    async def update_activity(self, activity_id, data, deadline=None) -> CRMResult:
        return await self._update("activity", activity_id, data)

    async def create_deal(self, data, deadline=None) -> CRMResult:
        return CRMResult(success=True, remote_id=4000)

    async def update_deal(self, deal_id, data, deadline=None) -> CRMResult:
        return await self._update("deal", deal_id, data)

    async def close(self) -> None:
        pass

    async def _update(self, record_type, record_id, data) -> CRMResult:
        self.updates.append((record_type, record_id, data))
        if self.update_results:
            return self.update_results.pop(0)
        return CRMResult(success=True, remote_id=int(record_id))


def make_person(
    person_id: int,
    name: Optional[str] = None,
    email: Optional[str] = None,
    org_id: Optional[int] = None,
    org_name: Optional[str] = None,
    update_time: str = "2026-01-05 10:00:00",
) -> Dict[str, Any]:
    """Raw person record shaped like the Pipedrive /persons response."""
    record: Dict[str, Any] = {
        "id": person_id,
        "name": name or f"Person {person_id}",
        "email": [{"value": email or f"person{person_id}@example.org", "primary": True}],
        "phone": [{"value": f"+44 20 7946 {person_id:04d}", "primary": True}],
        "update_time": update_time,
    }
    if org_id is not None:
        record["org_id"] = {"value": org_id, "name": org_name or f"Org {org_id}"}
    elif org_name:
        record["org_name"] = org_name
    return record


@pytest.fixture
def settings() -> Settings:
    """Settings with delays removed so retries run instantly."""
    return Settings(
        PIPEDRIVE_BASE_URL="https://api.pipedrive.com",
        PIPEDRIVE_RETRY_DELAY=100,
        PIPEDRIVE_MAX_RETRIES=2,
        SYNC_BATCH_SIZE=50,
        SYNC_TIMEOUT_MS=60000,
        SYNC_BATCH_TIMEOUT_MS=30000,
        SYNC_MAX_BATCH_TIMEOUT_MS=60000,
        SYNC_UPDATE_PAUSE_MS=0,
        SYNC_CONFLICT_RETRY_DELAY_MS=0,
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with maker() as session:
        yield session


@pytest_asyncio.fixture
async def repository(session) -> SyncRepository:
    return SyncRepository(session)


@pytest.fixture
def fake_client() -> FakeCRMClient:
    return FakeCRMClient()
