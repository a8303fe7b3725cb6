"""
Tests for the HTTP trigger interface.

Requests go through httpx.ASGITransport; the database session and the
Pipedrive client are replaced through dependency overrides.
"""

import uuid
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from app.api.endpoints.crm_sync import get_crm_client, get_repository
from app.core.interfaces.crm import CRMListResult, CRMResult, ErrorType
from app.db.session import get_async_session
from app.main import app
from app.models.sync import AccountSyncStatus

from conftest import FakeCRMClient, make_person

TOKEN_HEADER = {"X-Pipedrive-Api-Token": "secret-token-123"}


@pytest_asyncio.fixture
async def api(session, repository, fake_client):
    async def override_session():
        yield session

    app.dependency_overrides[get_async_session] = override_session
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_crm_client] = lambda: fake_client

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.mark.asyncio
class TestRunEndpoint:
    """Tests for POST /api/v1/crm-sync/run."""

    async def test_successful_run(self, api, fake_client):
        fake_client.persons = [make_person(1), make_person(2)]

        response = await api.post(
            "/api/v1/crm-sync/run",
            json={"account_id": "acct-1", "sync_type": "FULL"},
            headers=TOKEN_HEADER,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["sync_type"] == "FULL"
        assert body["data"]["results"]["created"] == 2
        uuid.UUID(body["data"]["sync_run_id"])

    async def test_invalid_credential(self, api, fake_client):
        fake_client.connected = False

        response = await api.post("/api/v1/crm-sync/run", json={"account_id": "acct-1"}, headers=TOKEN_HEADER)

        assert response.status_code == 400
        assert response.json()["detail"] == "API key expired or invalid"

    async def test_unreachable_remote_is_server_error(self, api, fake_client):
        fake_client.test_connection = AsyncMock(return_value=CRMResult(
            success=False,
            error="Failed to connect to Pipedrive API: connection refused",
            error_type=ErrorType.NETWORK,
        ))

        response = await api.post("/api/v1/crm-sync/run", json={"account_id": "acct-1"}, headers=TOKEN_HEADER)

        assert response.status_code == 500
        assert response.json()["detail"].startswith("Failed to connect")

    async def test_rate_limited_run(self, api, fake_client):
        exhausted = CRMListResult(
            success=False,
            error="Rate limit exceeded",
            error_type=ErrorType.RATE_LIMIT,
            status_code=429,
            retry_after=0,
        )
        fake_client.list_results = [exhausted] * 10

        response = await api.post("/api/v1/crm-sync/run", json={"account_id": "acct-1"}, headers=TOKEN_HEADER)

        assert response.status_code == 429
        assert response.json()["detail"] == "Rate limit exceeded"

    async def test_search_requires_record_ids(self, api):
        response = await api.post(
            "/api/v1/crm-sync/run",
            json={"account_id": "acct-1", "sync_type": "SEARCH"},
            headers=TOKEN_HEADER,
        )

        assert response.status_code == 400

    async def test_invalid_body(self, api):
        response = await api.post("/api/v1/crm-sync/run", json={"account_id": ""}, headers=TOKEN_HEADER)

        assert response.status_code == 422

    async def test_missing_token_header(self, session, repository):
        """Without the header the real client dependency refuses the request."""
        app.dependency_overrides[get_repository] = lambda: repository
        try:
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.post("/api/v1/crm-sync/run", json={"account_id": "acct-1"})
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 400
        assert response.json()["detail"] == "Pipedrive API key is required"


@pytest.mark.asyncio
class TestStatusEndpoints:
    """Tests for progress, latest and recovery endpoints."""

    async def test_progress_and_latest(self, api, fake_client):
        fake_client.persons = [make_person(1)]
        run = await api.post("/api/v1/crm-sync/run", json={"account_id": "acct-1"}, headers=TOKEN_HEADER)
        run_id = run.json()["data"]["sync_run_id"]

        progress = await api.get(f"/api/v1/crm-sync/progress/{run_id}")
        latest = await api.get("/api/v1/crm-sync/latest/acct-1")

        assert progress.status_code == 200
        assert progress.json()["status"] == "SUCCESS"
        assert progress.json()["records_created"] == 1
        assert latest.json()["latest_run"]["sync_run_id"] == run_id
        assert latest.json()["sync_status"] == AccountSyncStatus.COMPLETED.value

    async def test_progress_unknown_run(self, api):
        response = await api.get(f"/api/v1/crm-sync/progress/{uuid.uuid4()}")

        assert response.status_code == 404

    async def test_recovery_without_history(self, api):
        response = await api.get("/api/v1/crm-sync/recovery/acct-1")

        assert response.status_code == 200
        assert response.json()["recovery_point"] is None

    async def test_recovery_after_success(self, api, fake_client):
        fake_client.persons = [make_person(i) for i in range(1, 4)]
        await api.post("/api/v1/crm-sync/run", json={"account_id": "acct-1"}, headers=TOKEN_HEADER)

        response = await api.get("/api/v1/crm-sync/recovery/acct-1", params={"batch_size": 25})

        body = response.json()
        assert body["recovery_point"]["records_processed"] == 3
        assert body["resume"]["start_from_record"] == 3
        assert body["resume"]["batch_size"] == 25


@pytest.mark.asyncio
class TestBatchUpdateEndpoint:
    """Tests for POST /api/v1/crm-sync/batch-update."""

    async def test_batch_update(self, api, fake_client):
        fake_client.update_results = [CRMResult(success=False, error="Validation failed", status_code=400)]

        response = await api.post(
            "/api/v1/crm-sync/batch-update",
            json={"account_id": "acct-1", "updates": [
                {"record_type": "person", "record_id": 1, "data": {"name": "Jane"}},
                {"record_type": "deal", "record_id": 2, "data": {"value": 10}},
                {"record_type": "invoice", "record_id": 3},
            ]},
            headers=TOKEN_HEADER,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert [r["success"] for r in body["results"]] == [False, True, False]
        assert body["summary"]["total"] == 3
        assert body["summary"]["failed"] == 2

    async def test_batch_update_requires_account(self, api):
        response = await api.post(
            "/api/v1/crm-sync/batch-update",
            json={"updates": [{"record_type": "person", "record_id": 1}]},
            headers=TOKEN_HEADER,
        )

        assert response.status_code == 422


@pytest.mark.asyncio
class TestConnectionAndHealth:
    """Tests for test-connection and health."""

    async def test_connection(self, api):
        response = await api.get("/api/v1/crm-sync/test-connection", headers=TOKEN_HEADER)

        assert response.json() == {"success": True, "user": {"id": 1, "name": "Test User"}, "error": None}

    async def test_health(self, api):
        response = await api.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["database_connected"] is True
