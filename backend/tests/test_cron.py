"""
Tests for the scheduler endpoints: dispatcher fan-out and per-account sync.
"""

import json

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from adpulse.database import get_db
from adpulse.main import app
from adpulse.models import AccountStatus, SyncRun, SyncStatus
from adpulse.routers.cron import get_dispatch_client, get_meta_client

CRON_HEADERS = {"X-Cron-Secret": "test-cron-secret"}


@pytest.fixture
def override(db_session):
    async def _db():
        yield db_session

    app.dependency_overrides[get_db] = _db
    yield app.dependency_overrides
    app.dependency_overrides.clear()


@pytest.fixture
async def api():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.anyio
@pytest.mark.parametrize("headers", [{}, {"X-Cron-Secret": "wrong"}, {"Authorization": "Bearer wrong"}])
async def test_rejects_missing_or_wrong_secret(override, api, headers):
    response = await api.post("/api/cron/sync", headers=headers)
    assert response.status_code == 401


@pytest.mark.anyio
async def test_dispatcher_with_no_accounts(override, api):
    response = await api.post("/api/cron/sync", headers=CRON_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"message": "No active accounts", "dispatched": 0}


@pytest.mark.anyio
async def test_dispatcher_posts_one_request_per_active_account(override, api, make_account):
    first = await make_account("act_1")
    second = await make_account("act_2")
    await make_account("act_3", status=AccountStatus.PAUSED.value)
    dispatched = []

    def handler(request: httpx.Request) -> httpx.Response:
        dispatched.append(request)
        if json.loads(request.content)["account_id"] == str(second.id):
            return httpx.Response(500, json={"detail": "boom"})
        return httpx.Response(200, json={"success": True})

    async def _dispatch_client():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            yield client

    override[get_dispatch_client] = _dispatch_client
    response = await api.post("/api/cron/sync", headers={"Authorization": "Bearer test-cron-secret"})

    assert response.status_code == 200
    data = response.json()
    assert data["dispatched"] == 2
    assert sorted(data["accounts"]) == ["act_1", "act_2"]
    assert data["failed"] == ["act_2"]
    assert {str(r.url) for r in dispatched} == {"http://localhost:8000/api/cron/sync-account"}
    assert all(r.headers["Authorization"] == "Bearer test-cron-secret" for r in dispatched)
    assert {json.loads(r.content)["account_id"] for r in dispatched} == {str(first.id), str(second.id)}


@pytest.mark.anyio
async def test_dispatch_timeout_counts_as_dispatched(override, api, make_account):
    await make_account("act_1")

    def handler(request):
        raise httpx.ReadTimeout("still running", request=request)

    async def _dispatch_client():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            yield client

    override[get_dispatch_client] = _dispatch_client
    response = await api.post("/api/cron/sync", headers=CRON_HEADERS)

    assert response.json()["failed"] == []


def _empty_graph(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"data": []})


@pytest.mark.anyio
async def test_sync_account_runs_full_sync(override, api, db_session, make_account, make_meta_client):
    account = await make_account("act_1")

    async def _meta():
        yield make_meta_client(_empty_graph)

    override[get_meta_client] = _meta
    response = await api.post("/api/cron/sync-account", json={"account_id": str(account.id)}, headers=CRON_HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["ad_account_id"] == "act_1"
    assert data["success"] is True
    assert data["records_synced"] == 0
    assert data["skipped_days"] == []
    assert data["ga4_rows"] == 0

    run = await db_session.scalar(select(SyncRun).where(SyncRun.account_id == account.id))
    assert str(run.id) == data["sync_run_id"]
    assert run.status == SyncStatus.COMPLETED.value


@pytest.mark.anyio
async def test_sync_account_failure_is_500(override, api, db_session, make_account, make_meta_client, graph_error):
    account = await make_account("act_1")

    async def _meta():
        yield make_meta_client(lambda request: graph_error(190, "Error validating access token"))

    override[get_meta_client] = _meta
    response = await api.post("/api/cron/sync-account", json={"account_id": str(account.id)}, headers=CRON_HEADERS)

    assert response.status_code == 500
    run = await db_session.scalar(select(SyncRun).where(SyncRun.account_id == account.id))
    await db_session.refresh(run)
    assert run.status == SyncStatus.FAILED.value


@pytest.mark.anyio
async def test_sync_account_unknown_account(override, api, make_meta_client):
    async def _meta():
        yield make_meta_client(_empty_graph)

    override[get_meta_client] = _meta
    response = await api.post(
        "/api/cron/sync-account",
        json={"account_id": "00000000-0000-0000-0000-000000000000"},
        headers=CRON_HEADERS,
    )
    assert response.status_code == 404
