"""
Cron / Scheduled Jobs: endpoints for an external scheduler.

POST /api/cron/sync is the dispatcher: it lists active accounts and fires one
POST /api/cron/sync-account per account, so each account syncs in its own
request and a slow or failing account never blocks the others.

Both endpoints require the CRON_SECRET:
  X-Cron-Secret: <CRON_SECRET>   or   Authorization: Bearer <CRON_SECRET>
"""

import asyncio
import logging
import uuid
from typing import AsyncIterator

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adpulse.config import get_settings
from adpulse.database import get_db
from adpulse.meta_client import MetaApiClient, create_meta_client
from adpulse.models import Account, AccountStatus, GA4Config
from adpulse.services.alert_service import AlertService
from adpulse.services.date_ranges import resolve_date_range
from adpulse.services.ga4_service import GA4Service, create_ga4_client
from adpulse.services.sync_service import SyncService
from adpulse.utils import safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])

# The dispatcher only needs the request delivered, not the sync finished
DISPATCH_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


class SyncAccountRequest(BaseModel):
    account_id: uuid.UUID


async def _require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    """Verify request came from the scheduler with a valid secret."""
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    # Accept X-Cron-Secret header or Bearer token
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if token != secret:
        raise HTTPException(401, "Invalid cron secret")


async def get_meta_client() -> AsyncIterator[MetaApiClient]:
    async with create_meta_client() as client:
        yield client


async def get_dispatch_client() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(timeout=DISPATCH_TIMEOUT) as client:
        yield client


async def _dispatch_one(client: httpx.AsyncClient, url: str, secret: str, account: Account) -> bool:
    try:
        response = await client.post(
            url,
            json={"account_id": str(account.id)},
            headers={"Authorization": f"Bearer {secret}"},
        )
    except httpx.TimeoutException:
        # Request was delivered; the account sync is still running
        return True
    except httpx.HTTPError as e:
        logger.error(f"[Cron] Failed to dispatch {account.ad_account_id}: {e!r}")
        return False
    if response.status_code >= 400:
        logger.error(f"[Cron] Sync for {account.ad_account_id} returned HTTP {response.status_code}")
        return False
    return True


@router.post("/sync")
async def cron_sync(
    _: None = Depends(_require_cron_secret),
    db: AsyncSession = Depends(get_db),
    client: httpx.AsyncClient = Depends(get_dispatch_client),
):
    """
    Scheduled sync dispatcher:
    POST https://your-app/api/cron/sync
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    settings = get_settings()
    result = await db.execute(select(Account).where(Account.status == AccountStatus.ACTIVE.value))
    accounts = list(result.scalars().all())
    if not accounts:
        return {"message": "No active accounts", "dispatched": 0}

    url = f"{settings.public_url.rstrip('/')}/api/cron/sync-account"
    outcomes = await asyncio.gather(
        *(_dispatch_one(client, url, settings.cron_secret, a) for a in accounts)
    )
    failed = [a.ad_account_id for a, ok in zip(accounts, outcomes) if not ok]
    logger.info(f"[Cron] Dispatched {len(accounts)} account sync(s), {len(failed)} failed")
    return {
        "dispatched": len(accounts),
        "accounts": [a.ad_account_id for a in accounts],
        "failed": failed,
    }


@router.post("/sync-account")
async def cron_sync_account(
    body: SyncAccountRequest,
    _: None = Depends(_require_cron_secret),
    db: AsyncSession = Depends(get_db),
    meta: MetaApiClient = Depends(get_meta_client),
):
    """Full sync of one account for the lookback window, then alerts, then GA4 for yesterday."""
    settings = get_settings()
    account = await db.get(Account, body.account_id)
    if account is None:
        raise HTTPException(404, f"Account {body.account_id} not found")
    ad_account_id = account.ad_account_id

    date_start, date_end = resolve_date_range(settings.sync_lookback_days, settings.report_timezone)
    try:
        sync = await SyncService(db, meta, settings).run_full_sync(
            account.id, account.access_token, account.conversion_event, date_start, date_end
        )
        alerts = await AlertService.from_settings(db, settings).detect(account.id)
        await db.commit()
    except Exception as e:
        raise HTTPException(500, safe_error_detail(e, f"Sync failed for {ad_account_id}"))

    ga4_rows = 0
    has_ga4 = await db.scalar(select(GA4Config.id).where(GA4Config.account_id == account.id))
    if has_ga4:
        yesterday, _ = resolve_date_range("yesterday", settings.report_timezone)
        try:
            ga4 = GA4Service(db, create_ga4_client(settings))
            ga4_rows = await ga4.sync_account(account.id, yesterday, yesterday)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.warning(f"[Cron] GA4 sync skipped for {ad_account_id}: {e!r}")

    return {
        "ad_account_id": ad_account_id,
        "success": True,
        "sync_run_id": str(sync.sync_run_id),
        "records_synced": sync.structure.total + sync.metric_rows,
        "skipped_days": [d.isoformat() for d in sync.skipped_days],
        "alerts_created": alerts,
        "ga4_rows": ga4_rows,
    }
