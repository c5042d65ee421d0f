"""
Creatives Router: decision views over synced data, plus sync-run and alert history.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adpulse.config import get_settings
from adpulse.database import get_db
from adpulse.models import Account, SyncRun
from adpulse.services.alert_service import AlertService
from adpulse.services.creative_service import classify_account, classify_one
from adpulse.services.date_ranges import resolve_date_range
from adpulse.services.decision_engine import account_benchmark_ctr
from adpulse.utils import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_RANGE_DAYS = 7


async def _get_account(db: AsyncSession, account_id: str) -> Account:
    account = await db.get(Account, parse_uuid(account_id, "account_id"))
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return account


def _range(date_start: Optional[date], date_end: Optional[date]) -> tuple[date, date]:
    default_start, default_end = resolve_date_range(DEFAULT_RANGE_DAYS, get_settings().report_timezone)
    start = date_start or default_start
    end = date_end or default_end
    if start > end:
        raise HTTPException(status_code=400, detail="date_start must be on or before date_end")
    return start, end


@router.get("/{account_id}/creatives")
async def list_creatives(
    account_id: str,
    date_start: Optional[date] = Query(None),
    date_end: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Every active creative with impressions in range, classified against the account CTR."""
    account = await _get_account(db, account_id)
    start, end = _range(date_start, date_end)
    decisions = await classify_account(db, account.id, start, end)
    return {
        "account_id": str(account.id),
        "ad_account_id": account.ad_account_id,
        "date_start": start.isoformat(),
        "date_end": end.isoformat(),
        "benchmark_ctr": round(account_benchmark_ctr(d.creative for d in decisions), 4),
        "creatives": [d.to_dict() for d in decisions],
    }


@router.get("/{account_id}/creatives/{ad_id}")
async def get_creative(
    account_id: str,
    ad_id: str,
    date_start: Optional[date] = Query(None),
    date_end: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    account = await _get_account(db, account_id)
    start, end = _range(date_start, date_end)
    decision = await classify_one(db, account.id, ad_id, start, end)
    if decision is None:
        raise HTTPException(status_code=404, detail=f"No metrics for ad {ad_id} in range")
    return decision.to_dict()


@router.get("/{account_id}/sync-runs")
async def list_sync_runs(
    account_id: str,
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    account = await _get_account(db, account_id)
    result = await db.execute(
        select(SyncRun)
        .where(SyncRun.account_id == account.id)
        .order_by(SyncRun.started_at.desc())
        .limit(limit)
    )
    return [
        {
            "id": str(r.id),
            "kind": r.kind,
            "status": r.status,
            "started_at": r.started_at.isoformat() if r.started_at else None,
            "completed_at": r.completed_at.isoformat() if r.completed_at else None,
            "records_synced": r.records_synced,
            "error_message": r.error_message,
        }
        for r in result.scalars().all()
    ]


@router.get("/{account_id}/alerts")
async def list_alerts(account_id: str, db: AsyncSession = Depends(get_db)):
    """Unresolved alerts, newest first."""
    account = await _get_account(db, account_id)
    alerts = await AlertService(db).list_unresolved(account.id)
    return [
        {
            "id": str(a.id),
            "ad_id": a.ad_id,
            "type": a.alert_type,
            "severity": a.severity,
            "message": a.message,
            "created_at": a.created_at.isoformat() if a.created_at else None,
        }
        for a in alerts
    ]
