"""
Creative Service: loads aggregated creative metrics, settings and overrides
from the database and runs them through the decision engine.
"""

import logging
import uuid
from dataclasses import replace
from datetime import date
from typing import Optional

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from adpulse.config import Settings, get_settings
from adpulse.models import AccountSettings, Campaign, Creative, DailyMetricRow, StatusOverride
from adpulse.services.decision_engine import (
    CreativeDecision, CreativeMetrics, DecisionSettings,
    apply_decisions, campaign_type_for_objective, decide_single,
)

logger = logging.getLogger(__name__)


async def load_creative_metrics(
    db: AsyncSession,
    account_id: uuid.UUID,
    date_start: date,
    date_end: date,
    ad_id: Optional[str] = None,
    active_only: bool = True,
) -> list[CreativeMetrics]:
    """
    Sum daily metrics per ad over [date_start, date_end], joined with the ad's
    name and campaign. Only ads with impressions are returned; frequency is
    the mean of the daily frequency values.
    """
    m = DailyMetricRow
    stmt = (
        select(
            m.ad_id,
            func.sum(m.impressions).label("impressions"),
            func.sum(m.clicks).label("clicks"),
            func.sum(m.spend).label("spend"),
            func.sum(m.conversions).label("conversions"),
            func.sum(m.conversion_value).label("conversion_value"),
            func.avg(m.frequency).label("frequency"),
            Creative.name,
            Creative.status,
            Creative.thumbnail_url,
            Creative.format,
            Creative.campaign_id,
            Campaign.name.label("campaign_name"),
            Campaign.objective,
        )
        .join(Creative, and_(Creative.account_id == m.account_id, Creative.ad_id == m.ad_id))
        .outerjoin(Campaign, and_(Campaign.account_id == m.account_id, Campaign.campaign_id == Creative.campaign_id))
        .where(m.account_id == account_id, m.date >= date_start, m.date <= date_end)
        .group_by(
            m.ad_id, Creative.name, Creative.status, Creative.thumbnail_url, Creative.format,
            Creative.campaign_id, Campaign.name, Campaign.objective,
        )
        .having(func.sum(m.impressions) > 0)
        .order_by(func.sum(m.spend).desc())
    )
    if active_only:
        stmt = stmt.where(Creative.status == "ACTIVE")
    if ad_id:
        stmt = stmt.where(m.ad_id == ad_id)

    result = await db.execute(stmt)
    creatives = []
    for row in result.all():
        creatives.append(CreativeMetrics(
            ad_id=row.ad_id,
            name=row.name or row.ad_id,
            campaign_id=row.campaign_id or "",
            campaign_name=row.campaign_name or "",
            campaign_type=campaign_type_for_objective(row.objective),
            status=row.status or "UNKNOWN",
            thumbnail_url=row.thumbnail_url,
            format=row.format or "unknown",
            impressions=int(row.impressions or 0),
            clicks=int(row.clicks or 0),
            spend=float(row.spend or 0),
            conversions=int(row.conversions or 0),
            conversion_value=float(row.conversion_value or 0),
            frequency=round(float(row.frequency), 2) if row.frequency else 0.0,
        ))
    return creatives


async def load_decision_settings(
    db: AsyncSession, account_id: uuid.UUID, settings: Optional[Settings] = None
) -> DecisionSettings:
    """Application defaults with any per-account values layered on top."""
    defaults = DecisionSettings.from_settings(settings or get_settings())
    result = await db.execute(select(AccountSettings).where(AccountSettings.account_id == account_id))
    row = result.scalar_one_or_none()
    if row is None:
        return defaults

    overrides = {
        name: getattr(row, name)
        for name in (
            "cpa_target", "cpl_target", "ctr_benchmark", "min_spend",
            "frequency_warn", "frequency_kill", "cost_kill_multiplier", "currency_symbol",
        )
        if getattr(row, name) is not None
    }
    return replace(defaults, **overrides)


async def load_overrides(db: AsyncSession, account_id: uuid.UUID) -> tuple[dict[str, str], dict[str, str]]:
    """Return (ad_id → forced status, ad_id → note)."""
    result = await db.execute(select(StatusOverride).where(StatusOverride.account_id == account_id))
    forced: dict[str, str] = {}
    notes: dict[str, str] = {}
    for o in result.scalars().all():
        forced[o.ad_id] = o.forced_status
        if o.note:
            notes[o.ad_id] = o.note
    return forced, notes


async def classify_account(
    db: AsyncSession,
    account_id: uuid.UUID,
    date_start: date,
    date_end: date,
    settings: Optional[Settings] = None,
) -> list[CreativeDecision]:
    creatives = await load_creative_metrics(db, account_id, date_start, date_end)
    decision_settings = await load_decision_settings(db, account_id, settings)
    forced, notes = await load_overrides(db, account_id)
    return apply_decisions(creatives, decision_settings, forced, notes)


async def classify_one(
    db: AsyncSession,
    account_id: uuid.UUID,
    ad_id: str,
    date_start: date,
    date_end: date,
    settings: Optional[Settings] = None,
) -> Optional[CreativeDecision]:
    """Classify one ad against its account's benchmark. None when the ad has no impressions in range."""
    account_creatives = await load_creative_metrics(db, account_id, date_start, date_end)
    target = next((c for c in account_creatives if c.ad_id == ad_id), None)
    if target is None:
        # Paused ads still get a detail view
        matches = await load_creative_metrics(db, account_id, date_start, date_end, ad_id=ad_id, active_only=False)
        if not matches:
            return None
        target = matches[0]
    decision_settings = await load_decision_settings(db, account_id, settings)
    forced, notes = await load_overrides(db, account_id)
    return decide_single(target, account_creatives, decision_settings, forced, notes)
