"""
Alert Service: scans today's synced metrics for anomalies.

Rules:
  no_conversions  spend above threshold with zero conversions today
  ctr_fatigue     today's CTR dropped more than N% below the trailing 7-day CTR

At most one unresolved alert per (account, ad, type) is created per day.
"""

import logging
import uuid
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from adpulse.config import Settings, get_settings
from adpulse.models import Alert, AlertSeverity, AlertType, DailyMetricRow
from adpulse.services.date_ranges import DEFAULT_TIMEZONE, local_day_start_utc, local_today

logger = logging.getLogger(__name__)

HISTORY_DAYS = 7


class AlertService:
    def __init__(
        self,
        db: AsyncSession,
        spend_threshold: float = 50.0,
        ctr_drop_threshold: float = 30.0,
        ctr_critical_drop: float = 50.0,
        min_impressions: int = 100,
        min_history_days: int = 3,
        currency_symbol: str = "$",
        timezone: str = DEFAULT_TIMEZONE,
    ):
        self.db = db
        self.spend_threshold = spend_threshold
        self.ctr_drop_threshold = ctr_drop_threshold
        self.ctr_critical_drop = ctr_critical_drop
        self.min_impressions = min_impressions
        self.min_history_days = min_history_days
        self.currency_symbol = currency_symbol
        self.timezone = timezone

    @classmethod
    def from_settings(cls, db: AsyncSession, settings: Optional[Settings] = None) -> "AlertService":
        settings = settings or get_settings()
        return cls(
            db,
            spend_threshold=settings.alert_spend_threshold,
            ctr_drop_threshold=settings.alert_ctr_drop_pct,
            ctr_critical_drop=settings.alert_ctr_critical_drop_pct,
            min_impressions=settings.alert_min_impressions,
            currency_symbol=settings.currency_symbol,
            timezone=settings.report_timezone,
        )

    async def detect(self, account_id: uuid.UUID, today: Optional[date] = None) -> int:
        """Run both rules for ``today`` (reporting-timezone date by default). Returns alerts created."""
        today = today or local_today(self.timezone)
        created = 0
        created += await self._check_no_conversions(account_id, today)
        created += await self._check_ctr_fatigue(account_id, today)
        await self.db.flush()
        if created:
            logger.info(f"[Alerts] {created} alert(s) created for account {account_id}")
        return created

    async def _check_no_conversions(self, account_id: uuid.UUID, today: date) -> int:
        m = DailyMetricRow
        result = await self.db.execute(
            select(m.ad_id, m.spend).where(
                m.account_id == account_id,
                m.date == today,
                m.spend > self.spend_threshold,
                m.conversions == 0,
            )
        )
        created = 0
        for ad_id, spend in result.all():
            if await self._already_alerted(account_id, ad_id, AlertType.NO_CONVERSIONS, today):
                continue
            severity = AlertSeverity.CRITICAL if spend > self.spend_threshold * 2 else AlertSeverity.WARNING
            self.db.add(Alert(
                account_id=account_id,
                ad_id=ad_id,
                alert_type=AlertType.NO_CONVERSIONS.value,
                severity=severity.value,
                message=f"Ad spent {self.currency_symbol}{spend:.2f} today with no conversions.",
            ))
            created += 1
        return created

    async def _check_ctr_fatigue(self, account_id: uuid.UUID, today: date) -> int:
        m = DailyMetricRow
        result = await self.db.execute(
            select(m.ad_id, m.impressions, m.clicks).where(
                m.account_id == account_id,
                m.date == today,
                m.impressions > self.min_impressions,
            )
        )
        created = 0
        for ad_id, impressions, clicks in result.all():
            today_ctr = clicks / impressions * 100 if impressions > 0 else 0.0
            avg_ctr = await self._trailing_ctr(account_id, ad_id, today)
            if not avg_ctr:
                continue

            drop_pct = (avg_ctr - today_ctr) / avg_ctr * 100
            if drop_pct <= self.ctr_drop_threshold:
                continue
            if await self._already_alerted(account_id, ad_id, AlertType.CTR_FATIGUE, today):
                continue

            severity = AlertSeverity.CRITICAL if drop_pct > self.ctr_critical_drop else AlertSeverity.WARNING
            self.db.add(Alert(
                account_id=account_id,
                ad_id=ad_id,
                alert_type=AlertType.CTR_FATIGUE.value,
                severity=severity.value,
                message=(
                    f"CTR dropped {drop_pct:.1f}% vs the last {HISTORY_DAYS} days "
                    f"({avg_ctr:.2f}% -> {today_ctr:.2f}%). Possible creative fatigue."
                ),
            ))
            created += 1
        return created

    async def _trailing_ctr(self, account_id: uuid.UUID, ad_id: str, today: date) -> Optional[float]:
        """CTR over [today-7, today), or None with fewer than min_history_days rows."""
        m = DailyMetricRow
        result = await self.db.execute(
            select(
                func.count(m.id),
                func.coalesce(func.sum(m.impressions), 0),
                func.coalesce(func.sum(m.clicks), 0),
            ).where(
                m.account_id == account_id,
                m.ad_id == ad_id,
                m.date >= today - timedelta(days=HISTORY_DAYS),
                m.date < today,
            )
        )
        days, impressions, clicks = result.one()
        if days < self.min_history_days or not impressions:
            return None
        return clicks / impressions * 100

    async def _already_alerted(self, account_id: uuid.UUID, ad_id: str, alert_type: AlertType, today: date) -> bool:
        day_start = local_day_start_utc(today, self.timezone)
        result = await self.db.execute(
            select(Alert.id).where(
                Alert.account_id == account_id,
                Alert.ad_id == ad_id,
                Alert.alert_type == alert_type.value,
                Alert.created_at >= day_start,
                Alert.resolved_at.is_(None),
            ).limit(1)
        )
        return result.first() is not None

    async def list_unresolved(self, account_id: uuid.UUID) -> list[Alert]:
        result = await self.db.execute(
            select(Alert)
            .where(Alert.account_id == account_id, Alert.resolved_at.is_(None))
            .order_by(Alert.created_at.desc())
        )
        return list(result.scalars().all())
