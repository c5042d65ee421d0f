"""
GA4 Service: landing-page analytics from the Google Analytics Data API.

Pulls daily page metrics for the GA4 property linked to an ad account, stores
them, and grades each landing page (ok / attention / block_traffic) from its
connect rate (GA4 sessions per Meta click) and engagement.
"""

import enum
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Mapping, Optional

from google.analytics.data_v1beta import BetaAnalyticsDataAsyncClient
from google.analytics.data_v1beta.types import DateRange, Dimension, Metric, RunReportRequest
from google.oauth2 import service_account
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adpulse.config import ConfigurationError, Settings, get_settings
from adpulse.database import upsert_statement
from adpulse.models import GA4Config, GA4PageDaily
from adpulse.utils import safe_float, safe_int, utcnow

logger = logging.getLogger(__name__)

GA4_SCOPES = ["https://www.googleapis.com/auth/analytics.readonly"]
REPORT_ROW_LIMIT = 10000
PERSIST_BATCH_SIZE = 500

DIMENSIONS = ["date", "pagePath", "sessionSource", "sessionMedium", "sessionCampaignName"]
METRICS = ["sessions", "engagedSessions", "engagementRate", "averageSessionDuration"]

# Connect rate in percent, engagement rate as a 0..1 fraction
CONNECT_RATE_OK = 70.0
CONNECT_RATE_ATTENTION = 40.0
ENGAGEMENT_RATE_OK = 0.5
ENGAGEMENT_RATE_ATTENTION = 0.3
ENGAGED_RATIO_ATTENTION = 0.3


class PageStatus(str, enum.Enum):
    OK = "ok"
    ATTENTION = "attention"
    BLOCK_TRAFFIC = "block_traffic"


@dataclass
class GA4PageRow:
    date: date
    page_path: str
    source: str
    medium: str
    campaign: str
    sessions: int = 0
    engaged_sessions: int = 0
    engagement_rate: float = 0.0
    avg_engagement_time: float = 0.0


@dataclass
class PageSummary:
    page_path: str
    sessions: int
    engaged_sessions: int
    engagement_rate: float
    avg_engagement_time: float
    connect_rate: Optional[float]
    status: PageStatus
    reason: str


def create_ga4_client(settings: Optional[Settings] = None) -> BetaAnalyticsDataAsyncClient:
    """Data API client authenticated with the service account JSON from settings."""
    settings = settings or get_settings()
    if not settings.ga4_service_account_json:
        raise ConfigurationError("GA4_SERVICE_ACCOUNT_JSON must be set to sync GA4 data")
    try:
        info = json.loads(settings.ga4_service_account_json)
    except ValueError as e:
        raise ConfigurationError(f"GA4_SERVICE_ACCOUNT_JSON is not valid JSON: {e}") from e
    credentials = service_account.Credentials.from_service_account_info(info, scopes=GA4_SCOPES)
    return BetaAnalyticsDataAsyncClient(credentials=credentials)


def _parse_ga4_date(value: str) -> date:
    # GA4 reports dates as YYYYMMDD
    return datetime.strptime(value, "%Y%m%d").date()


def compute_page_status(
    connect_rate: Optional[float],
    engagement_rate: float,
    sessions: int,
    engaged_sessions: int,
) -> tuple[PageStatus, str]:
    """Grade a landing page. Connect rate dominates; conversions are deliberately ignored."""
    if connect_rate is not None:
        if connect_rate < CONNECT_RATE_ATTENTION:
            return PageStatus.BLOCK_TRAFFIC, f"Critical connect rate: {connect_rate:.1f}% (< 40%)"
        if connect_rate < CONNECT_RATE_OK:
            return PageStatus.ATTENTION, f"Low connect rate: {connect_rate:.1f}% (40-70%)"

    if engagement_rate < ENGAGEMENT_RATE_ATTENTION:
        return PageStatus.BLOCK_TRAFFIC, f"Critical engagement rate: {engagement_rate * 100:.1f}% (< 30%)"
    if engagement_rate < ENGAGEMENT_RATE_OK:
        return PageStatus.ATTENTION, f"Low engagement rate: {engagement_rate * 100:.1f}% (30-50%)"

    if sessions > 0:
        engaged_ratio = engaged_sessions / sessions
        if engaged_ratio < ENGAGED_RATIO_ATTENTION:
            return PageStatus.ATTENTION, f"Few engaged sessions: {engaged_ratio * 100:.0f}%"

    return PageStatus.OK, "Metrics within expected range"


def aggregate_by_page(
    rows: list[GA4PageRow],
    clicks_by_page: Optional[Mapping[str, int]] = None,
) -> list[PageSummary]:
    """
    Collapse rows to one summary per page path. Rates are session-weighted;
    connect rate is sessions / Meta clicks x 100 when clicks are known.
    Sorted by sessions, busiest first.
    """
    totals: dict[str, dict] = {}
    for r in rows:
        agg = totals.setdefault(r.page_path, {"sessions": 0, "engaged": 0, "rate_sum": 0.0, "time_sum": 0.0})
        agg["sessions"] += r.sessions
        agg["engaged"] += r.engaged_sessions
        agg["rate_sum"] += r.engagement_rate * r.sessions
        agg["time_sum"] += r.avg_engagement_time * r.sessions

    summaries = []
    for page_path, agg in totals.items():
        sessions = agg["sessions"]
        engagement_rate = agg["rate_sum"] / sessions if sessions > 0 else 0.0
        avg_time = agg["time_sum"] / sessions if sessions > 0 else 0.0

        clicks = (clicks_by_page or {}).get(page_path)
        connect_rate = sessions / clicks * 100 if clicks else None

        status, reason = compute_page_status(connect_rate, engagement_rate, sessions, agg["engaged"])
        summaries.append(PageSummary(
            page_path=page_path,
            sessions=sessions,
            engaged_sessions=agg["engaged"],
            engagement_rate=engagement_rate,
            avg_engagement_time=avg_time,
            connect_rate=connect_rate,
            status=status,
            reason=reason,
        ))

    summaries.sort(key=lambda s: s.sessions, reverse=True)
    return summaries


class GA4Service:
    def __init__(self, db: AsyncSession, client: BetaAnalyticsDataAsyncClient):
        self.db = db
        self.client = client

    async def fetch_page_metrics(self, property_id: str, start: date, end: date) -> list[GA4PageRow]:
        request = RunReportRequest(
            property=f"properties/{property_id}",
            date_ranges=[DateRange(start_date=start.isoformat(), end_date=end.isoformat())],
            dimensions=[Dimension(name=name) for name in DIMENSIONS],
            metrics=[Metric(name=name) for name in METRICS],
            keep_empty_rows=False,
            limit=REPORT_ROW_LIMIT,
        )
        response = await self.client.run_report(request=request)

        rows = []
        for row in response.rows:
            dims = [d.value for d in row.dimension_values]
            mets = [m.value for m in row.metric_values]
            rows.append(GA4PageRow(
                date=_parse_ga4_date(dims[0]),
                page_path=dims[1],
                source=dims[2] or "(direct)",
                medium=dims[3] or "(none)",
                campaign=dims[4] or "(not set)",
                sessions=safe_int(mets[0]),
                engaged_sessions=safe_int(mets[1]),
                engagement_rate=safe_float(mets[2]),
                avg_engagement_time=safe_float(mets[3]),
            ))
        logger.info(f"[GA4] property {property_id}: {len(rows)} rows for {start} → {end}")
        return rows

    async def persist_page_rows(self, account_id: uuid.UUID, rows: list[GA4PageRow]) -> int:
        now = utcnow()
        records = [
            {
                "id": uuid.uuid4(),
                "account_id": account_id,
                "date": r.date,
                "page_path": r.page_path,
                "source": r.source,
                "medium": r.medium,
                "campaign": r.campaign,
                "sessions": r.sessions,
                "engaged_sessions": r.engaged_sessions,
                "engagement_rate": r.engagement_rate,
                "avg_engagement_time": r.avg_engagement_time,
                "synced_at": now,
            }
            for r in rows
        ]
        # One statement may not touch the same key twice; last row wins
        records = list({
            (r["date"], r["page_path"], r["source"], r["medium"], r["campaign"]): r for r in records
        }.values())
        for i in range(0, len(records), PERSIST_BATCH_SIZE):
            await self.db.execute(upsert_statement(
                self.db,
                GA4PageDaily,
                records[i:i + PERSIST_BATCH_SIZE],
                ["account_id", "date", "page_path", "source", "medium", "campaign"],
                ["sessions", "engaged_sessions", "engagement_rate", "avg_engagement_time", "synced_at"],
            ))
        await self.db.flush()
        return len(records)

    async def sync_account(self, account_id: uuid.UUID, start: date, end: date) -> int:
        """Fetch and store page metrics for the account's GA4 property. 0 when none is linked."""
        result = await self.db.execute(
            select(GA4Config).where(GA4Config.account_id == account_id, GA4Config.is_active.is_(True))
        )
        config = result.scalar_one_or_none()
        if config is None:
            return 0
        rows = await self.fetch_page_metrics(config.property_id, start, end)
        return await self.persist_page_rows(account_id, rows)
