"""
Sync Service: mirrors Meta structure and daily ad metrics into the database.

A full sync refreshes the token if needed, records a SyncRun, syncs
campaigns / ad sets / ads, then pulls ad-level daily insights in 3-day
windows (falling back to single days when Meta says the result is too large).
All writes are upserts on natural keys, so re-running a sync is idempotent.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from adpulse.config import Settings, get_settings
from adpulse.crypto import decrypt_token
from adpulse.database import upsert_statement
from adpulse.meta_client import MetaApiClient, MetaApiError
from adpulse.models import (
    Account, AdGroup, Campaign, Creative, CreativeFormat, CreativePageLink,
    DailyMetricRow, SyncKind, SyncRun, SyncStatus,
)
from adpulse.services.date_ranges import (
    FALLBACK_CHUNK_DAYS, METRICS_CHUNK_DAYS, DateChunk, DateLike, split_date_range,
)
from adpulse.services.token_service import get_account, refresh_if_expiring_soon
from adpulse.utils import safe_float, safe_int, utcnow

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 100

CAMPAIGN_FIELDS = "id,name,objective,status"
ADSET_FIELDS = "id,campaign_id,name,optimization_goal,billing_event,status"

FULL_AD_FIELDS = (
    "id,adset_id,campaign_id,name,status,"
    "creative{id,thumbnail_url,image_url,body,title,call_to_action_type,"
    "object_type,object_url,link_url,object_story_spec},preview_shareable_link"
)
LIGHT_AD_FIELDS = (
    "id,adset_id,campaign_id,name,status,"
    "creative{id,thumbnail_url,image_url,body,title,call_to_action_type,"
    "object_type,object_url,link_url},preview_shareable_link"
)
MINIMAL_AD_FIELDS = "id,adset_id,campaign_id,name,status"

AD_STATUS_FILTER = ["ACTIVE", "PAUSED", "CAMPAIGN_PAUSED", "ADSET_PAUSED"]
MINIMAL_STATUS_FILTER = ["ACTIVE", "PAUSED"]

INSIGHT_FIELDS = "ad_id,impressions,clicks,spend,cpm,cpc,ctr,frequency,reach,actions,action_values"

# Graph API "invalid parameter"; returned for oversized insights windows
INVALID_PARAMETER_CODE = 100


@dataclass
class StructureCounts:
    campaigns: int = 0
    adsets: int = 0
    ads: int = 0

    @property
    def total(self) -> int:
        return self.campaigns + self.adsets + self.ads


@dataclass
class SyncResult:
    structure: StructureCounts
    metric_rows: int
    skipped_days: list[date] = field(default_factory=list)
    sync_run_id: Optional[uuid.UUID] = None


# ── Pure helpers ──────────────────────────────────────────────────────

def detect_format(object_type: Optional[str]) -> str:
    if not object_type:
        return CreativeFormat.UNKNOWN.value
    lower = object_type.lower()
    if "video" in lower:
        return CreativeFormat.VIDEO.value
    if "photo" in lower or "image" in lower or "link" in lower:
        return CreativeFormat.IMAGE.value
    if "carousel" in lower or "multi" in lower:
        return CreativeFormat.CAROUSEL.value
    return CreativeFormat.UNKNOWN.value


def _is_http_url(value: Any) -> bool:
    if not value or not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def extract_landing_page_url(ad: dict) -> Optional[str]:
    """First http(s) URL among the creative's link fields, most reliable first."""
    creative = ad.get("creative") or {}
    if not creative:
        return None
    story = creative.get("object_story_spec") or {}
    video_cta = ((story.get("video_data") or {}).get("call_to_action") or {}).get("value") or {}
    candidates = (
        creative.get("object_url"),
        creative.get("link_url"),
        (story.get("link_data") or {}).get("link"),
        video_cta.get("link"),
    )
    for url in candidates:
        if _is_http_url(url):
            return url
    return None


def extract_action_value(actions: Optional[list[dict]], conversion_event: str) -> Optional[str]:
    """
    Raw value of the action that counts as a conversion.

    Exact ``action_type`` match first; otherwise the first action whose type
    contains the event name at the end of the signal ("purchase" for
    "offsite_conversion.fb_pixel_purchase", so both "purchase" and
    "omni_purchase" count).
    """
    if not actions:
        return None
    for action in actions:
        if action.get("action_type") == conversion_event:
            return action.get("value")

    segment = conversion_event.rsplit(".", 1)[-1] or conversion_event
    event_name = segment.rsplit("_", 1)[-1] or segment
    for action in actions:
        if event_name in (action.get("action_type") or ""):
            return action.get("value")
    return None


def extract_conversions(actions: Optional[list[dict]], conversion_event: str) -> int:
    return safe_int(extract_action_value(actions, conversion_event))


def extract_conversion_value(action_values: Optional[list[dict]], conversion_event: str) -> float:
    return safe_float(extract_action_value(action_values, conversion_event))


def derive_frequency(frequency: Any, impressions: Any, reach: Any) -> Optional[float]:
    """Meta's frequency when present, else impressions / reach."""
    value = safe_float(frequency, default=None)
    if value is not None:
        return value
    reach_n = safe_int(reach)
    if reach_n > 0:
        return safe_int(impressions) / reach_n
    return None


def build_metric_row(account_id: uuid.UUID, insight: dict, conversion_event: str) -> dict:
    return {
        "id": uuid.uuid4(),
        "account_id": account_id,
        "ad_id": insight["ad_id"],
        "date": date.fromisoformat(insight["date_start"]),
        "impressions": safe_int(insight.get("impressions")),
        "clicks": safe_int(insight.get("clicks")),
        "spend": safe_float(insight.get("spend")),
        "conversions": extract_conversions(insight.get("actions"), conversion_event),
        "conversion_value": extract_conversion_value(insight.get("action_values"), conversion_event),
        "cpm": safe_float(insight.get("cpm"), default=None),
        "cpc": safe_float(insight.get("cpc"), default=None),
        "ctr": safe_float(insight.get("ctr"), default=None),
        "reach": safe_int(insight["reach"]) if insight.get("reach") else None,
        "frequency": derive_frequency(insight.get("frequency"), insight.get("impressions"), insight.get("reach")),
        "synced_at": utcnow(),
    }


def _status_filter(statuses: list[str]) -> str:
    return json.dumps([{"field": "effective_status", "operator": "IN", "value": statuses}])


def _batches(rows: list[dict], size: int = UPSERT_BATCH_SIZE):
    for i in range(0, len(rows), size):
        yield rows[i:i + size]


# ── Service ───────────────────────────────────────────────────────────

class SyncService:
    """Structure and metrics sync for one account, bound to a session and a Meta client."""

    def __init__(self, db: AsyncSession, client: MetaApiClient, settings: Optional[Settings] = None):
        self.db = db
        self.client = client
        self.settings = settings or get_settings()

    async def run_full_sync(
        self,
        account_id: uuid.UUID,
        encrypted_token: str,
        conversion_event: Optional[str],
        date_start: DateLike,
        date_end: DateLike,
    ) -> SyncResult:
        account = await get_account(self.db, account_id)
        ad_account_id = account.ad_account_id
        conversion_event = conversion_event or account.conversion_event or self.settings.default_conversion_event

        run = SyncRun(account_id=account_id, kind=SyncKind.FULL.value, status=SyncStatus.RUNNING.value)
        self.db.add(run)
        await self.db.commit()
        run_id = run.id
        logger.info(f"[Sync] Full sync started for {ad_account_id} ({date_start} → {date_end}), run {run_id}")

        try:
            encrypted_token = await refresh_if_expiring_soon(
                self.db,
                self.client,
                account_id,
                encrypted_token,
                threshold_days=self.settings.token_refresh_threshold_days,
                settings=self.settings,
            )
            await self.db.commit()
            token = decrypt_token(encrypted_token)
            structure = await self.sync_structure(account, token)
            metric_rows, skipped_days = await self.sync_daily_metrics(
                account, token, date_start, date_end, conversion_event
            )
        except Exception as e:
            await self.db.rollback()
            await self._finish_run(run_id, SyncStatus.FAILED, error_message=str(e) or repr(e))
            logger.error(f"[Sync] Full sync failed for {ad_account_id}: {e!r}")
            raise

        error_message = None
        if skipped_days:
            error_message = "Skipped days after fallback: " + ", ".join(d.isoformat() for d in skipped_days)
        await self._finish_run(
            run_id,
            SyncStatus.COMPLETED,
            records_synced=structure.total + metric_rows,
            error_message=error_message,
        )
        logger.info(
            f"[Sync] Full sync completed for {ad_account_id}: {structure.campaigns} campaigns, "
            f"{structure.adsets} ad sets, {structure.ads} ads, {metric_rows} metric rows"
        )
        return SyncResult(structure=structure, metric_rows=metric_rows, skipped_days=skipped_days, sync_run_id=run_id)

    async def _finish_run(
        self,
        run_id: uuid.UUID,
        status: SyncStatus,
        records_synced: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        values: dict[str, Any] = {"status": status.value, "completed_at": utcnow(), "error_message": error_message}
        if records_synced is not None:
            values["records_synced"] = records_synced
        await self.db.execute(update(SyncRun).where(SyncRun.id == run_id).values(**values))
        await self.db.commit()

    # ── Structure ────────────────────────────────────────────────────

    async def sync_structure(self, account: Account, token: str) -> StructureCounts:
        """Upsert campaigns, ad sets and ads. ``token`` is the plaintext access token."""
        ad_account_id = account.ad_account_id
        now = utcnow()

        campaigns = await self.client.call_all_pages(
            f"{ad_account_id}/campaigns", token, {"fields": CAMPAIGN_FIELDS}
        )
        campaign_count = await self._upsert(
            Campaign,
            [
                {
                    "id": uuid.uuid4(),
                    "account_id": account.id,
                    "campaign_id": c["id"],
                    "name": c.get("name") or "",
                    "objective": c.get("objective"),
                    "status": c.get("status") or "UNKNOWN",
                    "synced_at": now,
                }
                for c in campaigns
            ],
            ["account_id", "campaign_id"],
            ["name", "objective", "status", "synced_at"],
        )

        adsets = await self.client.call_all_pages(
            f"{ad_account_id}/adsets", token, {"fields": ADSET_FIELDS}
        )
        adset_count = await self._upsert(
            AdGroup,
            [
                {
                    "id": uuid.uuid4(),
                    "account_id": account.id,
                    "adset_id": a["id"],
                    "campaign_id": a.get("campaign_id") or "",
                    "name": a.get("name") or "",
                    "optimization_goal": a.get("optimization_goal"),
                    "billing_event": a.get("billing_event"),
                    "status": a.get("status") or "UNKNOWN",
                    "synced_at": now,
                }
                for a in adsets
            ],
            ["account_id", "adset_id"],
            ["campaign_id", "name", "optimization_goal", "billing_event", "status", "synced_at"],
        )

        ads = await self._fetch_ads(ad_account_id, token)
        ad_rows = [self._creative_row(account.id, ad, now) for ad in ads]
        ad_count = await self._upsert(
            Creative,
            ad_rows,
            ["account_id", "ad_id"],
            [
                "adset_id", "campaign_id", "name", "status", "creative_id", "preview_url",
                "thumbnail_url", "format", "primary_text", "headline", "cta", "synced_at",
            ],
        )
        await self._backfill_thumbnails(account, token, ad_rows)

        page_links = []
        for ad in ads:
            url = extract_landing_page_url(ad)
            if url:
                page_links.append({
                    "id": uuid.uuid4(),
                    "account_id": account.id,
                    "ad_id": ad["id"],
                    "page_url": url,
                    "created_at": now,
                })
        await self._upsert(
            CreativePageLink, page_links, ["account_id", "ad_id", "page_url"], ["page_url"]
        )

        await self.db.commit()
        return StructureCounts(campaigns=campaign_count, adsets=adset_count, ads=ad_count)

    async def _fetch_ads(self, ad_account_id: str, token: str) -> list[dict]:
        """List ads, shedding fields while Meta reports the response is too large."""
        attempts = (
            (FULL_AD_FIELDS, AD_STATUS_FILTER),
            (LIGHT_AD_FIELDS, AD_STATUS_FILTER),
            (MINIMAL_AD_FIELDS, MINIMAL_STATUS_FILTER),
        )
        for i, (fields, statuses) in enumerate(attempts):
            try:
                return await self.client.call_all_pages(
                    f"{ad_account_id}/ads",
                    token,
                    {"fields": fields, "filtering": _status_filter(statuses)},
                )
            except MetaApiError as e:
                if not e.is_data_too_large or i == len(attempts) - 1:
                    raise
                logger.warning(f"[Sync] Ads request too large for {ad_account_id}, retrying with fewer fields")
        return []

    @staticmethod
    def _creative_row(account_id: uuid.UUID, ad: dict, now) -> dict:
        creative = ad.get("creative") or {}
        return {
            "id": uuid.uuid4(),
            "account_id": account_id,
            "ad_id": ad["id"],
            "adset_id": ad.get("adset_id") or "",
            "campaign_id": ad.get("campaign_id") or "",
            "name": ad.get("name") or "",
            "status": ad.get("status") or "UNKNOWN",
            "creative_id": creative.get("id"),
            "preview_url": ad.get("preview_shareable_link"),
            "thumbnail_url": creative.get("thumbnail_url") or creative.get("image_url"),
            "format": detect_format(creative.get("object_type")),
            "primary_text": creative.get("body"),
            "headline": creative.get("title"),
            "cta": creative.get("call_to_action_type"),
            "synced_at": now,
        }

    async def _backfill_thumbnails(self, account: Account, token: str, ad_rows: list[dict]) -> int:
        """Second pass for ads whose listing came back without a thumbnail."""
        missing = [r for r in ad_rows if not r["thumbnail_url"] and r["creative_id"]]
        if not missing:
            return 0
        limit = self.settings.thumbnail_lookup_limit
        if len(missing) > limit:
            logger.info(f"[Sync] {len(missing)} ads missing thumbnails, looking up the first {limit}")
            missing = missing[:limit]

        filled = 0
        for row in missing:
            try:
                data = await self.client.call(
                    row["creative_id"], token, {"fields": "thumbnail_url,image_url"}
                )
            except (MetaApiError, httpx.HTTPError) as e:
                logger.warning(f"[Sync] Failed to fetch thumbnail for creative {row['creative_id']}: {e!r}")
                continue
            url = data.get("thumbnail_url") or data.get("image_url")
            if not url:
                continue
            row["thumbnail_url"] = url
            await self.db.execute(
                update(Creative)
                .where(Creative.account_id == account.id, Creative.ad_id == row["ad_id"])
                .values(thumbnail_url=url, synced_at=utcnow())
            )
            filled += 1
        return filled

    # ── Daily metrics ────────────────────────────────────────────────

    async def sync_daily_metrics(
        self,
        account: Account,
        token: str,
        date_start: DateLike,
        date_end: DateLike,
        conversion_event: str,
    ) -> tuple[int, list[date]]:
        """
        Pull ad-level daily insights for [date_start, date_end].
        Returns (rows upserted, days skipped after the single-day fallback failed).
        """
        ad_account_id = account.ad_account_id
        chunks = split_date_range(date_start, date_end, METRICS_CHUNK_DAYS)
        total = 0
        skipped: list[date] = []

        for i, chunk in enumerate(chunks, 1):
            logger.info(f"[Sync] {ad_account_id} chunk {i}/{len(chunks)}: {chunk.since} → {chunk.until}")
            try:
                insights = await self._fetch_insights(ad_account_id, token, chunk)
            except MetaApiError as e:
                if not (e.is_data_too_large or e.code == INVALID_PARAMETER_CODE):
                    raise
                logger.warning(f"[Sync] Chunk too large, falling back to day-by-day for {chunk.since} → {chunk.until}")
                for day in split_date_range(chunk.since, chunk.until, FALLBACK_CHUNK_DAYS):
                    try:
                        day_insights = await self._fetch_insights(ad_account_id, token, day)
                    except MetaApiError as day_err:
                        if day_err.is_token_expired:
                            raise
                        logger.error(f"[Sync] Day {day.since} failed for {ad_account_id}: {day_err!r}")
                        skipped.append(day.since)
                        continue
                    total += await self.persist_metric_rows(account.id, day_insights, conversion_event)
                continue

            total += await self.persist_metric_rows(account.id, insights, conversion_event)

        return total, skipped

    async def _fetch_insights(self, ad_account_id: str, token: str, chunk: DateChunk) -> list[dict]:
        return await self.client.call_all_pages(
            f"{ad_account_id}/insights",
            token,
            {
                "level": "ad",
                "time_increment": "1",
                "time_range": json.dumps(chunk.as_time_range()),
                "fields": INSIGHT_FIELDS,
            },
        )

    async def persist_metric_rows(self, account_id: uuid.UUID, insights: list[dict], conversion_event: str) -> int:
        """Upsert insight rows by (account, ad, date) and commit, so finished chunks survive a later failure."""
        rows = [build_metric_row(account_id, r, conversion_event) for r in insights if r.get("ad_id")]
        count = await self._upsert(
            DailyMetricRow,
            rows,
            ["account_id", "ad_id", "date"],
            [
                "impressions", "clicks", "spend", "conversions", "conversion_value",
                "cpm", "cpc", "ctr", "reach", "frequency", "synced_at",
            ],
        )
        await self.db.commit()
        return count

    async def _upsert(self, model, rows: list[dict], conflict: list[str], update_columns: list[str]) -> int:
        """Upsert in batches. Returns the number of distinct keys written."""
        # One statement may not touch the same key twice; last row wins
        rows = list({tuple(r[c] for c in conflict): r for r in rows}.values())
        written = 0
        for batch in _batches(rows):
            await self.db.execute(upsert_statement(self.db, model, batch, conflict, update_columns))
            written += len(batch)
        return written
