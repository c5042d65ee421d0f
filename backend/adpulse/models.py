"""
AdPulse: Database Models
Meta ad accounts, synced structure (campaigns / ad sets / ads), daily ad metrics,
sync runs, alerts, decision settings and GA4 page metrics.

Platform ids (campaign_id, adset_id, ad_id) are stored as the strings Meta
returns and are unique per account; they are the natural upsert keys.
"""

import uuid
import enum
import datetime as dt
from datetime import datetime
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Boolean, Date, DateTime,
    ForeignKey, Index, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from adpulse.database import Base
from adpulse.utils import utcnow


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    REVOKED = "revoked"


class CreativeFormat(str, enum.Enum):
    IMAGE = "image"
    VIDEO = "video"
    CAROUSEL = "carousel"
    UNKNOWN = "unknown"


class SyncKind(str, enum.Enum):
    STRUCTURE = "structure"
    METRICS = "metrics"
    FULL = "full"


class SyncStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class AlertType(str, enum.Enum):
    NO_CONVERSIONS = "no_conversions"
    CTR_FATIGUE = "ctr_fatigue"


class AlertSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# ══════════════════════════════════════════════════════════════════════
#  ACCOUNTS: Connected Meta ad accounts
# ══════════════════════════════════════════════════════════════════════

class Account(Base):
    """A Meta ad account connected by a user. access_token is always ciphertext."""
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ad_account_id: Mapped[str] = mapped_column(String(64), nullable=False)  # "act_123456789"
    name: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AccountStatus.ACTIVE.value)
    conversion_event: Mapped[str] = mapped_column(
        String(255), nullable=False, default="offsite_conversion.fb_pixel_purchase"
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    campaigns: Mapped[list["Campaign"]] = relationship("Campaign", back_populates="account", cascade="all, delete-orphan")
    sync_runs: Mapped[list["SyncRun"]] = relationship("SyncRun", back_populates="account", cascade="all, delete-orphan")
    settings: Mapped["AccountSettings"] = relationship("AccountSettings", back_populates="account", uselist=False, cascade="all, delete-orphan")
    ga4_config: Mapped["GA4Config"] = relationship("GA4Config", back_populates="account", uselist=False, cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("user_id", "ad_account_id", name="uq_account_per_user"),
        Index("ix_accounts_user_id", "user_id"),
        Index("ix_accounts_status", "status"),
    )


# ══════════════════════════════════════════════════════════════════════
#  STRUCTURE: Campaigns, ad sets and ads mirrored from Meta
# ══════════════════════════════════════════════════════════════════════

class Campaign(Base):
    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    objective: Mapped[str] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="UNKNOWN")
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    account: Mapped["Account"] = relationship("Account", back_populates="campaigns")

    __table_args__ = (
        UniqueConstraint("account_id", "campaign_id", name="uq_campaign_per_account"),
        Index("ix_campaigns_account_id", "account_id"),
    )


class AdGroup(Base):
    """Meta ad set."""
    __tablename__ = "ad_groups"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    adset_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    optimization_goal: Mapped[str] = mapped_column(String(100), nullable=True)
    billing_event: Mapped[str] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="UNKNOWN")
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "adset_id", name="uq_adgroup_per_account"),
        Index("ix_ad_groups_account_id", "account_id"),
        Index("ix_ad_groups_campaign_id", "campaign_id"),
    )


class Creative(Base):
    """A Meta ad and the creative fields the dashboards show."""
    __tablename__ = "creatives"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    ad_id: Mapped[str] = mapped_column(String(64), nullable=False)
    adset_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="UNKNOWN")
    creative_id: Mapped[str] = mapped_column(String(64), nullable=True)  # Meta ad creative object id
    preview_url: Mapped[str] = mapped_column(Text, nullable=True)
    thumbnail_url: Mapped[str] = mapped_column(Text, nullable=True)
    format: Mapped[str] = mapped_column(String(20), nullable=False, default=CreativeFormat.UNKNOWN.value)
    primary_text: Mapped[str] = mapped_column(Text, nullable=True)
    headline: Mapped[str] = mapped_column(Text, nullable=True)
    cta: Mapped[str] = mapped_column(String(100), nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "ad_id", name="uq_creative_per_account"),
        Index("ix_creatives_account_id", "account_id"),
        Index("ix_creatives_campaign_id", "campaign_id"),
        Index("ix_creatives_status", "status"),
    )


class CreativePageLink(Base):
    """Landing page a creative sends traffic to; joined against GA4 page metrics."""
    __tablename__ = "creative_page_links"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    ad_id: Mapped[str] = mapped_column(String(64), nullable=False)
    page_url: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "ad_id", "page_url", name="uq_creative_page_link"),
        Index("ix_creative_page_links_account_id", "account_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  DAILY METRICS: One row per (account, ad, day)
# ══════════════════════════════════════════════════════════════════════

class DailyMetricRow(Base):
    __tablename__ = "daily_metrics"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    ad_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    impressions: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    clicks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spend: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    conversions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conversion_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    cpm: Mapped[float] = mapped_column(Float, nullable=True)
    cpc: Mapped[float] = mapped_column(Float, nullable=True)
    ctr: Mapped[float] = mapped_column(Float, nullable=True)
    reach: Mapped[int] = mapped_column(BigInteger, nullable=True)
    frequency: Mapped[float] = mapped_column(Float, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "ad_id", "date", name="uq_daily_metric_per_ad_day"),
        Index("ix_daily_metrics_account_date", "account_id", "date"),
        Index("ix_daily_metrics_ad_date", "ad_id", "date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SYNC RUNS: Audit trail for every sync invocation
# ══════════════════════════════════════════════════════════════════════

class SyncRun(Base):
    __tablename__ = "sync_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default=SyncKind.FULL.value)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SyncStatus.RUNNING.value)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    records_synced: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)

    account: Mapped["Account"] = relationship("Account", back_populates="sync_runs")

    __table_args__ = (
        Index("ix_sync_runs_account_id", "account_id"),
        Index("ix_sync_runs_started_at", "started_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  ALERTS
# ══════════════════════════════════════════════════════════════════════

class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    ad_id: Mapped[str] = mapped_column(String(64), nullable=True)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default=AlertSeverity.WARNING.value)
    resolved_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_alerts_account_id", "account_id"),
        Index("ix_alerts_dedup", "account_id", "ad_id", "alert_type", "created_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  DECISION SETTINGS & OVERRIDES
# ══════════════════════════════════════════════════════════════════════

class AccountSettings(Base):
    """Per-account decision thresholds. Null columns fall back to application defaults."""
    __tablename__ = "account_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, unique=True)
    cpa_target: Mapped[float] = mapped_column(Float, nullable=True)
    cpl_target: Mapped[float] = mapped_column(Float, nullable=True)
    ctr_benchmark: Mapped[float] = mapped_column(Float, nullable=True)
    min_spend: Mapped[float] = mapped_column(Float, nullable=True)
    frequency_warn: Mapped[float] = mapped_column(Float, nullable=True)
    frequency_kill: Mapped[float] = mapped_column(Float, nullable=True)
    cost_kill_multiplier: Mapped[float] = mapped_column(Float, nullable=True)
    currency_symbol: Mapped[str] = mapped_column(String(8), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    account: Mapped["Account"] = relationship("Account", back_populates="settings")


class StatusOverride(Base):
    """Manual status forced on a creative by an operator."""
    __tablename__ = "status_overrides"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    ad_id: Mapped[str] = mapped_column(String(64), nullable=False)
    forced_status: Mapped[str] = mapped_column(String(50), nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "ad_id", name="uq_status_override_per_ad"),
    )


# ══════════════════════════════════════════════════════════════════════
#  GA4: Property link and daily landing-page metrics
# ══════════════════════════════════════════════════════════════════════

class GA4Config(Base):
    __tablename__ = "ga4_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, unique=True)
    property_id: Mapped[str] = mapped_column(String(64), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    account: Mapped["Account"] = relationship("Account", back_populates="ga4_config")


class GA4PageDaily(Base):
    __tablename__ = "ga4_page_daily"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    page_path: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    medium: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    campaign: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    sessions: Mapped[int] = mapped_column(Integer, default=0)
    engaged_sessions: Mapped[int] = mapped_column(Integer, default=0)
    engagement_rate: Mapped[float] = mapped_column(Float, default=0.0)
    avg_engagement_time: Mapped[float] = mapped_column(Float, default=0.0)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "account_id", "date", "page_path", "source", "medium", "campaign",
            name="uq_ga4_page_daily",
        ),
        Index("ix_ga4_page_daily_account_date", "account_id", "date"),
    )
