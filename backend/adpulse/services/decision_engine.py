"""
Decision Engine: operational status for each creative.

Pure functions over aggregated metrics. Rules, first match wins:

    FORCED  manual override
    KILL    cost per conversion > target x kill multiplier
    KILL    spend >= minimum and zero conversions
    VARY    frequency >= kill threshold (fatigue)
    SCALE   converting, cost on target, frequency < warn, CTR >= benchmark
    VARY    converting, cost on target, CTR < benchmark (hook problem)
    VARY    frequency in the warn band
    VARY    spend below minimum (not enough data)
    VARY    mixed signals

CTR never kills on its own. Lead campaigns use the CPL target instead of CPA.
"""

import enum
from dataclasses import asdict, dataclass, replace
from typing import Iterable, Mapping, Optional

from adpulse.config import Settings


class DecisionStatus(str, enum.Enum):
    SCALE = "scale"
    VARY = "vary"
    KILL = "kill"
    FORCED = "forced"


class CampaignType(str, enum.Enum):
    SALES = "sales"
    LEADS = "leads"


LEAD_OBJECTIVES = frozenset({"OUTCOME_LEADS", "LEAD_GENERATION"})


def campaign_type_for_objective(objective: Optional[str]) -> CampaignType:
    if objective and objective.upper() in LEAD_OBJECTIVES:
        return CampaignType.LEADS
    return CampaignType.SALES


@dataclass(frozen=True)
class DecisionSettings:
    cpa_target: float = 50.0
    cpl_target: float = 15.0
    ctr_benchmark: float = 1.0
    min_spend: float = 20.0
    frequency_warn: float = 2.2
    frequency_kill: float = 2.8
    cost_kill_multiplier: float = 1.3
    currency_symbol: str = "$"

    @classmethod
    def from_settings(cls, settings: Settings) -> "DecisionSettings":
        return cls(
            cpa_target=settings.cpa_target,
            cpl_target=settings.cpl_target,
            ctr_benchmark=settings.ctr_benchmark,
            min_spend=settings.min_spend,
            frequency_warn=settings.frequency_warn,
            frequency_kill=settings.frequency_kill,
            cost_kill_multiplier=settings.cost_kill_multiplier,
            currency_symbol=settings.currency_symbol,
        )

    def cost_target(self, campaign_type: CampaignType) -> float:
        return self.cpl_target if campaign_type is CampaignType.LEADS else self.cpa_target


@dataclass
class CreativeMetrics:
    """A creative's metrics summed over the selected date range."""
    ad_id: str
    name: str = ""
    campaign_id: str = ""
    campaign_name: str = ""
    campaign_type: CampaignType = CampaignType.SALES
    status: str = ""
    thumbnail_url: Optional[str] = None
    format: str = "unknown"
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    conversions: int = 0
    conversion_value: float = 0.0
    frequency: float = 0.0

    @property
    def ctr(self) -> float:
        return self.clicks / self.impressions * 100 if self.impressions > 0 else 0.0

    @property
    def cost_per_conversion(self) -> Optional[float]:
        return self.spend / self.conversions if self.conversions > 0 else None

    @property
    def cpc(self) -> Optional[float]:
        return self.spend / self.clicks if self.clicks > 0 else None

    @property
    def cpm(self) -> Optional[float]:
        return self.spend / self.impressions * 1000 if self.impressions > 0 else None


@dataclass(frozen=True)
class Decision:
    status: DecisionStatus
    reason: str


@dataclass
class CreativeDecision:
    creative: CreativeMetrics
    status: DecisionStatus
    reason: str
    forced_status: Optional[str] = None
    override_note: Optional[str] = None

    def to_dict(self) -> dict:
        c = self.creative
        data = asdict(c)
        data.update(
            campaign_type=c.campaign_type.value,
            ctr=round(c.ctr, 4),
            cost_per_conversion=c.cost_per_conversion,
            cpc=c.cpc,
            cpm=c.cpm,
            decision=self.status.value,
            reason=self.reason,
            forced_status=self.forced_status,
            override_note=self.override_note,
        )
        return data


def classify(
    creative: CreativeMetrics,
    settings: DecisionSettings,
    forced_status: Optional[str] = None,
) -> Decision:
    """Classify one creative. ``settings.ctr_benchmark`` is the comparison CTR in percent."""
    if forced_status:
        return Decision(DecisionStatus.FORCED, f"Manual override: {forced_status}")

    is_leads = creative.campaign_type is CampaignType.LEADS
    cost_label = "CPL" if is_leads else "CPA"
    conv_label = "leads" if is_leads else "purchases"
    cur = settings.currency_symbol

    target = settings.cost_target(creative.campaign_type)
    kill_cost = target * settings.cost_kill_multiplier
    cost = creative.cost_per_conversion
    ctr = creative.ctr
    freq = creative.frequency
    spend = creative.spend
    benchmark = settings.ctr_benchmark

    if cost is not None and cost > kill_cost:
        return Decision(
            DecisionStatus.KILL,
            f"{cost_label} ({cur}{cost:.2f}) above {settings.cost_kill_multiplier}x target ({cur}{kill_cost:.2f})",
        )

    if spend >= settings.min_spend and creative.conversions == 0:
        return Decision(
            DecisionStatus.KILL,
            f"0 {conv_label} after {cur}{spend:.2f} spent (minimum {cur}{settings.min_spend:.2f})",
        )

    if freq >= settings.frequency_kill:
        return Decision(DecisionStatus.VARY, f"High frequency ({freq:.1f}) - creative fatigue")

    # cost is 0.0 when conversions arrived before any spend was reported
    cost_on_target = cost is not None and cost <= target

    if cost_on_target and freq < settings.frequency_warn and ctr >= benchmark:
        return Decision(
            DecisionStatus.SCALE,
            f"{cost_label} ({cur}{cost:.2f}) within target ({cur}{target:.2f}), "
            f"CTR {ctr:.2f}% and frequency {freq:.1f} healthy",
        )

    if cost_on_target and ctr < benchmark:
        return Decision(
            DecisionStatus.VARY,
            f"{cost_label} on target but CTR ({ctr:.2f}%) below account benchmark ({benchmark:.2f}%) - rework the hook",
        )

    if settings.frequency_warn <= freq < settings.frequency_kill:
        return Decision(DecisionStatus.VARY, f"Frequency in warning range ({freq:.1f}) - consider a variation")

    if spend < settings.min_spend:
        return Decision(DecisionStatus.VARY, f"Insufficient spend ({cur}{spend:.2f}) to decide")

    return Decision(DecisionStatus.VARY, "Mixed signals - needs manual review")


def account_benchmark_ctr(creatives: Iterable[CreativeMetrics]) -> float:
    """Account-wide CTR in percent; 1.0 when nothing has impressions."""
    impressions = 0
    clicks = 0
    for c in creatives:
        impressions += c.impressions
        clicks += c.clicks
    if impressions == 0:
        return 1.0
    return clicks / impressions * 100


def apply_decisions(
    creatives: list[CreativeMetrics],
    settings: DecisionSettings,
    overrides: Mapping[str, str],
    notes: Optional[Mapping[str, str]] = None,
) -> list[CreativeDecision]:
    """Classify a batch against a benchmark computed from this same batch."""
    effective = replace(settings, ctr_benchmark=account_benchmark_ctr(creatives))
    notes = notes or {}
    results = []
    for c in creatives:
        forced = overrides.get(c.ad_id)
        decision = classify(c, effective, forced)
        results.append(CreativeDecision(
            creative=c,
            status=decision.status,
            reason=decision.reason,
            forced_status=forced,
            override_note=notes.get(c.ad_id) if forced else None,
        ))
    return results


def decide_single(
    creative: CreativeMetrics,
    account_creatives: list[CreativeMetrics],
    settings: DecisionSettings,
    overrides: Mapping[str, str],
    notes: Optional[Mapping[str, str]] = None,
) -> CreativeDecision:
    """Detail view: classify one creative against the benchmark of its whole account."""
    effective = replace(settings, ctr_benchmark=account_benchmark_ctr(account_creatives))
    forced = overrides.get(creative.ad_id)
    decision = classify(creative, effective, forced)
    return CreativeDecision(
        creative=creative,
        status=decision.status,
        reason=decision.reason,
        forced_status=forced,
        override_note=(notes or {}).get(creative.ad_id) if forced else None,
    )
