"""
Composite suspicion scoring for Polymarket Scoring.

Defines the signal sources and categories shared by the weight
configurator and the alert priority ranker, the result shapes a composite
score is reported in, and a thin combiner that weights per-signal scores
into one 0-100 composite score.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from .models import ScoringModel
from .utils import checksum_address, utc_now

logger = logging.getLogger(__name__)


class SignalSource(str, Enum):
    """Detection signals that feed the composite score."""
    FRESH_WALLET = "fresh_wallet"
    WIN_RATE = "win_rate"
    PROFIT_LOSS = "profit_loss"
    TIMING_PATTERN = "timing_pattern"
    POSITION_SIZING = "position_sizing"
    MARKET_SELECTION = "market_selection"
    COORDINATION = "coordination"
    SYBIL = "sybil"
    ACCURACY = "accuracy"
    TRADING_PATTERN = "trading_pattern"


class SignalCategory(str, Enum):
    """Groups of related signals."""
    WALLET_PROFILE = "wallet_profile"
    PERFORMANCE = "performance"
    BEHAVIOR = "behavior"
    NETWORK = "network"


class CompositeSuspicionLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SignalConfidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


SIGNAL_CATEGORY_MAP = {
    SignalSource.FRESH_WALLET: SignalCategory.WALLET_PROFILE,
    SignalSource.WIN_RATE: SignalCategory.PERFORMANCE,
    SignalSource.PROFIT_LOSS: SignalCategory.PERFORMANCE,
    SignalSource.TIMING_PATTERN: SignalCategory.BEHAVIOR,
    SignalSource.POSITION_SIZING: SignalCategory.BEHAVIOR,
    SignalSource.MARKET_SELECTION: SignalCategory.BEHAVIOR,
    SignalSource.COORDINATION: SignalCategory.NETWORK,
    SignalSource.SYBIL: SignalCategory.NETWORK,
    SignalSource.ACCURACY: SignalCategory.PERFORMANCE,
    SignalSource.TRADING_PATTERN: SignalCategory.BEHAVIOR,
}

SIGNAL_NAMES = {
    SignalSource.FRESH_WALLET: "Fresh Wallet",
    SignalSource.WIN_RATE: "Win Rate",
    SignalSource.PROFIT_LOSS: "Profit/Loss",
    SignalSource.TIMING_PATTERN: "Timing Pattern",
    SignalSource.POSITION_SIZING: "Position Sizing",
    SignalSource.MARKET_SELECTION: "Market Selection",
    SignalSource.COORDINATION: "Coordination",
    SignalSource.SYBIL: "Sybil",
    SignalSource.ACCURACY: "Historical Accuracy",
    SignalSource.TRADING_PATTERN: "Trading Pattern",
}

CATEGORY_NAMES = {
    SignalCategory.WALLET_PROFILE: "Wallet Profile",
    SignalCategory.PERFORMANCE: "Performance",
    SignalCategory.BEHAVIOR: "Behavior",
    SignalCategory.NETWORK: "Network",
}

DEFAULT_SIGNAL_WEIGHTS = {
    SignalSource.FRESH_WALLET: 0.10,
    SignalSource.WIN_RATE: 0.12,
    SignalSource.PROFIT_LOSS: 0.12,
    SignalSource.TIMING_PATTERN: 0.10,
    SignalSource.POSITION_SIZING: 0.08,
    SignalSource.MARKET_SELECTION: 0.10,
    SignalSource.COORDINATION: 0.12,
    SignalSource.SYBIL: 0.10,
    SignalSource.ACCURACY: 0.10,
    SignalSource.TRADING_PATTERN: 0.06,
}

DEFAULT_CATEGORY_WEIGHTS = {
    SignalCategory.WALLET_PROFILE: 0.15,
    SignalCategory.PERFORMANCE: 0.35,
    SignalCategory.BEHAVIOR: 0.25,
    SignalCategory.NETWORK: 0.25,
}

SUSPICION_THRESHOLDS = {"low": 20.0, "medium": 40.0, "high": 60.0, "critical": 80.0}
DEFAULT_FLAG_THRESHOLD = 50.0
DEFAULT_INSIDER_THRESHOLD = 70.0

# Raw score at which a signal is reported as a key finding
KEY_FINDING_SCORE = 70.0

for _source in SignalSource:
    for _table in (SIGNAL_CATEGORY_MAP, SIGNAL_NAMES, DEFAULT_SIGNAL_WEIGHTS):
        if _source not in _table:
            raise ValueError(f"Signal source {_source} is missing from a signal table")
for _category in SignalCategory:
    if _category not in CATEGORY_NAMES or _category not in DEFAULT_CATEGORY_WEIGHTS:
        raise ValueError(f"Signal category {_category} is missing from a category table")


def classify_suspicion_level(score: float, thresholds: Optional[dict] = None) -> CompositeSuspicionLevel:
    thresholds = thresholds or SUSPICION_THRESHOLDS
    if score >= thresholds["critical"]:
        return CompositeSuspicionLevel.CRITICAL
    if score >= thresholds["high"]:
        return CompositeSuspicionLevel.HIGH
    if score >= thresholds["medium"]:
        return CompositeSuspicionLevel.MEDIUM
    if score >= thresholds["low"]:
        return CompositeSuspicionLevel.LOW
    return CompositeSuspicionLevel.NONE


# ============================================================================
# Result models
# ============================================================================

class SignalContribution(ScoringModel):
    """One signal's part in a composite score."""

    source: SignalSource
    category: SignalCategory
    name: str
    raw_score: float = Field(default=0.0, alias="rawScore")
    weight: float = 0.0
    weighted_score: float = Field(default=0.0, alias="weightedScore")
    confidence: SignalConfidence = SignalConfidence.MEDIUM
    data_quality: float = Field(default=0.0, alias="dataQuality")
    available: bool = False
    reason: str = ""
    flags: list[str] = []


class CategoryBreakdown(ScoringModel):
    category: SignalCategory
    name: str
    score: float = 0.0
    weight: float = 0.0
    signal_count: int = Field(default=0, alias="signalCount")
    available_signals: int = Field(default=0, alias="availableSignals")
    signals: list[SignalContribution] = []


class RiskFlagSummary(ScoringModel):
    category: str
    severity: float
    description: str
    sources: list[SignalSource] = []


class CoordinationSubResult(ScoringModel):
    """Coordinated-trading detector output."""

    is_coordinated: bool = Field(default=False, alias="isCoordinated")
    group_count: int = Field(default=0, alias="groupCount")
    coordination_score: float = Field(default=0.0, alias="coordinationScore")
    risk_level: Optional[str] = Field(default=None, alias="riskLevel")


class SybilSubResult(ScoringModel):
    """Sybil detector output."""

    is_likely_sybil: bool = Field(default=False, alias="isLikelySybil")
    sybil_probability: float = Field(default=0.0, alias="sybilProbability")
    cluster_count: int = Field(default=0, alias="clusterCount")


class PatternSubResult(ScoringModel):
    """Trading pattern classification output."""

    primary_pattern: str = Field(default="unknown", alias="primaryPattern")
    risk_flags: list[str] = Field(default=[], alias="riskFlags")
    risk_score: float = Field(default=0.0, alias="riskScore")

    @classmethod
    def from_classification(cls, result) -> "PatternSubResult":
        """Build from a trading_pattern.PatternClassificationResult."""
        return cls(
            primary_pattern=result.primary_pattern.value,
            risk_flags=[f.value for f in result.risk_flags],
            risk_score=result.risk_score,
        )


class ProfitLossSubResult(ScoringModel):
    total_realized_pnl: float = Field(default=0.0, alias="totalRealizedPnl")
    total_unrealized_pnl: float = Field(default=0.0, alias="totalUnrealizedPnl")

    @property
    def total_magnitude(self) -> float:
        return abs(self.total_realized_pnl) + abs(self.total_unrealized_pnl)


class SizingSubResult(ScoringModel):
    max_position_size: float = Field(default=0.0, alias="maxPositionSize")
    avg_position_size: float = Field(default=0.0, alias="avgPositionSize")


class UnderlyingResults(ScoringModel):
    """Per-signal detector outputs a composite score was built from."""

    coordination: Optional[CoordinationSubResult] = None
    sybil: Optional[SybilSubResult] = None
    pattern: Optional[PatternSubResult] = None
    profit_loss: Optional[ProfitLossSubResult] = Field(default=None, alias="profitLoss")
    sizing: Optional[SizingSubResult] = None


class CompositeScoreResult(ScoringModel):
    """Composite suspicion score for one wallet."""

    wallet_address: str = Field(alias="walletAddress")
    composite_score: float = Field(alias="compositeScore")
    suspicion_level: CompositeSuspicionLevel = Field(alias="suspicionLevel")
    should_flag: bool = Field(default=False, alias="shouldFlag")
    is_potential_insider: bool = Field(default=False, alias="isPotentialInsider")
    category_breakdown: list[CategoryBreakdown] = Field(default=[], alias="categoryBreakdown")
    signal_contributions: list[SignalContribution] = Field(default=[], alias="signalContributions")
    top_signals: list[SignalContribution] = Field(default=[], alias="topSignals")
    risk_flags: list[RiskFlagSummary] = Field(default=[], alias="riskFlags")
    data_quality: float = Field(default=0.0, alias="dataQuality")
    available_signals: int = Field(default=0, alias="availableSignals")
    total_signals: int = Field(default=len(SignalSource), alias="totalSignals")
    summary: list[str] = []
    key_findings: list[str] = Field(default=[], alias="keyFindings")
    underlying_results: UnderlyingResults = Field(default_factory=UnderlyingResults, alias="underlyingResults")
    from_cache: bool = Field(default=False, alias="fromCache")
    analyzed_at: datetime = Field(default_factory=utc_now, alias="analyzedAt")


class FilterResult(ScoringModel):
    """False-positive filter verdict for a composite score."""

    wallet_address: str = Field(alias="walletAddress")
    original_score: float = Field(alias="originalScore")
    adjusted_score: float = Field(alias="adjustedScore")
    is_likely_false_positive: bool = Field(default=False, alias="isLikelyFalsePositive")
    is_suppressed: bool = Field(default=False, alias="isSuppressed")
    filter_reasons: list[str] = Field(default=[], alias="filterReasons")
    score_reduction: float = Field(default=0.0, alias="scoreReduction")
    analyzed_at: Optional[datetime] = Field(default=None, alias="analyzedAt")


# ============================================================================
# Combiner
# ============================================================================

def score_composite(
    wallet_address: str,
    signal_scores: dict,
    configurator=None,
    underlying: Optional[UnderlyingResults] = None,
    now: Optional[datetime] = None,
) -> CompositeScoreResult:
    """
    Combine per-signal scores into a composite suspicion score.

    Args:
        wallet_address: Wallet being scored.
        signal_scores: SignalSource -> raw score (0-100). Missing or None
            signals are treated as unavailable.
        configurator: SignalWeightConfigurator supplying weights and
            thresholds. Defaults to the shared instance.
        underlying: Detector outputs to attach to the result.
        now: Analysis time.

    Returns:
        CompositeScoreResult
    """
    if configurator is None:
        from .weight_configurator import get_shared_signal_weight_configurator
        configurator = get_shared_signal_weight_configurator()

    wallet = checksum_address(wallet_address)
    weights = configurator.get_effective_weights()
    category_weights = configurator.get_effective_category_weights()
    config = configurator.get_config()

    contributions = []
    for source in SignalSource:
        raw = signal_scores.get(source)
        weight = weights.get(source, 0.0)
        available = raw is not None and weight > 0
        score = max(0.0, min(100.0, float(raw))) if raw is not None else 0.0
        contributions.append(SignalContribution(
            source=source,
            category=SIGNAL_CATEGORY_MAP[source],
            name=SIGNAL_NAMES[source],
            raw_score=score,
            weight=weight,
            weighted_score=score * weight if available else 0.0,
            data_quality=100.0 if available else 0.0,
            available=available,
            reason=f"{SIGNAL_NAMES[source]} score {score:.0f}/100" if available else "Signal unavailable",
        ))

    available = [c for c in contributions if c.available]
    available_weight = sum(c.weight for c in available)
    composite = round(sum(c.weighted_score for c in available) / available_weight, 2) if available_weight else 0.0

    breakdown = []
    for category in SignalCategory:
        members = [c for c in contributions if c.category == category]
        present = [c for c in members if c.available]
        cat_weight = sum(c.weight for c in present)
        breakdown.append(CategoryBreakdown(
            category=category,
            name=CATEGORY_NAMES[category],
            score=sum(c.weighted_score for c in present) / cat_weight if cat_weight else 0.0,
            weight=category_weights.get(category, 0.0),
            signal_count=len(members),
            available_signals=len(present),
            signals=members,
        ))

    level = classify_suspicion_level(composite, config.thresholds)
    top = sorted(available, key=lambda c: c.weighted_score, reverse=True)[:3]
    key_findings = [
        f"{c.name}: {c.raw_score:.0f}/100" for c in available if c.raw_score >= KEY_FINDING_SCORE
    ]

    result = CompositeScoreResult(
        wallet_address=wallet,
        composite_score=composite,
        suspicion_level=level,
        should_flag=composite >= config.flag_threshold,
        is_potential_insider=composite >= config.insider_threshold,
        category_breakdown=breakdown,
        signal_contributions=contributions,
        top_signals=top,
        data_quality=len(available) / len(SignalSource) * 100,
        available_signals=len(available),
        total_signals=len(SignalSource),
        summary=[f"Composite suspicion {composite:.0f}/100 ({level.value})"],
        key_findings=key_findings,
        underlying_results=underlying or UnderlyingResults(),
        analyzed_at=now or utc_now(),
    )
    logger.debug(f"Composite score for {wallet}: {composite} ({level.value})")
    return result
