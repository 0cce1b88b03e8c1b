"""
Trading Pattern Classifier for Polymarket Scoring.

Extracts a behavioral feature vector from a wallet's trades and matches it
against named trading archetypes:
- Timescale archetypes: scalper, day trader, swing trader, position trader
- Market structure archetypes: market maker, arbitrageur, bot
- Directional archetypes: momentum, contrarian, accumulator
- Size archetypes: whale, retail
- Potential insider: high win rate concentrated before resolution

Each classification also carries risk flags, a 0-100 risk score and short
human-readable insights. Results are cached per wallet.
"""

import copy
import logging
import time
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from .config import settings
from .events import EventSource, ListenerRegistry
from .models import PatternTrade, TradeSide
from .shared import SharedInstance
from .utils import checksum_address, coefficient_of_variation, mean, median, std_dev, utc_now

logger = logging.getLogger(__name__)


class TradingPatternType(Enum):
    """Trading archetypes a wallet can match."""
    SCALPER = "scalper"
    DAY_TRADER = "day_trader"
    SWING_TRADER = "swing_trader"
    POSITION_TRADER = "position_trader"
    MARKET_MAKER = "market_maker"
    ARBITRAGEUR = "arbitrageur"
    EVENT_TRADER = "event_trader"
    MOMENTUM_TRADER = "momentum_trader"
    CONTRARIAN = "contrarian"
    POTENTIAL_INSIDER = "potential_insider"
    ACCUMULATOR = "accumulator"
    WHALE = "whale"
    BOT = "bot"
    RETAIL = "retail"
    UNKNOWN = "unknown"


class PatternConfidence(Enum):
    """Confidence in a classification, driven by trade count."""
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class PatternFeature(Enum):
    """Features a pattern definition can place requirements on."""
    TRADE_FREQUENCY = "trade_frequency"
    AVG_HOLDING_PERIOD = "avg_holding_period"
    SIZE_CONSISTENCY = "size_consistency"
    TIMING_CONSISTENCY = "timing_consistency"
    WIN_RATE = "win_rate"
    TIME_PATTERN = "time_pattern"
    MARKET_CONCENTRATION = "market_concentration"
    CATEGORY_SPECIALIZATION = "category_specialization"
    BUY_PERCENTAGE = "buy_percentage"
    MAKER_RATIO = "maker_ratio"
    PRE_EVENT_TRADING = "pre_event_trading"
    TRADE_CLUSTERING = "trade_clustering"
    PROFIT_FACTOR = "profit_factor"
    SIZE_PERCENTILE = "size_percentile"
    REVERSAL_RATE = "reversal_rate"


class PatternRiskFlag(Enum):
    """Independently evaluated risk indicators."""
    HIGH_WIN_RATE = "high_win_rate"
    PERFECT_TIMING = "perfect_timing"
    PRE_NEWS_TRADING = "pre_news_trading"
    COORDINATED_TRADING = "coordinated_trading"
    HIGH_RISK_CONCENTRATION = "high_risk_concentration"
    BOT_PRECISION = "bot_precision"
    UNUSUAL_TIMING = "unusual_timing"
    FRESH_WALLET_ACTIVITY = "fresh_wallet_activity"
    WASH_TRADING = "wash_trading"
    INFO_ASYMMETRY = "info_asymmetry"


RISK_FLAG_SCORES = {
    PatternRiskFlag.HIGH_WIN_RATE: 15,
    PatternRiskFlag.PERFECT_TIMING: 25,
    PatternRiskFlag.PRE_NEWS_TRADING: 20,
    PatternRiskFlag.COORDINATED_TRADING: 20,
    PatternRiskFlag.HIGH_RISK_CONCENTRATION: 10,
    PatternRiskFlag.BOT_PRECISION: 15,
    PatternRiskFlag.UNUSUAL_TIMING: 10,
    PatternRiskFlag.FRESH_WALLET_ACTIVITY: 15,
    PatternRiskFlag.WASH_TRADING: 25,
    PatternRiskFlag.INFO_ASYMMETRY: 20,
}

RISK_FLAG_INSIGHTS = {
    PatternRiskFlag.HIGH_WIN_RATE: "Unusually high win rate detected",
    PatternRiskFlag.PERFECT_TIMING: "Near-perfect timing on large trades",
    PatternRiskFlag.PRE_NEWS_TRADING: "Frequent trading before market resolution",
    PatternRiskFlag.COORDINATED_TRADING: "Trades flagged as coordinated with other wallets",
    PatternRiskFlag.HIGH_RISK_CONCENTRATION: "Profitable concentration in a single category",
    PatternRiskFlag.BOT_PRECISION: "Bot-like precision in trade timing and sizing",
    PatternRiskFlag.UNUSUAL_TIMING: "Majority of trades outside normal market hours",
    PatternRiskFlag.FRESH_WALLET_ACTIVITY: "New wallet opening with a large trade",
    PatternRiskFlag.WASH_TRADING: "Possible wash trading",
    PatternRiskFlag.INFO_ASYMMETRY: "Possible information asymmetry",
}

for _flag in PatternRiskFlag:
    if _flag not in RISK_FLAG_SCORES or _flag not in RISK_FLAG_INSIGHTS:
        raise ValueError(f"Risk flag {_flag} is missing a score or insight")

# Normal market hours in UTC; trades outside are "off hours"
MARKET_HOURS_START_UTC = 14
MARKET_HOURS_END_UTC = 22


@dataclass
class TradingPatternConfig:
    """Classification thresholds."""

    MIN_TRADES: int = 5
    CACHE_TTL_SECONDS: int = 600
    MAX_CACHED_CLASSIFICATIONS: int = 1000
    LARGE_TRADE_THRESHOLD_USD: float = 1000.0
    WHALE_TRADE_THRESHOLD_USD: float = 10000.0
    HIGH_WIN_RATE_THRESHOLD: float = 0.75
    PRE_EVENT_WINDOW_HOURS: float = 24.0
    HIGH_RISK_SCORE: float = 70.0
    SIZE_PERCENTILE_REFERENCE_USD: float = 5000.0
    ENABLE_EVENTS: bool = True

    # Minimum trade count for each confidence level
    CONFIDENCE_TRADE_COUNTS: dict = None

    def __post_init__(self):
        if self.CONFIDENCE_TRADE_COUNTS is None:
            self.CONFIDENCE_TRADE_COUNTS = {
                PatternConfidence.LOW: 5,
                PatternConfidence.MEDIUM: 15,
                PatternConfidence.HIGH: 30,
                PatternConfidence.VERY_HIGH: 100,
            }

    @classmethod
    def from_settings(cls) -> "TradingPatternConfig":
        return cls(ENABLE_EVENTS=settings.enable_events)


# ============================================================================
# Pattern definitions
# ============================================================================

@dataclass
class FeatureRequirement:
    """A weighted min/max bound on one feature."""
    feature: PatternFeature
    weight: float
    min: Optional[float] = None
    max: Optional[float] = None


@dataclass
class PatternDefinition:
    pattern: TradingPatternType
    name: str
    description: str
    requirements: list
    min_score: float
    risk_flags: list = field(default_factory=list)


def _req(feature: PatternFeature, weight: float, min: Optional[float] = None, max: Optional[float] = None):
    return FeatureRequirement(feature=feature, weight=weight, min=min, max=max)


F = PatternFeature

PATTERN_DEFINITIONS = [
    PatternDefinition(
        TradingPatternType.SCALPER, "Scalper",
        "High-frequency trader holding positions for very short periods",
        [_req(F.TRADE_FREQUENCY, 0.3, min=5), _req(F.AVG_HOLDING_PERIOD, 0.35, max=2),
         _req(F.SIZE_CONSISTENCY, 0.15, min=0.5), _req(F.REVERSAL_RATE, 0.2, min=0.3)],
        60,
    ),
    PatternDefinition(
        TradingPatternType.DAY_TRADER, "Day Trader",
        "Opens and closes positions within a trading day",
        [_req(F.TRADE_FREQUENCY, 0.25, min=1, max=10), _req(F.AVG_HOLDING_PERIOD, 0.35, min=2, max=24),
         _req(F.TIME_PATTERN, 0.2, min=0.5), _req(F.REVERSAL_RATE, 0.2, min=0.2)],
        55,
    ),
    PatternDefinition(
        TradingPatternType.SWING_TRADER, "Swing Trader",
        "Holds positions for days to weeks to capture larger moves",
        [_req(F.AVG_HOLDING_PERIOD, 0.4, min=24, max=336), _req(F.TRADE_FREQUENCY, 0.2, max=2),
         _req(F.SIZE_CONSISTENCY, 0.2, min=0.4), _req(F.MARKET_CONCENTRATION, 0.2, max=0.8)],
        55,
    ),
    PatternDefinition(
        TradingPatternType.POSITION_TRADER, "Position Trader",
        "Takes long-term positions held for weeks or until resolution",
        [_req(F.AVG_HOLDING_PERIOD, 0.4, min=336), _req(F.TRADE_FREQUENCY, 0.2, max=0.5),
         _req(F.SIZE_PERCENTILE, 0.25, min=0.6), _req(F.SIZE_CONSISTENCY, 0.15, min=0.3)],
        60,
    ),
    PatternDefinition(
        TradingPatternType.MARKET_MAKER, "Market Maker",
        "Provides liquidity on both sides of the book",
        [_req(F.MAKER_RATIO, 0.35, min=0.6), _req(F.BUY_PERCENTAGE, 0.25, min=0.4, max=0.6),
         _req(F.TRADE_FREQUENCY, 0.2, min=3), _req(F.SIZE_CONSISTENCY, 0.2, min=0.6)],
        65,
    ),
    PatternDefinition(
        TradingPatternType.ARBITRAGEUR, "Arbitrageur",
        "Exploits price differences with precise, consistent execution",
        [_req(F.TIMING_CONSISTENCY, 0.3, min=0.7), _req(F.TRADE_CLUSTERING, 0.25, min=0.5),
         _req(F.WIN_RATE, 0.25, min=0.6), _req(F.SIZE_CONSISTENCY, 0.2, min=0.7)],
        65,
    ),
    PatternDefinition(
        TradingPatternType.EVENT_TRADER, "Event Trader",
        "Focuses on specific event categories around key dates",
        [_req(F.CATEGORY_SPECIALIZATION, 0.3, min=0.6), _req(F.PRE_EVENT_TRADING, 0.3, min=0.3),
         _req(F.MARKET_CONCENTRATION, 0.2, min=0.5), _req(F.AVG_HOLDING_PERIOD, 0.2, max=168)],
        60,
    ),
    PatternDefinition(
        TradingPatternType.MOMENTUM_TRADER, "Momentum Trader",
        "Follows price trends and trades in bursts",
        [_req(F.BUY_PERCENTAGE, 0.3, min=0.6), _req(F.TRADE_CLUSTERING, 0.25, min=0.4),
         _req(F.REVERSAL_RATE, 0.25, max=0.3), _req(F.WIN_RATE, 0.2, min=0.45)],
        55,
    ),
    PatternDefinition(
        TradingPatternType.CONTRARIAN, "Contrarian",
        "Trades against the prevailing direction",
        [_req(F.BUY_PERCENTAGE, 0.3, max=0.4), _req(F.REVERSAL_RATE, 0.25, min=0.4),
         _req(F.WIN_RATE, 0.25, min=0.5), _req(F.MARKET_CONCENTRATION, 0.2, max=0.7)],
        55,
    ),
    PatternDefinition(
        TradingPatternType.POTENTIAL_INSIDER, "Potential Insider",
        "Unusually accurate trading concentrated before market resolution",
        [_req(F.WIN_RATE, 0.35, min=0.8), _req(F.PRE_EVENT_TRADING, 0.3, min=0.4),
         _req(F.PROFIT_FACTOR, 0.2, min=0.6), _req(F.CATEGORY_SPECIALIZATION, 0.15, min=0.5)],
        70,
        [PatternRiskFlag.HIGH_WIN_RATE, PatternRiskFlag.PRE_NEWS_TRADING, PatternRiskFlag.INFO_ASYMMETRY],
    ),
    PatternDefinition(
        TradingPatternType.ACCUMULATOR, "Accumulator",
        "Builds positions steadily with mostly one-sided buying",
        [_req(F.BUY_PERCENTAGE, 0.35, min=0.7), _req(F.SIZE_CONSISTENCY, 0.25, min=0.5),
         _req(F.MARKET_CONCENTRATION, 0.2, min=0.6), _req(F.REVERSAL_RATE, 0.2, max=0.2)],
        60,
    ),
    PatternDefinition(
        TradingPatternType.WHALE, "Whale",
        "Trades in very large sizes",
        [_req(F.SIZE_PERCENTILE, 0.45, min=0.9), _req(F.TRADE_FREQUENCY, 0.2, max=5),
         _req(F.SIZE_CONSISTENCY, 0.15, min=0.3), _req(F.PROFIT_FACTOR, 0.2, min=0.2)],
        65,
    ),
    PatternDefinition(
        TradingPatternType.BOT, "Bot",
        "Automated trading with machine-like timing and sizing",
        [_req(F.TIMING_CONSISTENCY, 0.35, min=0.8), _req(F.SIZE_CONSISTENCY, 0.3, min=0.8),
         _req(F.TRADE_FREQUENCY, 0.2, min=5), _req(F.TIME_PATTERN, 0.15, max=0.3)],
        70,
        [PatternRiskFlag.BOT_PRECISION],
    ),
    PatternDefinition(
        TradingPatternType.RETAIL, "Retail",
        "Casual trader with small, irregular positions",
        [_req(F.TRADE_FREQUENCY, 0.2, max=3), _req(F.SIZE_CONSISTENCY, 0.2, max=0.6),
         _req(F.WIN_RATE, 0.2, max=0.6), _req(F.SIZE_PERCENTILE, 0.2, max=0.7),
         _req(F.MARKET_CONCENTRATION, 0.2, max=0.7)],
        45,
    ),
]

del F

PATTERN_DESCRIPTIONS = {d.pattern: d.description for d in PATTERN_DEFINITIONS}
PATTERN_DESCRIPTIONS[TradingPatternType.UNKNOWN] = "Not enough signal to match a known trading pattern"

for _pattern in TradingPatternType:
    if _pattern not in PATTERN_DESCRIPTIONS:
        raise ValueError(f"Pattern {_pattern} has no definition")

SUSPICIOUS_PATTERNS = {TradingPatternType.POTENTIAL_INSIDER, TradingPatternType.BOT}


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class TradingFeatures:
    """Feature vector extracted from a wallet's trades."""
    trade_count: int
    trade_frequency: float           # trades per day
    avg_holding_period_hours: float
    size_consistency: float
    timing_consistency: float
    win_rate: float
    off_hours_ratio: float
    market_concentration: float
    category_specialization: float
    buy_percentage: float
    maker_ratio: float
    pre_event_ratio: float
    trade_clustering: float
    profit_factor: float
    size_percentile: float
    reversal_rate: float
    avg_trade_size: float
    max_trade_size: float
    total_volume: float
    unique_markets: int
    days_active: float

    def value_for(self, feature: PatternFeature) -> float:
        """Feature value on the scale pattern requirements use."""
        if feature == PatternFeature.TIME_PATTERN:
            return 1 - self.off_hours_ratio
        if feature == PatternFeature.PROFIT_FACTOR:
            return min(self.profit_factor / 5, 1.0)
        return {
            PatternFeature.TRADE_FREQUENCY: self.trade_frequency,
            PatternFeature.AVG_HOLDING_PERIOD: self.avg_holding_period_hours,
            PatternFeature.SIZE_CONSISTENCY: self.size_consistency,
            PatternFeature.TIMING_CONSISTENCY: self.timing_consistency,
            PatternFeature.WIN_RATE: self.win_rate,
            PatternFeature.MARKET_CONCENTRATION: self.market_concentration,
            PatternFeature.CATEGORY_SPECIALIZATION: self.category_specialization,
            PatternFeature.BUY_PERCENTAGE: self.buy_percentage,
            PatternFeature.MAKER_RATIO: self.maker_ratio,
            PatternFeature.PRE_EVENT_TRADING: self.pre_event_ratio,
            PatternFeature.TRADE_CLUSTERING: self.trade_clustering,
            PatternFeature.SIZE_PERCENTILE: self.size_percentile,
            PatternFeature.REVERSAL_RATE: self.reversal_rate,
        }[feature]

    def to_dict(self) -> dict:
        return {k: (round(v, 4) if isinstance(v, float) else v) for k, v in self.__dict__.items()}


@dataclass
class FeatureContribution:
    feature: PatternFeature
    value: float
    contribution: float
    is_strong: bool

    def to_dict(self) -> dict:
        return {
            "feature": self.feature.value,
            "value": round(self.value, 4),
            "contribution": round(self.contribution, 2),
            "is_strong": self.is_strong,
        }


@dataclass
class PatternMatch:
    pattern: TradingPatternType
    score: float
    is_strong: bool
    contributions: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "pattern": self.pattern.value,
            "score": self.score,
            "is_strong": self.is_strong,
            "contributions": [c.to_dict() for c in self.contributions],
        }


@dataclass
class PatternClassificationResult:
    """Classification of one wallet."""
    wallet_address: str
    primary_pattern: TradingPatternType
    secondary_patterns: list
    confidence: PatternConfidence
    match_score: float
    pattern_matches: list
    features: TradingFeatures
    risk_flags: list
    risk_score: float
    insights: list
    trade_count: int
    classified_at: datetime

    def to_dict(self) -> dict:
        return {
            "wallet_address": self.wallet_address,
            "primary_pattern": self.primary_pattern.value,
            "secondary_patterns": [p.value for p in self.secondary_patterns],
            "confidence": self.confidence.value,
            "match_score": self.match_score,
            "pattern_matches": [m.to_dict() for m in self.pattern_matches],
            "features": self.features.to_dict(),
            "risk_flags": [f.value for f in self.risk_flags],
            "risk_score": self.risk_score,
            "insights": list(self.insights),
            "trade_count": self.trade_count,
            "classified_at": self.classified_at.isoformat(),
        }


@dataclass
class BatchClassificationResult:
    results: dict = field(default_factory=dict)   # wallet -> PatternClassificationResult
    errors: dict = field(default_factory=dict)    # wallet -> message
    skipped: list = field(default_factory=list)   # wallets with too few trades

    @property
    def success_count(self) -> int:
        return len(self.results)

    @property
    def error_count(self) -> int:
        return len(self.errors)


# ============================================================================
# Feature extraction
# ============================================================================

def _is_off_hours(ts: datetime) -> bool:
    return not (MARKET_HOURS_START_UTC <= ts.hour < MARKET_HOURS_END_UTC)


def category_specialization(categories: list[str]) -> float:
    """Normalized Herfindahl index over categories. Trades without a category are excluded."""
    counts = Counter(c for c in categories if c)
    total = sum(counts.values())
    if total == 0:
        return 0.0
    if len(counts) <= 1:
        return 1.0
    hhi = sum((n / total) ** 2 for n in counts.values())
    floor = 1 / len(counts)
    return (hhi - floor) / (1 - floor)


def profit_factor(pnls: list[float]) -> float:
    gross_profit = sum(p for p in pnls if p > 0)
    gross_loss = -sum(p for p in pnls if p < 0)
    if gross_loss > 0:
        return gross_profit / gross_loss
    return 10.0 if gross_profit > 0 else 0.0


def extract_features(trades: list[PatternTrade], config: TradingPatternConfig) -> TradingFeatures:
    """
    Extract the feature vector from valid, time-ordered trades.

    Args:
        trades: Trades with positive size and a timestamp, sorted by time.
        config: Classifier config.

    Returns:
        TradingFeatures
    """
    n = len(trades)
    sizes = [t.size_usd for t in trades]
    times = [t.timestamp for t in trades]

    span_days = (times[-1] - times[0]).total_seconds() / 86400
    days_active = max(1.0, span_days)

    gaps_hours = [(b - a).total_seconds() / 3600 for a, b in zip(times, times[1:])]
    avg_gap = mean(gaps_hours)
    # A position is held roughly two gaps: opened, then closed on a later trade
    avg_holding = avg_gap * 2

    size_cov = coefficient_of_variation(sizes)
    size_consistency = 0.0 if size_cov is None else max(0.0, 1 - min(1.0, size_cov))

    gap_cov = coefficient_of_variation(gaps_hours) if len(gaps_hours) >= 2 else None
    timing_consistency = 0.0 if gap_cov is None else max(0.0, 1 - min(1.0, gap_cov))

    decided = []
    for t in trades:
        if t.pnl is not None:
            decided.append(t.pnl > 0)
        elif t.is_winner is not None:
            decided.append(t.is_winner)
    win_rate = sum(decided) / len(decided) if decided else 0.0

    market_counts = Counter(t.market_id for t in trades)
    reversals = sum(1 for a, b in zip(trades, trades[1:]) if a.side != b.side)
    pre_event = sum(
        1 for t in trades
        if "pre_event" in t.flags
        or (t.time_to_resolution_hours is not None
            and t.time_to_resolution_hours < config.PRE_EVENT_WINDOW_HOURS)
    )

    clustering = 1 - min(1.0, std_dev(gaps_hours) / (avg_holding or 1)) if gaps_hours else 0.0

    return TradingFeatures(
        trade_count=n,
        trade_frequency=n / days_active,
        avg_holding_period_hours=avg_holding,
        size_consistency=size_consistency,
        timing_consistency=timing_consistency,
        win_rate=win_rate,
        off_hours_ratio=sum(1 for ts in times if _is_off_hours(ts)) / n,
        market_concentration=market_counts.most_common(1)[0][1] / n,
        category_specialization=category_specialization([t.market_category for t in trades]),
        buy_percentage=sum(1 for t in trades if t.side == TradeSide.BUY) / n,
        maker_ratio=sum(1 for t in trades if t.is_maker) / n,
        pre_event_ratio=pre_event / n,
        trade_clustering=max(0.0, clustering),
        profit_factor=profit_factor([t.pnl for t in trades if t.pnl is not None]),
        size_percentile=min(1.0, median(sizes) / config.SIZE_PERCENTILE_REFERENCE_USD),
        reversal_rate=reversals / (n - 1) if n > 1 else 0.0,
        avg_trade_size=mean(sizes),
        max_trade_size=max(sizes),
        total_volume=sum(sizes),
        unique_markets=len(market_counts),
        days_active=days_active,
    )


# ============================================================================
# Pattern matching
# ============================================================================

def normalize_feature_value(value: float, min_value: Optional[float], max_value: Optional[float]) -> float:
    """
    Score how well a value satisfies a requirement, in [0, 1].

    Values inside the bounds score at least 0.5 and rise the further they
    sit from the bound; values outside fall off toward 0.
    """
    if min_value is not None and max_value is not None:
        if value < min_value or value > max_value:
            return 0.0
        mid = (min_value + max_value) / 2
        half_range = (max_value - min_value) / 2
        if half_range == 0:
            return 1.0
        return max(0.0, 1 - abs(value - mid) / half_range * 0.5)

    if min_value is not None:
        if min_value == 0:
            return 1.0
        if value < min_value:
            return max(0.0, value / min_value)
        return min(1.0, 0.5 + (value - min_value) / (min_value * 2) * 0.5)

    if max_value is not None:
        if max_value == 0:
            return 1.0 if value <= 0 else 0.0
        if value > max_value:
            return max(0.0, 1 - (value - max_value) / max_value)
        return min(1.0, 0.5 + (max_value - value) / max_value * 0.5)

    return 0.5


def match_pattern(definition: PatternDefinition, features: TradingFeatures) -> PatternMatch:
    total_weight = 0.0
    weighted = 0.0
    contributions = []
    for req in definition.requirements:
        value = features.value_for(req.feature)
        norm = normalize_feature_value(value, req.min, req.max)
        total_weight += req.weight
        weighted += norm * req.weight
        contributions.append(FeatureContribution(
            feature=req.feature,
            value=value,
            contribution=req.weight * norm * 100,
            is_strong=norm >= 0.7,
        ))
    score = round(weighted / total_weight * 100) if total_weight > 0 else 0
    return PatternMatch(
        pattern=definition.pattern,
        score=score,
        is_strong=score >= definition.min_score,
        contributions=contributions,
    )


# ============================================================================
# Classifier
# ============================================================================

class TradingPatternClassifier(EventSource):
    """
    Classifies wallets into trading archetypes.

    Events:
        classified(PatternClassificationResult)
        high-risk(PatternClassificationResult)
        potential-insider(PatternClassificationResult)
        classification-updated(PatternClassificationResult, new_trade_count)
    """

    EVENTS = ("classified", "high-risk", "potential-insider", "classification-updated")

    def __init__(
        self,
        config: Optional[TradingPatternConfig] = None,
        pattern_definitions: Optional[list[PatternDefinition]] = None,
    ):
        self.config = config or TradingPatternConfig()
        self.events = ListenerRegistry(self.EVENTS, enabled=self.config.ENABLE_EVENTS)
        self._definitions = copy.deepcopy(pattern_definitions or PATTERN_DEFINITIONS)
        # wallet -> (result, cached_at monotonic seconds)
        self._cache: "OrderedDict[str, tuple]" = OrderedDict()
        self._trades: dict[str, list[PatternTrade]] = {}

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def _valid_trades(self, trades: list[PatternTrade]) -> list[PatternTrade]:
        valid = [t for t in trades if t.size_usd > 0 and t.timestamp is not None]
        return sorted(valid, key=lambda t: t.timestamp)

    def _confidence(self, trade_count: int) -> PatternConfidence:
        counts = self.config.CONFIDENCE_TRADE_COUNTS
        for level in (PatternConfidence.VERY_HIGH, PatternConfidence.HIGH,
                      PatternConfidence.MEDIUM, PatternConfidence.LOW):
            if trade_count >= counts[level]:
                return level
        return PatternConfidence.VERY_LOW

    def _risk_flags(
        self,
        trades: list[PatternTrade],
        features: TradingFeatures,
        primary: Optional[PatternDefinition],
    ) -> list[PatternRiskFlag]:
        cfg = self.config
        flags = []

        if features.win_rate >= cfg.HIGH_WIN_RATE_THRESHOLD:
            flags.append(PatternRiskFlag.HIGH_WIN_RATE)
        if features.pre_event_ratio >= 0.3:
            flags.append(PatternRiskFlag.PRE_NEWS_TRADING)

        large_resolved = [
            t for t in trades if t.size_usd >= cfg.LARGE_TRADE_THRESHOLD_USD and t.pnl is not None
        ]
        if len(large_resolved) >= 5:
            wins = sum(1 for t in large_resolved if t.pnl > 0)
            if wins / len(large_resolved) >= 0.85:
                flags.append(PatternRiskFlag.PERFECT_TIMING)

        if features.timing_consistency >= 0.85 and features.size_consistency >= 0.85:
            flags.append(PatternRiskFlag.BOT_PRECISION)
        if features.off_hours_ratio >= 0.5:
            flags.append(PatternRiskFlag.UNUSUAL_TIMING)
        if features.days_active < 7 and trades[0].size_usd >= cfg.LARGE_TRADE_THRESHOLD_USD:
            flags.append(PatternRiskFlag.FRESH_WALLET_ACTIVITY)
        if features.category_specialization >= 0.8 and features.profit_factor >= 2:
            flags.append(PatternRiskFlag.HIGH_RISK_CONCENTRATION)
        if sum(1 for t in trades if "coordinated" in t.flags) >= 3:
            flags.append(PatternRiskFlag.COORDINATED_TRADING)
        if (features.win_rate >= 0.7 and features.category_specialization >= 0.6
                and features.pre_event_ratio >= 0.2):
            flags.append(PatternRiskFlag.INFO_ASYMMETRY)

        if primary is not None:
            for flag in primary.risk_flags:
                if flag not in flags:
                    flags.append(flag)
        return flags

    @staticmethod
    def _risk_score(
        flags: list[PatternRiskFlag],
        primary_pattern: TradingPatternType,
        features: TradingFeatures,
    ) -> float:
        score = sum(RISK_FLAG_SCORES.get(flag, 5) for flag in flags)
        if primary_pattern == TradingPatternType.POTENTIAL_INSIDER:
            score += 20
        if PatternRiskFlag.HIGH_WIN_RATE in flags and PatternRiskFlag.PRE_NEWS_TRADING in flags:
            score += 15
        if PatternRiskFlag.PERFECT_TIMING in flags and PatternRiskFlag.FRESH_WALLET_ACTIVITY in flags:
            score += 15
        if features.profit_factor >= 3 and features.win_rate >= 0.7:
            score += 10
        return float(min(100, round(score)))

    def _insights(
        self,
        primary_pattern: TradingPatternType,
        features: TradingFeatures,
        flags: list[PatternRiskFlag],
        other_matches: list[PatternMatch],
    ) -> list[str]:
        insights = []
        if primary_pattern != TradingPatternType.UNKNOWN:
            insights.append(f"Primary pattern: {primary_pattern.value.replace('_', ' ')}")

        if features.trade_frequency >= 5:
            insights.append(f"High-frequency trader: {features.trade_frequency:.1f} trades/day")
        elif features.trade_frequency <= 0.5:
            insights.append(f"Low-frequency trader: {features.trade_frequency:.2f} trades/day")

        if features.win_rate >= 0.7:
            insights.append(f"Strong win rate: {features.win_rate * 100:.0f}%")
        if features.profit_factor >= 2:
            insights.append(f"High profit factor: {features.profit_factor:.1f}")
        if features.market_concentration >= 0.7:
            insights.append(f"Concentrated in few markets: {features.market_concentration * 100:.0f}%")
        if features.category_specialization >= 0.7:
            insights.append("Specialized in a single market category")

        insights.extend(RISK_FLAG_INSIGHTS[flag] for flag in flags)

        secondary = [m.pattern.value.replace("_", " ") for m in other_matches[:2] if m.score >= 50]
        if secondary:
            insights.append(f"Secondary patterns: {', '.join(secondary)}")
        return insights

    def classify(
        self,
        wallet_address: str,
        trades: list[PatternTrade],
        now: Optional[datetime] = None,
    ) -> Optional[PatternClassificationResult]:
        """
        Classify a wallet from its trades.

        Args:
            wallet_address: Wallet address; stored in checksum form.
            trades: Trades to classify. Non-positive sizes and trades without a
                timestamp are dropped.
            now: Classification time.

        Returns:
            PatternClassificationResult, or None when fewer than MIN_TRADES remain.

        Raises:
            InvalidAddressError: If the address is not a valid wallet address.
        """
        wallet = checksum_address(wallet_address)
        valid = self._valid_trades(trades)
        if len(valid) < self.config.MIN_TRADES:
            logger.debug(f"Skipping {wallet}: {len(valid)} valid trades")
            return None

        features = extract_features(valid, self.config)
        # sorted() is stable, so equal scores keep declaration order
        matches = sorted(
            (match_pattern(d, features) for d in self._definitions),
            key=lambda m: m.score,
            reverse=True,
        )
        by_pattern = {d.pattern: d for d in self._definitions}

        primary_match = next((m for m in matches if m.is_strong), None)
        if primary_match is not None:
            primary_pattern = primary_match.pattern
            primary_def = by_pattern[primary_pattern]
            match_score = primary_match.score
        else:
            primary_pattern = TradingPatternType.UNKNOWN
            primary_def = None
            match_score = 0.0
        others = [m for m in matches if m is not primary_match]

        secondary = [m.pattern for m in others[:3] if m.score >= 40]
        flags = self._risk_flags(valid, features, primary_def)
        result = PatternClassificationResult(
            wallet_address=wallet,
            primary_pattern=primary_pattern,
            secondary_patterns=secondary,
            confidence=self._confidence(len(valid)),
            match_score=match_score,
            pattern_matches=matches,
            features=features,
            risk_flags=flags,
            risk_score=self._risk_score(flags, primary_pattern, features),
            insights=self._insights(primary_pattern, features, flags, others),
            trade_count=len(valid),
            classified_at=now or utc_now(),
        )

        self._trades[wallet] = list(valid)
        self._store(wallet, result)

        logger.debug(
            f"Classified {wallet} as {primary_pattern.value} "
            f"(score {match_score}, risk {result.risk_score})"
        )
        self.events.emit("classified", copy.deepcopy(result))
        if result.risk_score >= self.config.HIGH_RISK_SCORE:
            self.events.emit("high-risk", copy.deepcopy(result))
        if primary_pattern == TradingPatternType.POTENTIAL_INSIDER:
            logger.warning(f"Potential insider pattern for {wallet}")
            self.events.emit("potential-insider", copy.deepcopy(result))
        return result

    def update_classification(
        self,
        wallet_address: str,
        new_trades: list[PatternTrade],
        now: Optional[datetime] = None,
    ) -> Optional[PatternClassificationResult]:
        """Merge new trades (deduplicated by trade_id) into the wallet's history and reclassify."""
        wallet = checksum_address(wallet_address)
        existing = self._trades.get(wallet, [])
        seen = {t.trade_id for t in existing}
        added = [t for t in new_trades if t.trade_id not in seen]

        if not added and wallet in self._cache:
            return self.get_classification(wallet)

        result = self.classify(wallet, existing + added, now=now)
        if result is not None:
            self.events.emit("classification-updated", copy.deepcopy(result), len(added))
        return result

    def classify_batch(
        self,
        trades_by_wallet: dict[str, list[PatternTrade]],
        now: Optional[datetime] = None,
    ) -> BatchClassificationResult:
        batch = BatchClassificationResult()
        for wallet, trades in trades_by_wallet.items():
            try:
                result = self.classify(wallet, trades, now=now)
            except Exception as e:
                logger.exception(f"Error classifying trades for {wallet}")
                batch.errors[wallet] = str(e)
                continue
            if result is None:
                batch.skipped.append(wallet)
            else:
                batch.results[result.wallet_address] = result
        logger.info(
            f"Classified {batch.success_count} wallets "
            f"({len(batch.skipped)} skipped, {batch.error_count} errors)"
        )
        return batch

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _store(self, wallet: str, result: PatternClassificationResult) -> None:
        self._cache[wallet] = (result, time.monotonic())
        self._cache.move_to_end(wallet)
        while len(self._cache) > self.config.MAX_CACHED_CLASSIFICATIONS:
            evicted, _ = self._cache.popitem(last=False)
            self._trades.pop(evicted, None)

    def _live_results(self) -> list[PatternClassificationResult]:
        cutoff = time.monotonic() - self.config.CACHE_TTL_SECONDS
        return [result for result, cached_at in self._cache.values() if cached_at >= cutoff]

    def get_classification(self, wallet_address: str) -> Optional[PatternClassificationResult]:
        """Cached classification, or None when missing or expired."""
        try:
            wallet = checksum_address(wallet_address)
        except ValueError:
            return None
        entry = self._cache.get(wallet)
        if entry is None:
            return None
        result, cached_at = entry
        if time.monotonic() - cached_at > self.config.CACHE_TTL_SECONDS:
            del self._cache[wallet]
            return None
        self._cache.move_to_end(wallet)
        return copy.deepcopy(result)

    def has_classification(self, wallet_address: str) -> bool:
        return self.get_classification(wallet_address) is not None

    def remove_classification(self, wallet_address: str) -> bool:
        try:
            wallet = checksum_address(wallet_address)
        except ValueError:
            return False
        self._trades.pop(wallet, None)
        return self._cache.pop(wallet, None) is not None

    def get_classifications_by_pattern(self, pattern: TradingPatternType) -> list[PatternClassificationResult]:
        return copy.deepcopy([r for r in self._live_results() if r.primary_pattern == pattern])

    def get_high_risk_classifications(
        self, min_risk_score: Optional[float] = None
    ) -> list[PatternClassificationResult]:
        threshold = self.config.HIGH_RISK_SCORE if min_risk_score is None else min_risk_score
        results = [r for r in self._live_results() if r.risk_score >= threshold]
        return copy.deepcopy(sorted(results, key=lambda r: r.risk_score, reverse=True))

    def get_potential_insiders(self) -> list[PatternClassificationResult]:
        return self.get_classifications_by_pattern(TradingPatternType.POTENTIAL_INSIDER)

    def get_all_classifications(self) -> list[PatternClassificationResult]:
        return copy.deepcopy(self._live_results())

    def get_summary(self) -> dict:
        results = self._live_results()
        by_pattern = Counter(r.primary_pattern.value for r in results)
        by_confidence = Counter(r.confidence.value for r in results)
        flag_counts = Counter(f.value for r in results for f in r.risk_flags)
        return {
            "total_classifications": len(results),
            "by_pattern": dict(by_pattern),
            "by_confidence": dict(by_confidence),
            "avg_risk_score": mean([r.risk_score for r in results]),
            "high_risk_count": sum(1 for r in results if r.risk_score >= self.config.HIGH_RISK_SCORE),
            "top_risk_flags": [{"flag": f, "count": n} for f, n in flag_counts.most_common(10)],
            "total_trades_analyzed": sum(r.trade_count for r in results),
        }

    def clear_cache(self) -> None:
        self._cache.clear()
        self._trades.clear()

    # ------------------------------------------------------------------
    # Pattern definitions
    # ------------------------------------------------------------------

    def add_pattern_definition(self, definition: PatternDefinition) -> None:
        """Add a definition, replacing any existing one for the same pattern."""
        self._definitions = [d for d in self._definitions if d.pattern != definition.pattern]
        self._definitions.append(copy.deepcopy(definition))
        self._cache.clear()

    def get_pattern_definitions(self) -> list[PatternDefinition]:
        return copy.deepcopy(self._definitions)


# ============================================================================
# Module helpers
# ============================================================================

def is_suspicious_pattern(pattern: TradingPatternType) -> bool:
    return pattern in SUSPICIOUS_PATTERNS


def get_pattern_description(pattern: TradingPatternType) -> str:
    return PATTERN_DESCRIPTIONS[pattern]


_shared = SharedInstance(
    lambda: TradingPatternClassifier(TradingPatternConfig.from_settings()),
    on_reset=lambda classifier: classifier.clear_cache(),
)


def create_trading_pattern_classifier(config: Optional[TradingPatternConfig] = None) -> TradingPatternClassifier:
    return TradingPatternClassifier(config)


def get_shared_trading_pattern_classifier() -> TradingPatternClassifier:
    return _shared.get()


def set_shared_trading_pattern_classifier(classifier: TradingPatternClassifier) -> None:
    _shared.set(classifier)


def reset_shared_trading_pattern_classifier() -> None:
    _shared.reset()
