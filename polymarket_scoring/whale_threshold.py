"""
Whale Threshold Calculator for Polymarket Scoring.

Turns liquidity and volume snapshots into tiered trade-size thresholds
(NOTABLE < LARGE < VERY_LARGE < WHALE < MEGA_WHALE) per market.

Strategies:
- Liquidity percentage: tiers are a share of total order book liquidity
- Volume percentage: tiers are a share of average daily volume
- Market impact: tiers are the size needed to move price by N percent
- Combined: weighted blend of the three above (default)
- Fixed: static dollar amounts

Thresholds are scaled down for thin markets, clamped into per-tier
bounds, forced into ascending order and cached per market.
"""

import copy
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from .config import settings
from .events import EventSource, ListenerRegistry
from .models import LiquiditySnapshot, VolumeSnapshot
from .rolling_volume import RollingVolumeTracker, RollingWindow
from .shared import SharedInstance
from .utils import utc_now

logger = logging.getLogger(__name__)


class LiquidityLevel(Enum):
    """Classification of a market's order book depth."""
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class ThresholdStrategy(Enum):
    """How thresholds are derived for a market."""
    LIQUIDITY_PERCENTAGE = "liquidity_percentage"
    VOLUME_PERCENTAGE = "volume_percentage"
    MARKET_IMPACT = "market_impact"
    COMBINED = "combined"
    FIXED = "fixed"


class WhaleThresholdTier(Enum):
    """Trade size tiers, smallest first."""
    NOTABLE = "notable"
    LARGE = "large"
    VERY_LARGE = "very_large"
    WHALE = "whale"
    MEGA_WHALE = "mega_whale"


TIERS: list[WhaleThresholdTier] = list(WhaleThresholdTier)


def _tier_table(values: tuple) -> dict:
    return dict(zip(TIERS, values))


DEFAULT_LIQUIDITY_PERCENTAGES = _tier_table((0.5, 1.0, 3.0, 5.0, 10.0))
DEFAULT_VOLUME_PERCENTAGES = _tier_table((0.1, 0.5, 1.0, 2.0, 5.0))
DEFAULT_IMPACT_THRESHOLDS = _tier_table((0.1, 0.5, 1.0, 2.0, 5.0))   # Percent price impact
DEFAULT_FIXED_THRESHOLDS = _tier_table((1000.0, 10000.0, 50000.0, 100000.0, 500000.0))
DEFAULT_MINIMUM_THRESHOLDS = _tier_table((100.0, 1000.0, 5000.0, 10000.0, 50000.0))
DEFAULT_MAXIMUM_THRESHOLDS = _tier_table((10000.0, 100000.0, 500000.0, 2000000.0, 10000000.0))
# Liquidity share used when the order book carries no depth data
IMPACT_FALLBACK_FRACTIONS = _tier_table((0.001, 0.005, 0.01, 0.02, 0.05))


@dataclass
class WhaleThresholdConfig:
    """Configuration for whale threshold calculation."""

    STRATEGY: ThresholdStrategy = ThresholdStrategy.COMBINED
    LIQUIDITY_PERCENTAGES: dict = None
    VOLUME_PERCENTAGES: dict = None
    IMPACT_THRESHOLDS: dict = None
    FIXED_THRESHOLDS: dict = None
    MINIMUM_THRESHOLDS: dict = None
    MAXIMUM_THRESHOLDS: dict = None
    COMBINED_WEIGHTS: dict = None    # {"liquidity": .4, "volume": .4, "impact": .2}

    # Liquidity classification upper bounds (USD)
    VERY_LOW_LIQUIDITY: float = 10000.0
    LOW_LIQUIDITY: float = 50000.0
    MEDIUM_LIQUIDITY: float = 200000.0
    HIGH_LIQUIDITY: float = 1000000.0
    LOW_LIQUIDITY_SCALE_FACTOR: float = 0.5

    CACHE_TTL_SECONDS: int = 300
    MAX_CACHE_SIZE: int = 1000
    MAX_CHANGE_EVENTS: int = 100
    SIGNIFICANT_CHANGE_PERCENT: float = 10.0
    ENABLE_EVENTS: bool = True

    def __post_init__(self):
        if self.LIQUIDITY_PERCENTAGES is None:
            self.LIQUIDITY_PERCENTAGES = dict(DEFAULT_LIQUIDITY_PERCENTAGES)
        if self.VOLUME_PERCENTAGES is None:
            self.VOLUME_PERCENTAGES = dict(DEFAULT_VOLUME_PERCENTAGES)
        if self.IMPACT_THRESHOLDS is None:
            self.IMPACT_THRESHOLDS = dict(DEFAULT_IMPACT_THRESHOLDS)
        if self.FIXED_THRESHOLDS is None:
            self.FIXED_THRESHOLDS = dict(DEFAULT_FIXED_THRESHOLDS)
        if self.MINIMUM_THRESHOLDS is None:
            self.MINIMUM_THRESHOLDS = dict(DEFAULT_MINIMUM_THRESHOLDS)
        if self.MAXIMUM_THRESHOLDS is None:
            self.MAXIMUM_THRESHOLDS = dict(DEFAULT_MAXIMUM_THRESHOLDS)
        if self.COMBINED_WEIGHTS is None:
            self.COMBINED_WEIGHTS = {"liquidity": 0.4, "volume": 0.4, "impact": 0.2}

    @classmethod
    def from_settings(cls) -> "WhaleThresholdConfig":
        return cls(ENABLE_EVENTS=settings.enable_events)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class WhaleThresholds:
    """Tiered thresholds for one market."""
    market_id: str
    thresholds: dict                 # WhaleThresholdTier -> USD
    strategy: ThresholdStrategy
    liquidity_level: LiquidityLevel
    confidence: float
    calculated_at: datetime
    expires_at: datetime
    from_cache: bool = False
    liquidity: Optional[LiquiditySnapshot] = None
    volume: Optional[VolumeSnapshot] = None

    @property
    def notable_threshold_usd(self) -> float:
        return self.thresholds[WhaleThresholdTier.NOTABLE]

    @property
    def large_threshold_usd(self) -> float:
        return self.thresholds[WhaleThresholdTier.LARGE]

    @property
    def very_large_threshold_usd(self) -> float:
        return self.thresholds[WhaleThresholdTier.VERY_LARGE]

    @property
    def whale_threshold_usd(self) -> float:
        return self.thresholds[WhaleThresholdTier.WHALE]

    @property
    def mega_whale_threshold_usd(self) -> float:
        return self.thresholds[WhaleThresholdTier.MEGA_WHALE]

    def tier_for(self, trade_size_usd: float) -> Optional[WhaleThresholdTier]:
        for tier in reversed(TIERS):
            if trade_size_usd >= self.thresholds[tier]:
                return tier
        return None

    def to_dict(self) -> dict:
        return {
            "market_id": self.market_id,
            "thresholds": {t.value: round(v, 2) for t, v in self.thresholds.items()},
            "strategy": self.strategy.value,
            "liquidity_level": self.liquidity_level.value,
            "confidence": round(self.confidence, 4),
            "calculated_at": self.calculated_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "from_cache": self.from_cache,
        }


@dataclass
class ThresholdChangeEvent:
    """Recorded when a recalculation moves any tier by a significant amount."""
    market_id: str
    previous_thresholds: WhaleThresholds
    new_thresholds: WhaleThresholds
    change_magnitude: dict           # WhaleThresholdTier -> percent change
    change_reason: str
    changed_at: datetime

    def to_dict(self) -> dict:
        return {
            "market_id": self.market_id,
            "previous_thresholds": self.previous_thresholds.to_dict(),
            "new_thresholds": self.new_thresholds.to_dict(),
            "change_magnitude": {t.value: round(v, 2) for t, v in self.change_magnitude.items()},
            "change_reason": self.change_reason,
            "changed_at": self.changed_at.isoformat(),
        }


@dataclass
class BatchThresholdResult:
    results: dict = field(default_factory=dict)   # market_id -> WhaleThresholds
    errors: dict = field(default_factory=dict)    # market_id -> message

    @property
    def success_count(self) -> int:
        return len(self.results)

    @property
    def error_count(self) -> int:
        return len(self.errors)


# ============================================================================
# Strategy helpers
# ============================================================================

def classify_liquidity(total_liquidity_usd: float, config: WhaleThresholdConfig) -> LiquidityLevel:
    if total_liquidity_usd < config.VERY_LOW_LIQUIDITY:
        return LiquidityLevel.VERY_LOW
    if total_liquidity_usd < config.LOW_LIQUIDITY:
        return LiquidityLevel.LOW
    if total_liquidity_usd < config.MEDIUM_LIQUIDITY:
        return LiquidityLevel.MEDIUM
    if total_liquidity_usd < config.HIGH_LIQUIDITY:
        return LiquidityLevel.HIGH
    return LiquidityLevel.VERY_HIGH


def liquidity_based_thresholds(liquidity: LiquiditySnapshot, percentages: dict) -> dict:
    total = liquidity.total_liquidity_usd
    return {tier: total * percentages[tier] / 100 for tier in TIERS}


def volume_based_thresholds(volume: VolumeSnapshot, percentages: dict) -> dict:
    # 7-day average is steadier; fall back to the last 24h
    daily = volume.avg_daily_volume_7d_usd if volume.avg_daily_volume_7d_usd > 0 else volume.volume_24h_usd
    return {tier: daily * percentages[tier] / 100 for tier in TIERS}


def impact_based_thresholds(liquidity: LiquiditySnapshot, impact_percentages: dict) -> dict:
    """
    Estimate the trade size that moves price by each tier's impact percentage.

    Interpolates linearly between the order book depth at 1% and 5%.
    """
    vol1 = min(liquidity.bid_volume_at_1_percent, liquidity.ask_volume_at_1_percent)
    vol5 = min(liquidity.bid_volume_at_5_percent, liquidity.ask_volume_at_5_percent)

    if vol1 == 0 and vol5 == 0:
        total = liquidity.total_liquidity_usd
        return {tier: total * IMPACT_FALLBACK_FRACTIONS[tier] for tier in TIERS}

    def interpolate(target: float) -> float:
        if target <= 1:
            return vol1 * target
        if target >= 5:
            return vol5
        return vol1 + (vol5 - vol1) * (target - 1) / 4

    return {tier: interpolate(impact_percentages[tier]) for tier in TIERS}


def combine_thresholds(tables: list[dict], weights: list[float]) -> dict:
    total_weight = sum(weights)
    if total_weight == 0:
        return dict(tables[0]) if tables else dict(DEFAULT_FIXED_THRESHOLDS)
    return {
        tier: sum(table[tier] * weight for table, weight in zip(tables, weights)) / total_weight
        for tier in TIERS
    }


def ensure_ascending_order(thresholds: dict) -> dict:
    """Raise any tier that does not exceed its predecessor to 1.5x the predecessor."""
    result = dict(thresholds)
    for previous, current in zip(TIERS, TIERS[1:]):
        if result[current] <= result[previous]:
            result[current] = result[previous] * 1.5
    return result


def calculate_confidence(
    liquidity: Optional[LiquiditySnapshot],
    volume: Optional[VolumeSnapshot],
    strategy: ThresholdStrategy,
) -> float:
    """Confidence in [0, 1] based on how much input data was available."""
    if strategy == ThresholdStrategy.FIXED:
        return 1.0

    score = 0.0
    factors = 0
    if liquidity is not None:
        factors += 1
        if liquidity.total_liquidity_usd > 0:
            score += 0.3
        if liquidity.bid_level_count > 5 and liquidity.ask_level_count > 5:
            score += 0.2
        if liquidity.bid_volume_at_1_percent > 0 or liquidity.ask_volume_at_1_percent > 0:
            score += 0.2
        if liquidity.spread_percent is not None and liquidity.spread_percent < 10:
            score += 0.1
    if volume is not None:
        factors += 1
        if volume.volume_24h_usd > 0:
            score += 0.2
        if volume.avg_daily_volume_7d_usd > 0:
            score += 0.3
        if volume.trade_count > 100:
            score += 0.2
        if volume.p99_trade_size_usd > 0:
            score += 0.1

    if factors == 0:
        return 0.1
    return min(1.0, score / factors)


def change_magnitude(previous: WhaleThresholds, new: WhaleThresholds) -> dict:
    """Absolute percent change per tier."""
    result = {}
    for tier in TIERS:
        old_val = previous.thresholds[tier]
        new_val = new.thresholds[tier]
        if old_val == 0:
            result[tier] = 0.0 if new_val == 0 else 100.0
        else:
            result[tier] = abs((new_val - old_val) / old_val * 100)
    return result


# ============================================================================
# Calculator
# ============================================================================

class WhaleThresholdCalculator(EventSource):
    """
    Calculates dynamic whale thresholds per market.

    Events:
        threshold-changed(ThresholdChangeEvent)
    """

    EVENTS = ("threshold-changed",)

    def __init__(self, config: Optional[WhaleThresholdConfig] = None):
        """
        Initialize the calculator.

        Args:
            config: Threshold configuration. Defaults to WhaleThresholdConfig().
        """
        self.config = config or WhaleThresholdConfig()
        self.events = ListenerRegistry(self.EVENTS, enabled=self.config.ENABLE_EVENTS)
        self._cache: "OrderedDict[str, WhaleThresholds]" = OrderedDict()
        self._change_events: deque = deque(maxlen=self.config.MAX_CHANGE_EVENTS)
        self._cache_hits = 0
        self._cache_misses = 0

    def get_config(self) -> WhaleThresholdConfig:
        return copy.deepcopy(self.config)

    def update_config(self, **updates) -> None:
        """Update configuration fields by name. Clears the cache."""
        for key, value in updates.items():
            if not hasattr(self.config, key):
                raise ValueError(f"Unknown threshold config field: {key}")
            setattr(self.config, key, value)
        self._cache.clear()
        self._change_events = deque(self._change_events, maxlen=self.config.MAX_CHANGE_EVENTS)

    def _raw_thresholds(
        self,
        strategy: ThresholdStrategy,
        liquidity: Optional[LiquiditySnapshot],
        volume: Optional[VolumeSnapshot],
    ) -> dict:
        cfg = self.config
        if strategy == ThresholdStrategy.LIQUIDITY_PERCENTAGE and liquidity is not None:
            return liquidity_based_thresholds(liquidity, cfg.LIQUIDITY_PERCENTAGES)
        if strategy == ThresholdStrategy.VOLUME_PERCENTAGE and volume is not None:
            return volume_based_thresholds(volume, cfg.VOLUME_PERCENTAGES)
        if strategy == ThresholdStrategy.MARKET_IMPACT and liquidity is not None:
            return impact_based_thresholds(liquidity, cfg.IMPACT_THRESHOLDS)
        if strategy == ThresholdStrategy.COMBINED:
            tables, weights = [], []
            if liquidity is not None:
                tables.append(liquidity_based_thresholds(liquidity, cfg.LIQUIDITY_PERCENTAGES))
                weights.append(cfg.COMBINED_WEIGHTS["liquidity"])
            if volume is not None:
                tables.append(volume_based_thresholds(volume, cfg.VOLUME_PERCENTAGES))
                weights.append(cfg.COMBINED_WEIGHTS["volume"])
            if liquidity is not None:
                tables.append(impact_based_thresholds(liquidity, cfg.IMPACT_THRESHOLDS))
                weights.append(cfg.COMBINED_WEIGHTS["impact"])
            if tables:
                return combine_thresholds(tables, weights)
        return dict(cfg.FIXED_THRESHOLDS)

    def calculate_thresholds(
        self,
        market_id: str,
        liquidity: Optional[LiquiditySnapshot] = None,
        volume: Optional[VolumeSnapshot] = None,
        strategy: Optional[ThresholdStrategy] = None,
        bypass_cache: bool = False,
        now: Optional[datetime] = None,
    ) -> WhaleThresholds:
        """
        Calculate whale thresholds for a market.

        Args:
            market_id: Market identifier.
            liquidity: Order book snapshot, if available.
            volume: Volume statistics, if available.
            strategy: Override the configured strategy.
            bypass_cache: Recalculate even when a fresh cached value exists.
            now: Calculation time. Defaults to now.

        Returns:
            WhaleThresholds for the market.
        """
        now = now or utc_now()
        cached = self._cache.get(market_id)

        if not bypass_cache:
            if cached is not None and cached.expires_at > now:
                self._cache_hits += 1
                hit = copy.deepcopy(cached)
                hit.from_cache = True
                return hit
            self._cache_misses += 1

        strategy = strategy or self.config.STRATEGY
        raw = self._raw_thresholds(strategy, liquidity, volume)

        level = (
            classify_liquidity(liquidity.total_liquidity_usd, self.config)
            if liquidity is not None
            else LiquidityLevel.MEDIUM
        )
        if level in (LiquidityLevel.VERY_LOW, LiquidityLevel.LOW):
            raw = {tier: value * self.config.LOW_LIQUIDITY_SCALE_FACTOR for tier, value in raw.items()}

        constrained = {
            tier: min(max(raw[tier], self.config.MINIMUM_THRESHOLDS[tier]), self.config.MAXIMUM_THRESHOLDS[tier])
            for tier in TIERS
        }

        result = WhaleThresholds(
            market_id=market_id,
            thresholds=ensure_ascending_order(constrained),
            strategy=strategy,
            liquidity_level=level,
            confidence=calculate_confidence(liquidity, volume, strategy),
            calculated_at=now,
            expires_at=now + timedelta(seconds=self.config.CACHE_TTL_SECONDS),
            liquidity=liquidity,
            volume=volume,
        )

        if cached is not None:
            self._record_change(cached, result)

        self._cache[market_id] = result
        self._cache.move_to_end(market_id)
        while len(self._cache) > self.config.MAX_CACHE_SIZE:
            self._cache.popitem(last=False)

        return copy.deepcopy(result)

    def _record_change(self, previous: WhaleThresholds, new: WhaleThresholds) -> None:
        magnitude = change_magnitude(previous, new)
        max_change = max(magnitude.values())
        if max_change < self.config.SIGNIFICANT_CHANGE_PERCENT:
            return

        event = ThresholdChangeEvent(
            market_id=new.market_id,
            previous_thresholds=copy.deepcopy(previous),
            new_thresholds=copy.deepcopy(new),
            change_magnitude=magnitude,
            change_reason=f"Threshold changed by {max_change:.1f}%",
            changed_at=new.calculated_at,
        )
        self._change_events.append(event)
        logger.info(f"Whale thresholds for {new.market_id} changed by {max_change:.1f}%")
        self.events.emit("threshold-changed", event)

    def calculate_from_tracker(
        self,
        market_id: str,
        tracker: RollingVolumeTracker,
        liquidity: Optional[LiquiditySnapshot] = None,
        strategy: Optional[ThresholdStrategy] = None,
        now: Optional[datetime] = None,
    ) -> WhaleThresholds:
        """
        Calculate thresholds using the tracker's 24h window as the volume input.

        Markets the tracker has no data for are calculated from liquidity alone.
        """
        now = now or utc_now()
        averages = tracker.get_rolling_averages(
            market_id, windows=[RollingWindow.TWENTY_FOUR_HOURS], as_of=now
        )
        volume = None
        if averages is not None:
            day = averages.window_results[RollingWindow.TWENTY_FOUR_HOURS]
            if day.data_point_count > 0:
                volume = VolumeSnapshot(
                    volume_24h_usd=day.total_volume,
                    avg_trade_size_usd=day.total_volume / day.data_point_count,
                    trade_count=day.data_point_count,
                    data_time=now,
                )
        return self.calculate_thresholds(
            market_id,
            liquidity=liquidity,
            volume=volume,
            strategy=strategy,
            bypass_cache=True,
            now=now,
        )

    def batch_calculate_thresholds(
        self,
        markets: list[dict],
        strategy: Optional[ThresholdStrategy] = None,
        bypass_cache: bool = False,
        now: Optional[datetime] = None,
    ) -> BatchThresholdResult:
        """
        Calculate thresholds for several markets.

        Args:
            markets: Dicts with `market_id` and optional `liquidity`/`volume` snapshots.

        Returns:
            BatchThresholdResult with per-market results and errors.
        """
        batch = BatchThresholdResult()
        for market in markets:
            market_id = market.get("market_id")
            try:
                batch.results[market_id] = self.calculate_thresholds(
                    market_id,
                    liquidity=market.get("liquidity"),
                    volume=market.get("volume"),
                    strategy=strategy,
                    bypass_cache=bypass_cache,
                    now=now,
                )
            except Exception as e:
                logger.exception(f"Error calculating thresholds for {market_id}")
                batch.errors[market_id] = str(e)
        logger.info(f"Calculated thresholds for {batch.success_count}/{len(markets)} markets")
        return batch

    def get_cached_thresholds(self, market_id: str, now: Optional[datetime] = None) -> Optional[WhaleThresholds]:
        now = now or utc_now()
        cached = self._cache.get(market_id)
        if cached is None or cached.expires_at <= now:
            return None
        hit = copy.deepcopy(cached)
        hit.from_cache = True
        return hit

    def is_whale_trade_size(self, market_id: str, trade_size_usd: float) -> bool:
        """True when a trade reaches the WHALE tier (fixed defaults when nothing is cached)."""
        thresholds = self.get_cached_thresholds(market_id)
        if thresholds is None:
            return trade_size_usd >= self.config.FIXED_THRESHOLDS[WhaleThresholdTier.WHALE]
        return trade_size_usd >= thresholds.whale_threshold_usd

    def get_tier_for_trade_size(self, market_id: str, trade_size_usd: float) -> Optional[WhaleThresholdTier]:
        """Highest tier reached by a trade, or None below NOTABLE."""
        thresholds = self.get_cached_thresholds(market_id)
        table = thresholds.thresholds if thresholds else self.config.FIXED_THRESHOLDS
        for tier in reversed(TIERS):
            if trade_size_usd >= table[tier]:
                return tier
        return None

    def get_summary(self, now: Optional[datetime] = None) -> dict:
        now = now or utc_now()
        valid = [t for t in self._cache.values() if t.expires_at > now]
        by_level = {level.value: 0 for level in LiquidityLevel}
        for t in valid:
            by_level[t.liquidity_level.value] += 1

        count = len(valid)
        averages = {
            tier.value: (sum(t.thresholds[tier] for t in valid) / count if count else 0.0)
            for tier in TIERS
        }
        requests = self._cache_hits + self._cache_misses
        return {
            "total_markets_tracked": count,
            "markets_by_liquidity_level": by_level,
            "average_thresholds": averages,
            "cache_stats": {
                "size": len(self._cache),
                "hit_rate": self._cache_hits / requests if requests else 0.0,
                "hits": self._cache_hits,
                "misses": self._cache_misses,
            },
            "recent_changes": [e.to_dict() for e in self._change_events],
            "last_update_time": max((t.calculated_at for t in valid), default=None),
        }

    def get_change_events(self) -> list[ThresholdChangeEvent]:
        return copy.deepcopy(list(self._change_events))

    def clear_cache(self) -> None:
        self._cache.clear()
        self._cache_hits = 0
        self._cache_misses = 0


# ============================================================================
# Shared instance
# ============================================================================

_shared = SharedInstance(
    lambda: WhaleThresholdCalculator(WhaleThresholdConfig.from_settings()),
    on_reset=lambda calculator: calculator.clear_cache(),
)


def create_whale_threshold_calculator(config: Optional[WhaleThresholdConfig] = None) -> WhaleThresholdCalculator:
    return WhaleThresholdCalculator(config)


def get_shared_whale_threshold_calculator() -> WhaleThresholdCalculator:
    return _shared.get()


def set_shared_whale_threshold_calculator(calculator: WhaleThresholdCalculator) -> None:
    _shared.set(calculator)


def reset_shared_whale_threshold_calculator() -> None:
    _shared.reset()
