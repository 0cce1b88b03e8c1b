"""
Tests for the whale threshold calculator.
"""

from datetime import timedelta

import pytest

from polymarket_scoring.models import LiquiditySnapshot, VolumeSnapshot
from polymarket_scoring.rolling_volume import RollingVolumeTracker
from polymarket_scoring.whale_threshold import (
    DEFAULT_FIXED_THRESHOLDS,
    DEFAULT_IMPACT_THRESHOLDS,
    DEFAULT_MINIMUM_THRESHOLDS,
    LiquidityLevel,
    ThresholdStrategy,
    WhaleThresholdCalculator,
    WhaleThresholdConfig,
    WhaleThresholdTier,
    classify_liquidity,
    ensure_ascending_order,
    impact_based_thresholds,
    volume_based_thresholds,
)


@pytest.fixture
def calculator():
    return WhaleThresholdCalculator()


def liquidity(total: float, **kwargs) -> LiquiditySnapshot:
    return LiquiditySnapshot(total_liquidity_usd=total, **kwargs)


class TestClassification:
    """Tests for liquidity classification."""

    def test_classify_liquidity_exact_thresholds(self):
        config = WhaleThresholdConfig()
        assert classify_liquidity(9999, config) == LiquidityLevel.VERY_LOW
        assert classify_liquidity(10000, config) == LiquidityLevel.LOW
        assert classify_liquidity(50000, config) == LiquidityLevel.MEDIUM
        assert classify_liquidity(200000, config) == LiquidityLevel.HIGH
        assert classify_liquidity(1000000, config) == LiquidityLevel.VERY_HIGH


class TestStrategyHelpers:
    """Tests for the per-strategy threshold tables."""

    def test_volume_falls_back_to_24h(self):
        volume = VolumeSnapshot(volume_24h_usd=100000)
        table = volume_based_thresholds(volume, {t: 1.0 for t in WhaleThresholdTier})
        assert table[WhaleThresholdTier.NOTABLE] == 1000.0

    def test_impact_interpolation(self):
        snapshot = liquidity(
            500000,
            bid_volume_at_1_percent=10000,
            ask_volume_at_1_percent=12000,
            bid_volume_at_5_percent=50000,
            ask_volume_at_5_percent=60000,
        )
        table = impact_based_thresholds(snapshot, DEFAULT_IMPACT_THRESHOLDS)
        assert table[WhaleThresholdTier.NOTABLE] == pytest.approx(1000)
        assert table[WhaleThresholdTier.VERY_LARGE] == pytest.approx(10000)
        assert table[WhaleThresholdTier.WHALE] == pytest.approx(20000)
        assert table[WhaleThresholdTier.MEGA_WHALE] == pytest.approx(50000)

    def test_impact_without_depth_uses_liquidity_share(self):
        table = impact_based_thresholds(liquidity(100000), DEFAULT_IMPACT_THRESHOLDS)
        assert table[WhaleThresholdTier.NOTABLE] == pytest.approx(100)
        assert table[WhaleThresholdTier.MEGA_WHALE] == pytest.approx(5000)

    def test_ensure_ascending_order(self):
        tiers = list(WhaleThresholdTier)
        result = ensure_ascending_order({t: 100.0 for t in tiers})
        values = [result[t] for t in tiers]
        assert values == [100.0, 150.0, 225.0, 337.5, 506.25]


class TestCalculateThresholds:
    """Tests for calculate_thresholds."""

    def test_fixed_without_data(self, calculator):
        result = calculator.calculate_thresholds("m1", strategy=ThresholdStrategy.FIXED)
        assert result.thresholds == DEFAULT_FIXED_THRESHOLDS
        assert result.confidence == 1.0
        assert result.liquidity_level == LiquidityLevel.MEDIUM

    def test_combined_without_data_uses_fixed(self, calculator):
        result = calculator.calculate_thresholds("m1")
        assert result.thresholds == DEFAULT_FIXED_THRESHOLDS
        assert result.confidence == pytest.approx(0.1)

    def test_liquidity_percentage(self, calculator):
        result = calculator.calculate_thresholds(
            "m1", liquidity=liquidity(1000000), strategy=ThresholdStrategy.LIQUIDITY_PERCENTAGE
        )
        assert result.liquidity_level == LiquidityLevel.VERY_HIGH
        assert result.notable_threshold_usd == 5000
        assert result.large_threshold_usd == 10000
        assert result.very_large_threshold_usd == 30000
        assert result.whale_threshold_usd == 50000
        assert result.mega_whale_threshold_usd == 100000

    def test_thin_market_scaled_then_clamped(self, calculator):
        """Test thin-market scaling before tier clamping."""
        result = calculator.calculate_thresholds(
            "m1", liquidity=liquidity(20000), strategy=ThresholdStrategy.LIQUIDITY_PERCENTAGE
        )
        assert result.liquidity_level == LiquidityLevel.LOW
        assert result.thresholds == DEFAULT_MINIMUM_THRESHOLDS

    def test_tiers_strictly_ascending(self, calculator):
        result = calculator.calculate_thresholds(
            "m1",
            liquidity=liquidity(300000, bid_level_count=10, ask_level_count=10),
            volume=VolumeSnapshot(volume_24h_usd=80000, avg_daily_volume_7d_usd=90000, trade_count=500),
        )
        values = [result.thresholds[t] for t in WhaleThresholdTier]
        assert all(a < b for a, b in zip(values, values[1:]))
        assert 0 < result.confidence <= 1

    def test_tier_for(self, calculator):
        result = calculator.calculate_thresholds("m1", strategy=ThresholdStrategy.FIXED)
        assert result.tier_for(500) is None
        assert result.tier_for(1000) == WhaleThresholdTier.NOTABLE
        assert result.tier_for(600000) == WhaleThresholdTier.MEGA_WHALE


class TestCaching:
    """Tests for caching and change events."""

    def test_cache_hit(self, calculator):
        calculator.calculate_thresholds("m1", liquidity=liquidity(1000000))
        second = calculator.calculate_thresholds("m1", liquidity=liquidity(1000000))
        assert second.from_cache
        assert calculator.get_summary()["cache_stats"]["hits"] == 1

    def test_expired_cache_recalculates(self, calculator, base_time):
        calculator.calculate_thresholds("m1", now=base_time)
        later = calculator.calculate_thresholds("m1", now=base_time + timedelta(minutes=10))
        assert not later.from_cache

    def test_significant_change_emits_event(self, calculator):
        """Test the threshold-changed event on large moves."""
        events = []
        calculator.on("threshold-changed", events.append)
        strategy = ThresholdStrategy.LIQUIDITY_PERCENTAGE
        calculator.calculate_thresholds("m1", liquidity=liquidity(1000000), strategy=strategy)
        calculator.calculate_thresholds(
            "m1", liquidity=liquidity(2000000), strategy=strategy, bypass_cache=True
        )
        assert len(events) == 1
        assert events[0].change_magnitude[WhaleThresholdTier.NOTABLE] == pytest.approx(100.0)
        assert len(calculator.get_change_events()) == 1

    def test_small_change_no_event(self, calculator):
        events = []
        calculator.on("threshold-changed", events.append)
        strategy = ThresholdStrategy.LIQUIDITY_PERCENTAGE
        calculator.calculate_thresholds("m1", liquidity=liquidity(1000000), strategy=strategy)
        calculator.calculate_thresholds(
            "m1", liquidity=liquidity(1010000), strategy=strategy, bypass_cache=True
        )
        assert events == []

    def test_trade_size_lookups_default_to_fixed(self, calculator):
        assert calculator.is_whale_trade_size("unknown", 100000)
        assert not calculator.is_whale_trade_size("unknown", 99999)
        assert calculator.get_tier_for_trade_size("unknown", 60000) == WhaleThresholdTier.VERY_LARGE
        assert calculator.get_tier_for_trade_size("unknown", 500) is None

    def test_cached_lookups(self, calculator):
        calculator.calculate_thresholds(
            "m1", liquidity=liquidity(1000000), strategy=ThresholdStrategy.LIQUIDITY_PERCENTAGE
        )
        assert calculator.is_whale_trade_size("m1", 50000)
        assert calculator.get_cached_thresholds("m1").from_cache
        assert calculator.get_cached_thresholds("missing") is None


class TestBatchAndConfig:
    """Tests for batch calculation and configuration."""

    def test_batch(self, calculator):
        batch = calculator.batch_calculate_thresholds([
            {"market_id": "m1", "liquidity": liquidity(1000000)},
            {"market_id": "m2", "volume": VolumeSnapshot(volume_24h_usd=50000)},
        ])
        assert batch.success_count == 2
        assert batch.error_count == 0

    def test_update_config(self, calculator):
        calculator.update_config(CACHE_TTL_SECONDS=10)
        assert calculator.get_config().CACHE_TTL_SECONDS == 10
        with pytest.raises(ValueError):
            calculator.update_config(NOT_A_FIELD=1)

    def test_get_config_is_copy(self, calculator):
        config = calculator.get_config()
        config.FIXED_THRESHOLDS[WhaleThresholdTier.WHALE] = 1
        assert calculator.config.FIXED_THRESHOLDS[WhaleThresholdTier.WHALE] == 100000.0

    def test_calculate_from_tracker(self, calculator, base_time):
        tracker = RollingVolumeTracker()
        for i in range(10):
            tracker.add_volume("m1", 10000, timestamp=base_time - timedelta(hours=i))
        result = calculator.calculate_from_tracker(
            "m1", tracker, strategy=ThresholdStrategy.VOLUME_PERCENTAGE, now=base_time
        )
        assert result.volume.volume_24h_usd == 100000
        assert result.notable_threshold_usd == 100.0
