"""
Tests for the volume clustering analyzer.
"""

from datetime import timedelta

import pytest

from polymarket_scoring.models import ClusterTrade, TradeSide
from polymarket_scoring.volume_clustering import (
    ClusterSeverity,
    ClusterThresholdConfig,
    CoordinationType,
    VolumeClusteringAnalyzer,
    calculate_coordination_score,
    calculate_timing_regularity,
    determine_coordination_type,
    determine_severity,
)


def wallet(n: int) -> str:
    return "0x" + f"{n:040x}"


def make_trade(i, wallet_address, timestamp, size=5000.0, side=TradeSide.BUY, market_id="market_1"):
    return ClusterTrade(
        trade_id=f"t{i}",
        market_id=market_id,
        wallet_address=wallet_address,
        size_usd=size,
        timestamp=timestamp,
        side=side,
    )


@pytest.fixture
def analyzer():
    return VolumeClusteringAnalyzer()


@pytest.fixture
def split_trades(base_time):
    """4 wallets x 2 trades x $5,000 within a 10 second spread."""
    return [
        make_trade(i, wallet(i % 4 + 1), base_time + timedelta(seconds=i))
        for i in range(8)
    ]


class TestHelpers:
    """Tests for scoring helpers."""

    def test_timing_regularity(self):
        assert calculate_timing_regularity([1.0, 1.0, 1.0], 0.3) == 1.0
        assert calculate_timing_regularity([1.0], 0.3) == 0.0
        assert calculate_timing_regularity([0.0, 0.0], 0.3) == 0.0
        assert calculate_timing_regularity([1.0, 3.0], 0.3) == 0.0

    def test_coordination_score(self):
        weights = ClusterThresholdConfig().SCORE_WEIGHTS
        assert calculate_coordination_score(4, 8, 1.0, 1.0, 40000, 10000, weights) == 62.0
        assert calculate_coordination_score(10, 20, 1.0, 1.0, 100000, 10000, weights) == 100.0

    def test_coordination_type_priority(self):
        config = ClusterThresholdConfig()
        assert determine_coordination_type(1.0, 1.0, 2.0, config) == CoordinationType.SPLIT_ORDERS
        assert determine_coordination_type(0.8, 1.0, 1.0, config) == CoordinationType.DIRECTIONAL
        assert determine_coordination_type(0.1, 1.0, 1.0, config) == CoordinationType.COUNTER_TRADING
        assert determine_coordination_type(0.5, 0.9, 1.0, config) == CoordinationType.TIMED_COORDINATION
        assert determine_coordination_type(0.5, 0.2, 1.0, config) == CoordinationType.MIXED

    def test_severity_exact_thresholds(self):
        thresholds = ClusterThresholdConfig().SEVERITY_THRESHOLDS
        assert determine_severity(49, thresholds) == ClusterSeverity.LOW
        assert determine_severity(50, thresholds) == ClusterSeverity.MEDIUM
        assert determine_severity(70, thresholds) == ClusterSeverity.HIGH
        assert determine_severity(85, thresholds) == ClusterSeverity.CRITICAL


class TestAnalyzeTrades:
    """Tests for analyze_trades."""

    def test_split_order_cluster(self, analyzer, split_trades, base_time):
        """Test four wallets splitting an order across two trades each."""
        result = analyzer.analyze_trades(split_trades, now=base_time)

        assert result.has_cluster
        cluster = result.cluster
        assert cluster.wallet_count == 4
        assert cluster.trade_count == 8
        assert cluster.total_volume_usd == 40000
        assert cluster.coordination_type == CoordinationType.SPLIT_ORDERS
        assert cluster.severity == ClusterSeverity.MEDIUM
        assert cluster.coordination_score == 62.0
        assert cluster.direction_imbalance == 1.0
        assert any("Split order" in r for r in cluster.flag_reasons)

    def test_empty_trades(self, analyzer):
        result = analyzer.analyze_trades([])
        assert not result.has_cluster
        assert result.total_trades_in_window == 0

    def test_too_few_wallets(self, analyzer, base_time):
        """Test that clusters need the minimum wallet count."""
        trades = [
            make_trade(i, wallet(i % 2 + 1), base_time + timedelta(seconds=i), size=50000)
            for i in range(10)
        ]
        result = analyzer.analyze_trades(trades, now=base_time)
        assert not result.has_cluster
        assert result.unique_wallets_in_window == 2
        assert result.total_trades_in_window == 10

    def test_too_little_volume(self, analyzer, base_time):
        trades = [
            make_trade(i, wallet(i + 1), base_time + timedelta(seconds=i), size=100)
            for i in range(8)
        ]
        result = analyzer.analyze_trades(trades, now=base_time)
        assert not result.has_cluster
        assert result.total_volume_in_window == 800

    def test_wallets_compared_case_insensitively(self, analyzer, base_time):
        address = "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"
        trades = [
            make_trade(0, address, base_time),
            make_trade(1, address.upper().replace("0X", "0x"), base_time + timedelta(seconds=1)),
            make_trade(2, wallet(1), base_time + timedelta(seconds=2)),
            make_trade(3, wallet(2), base_time + timedelta(seconds=3)),
        ]
        result = analyzer.analyze_trades(trades, now=base_time)
        assert result.unique_wallets_in_window == 3

    def test_window_trails_latest_trade(self, analyzer, split_trades, base_time):
        old = make_trade(99, wallet(9), base_time - timedelta(hours=1), size=100000)
        result = analyzer.analyze_trades(split_trades + [old], now=base_time)
        assert result.total_trades_in_window == 8
        assert result.window_end == base_time + timedelta(seconds=7)

    def test_other_markets_ignored(self, analyzer, split_trades, base_time):
        other = make_trade(50, wallet(7), base_time, market_id="market_2")
        result = analyzer.analyze_trades(split_trades + [other], market_id="market_1", now=base_time)
        assert result.total_trades_in_window == 8

    def test_counter_trading(self, analyzer, base_time):
        """Test detection of opposite-side coordination."""
        trades = [
            make_trade(
                i, wallet(i + 1), base_time + timedelta(seconds=i), size=20000,
                side=TradeSide.BUY if i % 2 == 0 else TradeSide.SELL,
            )
            for i in range(6)
        ]
        result = analyzer.analyze_trades(trades, now=base_time)
        assert result.has_cluster
        assert result.cluster.coordination_type == CoordinationType.COUNTER_TRADING
        assert result.cluster.buy_sell_ratio == 0.5


class TestRecording:
    """Tests for cooldowns, events and queries."""

    def test_cooldown(self, analyzer, split_trades, base_time):
        detected = []
        analyzer.on("cluster-detected", detected.append)

        analyzer.analyze_trades(split_trades, now=base_time)
        second = analyzer.analyze_trades(split_trades, now=base_time + timedelta(seconds=10))
        assert second.has_cluster
        assert len(detected) == 1

        analyzer.analyze_trades(split_trades, bypass_cooldown=True, now=base_time + timedelta(seconds=20))
        assert len(detected) == 2

        analyzer.analyze_trades(split_trades, now=base_time + timedelta(seconds=90))
        assert len(detected) == 3

    def test_queries(self, analyzer, split_trades, base_time):
        analyzer.analyze_trades(split_trades, now=base_time)
        assert len(analyzer.get_market_clusters("market_1")) == 1
        assert analyzer.get_market_clusters("market_2") == []
        assert len(analyzer.get_wallet_clusters(wallet(1).upper().replace("0X", "0x"))) == 1
        assert len(analyzer.get_recent_clusters()) == 1

    def test_summary(self, analyzer, split_trades, base_time):
        analyzer.analyze_trades(split_trades, now=base_time)
        summary = analyzer.get_summary()
        assert summary["total_clusters_detected"] == 1
        assert summary["wallets_in_clusters"] == 4
        assert summary["by_severity"]["medium"] == 1
        assert summary["by_coordination_type"]["split_orders"] == 1
        assert summary["top_clustered_wallets"][0]["total_volume_usd"] == 10000

    def test_clear(self, analyzer, split_trades, base_time):
        analyzer.analyze_trades(split_trades, now=base_time)
        analyzer.clear_market("market_1")
        assert analyzer.get_recent_clusters() == []
        analyzer.clear_all()
        assert analyzer.get_stats()["total_clusters_detected"] == 0


class TestSlidingWindow:
    """Tests for sliding-window and multi-market analysis."""

    def test_sliding_window(self, analyzer, split_trades, base_time):
        results = analyzer.analyze_trades_with_sliding_window(split_trades, now=base_time)
        assert len(results) == 1
        assert results[0].has_cluster

    def test_sliding_window_empty(self, analyzer):
        assert analyzer.analyze_trades_with_sliding_window([]) == []

    def test_multiple_markets(self, analyzer, split_trades, base_time):
        quiet = [
            make_trade(100 + i, wallet(1), base_time + timedelta(seconds=i), market_id="market_2")
            for i in range(5)
        ]
        batch = analyzer.analyze_multiple_markets(
            {"market_1": split_trades, "market_2": quiet}, now=base_time
        )
        assert batch.total_trades_processed == 13
        assert batch.total_clusters_detected == 1
        assert batch.by_coordination_type[CoordinationType.SPLIT_ORDERS] == 1
        assert set(batch.results_by_market) == {"market_1", "market_2"}
