"""
Tests for the trading pattern classifier.
"""

from datetime import timedelta

import pytest

from polymarket_scoring.models import PatternTrade, TradeSide
from polymarket_scoring.trading_pattern import (
    PATTERN_DEFINITIONS,
    PatternConfidence,
    PatternRiskFlag,
    TradingPatternClassifier,
    TradingPatternConfig,
    TradingPatternType,
    category_specialization,
    extract_features,
    get_pattern_description,
    is_suspicious_pattern,
    normalize_feature_value,
    profit_factor,
)
from polymarket_scoring.utils import InvalidAddressError

WALLET = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
CHECKSUMMED = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"


def make_trades(base_time, count, gap=timedelta(minutes=10), size=100.0, **kwargs):
    sides = kwargs.pop("sides", None)
    return [
        PatternTrade(
            trade_id=f"t{i}",
            market_id=kwargs.get("market_id", f"market_{i % 3}"),
            market_category=kwargs.get("market_category"),
            side=sides[i % len(sides)] if sides else TradeSide.BUY,
            size_usd=size,
            price=0.5,
            timestamp=base_time + gap * i,
            pnl=kwargs.get("pnl"),
            time_to_resolution_hours=kwargs.get("time_to_resolution_hours"),
        )
        for i in range(count)
    ]


@pytest.fixture
def classifier():
    return TradingPatternClassifier()


class TestHelpers:
    """Tests for feature helpers."""

    def test_normalize_range(self):
        assert normalize_feature_value(5, 0, 10) == 1.0
        assert normalize_feature_value(10, 0, 10) == 0.5
        assert normalize_feature_value(11, 0, 10) == 0.0

    def test_normalize_min_only(self):
        assert normalize_feature_value(0.4, 0.8, None) == pytest.approx(0.5)
        assert normalize_feature_value(0.8, 0.8, None) == 0.5
        assert normalize_feature_value(10, 1, None) == 1.0

    def test_normalize_max_only(self):
        assert normalize_feature_value(0, None, 2) == 1.0
        assert normalize_feature_value(3, None, 2) == pytest.approx(0.5)
        assert normalize_feature_value(5, None, 0) == 0.0

    def test_category_specialization(self):
        assert category_specialization([]) == 0.0
        assert category_specialization(["a", "a", None]) == 1.0
        assert category_specialization(["a", "b"]) == 0.0
        assert 0 < category_specialization(["a", "a", "a", "b"]) < 1

    def test_profit_factor(self):
        assert profit_factor([100, -50]) == 2.0
        assert profit_factor([100]) == 10.0
        assert profit_factor([]) == 0.0

    def test_pattern_tables(self):
        assert is_suspicious_pattern(TradingPatternType.POTENTIAL_INSIDER)
        assert not is_suspicious_pattern(TradingPatternType.RETAIL)
        assert get_pattern_description(TradingPatternType.UNKNOWN)


class TestFeatureExtraction:
    """Tests for extract_features."""

    def test_basic_features(self, base_time):
        trades = make_trades(base_time, 6, sides=[TradeSide.BUY, TradeSide.SELL])
        features = extract_features(trades, TradingPatternConfig())

        assert features.trade_count == 6
        assert features.buy_percentage == 0.5
        assert features.reversal_rate == 1.0
        assert features.market_concentration == pytest.approx(2 / 6)
        assert features.unique_markets == 3
        assert features.size_consistency == 1.0
        assert features.timing_consistency == 1.0
        assert features.avg_holding_period_hours == pytest.approx(20 / 60)
        assert features.total_volume == 600.0
        assert features.days_active == 1.0
        assert features.trade_frequency == 6.0

    def test_win_rate_from_pnl(self, base_time):
        trades = make_trades(base_time, 4, pnl=10.0)
        trades[0].pnl = -5.0
        features = extract_features(trades, TradingPatternConfig())
        assert features.win_rate == 0.75
        assert features.profit_factor == 6.0

    def test_pre_event_ratio(self, base_time):
        trades = make_trades(base_time, 4, time_to_resolution_hours=2)
        trades[0].time_to_resolution_hours = 100
        features = extract_features(trades, TradingPatternConfig())
        assert features.pre_event_ratio == 0.75


class TestClassify:
    """Tests for classify."""

    def test_too_few_trades(self, classifier, base_time):
        assert classifier.classify(WALLET, make_trades(base_time, 4)) is None

    def test_invalid_trades_dropped(self, classifier, base_time):
        trades = make_trades(base_time, 5)
        trades[0].size_usd = 0
        assert classifier.classify(WALLET, trades) is None

    def test_invalid_address(self, classifier, base_time):
        with pytest.raises(InvalidAddressError):
            classifier.classify("0xbad", make_trades(base_time, 10))

    def test_checksummed_wallet(self, classifier, base_time):
        result = classifier.classify(WALLET, make_trades(base_time, 10))
        assert result.wallet_address == CHECKSUMMED
        assert result.trade_count == 10

    def test_confidence_exact_thresholds(self, classifier, base_time):
        assert classifier.classify(WALLET, make_trades(base_time, 5)).confidence == PatternConfidence.LOW
        assert classifier.classify(WALLET, make_trades(base_time, 14)).confidence == PatternConfidence.LOW
        assert classifier.classify(WALLET, make_trades(base_time, 15)).confidence == PatternConfidence.MEDIUM
        assert classifier.classify(WALLET, make_trades(base_time, 30)).confidence == PatternConfidence.HIGH

    def test_idempotent_reclassification(self, classifier, base_time):
        """Test that reclassifying the same trades gives the same result."""
        trades = make_trades(base_time, 20, sides=[TradeSide.BUY, TradeSide.BUY, TradeSide.SELL])
        first = classifier.classify(WALLET, trades)
        classifier.clear_cache()
        second = classifier.classify(WALLET, trades)
        assert first.primary_pattern == second.primary_pattern
        assert first.confidence == second.confidence
        assert first.match_score == second.match_score

    def test_bot_precision(self, classifier, base_time):
        result = classifier.classify(WALLET, make_trades(base_time.replace(hour=2), 20))
        assert PatternRiskFlag.BOT_PRECISION in result.risk_flags
        bot = next(m for m in result.pattern_matches if m.pattern == TradingPatternType.BOT)
        assert bot.is_strong
        assert bot.score == 72

    def test_matches_sorted_by_score(self, classifier, base_time):
        result = classifier.classify(WALLET, make_trades(base_time, 10))
        scores = [m.score for m in result.pattern_matches]
        assert scores == sorted(scores, reverse=True)
        assert len(result.pattern_matches) == len(PATTERN_DEFINITIONS)

    def test_to_dict(self, classifier, base_time):
        data = classifier.classify(WALLET, make_trades(base_time, 10)).to_dict()
        assert data["wallet_address"] == CHECKSUMMED
        assert isinstance(data["primary_pattern"], str)
        assert data["features"]["trade_count"] == 10


class TestPotentialInsider:
    """Tests for insider detection using only the insider definition."""

    @pytest.fixture
    def insider_classifier(self):
        definitions = [d for d in PATTERN_DEFINITIONS if d.pattern == TradingPatternType.POTENTIAL_INSIDER]
        return TradingPatternClassifier(pattern_definitions=definitions)

    @pytest.fixture
    def insider_trades(self, base_time):
        return make_trades(
            base_time.replace(hour=15),
            10,
            gap=timedelta(days=1),
            size=2000.0,
            market_category="politics",
            pnl=100.0,
            time_to_resolution_hours=2,
        )

    def test_insider_classification(self, insider_classifier, insider_trades):
        """Test classification of a pre-event insider profile."""
        result = insider_classifier.classify(WALLET, insider_trades)
        assert result.primary_pattern == TradingPatternType.POTENTIAL_INSIDER
        assert result.match_score == 71
        assert PatternRiskFlag.HIGH_WIN_RATE in result.risk_flags
        assert PatternRiskFlag.PRE_NEWS_TRADING in result.risk_flags
        assert PatternRiskFlag.PERFECT_TIMING in result.risk_flags
        assert PatternRiskFlag.INFO_ASYMMETRY in result.risk_flags
        assert result.risk_score == 100

    def test_insider_events(self, insider_classifier, insider_trades):
        received = {"classified": [], "high-risk": [], "potential-insider": []}
        for event, items in received.items():
            insider_classifier.on(event, items.append)
        insider_classifier.classify(WALLET, insider_trades)
        assert all(len(items) == 1 for items in received.values())
        assert len(insider_classifier.get_potential_insiders()) == 1
        assert len(insider_classifier.get_high_risk_classifications()) == 1

    def test_unknown_when_nothing_strong(self, insider_classifier, base_time):
        result = insider_classifier.classify(WALLET, make_trades(base_time, 10))
        assert result.primary_pattern == TradingPatternType.UNKNOWN
        assert result.match_score == 0.0


class TestCacheAndUpdates:
    """Tests for caching, updates and batches."""

    def test_cache(self, classifier, base_time):
        classifier.classify(WALLET, make_trades(base_time, 10))
        assert classifier.has_classification(CHECKSUMMED)
        assert classifier.get_classification("not-an-address") is None
        assert classifier.remove_classification(WALLET)
        assert not classifier.has_classification(WALLET)

    def test_update_classification(self, classifier, base_time):
        """Test incremental updates with new trades."""
        updates = []
        classifier.on("classification-updated", lambda result, added: updates.append(added))
        trades = make_trades(base_time, 10)
        classifier.classify(WALLET, trades[:6])

        result = classifier.update_classification(WALLET, trades[4:])
        assert result.trade_count == 10
        assert updates == [4]

        unchanged = classifier.update_classification(WALLET, trades[:2])
        assert unchanged.trade_count == 10
        assert updates == [4]

    def test_batch(self, classifier, base_time):
        other = "0x" + "1" * 40
        batch = classifier.classify_batch({
            WALLET: make_trades(base_time, 10),
            other: make_trades(base_time, 2),
            "bad": make_trades(base_time, 10),
        })
        assert batch.success_count == 1
        assert batch.skipped == [other]
        assert "bad" in batch.errors

    def test_batch_logs_and_collects_unexpected_errors(self, classifier, base_time, monkeypatch, caplog):
        def broken(wallet, trades, now=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(classifier, "classify", broken)
        batch = classifier.classify_batch({WALLET: make_trades(base_time, 10)})
        assert batch.errors == {WALLET: "boom"}
        assert f"Error classifying trades for {WALLET}" in caplog.text

    def test_summary(self, classifier, base_time):
        classifier.classify(WALLET, make_trades(base_time, 10))
        summary = classifier.get_summary()
        assert summary["total_classifications"] == 1
        assert summary["total_trades_analyzed"] == 10

    def test_add_pattern_definition_replaces(self, classifier):
        definition = next(d for d in PATTERN_DEFINITIONS if d.pattern == TradingPatternType.BOT)
        classifier.add_pattern_definition(definition)
        patterns = [d.pattern for d in classifier.get_pattern_definitions()]
        assert patterns.count(TradingPatternType.BOT) == 1
