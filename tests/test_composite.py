"""
Tests for the composite score combiner and result models.
"""

from types import SimpleNamespace

import pytest

from polymarket_scoring.composite import (
    CompositeScoreResult,
    CompositeSuspicionLevel,
    PatternSubResult,
    ProfitLossSubResult,
    SignalSource,
    UnderlyingResults,
    classify_suspicion_level,
    score_composite,
)
from polymarket_scoring.utils import InvalidAddressError
from polymarket_scoring.weight_configurator import SignalWeightConfigurator, WeightPreset

WALLET = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
CHECKSUMMED = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"


@pytest.fixture
def configurator():
    return SignalWeightConfigurator()


class TestSuspicionLevel:
    """Tests for classify_suspicion_level."""

    def test_exact_thresholds(self):
        assert classify_suspicion_level(19.9) == CompositeSuspicionLevel.NONE
        assert classify_suspicion_level(20) == CompositeSuspicionLevel.LOW
        assert classify_suspicion_level(40) == CompositeSuspicionLevel.MEDIUM
        assert classify_suspicion_level(60) == CompositeSuspicionLevel.HIGH
        assert classify_suspicion_level(80) == CompositeSuspicionLevel.CRITICAL

    def test_custom_thresholds(self):
        thresholds = {"low": 10, "medium": 20, "high": 30, "critical": 40}
        assert classify_suspicion_level(35, thresholds) == CompositeSuspicionLevel.HIGH


class TestScoreComposite:
    """Tests for score_composite."""

    def test_uniform_scores(self, configurator):
        result = score_composite(WALLET, {s: 50 for s in SignalSource}, configurator)
        assert result.wallet_address == CHECKSUMMED
        assert result.composite_score == pytest.approx(50.0)
        assert result.suspicion_level == CompositeSuspicionLevel.MEDIUM
        assert result.should_flag
        assert not result.is_potential_insider
        assert result.available_signals == 10
        assert result.data_quality == 100.0

    def test_missing_signals_excluded(self, configurator):
        result = score_composite(WALLET, {SignalSource.SYBIL: 90, SignalSource.WIN_RATE: None}, configurator)
        assert result.composite_score == pytest.approx(90.0)
        assert result.suspicion_level == CompositeSuspicionLevel.CRITICAL
        assert result.is_potential_insider
        assert result.available_signals == 1
        assert result.data_quality == pytest.approx(10.0)
        assert result.key_findings == ["Sybil: 90/100"]

    def test_weighted_average(self, configurator):
        """Test the weighted average with one signal at 100."""
        scores = {s: 0 for s in SignalSource}
        scores[SignalSource.WIN_RATE] = 100
        result = score_composite(WALLET, scores, configurator)
        assert result.composite_score == pytest.approx(12.0)
        assert result.top_signals[0].source == SignalSource.WIN_RATE

    def test_scores_clamped(self, configurator):
        result = score_composite(WALLET, {SignalSource.SYBIL: 150, SignalSource.COORDINATION: -20}, configurator)
        by_source = {c.source: c for c in result.signal_contributions}
        assert by_source[SignalSource.SYBIL].raw_score == 100.0
        assert by_source[SignalSource.COORDINATION].raw_score == 0.0

    def test_disabled_signal_ignored(self, configurator):
        """Test that disabled signals are left out of the score."""
        configurator.set_signal_enabled(SignalSource.SYBIL, False)
        result = score_composite(WALLET, {SignalSource.SYBIL: 100, SignalSource.WIN_RATE: 10}, configurator)
        assert result.composite_score == pytest.approx(10.0)
        sybil = next(c for c in result.signal_contributions if c.source == SignalSource.SYBIL)
        assert not sybil.available
        assert sybil.reason == "Signal unavailable"

    def test_no_signals(self, configurator):
        result = score_composite(WALLET, {}, configurator)
        assert result.composite_score == 0.0
        assert result.suspicion_level == CompositeSuspicionLevel.NONE
        assert result.top_signals == []

    def test_category_breakdown(self, configurator):
        result = score_composite(WALLET, {SignalSource.COORDINATION: 80, SignalSource.SYBIL: 40}, configurator)
        network = next(b for b in result.category_breakdown if b.category.value == "network")
        assert network.available_signals == 2
        assert network.score == pytest.approx((80 * 0.12 + 40 * 0.10) / 0.22)
        assert len(result.category_breakdown) == 4

    def test_configurator_thresholds_apply(self, configurator):
        configurator.set_flag_thresholds(flag_threshold=30)
        result = score_composite(WALLET, {SignalSource.SYBIL: 35}, configurator)
        assert result.should_flag

    def test_shared_configurator_used_by_default(self):
        result = score_composite(WALLET, {SignalSource.SYBIL: 70})
        assert result.composite_score == pytest.approx(70.0)

    def test_preset_changes_weights(self, configurator):
        scores = {SignalSource.FRESH_WALLET: 100, SignalSource.SYBIL: 0}
        default = score_composite(WALLET, scores, configurator).composite_score
        configurator.apply_preset(WeightPreset.FRESH_WALLET_FOCUSED)
        focused = score_composite(WALLET, scores, configurator).composite_score
        assert focused > default

    def test_invalid_wallet(self, configurator):
        with pytest.raises(InvalidAddressError):
            score_composite("0xbad", {}, configurator)

    def test_underlying_attached(self, configurator):
        profit_loss = ProfitLossSubResult(total_realized_pnl=-100, total_unrealized_pnl=50)
        underlying = UnderlyingResults(profit_loss=profit_loss)
        result = score_composite(WALLET, {}, configurator, underlying=underlying)
        assert result.underlying_results.profit_loss.total_magnitude == 150


class TestModels:
    """Tests for result model parsing."""

    def test_camel_case_aliases(self):
        result = CompositeScoreResult.model_validate({
            "walletAddress": CHECKSUMMED,
            "compositeScore": 72.5,
            "suspicionLevel": "high",
            "underlyingResults": {"sizing": {"maxPositionSize": 20000}},
        })
        assert result.composite_score == 72.5
        assert result.suspicion_level == CompositeSuspicionLevel.HIGH
        assert result.underlying_results.sizing.max_position_size == 20000

    def test_pattern_from_classification(self):
        classification = SimpleNamespace(
            primary_pattern=SimpleNamespace(value="potential_insider"),
            risk_flags=[SimpleNamespace(value="high_win_rate")],
            risk_score=80,
        )
        pattern = PatternSubResult.from_classification(classification)
        assert pattern.primary_pattern == "potential_insider"
        assert pattern.risk_flags == ["high_win_rate"]
