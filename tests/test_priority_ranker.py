"""
Tests for the alert priority ranker.
"""

from datetime import timedelta

import pytest

from polymarket_scoring.composite import (
    CompositeScoreResult,
    CoordinationSubResult,
    FilterResult,
    PatternSubResult,
    ProfitLossSubResult,
    SignalSource,
    SizingSubResult,
    SybilSubResult,
    UnderlyingResults,
    classify_suspicion_level,
    score_composite,
)
from polymarket_scoring.priority_ranker import (
    AlertPriorityRanker,
    PriorityFactor,
    PriorityLevel,
    PriorityRankerConfig,
    UrgencyReason,
)
from polymarket_scoring.weight_configurator import SignalWeightConfigurator

WALLET = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
CHECKSUMMED = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"


def wallet(n: int) -> str:
    return "0x" + f"{n:040d}"


def alert(score: float, analyzed_at, wallet_address: str = WALLET) -> CompositeScoreResult:
    """Composite result with no available signals or detector outputs."""
    return CompositeScoreResult(
        wallet_address=wallet_address,
        composite_score=score,
        suspicion_level=classify_suspicion_level(score),
        analyzed_at=analyzed_at,
    )


@pytest.fixture
def ranker():
    return AlertPriorityRanker()


@pytest.fixture
def insider_alert(base_time):
    """Every signal at 95 with insider, network and large P&L indicators."""
    underlying = UnderlyingResults(
        coordination=CoordinationSubResult(is_coordinated=True, group_count=2, coordination_score=80),
        sybil=SybilSubResult(is_likely_sybil=True, sybil_probability=90),
        pattern=PatternSubResult(primary_pattern="potential_insider", risk_flags=["a", "b", "c"], risk_score=90),
        profit_loss=ProfitLossSubResult(total_realized_pnl=200000),
        sizing=SizingSubResult(max_position_size=20000),
    )
    return score_composite(
        WALLET,
        {source: 95 for source in SignalSource},
        SignalWeightConfigurator(),
        underlying=underlying,
        now=base_time,
    )


class TestScoringHelpers:
    """Tests for decay and levels."""

    def test_time_decay(self, ranker):
        assert ranker.time_decay_multiplier(0) == 1.0
        assert ranker.time_decay_multiplier(24) == 1.0
        assert ranker.time_decay_multiplier(48) == pytest.approx(0.88)
        assert ranker.time_decay_multiplier(1000) == 0.5

    def test_priority_level_boundaries(self, ranker):
        assert ranker.priority_level(85) == PriorityLevel.CRITICAL
        assert ranker.priority_level(84) == PriorityLevel.HIGH
        assert ranker.priority_level(70) == PriorityLevel.HIGH
        assert ranker.priority_level(50) == PriorityLevel.MEDIUM
        assert ranker.priority_level(49) == PriorityLevel.LOW


class TestRankAlert:
    """Tests for rank_alert."""

    def test_minimal_alert(self, ranker, base_time):
        """Test priority for a barely flagged fresh alert."""
        ranking = ranker.rank_alert(alert(35, base_time), now=base_time)

        assert ranking.wallet_address == CHECKSUMMED
        assert ranking.priority_score == 32
        assert ranking.priority_level == PriorityLevel.LOW
        assert ranking.urgency_reasons == [UrgencyReason.RECENT_ACTIVITY, UrgencyReason.NEW_DETECTION]
        assert ranking.is_urgent
        assert not ranking.is_highlighted
        assert ranking.top_factors[0].factor == PriorityFactor.RECENCY
        assert ranking.summary == "Priority: LOW (32/100) | Primary driver: Recency | 2 urgency indicator(s)"
        assert ranking.recommended_action.startswith("LOWER:")
        assert len(ranking.factor_contributions) == len(PriorityFactor)

    def test_insider_alert(self, ranker, insider_alert, base_time):
        """Test priority for an alert with every signal maxed."""
        ranking = ranker.rank_alert(insider_alert, now=base_time)

        assert ranking.priority_score == 96
        assert ranking.priority_level == PriorityLevel.CRITICAL
        assert ranking.is_urgent
        assert ranking.is_highlighted
        for reason in (
            UrgencyReason.CRITICAL_SCORE,
            UrgencyReason.MULTI_SIGNAL_CONVERGENCE,
            UrgencyReason.HIGH_IMPACT,
            UrgencyReason.NETWORK_DETECTION,
            UrgencyReason.SYBIL_CLUSTER,
            UrgencyReason.INSIDER_INDICATOR,
        ):
            assert reason in ranking.urgency_reasons
        assert ranking.recommended_action.startswith("IMMEDIATE: Investigate for potential insider trading")

    def test_time_decay_applied(self, ranker, base_time):
        ranking = ranker.rank_alert(alert(35, base_time - timedelta(hours=124)), now=base_time)
        assert ranking.alert_age_hours == pytest.approx(124)
        assert ranking.time_decay_multiplier == 0.5
        assert ranking.priority_score == 12
        assert UrgencyReason.RECENT_ACTIVITY not in ranking.urgency_reasons

    def test_api_result_with_offset(self, ranker, base_time):
        """Test ranking a result parsed from API JSON with a zone offset."""
        result = CompositeScoreResult.model_validate({
            "walletAddress": CHECKSUMMED,
            "compositeScore": 35,
            "suspicionLevel": "low",
            "analyzedAt": "2024-06-01T08:00:00-02:00",
        })
        assert result.analyzed_at.tzinfo is None

        ranking = ranker.rank_alert(result, now=base_time)
        assert ranking.alert_age_hours == pytest.approx(2)

    def test_false_positive_filter(self, ranker, insider_alert, base_time):
        """Test the false positive factor for an insider profile."""
        verdict = FilterResult(
            wallet_address=CHECKSUMMED,
            original_score=insider_alert.composite_score,
            adjusted_score=60,
            is_likely_false_positive=True,
        )
        ranking = ranker.rank_alert(insider_alert, verdict, now=base_time)
        pattern = next(c for c in ranking.factor_contributions if c.factor == PriorityFactor.PATTERN_MATCH)
        assert pattern.raw_score == 55.0
        assert "false positive" in pattern.reason
        assert ranking.adjusted_score == 60

    def test_invalid_wallet(self, ranker, base_time):
        with pytest.raises(ValueError):
            ranker.rank_alert(alert(50, base_time, "0xbad"), now=base_time)


class TestEscalation:
    """Tests for history-driven urgency."""

    def test_score_escalation(self, ranker, base_time):
        """Test escalation from 35 to 75."""
        ranker.rank_alert(alert(35, base_time), now=base_time)
        ranking = ranker.rank_alert(alert(75, base_time), use_cache=False, now=base_time)
        assert UrgencyReason.SCORE_ESCALATION in ranking.urgency_reasons
        assert UrgencyReason.NEW_DETECTION not in ranking.urgency_reasons

    def test_escalation_at_exact_delta(self, ranker, base_time):
        ranker.rank_alert(alert(35, base_time), now=base_time)
        ranking = ranker.rank_alert(alert(55, base_time), use_cache=False, now=base_time)
        assert UrgencyReason.SCORE_ESCALATION in ranking.urgency_reasons

    def test_small_change_not_escalation(self, ranker, base_time):
        ranker.rank_alert(alert(35, base_time), now=base_time)
        ranking = ranker.rank_alert(alert(50, base_time), use_cache=False, now=base_time)
        assert UrgencyReason.SCORE_ESCALATION not in ranking.urgency_reasons

    def test_novelty_rewards_only_increases(self, ranker, base_time):
        """Test that the novelty factor rises on score increases and not on drops."""
        def novelty(ranking):
            return next(f for f in ranking.factor_contributions if f.factor == PriorityFactor.NOVELTY)

        ranker.rank_alert(alert(75, base_time), now=base_time)
        dropped = ranker.rank_alert(alert(35, base_time), use_cache=False, now=base_time)
        assert novelty(dropped).raw_score == 20.0

        ranker.rank_alert(alert(35, base_time, wallet(1)), now=base_time)
        raised = ranker.rank_alert(alert(75, base_time, wallet(1)), use_cache=False, now=base_time)
        assert novelty(raised).raw_score == 80.0
        assert novelty(raised).reason == "Score increased by 40 points"

    def test_alert_history(self, ranker, base_time):
        ranker.rank_alert(alert(35, base_time), now=base_time)
        ranker.rank_alert(alert(45, base_time), use_cache=False, now=base_time + timedelta(hours=1))
        history = ranker.get_alert_history(WALLET)
        assert history.previous_scores == [35, 45]
        assert history.times_ranked == 2
        assert history.last_seen == base_time + timedelta(hours=1)
        assert ranker.get_alert_history("bad") is None


class TestCache:
    """Tests for the ranking cache."""

    def test_cache_hit(self, ranker, base_time):
        first = ranker.rank_alert(alert(35, base_time), now=base_time)
        second = ranker.rank_alert(alert(90, base_time), now=base_time)
        assert not first.from_cache
        assert second.from_cache
        assert second.priority_score == first.priority_score
        assert ranker.get_summary()["cache"]["hit_rate"] == 0.5

    def test_invalidate(self, ranker, base_time):
        ranker.rank_alert(alert(35, base_time), now=base_time)
        assert ranker.get_cached_ranking(WALLET) is not None
        assert ranker.invalidate_cache(WALLET)
        assert not ranker.invalidate_cache(WALLET)
        assert ranker.get_cached_ranking(WALLET) is None

    def test_cache_bounded(self, base_time):
        ranker = AlertPriorityRanker(PriorityRankerConfig(MAX_CACHE_SIZE=2))
        for i in range(1, 4):
            ranker.rank_alert(alert(50, base_time, wallet(i)), now=base_time)
        assert ranker.get_cached_ranking(wallet(1)) is None
        assert ranker.get_summary()["cache"]["size"] == 2

    def test_update_config_clears_cache(self, ranker, base_time):
        ranker.rank_alert(alert(35, base_time), now=base_time)
        config = ranker.update_config(FACTOR_WEIGHTS={PriorityFactor.SEVERITY: 0.5})
        assert config.FACTOR_WEIGHTS[PriorityFactor.SEVERITY] == 0.5
        assert config.FACTOR_WEIGHTS[PriorityFactor.NOVELTY] == 0.04
        assert ranker.get_cached_ranking(WALLET) is None
        with pytest.raises(ValueError):
            ranker.update_config(NOT_A_SETTING=1)


class TestRankAlerts:
    """Tests for batch ranking and queries."""

    @pytest.fixture
    def batch(self, ranker, base_time):
        results = [
            alert(20, base_time, wallet(3)),
            alert(60, base_time, wallet(2)),
            alert(60, base_time, wallet(1)),
            alert(50, base_time, "0xbad"),
        ]
        return ranker.rank_alerts(results, now=base_time)

    def test_ordering_and_ranks(self, batch):
        assert [r.wallet_address for r in batch.rankings] == [wallet(1), wallet(2), wallet(3)]
        assert [r.rank for r in batch.rankings] == [1, 2, 3]
        assert batch.total_processed == 4
        assert list(batch.failed) == ["0xbad"]
        assert batch.by_wallet[wallet(3)].rank == 3
        assert sum(batch.by_level.values()) == 3

    def test_filter_results_by_wallet(self, ranker, insider_alert, base_time):
        verdict = FilterResult(
            wallet_address=CHECKSUMMED,
            original_score=insider_alert.composite_score,
            adjusted_score=40,
            is_likely_false_positive=True,
        )
        batch = ranker.rank_alerts([insider_alert], filter_results={CHECKSUMMED: verdict}, now=base_time)
        assert batch.rankings[0].adjusted_score == 40

    def test_queries(self, ranker, batch, insider_alert, base_time):
        ranker.rank_alert(insider_alert, now=base_time)
        top = ranker.get_top_alerts(limit=2)
        assert [r.wallet_address for r in top] == [CHECKSUMMED, wallet(1)]
        assert [r.wallet_address for r in ranker.get_highlighted_alerts()] == [CHECKSUMMED]
        assert len(ranker.get_alerts_by_level(PriorityLevel.CRITICAL)) == 1
        assert len(ranker.get_urgent_alerts()) == 4

    def test_summary(self, ranker, batch):
        summary = ranker.get_summary()
        assert summary["total_ranked"] == 3
        assert summary["by_level"]["low"] == 3
        reasons = {entry["reason"]: entry["count"] for entry in summary["common_urgency_reasons"]}
        assert reasons["new_detection"] == 3
        assert summary["impactful_factors"][0]["factor"] == "recency"

    def test_clear(self, ranker, batch):
        ranker.clear()
        assert ranker.get_top_alerts() == []
        assert ranker.get_summary()["total_ranked"] == 0
        assert ranker.get_alert_history(wallet(1)) is None


class TestEvents:
    """Tests for ranking events."""

    def test_events(self, ranker, insider_alert, base_time):
        received = {"alert-ranked": [], "urgent-alert": [], "alert-highlighted": []}
        for event, items in received.items():
            ranker.on(event, items.append)

        ranker.rank_alert(insider_alert, now=base_time)
        ranker.rank_alert(alert(35, base_time - timedelta(hours=200), wallet(1)), now=base_time)

        assert len(received["alert-ranked"]) == 2
        assert len(received["urgent-alert"]) == 1
        assert len(received["alert-highlighted"]) == 1
        assert received["alert-highlighted"][0].wallet_address == CHECKSUMMED

    def test_cache_hits_do_not_emit(self, ranker, base_time):
        ranked = []
        ranker.on("alert-ranked", ranked.append)
        ranker.rank_alert(alert(35, base_time), now=base_time)
        ranker.rank_alert(alert(35, base_time), now=base_time)
        assert len(ranked) == 1
