"""
Tests for the historical score calibrator.
"""

from datetime import timedelta

import pytest

from polymarket_scoring.calibrator import (
    ALL_BUCKETS,
    AdjustmentType,
    CalibrationQuality,
    CalibratorConfig,
    HistoricalScoreCalibrator,
    OutcomeRecord,
    OutcomeType,
    ScoreBucket,
    brier_score,
    get_bucket_for_score,
    probability_to_score,
    score_to_probability,
    wilson_interval,
)
from polymarket_scoring.utils import InvalidAddressError, utc_now

WALLET = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
CHECKSUMMED = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"


def wallet(n: int) -> str:
    return "0x" + f"{n:040d}"


def record(score: float, outcome: OutcomeType) -> OutcomeRecord:
    now = utc_now()
    return OutcomeRecord(
        id="r",
        wallet_address=CHECKSUMMED,
        original_score=score,
        predicted_probability=score / 100,
        outcome=outcome,
        scored_at=now,
        outcome_determined_at=now,
    )


@pytest.fixture
def calibrator():
    return HistoricalScoreCalibrator()


@pytest.fixture
def mostly_true_positives(calibrator):
    """80 true positives and 20 false positives, all scored 90."""
    for i in range(80):
        calibrator.record_outcome(wallet(i), 90, OutcomeType.TRUE_POSITIVE)
    for i in range(80, 100):
        calibrator.record_outcome(wallet(i), 90, OutcomeType.FALSE_POSITIVE)
    return calibrator


class TestBuckets:
    """Tests for score buckets and probability mapping."""

    def test_buckets_cover_range_contiguously(self):
        """Test that buckets cover 0 to 100 with no gaps."""
        assert ALL_BUCKETS[0].min == 0.0
        assert ALL_BUCKETS[-1].max == 100.0
        for lower, upper in zip(ALL_BUCKETS, ALL_BUCKETS[1:]):
            assert lower.max == upper.min

    def test_bucket_for_score(self):
        assert get_bucket_for_score(0) == ScoreBucket.BUCKET_0_10
        assert get_bucket_for_score(9.99) == ScoreBucket.BUCKET_0_10
        assert get_bucket_for_score(10) == ScoreBucket.BUCKET_10_20
        assert get_bucket_for_score(100) == ScoreBucket.BUCKET_90_100
        assert get_bucket_for_score(-5) == ScoreBucket.BUCKET_0_10
        assert get_bucket_for_score(250) == ScoreBucket.BUCKET_90_100

    def test_probability_mapping(self):
        assert score_to_probability(42) == pytest.approx(0.42)
        assert probability_to_score(0.42) == pytest.approx(42)
        assert score_to_probability(150) == 1.0
        assert probability_to_score(-0.5) == 0.0

    def test_wilson_interval(self):
        assert wilson_interval(0, 0) == (0.0, 1.0)
        lower, upper = wilson_interval(8, 10)
        assert 0 < lower < 0.8 < upper < 1


class TestMetricHelpers:
    """Tests for metric helpers."""

    def test_brier_unknown_counts_as_wrong(self):
        assert brier_score([record(100, OutcomeType.TRUE_POSITIVE)]) == 0.0
        assert brier_score([record(100, OutcomeType.UNKNOWN)]) == 1.0
        assert brier_score([]) == 1.0

    def test_brier_false_negative_is_positive(self):
        assert brier_score([record(0, OutcomeType.FALSE_NEGATIVE)]) == 1.0
        assert brier_score([record(0, OutcomeType.TRUE_NEGATIVE)]) == 0.0


class TestOutcomes:
    """Tests for recording and updating outcomes."""

    def test_record_outcome(self, calibrator):
        stored = calibrator.record_outcome(WALLET, 120, OutcomeType.TRUE_POSITIVE, metadata={"market": "m1"})
        assert stored.wallet_address == CHECKSUMMED
        assert stored.original_score == 100.0
        assert stored.predicted_probability == 1.0
        assert calibrator.get_outcome(stored.id).metadata == {"market": "m1"}

    def test_invalid_wallet(self, calibrator):
        with pytest.raises(InvalidAddressError):
            calibrator.record_outcome("0xbad", 50, OutcomeType.UNKNOWN)

    def test_update_latest_outcome(self, calibrator, base_time):
        calibrator.record_outcome(WALLET, 40, OutcomeType.UNKNOWN, scored_at=base_time)
        calibrator.record_outcome(WALLET, 70, OutcomeType.UNKNOWN, scored_at=base_time + timedelta(hours=1))

        updated = calibrator.update_outcome(WALLET, OutcomeType.TRUE_POSITIVE)
        assert updated.original_score == 70
        outcomes = calibrator.get_wallet_outcomes(WALLET)
        assert [r.outcome for r in outcomes] == [OutcomeType.TRUE_POSITIVE, OutcomeType.UNKNOWN]

    def test_update_unknown_targets(self, calibrator):
        assert calibrator.update_outcome(WALLET, OutcomeType.TRUE_POSITIVE) is None
        assert calibrator.update_outcome("bad", OutcomeType.TRUE_POSITIVE) is None
        assert calibrator.update_outcome_by_id("missing", OutcomeType.TRUE_POSITIVE) is None

    def test_update_by_id(self, calibrator):
        updates = []
        calibrator.on("outcome-updated", updates.append)
        stored = calibrator.record_outcome(WALLET, 40, OutcomeType.UNKNOWN)
        calibrator.update_outcome_by_id(stored.id, OutcomeType.FALSE_POSITIVE)
        assert calibrator.get_outcome(stored.id).outcome == OutcomeType.FALSE_POSITIVE
        assert len(updates) == 1

    def test_clear_outcomes(self, mostly_true_positives):
        mostly_true_positives.calculate_calibration()
        mostly_true_positives.clear_outcomes()
        assert mostly_true_positives.get_outcomes() == []
        assert not mostly_true_positives.is_calibrated
        assert mostly_true_positives.get_last_calibration() is None


class TestCalibration:
    """Tests for calculate_calibration and calibrate_score."""

    def test_mostly_true_positives(self, mostly_true_positives):
        """Test calibration of 80 true and 20 false positives at score 90."""
        result = mostly_true_positives.calculate_calibration()
        metrics = result.metrics

        assert result.is_calibrated
        assert metrics.brier_score == pytest.approx(0.17)
        assert metrics.quality == CalibrationQuality.GOOD
        assert metrics.precision == pytest.approx(0.8)
        assert metrics.recall == 1.0
        assert metrics.confusion_matrix == {"tp": 80, "fp": 20, "tn": 0, "fn": 0}

        top = next(b for b in metrics.reliability_curve if b.bucket == ScoreBucket.BUCKET_90_100)
        assert top.sample_count == 100
        assert top.actual_positive_rate == pytest.approx(0.8)
        assert top.calibration_error == pytest.approx(0.1)

        types = [r.type for r in result.recommendations]
        assert AdjustmentType.RECALIBRATE_BUCKETS in types
        assert AdjustmentType.DECREASE_THRESHOLD not in types
        assert AdjustmentType.INCREASE_THRESHOLD not in types

    def test_adjustment_curve_is_monotone(self, mostly_true_positives):
        """Test that the fitted curve never decreases."""
        result = mostly_true_positives.calculate_calibration()
        scores = [p.calibrated_score for p in result.score_adjustment_curve]
        assert len(scores) == len(ALL_BUCKETS)
        assert all(a <= b for a, b in zip(scores, scores[1:]))

    def test_calibrate_score(self, mostly_true_positives):
        assert mostly_true_positives.calibrate_score(95) == 95
        mostly_true_positives.calculate_calibration()

        calibrated = mostly_true_positives.calibrate_score(95)
        assert calibrated < 95
        assert calibrated == pytest.approx(80, abs=1)
        assert 0 <= mostly_true_positives.calibrate_score(-10) <= 100
        assert mostly_true_positives.calibrate_score(30) <= mostly_true_positives.calibrate_score(60)

    def test_optimized_threshold(self, mostly_true_positives):
        assert mostly_true_positives.calculate_calibration().optimized_threshold == 10.0

    def test_insufficient_data(self, calibrator):
        """Test the insufficient-data result state."""
        for i in range(10):
            calibrator.record_outcome(wallet(i), 90, OutcomeType.TRUE_POSITIVE)
        result = calibrator.calculate_calibration()

        assert result.metrics.quality == CalibrationQuality.INSUFFICIENT_DATA
        assert not result.is_calibrated
        assert result.recommendations[0].type == AdjustmentType.NONE
        assert calibrator.calibrate_score(42) == 42

    def test_unknown_outcomes_do_not_count_as_known(self, calibrator):
        for i in range(60):
            calibrator.record_outcome(wallet(i), 50, OutcomeType.UNKNOWN)
        result = calibrator.calculate_calibration()
        assert result.metrics.total_samples == 60
        assert result.metrics.known_outcome_samples == 0
        assert result.metrics.quality == CalibrationQuality.INSUFFICIENT_DATA

    def test_poor_calibration_event(self, calibrator):
        recommended = []
        calibrator.on("recalibration-recommended", recommended.append)
        for i in range(50):
            calibrator.record_outcome(wallet(i), 90, OutcomeType.FALSE_POSITIVE)
        result = calibrator.calculate_calibration()

        assert result.metrics.quality == CalibrationQuality.POOR
        assert len(recommended) == 1
        assert result.recommendations[0].type == AdjustmentType.RECALIBRATE_BUCKETS

    def test_old_outcomes_pruned(self, calibrator):
        old = utc_now() - timedelta(hours=1000)
        calibrator.record_outcome(WALLET, 50, OutcomeType.TRUE_POSITIVE, scored_at=old)
        calibrator.calculate_calibration()
        assert calibrator.get_outcomes() == []

    def test_brier_history_and_summary(self, mostly_true_positives):
        mostly_true_positives.calculate_calibration()
        history = mostly_true_positives.get_brier_history()
        assert len(history) == 1
        assert history[0]["sample_count"] == 100

        summary = mostly_true_positives.get_summary()
        assert summary["total_outcomes"] == 100
        assert summary["outcomes_by_type"]["true_positive"] == 80
        assert summary["current_quality"] == "good"
        assert summary["is_calibrated"]

    def test_to_dict(self, mostly_true_positives):
        data = mostly_true_positives.calculate_calibration().to_dict()
        assert data["metrics"]["quality"] == "good"
        assert data["metrics"]["reliability_curve"][-1]["bucket"] == "90-100"


class TestConfigAndPersistence:
    """Tests for configuration and export/import."""

    def test_update_config(self, calibrator):
        calibrator.update_config(MIN_SAMPLES_FOR_CALIBRATION=5)
        assert calibrator.get_config().MIN_SAMPLES_FOR_CALIBRATION == 5
        with pytest.raises(ValueError):
            calibrator.update_config(NOT_A_SETTING=1)

    def test_lower_minimum_enables_calibration(self):
        calibrator = HistoricalScoreCalibrator(CalibratorConfig(MIN_SAMPLES_FOR_CALIBRATION=5))
        for i in range(5):
            calibrator.record_outcome(wallet(i), 70, OutcomeType.TRUE_POSITIVE)
        assert calibrator.calculate_calibration().is_calibrated

    def test_export_import(self, mostly_true_positives):
        """Test that exported data restores the calibration."""
        mostly_true_positives.calculate_calibration()
        exported = mostly_true_positives.export_data()

        other = HistoricalScoreCalibrator()
        imported = []
        other.on("data-imported", imported.append)
        assert other.import_data(exported) == 100
        assert imported == [100]
        assert other.is_calibrated
        assert other.calibrate_score(95) == mostly_true_positives.calibrate_score(95)
        assert len(other.get_brier_history()) == 1

    def test_import_without_curve_resets_calibration(self, mostly_true_positives):
        """Test that importing outcomes without a curve drops the old calibration."""
        mostly_true_positives.calculate_calibration()
        assert mostly_true_positives.is_calibrated

        mostly_true_positives.import_data({"outcomes": [{"wallet_address": WALLET, "original_score": 95}]})
        assert not mostly_true_positives.is_calibrated
        assert mostly_true_positives.calibrate_score(95) == 95
        assert mostly_true_positives.get_last_calibration() is None

    def test_import_defaults(self, calibrator):
        count = calibrator.import_data({"outcomes": [{"wallet_address": WALLET, "original_score": 30}]})
        assert count == 1
        stored = calibrator.get_outcomes()[0]
        assert stored.outcome == OutcomeType.UNKNOWN
        assert stored.predicted_probability == pytest.approx(0.3)

    def test_import_errors(self, calibrator):
        with pytest.raises(ValueError):
            calibrator.import_data([])
        with pytest.raises(ValueError):
            calibrator.import_data({"outcomes": [{"wallet_address": WALLET}]})
        with pytest.raises(ValueError):
            calibrator.import_data({"outcomes": [{"wallet_address": "bad", "original_score": 1}]})

    def test_import_rejects_decreasing_curve(self, calibrator):
        curve = [
            {"bucket": bucket.value, "calibrated_score": 100 - bucket.midpoint}
            for bucket in ALL_BUCKETS
        ]
        with pytest.raises(ValueError):
            calibrator.import_data({"outcomes": [], "adjustment_curve": curve})

    def test_failed_import_keeps_data(self, mostly_true_positives):
        with pytest.raises(ValueError):
            mostly_true_positives.import_data({"outcomes": [{"original_score": 1}]})
        assert len(mostly_true_positives.get_outcomes()) == 100
