"""
Historical Score Calibrator for Polymarket Scoring.

Validates composite suspicion scores against labeled outcomes:
- Outcome recording (true/false positive/negative, unknown)
- Brier score, log loss, AUC-ROC and confusion-matrix metrics
- Reliability curve over ten score buckets with Wilson intervals
- Monotone score adjustment curve (isotonic regression)
- Threshold and recalibration recommendations
- Export/import of outcomes, Brier history and the adjustment curve
"""

import copy
import logging
import math
import uuid
from collections import deque
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

import numpy as np
from sklearn.isotonic import IsotonicRegression
from sklearn.metrics import roc_auc_score

from .config import settings
from .events import EventSource, ListenerRegistry
from .shared import SharedInstance
from .utils import checksum_address, clamp, is_valid_wallet_address, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


class OutcomeType(Enum):
    TRUE_POSITIVE = "true_positive"
    FALSE_POSITIVE = "false_positive"
    TRUE_NEGATIVE = "true_negative"
    FALSE_NEGATIVE = "false_negative"
    UNKNOWN = "unknown"


class CalibrationQuality(Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    INSUFFICIENT_DATA = "insufficient_data"


class ScoreBucket(Enum):
    """Ten contiguous score ranges covering [0, 100]."""
    BUCKET_0_10 = "0-10"
    BUCKET_10_20 = "10-20"
    BUCKET_20_30 = "20-30"
    BUCKET_30_40 = "30-40"
    BUCKET_40_50 = "40-50"
    BUCKET_50_60 = "50-60"
    BUCKET_60_70 = "60-70"
    BUCKET_70_80 = "70-80"
    BUCKET_80_90 = "80-90"
    BUCKET_90_100 = "90-100"

    @property
    def min(self) -> float:
        return BUCKET_RANGES[self][0]

    @property
    def max(self) -> float:
        return BUCKET_RANGES[self][1]

    @property
    def midpoint(self) -> float:
        return (self.min + self.max) / 2


class AdjustmentType(Enum):
    NONE = "none"
    INCREASE_THRESHOLD = "increase_threshold"
    DECREASE_THRESHOLD = "decrease_threshold"
    RECALIBRATE_BUCKETS = "recalibrate_buckets"


BUCKET_RANGES = {bucket: (i * 10.0, (i + 1) * 10.0) for i, bucket in enumerate(ScoreBucket)}
ALL_BUCKETS = list(ScoreBucket)

POSITIVE_OUTCOMES = (OutcomeType.TRUE_POSITIVE, OutcomeType.FALSE_NEGATIVE)

OUTCOME_DESCRIPTIONS = {
    OutcomeType.TRUE_POSITIVE: "Correctly identified suspicious activity",
    OutcomeType.FALSE_POSITIVE: "Incorrectly flagged normal activity as suspicious",
    OutcomeType.TRUE_NEGATIVE: "Correctly identified normal activity",
    OutcomeType.FALSE_NEGATIVE: "Missed suspicious activity",
    OutcomeType.UNKNOWN: "Outcome not yet determined",
}

QUALITY_DESCRIPTIONS = {
    CalibrationQuality.EXCELLENT: "Scores accurately predict outcomes",
    CalibrationQuality.GOOD: "Scores reasonably predict outcomes",
    CalibrationQuality.FAIR: "Some adjustment may improve accuracy",
    CalibrationQuality.POOR: "Significant adjustment recommended",
    CalibrationQuality.INSUFFICIENT_DATA: "Not enough outcome data for calibration",
}

for _outcome in OutcomeType:
    if _outcome not in OUTCOME_DESCRIPTIONS:
        raise ValueError(f"Outcome type {_outcome} has no description")
for _quality in CalibrationQuality:
    if _quality not in QUALITY_DESCRIPTIONS:
        raise ValueError(f"Calibration quality {_quality} has no description")
for _i, _bucket in enumerate(ALL_BUCKETS[:-1]):
    if _bucket.max != ALL_BUCKETS[_i + 1].min:
        raise ValueError(f"Score bucket {_bucket} is not contiguous with the next bucket")


def get_bucket_for_score(score: float) -> ScoreBucket:
    """Bucket holding a score; the score is clamped to [0, 100] and 100 falls in 90-100."""
    clamped = clamp(score, 0.0, 100.0)
    return ALL_BUCKETS[min(int(clamped // 10), len(ALL_BUCKETS) - 1)]


def score_to_probability(score: float) -> float:
    return clamp(score / 100, 0.0, 1.0)


def probability_to_score(probability: float) -> float:
    return clamp(probability * 100, 0.0, 100.0)


def wilson_interval(positives: int, n: int, z: float = 1.96) -> tuple[float, float]:
    """Wilson score interval for a proportion; [0, 1] with no samples."""
    if n == 0:
        return 0.0, 1.0
    p = positives / n
    denominator = 1 + z * z / n
    center = (p + z * z / (2 * n)) / denominator
    margin = z / denominator * math.sqrt(p * (1 - p) / n + z * z / (4 * n * n))
    return max(0.0, center - margin), min(1.0, center + margin)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class CalibratorConfig:
    """Calibration thresholds."""

    MIN_SAMPLES_FOR_CALIBRATION: int = 50
    MIN_SAMPLES_PER_BUCKET: int = 5
    CURRENT_THRESHOLD: float = 50.0
    ENABLE_AUTO_ADJUSTMENT: bool = True
    MAX_OUTCOME_AGE_HOURS: float = 720.0
    BRIER_RECALIBRATION_THRESHOLD: float = 0.25
    SKEWED_BUCKET_SHARE: float = 0.8
    MAX_OUTCOMES_TO_STORE: int = 10000
    MAX_BRIER_HISTORY: int = 100
    ENABLE_EVENTS: bool = True

    # Brier score upper bounds, best quality first
    QUALITY_THRESHOLDS: dict = None

    def __post_init__(self):
        if self.QUALITY_THRESHOLDS is None:
            self.QUALITY_THRESHOLDS = {
                CalibrationQuality.EXCELLENT: 0.1,
                CalibrationQuality.GOOD: 0.2,
                CalibrationQuality.FAIR: 0.3,
            }

    @classmethod
    def from_settings(cls) -> "CalibratorConfig":
        return cls(
            MIN_SAMPLES_FOR_CALIBRATION=settings.min_samples_for_calibration,
            MAX_OUTCOMES_TO_STORE=settings.max_outcomes_to_store,
            MAX_OUTCOME_AGE_HOURS=settings.max_outcome_age_hours,
            ENABLE_EVENTS=settings.enable_events,
        )


@dataclass
class OutcomeRecord:
    """A scored wallet and what it turned out to be."""
    id: str
    wallet_address: str
    original_score: float
    predicted_probability: float
    outcome: OutcomeType
    scored_at: datetime
    outcome_determined_at: datetime
    metadata: dict = field(default_factory=dict)

    @property
    def is_known(self) -> bool:
        return self.outcome != OutcomeType.UNKNOWN

    @property
    def is_actual_positive(self) -> bool:
        return self.outcome in POSITIVE_OUTCOMES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "wallet_address": self.wallet_address,
            "original_score": self.original_score,
            "predicted_probability": self.predicted_probability,
            "outcome": self.outcome.value,
            "scored_at": self.scored_at.isoformat(),
            "outcome_determined_at": self.outcome_determined_at.isoformat(),
            "metadata": copy.deepcopy(self.metadata),
        }


@dataclass
class BucketStats:
    bucket: ScoreBucket
    avg_predicted_probability: float
    actual_positive_rate: float
    sample_count: int
    calibration_error: float
    confidence_lower: float
    confidence_upper: float
    low_confidence: bool

    def to_dict(self) -> dict:
        return {
            "bucket": self.bucket.value,
            "min_score": self.bucket.min,
            "max_score": self.bucket.max,
            "avg_predicted_probability": self.avg_predicted_probability,
            "actual_positive_rate": self.actual_positive_rate,
            "sample_count": self.sample_count,
            "calibration_error": self.calibration_error,
            "confidence_interval": {"lower": self.confidence_lower, "upper": self.confidence_upper},
            "low_confidence": self.low_confidence,
        }


@dataclass
class AdjustmentPoint:
    bucket: ScoreBucket
    midpoint: float
    calibrated_score: float
    adjustment: float
    sample_count: int

    def to_dict(self) -> dict:
        return {
            "bucket": self.bucket.value,
            "midpoint": self.midpoint,
            "calibrated_score": self.calibrated_score,
            "adjustment": self.adjustment,
            "sample_count": self.sample_count,
        }


@dataclass
class SuggestedChange:
    parameter: str
    current_value: float
    suggested_value: float
    expected_improvement: str

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class AdjustmentRecommendation:
    type: AdjustmentType
    description: str
    reason: str
    suggested_changes: list = field(default_factory=list)
    confidence: float = 0.0
    priority: int = 1

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "description": self.description,
            "reason": self.reason,
            "suggested_changes": [c.to_dict() for c in self.suggested_changes],
            "confidence": self.confidence,
            "priority": self.priority,
        }


@dataclass
class CalibrationMetrics:
    quality: CalibrationQuality
    total_samples: int
    known_outcome_samples: int
    brier_score: float = 1.0
    log_loss: Optional[float] = None
    auc_roc: float = 0.5
    precision: float = 0.0
    recall: float = 0.0
    f1_score: float = 0.0
    accuracy: float = 0.0
    specificity: float = 0.0
    true_positive_rate: float = 0.0
    false_positive_rate: float = 0.0
    expected_calibration_error: float = 0.0
    max_calibration_error: float = 0.0
    confusion_matrix: dict = field(default_factory=lambda: {"tp": 0, "fp": 0, "tn": 0, "fn": 0})
    reliability_curve: list = field(default_factory=list)

    def to_dict(self) -> dict:
        result = {k: v for k, v in self.__dict__.items() if k not in ("quality", "reliability_curve")}
        result["quality"] = self.quality.value
        result["confusion_matrix"] = dict(self.confusion_matrix)
        result["reliability_curve"] = [b.to_dict() for b in self.reliability_curve]
        return result


@dataclass
class CalibrationResult:
    metrics: CalibrationMetrics
    recommendations: list
    optimized_threshold: float
    score_adjustment_curve: list      # AdjustmentPoint per bucket
    is_calibrated: bool
    calibrated_at: datetime

    def to_dict(self) -> dict:
        return {
            "metrics": self.metrics.to_dict(),
            "recommendations": [r.to_dict() for r in self.recommendations],
            "optimized_threshold": self.optimized_threshold,
            "score_adjustment_curve": [p.to_dict() for p in self.score_adjustment_curve],
            "is_calibrated": self.is_calibrated,
            "calibrated_at": self.calibrated_at.isoformat(),
        }


# ============================================================================
# Metric helpers
# ============================================================================

def brier_score(records: list[OutcomeRecord]) -> float:
    """
    Mean squared error of predicted probability against the actual label.

    UNKNOWN outcomes count as maximally wrong (1.0). No records gives 1.0.
    """
    if not records:
        return 1.0
    errors = np.array([
        (r.predicted_probability - (1.0 if r.is_actual_positive else 0.0)) ** 2 if r.is_known else 1.0
        for r in records
    ])
    return float(errors.mean())


def log_loss(records: list[OutcomeRecord], eps: float = 1e-15) -> Optional[float]:
    known = [r for r in records if r.is_known]
    if not known:
        return None
    p = np.clip(np.array([r.predicted_probability for r in known]), eps, 1 - eps)
    y = np.array([1.0 if r.is_actual_positive else 0.0 for r in known])
    return float(-np.mean(y * np.log(p) + (1 - y) * np.log(1 - p)))


def confusion_counts(records: list[OutcomeRecord], threshold: float) -> dict:
    counts = {"tp": 0, "fp": 0, "tn": 0, "fn": 0}
    for r in records:
        predicted = r.original_score >= threshold
        actual = r.is_actual_positive
        if predicted and actual:
            counts["tp"] += 1
        elif predicted:
            counts["fp"] += 1
        elif actual:
            counts["fn"] += 1
        else:
            counts["tn"] += 1
    return counts


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def f1_from_counts(counts: dict) -> float:
    precision = _ratio(counts["tp"], counts["tp"] + counts["fp"])
    recall = _ratio(counts["tp"], counts["tp"] + counts["fn"])
    return _ratio(2 * precision * recall, precision + recall)


def auc_roc(records: list[OutcomeRecord]) -> float:
    """AUC-ROC of predicted probability; 0.5 with fewer than two samples or one class."""
    if len(records) < 2:
        return 0.5
    y = [1 if r.is_actual_positive else 0 for r in records]
    if len(set(y)) < 2:
        return 0.5
    return float(roc_auc_score(y, [r.predicted_probability for r in records]))


def build_reliability_curve(records: list[OutcomeRecord], min_samples_per_bucket: int = 5) -> list[BucketStats]:
    by_bucket = {bucket: [] for bucket in ALL_BUCKETS}
    for r in records:
        by_bucket[get_bucket_for_score(r.original_score)].append(r)

    curve = []
    for bucket in ALL_BUCKETS:
        members = by_bucket[bucket]
        if not members:
            curve.append(BucketStats(
                bucket=bucket,
                avg_predicted_probability=bucket.midpoint / 100,
                actual_positive_rate=0.0,
                sample_count=0,
                calibration_error=0.0,
                confidence_lower=0.0,
                confidence_upper=1.0,
                low_confidence=True,
            ))
            continue

        positives = sum(1 for r in members if r.is_actual_positive)
        avg_predicted = float(np.mean([r.predicted_probability for r in members]))
        actual_rate = positives / len(members)
        lower, upper = wilson_interval(positives, len(members))
        curve.append(BucketStats(
            bucket=bucket,
            avg_predicted_probability=avg_predicted,
            actual_positive_rate=actual_rate,
            sample_count=len(members),
            calibration_error=abs(avg_predicted - actual_rate),
            confidence_lower=lower,
            confidence_upper=upper,
            low_confidence=len(members) < min_samples_per_bucket,
        ))
    return curve


def build_adjustment_curve(curve: list[BucketStats], min_samples_per_bucket: int = 5) -> list[AdjustmentPoint]:
    """
    Monotone calibrated score per bucket.

    Buckets with enough samples target their actual positive rate; the rest
    keep their midpoint. Isotonic regression, weighted by sample count,
    makes the targets non-decreasing.
    """
    midpoints = np.array([b.bucket.midpoint for b in curve])
    targets = np.array([
        probability_to_score(b.actual_positive_rate) if b.sample_count >= min_samples_per_bucket
        else b.bucket.midpoint
        for b in curve
    ])
    weights = np.array([b.sample_count + 1.0 for b in curve])

    iso = IsotonicRegression(y_min=0.0, y_max=100.0, increasing=True)
    calibrated = iso.fit_transform(midpoints, targets, sample_weight=weights)

    return [
        AdjustmentPoint(
            bucket=b.bucket,
            midpoint=b.bucket.midpoint,
            calibrated_score=round(float(score), 4),
            adjustment=round(float(score) - b.bucket.midpoint, 4),
            sample_count=b.sample_count,
        )
        for b, score in zip(curve, calibrated)
    ]


def identity_curve() -> list[AdjustmentPoint]:
    return [
        AdjustmentPoint(bucket=b, midpoint=b.midpoint, calibrated_score=b.midpoint, adjustment=0.0, sample_count=0)
        for b in ALL_BUCKETS
    ]


# ============================================================================
# Calibrator
# ============================================================================

class HistoricalScoreCalibrator(EventSource):
    """
    Tracks score outcomes and calibrates future scores against them.

    Events:
        outcome-recorded(OutcomeRecord)
        outcome-updated(OutcomeRecord)
        calibration-completed({quality, brier_score, sample_count})
        recalibration-recommended(list[AdjustmentRecommendation])
        config-updated(CalibratorConfig)
        outcomes-cleared()
        data-imported(outcome_count)
    """

    EVENTS = (
        "outcome-recorded",
        "outcome-updated",
        "calibration-completed",
        "recalibration-recommended",
        "config-updated",
        "outcomes-cleared",
        "data-imported",
    )

    def __init__(self, config: Optional[CalibratorConfig] = None):
        """
        Initialize the calibrator.

        Args:
            config: Calibration thresholds. Defaults to CalibratorConfig().
        """
        self.config = config or CalibratorConfig()
        self.events = ListenerRegistry(self.EVENTS, enabled=self.config.ENABLE_EVENTS)
        self._outcomes: dict[str, OutcomeRecord] = {}
        self._wallet_outcomes: dict[str, set] = {}
        self._last_calibration: Optional[CalibrationResult] = None
        self._brier_history: deque = deque(maxlen=self.config.MAX_BRIER_HISTORY)
        self._adjustment_curve = identity_curve()
        self._is_calibrated = False

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def record_outcome(
        self,
        wallet_address: str,
        score: float,
        outcome: OutcomeType,
        scored_at: Optional[datetime] = None,
        metadata: Optional[dict] = None,
    ) -> OutcomeRecord:
        """
        Record a scored wallet with its outcome.

        Args:
            wallet_address: Wallet that was scored.
            score: Original suspicion score, clamped to [0, 100].
            outcome: Ground-truth outcome.
            scored_at: When the score was produced. Defaults to now.
            metadata: Free-form context stored with the record.

        Returns:
            The stored record (a copy).

        Raises:
            InvalidAddressError: If the wallet address is invalid.
        """
        wallet = checksum_address(wallet_address)
        now = utc_now()
        original = clamp(float(score), 0.0, 100.0)
        record = OutcomeRecord(
            id=uuid.uuid4().hex,
            wallet_address=wallet,
            original_score=original,
            predicted_probability=score_to_probability(original),
            outcome=OutcomeType(outcome),
            scored_at=parse_timestamp(scored_at, now),
            outcome_determined_at=now,
            metadata=copy.deepcopy(metadata) if metadata else {},
        )
        self._store(record)
        self.events.emit("outcome-recorded", copy.deepcopy(record))
        return copy.deepcopy(record)

    def _store(self, record: OutcomeRecord) -> None:
        self._outcomes[record.id] = record
        self._wallet_outcomes.setdefault(record.wallet_address, set()).add(record.id)

    def _remove(self, record_id: str) -> None:
        record = self._outcomes.pop(record_id, None)
        if record is None:
            return
        ids = self._wallet_outcomes.get(record.wallet_address)
        if ids is not None:
            ids.discard(record_id)
            if not ids:
                del self._wallet_outcomes[record.wallet_address]

    def _set_outcome(self, record: OutcomeRecord, outcome: OutcomeType) -> OutcomeRecord:
        record.outcome = OutcomeType(outcome)
        record.outcome_determined_at = utc_now()
        self.events.emit("outcome-updated", copy.deepcopy(record))
        return copy.deepcopy(record)

    def update_outcome(self, wallet_address: str, outcome: OutcomeType) -> Optional[OutcomeRecord]:
        """Update the wallet's most recent record (by scored_at)."""
        if not is_valid_wallet_address(wallet_address):
            return None
        ids = self._wallet_outcomes.get(checksum_address(wallet_address))
        if not ids:
            return None
        latest = max((self._outcomes[i] for i in ids), key=lambda r: r.scored_at)
        return self._set_outcome(latest, outcome)

    def update_outcome_by_id(self, record_id: str, outcome: OutcomeType) -> Optional[OutcomeRecord]:
        record = self._outcomes.get(record_id)
        if record is None:
            return None
        return self._set_outcome(record, outcome)

    def get_outcome(self, record_id: str) -> Optional[OutcomeRecord]:
        record = self._outcomes.get(record_id)
        return copy.deepcopy(record) if record else None

    def get_wallet_outcomes(self, wallet_address: str) -> list[OutcomeRecord]:
        """Records for a wallet, newest first."""
        if not is_valid_wallet_address(wallet_address):
            return []
        ids = self._wallet_outcomes.get(checksum_address(wallet_address), set())
        records = sorted((self._outcomes[i] for i in ids), key=lambda r: r.scored_at, reverse=True)
        return copy.deepcopy(records)

    def get_outcomes(self) -> list[OutcomeRecord]:
        return copy.deepcopy(list(self._outcomes.values()))

    def clear_outcomes(self) -> None:
        self._outcomes.clear()
        self._wallet_outcomes.clear()
        self._last_calibration = None
        self._brier_history.clear()
        self._adjustment_curve = identity_curve()
        self._is_calibrated = False
        self.events.emit("outcomes-cleared")

    def _prune(self, now: datetime) -> None:
        cutoff = now - timedelta(hours=self.config.MAX_OUTCOME_AGE_HOURS)
        expired = [r.id for r in self._outcomes.values() if r.scored_at < cutoff]
        for record_id in expired:
            self._remove(record_id)

        overflow = len(self._outcomes) - self.config.MAX_OUTCOMES_TO_STORE
        if overflow > 0:
            oldest = sorted(self._outcomes.values(), key=lambda r: r.scored_at)[:overflow]
            for record in oldest:
                self._remove(record.id)

        if expired or overflow > 0:
            logger.debug(f"Pruned {len(expired)} expired and {max(overflow, 0)} excess outcomes")

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def _quality(self, brier: float) -> CalibrationQuality:
        for quality in (CalibrationQuality.EXCELLENT, CalibrationQuality.GOOD, CalibrationQuality.FAIR):
            if brier < self.config.QUALITY_THRESHOLDS[quality]:
                return quality
        return CalibrationQuality.POOR

    def _optimal_threshold(self, known: list[OutcomeRecord]) -> float:
        best_threshold = self.config.CURRENT_THRESHOLD
        best_f1 = 0.0
        for threshold in range(10, 95, 5):
            f1 = f1_from_counts(confusion_counts(known, threshold))
            if f1 > best_f1:
                best_f1 = f1
                best_threshold = float(threshold)
        return best_threshold

    def _recommendations(self, metrics: CalibrationMetrics) -> list[AdjustmentRecommendation]:
        threshold = self.config.CURRENT_THRESHOLD
        recommendations = []

        if metrics.false_positive_rate > 0.3 and metrics.precision < 0.5:
            recommendations.append(AdjustmentRecommendation(
                type=AdjustmentType.INCREASE_THRESHOLD,
                description="Reduce false positives by raising the threshold",
                reason=(
                    f"High false positive rate ({metrics.false_positive_rate * 100:.1f}%) "
                    f"with low precision ({metrics.precision * 100:.1f}%)"
                ),
                suggested_changes=[SuggestedChange(
                    parameter="threshold",
                    current_value=threshold,
                    suggested_value=min(80.0, threshold + 10),
                    expected_improvement="Fewer false alerts",
                )],
                confidence=75.0,
                priority=2,
            ))

        if metrics.recall < 0.5:
            recommendations.append(AdjustmentRecommendation(
                type=AdjustmentType.DECREASE_THRESHOLD,
                description="Capture more true positives by lowering the threshold",
                reason=f"Low recall ({metrics.recall * 100:.1f}%)",
                suggested_changes=[SuggestedChange(
                    parameter="threshold",
                    current_value=threshold,
                    suggested_value=max(30.0, threshold - 10),
                    expected_improvement="More suspicious wallets caught",
                )],
                confidence=70.0,
                priority=3,
            ))

        populated = [b for b in metrics.reliability_curve if b.sample_count > 0]
        largest_share = (
            max(b.sample_count for b in populated) / metrics.known_outcome_samples
            if populated and metrics.known_outcome_samples else 0.0
        )
        skewed = largest_share >= self.config.SKEWED_BUCKET_SHARE
        if metrics.brier_score > self.config.BRIER_RECALIBRATION_THRESHOLD or skewed:
            worst = sorted(
                (b for b in populated if b.sample_count >= self.config.MIN_SAMPLES_PER_BUCKET),
                key=lambda b: b.calibration_error,
                reverse=True,
            )[:3]
            if skewed:
                reason = f"{largest_share * 100:.0f}% of samples fall in one score bucket"
            else:
                reason = f"Poor calibration (Brier score {metrics.brier_score:.3f})"
            if worst:
                reason += f". Worst buckets: {', '.join(b.bucket.value for b in worst)}"
            recommendations.append(AdjustmentRecommendation(
                type=AdjustmentType.RECALIBRATE_BUCKETS,
                description="Recalibrate score buckets",
                reason=reason,
                suggested_changes=[
                    SuggestedChange(
                        parameter=f"bucket_{b.bucket.value}",
                        current_value=b.bucket.midpoint,
                        suggested_value=probability_to_score(b.actual_positive_rate),
                        expected_improvement=f"Reduce bucket calibration error by {b.calibration_error * 100:.1f}%",
                    )
                    for b in worst
                ],
                confidence=80.0,
                priority=1,
            ))

        recommendations.sort(key=lambda r: r.priority)
        return recommendations

    def calculate_calibration(self, now: Optional[datetime] = None) -> CalibrationResult:
        """
        Recompute calibration from the stored outcomes.

        Outcomes older than MAX_OUTCOME_AGE_HOURS are pruned first. With
        fewer than MIN_SAMPLES_FOR_CALIBRATION known outcomes the result is
        INSUFFICIENT_DATA and the calibrator is not calibrated.

        Args:
            now: Calibration time.

        Returns:
            CalibrationResult
        """
        now = now or utc_now()
        self._prune(now)
        records = list(self._outcomes.values())
        known = [r for r in records if r.is_known]

        if len(known) < self.config.MIN_SAMPLES_FOR_CALIBRATION:
            metrics = CalibrationMetrics(
                quality=CalibrationQuality.INSUFFICIENT_DATA,
                total_samples=len(records),
                known_outcome_samples=len(known),
            )
            result = CalibrationResult(
                metrics=metrics,
                recommendations=[AdjustmentRecommendation(
                    type=AdjustmentType.NONE,
                    description="Gather more outcome data",
                    reason=(
                        f"Only {len(known)} known outcomes, "
                        f"need {self.config.MIN_SAMPLES_FOR_CALIBRATION} for calibration"
                    ),
                    confidence=100.0,
                    priority=1,
                )],
                optimized_threshold=self.config.CURRENT_THRESHOLD,
                score_adjustment_curve=copy.deepcopy(self._adjustment_curve),
                is_calibrated=False,
                calibrated_at=now,
            )
            self._last_calibration = result
            self._is_calibrated = False
            logger.info(f"Calibration skipped: {len(known)} known outcomes")
            self.events.emit("calibration-completed", {
                "quality": metrics.quality,
                "brier_score": metrics.brier_score,
                "sample_count": len(known),
            })
            return copy.deepcopy(result)

        counts = confusion_counts(known, self.config.CURRENT_THRESHOLD)
        tp, fp, tn, fn = counts["tp"], counts["fp"], counts["tn"], counts["fn"]
        precision = _ratio(tp, tp + fp)
        recall = _ratio(tp, tp + fn)
        brier = brier_score(records)

        curve = build_reliability_curve(known, self.config.MIN_SAMPLES_PER_BUCKET)
        populated = [b for b in curve if b.sample_count > 0]

        metrics = CalibrationMetrics(
            quality=self._quality(brier),
            total_samples=len(records),
            known_outcome_samples=len(known),
            brier_score=brier,
            log_loss=log_loss(known),
            auc_roc=auc_roc(known),
            precision=precision,
            recall=recall,
            f1_score=_ratio(2 * precision * recall, precision + recall),
            accuracy=_ratio(tp + tn, len(known)),
            specificity=_ratio(tn, tn + fp),
            true_positive_rate=recall,
            false_positive_rate=_ratio(fp, fp + tn),
            expected_calibration_error=sum(b.sample_count / len(known) * b.calibration_error for b in populated),
            max_calibration_error=max((b.calibration_error for b in populated), default=0.0),
            confusion_matrix=counts,
            reliability_curve=curve,
        )

        self._adjustment_curve = build_adjustment_curve(curve, self.config.MIN_SAMPLES_PER_BUCKET)
        self._is_calibrated = True
        result = CalibrationResult(
            metrics=metrics,
            recommendations=self._recommendations(metrics),
            optimized_threshold=self._optimal_threshold(known),
            score_adjustment_curve=copy.deepcopy(self._adjustment_curve),
            is_calibrated=True,
            calibrated_at=now,
        )
        self._last_calibration = result
        self._brier_history.append({"timestamp": now, "brier_score": brier, "sample_count": len(known)})

        logger.info(
            f"Calibration complete: quality={metrics.quality.value}, "
            f"brier={brier:.4f}, samples={len(known)}"
        )
        self.events.emit("calibration-completed", {
            "quality": metrics.quality,
            "brier_score": brier,
            "sample_count": len(known),
        })
        if metrics.quality == CalibrationQuality.POOR and self.config.ENABLE_AUTO_ADJUSTMENT:
            self.events.emit("recalibration-recommended", copy.deepcopy(result.recommendations))
        return copy.deepcopy(result)

    def calibrate_score(self, score: float) -> float:
        """
        Map a raw score through the adjustment curve.

        Returns the input unchanged until a calibration has succeeded.
        """
        if not self._is_calibrated:
            return score
        midpoints = [p.midpoint for p in self._adjustment_curve]
        calibrated = [p.calibrated_score for p in self._adjustment_curve]
        value = float(np.interp(clamp(score, 0.0, 100.0), midpoints, calibrated))
        return round(clamp(value, 0.0, 100.0), 2)

    @property
    def is_calibrated(self) -> bool:
        return self._is_calibrated

    def get_last_calibration(self) -> Optional[CalibrationResult]:
        return copy.deepcopy(self._last_calibration)

    def get_brier_history(self) -> list[dict]:
        return copy.deepcopy(list(self._brier_history))

    def get_adjustment_curve(self) -> list[AdjustmentPoint]:
        return copy.deepcopy(self._adjustment_curve)

    def get_summary(self, now: Optional[datetime] = None) -> dict:
        by_type = {t.value: 0 for t in OutcomeType}
        for record in self._outcomes.values():
            by_type[record.outcome.value] += 1

        last = self._last_calibration
        hours_since = None
        if last is not None:
            hours_since = ((now or utc_now()) - last.calibrated_at).total_seconds() / 3600

        return {
            "total_outcomes": len(self._outcomes),
            "outcomes_by_type": by_type,
            "current_quality": (last.metrics.quality if last else CalibrationQuality.INSUFFICIENT_DATA).value,
            "current_brier_score": last.metrics.brier_score if last else 1.0,
            "is_calibrated": self._is_calibrated,
            "brier_history": [
                {**entry, "timestamp": entry["timestamp"].isoformat()}
                for entry in list(self._brier_history)[-10:]
            ],
            "active_recommendations": len(last.recommendations) if last else 0,
            "last_calibration_at": last.calibrated_at.isoformat() if last else None,
            "hours_since_last_calibration": hours_since,
        }

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> CalibratorConfig:
        return copy.deepcopy(self.config)

    def update_config(self, **changes: Any) -> CalibratorConfig:
        """
        Update calibration thresholds by field name.

        Raises:
            ValueError: If a field name is unknown.
        """
        known = {f.name for f in fields(CalibratorConfig)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown calibrator settings: {sorted(unknown)}")

        self.config = replace(self.config, **changes)
        self.events.enabled = self.config.ENABLE_EVENTS
        if self._brier_history.maxlen != self.config.MAX_BRIER_HISTORY:
            self._brier_history = deque(self._brier_history, maxlen=self.config.MAX_BRIER_HISTORY)
        self.events.emit("config-updated", copy.deepcopy(self.config))
        return copy.deepcopy(self.config)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_data(self) -> dict:
        """Plain-JSON snapshot of outcomes, Brier history and adjustment curve."""
        return {
            "outcomes": [r.to_dict() for r in self._outcomes.values()],
            "brier_history": [
                {**entry, "timestamp": entry["timestamp"].isoformat()} for entry in self._brier_history
            ],
            "adjustment_curve": [p.to_dict() for p in self._adjustment_curve],
            "is_calibrated": self._is_calibrated,
        }

    def import_data(self, data: dict) -> int:
        """
        Replace stored outcomes from export_data() output.

        Missing optional fields get defaults.

        Returns:
            Number of outcomes imported.

        Raises:
            ValueError: If the payload shape is invalid.
        """
        if not isinstance(data, dict) or not isinstance(data.get("outcomes"), list):
            raise ValueError("Calibration data must be a dict with an 'outcomes' list")

        now = utc_now()
        records = []
        for i, entry in enumerate(data["outcomes"]):
            if not isinstance(entry, dict):
                raise ValueError(f"Outcome {i} is not an object")
            try:
                score = clamp(float(entry["original_score"]), 0.0, 100.0)
                record = OutcomeRecord(
                    id=str(entry.get("id") or uuid.uuid4().hex),
                    wallet_address=checksum_address(entry["wallet_address"]),
                    original_score=score,
                    predicted_probability=float(entry.get("predicted_probability", score_to_probability(score))),
                    outcome=OutcomeType(entry.get("outcome", OutcomeType.UNKNOWN.value)),
                    scored_at=parse_timestamp(entry.get("scored_at"), default=now),
                    outcome_determined_at=parse_timestamp(entry.get("outcome_determined_at"), default=now),
                    metadata=dict(entry.get("metadata") or {}),
                )
            except (KeyError, TypeError) as e:
                raise ValueError(f"Outcome {i} is malformed: {e}") from e
            records.append(record)

        history = []
        for entry in data.get("brier_history") or []:
            if not isinstance(entry, dict) or "brier_score" not in entry:
                raise ValueError("Brier history entries need a 'brier_score'")
            history.append({
                "timestamp": parse_timestamp(entry.get("timestamp"), default=now),
                "brier_score": float(entry["brier_score"]),
                "sample_count": int(entry.get("sample_count", 0)),
            })

        curve = None
        if data.get("adjustment_curve"):
            by_bucket = {}
            for entry in data["adjustment_curve"]:
                if not isinstance(entry, dict):
                    raise ValueError("Adjustment curve entries must be objects")
                bucket = ScoreBucket(entry.get("bucket"))
                by_bucket[bucket] = AdjustmentPoint(
                    bucket=bucket,
                    midpoint=bucket.midpoint,
                    calibrated_score=float(entry.get("calibrated_score", bucket.midpoint)),
                    adjustment=float(entry.get("adjustment", 0.0)),
                    sample_count=int(entry.get("sample_count", 0)),
                )
            curve = [by_bucket.get(b) or identity_curve()[i] for i, b in enumerate(ALL_BUCKETS)]
            scores = [p.calibrated_score for p in curve]
            if any(a > b for a, b in zip(scores, scores[1:])):
                raise ValueError("Adjustment curve must be non-decreasing")

        self._outcomes.clear()
        self._wallet_outcomes.clear()
        for record in records:
            self._store(record)
        self._brier_history = deque(history, maxlen=self.config.MAX_BRIER_HISTORY)
        if curve is not None:
            self._adjustment_curve = curve
            self._is_calibrated = bool(data.get("is_calibrated", False))
        else:
            self._adjustment_curve = identity_curve()
            self._is_calibrated = False
        self._last_calibration = None

        logger.info(f"Imported {len(records)} calibration outcomes")
        self.events.emit("data-imported", len(records))
        return len(records)


# ============================================================================
# Shared instance
# ============================================================================

_shared = SharedInstance(
    lambda: HistoricalScoreCalibrator(CalibratorConfig.from_settings()),
    on_reset=lambda calibrator: calibrator.events.clear(),
)


def create_historical_score_calibrator(config: Optional[CalibratorConfig] = None) -> HistoricalScoreCalibrator:
    return HistoricalScoreCalibrator(config)


def get_shared_historical_score_calibrator() -> HistoricalScoreCalibrator:
    return _shared.get()


def set_shared_historical_score_calibrator(calibrator: HistoricalScoreCalibrator) -> None:
    _shared.set(calibrator)


def reset_shared_historical_score_calibrator() -> None:
    _shared.reset()
