"""
Historical Accuracy Scorer for Polymarket Scoring.

Tracks each wallet's predictions and scores how accurate they turn out:
- Raw and conviction-weighted accuracy per time window
- Brier score against the entry probability
- Per-category breakdown and top categories
- Trend between older and recent predictions
- Anomaly detection (exceptional accuracy, high-conviction streaks,
  category expertise, late timing, contrarian wins)
- Suspicion score and potential-insider flag

Predictions are keyed by (wallet, prediction_id); re-adding an id
replaces the stored prediction.
"""

import copy
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from .config import settings
from .events import EventSource, ListenerRegistry
from .models import ConvictionLevel, PredictionOutcome, TrackedPrediction
from .shared import SharedInstance
from .utils import checksum_address, is_valid_wallet_address, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


class AccuracyWindow(Enum):
    """Time windows accuracy is reported over."""
    ALL_TIME = "all_time"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


ACCURACY_WINDOW_DURATIONS = {
    AccuracyWindow.ALL_TIME: None,
    AccuracyWindow.DAY: timedelta(days=1),
    AccuracyWindow.WEEK: timedelta(days=7),
    AccuracyWindow.MONTH: timedelta(days=30),
    AccuracyWindow.QUARTER: timedelta(days=90),
    AccuracyWindow.YEAR: timedelta(days=365),
}


class AccuracyTier(Enum):
    """Accuracy classification from all-time raw accuracy."""
    UNKNOWN = "unknown"
    VERY_POOR = "very_poor"
    POOR = "poor"
    AVERAGE = "average"
    ABOVE_AVERAGE = "above_average"
    GOOD = "good"
    VERY_GOOD = "very_good"
    EXCELLENT = "excellent"
    EXCEPTIONAL = "exceptional"


class AccuracySuspicionLevel(Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TrendDirection(Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class AccuracyAnomalyType(Enum):
    EXCEPTIONAL_ACCURACY = "exceptional_accuracy"
    SUDDEN_IMPROVEMENT = "sudden_improvement"
    PERFECT_HIGH_CONVICTION = "perfect_high_conviction"
    CATEGORY_EXPERTISE = "category_expertise"
    TIMING_ADVANTAGE = "timing_advantage"
    CONTRARIAN_SUCCESS = "contrarian_success"


# Minimum raw accuracy for each tier, highest first
DEFAULT_TIER_THRESHOLDS = {
    AccuracyTier.EXCEPTIONAL: 90.0,
    AccuracyTier.EXCELLENT: 80.0,
    AccuracyTier.VERY_GOOD: 70.0,
    AccuracyTier.GOOD: 60.0,
    AccuracyTier.ABOVE_AVERAGE: 55.0,
    AccuracyTier.AVERAGE: 50.0,
    AccuracyTier.POOR: 40.0,
    AccuracyTier.VERY_POOR: 0.0,
}

CONVICTION_WEIGHTS = {
    ConvictionLevel.VERY_LOW: 0.2,
    ConvictionLevel.LOW: 0.5,
    ConvictionLevel.MEDIUM: 1.0,
    ConvictionLevel.HIGH: 1.5,
    ConvictionLevel.VERY_HIGH: 2.0,
}

HIGH_CONVICTION_LEVELS = (ConvictionLevel.HIGH, ConvictionLevel.VERY_HIGH)

SUSPICION_WEIGHTS = {
    "accuracy": 0.30,
    "high_conviction_accuracy": 0.25,
    "category_expertise": 0.15,
    "trend": 0.10,
    "contrarian_success": 0.10,
    "anomalies": 0.10,
}

for _window in AccuracyWindow:
    if _window not in ACCURACY_WINDOW_DURATIONS:
        raise ValueError(f"Accuracy window {_window} has no duration")
for _level in ConvictionLevel:
    if _level not in CONVICTION_WEIGHTS:
        raise ValueError(f"Conviction level {_level} has no weight")
for _tier in AccuracyTier:
    if _tier != AccuracyTier.UNKNOWN and _tier not in DEFAULT_TIER_THRESHOLDS:
        raise ValueError(f"Accuracy tier {_tier} has no threshold")


@dataclass
class AccuracyScorerConfig:
    """Thresholds for accuracy analysis."""

    MIN_PREDICTIONS_FOR_ANALYSIS: int = 10
    MIN_PREDICTIONS_FOR_HIGH_CONFIDENCE: int = 30
    EXCEPTIONAL_ACCURACY_THRESHOLD: float = 80.0
    POTENTIAL_INSIDER_ACCURACY_THRESHOLD: float = 75.0
    MIN_HIGH_CONVICTION_FOR_INSIDER: int = 5
    HIGH_CONVICTION_ACCURACY_THRESHOLD: float = 85.0
    TREND_THRESHOLD_POINTS: float = 5.0
    CONTRARIAN_PROBABILITY: float = 0.3
    SHORT_HORIZON_HOURS: float = 24.0
    CACHE_TTL_SECONDS: int = 300
    MAX_PREDICTIONS_PER_WALLET: int = 10000
    ENABLE_EVENTS: bool = True

    TIER_THRESHOLDS: dict = None

    def __post_init__(self):
        if self.TIER_THRESHOLDS is None:
            self.TIER_THRESHOLDS = dict(DEFAULT_TIER_THRESHOLDS)

    @classmethod
    def from_settings(cls) -> "AccuracyScorerConfig":
        return cls(ENABLE_EVENTS=settings.enable_events)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class WindowAccuracyStats:
    window: AccuracyWindow
    total_predictions: int = 0
    correct_predictions: int = 0
    decisive_predictions: int = 0
    raw_accuracy: float = 0.0
    weighted_accuracy: float = 0.0
    high_conviction_accuracy: float = 0.0
    high_conviction_count: int = 0
    avg_conviction: float = 0.0
    avg_entry_probability: float = 0.5
    total_pnl: float = 0.0
    avg_roi: float = 0.0
    brier_score: float = 0.0

    def to_dict(self) -> dict:
        result = {k: v for k, v in self.__dict__.items() if k != "window"}
        result["window"] = self.window.value
        return result


@dataclass
class CategoryAccuracyStats:
    category: str
    total_predictions: int
    correct_predictions: int
    raw_accuracy: float
    weighted_accuracy: float
    total_pnl: float
    avg_roi: float

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class AccuracyTrend:
    direction: TrendDirection = TrendDirection.STABLE
    magnitude: float = 0.0
    significance: float = 0.0
    recent_accuracy: float = 0.0
    historical_accuracy: float = 0.0

    def to_dict(self) -> dict:
        return {
            "direction": self.direction.value,
            "magnitude": self.magnitude,
            "significance": self.significance,
            "recent_accuracy": self.recent_accuracy,
            "historical_accuracy": self.historical_accuracy,
        }


@dataclass
class AccuracyDataPoint:
    date: datetime
    cumulative_accuracy: float
    cumulative_weighted_accuracy: float
    total_predictions: int
    correct_predictions: int

    def to_dict(self) -> dict:
        result = dict(self.__dict__)
        result["date"] = self.date.isoformat()
        return result


@dataclass
class AccuracyAnomaly:
    type: AccuracyAnomalyType
    severity: float
    description: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity,
            "description": self.description,
            "data": dict(self.data),
        }


@dataclass
class AccuracyResult:
    """Full accuracy analysis of one wallet."""
    wallet_address: str
    tier: AccuracyTier
    suspicion_level: AccuracySuspicionLevel
    suspicion_score: float
    window_stats: dict                  # AccuracyWindow -> WindowAccuracyStats
    category_stats: list
    top_categories: list
    trend: AccuracyTrend
    history: list
    anomalies: list
    total_predictions: int
    data_quality: int
    is_potential_insider: bool
    analyzed_at: datetime
    accuracy_rank: Optional[int] = None
    percentile_rank: Optional[float] = None

    @property
    def all_time(self) -> WindowAccuracyStats:
        return self.window_stats[AccuracyWindow.ALL_TIME]

    def to_dict(self) -> dict:
        return {
            "wallet_address": self.wallet_address,
            "tier": self.tier.value,
            "suspicion_level": self.suspicion_level.value,
            "suspicion_score": self.suspicion_score,
            "window_stats": {w.value: s.to_dict() for w, s in self.window_stats.items()},
            "category_stats": [c.to_dict() for c in self.category_stats],
            "top_categories": list(self.top_categories),
            "trend": self.trend.to_dict(),
            "history": [h.to_dict() for h in self.history],
            "anomalies": [a.to_dict() for a in self.anomalies],
            "total_predictions": self.total_predictions,
            "data_quality": self.data_quality,
            "is_potential_insider": self.is_potential_insider,
            "analyzed_at": self.analyzed_at.isoformat(),
            "accuracy_rank": self.accuracy_rank,
            "percentile_rank": self.percentile_rank,
        }


@dataclass
class BatchAccuracyResult:
    results: dict = field(default_factory=dict)   # wallet -> AccuracyResult
    failed: dict = field(default_factory=dict)    # wallet -> message
    total_processed: int = 0


@dataclass
class WalletAccuracyRanking:
    wallet_address: str
    raw_accuracy: float
    weighted_accuracy: float
    total_predictions: int
    total_pnl: float
    rank: int = 0
    percentile: float = 0.0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


# ============================================================================
# Statistics helpers
# ============================================================================

def _decisive(predictions: list[TrackedPrediction]) -> list[TrackedPrediction]:
    return [p for p in predictions if p.is_decisive]


def _accuracy(predictions: list[TrackedPrediction]) -> tuple[float, int]:
    """Percent correct over decisive predictions, and the decisive count."""
    decisive = _decisive(predictions)
    if not decisive:
        return 0.0, 0
    correct = sum(1 for p in decisive if p.outcome == PredictionOutcome.CORRECT)
    return correct / len(decisive) * 100, len(decisive)


def _weighted_accuracy(predictions: list[TrackedPrediction]) -> float:
    total = 0.0
    correct = 0.0
    for p in _decisive(predictions):
        weight = CONVICTION_WEIGHTS[p.conviction]
        total += weight
        if p.outcome == PredictionOutcome.CORRECT:
            correct += weight
    return correct / total * 100 if total > 0 else 0.0


def brier_score(predictions: list[TrackedPrediction]) -> float:
    """Mean squared error of entry probability against the outcome; 0 with no decisive predictions."""
    decisive = _decisive(predictions)
    if not decisive:
        return 0.0
    total = 0.0
    for p in decisive:
        actual = 1.0 if p.outcome == PredictionOutcome.CORRECT else 0.0
        total += (p.entry_probability - actual) ** 2
    return total / len(decisive)


def _reference_time(p: TrackedPrediction) -> datetime:
    return p.resolution_timestamp or p.prediction_timestamp


def calculate_window_stats(
    predictions: list[TrackedPrediction],
    window: AccuracyWindow,
    now: datetime,
) -> WindowAccuracyStats:
    duration = ACCURACY_WINDOW_DURATIONS[window]
    if duration is not None:
        start = now - duration
        predictions = [p for p in predictions if _reference_time(p) >= start]

    stats = WindowAccuracyStats(window=window, total_predictions=len(predictions))
    if not predictions:
        return stats

    decisive = _decisive(predictions)
    stats.decisive_predictions = len(decisive)
    stats.correct_predictions = sum(1 for p in decisive if p.outcome == PredictionOutcome.CORRECT)
    stats.raw_accuracy, _ = _accuracy(predictions)
    stats.weighted_accuracy = _weighted_accuracy(predictions)

    high = [p for p in predictions if p.conviction in HIGH_CONVICTION_LEVELS]
    stats.high_conviction_accuracy, stats.high_conviction_count = _accuracy(high)

    # Conviction weights span 0.2-2.0; halve to put the average on a 0-1 scale
    stats.avg_conviction = sum(CONVICTION_WEIGHTS[p.conviction] / 2 for p in predictions) / len(predictions)
    stats.avg_entry_probability = sum(p.entry_probability for p in predictions) / len(predictions)
    stats.total_pnl = sum(p.realized_pnl or 0.0 for p in predictions)
    rois = [p.roi for p in predictions if p.roi is not None]
    stats.avg_roi = sum(rois) / len(rois) if rois else 0.0
    stats.brier_score = brier_score(predictions)
    return stats


def calculate_category_stats(predictions: list[TrackedPrediction]) -> list[CategoryAccuracyStats]:
    """Per-category accuracy, most predictions first. Predictions without a category are excluded."""
    by_category: dict[str, list[TrackedPrediction]] = {}
    for p in predictions:
        if p.market_category:
            by_category.setdefault(p.market_category, []).append(p)

    result = []
    for category, group in by_category.items():
        raw, decisive = _accuracy(group)
        rois = [p.roi for p in group if p.roi is not None]
        result.append(CategoryAccuracyStats(
            category=category,
            total_predictions=decisive,
            correct_predictions=sum(1 for p in group if p.outcome == PredictionOutcome.CORRECT),
            raw_accuracy=raw,
            weighted_accuracy=_weighted_accuracy(group),
            total_pnl=sum(p.realized_pnl or 0.0 for p in group),
            avg_roi=sum(rois) / len(rois) if rois else 0.0,
        ))
    return sorted(result, key=lambda c: c.total_predictions, reverse=True)


def _resolution_order(predictions: list[TrackedPrediction]) -> list[TrackedPrediction]:
    return sorted(_decisive(predictions), key=_reference_time)


def calculate_trend(predictions: list[TrackedPrediction], threshold_points: float = 5.0) -> AccuracyTrend:
    """Compare the most recent 30% of decisive predictions with the older 70%."""
    ordered = _resolution_order(predictions)
    if len(ordered) < 10:
        return AccuracyTrend()

    split = int(len(ordered) * 0.7)
    historical_acc, historical_n = _accuracy(ordered[:split])
    recent_acc, recent_n = _accuracy(ordered[split:])
    magnitude = abs(recent_acc - historical_acc)
    significance = min(1.0, (min(historical_n, recent_n) / 20) * (magnitude / 20))

    if recent_acc > historical_acc + threshold_points:
        direction = TrendDirection.IMPROVING
    elif recent_acc < historical_acc - threshold_points:
        direction = TrendDirection.DECLINING
    else:
        direction = TrendDirection.STABLE

    return AccuracyTrend(
        direction=direction,
        magnitude=magnitude,
        significance=significance,
        recent_accuracy=recent_acc,
        historical_accuracy=historical_acc,
    )


def calculate_history(predictions: list[TrackedPrediction]) -> list[AccuracyDataPoint]:
    history = []
    correct = 0
    weighted_correct = 0.0
    weighted_total = 0.0
    for n, p in enumerate(_resolution_order(predictions), start=1):
        weight = CONVICTION_WEIGHTS[p.conviction]
        weighted_total += weight
        if p.outcome == PredictionOutcome.CORRECT:
            correct += 1
            weighted_correct += weight
        history.append(AccuracyDataPoint(
            date=_reference_time(p),
            cumulative_accuracy=correct / n * 100,
            cumulative_weighted_accuracy=weighted_correct / weighted_total * 100,
            total_predictions=n,
            correct_predictions=correct,
        ))
    return history


def calculate_data_quality(decisive_count: int) -> int:
    for minimum, quality in ((100, 100), (50, 80), (30, 60), (15, 40), (10, 20)):
        if decisive_count >= minimum:
            return quality
    return 0


# ============================================================================
# Scorer
# ============================================================================

class HistoricalAccuracyScorer(EventSource):
    """
    Tracks prediction outcomes per wallet and scores their accuracy.

    Events:
        prediction-added(wallet, TrackedPrediction)
        prediction-resolved(wallet, TrackedPrediction)
        analysis-complete(wallet, AccuracyResult)
        potential-insider(wallet, AccuracyResult)
    """

    EVENTS = ("prediction-added", "prediction-resolved", "analysis-complete", "potential-insider")

    def __init__(self, config: Optional[AccuracyScorerConfig] = None):
        """
        Initialize the scorer.

        Args:
            config: Analysis thresholds. Defaults to AccuracyScorerConfig().
        """
        self.config = config or AccuracyScorerConfig()
        self.events = ListenerRegistry(self.EVENTS, enabled=self.config.ENABLE_EVENTS)
        self._predictions: dict[str, dict[str, TrackedPrediction]] = {}
        # wallet -> (AccuracyResult, monotonic seconds, include options)
        self._cache: dict[str, tuple] = {}
        self._cache_hits = 0
        self._cache_misses = 0

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    def add_prediction(self, prediction: TrackedPrediction) -> TrackedPrediction:
        """
        Add or replace a prediction.

        Raises:
            InvalidAddressError: If the wallet address is invalid.
        """
        wallet = checksum_address(prediction.wallet_address)
        stored = prediction.model_copy(update={"wallet_address": wallet}, deep=True)

        wallet_predictions = self._predictions.setdefault(wallet, {})
        wallet_predictions[stored.prediction_id] = stored

        overflow = len(wallet_predictions) - self.config.MAX_PREDICTIONS_PER_WALLET
        if overflow > 0:
            oldest = sorted(wallet_predictions.values(), key=lambda p: p.prediction_timestamp)[:overflow]
            for p in oldest:
                del wallet_predictions[p.prediction_id]
            logger.debug(f"Evicted {overflow} oldest predictions for {wallet}")

        self._cache.pop(wallet, None)
        self.events.emit("prediction-added", wallet, stored.model_copy(deep=True))
        return stored.model_copy(deep=True)

    def add_predictions(self, predictions: list[TrackedPrediction]) -> None:
        for prediction in predictions:
            self.add_prediction(prediction)

    def update_prediction_outcome(
        self,
        wallet_address: str,
        prediction_id: str,
        actual_outcome: str,
        resolution_timestamp: Optional[datetime] = None,
        realized_pnl: Optional[float] = None,
        roi: Optional[float] = None,
    ) -> Optional[TrackedPrediction]:
        """
        Resolve a pending prediction.

        Resolved predictions are never changed. Outcomes compare
        case-insensitively; "cancelled" marks the prediction CANCELLED.

        Returns:
            The updated prediction, or None if it is unknown or already resolved.
        """
        if not is_valid_wallet_address(wallet_address):
            return None
        wallet = checksum_address(wallet_address)
        prediction = self._predictions.get(wallet, {}).get(prediction_id)
        if prediction is None or prediction.outcome != PredictionOutcome.PENDING:
            return None

        normalized = actual_outcome.strip().lower()
        if normalized == "cancelled":
            outcome = PredictionOutcome.CANCELLED
        elif normalized == prediction.predicted_outcome.strip().lower():
            outcome = PredictionOutcome.CORRECT
        else:
            outcome = PredictionOutcome.INCORRECT

        prediction.actual_outcome = actual_outcome
        prediction.outcome = outcome
        prediction.resolution_timestamp = parse_timestamp(resolution_timestamp) or utc_now()
        prediction.realized_pnl = realized_pnl
        prediction.roi = roi

        self._cache.pop(wallet, None)
        self.events.emit("prediction-resolved", wallet, prediction.model_copy(deep=True))
        return prediction.model_copy(deep=True)

    def get_predictions(self, wallet_address: str) -> list[TrackedPrediction]:
        if not is_valid_wallet_address(wallet_address):
            return []
        wallet = checksum_address(wallet_address)
        return [p.model_copy(deep=True) for p in self._predictions.get(wallet, {}).values()]

    def get_resolved_predictions(self, wallet_address: str) -> list[TrackedPrediction]:
        return [p for p in self.get_predictions(wallet_address) if p.is_decisive]

    def clear_predictions(self, wallet_address: str) -> None:
        if not is_valid_wallet_address(wallet_address):
            return
        wallet = checksum_address(wallet_address)
        self._predictions.pop(wallet, None)
        self._cache.pop(wallet, None)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _determine_tier(self, raw_accuracy: float, decisive_count: int) -> AccuracyTier:
        if decisive_count < self.config.MIN_PREDICTIONS_FOR_ANALYSIS:
            return AccuracyTier.UNKNOWN
        thresholds = sorted(self.config.TIER_THRESHOLDS.items(), key=lambda kv: kv[1], reverse=True)
        for tier, minimum in thresholds:
            if raw_accuracy >= minimum:
                return tier
        return AccuracyTier.VERY_POOR

    def _detect_anomalies(
        self,
        decisive: list[TrackedPrediction],
        all_time: WindowAccuracyStats,
        category_stats: list[CategoryAccuracyStats],
        trend: AccuracyTrend,
    ) -> list[AccuracyAnomaly]:
        cfg = self.config
        anomalies = []

        if (all_time.raw_accuracy >= cfg.EXCEPTIONAL_ACCURACY_THRESHOLD
                and all_time.decisive_predictions >= cfg.MIN_PREDICTIONS_FOR_ANALYSIS):
            anomalies.append(AccuracyAnomaly(
                type=AccuracyAnomalyType.EXCEPTIONAL_ACCURACY,
                severity=min(100.0, (all_time.raw_accuracy - cfg.EXCEPTIONAL_ACCURACY_THRESHOLD) * 5 + 50),
                description=(
                    f"Exceptional accuracy of {all_time.raw_accuracy:.1f}% "
                    f"across {all_time.decisive_predictions} predictions"
                ),
                data={"accuracy": all_time.raw_accuracy, "predictions": all_time.decisive_predictions},
            ))

        if (trend.direction == TrendDirection.IMPROVING
                and trend.magnitude > 15 and trend.significance > 0.5):
            anomalies.append(AccuracyAnomaly(
                type=AccuracyAnomalyType.SUDDEN_IMPROVEMENT,
                severity=min(100.0, trend.magnitude * 2 + trend.significance * 30),
                description=(
                    f"Accuracy improved from {trend.historical_accuracy:.1f}% "
                    f"to {trend.recent_accuracy:.1f}%"
                ),
                data={"historical_accuracy": trend.historical_accuracy, "recent_accuracy": trend.recent_accuracy},
            ))

        if (all_time.high_conviction_count >= cfg.MIN_HIGH_CONVICTION_FOR_INSIDER
                and all_time.high_conviction_accuracy >= cfg.HIGH_CONVICTION_ACCURACY_THRESHOLD):
            anomalies.append(AccuracyAnomaly(
                type=AccuracyAnomalyType.PERFECT_HIGH_CONVICTION,
                severity=min(
                    100.0,
                    (all_time.high_conviction_accuracy - cfg.HIGH_CONVICTION_ACCURACY_THRESHOLD) * 3 + 60,
                ),
                description=(
                    f"High conviction predictions are {all_time.high_conviction_accuracy:.1f}% accurate "
                    f"across {all_time.high_conviction_count} predictions"
                ),
                data={
                    "high_conviction_accuracy": all_time.high_conviction_accuracy,
                    "high_conviction_count": all_time.high_conviction_count,
                },
            ))

        for cat in category_stats:
            if (cat.total_predictions >= 5 and cat.raw_accuracy >= 80
                    and cat.raw_accuracy - all_time.raw_accuracy >= 10):
                anomalies.append(AccuracyAnomaly(
                    type=AccuracyAnomalyType.CATEGORY_EXPERTISE,
                    severity=min(100.0, (cat.raw_accuracy - 70) * 3 + 30),
                    description=(
                        f"Accuracy of {cat.raw_accuracy:.1f}% in {cat.category} "
                        f"({cat.total_predictions} predictions)"
                    ),
                    data={"category": cat.category, "accuracy": cat.raw_accuracy},
                ))

        short = [
            p for p in decisive
            if p.hours_until_resolution is not None
            and p.hours_until_resolution <= cfg.SHORT_HORIZON_HOURS
        ]
        if len(short) >= 5:
            short_acc, _ = _accuracy(short)
            if short_acc >= 80:
                anomalies.append(AccuracyAnomaly(
                    type=AccuracyAnomalyType.TIMING_ADVANTAGE,
                    severity=min(100.0, (short_acc - 70) * 3 + 50),
                    description=(
                        f"{short_acc:.1f}% accuracy on predictions made within "
                        f"{cfg.SHORT_HORIZON_HOURS:.0f} hours of resolution ({len(short)} predictions)"
                    ),
                    data={"accuracy": short_acc, "predictions": len(short)},
                ))

        contrarian = [p for p in decisive if p.entry_probability <= cfg.CONTRARIAN_PROBABILITY]
        contrarian_wins = sum(1 for p in contrarian if p.outcome == PredictionOutcome.CORRECT)
        if contrarian_wins >= 5:
            contrarian_acc = contrarian_wins / len(contrarian) * 100
            if contrarian_acc >= 60:
                anomalies.append(AccuracyAnomaly(
                    type=AccuracyAnomalyType.CONTRARIAN_SUCCESS,
                    severity=min(100.0, (contrarian_acc - 30) * 2 + contrarian_wins * 5),
                    description=(
                        f"{contrarian_acc:.1f}% success on contrarian bets "
                        f"across {contrarian_wins} wins"
                    ),
                    data={"accuracy": contrarian_acc, "wins": contrarian_wins, "bets": len(contrarian)},
                ))

        return sorted(anomalies, key=lambda a: a.severity, reverse=True)

    def _calculate_suspicion(
        self,
        decisive: list[TrackedPrediction],
        all_time: WindowAccuracyStats,
        category_stats: list[CategoryAccuracyStats],
        trend: AccuracyTrend,
        anomalies: list[AccuracyAnomaly],
    ) -> tuple[AccuracySuspicionLevel, float, bool]:
        cfg = self.config
        if all_time.decisive_predictions < cfg.MIN_PREDICTIONS_FOR_ANALYSIS:
            return AccuracySuspicionLevel.NONE, 0.0, False

        def step(value: float, table: tuple) -> float:
            for minimum, score in table:
                if value >= minimum:
                    return score
            return 0.0

        accuracy_score = step(all_time.raw_accuracy, ((90, 100), (80, 70), (70, 40), (60, 20)))

        hc_score = 0.0
        if all_time.high_conviction_count >= 5:
            hc_score = step(all_time.high_conviction_accuracy, ((90, 100), (80, 60), (70, 30)))

        category_accuracies = [c.raw_accuracy for c in category_stats if c.total_predictions >= 5]
        category_score = step(max(category_accuracies, default=0.0), ((85, 80), (75, 50), (65, 25)))

        trend_score = 0.0
        if trend.direction == TrendDirection.IMPROVING and trend.magnitude > 20:
            trend_score = min(80.0, trend.magnitude * 2)

        contrarian_score = 0.0
        contrarian = [p for p in decisive if p.entry_probability <= cfg.CONTRARIAN_PROBABILITY]
        if len(contrarian) >= 5:
            wins = sum(1 for p in contrarian if p.outcome == PredictionOutcome.CORRECT)
            contrarian_score = step(wins / len(contrarian) * 100, ((60, 80), (50, 50), (40, 25)))

        anomaly_score = min(100.0, sum(a.severity for a in anomalies) / 3)

        score = round(
            accuracy_score * SUSPICION_WEIGHTS["accuracy"]
            + hc_score * SUSPICION_WEIGHTS["high_conviction_accuracy"]
            + category_score * SUSPICION_WEIGHTS["category_expertise"]
            + trend_score * SUSPICION_WEIGHTS["trend"]
            + contrarian_score * SUSPICION_WEIGHTS["contrarian_success"]
            + anomaly_score * SUSPICION_WEIGHTS["anomalies"]
        )

        if score >= 80:
            level = AccuracySuspicionLevel.CRITICAL
        elif score >= 60:
            level = AccuracySuspicionLevel.HIGH
        elif score >= 40:
            level = AccuracySuspicionLevel.MEDIUM
        elif score >= 20:
            level = AccuracySuspicionLevel.LOW
        else:
            level = AccuracySuspicionLevel.NONE

        confident = all_time.decisive_predictions >= cfg.MIN_PREDICTIONS_FOR_HIGH_CONFIDENCE
        if not confident:
            if level == AccuracySuspicionLevel.CRITICAL:
                level = AccuracySuspicionLevel.HIGH
            return level, float(score), False

        high_conviction_pattern = (
            all_time.high_conviction_count >= cfg.MIN_HIGH_CONVICTION_FOR_INSIDER
            and all_time.high_conviction_accuracy >= cfg.HIGH_CONVICTION_ACCURACY_THRESHOLD
        )
        is_insider = (
            all_time.raw_accuracy >= cfg.POTENTIAL_INSIDER_ACCURACY_THRESHOLD
            or high_conviction_pattern
        )
        return level, float(score), is_insider

    def _compute(
        self,
        wallet: str,
        predictions: list[TrackedPrediction],
        include_history: bool,
        include_category_breakdown: bool,
        include_trend: bool,
        now: datetime,
    ) -> AccuracyResult:
        decisive = _decisive(predictions)
        window_stats = {w: calculate_window_stats(decisive, w, now) for w in AccuracyWindow}
        all_time = window_stats[AccuracyWindow.ALL_TIME]

        category_stats = calculate_category_stats(decisive) if include_category_breakdown else []
        top_categories = [
            c.category
            for c in sorted(
                (c for c in category_stats if c.total_predictions >= 3),
                key=lambda c: c.weighted_accuracy,
                reverse=True,
            )[:5]
        ]
        trend = calculate_trend(decisive, self.config.TREND_THRESHOLD_POINTS) if include_trend else AccuracyTrend()
        anomalies = self._detect_anomalies(decisive, all_time, category_stats, trend)
        level, score, is_insider = self._calculate_suspicion(decisive, all_time, category_stats, trend, anomalies)

        return AccuracyResult(
            wallet_address=wallet,
            tier=self._determine_tier(all_time.raw_accuracy, len(decisive)),
            suspicion_level=level,
            suspicion_score=score,
            window_stats=window_stats,
            category_stats=category_stats,
            top_categories=top_categories,
            trend=trend,
            history=calculate_history(decisive) if include_history else [],
            anomalies=anomalies,
            total_predictions=len(predictions),
            data_quality=calculate_data_quality(len(decisive)),
            is_potential_insider=is_insider,
            analyzed_at=now,
        )

    def analyze(
        self,
        wallet_address: str,
        use_cache: bool = True,
        include_history: bool = True,
        include_category_breakdown: bool = True,
        include_trend: bool = True,
        now: Optional[datetime] = None,
    ) -> AccuracyResult:
        """
        Analyze a wallet's prediction accuracy.

        Args:
            wallet_address: Wallet to analyze.
            use_cache: Return a cached result younger than CACHE_TTL_SECONDS
                that was computed with the same include options.
            include_history: Include the cumulative accuracy history.
            include_category_breakdown: Include per-category statistics.
            include_trend: Include the recent-vs-historical trend.
            now: Reference time for the windows.

        Returns:
            AccuracyResult. Tier is UNKNOWN below MIN_PREDICTIONS_FOR_ANALYSIS.

        Raises:
            InvalidAddressError: If the wallet address is invalid.
        """
        wallet = checksum_address(wallet_address)
        options = (include_history, include_category_breakdown, include_trend)

        if use_cache:
            entry = self._cache.get(wallet)
            if (
                entry is not None
                and entry[2] == options
                and time.monotonic() - entry[1] < self.config.CACHE_TTL_SECONDS
            ):
                self._cache_hits += 1
                return copy.deepcopy(entry[0])
        self._cache_misses += 1

        predictions = list(self._predictions.get(wallet, {}).values())
        result = self._compute(
            wallet,
            predictions,
            include_history,
            include_category_breakdown,
            include_trend,
            now or utc_now(),
        )
        self._cache[wallet] = (result, time.monotonic(), options)

        self.events.emit("analysis-complete", wallet, copy.deepcopy(result))
        if result.is_potential_insider:
            logger.warning(
                f"Potential insider by accuracy: {wallet} "
                f"({result.all_time.raw_accuracy:.1f}% over {result.all_time.decisive_predictions})"
            )
            self.events.emit("potential-insider", wallet, copy.deepcopy(result))
        return copy.deepcopy(result)

    def batch_analyze(
        self,
        wallet_addresses: list[str],
        calculate_rank: bool = False,
        now: Optional[datetime] = None,
    ) -> BatchAccuracyResult:
        """
        Analyze several wallets; invalid ones are collected in `failed`.

        With calculate_rank, wallets meeting MIN_PREDICTIONS_FOR_ANALYSIS are
        ranked by weighted accuracy (1 = best, ties keep input order).
        """
        batch = BatchAccuracyResult(total_processed=len(wallet_addresses))
        for address in wallet_addresses:
            try:
                result = self.analyze(address, now=now)
            except Exception as e:
                logger.exception(f"Error analyzing accuracy for {address}")
                batch.failed[address] = str(e)
                continue
            batch.results[result.wallet_address] = result

        if calculate_rank:
            eligible = [
                r for r in batch.results.values()
                if r.all_time.decisive_predictions >= self.config.MIN_PREDICTIONS_FOR_ANALYSIS
            ]
            eligible.sort(key=lambda r: r.all_time.weighted_accuracy, reverse=True)
            for i, result in enumerate(eligible):
                result.accuracy_rank = i + 1
                result.percentile_rank = (
                    (len(eligible) - 1 - i) / (len(eligible) - 1) * 100 if len(eligible) > 1 else 100.0
                )
        return batch

    def has_exceptional_accuracy(self, wallet_address: str) -> bool:
        try:
            tier = self.analyze(wallet_address).tier
        except ValueError:
            return False
        return tier in (AccuracyTier.EXCEPTIONAL, AccuracyTier.EXCELLENT)

    def _analyze_all(self) -> list[AccuracyResult]:
        return [self.analyze(wallet) for wallet in list(self._predictions)]

    def get_high_accuracy_wallets(self, min_accuracy: float = 70.0) -> list[AccuracyResult]:
        results = [r for r in self._analyze_all() if r.all_time.raw_accuracy >= min_accuracy]
        return sorted(results, key=lambda r: r.all_time.raw_accuracy, reverse=True)

    def get_potential_insiders(self) -> list[AccuracyResult]:
        results = [r for r in self._analyze_all() if r.is_potential_insider]
        return sorted(results, key=lambda r: r.suspicion_score, reverse=True)

    def get_accuracy_rankings(self, min_predictions: int = 10) -> list[WalletAccuracyRanking]:
        rankings = [
            WalletAccuracyRanking(
                wallet_address=r.wallet_address,
                raw_accuracy=r.all_time.raw_accuracy,
                weighted_accuracy=r.all_time.weighted_accuracy,
                total_predictions=r.all_time.decisive_predictions,
                total_pnl=r.all_time.total_pnl,
            )
            for r in self._analyze_all()
            if r.all_time.decisive_predictions >= min_predictions
        ]
        rankings.sort(key=lambda r: r.weighted_accuracy, reverse=True)
        for i, ranking in enumerate(rankings):
            ranking.rank = i + 1
            ranking.percentile = (
                (len(rankings) - 1 - i) / (len(rankings) - 1) * 100 if len(rankings) > 1 else 100.0
            )
        return rankings

    def get_summary(self) -> dict:
        tier_distribution = {t.value: 0 for t in AccuracyTier}
        total = resolved = pending = 0
        accuracies = []
        exceptional = insiders = 0

        for wallet_predictions in self._predictions.values():
            for p in wallet_predictions.values():
                total += 1
                if p.outcome == PredictionOutcome.PENDING:
                    pending += 1
                elif p.is_decisive:
                    resolved += 1

        for result in self._analyze_all():
            tier_distribution[result.tier.value] += 1
            if result.all_time.decisive_predictions >= self.config.MIN_PREDICTIONS_FOR_ANALYSIS:
                accuracies.append(result.all_time.raw_accuracy)
            if result.tier in (AccuracyTier.EXCEPTIONAL, AccuracyTier.EXCELLENT):
                exceptional += 1
            if result.is_potential_insider:
                insiders += 1

        lookups = self._cache_hits + self._cache_misses
        return {
            "total_wallets": len(self._predictions),
            "total_predictions": total,
            "resolved_predictions": resolved,
            "pending_predictions": pending,
            "exceptional_accuracy_count": exceptional,
            "potential_insider_count": insiders,
            "average_accuracy": sum(accuracies) / len(accuracies) if accuracies else 0.0,
            "tier_distribution": tier_distribution,
            "cache_hit_rate": self._cache_hits / lookups if lookups else 0.0,
        }

    def clear(self) -> None:
        self._predictions.clear()
        self._cache.clear()
        self._cache_hits = 0
        self._cache_misses = 0


# ============================================================================
# Shared instance
# ============================================================================

_shared = SharedInstance(
    lambda: HistoricalAccuracyScorer(AccuracyScorerConfig.from_settings()),
    on_reset=lambda scorer: scorer.clear(),
)


def create_historical_accuracy_scorer(config: Optional[AccuracyScorerConfig] = None) -> HistoricalAccuracyScorer:
    return HistoricalAccuracyScorer(config)


def get_shared_historical_accuracy_scorer() -> HistoricalAccuracyScorer:
    return _shared.get()


def set_shared_historical_accuracy_scorer(scorer: HistoricalAccuracyScorer) -> None:
    _shared.set(scorer)


def reset_shared_historical_accuracy_scorer() -> None:
    _shared.reset()
