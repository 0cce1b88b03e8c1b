"""
Alert Priority Ranker for Polymarket Scoring.

Turns composite suspicion results into ranked, explainable alerts:
- Weighted priority factors (severity, confidence, recency, impact, ...)
- Time decay for aging alerts
- Urgency reasons, including score escalation across repeated rankings
- Per-wallet cache and bounded score history
- Batch ranking with deterministic tie-breaks
"""

import copy
import logging
import time
from collections import Counter, OrderedDict
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import numpy as np

from .composite import CompositeScoreResult, CompositeSuspicionLevel, FilterResult
from .config import settings
from .events import EventSource, ListenerRegistry
from .shared import SharedInstance
from .utils import checksum_address, clamp, utc_now

logger = logging.getLogger(__name__)


class PriorityLevel(Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PriorityFactor(Enum):
    SEVERITY = "severity"
    CONFIDENCE = "confidence"
    RECENCY = "recency"
    IMPACT = "impact"
    CONVERGENCE = "convergence"
    MARKET_SENSITIVITY = "market_sensitivity"
    NETWORK_RISK = "network_risk"
    PATTERN_MATCH = "pattern_match"
    ANOMALY_INTENSITY = "anomaly_intensity"
    NOVELTY = "novelty"


class UrgencyReason(Enum):
    CRITICAL_SCORE = "critical_score"
    MULTI_SIGNAL_CONVERGENCE = "multi_signal_convergence"
    RECENT_ACTIVITY = "recent_activity"
    HIGH_IMPACT = "high_impact"
    NETWORK_DETECTION = "network_detection"
    SYBIL_CLUSTER = "sybil_cluster"
    INSIDER_INDICATOR = "insider_indicator"
    NEW_DETECTION = "new_detection"
    SCORE_ESCALATION = "score_escalation"


DEFAULT_FACTOR_WEIGHTS = {
    PriorityFactor.SEVERITY: 0.20,
    PriorityFactor.CONFIDENCE: 0.12,
    PriorityFactor.RECENCY: 0.10,
    PriorityFactor.IMPACT: 0.12,
    PriorityFactor.CONVERGENCE: 0.10,
    PriorityFactor.MARKET_SENSITIVITY: 0.08,
    PriorityFactor.NETWORK_RISK: 0.10,
    PriorityFactor.PATTERN_MATCH: 0.08,
    PriorityFactor.ANOMALY_INTENSITY: 0.06,
    PriorityFactor.NOVELTY: 0.04,
}

FACTOR_NAMES = {
    PriorityFactor.SEVERITY: "Severity",
    PriorityFactor.CONFIDENCE: "Confidence",
    PriorityFactor.RECENCY: "Recency",
    PriorityFactor.IMPACT: "Financial Impact",
    PriorityFactor.CONVERGENCE: "Signal Convergence",
    PriorityFactor.MARKET_SENSITIVITY: "Market Sensitivity",
    PriorityFactor.NETWORK_RISK: "Network Risk",
    PriorityFactor.PATTERN_MATCH: "Pattern Match",
    PriorityFactor.ANOMALY_INTENSITY: "Anomaly Intensity",
    PriorityFactor.NOVELTY: "Novelty",
}

URGENCY_REASON_DESCRIPTIONS = {
    UrgencyReason.CRITICAL_SCORE: "Suspicion score exceeds critical threshold",
    UrgencyReason.MULTI_SIGNAL_CONVERGENCE: "Multiple high-confidence signals agree",
    UrgencyReason.RECENT_ACTIVITY: "Suspicious activity detected recently",
    UrgencyReason.HIGH_IMPACT: "Potential for significant financial impact",
    UrgencyReason.NETWORK_DETECTION: "Coordinated trading detected",
    UrgencyReason.SYBIL_CLUSTER: "Part of suspected sybil cluster",
    UrgencyReason.INSIDER_INDICATOR: "Strong indicators of insider knowledge",
    UrgencyReason.NEW_DETECTION: "First time this wallet was flagged",
    UrgencyReason.SCORE_ESCALATION: "Suspicion score rapidly increasing",
}

PRIORITY_LEVEL_DESCRIPTIONS = {
    PriorityLevel.CRITICAL: "Requires immediate attention",
    PriorityLevel.HIGH: "Should be reviewed urgently",
    PriorityLevel.MEDIUM: "Standard priority",
    PriorityLevel.LOW: "Batch review acceptable",
}

SUSPICIOUS_PATTERNS = ("potential_insider", "bot", "wash_trader")

for _factor in PriorityFactor:
    if _factor not in DEFAULT_FACTOR_WEIGHTS or _factor not in FACTOR_NAMES:
        raise ValueError(f"Priority factor {_factor} is missing from a factor table")
if abs(sum(DEFAULT_FACTOR_WEIGHTS.values()) - 1.0) > 1e-6:
    raise ValueError("Default priority factor weights do not sum to 1.0")
for _reason in UrgencyReason:
    if _reason not in URGENCY_REASON_DESCRIPTIONS:
        raise ValueError(f"Urgency reason {_reason} has no description")
for _level in PriorityLevel:
    if _level not in PRIORITY_LEVEL_DESCRIPTIONS:
        raise ValueError(f"Priority level {_level} has no description")


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class PriorityRankerConfig:
    """Ranking weights and thresholds."""

    FACTOR_WEIGHTS: dict = None
    CRITICAL_THRESHOLD: float = 85.0
    HIGH_THRESHOLD: float = 70.0
    MEDIUM_THRESHOLD: float = 50.0
    URGENT_THRESHOLD: float = 75.0
    MIN_URGENCY_REASONS_FOR_URGENT: int = 2
    HIGHLIGHT_THRESHOLD: float = 85.0

    # Time decay
    DECAY_GRACE_HOURS: float = 24.0
    DECAY_RATE_PER_HOUR: float = 0.005
    MIN_DECAY_MULTIPLIER: float = 0.5

    # Factor and urgency inputs
    RECENCY_WINDOW_HOURS: float = 72.0
    RECENT_ACTIVITY_HOURS: float = 6.0
    CRITICAL_SCORE_THRESHOLD: float = 80.0
    HIGH_SIGNAL_SCORE: float = 70.0
    CONVERGENCE_MIN_SIGNALS: int = 3
    HIGH_IMPACT_PNL_USD: float = 50000.0
    LARGE_POSITION_USD: float = 10000.0
    ESCALATION_DELTA: float = 20.0

    # Cache and history
    CACHE_TTL_SECONDS: int = 300
    MAX_CACHE_SIZE: int = 1000
    MAX_HISTORY_SCORES: int = 50
    ENABLE_EVENTS: bool = True

    def __post_init__(self):
        if self.FACTOR_WEIGHTS is None:
            self.FACTOR_WEIGHTS = dict(DEFAULT_FACTOR_WEIGHTS)

    @classmethod
    def from_settings(cls) -> "PriorityRankerConfig":
        return cls(
            CACHE_TTL_SECONDS=settings.priority_cache_ttl_seconds,
            ESCALATION_DELTA=settings.escalation_delta,
            ENABLE_EVENTS=settings.enable_events,
        )


@dataclass
class FactorContribution:
    factor: PriorityFactor
    name: str
    raw_score: float
    weight: float
    weighted_score: float
    reason: str

    def to_dict(self) -> dict:
        return {
            "factor": self.factor.value,
            "name": self.name,
            "raw_score": self.raw_score,
            "weight": self.weight,
            "weighted_score": self.weighted_score,
            "reason": self.reason,
        }


@dataclass
class AlertHistory:
    wallet_address: str
    first_seen: datetime
    last_seen: datetime
    previous_scores: list = field(default_factory=list)
    times_ranked: int = 0

    def to_dict(self) -> dict:
        return {
            "wallet_address": self.wallet_address,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "previous_scores": list(self.previous_scores),
            "times_ranked": self.times_ranked,
        }


@dataclass
class PriorityRanking:
    """Ranked alert for one wallet."""
    wallet_address: str
    priority_score: int
    priority_level: PriorityLevel
    is_urgent: bool
    is_highlighted: bool
    urgency_reasons: list
    factor_contributions: list
    top_factors: list
    original_score: float
    adjusted_score: Optional[float]
    suspicion_level: CompositeSuspicionLevel
    time_decay_multiplier: float
    alert_age_hours: float
    summary: str
    recommended_action: str
    ranked_at: datetime
    rank: Optional[int] = None
    from_cache: bool = False

    def to_dict(self) -> dict:
        return {
            "wallet_address": self.wallet_address,
            "priority_score": self.priority_score,
            "priority_level": self.priority_level.value,
            "rank": self.rank,
            "is_urgent": self.is_urgent,
            "is_highlighted": self.is_highlighted,
            "urgency_reasons": [r.value for r in self.urgency_reasons],
            "factor_contributions": [f.to_dict() for f in self.factor_contributions],
            "top_factors": [f.to_dict() for f in self.top_factors],
            "original_score": self.original_score,
            "adjusted_score": self.adjusted_score,
            "suspicion_level": self.suspicion_level.value,
            "time_decay_multiplier": self.time_decay_multiplier,
            "alert_age_hours": self.alert_age_hours,
            "summary": self.summary,
            "recommended_action": self.recommended_action,
            "from_cache": self.from_cache,
            "ranked_at": self.ranked_at.isoformat(),
        }


@dataclass
class BatchRankingResult:
    rankings: list = field(default_factory=list)
    failed: dict = field(default_factory=dict)     # wallet -> message
    total_processed: int = 0
    by_level: dict = field(default_factory=lambda: {level: 0 for level in PriorityLevel})
    urgent_count: int = 0
    highlighted_count: int = 0
    processed_at: datetime = field(default_factory=utc_now)

    @property
    def by_wallet(self) -> dict:
        return {r.wallet_address: r for r in self.rankings}

    def to_dict(self) -> dict:
        return {
            "rankings": [r.to_dict() for r in self.rankings],
            "failed": dict(self.failed),
            "total_processed": self.total_processed,
            "by_level": {level.value: count for level, count in self.by_level.items()},
            "urgent_count": self.urgent_count,
            "highlighted_count": self.highlighted_count,
            "processed_at": self.processed_at.isoformat(),
        }


# ============================================================================
# Ranker
# ============================================================================

class AlertPriorityRanker(EventSource):
    """
    Ranks composite suspicion results into prioritized alerts.

    Events:
        alert-ranked(PriorityRanking)
        urgent-alert(PriorityRanking)
        alert-highlighted(PriorityRanking)
    """

    EVENTS = ("alert-ranked", "urgent-alert", "alert-highlighted")

    def __init__(self, config: Optional[PriorityRankerConfig] = None):
        """
        Initialize the ranker.

        Args:
            config: Ranking weights and thresholds. Defaults to PriorityRankerConfig().
        """
        self.config = config or PriorityRankerConfig()
        self.events = ListenerRegistry(self.EVENTS, enabled=self.config.ENABLE_EVENTS)
        self._cache: OrderedDict = OrderedDict()    # wallet -> (PriorityRanking, monotonic seconds)
        self._history: dict[str, AlertHistory] = {}
        self._urgency_counts: Counter = Counter()
        self._factor_scores: dict = {factor: [] for factor in PriorityFactor}
        self._total_processed = 0
        self._cache_hits = 0
        self._cache_misses = 0

    # ------------------------------------------------------------------
    # Factors
    # ------------------------------------------------------------------

    @staticmethod
    def _age_hours(result: CompositeScoreResult, now: datetime) -> float:
        return max(0.0, (now - result.analyzed_at).total_seconds() / 3600)

    def _severity(self, result: CompositeScoreResult) -> tuple[float, str]:
        return result.composite_score, f"Composite score {result.composite_score:.0f}/100"

    def _confidence(self, result: CompositeScoreResult) -> tuple[float, str]:
        availability = result.available_signals / result.total_signals if result.total_signals else 0.0
        score = result.data_quality * 0.6 + availability * 100 * 0.4
        return score, (
            f"{result.available_signals}/{result.total_signals} signals, "
            f"data quality {result.data_quality:.0f}"
        )

    def _recency(self, age_hours: float) -> tuple[float, str]:
        score = max(20.0, 100 - age_hours / self.config.RECENCY_WINDOW_HOURS * 80)
        return score, f"Analyzed {age_hours:.1f}h ago"

    def _impact(self, result: CompositeScoreResult) -> tuple[float, str]:
        pnl = result.underlying_results.profit_loss
        if pnl is None:
            return 50.0, "No P&L data"

        magnitude = pnl.total_magnitude
        if magnitude > 100000:
            score = 95.0
        elif magnitude > 50000:
            score = 80.0
        elif magnitude > 10000:
            score = 65.0
        elif magnitude > 1000:
            score = 50.0
        else:
            score = 35.0

        sizing = result.underlying_results.sizing
        if sizing is not None and sizing.max_position_size > self.config.LARGE_POSITION_USD:
            score = min(100.0, score + 15)
        return score, f"P&L magnitude ${magnitude:,.0f}"

    def _convergence(self, result: CompositeScoreResult) -> tuple[float, str]:
        scores = [c.raw_score for c in result.signal_contributions if c.available]
        very_high = sum(1 for s in scores if s >= 80)
        high = sum(1 for s in scores if s >= 60)

        if very_high >= 3:
            score = 100.0
        elif very_high >= 2:
            score = 85.0
        elif high >= 4:
            score = 75.0
        elif high == 3:
            score = 60.0
        elif high == 2:
            score = 45.0
        elif high == 1:
            score = 30.0
        else:
            score = 10.0
        return score, f"{high} signals at 60+, {very_high} at 80+"

    def _market_sensitivity(self, result: CompositeScoreResult) -> tuple[float, str]:
        pattern = result.underlying_results.pattern
        if pattern is not None and pattern.primary_pattern == "potential_insider":
            return 90.0, "Insider-like trading pattern"
        if pattern is not None and pattern.risk_score >= 70:
            return 75.0, f"Pattern risk score {pattern.risk_score:.0f}"
        return 50.0, "No market sensitivity indicators"

    def _network_risk(self, result: CompositeScoreResult) -> tuple[float, str]:
        coordination = result.underlying_results.coordination
        sybil = result.underlying_results.sybil
        score = 0.0
        reasons = []
        if coordination is not None and coordination.is_coordinated:
            score = max(score, 70.0)
            reasons.append(f"coordinated with {coordination.group_count} group(s)")
        if sybil is not None and sybil.is_likely_sybil:
            score = max(score, sybil.sybil_probability)
            reasons.append(f"sybil probability {sybil.sybil_probability:.0f}%")
        return score, "; ".join(reasons) if reasons else "No network indicators"

    def _pattern_match(
        self,
        result: CompositeScoreResult,
        filter_result: Optional[FilterResult],
    ) -> tuple[float, str]:
        pattern = result.underlying_results.pattern
        if pattern is None:
            score, reason = 0.0, "No pattern classification"
        else:
            score = min(100.0, 40.0 + 10 * len(pattern.risk_flags))
            if pattern.primary_pattern in SUSPICIOUS_PATTERNS:
                score = max(score, 85.0)
            reason = f"Pattern {pattern.primary_pattern} with {len(pattern.risk_flags)} risk flag(s)"

        if filter_result is not None and filter_result.is_likely_false_positive:
            score = max(0.0, score - 30)
            reason += " (likely false positive)"
        return score, reason

    def _anomaly_intensity(self, result: CompositeScoreResult) -> tuple[float, str]:
        count = len(result.key_findings)
        return min(100.0, 15.0 * count), f"{count} key finding(s)"

    def _novelty(self, result: CompositeScoreResult, history: Optional[AlertHistory]) -> tuple[float, str]:
        if history is None:
            return 100.0, "First detection"
        if not history.previous_scores:
            return 30.0, "Previously ranked"
        increase = max(0.0, result.composite_score - float(np.mean(history.previous_scores)))
        if increase > 20:
            return 80.0, f"Score increased by {increase:.0f} points"
        if increase > 10:
            return 50.0, f"Score increased by {increase:.0f} points"
        return 20.0, "Score consistent with history"

    def _factors(
        self,
        result: CompositeScoreResult,
        filter_result: Optional[FilterResult],
        history: Optional[AlertHistory],
        age_hours: float,
    ) -> list[FactorContribution]:
        raw = {
            PriorityFactor.SEVERITY: self._severity(result),
            PriorityFactor.CONFIDENCE: self._confidence(result),
            PriorityFactor.RECENCY: self._recency(age_hours),
            PriorityFactor.IMPACT: self._impact(result),
            PriorityFactor.CONVERGENCE: self._convergence(result),
            PriorityFactor.MARKET_SENSITIVITY: self._market_sensitivity(result),
            PriorityFactor.NETWORK_RISK: self._network_risk(result),
            PriorityFactor.PATTERN_MATCH: self._pattern_match(result, filter_result),
            PriorityFactor.ANOMALY_INTENSITY: self._anomaly_intensity(result),
            PriorityFactor.NOVELTY: self._novelty(result, history),
        }
        contributions = []
        for factor, (score, reason) in raw.items():
            weight = self.config.FACTOR_WEIGHTS.get(factor, 0.0)
            score = clamp(score)
            contributions.append(FactorContribution(
                factor=factor,
                name=FACTOR_NAMES[factor],
                raw_score=score,
                weight=weight,
                weighted_score=score * weight,
                reason=reason,
            ))
        return contributions

    # ------------------------------------------------------------------
    # Scoring helpers
    # ------------------------------------------------------------------

    def time_decay_multiplier(self, age_hours: float) -> float:
        """1.0 within the grace period, then linear decay down to the floor."""
        if age_hours <= self.config.DECAY_GRACE_HOURS:
            return 1.0
        decayed = 1.0 - (age_hours - self.config.DECAY_GRACE_HOURS) * self.config.DECAY_RATE_PER_HOUR
        return max(self.config.MIN_DECAY_MULTIPLIER, decayed)

    def priority_level(self, score: float) -> PriorityLevel:
        if score >= self.config.CRITICAL_THRESHOLD:
            return PriorityLevel.CRITICAL
        if score >= self.config.HIGH_THRESHOLD:
            return PriorityLevel.HIGH
        if score >= self.config.MEDIUM_THRESHOLD:
            return PriorityLevel.MEDIUM
        return PriorityLevel.LOW

    def _urgency_reasons(
        self,
        result: CompositeScoreResult,
        history: Optional[AlertHistory],
        age_hours: float,
    ) -> list[UrgencyReason]:
        reasons = []
        underlying = result.underlying_results

        if result.composite_score >= self.config.CRITICAL_SCORE_THRESHOLD:
            reasons.append(UrgencyReason.CRITICAL_SCORE)

        high_signals = [
            c for c in result.signal_contributions
            if c.available and c.raw_score >= self.config.HIGH_SIGNAL_SCORE
        ]
        if len(high_signals) >= self.config.CONVERGENCE_MIN_SIGNALS:
            reasons.append(UrgencyReason.MULTI_SIGNAL_CONVERGENCE)

        if age_hours < self.config.RECENT_ACTIVITY_HOURS:
            reasons.append(UrgencyReason.RECENT_ACTIVITY)

        pnl = underlying.profit_loss
        if pnl is not None and pnl.total_magnitude > self.config.HIGH_IMPACT_PNL_USD:
            reasons.append(UrgencyReason.HIGH_IMPACT)

        if underlying.coordination is not None and underlying.coordination.is_coordinated:
            reasons.append(UrgencyReason.NETWORK_DETECTION)

        if underlying.sybil is not None and underlying.sybil.is_likely_sybil:
            reasons.append(UrgencyReason.SYBIL_CLUSTER)

        if result.is_potential_insider:
            reasons.append(UrgencyReason.INSIDER_INDICATOR)

        if history is None:
            reasons.append(UrgencyReason.NEW_DETECTION)
        elif history.previous_scores:
            average = float(np.mean(history.previous_scores))
            if result.composite_score - average >= self.config.ESCALATION_DELTA:
                reasons.append(UrgencyReason.SCORE_ESCALATION)

        return reasons

    @staticmethod
    def _summary(score: int, level: PriorityLevel, top: list, reasons: list) -> str:
        parts = [f"Priority: {level.value.upper()} ({score}/100)"]
        if top:
            parts.append(f"Primary driver: {top[0].name}")
        if reasons:
            parts.append(f"{len(reasons)} urgency indicator(s)")
        return " | ".join(parts)

    @staticmethod
    def _recommended_action(level: PriorityLevel, reasons: list) -> str:
        if level == PriorityLevel.CRITICAL:
            if UrgencyReason.INSIDER_INDICATOR in reasons:
                return "IMMEDIATE: Investigate for potential insider trading. Consider escalating to compliance."
            if UrgencyReason.NETWORK_DETECTION in reasons:
                return "IMMEDIATE: Investigate coordinated trading network. Identify all related wallets."
            return "IMMEDIATE: High-priority investigation required. Review all signals and recent activity."
        if level == PriorityLevel.HIGH:
            if UrgencyReason.SCORE_ESCALATION in reasons:
                return "URGENT: Suspicion score increasing rapidly. Monitor closely and investigate."
            return "URGENT: Detailed review recommended within 24 hours. Cross-reference with other alerts."
        if level == PriorityLevel.MEDIUM:
            return "STANDARD: Include in regular review queue. Document findings for pattern tracking."
        return "LOWER: Batch review acceptable. Monitor for any score escalation."

    def _update_history(self, wallet: str, score: float, now: datetime) -> None:
        entry = self._history.get(wallet)
        if entry is None:
            entry = AlertHistory(wallet_address=wallet, first_seen=now, last_seen=now)
            self._history[wallet] = entry
        entry.last_seen = now
        entry.previous_scores.append(score)
        entry.times_ranked += 1
        del entry.previous_scores[:-self.config.MAX_HISTORY_SCORES]

        overflow = len(self._history) - self.config.MAX_CACHE_SIZE * 2
        if overflow > 0:
            stale = sorted(self._history.values(), key=lambda h: h.last_seen)[:overflow]
            for h in stale:
                del self._history[h.wallet_address]

    def _cache_put(self, wallet: str, ranking: PriorityRanking) -> None:
        self._cache[wallet] = (ranking, time.monotonic())
        self._cache.move_to_end(wallet)
        while len(self._cache) > self.config.MAX_CACHE_SIZE:
            self._cache.popitem(last=False)

    def _fresh_cached(self) -> list[PriorityRanking]:
        now = time.monotonic()
        return [
            ranking for ranking, stored_at in self._cache.values()
            if now - stored_at < self.config.CACHE_TTL_SECONDS
        ]

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def rank_alert(
        self,
        result: CompositeScoreResult,
        filter_result: Optional[FilterResult] = None,
        use_cache: bool = True,
        now: Optional[datetime] = None,
    ) -> PriorityRanking:
        """
        Rank one composite result.

        Args:
            result: Composite suspicion result for a wallet.
            filter_result: Optional false-positive filter verdict.
            use_cache: Return a fresh cached ranking when one exists.
            now: Ranking time.

        Returns:
            PriorityRanking

        Raises:
            InvalidAddressError: If the result's wallet address is invalid.
        """
        wallet = checksum_address(result.wallet_address)

        if use_cache and wallet in self._cache:
            ranking, stored_at = self._cache[wallet]
            if time.monotonic() - stored_at < self.config.CACHE_TTL_SECONDS:
                self._cache_hits += 1
                logger.debug(f"Priority cache hit for {wallet}")
                cached = copy.deepcopy(ranking)
                cached.from_cache = True
                return cached
            del self._cache[wallet]
        self._cache_misses += 1

        now = now or utc_now()
        history = self._history.get(wallet)
        age_hours = self._age_hours(result, now)

        contributions = self._factors(result, filter_result, history, age_hours)
        total_weight = sum(c.weight for c in contributions)
        raw_priority = sum(c.weighted_score for c in contributions) / total_weight if total_weight else 0.0
        decay = self.time_decay_multiplier(age_hours)
        priority_score = int(round(clamp(raw_priority * decay)))
        level = self.priority_level(priority_score)

        reasons = self._urgency_reasons(result, history, age_hours)
        top = sorted(contributions, key=lambda c: c.weighted_score, reverse=True)[:3]

        ranking = PriorityRanking(
            wallet_address=wallet,
            priority_score=priority_score,
            priority_level=level,
            is_urgent=(
                priority_score >= self.config.URGENT_THRESHOLD
                or len(reasons) >= self.config.MIN_URGENCY_REASONS_FOR_URGENT
            ),
            is_highlighted=priority_score >= self.config.HIGHLIGHT_THRESHOLD,
            urgency_reasons=reasons,
            factor_contributions=contributions,
            top_factors=top,
            original_score=result.composite_score,
            adjusted_score=filter_result.adjusted_score if filter_result is not None else None,
            suspicion_level=result.suspicion_level,
            time_decay_multiplier=decay,
            alert_age_hours=age_hours,
            summary=self._summary(priority_score, level, top, reasons),
            recommended_action=self._recommended_action(level, reasons),
            ranked_at=now,
        )

        self._update_history(wallet, result.composite_score, now)
        self._cache_put(wallet, ranking)
        self._total_processed += 1
        self._urgency_counts.update(reasons)
        for c in contributions:
            self._factor_scores[c.factor].append(c.weighted_score)
            del self._factor_scores[c.factor][:-self.config.MAX_CACHE_SIZE]

        self.events.emit("alert-ranked", copy.deepcopy(ranking))
        if ranking.is_urgent:
            self.events.emit("urgent-alert", copy.deepcopy(ranking))
        if ranking.is_highlighted:
            self.events.emit("alert-highlighted", copy.deepcopy(ranking))
        return copy.deepcopy(ranking)

    def rank_alerts(
        self,
        results: list[CompositeScoreResult],
        filter_results: Optional[dict] = None,
        use_cache: bool = True,
        now: Optional[datetime] = None,
    ) -> BatchRankingResult:
        """
        Rank several results, highest priority first.

        Ties are broken by wallet address. Ranks start at 1. A result that
        fails to rank is recorded in `failed` and does not stop the batch.

        Args:
            results: Composite results to rank.
            filter_results: Wallet address -> FilterResult.
            use_cache: Passed to rank_alert().
            now: Ranking time.
        """
        filter_results = filter_results or {}
        batch = BatchRankingResult(total_processed=len(results))

        for result in results:
            try:
                filter_result = filter_results.get(result.wallet_address)
                if filter_result is None:
                    filter_result = filter_results.get(checksum_address(result.wallet_address))
                batch.rankings.append(self.rank_alert(result, filter_result, use_cache=use_cache, now=now))
            except Exception as e:
                logger.exception(f"Failed to rank alert for {result.wallet_address}")
                batch.failed[result.wallet_address] = str(e)

        batch.rankings.sort(key=lambda r: (-r.priority_score, r.wallet_address))
        for i, ranking in enumerate(batch.rankings):
            ranking.rank = i + 1
            batch.by_level[ranking.priority_level] += 1
            if ranking.is_urgent:
                batch.urgent_count += 1
            if ranking.is_highlighted:
                batch.highlighted_count += 1

        logger.info(
            f"Ranked {len(batch.rankings)} alerts ({batch.urgent_count} urgent, "
            f"{len(batch.failed)} failed)"
        )
        return batch

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_cached_ranking(self, wallet_address: str) -> Optional[PriorityRanking]:
        try:
            wallet = checksum_address(wallet_address)
        except ValueError:
            return None
        entry = self._cache.get(wallet)
        if entry is None or time.monotonic() - entry[1] >= self.config.CACHE_TTL_SECONDS:
            return None
        return copy.deepcopy(entry[0])

    def _sorted(self, rankings: list[PriorityRanking]) -> list[PriorityRanking]:
        return copy.deepcopy(sorted(rankings, key=lambda r: (-r.priority_score, r.wallet_address)))

    def get_urgent_alerts(self) -> list[PriorityRanking]:
        return self._sorted([r for r in self._fresh_cached() if r.is_urgent])

    def get_highlighted_alerts(self) -> list[PriorityRanking]:
        return self._sorted([r for r in self._fresh_cached() if r.is_highlighted])

    def get_alerts_by_level(self, level: PriorityLevel) -> list[PriorityRanking]:
        return self._sorted([r for r in self._fresh_cached() if r.priority_level == level])

    def get_top_alerts(self, limit: int = 10) -> list[PriorityRanking]:
        return self._sorted(self._fresh_cached())[:limit]

    def get_alert_history(self, wallet_address: str) -> Optional[AlertHistory]:
        try:
            wallet = checksum_address(wallet_address)
        except ValueError:
            return None
        entry = self._history.get(wallet)
        return copy.deepcopy(entry) if entry else None

    def get_summary(self) -> dict:
        rankings = self._fresh_cached()
        by_level = {level.value: 0 for level in PriorityLevel}
        for r in rankings:
            by_level[r.priority_level.value] += 1

        lookups = self._cache_hits + self._cache_misses
        impactful = [
            {"factor": factor.value, "avg_contribution": float(np.mean(scores))}
            for factor, scores in self._factor_scores.items() if scores
        ]
        impactful.sort(key=lambda f: f["avg_contribution"], reverse=True)

        return {
            "total_ranked": self._total_processed,
            "by_level": by_level,
            "urgent_alerts": sum(1 for r in rankings if r.is_urgent),
            "highlighted_alerts": sum(1 for r in rankings if r.is_highlighted),
            "average_priority_score": float(np.mean([r.priority_score for r in rankings])) if rankings else 0.0,
            "common_urgency_reasons": [
                {"reason": reason.value, "count": count}
                for reason, count in self._urgency_counts.most_common()
            ],
            "impactful_factors": impactful,
            "cache": {
                "size": len(self._cache),
                "hit_rate": self._cache_hits / lookups if lookups else 0.0,
            },
        }

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        self._cache.clear()

    def invalidate_cache(self, wallet_address: str) -> bool:
        try:
            wallet = checksum_address(wallet_address)
        except ValueError:
            return False
        return self._cache.pop(wallet, None) is not None

    def get_config(self) -> PriorityRankerConfig:
        return copy.deepcopy(self.config)

    def update_config(self, **changes: Any) -> PriorityRankerConfig:
        """
        Update ranking settings by field name; cached rankings are dropped.

        Raises:
            ValueError: If a field name is unknown.
        """
        known = {f.name for f in fields(PriorityRankerConfig)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown ranker settings: {sorted(unknown)}")
        if "FACTOR_WEIGHTS" in changes:
            changes["FACTOR_WEIGHTS"] = {**self.config.FACTOR_WEIGHTS, **changes["FACTOR_WEIGHTS"]}

        self.config = replace(self.config, **changes)
        self.events.enabled = self.config.ENABLE_EVENTS
        self._cache.clear()
        return copy.deepcopy(self.config)

    def reset_stats(self) -> None:
        self._urgency_counts.clear()
        self._factor_scores = {factor: [] for factor in PriorityFactor}
        self._total_processed = 0
        self._cache_hits = 0
        self._cache_misses = 0

    def clear(self) -> None:
        self._cache.clear()
        self._history.clear()
        self.reset_stats()


# ============================================================================
# Shared instance
# ============================================================================

_shared = SharedInstance(
    lambda: AlertPriorityRanker(PriorityRankerConfig.from_settings()),
    on_reset=lambda ranker: ranker.clear(),
)


def create_alert_priority_ranker(config: Optional[PriorityRankerConfig] = None) -> AlertPriorityRanker:
    return AlertPriorityRanker(config)


def get_shared_alert_priority_ranker() -> AlertPriorityRanker:
    return _shared.get()


def set_shared_alert_priority_ranker(ranker: AlertPriorityRanker) -> None:
    _shared.set(ranker)


def reset_shared_alert_priority_ranker() -> None:
    _shared.reset()
