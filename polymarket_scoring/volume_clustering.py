"""
Volume Clustering Analyzer for Polymarket Scoring.

Detects groups of wallets trading the same market inside a short window
in a way that suggests coordination:
- Directional: many wallets pushing the same side
- Counter trading: balanced buys and sells across wallets (wash-like)
- Split orders: each wallet breaking a position into several trades
- Timed coordination: trades at suspiciously regular intervals

Each candidate window is scored 0-100 from wallet count, trade count,
direction alignment, timing regularity and volume. Clusters above the
minimum score are recorded with a per-market alert cooldown.
"""

import copy
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from .config import settings
from .events import EventSource, ListenerRegistry
from .models import ClusterTrade, TradeSide
from .shared import SharedInstance
from .utils import coefficient_of_variation, normalize_address, utc_now

logger = logging.getLogger(__name__)


class CoordinationType(Enum):
    """Kind of coordination a cluster shows."""
    DIRECTIONAL = "directional"
    COUNTER_TRADING = "counter_trading"
    SPLIT_ORDERS = "split_orders"
    TIMED_COORDINATION = "timed_coordination"
    MIXED = "mixed"


class ClusterSeverity(Enum):
    """Severity of a detected cluster."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ClusterThresholdConfig:
    """Thresholds and weights for cluster detection."""

    MIN_WALLETS: int = 3
    MIN_TRADES: int = 4
    WINDOW_SECONDS: int = 300
    MIN_COORDINATION_SCORE: float = 50.0
    MIN_VOLUME_USD: float = 10000.0
    DIRECTIONAL_IMBALANCE_THRESHOLD: float = 0.7
    COUNTER_TRADING_IMBALANCE_THRESHOLD: float = 0.3
    TIMING_REGULARITY_THRESHOLD: float = 0.7
    MAX_TIMING_COV: float = 0.3               # CoV at which regularity reaches 0
    MIN_TRADES_PER_WALLET_FOR_SPLIT: float = 2.0
    LARGE_CLUSTER_VOLUME_USD: float = 100000.0

    # Coordination score weights (sum to 1.0)
    SCORE_WEIGHTS: dict = None

    # Coordination score at which each severity starts
    SEVERITY_THRESHOLDS: dict = None

    ALERT_COOLDOWN_SECONDS: int = 60
    MAX_RECENT_CLUSTERS: int = 100
    SLIDING_WINDOW_STEP_SECONDS: int = 60
    ENABLE_EVENTS: bool = True

    def __post_init__(self):
        if self.SCORE_WEIGHTS is None:
            self.SCORE_WEIGHTS = {
                "wallet_count": 0.2,
                "trade_count": 0.15,
                "direction_alignment": 0.25,
                "timing_regularity": 0.2,
                "volume_concentration": 0.2,
            }
        if self.SEVERITY_THRESHOLDS is None:
            self.SEVERITY_THRESHOLDS = {"medium": 50, "high": 70, "critical": 85}

    @classmethod
    def from_settings(cls) -> "ClusterThresholdConfig":
        return cls(
            WINDOW_SECONDS=settings.cluster_window_seconds,
            ENABLE_EVENTS=settings.enable_events,
        )


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class VolumeCluster:
    """A group of trades that looks coordinated."""
    cluster_id: str
    market_id: str
    coordination_type: CoordinationType
    severity: ClusterSeverity
    wallet_addresses: list
    trade_ids: list
    total_volume_usd: float
    start_time: datetime
    end_time: datetime
    window_seconds: int
    coordination_score: float
    buy_volume_usd: float
    sell_volume_usd: float
    buy_sell_ratio: float
    direction_imbalance: float
    average_seconds_between_trades: float
    timing_regularity: float
    detected_at: datetime
    flag_reasons: list = field(default_factory=list)

    @property
    def wallet_count(self) -> int:
        return len(self.wallet_addresses)

    @property
    def trade_count(self) -> int:
        return len(self.trade_ids)

    @property
    def average_trade_size(self) -> float:
        return self.total_volume_usd / self.trade_count if self.trade_count else 0.0

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "cluster_id": self.cluster_id,
            "market_id": self.market_id,
            "coordination_type": self.coordination_type.value,
            "severity": self.severity.value,
            "wallet_addresses": list(self.wallet_addresses),
            "wallet_count": self.wallet_count,
            "trade_ids": list(self.trade_ids),
            "trade_count": self.trade_count,
            "total_volume_usd": round(self.total_volume_usd, 2),
            "average_trade_size": round(self.average_trade_size, 2),
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_seconds": self.duration_seconds,
            "window_seconds": self.window_seconds,
            "coordination_score": self.coordination_score,
            "buy_volume_usd": round(self.buy_volume_usd, 2),
            "sell_volume_usd": round(self.sell_volume_usd, 2),
            "buy_sell_ratio": round(self.buy_sell_ratio, 4),
            "direction_imbalance": round(self.direction_imbalance, 4),
            "average_seconds_between_trades": round(self.average_seconds_between_trades, 2),
            "timing_regularity": round(self.timing_regularity, 4),
            "detected_at": self.detected_at.isoformat(),
            "flag_reasons": list(self.flag_reasons),
        }


@dataclass
class ClusterDetectionResult:
    """Outcome of analyzing one market window. Counts are always populated."""
    market_id: str
    window_start: Optional[datetime]
    window_end: Optional[datetime]
    has_cluster: bool
    cluster: Optional[VolumeCluster]
    total_trades_in_window: int
    unique_wallets_in_window: int
    total_volume_in_window: float
    analyzed_at: datetime

    def to_dict(self) -> dict:
        return {
            "market_id": self.market_id,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            "has_cluster": self.has_cluster,
            "cluster": self.cluster.to_dict() if self.cluster else None,
            "total_trades_in_window": self.total_trades_in_window,
            "unique_wallets_in_window": self.unique_wallets_in_window,
            "total_volume_in_window": round(self.total_volume_in_window, 2),
            "analyzed_at": self.analyzed_at.isoformat(),
        }


@dataclass
class BatchClusterDetectionResult:
    results_by_market: dict = field(default_factory=dict)   # market_id -> [ClusterDetectionResult]
    clusters: list = field(default_factory=list)
    total_trades_processed: int = 0
    by_severity: dict = field(default_factory=lambda: {s: 0 for s in ClusterSeverity})
    by_coordination_type: dict = field(default_factory=lambda: {t: 0 for t in CoordinationType})

    @property
    def total_clusters_detected(self) -> int:
        return len(self.clusters)


# ============================================================================
# Scoring helpers
# ============================================================================

def calculate_timing_regularity(intervals: list[float], max_cov: float) -> float:
    """
    Map the coefficient of variation of inter-trade gaps to [0, 1].

    A CoV of 0 gives 1.0; a CoV of max_cov or more gives 0.0. Fewer than
    two gaps, or a zero mean gap, count as irregular.
    """
    if len(intervals) < 2:
        cov = 1.0
    else:
        cov = coefficient_of_variation(intervals)
        if cov is None:
            cov = 1.0
    return max(0.0, 1 - cov / max_cov)


def calculate_coordination_score(
    wallet_count: int,
    trade_count: int,
    direction_imbalance: float,
    timing_regularity: float,
    volume_usd: float,
    min_volume_usd: float,
    weights: dict,
) -> float:
    """Weighted 0-100 coordination score, rounded to an integer."""
    wallet_factor = min(1.0, (wallet_count - 2) / 8)      # 10+ wallets saturates
    trade_factor = min(1.0, (trade_count - 3) / 17)       # 20+ trades saturates
    volume_factor = min(1.0, volume_usd / (min_volume_usd * 10))

    score = (
        wallet_factor * weights["wallet_count"]
        + trade_factor * weights["trade_count"]
        + direction_imbalance * weights["direction_alignment"]
        + timing_regularity * weights["timing_regularity"]
        + volume_factor * weights["volume_concentration"]
    ) * 100
    return float(min(100, round(score)))


def determine_coordination_type(
    direction_imbalance: float,
    timing_regularity: float,
    avg_trades_per_wallet: float,
    config: ClusterThresholdConfig,
) -> CoordinationType:
    """Classify a cluster; earlier checks take precedence."""
    if avg_trades_per_wallet >= config.MIN_TRADES_PER_WALLET_FOR_SPLIT:
        return CoordinationType.SPLIT_ORDERS
    if direction_imbalance >= config.DIRECTIONAL_IMBALANCE_THRESHOLD:
        return CoordinationType.DIRECTIONAL
    if direction_imbalance < config.COUNTER_TRADING_IMBALANCE_THRESHOLD:
        return CoordinationType.COUNTER_TRADING
    if timing_regularity >= config.TIMING_REGULARITY_THRESHOLD:
        return CoordinationType.TIMED_COORDINATION
    return CoordinationType.MIXED


def determine_severity(score: float, thresholds: dict) -> ClusterSeverity:
    if score >= thresholds["critical"]:
        return ClusterSeverity.CRITICAL
    if score >= thresholds["high"]:
        return ClusterSeverity.HIGH
    if score >= thresholds["medium"]:
        return ClusterSeverity.MEDIUM
    return ClusterSeverity.LOW


_TYPE_REASONS = {
    CoordinationType.COUNTER_TRADING: "Potential wash trading - balanced buy/sell from multiple wallets",
    CoordinationType.SPLIT_ORDERS: "Split order pattern - wallets making multiple trades",
    CoordinationType.TIMED_COORDINATION: "Timed coordination - trades at regular intervals",
    CoordinationType.DIRECTIONAL: "Directional coordination - aligned trading direction",
    CoordinationType.MIXED: "Mixed coordination signals detected",
}


def generate_flag_reasons(cluster: VolumeCluster, config: ClusterThresholdConfig) -> list[str]:
    """Human-readable reasons a cluster was flagged."""
    reasons = [
        f"{cluster.wallet_count} wallets made {cluster.trade_count} trades "
        f"in {round(cluster.duration_seconds)}s"
    ]
    if cluster.direction_imbalance >= config.DIRECTIONAL_IMBALANCE_THRESHOLD:
        direction = "buy" if cluster.buy_sell_ratio > 0.5 else "sell"
        reasons.append(
            f"Strong {direction} bias ({round(cluster.direction_imbalance * 100)}% directional)"
        )
    if cluster.timing_regularity >= config.TIMING_REGULARITY_THRESHOLD:
        reasons.append(
            f"Highly regular timing ({round(cluster.timing_regularity * 100)}% regularity)"
        )
    reasons.append(_TYPE_REASONS[cluster.coordination_type])
    if cluster.total_volume_usd >= config.LARGE_CLUSTER_VOLUME_USD:
        reasons.append(f"Large total volume: ${cluster.total_volume_usd:,.0f}")
    return reasons


# ============================================================================
# Analyzer
# ============================================================================

class VolumeClusteringAnalyzer(EventSource):
    """
    Detects coordinated volume clusters in per-market trade streams.

    Events:
        cluster-detected(VolumeCluster)
        critical-cluster(VolumeCluster)
    """

    EVENTS = ("cluster-detected", "critical-cluster")

    def __init__(self, config: Optional[ClusterThresholdConfig] = None):
        """
        Initialize the analyzer.

        Args:
            config: Detection thresholds. Defaults to ClusterThresholdConfig().
        """
        self.config = config or ClusterThresholdConfig()
        self.events = ListenerRegistry(self.EVENTS, enabled=self.config.ENABLE_EVENTS)
        self._recent_clusters: deque = deque(maxlen=self.config.MAX_RECENT_CLUSTERS)  # newest first
        self._last_alert_time: dict[str, datetime] = {}
        self._reset_counters()

    def _reset_counters(self) -> None:
        self._total_clusters_detected = 0
        self._by_severity = {s: 0 for s in ClusterSeverity}
        self._by_type = {t: 0 for t in CoordinationType}

    def _empty_result(
        self,
        market_id: str,
        now: datetime,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        trades: Optional[list[ClusterTrade]] = None,
    ) -> ClusterDetectionResult:
        trades = trades or []
        return ClusterDetectionResult(
            market_id=market_id,
            window_start=window_start,
            window_end=window_end,
            has_cluster=False,
            cluster=None,
            total_trades_in_window=len(trades),
            unique_wallets_in_window=len({normalize_address(t.wallet_address) for t in trades}),
            total_volume_in_window=sum(t.size_usd for t in trades),
            analyzed_at=now,
        )

    def analyze_trades(
        self,
        trades: list[ClusterTrade],
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        bypass_cooldown: bool = False,
        market_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ClusterDetectionResult:
        """
        Analyze one market's trades for a coordinated cluster.

        The window defaults to WINDOW_SECONDS trailing the latest trade.

        Args:
            trades: Trades to analyze. Trades for other markets are ignored.
            window_start: Explicit inclusive window start.
            window_end: Explicit inclusive window end.
            bypass_cooldown: Record the cluster even inside the market's cooldown.
            market_id: Market to analyze. Defaults to the first trade's market.
            now: Analysis time used for cooldowns and timestamps.

        Returns:
            ClusterDetectionResult. `has_cluster` is False when a gate is not met.
        """
        now = now or utc_now()
        cfg = self.config

        if not trades:
            return self._empty_result(market_id or "", now)

        market_id = market_id or trades[0].market_id
        ordered = sorted((t for t in trades if t.market_id == market_id), key=lambda t: t.timestamp)
        if not ordered:
            return self._empty_result(market_id, now)

        window_end = window_end or ordered[-1].timestamp
        window_start = window_start or (window_end - timedelta(seconds=cfg.WINDOW_SECONDS))
        in_window = [t for t in ordered if window_start <= t.timestamp <= window_end]

        wallets: dict[str, int] = {}
        for trade in in_window:
            key = normalize_address(trade.wallet_address)
            wallets[key] = wallets.get(key, 0) + 1

        total_volume = sum(t.size_usd for t in in_window)
        if (
            len(in_window) < cfg.MIN_TRADES
            or len(wallets) < cfg.MIN_WALLETS
            or total_volume < cfg.MIN_VOLUME_USD
        ):
            return self._empty_result(market_id, now, window_start, window_end, in_window)

        buy_volume = sum(t.size_usd for t in in_window if t.side == TradeSide.BUY)
        sell_volume = total_volume - buy_volume
        buy_ratio = buy_volume / total_volume if total_volume > 0 else 0.5
        imbalance = abs(buy_ratio - 0.5) * 2

        intervals = [
            (b.timestamp - a.timestamp).total_seconds() for a, b in zip(in_window, in_window[1:])
        ]
        regularity = calculate_timing_regularity(intervals, cfg.MAX_TIMING_COV)

        score = calculate_coordination_score(
            len(wallets),
            len(in_window),
            imbalance,
            regularity,
            total_volume,
            cfg.MIN_VOLUME_USD,
            cfg.SCORE_WEIGHTS,
        )
        if score < cfg.MIN_COORDINATION_SCORE:
            return self._empty_result(market_id, now, window_start, window_end, in_window)

        cluster = VolumeCluster(
            cluster_id=f"cluster_{uuid.uuid4().hex[:12]}",
            market_id=market_id,
            coordination_type=determine_coordination_type(
                imbalance, regularity, len(in_window) / len(wallets), cfg
            ),
            severity=determine_severity(score, cfg.SEVERITY_THRESHOLDS),
            wallet_addresses=list(wallets),
            trade_ids=[t.trade_id for t in in_window],
            total_volume_usd=total_volume,
            start_time=window_start,
            end_time=window_end,
            window_seconds=cfg.WINDOW_SECONDS,
            coordination_score=score,
            buy_volume_usd=buy_volume,
            sell_volume_usd=sell_volume,
            buy_sell_ratio=buy_ratio,
            direction_imbalance=imbalance,
            average_seconds_between_trades=sum(intervals) / len(intervals) if intervals else 0.0,
            timing_regularity=regularity,
            detected_at=now,
        )
        cluster.flag_reasons = generate_flag_reasons(cluster, cfg)

        if self._can_record(market_id, bypass_cooldown, now):
            self._record_cluster(cluster, now)

        return ClusterDetectionResult(
            market_id=market_id,
            window_start=window_start,
            window_end=window_end,
            has_cluster=True,
            cluster=cluster,
            total_trades_in_window=len(in_window),
            unique_wallets_in_window=len(wallets),
            total_volume_in_window=total_volume,
            analyzed_at=now,
        )

    def analyze_trades_with_sliding_window(
        self,
        trades: list[ClusterTrade],
        bypass_cooldown: bool = False,
        now: Optional[datetime] = None,
    ) -> list[ClusterDetectionResult]:
        """
        Slide a WINDOW_SECONDS window across the trades in SLIDING_WINDOW_STEP_SECONDS steps.

        Only windows holding at least MIN_TRADES trades are analyzed.
        """
        if not trades:
            return []

        ordered = sorted(trades, key=lambda t: t.timestamp)
        step = timedelta(seconds=self.config.SLIDING_WINDOW_STEP_SECONDS)
        span = timedelta(seconds=self.config.WINDOW_SECONDS)
        end_time = ordered[-1].timestamp

        results = []
        start = ordered[0].timestamp
        while start <= end_time:
            end = start + span
            window_trades = [t for t in ordered if start <= t.timestamp <= end]
            if len(window_trades) >= self.config.MIN_TRADES:
                results.append(self.analyze_trades(
                    window_trades,
                    window_start=start,
                    window_end=end,
                    bypass_cooldown=bypass_cooldown,
                    market_id=window_trades[0].market_id,
                    now=now,
                ))
            start += step
        return results

    def analyze_multiple_markets(
        self,
        trades_by_market: dict[str, list[ClusterTrade]],
        bypass_cooldown: bool = False,
        now: Optional[datetime] = None,
    ) -> BatchClusterDetectionResult:
        """Run the sliding-window analysis for each market and aggregate the clusters."""
        batch = BatchClusterDetectionResult()
        for market_id, trades in trades_by_market.items():
            batch.total_trades_processed += len(trades)
            try:
                results = self.analyze_trades_with_sliding_window(
                    [t for t in trades if t.market_id == market_id],
                    bypass_cooldown=bypass_cooldown,
                    now=now,
                )
            except Exception:
                logger.exception(f"Error analyzing clusters for market {market_id}")
                continue
            batch.results_by_market[market_id] = results
            for result in results:
                if result.has_cluster and result.cluster is not None:
                    batch.clusters.append(result.cluster)
                    batch.by_severity[result.cluster.severity] += 1
                    batch.by_coordination_type[result.cluster.coordination_type] += 1

        logger.info(
            f"Analyzed {len(trades_by_market)} markets, "
            f"{batch.total_clusters_detected} clusters detected"
        )
        return batch

    # ========================================================================
    # Recorded clusters
    # ========================================================================

    def _can_record(self, market_id: str, bypass_cooldown: bool, now: datetime) -> bool:
        if bypass_cooldown:
            return True
        last = self._last_alert_time.get(market_id)
        return last is None or (now - last).total_seconds() >= self.config.ALERT_COOLDOWN_SECONDS

    def _record_cluster(self, cluster: VolumeCluster, now: datetime) -> None:
        self._recent_clusters.appendleft(cluster)
        self._last_alert_time[cluster.market_id] = now
        self._total_clusters_detected += 1
        self._by_severity[cluster.severity] += 1
        self._by_type[cluster.coordination_type] += 1

        logger.info(
            f"Cluster detected on {cluster.market_id}: {cluster.wallet_count} wallets, "
            f"score {cluster.coordination_score:.0f} ({cluster.severity.value})"
        )
        self.events.emit("cluster-detected", copy.deepcopy(cluster))
        if cluster.severity == ClusterSeverity.CRITICAL:
            self.events.emit("critical-cluster", copy.deepcopy(cluster))

    def get_market_clusters(self, market_id: str, limit: int = 10) -> list[VolumeCluster]:
        return copy.deepcopy([c for c in self._recent_clusters if c.market_id == market_id][:limit])

    def get_wallet_clusters(self, wallet_address: str, limit: int = 10) -> list[VolumeCluster]:
        wallet = normalize_address(wallet_address)
        return copy.deepcopy([c for c in self._recent_clusters if wallet in c.wallet_addresses][:limit])

    def get_recent_clusters(self, limit: int = 20) -> list[VolumeCluster]:
        return copy.deepcopy(list(self._recent_clusters)[:limit])

    def get_summary(self) -> dict:
        markets: dict[str, dict] = {}
        wallets: dict[str, dict] = {}
        total_volume = 0.0

        for cluster in self._recent_clusters:
            total_volume += cluster.total_volume_usd
            entry = markets.setdefault(cluster.market_id, {"cluster_count": 0, "total_volume_usd": 0.0})
            entry["cluster_count"] += 1
            entry["total_volume_usd"] += cluster.total_volume_usd
            share = cluster.total_volume_usd / cluster.wallet_count
            for wallet in cluster.wallet_addresses:
                w = wallets.setdefault(wallet, {"cluster_count": 0, "total_volume_usd": 0.0})
                w["cluster_count"] += 1
                w["total_volume_usd"] += share

        top_markets = sorted(markets.items(), key=lambda kv: kv[1]["cluster_count"], reverse=True)[:10]
        top_wallets = sorted(wallets.items(), key=lambda kv: kv[1]["cluster_count"], reverse=True)[:10]

        return {
            "total_clusters_detected": self._total_clusters_detected,
            "markets_with_clusters": len(markets),
            "wallets_in_clusters": len(wallets),
            "total_cluster_volume_usd": total_volume,
            "by_severity": {s.value: n for s, n in self._by_severity.items()},
            "by_coordination_type": {t.value: n for t, n in self._by_type.items()},
            "recent_clusters": [c.to_dict() for c in list(self._recent_clusters)[:20]],
            "top_cluster_markets": [{"market_id": m, **data} for m, data in top_markets],
            "top_clustered_wallets": [{"wallet_address": w, **data} for w, data in top_wallets],
        }

    def get_thresholds(self) -> ClusterThresholdConfig:
        return copy.deepcopy(self.config)

    def get_stats(self) -> dict:
        return {
            "total_clusters_detected": self._total_clusters_detected,
            "recent_clusters": len(self._recent_clusters),
            "markets_on_cooldown": len(self._last_alert_time),
            "alert_cooldown_seconds": self.config.ALERT_COOLDOWN_SECONDS,
            "max_recent_clusters": self.config.MAX_RECENT_CLUSTERS,
            "sliding_window_step_seconds": self.config.SLIDING_WINDOW_STEP_SECONDS,
            "enable_events": self.config.ENABLE_EVENTS,
        }

    def clear_market(self, market_id: str) -> None:
        kept = [c for c in self._recent_clusters if c.market_id != market_id]
        self._recent_clusters = deque(kept, maxlen=self.config.MAX_RECENT_CLUSTERS)
        self._last_alert_time.pop(market_id, None)

    def clear_all(self) -> None:
        self._recent_clusters.clear()
        self._last_alert_time.clear()
        self._reset_counters()


# ============================================================================
# Shared instance
# ============================================================================

_shared = SharedInstance(
    lambda: VolumeClusteringAnalyzer(ClusterThresholdConfig.from_settings()),
    on_reset=lambda analyzer: analyzer.clear_all(),
)


def create_volume_clustering_analyzer(config: Optional[ClusterThresholdConfig] = None) -> VolumeClusteringAnalyzer:
    return VolumeClusteringAnalyzer(config)


def get_shared_volume_clustering_analyzer() -> VolumeClusteringAnalyzer:
    return _shared.get()


def set_shared_volume_clustering_analyzer(analyzer: VolumeClusteringAnalyzer) -> None:
    _shared.set(analyzer)


def reset_shared_volume_clustering_analyzer() -> None:
    _shared.reset()
