"""
Rolling Volume Tracker for Polymarket Scoring.

Keeps a bounded ring buffer of volume data points per market and derives
sliding-window statistics from it:
- Average volume per minute over 1m/5m/15m/1h/4h/24h windows
- Standard deviation, min/max, coefficient of variation and velocity
- Data density and a reliability flag per window
- Z-score threshold checks and breach events for abnormal entries
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import numpy as np

from .config import settings
from .events import EventSource, ListenerRegistry
from .shared import SharedInstance
from .utils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)


class RollingWindow(Enum):
    """Sliding windows tracked for every market."""
    ONE_MINUTE = "1m"
    FIVE_MINUTES = "5m"
    FIFTEEN_MINUTES = "15m"
    ONE_HOUR = "1h"
    FOUR_HOURS = "4h"
    TWENTY_FOUR_HOURS = "24h"

    @property
    def minutes(self) -> int:
        return WINDOW_DURATION_MINUTES[self]

    @property
    def duration(self) -> timedelta:
        return timedelta(minutes=WINDOW_DURATION_MINUTES[self])


WINDOW_DURATION_MINUTES: dict[RollingWindow, int] = {
    RollingWindow.ONE_MINUTE: 1,
    RollingWindow.FIVE_MINUTES: 5,
    RollingWindow.FIFTEEN_MINUTES: 15,
    RollingWindow.ONE_HOUR: 60,
    RollingWindow.FOUR_HOURS: 240,
    RollingWindow.TWENTY_FOUR_HOURS: 1440,
}

ALL_ROLLING_WINDOWS: list[RollingWindow] = list(RollingWindow)

if set(WINDOW_DURATION_MINUTES) != set(RollingWindow):
    raise ValueError("WINDOW_DURATION_MINUTES must define every RollingWindow")


@dataclass
class RollingVolumeConfig:
    """Configuration for the rolling volume tracker."""

    WINDOWS: list = None
    MAX_DATA_POINTS: int = 10000
    DATA_POINT_INTERVAL_SECONDS: float = 1.0   # Expected spacing between points
    MIN_DATA_DENSITY: float = 0.5              # Share of expected points for reliability
    BREACH_Z_SCORE_THRESHOLD: float = 2.0
    ENABLE_EVENTS: bool = True

    def __post_init__(self):
        if self.WINDOWS is None:
            self.WINDOWS = list(ALL_ROLLING_WINDOWS)

    @classmethod
    def from_settings(cls) -> "RollingVolumeConfig":
        return cls(ENABLE_EVENTS=settings.enable_events)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class VolumeDataEntry:
    """A single volume observation."""
    timestamp: datetime
    volume: float
    trade_count: Optional[int] = None
    price: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "volume": self.volume,
            "trade_count": self.trade_count,
            "price": self.price,
        }


@dataclass
class RollingAverageResult:
    """Statistics for one market over one window."""
    window: RollingWindow
    window_start: datetime
    window_end: datetime
    average_volume_per_minute: float = 0.0
    total_volume: float = 0.0
    data_point_count: int = 0
    standard_deviation: float = 0.0
    min_volume: float = 0.0
    max_volume: float = 0.0
    average_trade_count_per_minute: Optional[float] = None
    data_density: float = 0.0
    is_reliable: bool = False
    coefficient_of_variation: float = 0.0
    volume_velocity: float = 0.0

    def to_dict(self) -> dict:
        return {
            "window": self.window.value,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "average_volume_per_minute": round(self.average_volume_per_minute, 4),
            "total_volume": round(self.total_volume, 4),
            "data_point_count": self.data_point_count,
            "standard_deviation": round(self.standard_deviation, 4),
            "min_volume": self.min_volume,
            "max_volume": self.max_volume,
            "average_trade_count_per_minute": self.average_trade_count_per_minute,
            "data_density": round(self.data_density, 4),
            "is_reliable": self.is_reliable,
            "coefficient_of_variation": round(self.coefficient_of_variation, 4),
            "volume_velocity": round(self.volume_velocity, 4),
        }


@dataclass
class MarketRollingAverages:
    """All window statistics for a market."""
    market_id: str
    calculated_at: datetime
    window_results: dict = field(default_factory=dict)  # RollingWindow -> RollingAverageResult
    oldest_data_point: Optional[datetime] = None
    newest_data_point: Optional[datetime] = None
    total_data_points: int = 0
    max_data_age_minutes: float = 0.0

    def to_dict(self) -> dict:
        return {
            "market_id": self.market_id,
            "calculated_at": self.calculated_at.isoformat(),
            "window_results": {w.value: r.to_dict() for w, r in self.window_results.items()},
            "data_health": {
                "oldest_data_point": self.oldest_data_point.isoformat() if self.oldest_data_point else None,
                "newest_data_point": self.newest_data_point.isoformat() if self.newest_data_point else None,
                "total_data_points": self.total_data_points,
                "max_data_age_minutes": round(self.max_data_age_minutes, 2),
            },
        }


@dataclass
class VolumeThresholdBreach:
    """Emitted when a new entry deviates from its window average."""
    market_id: str
    window: RollingWindow
    current_volume: float
    threshold: float
    is_high: bool
    z_score: float
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "market_id": self.market_id,
            "window": self.window.value,
            "current_volume": self.current_volume,
            "threshold": round(self.threshold, 4),
            "is_high": self.is_high,
            "z_score": round(self.z_score, 4),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class BatchRollingAveragesResult:
    results: dict = field(default_factory=dict)   # market_id -> MarketRollingAverages
    errors: dict = field(default_factory=dict)    # market_id -> message


# ============================================================================
# Ring buffer
# ============================================================================

class VolumeRingBuffer:
    """Fixed-capacity buffer of volume entries; the oldest entry is dropped when full."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._entries: deque = deque(maxlen=capacity)

    def add(self, entry: VolumeDataEntry) -> None:
        self._entries.append(entry)

    def get_in_range(self, start: datetime, end: datetime) -> list[VolumeDataEntry]:
        """Entries with start <= timestamp <= end, ordered by timestamp."""
        return sorted(
            (e for e in self._entries if start <= e.timestamp <= end),
            key=lambda e: e.timestamp,
        )

    def get_oldest(self) -> Optional[VolumeDataEntry]:
        return min(self._entries, key=lambda e: e.timestamp) if self._entries else None

    def get_newest(self) -> Optional[VolumeDataEntry]:
        return max(self._entries, key=lambda e: e.timestamp) if self._entries else None

    def get_all(self) -> list[VolumeDataEntry]:
        return sorted(self._entries, key=lambda e: e.timestamp)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()


def calculate_window_average(
    data_points: list[VolumeDataEntry],
    window: RollingWindow,
    window_start: datetime,
    window_end: datetime,
    data_point_interval_seconds: float,
    min_data_density: float,
) -> RollingAverageResult:
    """
    Compute window statistics from the points that fall inside it.

    Args:
        data_points: Entries inside the window, ordered by timestamp.
        window: Window being computed.
        window_start: Inclusive window start.
        window_end: Inclusive window end.
        data_point_interval_seconds: Expected spacing used for data density.
        min_data_density: Density at or above which the window is reliable.

    Returns:
        RollingAverageResult for the window.
    """
    result = RollingAverageResult(window=window, window_start=window_start, window_end=window_end)
    if not data_points:
        return result

    minutes = window.minutes
    volumes = np.array([dp.volume for dp in data_points], dtype=float)
    total = float(volumes.sum())
    avg = total / len(volumes)
    std = float(volumes.std())

    trade_counts = [dp.trade_count for dp in data_points if dp.trade_count is not None]
    expected = max(1, int(window.duration.total_seconds() // data_point_interval_seconds))
    density = len(data_points) / expected

    velocity = 0.0
    if len(data_points) >= 2:
        elapsed_minutes = (data_points[-1].timestamp - data_points[0].timestamp).total_seconds() / 60
        if elapsed_minutes > 0:
            velocity = (data_points[-1].volume - data_points[0].volume) / elapsed_minutes

    result.average_volume_per_minute = total / minutes
    result.total_volume = total
    result.data_point_count = len(data_points)
    result.standard_deviation = std
    result.min_volume = float(volumes.min())
    result.max_volume = float(volumes.max())
    result.average_trade_count_per_minute = sum(trade_counts) / minutes if trade_counts else None
    result.data_density = min(1.0, density)
    result.is_reliable = density >= min_data_density
    result.coefficient_of_variation = std / avg if avg > 0 else 0.0
    result.volume_velocity = velocity
    return result


# ============================================================================
# Tracker
# ============================================================================

class RollingVolumeTracker(EventSource):
    """
    Tracks rolling volume averages across multiple markets.

    Events:
        volume-added(market_id, entry)
        threshold-breach(VolumeThresholdBreach)
        data-cleared(market_id)
    """

    EVENTS = ("volume-added", "threshold-breach", "data-cleared")

    def __init__(self, config: Optional[RollingVolumeConfig] = None):
        """
        Initialize the tracker.

        Args:
            config: Tracker configuration. Defaults to RollingVolumeConfig().
        """
        self.config = config or RollingVolumeConfig()
        self.events = ListenerRegistry(self.EVENTS, enabled=self.config.ENABLE_EVENTS)
        self._buffers: dict[str, VolumeRingBuffer] = {}
        # Last seen window averages per market, used for breach detection
        self._recent_averages: dict[str, dict[RollingWindow, float]] = {}

    # ========================================================================
    # Ingestion
    # ========================================================================

    def add_volume(
        self,
        market_id: str,
        volume: float,
        timestamp: Optional[datetime] = None,
        trade_count: Optional[int] = None,
        price: Optional[float] = None,
    ) -> Optional[VolumeDataEntry]:
        """
        Add a volume data point for a market.

        Empty market ids and negative volumes are ignored.

        Returns:
            The stored entry, or None if the input was ignored.
        """
        if not market_id or not market_id.strip():
            logger.debug("Ignoring volume with empty market id")
            return None
        if volume < 0:
            logger.debug(f"Ignoring negative volume {volume} for {market_id}")
            return None

        entry = VolumeDataEntry(
            timestamp=parse_timestamp(timestamp) if timestamp is not None else utc_now(),
            volume=float(volume),
            trade_count=trade_count,
            price=price,
        )

        buffer = self._buffers.get(market_id)
        if buffer is None:
            buffer = VolumeRingBuffer(self.config.MAX_DATA_POINTS)
            self._buffers[market_id] = buffer
        buffer.add(entry)

        self.events.emit("volume-added", market_id, entry)
        self._check_for_breach(market_id, entry)
        return entry

    def add_volume_batch(self, market_id: str, entries: list[dict]) -> int:
        """
        Add several data points. Each entry is a dict with `volume` and
        optional `timestamp`, `trade_count` and `price` keys.

        Returns:
            Number of entries stored.
        """
        added = 0
        for entry in entries:
            stored = self.add_volume(
                market_id,
                entry["volume"],
                timestamp=entry.get("timestamp"),
                trade_count=entry.get("trade_count"),
                price=entry.get("price"),
            )
            if stored is not None:
                added += 1
        return added

    # ========================================================================
    # Queries
    # ========================================================================

    def get_rolling_averages(
        self,
        market_id: str,
        windows: Optional[list[RollingWindow]] = None,
        as_of: Optional[datetime] = None,
    ) -> Optional[MarketRollingAverages]:
        """
        Calculate rolling averages for a market.

        Windows not requested are filled with empty, unreliable results.

        Args:
            market_id: Market to calculate.
            windows: Windows to calculate. Defaults to the configured windows.
            as_of: End of every window. Defaults to now.

        Returns:
            MarketRollingAverages, or None when the market has no data.
        """
        buffer = self._buffers.get(market_id)
        if buffer is None or len(buffer) == 0:
            return None

        now = as_of or utc_now()
        requested = windows or self.config.WINDOWS

        results: dict[RollingWindow, RollingAverageResult] = {}
        for window in ALL_ROLLING_WINDOWS:
            start = now - window.duration
            if window in requested:
                results[window] = calculate_window_average(
                    buffer.get_in_range(start, now),
                    window,
                    start,
                    now,
                    self.config.DATA_POINT_INTERVAL_SECONDS,
                    self.config.MIN_DATA_DENSITY,
                )
            else:
                results[window] = RollingAverageResult(window=window, window_start=start, window_end=now)

        oldest = buffer.get_oldest()
        newest = buffer.get_newest()
        return MarketRollingAverages(
            market_id=market_id,
            calculated_at=now,
            window_results=results,
            oldest_data_point=oldest.timestamp if oldest else None,
            newest_data_point=newest.timestamp if newest else None,
            total_data_points=len(buffer),
            max_data_age_minutes=(now - oldest.timestamp).total_seconds() / 60 if oldest else 0.0,
        )

    def get_batch_rolling_averages(
        self,
        market_ids: list[str],
        windows: Optional[list[RollingWindow]] = None,
        as_of: Optional[datetime] = None,
    ) -> BatchRollingAveragesResult:
        """Rolling averages for several markets; markets without data land in `errors`."""
        batch = BatchRollingAveragesResult()
        for market_id in market_ids:
            try:
                result = self.get_rolling_averages(market_id, windows=windows, as_of=as_of)
            except Exception as e:
                logger.exception(f"Error calculating rolling averages for {market_id}")
                batch.errors[market_id] = str(e)
                continue
            if result is None:
                batch.errors[market_id] = "No data available"
            else:
                batch.results[market_id] = result
        return batch

    def get_summary(self, as_of: Optional[datetime] = None) -> dict:
        """
        Summarize volume across every tracked market.

        Returns:
            Dict with total/reliable market counts, average volume per window,
            the top 10 reliable markets per window, and markets whose volume
            is abnormal relative to the other markets.
        """
        market_ids = list(self._buffers)
        summary = {
            "total_markets": len(market_ids),
            "reliable_markets": 0,
            "average_volume_by_window": {},
            "top_markets_by_window": {},
            "abnormal_volume_markets": [],
        }
        if not market_ids:
            return summary

        averages = list(self.get_batch_rolling_averages(market_ids, as_of=as_of).results.values())
        threshold = self.config.BREACH_Z_SCORE_THRESHOLD

        for window in self.config.WINDOWS:
            per_market = [(a.market_id, a.window_results[window]) for a in averages]
            volumes = np.array([r.average_volume_per_minute for _, r in per_market], dtype=float)
            window_mean = float(volumes.mean()) if volumes.size else 0.0
            summary["average_volume_by_window"][window.value] = window_mean

            reliable = sorted(
                (item for item in per_market if item[1].is_reliable),
                key=lambda item: item[1].average_volume_per_minute,
                reverse=True,
            )[:10]
            summary["top_markets_by_window"][window.value] = [
                {"market_id": market_id, "average_volume_per_minute": r.average_volume_per_minute}
                for market_id, r in reliable
            ]

            if window_mean <= 0:
                continue
            window_std = float(volumes.std())
            if window_std == 0:
                continue
            for market_id, r in per_market:
                z = (r.average_volume_per_minute - window_mean) / window_std
                if abs(z) >= threshold:
                    summary["abnormal_volume_markets"].append({
                        "market_id": market_id,
                        "window": window.value,
                        "z_score": z,
                        "is_high": z > 0,
                    })

        summary["reliable_markets"] = sum(
            1 for a in averages
            if any(a.window_results[w].is_reliable for w in self.config.WINDOWS)
        )
        return summary

    def _window_result(
        self, market_id: str, window: RollingWindow, as_of: Optional[datetime] = None
    ) -> Optional[RollingAverageResult]:
        averages = self.get_rolling_averages(market_id, windows=[window], as_of=as_of)
        return averages.window_results[window] if averages else None

    def get_current_average(
        self, market_id: str, window: RollingWindow, as_of: Optional[datetime] = None
    ) -> float:
        """Average volume per minute in a window, 0.0 when untracked."""
        result = self._window_result(market_id, window, as_of)
        return result.average_volume_per_minute if result else 0.0

    def is_volume_above_threshold(
        self,
        market_id: str,
        volume: float,
        window: RollingWindow,
        multiplier: float = 2.0,
        as_of: Optional[datetime] = None,
    ) -> bool:
        """True when volume exceeds mean + multiplier * std of a reliable window."""
        result = self._window_result(market_id, window, as_of)
        if result is None or not result.is_reliable:
            return False
        return volume > result.average_volume_per_minute + multiplier * result.standard_deviation

    def is_volume_below_threshold(
        self,
        market_id: str,
        volume: float,
        window: RollingWindow,
        multiplier: float = 2.0,
        as_of: Optional[datetime] = None,
    ) -> bool:
        """True when a non-negative volume falls below mean - multiplier * std of a reliable window."""
        result = self._window_result(market_id, window, as_of)
        if result is None or not result.is_reliable:
            return False
        threshold = result.average_volume_per_minute - multiplier * result.standard_deviation
        return 0 <= volume < threshold

    def calculate_z_score(
        self,
        market_id: str,
        volume: float,
        window: RollingWindow,
        as_of: Optional[datetime] = None,
    ) -> Optional[float]:
        """
        Z-score of a volume against a window average.

        Returns:
            None when the window is unreliable, 0.0 when it has no variance.
        """
        result = self._window_result(market_id, window, as_of)
        if result is None or not result.is_reliable:
            return None
        if result.standard_deviation == 0:
            return 0.0
        return (volume - result.average_volume_per_minute) / result.standard_deviation

    # ========================================================================
    # Housekeeping
    # ========================================================================

    def get_tracked_markets(self) -> list[str]:
        return list(self._buffers)

    def is_tracking_market(self, market_id: str) -> bool:
        return market_id in self._buffers

    def get_data_point_count(self, market_id: str) -> int:
        buffer = self._buffers.get(market_id)
        return len(buffer) if buffer else 0

    def clear_market(self, market_id: str) -> bool:
        """Drop all data for a market. Returns False if it was not tracked."""
        existed = self._buffers.pop(market_id, None) is not None
        self._recent_averages.pop(market_id, None)
        if existed:
            self.events.emit("data-cleared", market_id)
        return existed

    def clear_all(self) -> None:
        market_ids = list(self._buffers)
        self._buffers.clear()
        self._recent_averages.clear()
        for market_id in market_ids:
            self.events.emit("data-cleared", market_id)

    def get_stats(self) -> dict:
        return {
            "tracked_markets": len(self._buffers),
            "total_data_points": sum(len(b) for b in self._buffers.values()),
            "windows": [w.value for w in self.config.WINDOWS],
            "max_data_points": self.config.MAX_DATA_POINTS,
            "data_point_interval_seconds": self.config.DATA_POINT_INTERVAL_SECONDS,
            "min_data_density": self.config.MIN_DATA_DENSITY,
            "enable_events": self.config.ENABLE_EVENTS,
            "breach_z_score_threshold": self.config.BREACH_Z_SCORE_THRESHOLD,
        }

    def export_market_data(self, market_id: str) -> list[VolumeDataEntry]:
        buffer = self._buffers.get(market_id)
        return buffer.get_all() if buffer else []

    def import_market_data(self, market_id: str, entries: list[VolumeDataEntry]) -> None:
        """Replace a market's data with the given entries, oldest first."""
        self.clear_market(market_id)
        for entry in sorted(entries, key=lambda e: e.timestamp):
            self.add_volume(
                market_id,
                entry.volume,
                timestamp=entry.timestamp,
                trade_count=entry.trade_count,
                price=entry.price,
            )

    def _check_for_breach(self, market_id: str, entry: VolumeDataEntry) -> None:
        if not self.events.enabled:
            return

        previous = self._recent_averages.setdefault(market_id, {})
        for window in self.config.WINDOWS:
            result = self._window_result(market_id, window, as_of=entry.timestamp)
            if result is None or not result.is_reliable:
                continue

            previous_avg = previous.get(window)
            previous[window] = result.average_volume_per_minute
            if previous_avg is None or result.standard_deviation == 0:
                continue

            z = (entry.volume - result.average_volume_per_minute) / result.standard_deviation
            if abs(z) < self.config.BREACH_Z_SCORE_THRESHOLD:
                continue

            direction = 1 if z > 0 else -1
            breach = VolumeThresholdBreach(
                market_id=market_id,
                window=window,
                current_volume=entry.volume,
                threshold=result.average_volume_per_minute
                + direction * self.config.BREACH_Z_SCORE_THRESHOLD * result.standard_deviation,
                is_high=z > 0,
                z_score=z,
                timestamp=entry.timestamp,
            )
            logger.info(
                f"Volume breach on {market_id} ({window.value}): z={z:.2f}, volume={entry.volume}"
            )
            self.events.emit("threshold-breach", breach)


# ============================================================================
# Shared instance
# ============================================================================

_shared = SharedInstance(
    lambda: RollingVolumeTracker(RollingVolumeConfig.from_settings()),
    on_reset=lambda tracker: tracker.clear_all(),
)


def create_rolling_volume_tracker(config: Optional[RollingVolumeConfig] = None) -> RollingVolumeTracker:
    return RollingVolumeTracker(config)


def get_shared_rolling_volume_tracker() -> RollingVolumeTracker:
    return _shared.get()


def set_shared_rolling_volume_tracker(tracker: RollingVolumeTracker) -> None:
    _shared.set(tracker)


def reset_shared_rolling_volume_tracker() -> None:
    _shared.reset()


def is_volume_anomalous(
    market_id: str,
    volume: float,
    window: RollingWindow = RollingWindow.ONE_HOUR,
    multiplier: float = 2.0,
    tracker: Optional[RollingVolumeTracker] = None,
    as_of: Optional[datetime] = None,
) -> dict:
    """
    Check whether a volume is abnormally high or low for a market.

    Returns:
        Dict with `is_anomalous`, `is_high`, `is_low` and `z_score`.
    """
    tracker = tracker or get_shared_rolling_volume_tracker()
    is_high = tracker.is_volume_above_threshold(market_id, volume, window, multiplier, as_of)
    is_low = tracker.is_volume_below_threshold(market_id, volume, window, multiplier, as_of)
    return {
        "is_anomalous": is_high or is_low,
        "is_high": is_high,
        "is_low": is_low,
        "z_score": tracker.calculate_z_score(market_id, volume, window, as_of),
    }
