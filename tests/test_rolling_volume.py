"""
Tests for the rolling volume tracker.
"""

from datetime import timedelta

import pytest

from polymarket_scoring.rolling_volume import (
    RollingVolumeConfig,
    RollingVolumeTracker,
    RollingWindow,
    VolumeDataEntry,
    VolumeRingBuffer,
    get_shared_rolling_volume_tracker,
    is_volume_anomalous,
)


@pytest.fixture
def tracker():
    """Tracker expecting one data point per minute."""
    return RollingVolumeTracker(RollingVolumeConfig(DATA_POINT_INTERVAL_SECONDS=60))


def fill_hour(tracker, base_time, market_id="market_1", volumes=None):
    """Add one point per minute for the hour ending at base_time."""
    volumes = volumes or [100.0] * 60
    for i, volume in enumerate(volumes):
        tracker.add_volume(market_id, volume, timestamp=base_time - timedelta(minutes=59 - i))


class TestRollingWindow:
    """Tests for window durations."""

    def test_durations(self):
        assert RollingWindow.ONE_MINUTE.minutes == 1
        assert RollingWindow.ONE_HOUR.duration == timedelta(hours=1)
        assert RollingWindow.TWENTY_FOUR_HOURS.minutes == 1440


class TestRingBuffer:
    """Tests for the bounded buffer."""

    def test_oldest_dropped_when_full(self, base_time):
        buffer = VolumeRingBuffer(3)
        for i in range(5):
            buffer.add(VolumeDataEntry(timestamp=base_time + timedelta(minutes=i), volume=i))
        assert len(buffer) == 3
        assert buffer.get_oldest().volume == 2
        assert buffer.get_newest().volume == 4

    def test_range_is_inclusive(self, base_time):
        buffer = VolumeRingBuffer(10)
        for i in range(5):
            buffer.add(VolumeDataEntry(timestamp=base_time + timedelta(minutes=i), volume=i))
        entries = buffer.get_in_range(base_time + timedelta(minutes=1), base_time + timedelta(minutes=3))
        assert [e.volume for e in entries] == [1, 2, 3]


class TestIngestion:
    """Tests for adding volume data."""

    def test_add_volume(self, tracker, base_time):
        entry = tracker.add_volume("market_1", 50, timestamp=base_time, trade_count=3)
        assert entry.volume == 50.0
        assert tracker.is_tracking_market("market_1")
        assert tracker.get_data_point_count("market_1") == 1

    def test_ignored_inputs(self, tracker, base_time):
        assert tracker.add_volume("", 10, timestamp=base_time) is None
        assert tracker.add_volume("   ", 10, timestamp=base_time) is None
        assert tracker.add_volume("market_1", -1, timestamp=base_time) is None
        assert tracker.get_tracked_markets() == []

    def test_batch(self, tracker, base_time):
        added = tracker.add_volume_batch("market_1", [
            {"volume": 10, "timestamp": base_time},
            {"volume": -5, "timestamp": base_time},
            {"volume": 20, "timestamp": base_time + timedelta(seconds=30)},
        ])
        assert added == 2

    def test_capacity(self, base_time):
        tracker = RollingVolumeTracker(RollingVolumeConfig(MAX_DATA_POINTS=5))
        for i in range(10):
            tracker.add_volume("market_1", 1, timestamp=base_time + timedelta(seconds=i))
        assert tracker.get_data_point_count("market_1") == 5

    def test_volume_added_event(self, tracker, base_time):
        received = []
        tracker.on("volume-added", lambda market_id, entry: received.append((market_id, entry.volume)))
        tracker.add_volume("market_1", 5, timestamp=base_time)
        assert received == [("market_1", 5.0)]


class TestRollingAverages:
    """Tests for window statistics."""

    def test_unknown_market(self, tracker):
        assert tracker.get_rolling_averages("missing") is None

    def test_hour_window(self, tracker, base_time):
        fill_hour(tracker, base_time)
        averages = tracker.get_rolling_averages("market_1", as_of=base_time)
        hour = averages.window_results[RollingWindow.ONE_HOUR]

        assert hour.data_point_count == 60
        assert hour.total_volume == 6000.0
        assert hour.average_volume_per_minute == 100.0
        assert hour.standard_deviation == 0.0
        assert hour.data_density == 1.0
        assert hour.is_reliable
        assert averages.total_data_points == 60

    def test_sparse_window_unreliable(self, tracker, base_time):
        for i in range(10):
            tracker.add_volume("market_1", 100, timestamp=base_time - timedelta(minutes=i))
        averages = tracker.get_rolling_averages("market_1", as_of=base_time)
        hour = averages.window_results[RollingWindow.ONE_HOUR]
        assert hour.data_point_count == 10
        assert not hour.is_reliable

    def test_unrequested_windows_are_empty(self, tracker, base_time):
        fill_hour(tracker, base_time)
        averages = tracker.get_rolling_averages(
            "market_1", windows=[RollingWindow.ONE_HOUR], as_of=base_time
        )
        assert averages.window_results[RollingWindow.FIVE_MINUTES].data_point_count == 0
        assert set(averages.window_results) == set(RollingWindow)

    def test_batch_errors(self, tracker, base_time):
        fill_hour(tracker, base_time)
        batch = tracker.get_batch_rolling_averages(["market_1", "missing"], as_of=base_time)
        assert "market_1" in batch.results
        assert batch.errors == {"missing": "No data available"}

    def test_to_dict(self, tracker, base_time):
        fill_hour(tracker, base_time)
        data = tracker.get_rolling_averages("market_1", as_of=base_time).to_dict()
        assert data["window_results"]["1h"]["total_volume"] == 6000.0
        assert data["data_health"]["total_data_points"] == 60


class TestThresholds:
    """Tests for threshold and z-score checks."""

    @pytest.fixture
    def varied(self, tracker, base_time):
        fill_hour(tracker, base_time, volumes=[90.0, 110.0] * 30)
        return tracker

    def test_z_score(self, varied, base_time):
        z = varied.calculate_z_score("market_1", 130, RollingWindow.ONE_HOUR, as_of=base_time)
        assert z == pytest.approx(3.0)

    def test_above_and_below(self, varied, base_time):
        window = RollingWindow.ONE_HOUR
        assert varied.is_volume_above_threshold("market_1", 130, window, as_of=base_time)
        assert not varied.is_volume_above_threshold("market_1", 115, window, as_of=base_time)
        assert varied.is_volume_below_threshold("market_1", 70, window, as_of=base_time)
        assert not varied.is_volume_below_threshold("market_1", 95, window, as_of=base_time)

    def test_unreliable_window_returns_none(self, tracker, base_time):
        tracker.add_volume("market_1", 100, timestamp=base_time)
        assert tracker.calculate_z_score("market_1", 500, RollingWindow.ONE_HOUR, as_of=base_time) is None
        assert not tracker.is_volume_above_threshold("market_1", 500, RollingWindow.ONE_HOUR, as_of=base_time)

    def test_is_volume_anomalous(self, varied, base_time):
        result = is_volume_anomalous("market_1", 130, tracker=varied, as_of=base_time)
        assert result["is_anomalous"]
        assert result["is_high"]
        assert not result["is_low"]

    def test_breach_event(self, varied, base_time):
        breaches = []
        varied.on("threshold-breach", breaches.append)
        varied.add_volume("market_1", 1000, timestamp=base_time + timedelta(minutes=1))
        assert any(b.window == RollingWindow.ONE_HOUR and b.is_high for b in breaches)


class TestHousekeeping:
    """Tests for clearing, export and import."""

    def test_clear_market(self, tracker, base_time):
        cleared = []
        tracker.on("data-cleared", cleared.append)
        tracker.add_volume("market_1", 1, timestamp=base_time)
        assert tracker.clear_market("market_1")
        assert not tracker.clear_market("market_1")
        assert cleared == ["market_1"]

    def test_export_import(self, tracker, base_time):
        fill_hour(tracker, base_time)
        exported = tracker.export_market_data("market_1")
        other = RollingVolumeTracker(RollingVolumeConfig(DATA_POINT_INTERVAL_SECONDS=60))
        other.import_market_data("market_2", exported)
        assert other.get_data_point_count("market_2") == 60

    def test_stats(self, tracker, base_time):
        fill_hour(tracker, base_time)
        stats = tracker.get_stats()
        assert stats["tracked_markets"] == 1
        assert stats["total_data_points"] == 60

    def test_summary(self, tracker, base_time):
        fill_hour(tracker, base_time, "market_1")
        fill_hour(tracker, base_time, "market_2", volumes=[300.0] * 60)
        summary = tracker.get_summary(as_of=base_time)
        assert summary["total_markets"] == 2
        assert summary["reliable_markets"] == 2
        assert summary["top_markets_by_window"]["1h"][0]["market_id"] == "market_2"

    def test_shared_instance_is_reused(self):
        assert get_shared_rolling_volume_tracker() is get_shared_rolling_volume_tracker()
