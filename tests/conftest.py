"""
Shared pytest fixtures for Polymarket Scoring tests.
"""

from datetime import datetime

import pytest

from polymarket_scoring.accuracy_scorer import reset_shared_historical_accuracy_scorer
from polymarket_scoring.calibrator import reset_shared_historical_score_calibrator
from polymarket_scoring.priority_ranker import reset_shared_alert_priority_ranker
from polymarket_scoring.rolling_volume import reset_shared_rolling_volume_tracker
from polymarket_scoring.trading_pattern import reset_shared_trading_pattern_classifier
from polymarket_scoring.volume_clustering import reset_shared_volume_clustering_analyzer
from polymarket_scoring.weight_configurator import reset_shared_signal_weight_configurator
from polymarket_scoring.whale_threshold import reset_shared_whale_threshold_calculator


@pytest.fixture(autouse=True)
def reset_shared_instances():
    """Start and end every test with fresh shared engine instances."""
    resets = (
        reset_shared_rolling_volume_tracker,
        reset_shared_whale_threshold_calculator,
        reset_shared_volume_clustering_analyzer,
        reset_shared_trading_pattern_classifier,
        reset_shared_historical_accuracy_scorer,
        reset_shared_signal_weight_configurator,
        reset_shared_historical_score_calibrator,
        reset_shared_alert_priority_ranker,
    )
    for reset in resets:
        reset()
    yield
    for reset in resets:
        reset()


@pytest.fixture
def base_time():
    """Fixed naive UTC reference time."""
    return datetime(2024, 6, 1, 12, 0, 0)


