"""
Pydantic models for the inputs consumed by the scoring engines.

Trades, predictions and market snapshots arrive already normalized by the
ingestion layer. Field aliases follow the camelCase names used by the API
layer; `populate_by_name` lets Python callers use snake_case keywords.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils import parse_timestamp


class TradeSide(str, Enum):
    """Side of a trade."""
    BUY = "buy"
    SELL = "sell"


class PredictionOutcome(str, Enum):
    """Resolution state of a tracked prediction."""
    PENDING = "pending"
    CORRECT = "correct"
    INCORRECT = "incorrect"
    CANCELLED = "cancelled"


class ConvictionLevel(str, Enum):
    """Confidence level behind a prediction, used to weight accuracy."""
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class ScoringModel(BaseModel):
    """Base for engine inputs and results; timestamps are stored as naive UTC."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    @field_validator("*", mode="after")
    @classmethod
    def normalize_timestamps(cls, value):
        if isinstance(value, datetime):
            return parse_timestamp(value)
        return value


# ============================================================================
# Trades
# ============================================================================

class ClusterTrade(ScoringModel):
    """A single trade considered by the volume clustering analyzer."""

    trade_id: str = Field(alias="tradeId")
    market_id: str = Field(alias="marketId")
    wallet_address: str = Field(alias="walletAddress")
    size_usd: float = Field(alias="sizeUsd")
    timestamp: datetime
    side: TradeSide
    price: Optional[float] = None


class PatternTrade(ScoringModel):
    """A wallet trade used for pattern classification."""

    trade_id: str = Field(alias="tradeId")
    market_id: str = Field(alias="marketId")
    market_category: Optional[str] = Field(default=None, alias="marketCategory")
    side: TradeSide
    size_usd: float = Field(alias="sizeUsd")
    price: float = 0.5
    timestamp: Optional[datetime] = None
    is_winner: Optional[bool] = Field(default=None, alias="isWinner")
    pnl: Optional[float] = None
    is_maker: Optional[bool] = Field(default=None, alias="isMaker")
    flags: list[str] = []
    time_to_resolution_hours: Optional[float] = Field(
        default=None, alias="timeToResolutionHours"
    )


# ============================================================================
# Predictions
# ============================================================================

class TrackedPrediction(ScoringModel):
    """A prediction whose outcome is tracked for accuracy scoring."""

    prediction_id: str = Field(alias="predictionId")
    wallet_address: str = Field(alias="walletAddress")
    market_id: str = Field(alias="marketId")
    market_category: Optional[str] = Field(default=None, alias="marketCategory")
    predicted_outcome: str = Field(alias="predictedOutcome")
    actual_outcome: Optional[str] = Field(default=None, alias="actualOutcome")
    outcome: PredictionOutcome = PredictionOutcome.PENDING
    position_size: float = Field(default=0.0, alias="positionSize")
    conviction: ConvictionLevel = ConvictionLevel.MEDIUM
    entry_probability: float = Field(default=0.5, ge=0.0, le=1.0, alias="entryProbability")
    prediction_timestamp: datetime = Field(alias="predictionTimestamp")
    resolution_timestamp: Optional[datetime] = Field(default=None, alias="resolutionTimestamp")
    hours_until_resolution: Optional[float] = Field(default=None, alias="hoursUntilResolution")
    realized_pnl: Optional[float] = Field(default=None, alias="realizedPnl")
    roi: Optional[float] = None

    @property
    def is_decisive(self) -> bool:
        """True once the prediction resolved as correct or incorrect."""
        return self.outcome in (PredictionOutcome.CORRECT, PredictionOutcome.INCORRECT)


# ============================================================================
# Market snapshots
# ============================================================================

class LiquiditySnapshot(ScoringModel):
    """Order book liquidity for a market at a point in time."""

    total_bid_volume_usd: float = Field(default=0.0, alias="totalBidVolumeUsd")
    total_ask_volume_usd: float = Field(default=0.0, alias="totalAskVolumeUsd")
    total_liquidity_usd: float = Field(default=0.0, alias="totalLiquidityUsd")
    best_bid: Optional[float] = Field(default=None, alias="bestBid")
    best_ask: Optional[float] = Field(default=None, alias="bestAsk")
    spread_usd: Optional[float] = Field(default=None, alias="spreadUsd")
    spread_percent: Optional[float] = Field(default=None, alias="spreadPercent")
    bid_level_count: int = Field(default=0, alias="bidLevelCount")
    ask_level_count: int = Field(default=0, alias="askLevelCount")
    bid_volume_at_1_percent: float = Field(default=0.0, alias="bidVolumeAt1Percent")
    ask_volume_at_1_percent: float = Field(default=0.0, alias="askVolumeAt1Percent")
    bid_volume_at_5_percent: float = Field(default=0.0, alias="bidVolumeAt5Percent")
    ask_volume_at_5_percent: float = Field(default=0.0, alias="askVolumeAt5Percent")
    snapshot_time: Optional[datetime] = Field(default=None, alias="snapshotTime")


class VolumeSnapshot(ScoringModel):
    """Trading volume statistics for a market."""

    volume_24h_usd: float = Field(default=0.0, alias="volume24hUsd")
    avg_daily_volume_7d_usd: float = Field(default=0.0, alias="avgDailyVolume7dUsd")
    avg_daily_volume_30d_usd: float = Field(default=0.0, alias="avgDailyVolume30dUsd")
    avg_trade_size_usd: float = Field(default=0.0, alias="avgTradeSizeUsd")
    median_trade_size_usd: float = Field(default=0.0, alias="medianTradeSizeUsd")
    p99_trade_size_usd: float = Field(default=0.0, alias="p99TradeSizeUsd")
    trade_count: int = Field(default=0, alias="tradeCount")
    data_time: Optional[datetime] = Field(default=None, alias="dataTime")
