"""
Signal Weight Configurator for Polymarket Scoring.

Holds the weights and thresholds the composite scorer combines signals
with:
- Per-signal and per-category weights with enable/disable switches
- Named presets (network, performance, behavior, insider focused, ...)
- Suspicion, flag and insider thresholds
- Validation in STRICT, NORMALIZE or NONE mode
- Weight impact analysis
- Bounded change history
- Versioned JSON export/import and optional auto-save to a file
"""

import copy
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

import numpy as np

from .composite import (
    DEFAULT_CATEGORY_WEIGHTS,
    DEFAULT_FLAG_THRESHOLD,
    DEFAULT_INSIDER_THRESHOLD,
    DEFAULT_SIGNAL_WEIGHTS,
    SIGNAL_CATEGORY_MAP,
    SIGNAL_NAMES,
    SUSPICION_THRESHOLDS,
    SignalCategory,
    SignalSource,
)
from .config import settings
from .events import EventSource, ListenerRegistry
from .shared import SharedInstance
from .utils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

CONFIG_VERSION = "1.0.0"
STRICT_TOLERANCE = 0.001
THRESHOLD_ORDER = ("low", "medium", "high", "critical")


class WeightValidationMode(Enum):
    STRICT = "strict"
    NORMALIZE = "normalize"
    NONE = "none"


class WeightPreset(Enum):
    DEFAULT = "default"
    NETWORK_FOCUSED = "network_focused"
    PERFORMANCE_FOCUSED = "performance_focused"
    BEHAVIOR_FOCUSED = "behavior_focused"
    CONSERVATIVE = "conservative"
    AGGRESSIVE = "aggressive"
    FRESH_WALLET_FOCUSED = "fresh_wallet_focused"
    INSIDER_DETECTION = "insider_detection"
    CUSTOM = "custom"


class WeightChangeType(Enum):
    SIGNAL_WEIGHT = "signal_weight"
    CATEGORY_WEIGHT = "category_weight"
    PRESET_APPLIED = "preset_applied"
    RESET = "reset"
    THRESHOLD = "threshold"
    BULK_UPDATE = "bulk_update"


# ============================================================================
# Preset tables
# ============================================================================

def _signals(*weights: float) -> dict:
    """Signal weights in SignalSource declaration order."""
    return dict(zip(SignalSource, weights))


def _categories(*weights: float) -> dict:
    """Category weights in SignalCategory declaration order."""
    return dict(zip(SignalCategory, weights))


PRESET_SIGNAL_WEIGHTS = {
    WeightPreset.DEFAULT: dict(DEFAULT_SIGNAL_WEIGHTS),
    WeightPreset.NETWORK_FOCUSED: _signals(0.05, 0.08, 0.08, 0.07, 0.05, 0.07, 0.22, 0.20, 0.08, 0.10),
    WeightPreset.PERFORMANCE_FOCUSED: _signals(0.05, 0.20, 0.20, 0.08, 0.05, 0.07, 0.08, 0.07, 0.15, 0.05),
    WeightPreset.BEHAVIOR_FOCUSED: _signals(0.05, 0.08, 0.08, 0.18, 0.15, 0.18, 0.08, 0.07, 0.08, 0.05),
    WeightPreset.CONSERVATIVE: _signals(*[0.10] * len(SignalSource)),
    WeightPreset.AGGRESSIVE: _signals(0.05, 0.15, 0.10, 0.08, 0.05, 0.07, 0.20, 0.15, 0.10, 0.05),
    WeightPreset.FRESH_WALLET_FOCUSED: _signals(0.25, 0.08, 0.08, 0.10, 0.08, 0.08, 0.10, 0.10, 0.08, 0.05),
    WeightPreset.INSIDER_DETECTION: _signals(0.08, 0.15, 0.12, 0.12, 0.08, 0.10, 0.12, 0.08, 0.10, 0.05),
    WeightPreset.CUSTOM: dict(DEFAULT_SIGNAL_WEIGHTS),
}

PRESET_CATEGORY_WEIGHTS = {
    WeightPreset.DEFAULT: dict(DEFAULT_CATEGORY_WEIGHTS),
    WeightPreset.NETWORK_FOCUSED: _categories(0.10, 0.25, 0.20, 0.45),
    WeightPreset.PERFORMANCE_FOCUSED: _categories(0.10, 0.50, 0.20, 0.20),
    WeightPreset.BEHAVIOR_FOCUSED: _categories(0.10, 0.20, 0.50, 0.20),
    WeightPreset.CONSERVATIVE: _categories(0.25, 0.25, 0.25, 0.25),
    WeightPreset.AGGRESSIVE: _categories(0.10, 0.35, 0.20, 0.35),
    WeightPreset.FRESH_WALLET_FOCUSED: _categories(0.40, 0.20, 0.20, 0.20),
    WeightPreset.INSIDER_DETECTION: _categories(0.15, 0.35, 0.25, 0.25),
    WeightPreset.CUSTOM: dict(DEFAULT_CATEGORY_WEIGHTS),
}

PRESET_DESCRIPTIONS = {
    WeightPreset.DEFAULT: "Balanced default weights for general use",
    WeightPreset.NETWORK_FOCUSED: "Emphasis on coordination and sybil detection",
    WeightPreset.PERFORMANCE_FOCUSED: "Emphasis on win rate, P&L, and accuracy",
    WeightPreset.BEHAVIOR_FOCUSED: "Emphasis on timing, sizing, and selection patterns",
    WeightPreset.CONSERVATIVE: "Equal weights for all signals and categories",
    WeightPreset.AGGRESSIVE: "Higher weights on strongest insider indicators",
    WeightPreset.FRESH_WALLET_FOCUSED: "Focus on fresh wallet detection",
    WeightPreset.INSIDER_DETECTION: "Optimized for insider trading detection",
    WeightPreset.CUSTOM: "Custom user-defined weights",
}

SIGNAL_DESCRIPTIONS = {
    SignalSource.FRESH_WALLET: "Wallet age and activity history analysis",
    SignalSource.WIN_RATE: "Historical win/loss ratio tracking",
    SignalSource.PROFIT_LOSS: "Realized and unrealized profit/loss",
    SignalSource.TIMING_PATTERN: "Trade timing patterns and anomalies",
    SignalSource.POSITION_SIZING: "Position sizing behavior analysis",
    SignalSource.MARKET_SELECTION: "Market preference and selection patterns",
    SignalSource.COORDINATION: "Coordinated trading detection",
    SignalSource.SYBIL: "Sybil attack and multi-wallet pattern detection",
    SignalSource.ACCURACY: "Historical prediction accuracy scoring",
    SignalSource.TRADING_PATTERN: "Overall trading pattern classification",
}

CATEGORY_DESCRIPTIONS = {
    SignalCategory.WALLET_PROFILE: "Wallet characteristics and history",
    SignalCategory.PERFORMANCE: "Trading performance metrics",
    SignalCategory.BEHAVIOR: "Behavioral patterns and preferences",
    SignalCategory.NETWORK: "Network and coordination patterns",
}

for _preset in WeightPreset:
    if _preset not in PRESET_DESCRIPTIONS:
        raise ValueError(f"Preset {_preset} has no description")
    _signal_table = PRESET_SIGNAL_WEIGHTS.get(_preset, {})
    _category_table = PRESET_CATEGORY_WEIGHTS.get(_preset, {})
    if set(_signal_table) != set(SignalSource) or set(_category_table) != set(SignalCategory):
        raise ValueError(f"Preset {_preset} does not cover every signal and category")
    if abs(sum(_signal_table.values()) - 1.0) > 1e-6 or abs(sum(_category_table.values()) - 1.0) > 1e-6:
        raise ValueError(f"Preset {_preset} weights do not sum to 1.0")
for _source in SignalSource:
    if _source not in SIGNAL_DESCRIPTIONS:
        raise ValueError(f"Signal source {_source} has no description")
for _category in SignalCategory:
    if _category not in CATEGORY_DESCRIPTIONS:
        raise ValueError(f"Signal category {_category} has no description")


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class WeightConfiguratorConfig:
    """Configurator behavior."""

    INITIAL_PRESET: WeightPreset = WeightPreset.DEFAULT
    VALIDATION_MODE: WeightValidationMode = WeightValidationMode.NORMALIZE
    AUTO_SAVE: bool = False
    SETTINGS_PATH: Optional[str] = None
    MAX_HISTORY_ENTRIES: int = 100
    ENABLE_EVENTS: bool = True

    @classmethod
    def from_settings(cls) -> "WeightConfiguratorConfig":
        try:
            preset = WeightPreset(settings.default_weight_preset.lower())
        except ValueError:
            logger.warning(f"Unknown weight preset '{settings.default_weight_preset}', using default")
            preset = WeightPreset.DEFAULT
        try:
            mode = WeightValidationMode(settings.weight_validation_mode.lower())
        except ValueError:
            logger.warning(f"Unknown validation mode '{settings.weight_validation_mode}', using normalize")
            mode = WeightValidationMode.NORMALIZE
        return cls(
            INITIAL_PRESET=preset,
            VALIDATION_MODE=mode,
            AUTO_SAVE=settings.weight_config_path is not None,
            SETTINGS_PATH=settings.weight_config_path,
            ENABLE_EVENTS=settings.enable_events,
        )


@dataclass
class SignalWeight:
    source: SignalSource
    category: SignalCategory
    weight: float
    enabled: bool = True
    description: str = ""
    min_weight: Optional[float] = None
    max_weight: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "source": self.source.value,
            "category": self.category.value,
            "weight": self.weight,
            "enabled": self.enabled,
            "description": self.description,
            "min_weight": self.min_weight,
            "max_weight": self.max_weight,
        }


@dataclass
class CategoryWeight:
    category: SignalCategory
    weight: float
    enabled: bool = True
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "weight": self.weight,
            "enabled": self.enabled,
            "description": self.description,
        }


@dataclass
class SignalWeightConfig:
    """Complete weight configuration."""
    signal_weights: dict            # SignalSource -> SignalWeight
    category_weights: dict          # SignalCategory -> CategoryWeight
    thresholds: dict = field(default_factory=lambda: dict(SUSPICION_THRESHOLDS))
    flag_threshold: float = DEFAULT_FLAG_THRESHOLD
    insider_threshold: float = DEFAULT_INSIDER_THRESHOLD
    validation_mode: WeightValidationMode = WeightValidationMode.NORMALIZE
    preset: WeightPreset = WeightPreset.DEFAULT
    name: str = "default"
    last_modified: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "preset": self.preset.value,
            "validation_mode": self.validation_mode.value,
            "signal_weights": {s.value: w.to_dict() for s, w in self.signal_weights.items()},
            "category_weights": {c.value: w.to_dict() for c, w in self.category_weights.items()},
            "thresholds": dict(self.thresholds),
            "flag_threshold": self.flag_threshold,
            "insider_threshold": self.insider_threshold,
            "last_modified": self.last_modified.isoformat(),
        }


@dataclass
class WeightChange:
    id: str
    type: WeightChangeType
    timestamp: datetime
    previous_value: object
    new_value: object
    description: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "previous_value": self.previous_value,
            "new_value": self.new_value,
            "description": self.description,
        }


@dataclass
class WeightValidationResult:
    is_valid: bool
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    signal_weight_sum: float = 0.0
    category_weight_sum: float = 0.0
    normalized_weights: dict = field(default_factory=dict)   # SignalSource -> float

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "signal_weight_sum": self.signal_weight_sum,
            "category_weight_sum": self.category_weight_sum,
            "normalized_weights": {s.value: w for s, w in self.normalized_weights.items()},
        }


@dataclass
class WeightImpactAnalysis:
    most_impactful_signals: list      # [{source, name, category, effective_weight}]
    category_impact: dict             # SignalCategory -> share of the composite
    disabled_signals: list
    zero_weight_signals: list
    balance_std: float
    balance_ratio: float
    balance_assessment: str

    def to_dict(self) -> dict:
        return {
            "most_impactful_signals": [
                {**s, "source": s["source"].value, "category": s["category"].value}
                for s in self.most_impactful_signals
            ],
            "category_impact": {c.value: v for c, v in self.category_impact.items()},
            "disabled_signals": [s.value for s in self.disabled_signals],
            "zero_weight_signals": [s.value for s in self.zero_weight_signals],
            "balance": {
                "std": self.balance_std,
                "ratio": self.balance_ratio,
                "assessment": self.balance_assessment,
            },
        }


def build_preset_config(
    preset: WeightPreset,
    validation_mode: WeightValidationMode = WeightValidationMode.NORMALIZE,
) -> SignalWeightConfig:
    """Fresh configuration holding a preset's weights and default thresholds."""
    return SignalWeightConfig(
        signal_weights={
            source: SignalWeight(
                source=source,
                category=SIGNAL_CATEGORY_MAP[source],
                weight=weight,
                description=SIGNAL_DESCRIPTIONS[source],
            )
            for source, weight in PRESET_SIGNAL_WEIGHTS[preset].items()
        },
        category_weights={
            category: CategoryWeight(
                category=category,
                weight=weight,
                description=CATEGORY_DESCRIPTIONS[category],
            )
            for category, weight in PRESET_CATEGORY_WEIGHTS[preset].items()
        },
        validation_mode=validation_mode,
        preset=preset,
        name=preset.value,
    )


def _threshold_order_errors(thresholds: dict) -> list[str]:
    errors = []
    for lower, upper in zip(THRESHOLD_ORDER, THRESHOLD_ORDER[1:]):
        if thresholds[lower] >= thresholds[upper]:
            errors.append(f"Threshold '{lower}' ({thresholds[lower]}) must be below '{upper}' ({thresholds[upper]})")
    return errors


def _weight_error(label: str, weight: float, min_weight=None, max_weight=None) -> Optional[str]:
    if not isinstance(weight, (int, float)) or not 0.0 <= weight <= 1.0:
        return f"Weight for {label} must be between 0 and 1, got {weight}"
    if min_weight is not None and weight < min_weight:
        return f"Weight for {label} must be at least {min_weight}, got {weight}"
    if max_weight is not None and weight > max_weight:
        return f"Weight for {label} must be at most {max_weight}, got {weight}"
    return None


def _section(data: dict, key: str) -> dict:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"'{key}' must be an object")
    return value


def _parse_enabled(value, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValueError(f"'enabled' for '{name}' must be a boolean")


def _parse_bound(value, name: str, label: str) -> Optional[float]:
    if value is None:
        return None
    bound = float(value)
    if not 0 <= bound <= 1:
        raise ValueError(f"{label} for '{name}' must be between 0 and 1")
    return bound


def _parse_config(data: dict) -> SignalWeightConfig:
    """
    Build a SignalWeightConfig from an exported dict.

    Raises:
        ValueError: If a section has the wrong shape, a source or category
            is missing, or a value is invalid.
    """
    if not isinstance(data, dict):
        raise ValueError("'config' must be an object")
    signal_data = _section(data, "signal_weights")
    category_data = _section(data, "category_weights")
    threshold_data = _section(data, "thresholds")

    signal_weights = {}
    for source in SignalSource:
        entry = signal_data.get(source.value)
        if not isinstance(entry, dict):
            raise ValueError(f"Missing weight for signal '{source.value}'")
        min_weight = _parse_bound(entry.get("min_weight"), source.value, "min_weight")
        max_weight = _parse_bound(entry.get("max_weight"), source.value, "max_weight")
        if min_weight is not None and max_weight is not None and min_weight > max_weight:
            raise ValueError(f"min_weight exceeds max_weight for '{source.value}'")
        signal_weights[source] = SignalWeight(
            source=source,
            category=SIGNAL_CATEGORY_MAP[source],
            weight=float(entry.get("weight", 0.0)),
            enabled=_parse_enabled(entry.get("enabled", True), source.value),
            description=entry.get("description") or SIGNAL_DESCRIPTIONS[source],
            min_weight=min_weight,
            max_weight=max_weight,
        )
        error = _weight_error(source.value, signal_weights[source].weight, min_weight, max_weight)
        if error:
            raise ValueError(error)

    category_weights = {}
    for category in SignalCategory:
        entry = category_data.get(category.value)
        if not isinstance(entry, dict):
            raise ValueError(f"Missing weight for category '{category.value}'")
        category_weights[category] = CategoryWeight(
            category=category,
            weight=float(entry.get("weight", 0.0)),
            enabled=_parse_enabled(entry.get("enabled", True), category.value),
            description=entry.get("description") or CATEGORY_DESCRIPTIONS[category],
        )
        error = _weight_error(category.value, category_weights[category].weight)
        if error:
            raise ValueError(error)

    thresholds = dict(SUSPICION_THRESHOLDS)
    thresholds.update({k: float(v) for k, v in threshold_data.items() if k in thresholds})
    errors = _threshold_order_errors(thresholds)
    if errors:
        raise ValueError("; ".join(errors))

    return SignalWeightConfig(
        signal_weights=signal_weights,
        category_weights=category_weights,
        thresholds=thresholds,
        flag_threshold=float(data.get("flag_threshold", DEFAULT_FLAG_THRESHOLD)),
        insider_threshold=float(data.get("insider_threshold", DEFAULT_INSIDER_THRESHOLD)),
        validation_mode=WeightValidationMode(data.get("validation_mode", "normalize")),
        preset=WeightPreset(data.get("preset", "custom")),
        name=data.get("name", "imported"),
        last_modified=parse_timestamp(data.get("last_modified"), default=utc_now()),
    )


# ============================================================================
# Configurator
# ============================================================================

class SignalWeightConfigurator(EventSource):
    """
    Mutable weight configuration with an audit trail.

    Events:
        weight-changed(kind, key, previous, new)
        weights-bulk-changed(kind, {key: weight})
        signal-toggled(SignalSource, enabled)
        category-toggled(SignalCategory, enabled)
        preset-applied(WeightPreset)
        thresholds-changed(thresholds)
        flag-thresholds-changed(flag_threshold, insider_threshold)
        config-reset()
        config-imported(SignalWeightConfig)
        validation-mode-changed(WeightValidationMode)
    """

    EVENTS = (
        "weight-changed",
        "weights-bulk-changed",
        "signal-toggled",
        "category-toggled",
        "preset-applied",
        "thresholds-changed",
        "flag-thresholds-changed",
        "config-reset",
        "config-imported",
        "validation-mode-changed",
    )

    def __init__(self, config: Optional[WeightConfiguratorConfig] = None):
        """
        Initialize the configurator.

        Loads SETTINGS_PATH when AUTO_SAVE is on and the file exists.

        Args:
            config: Configurator behavior. Defaults to WeightConfiguratorConfig().
        """
        self.config = config or WeightConfiguratorConfig()
        self.events = ListenerRegistry(self.EVENTS, enabled=self.config.ENABLE_EVENTS)
        self._weights = build_preset_config(self.config.INITIAL_PRESET, self.config.VALIDATION_MODE)
        self._history: deque = deque(maxlen=self.config.MAX_HISTORY_ENTRIES)
        self._change_counter = 0

        if self.config.AUTO_SAVE and self.config.SETTINGS_PATH and Path(self.config.SETTINGS_PATH).exists():
            self.load_from_file(self.config.SETTINGS_PATH)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(
        self,
        change_type: WeightChangeType,
        previous_value,
        new_value,
        description: str,
        mark_custom: bool = True,
    ) -> None:
        self._change_counter += 1
        now = utc_now()
        self._history.append(WeightChange(
            id=f"change_{self._change_counter}",
            type=change_type,
            timestamp=now,
            previous_value=previous_value,
            new_value=new_value,
            description=description,
        ))
        self._weights.last_modified = now
        if mark_custom:
            self._weights.preset = WeightPreset.CUSTOM
        if self.config.AUTO_SAVE and self.config.SETTINGS_PATH:
            self.save_to_file(self.config.SETTINGS_PATH)

    def _invalid(self, errors: list[str]) -> WeightValidationResult:
        for error in errors:
            logger.warning(f"Rejected weight change: {error}")
        current = self.validate()
        return WeightValidationResult(
            is_valid=False,
            errors=errors,
            warnings=current.warnings,
            signal_weight_sum=current.signal_weight_sum,
            category_weight_sum=current.category_weight_sum,
            normalized_weights=current.normalized_weights,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_config(self) -> SignalWeightConfig:
        return copy.deepcopy(self._weights)

    def get_signal_weight(self, source: SignalSource) -> SignalWeight:
        return copy.deepcopy(self._weights.signal_weights[source])

    def get_category_weight(self, category: SignalCategory) -> CategoryWeight:
        return copy.deepcopy(self._weights.category_weights[category])

    def get_thresholds(self) -> dict:
        return dict(self._weights.thresholds)

    def get_effective_weights(self) -> dict:
        """
        Enabled signal weights renormalized to sum to 1.0.

        Signals in a disabled category count as disabled. Returns an empty
        dict when no enabled signal carries weight.
        """
        categories = self._weights.category_weights
        enabled = {
            source: sw.weight
            for source, sw in self._weights.signal_weights.items()
            if sw.enabled and categories[sw.category].enabled
        }
        total = sum(enabled.values())
        if total <= 0:
            return {}
        return {source: weight / total for source, weight in enabled.items()}

    def get_effective_category_weights(self) -> dict:
        enabled = {c: cw.weight for c, cw in self._weights.category_weights.items() if cw.enabled}
        total = sum(enabled.values())
        if total <= 0:
            return {}
        return {category: weight / total for category, weight in enabled.items()}

    def get_signals_by_category(self, category: SignalCategory) -> list[SignalWeight]:
        return [
            copy.deepcopy(sw) for sw in self._weights.signal_weights.values()
            if sw.category == category
        ]

    @staticmethod
    def get_available_presets() -> list[dict]:
        return [
            {
                "preset": preset.value,
                "description": PRESET_DESCRIPTIONS[preset],
                "signal_weights": {s.value: w for s, w in PRESET_SIGNAL_WEIGHTS[preset].items()},
                "category_weights": {c.value: w for c, w in PRESET_CATEGORY_WEIGHTS[preset].items()},
            }
            for preset in WeightPreset
        ]

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    def set_signal_weight(self, source: SignalSource, weight: float) -> WeightValidationResult:
        """
        Set one signal's weight.

        Out-of-range weights leave the configuration unchanged.

        Args:
            source: Signal to update.
            weight: New weight in [0, 1].

        Returns:
            Validation of the resulting configuration.
        """
        signal = self._weights.signal_weights[source]
        error = _weight_error(source.value, weight, signal.min_weight, signal.max_weight)
        if error:
            return self._invalid([error])

        previous = signal.weight
        signal.weight = float(weight)
        self._record(
            WeightChangeType.SIGNAL_WEIGHT, previous, signal.weight,
            f"{SIGNAL_NAMES[source]} weight {previous:.3f} -> {signal.weight:.3f}",
        )
        self.events.emit("weight-changed", "signal", source, previous, signal.weight)
        return self.validate()

    def set_category_weight(self, category: SignalCategory, weight: float) -> WeightValidationResult:
        error = _weight_error(category.value, weight)
        if error:
            return self._invalid([error])

        entry = self._weights.category_weights[category]
        previous = entry.weight
        entry.weight = float(weight)
        self._record(
            WeightChangeType.CATEGORY_WEIGHT, previous, entry.weight,
            f"{category.value} category weight {previous:.3f} -> {entry.weight:.3f}",
        )
        self.events.emit("weight-changed", "category", category, previous, entry.weight)
        return self.validate()

    def set_signal_weights(self, weights: dict) -> WeightValidationResult:
        """Set several signal weights at once; nothing changes if any is invalid."""
        errors = []
        for source, weight in weights.items():
            signal = self._weights.signal_weights[source]
            error = _weight_error(source.value, weight, signal.min_weight, signal.max_weight)
            if error:
                errors.append(error)
        if errors:
            return self._invalid(errors)

        previous = {s.value: self._weights.signal_weights[s].weight for s in weights}
        for source, weight in weights.items():
            self._weights.signal_weights[source].weight = float(weight)
        self._record(
            WeightChangeType.BULK_UPDATE, previous, {s.value: float(w) for s, w in weights.items()},
            f"Updated {len(weights)} signal weights",
        )
        self.events.emit("weights-bulk-changed", "signal", dict(weights))
        return self.validate()

    def set_category_weights(self, weights: dict) -> WeightValidationResult:
        errors = [e for e in (_weight_error(c.value, w) for c, w in weights.items()) if e]
        if errors:
            return self._invalid(errors)

        previous = {c.value: self._weights.category_weights[c].weight for c in weights}
        for category, weight in weights.items():
            self._weights.category_weights[category].weight = float(weight)
        self._record(
            WeightChangeType.BULK_UPDATE, previous, {c.value: float(w) for c, w in weights.items()},
            f"Updated {len(weights)} category weights",
        )
        self.events.emit("weights-bulk-changed", "category", dict(weights))
        return self.validate()

    def set_signal_enabled(self, source: SignalSource, enabled: bool) -> WeightValidationResult:
        signal = self._weights.signal_weights[source]
        previous = signal.enabled
        signal.enabled = bool(enabled)
        self._record(
            WeightChangeType.SIGNAL_WEIGHT, previous, signal.enabled,
            f"{SIGNAL_NAMES[source]} {'enabled' if enabled else 'disabled'}",
        )
        self.events.emit("signal-toggled", source, signal.enabled)
        return self.validate()

    def set_category_enabled(self, category: SignalCategory, enabled: bool) -> WeightValidationResult:
        entry = self._weights.category_weights[category]
        previous = entry.enabled
        entry.enabled = bool(enabled)
        self._record(
            WeightChangeType.CATEGORY_WEIGHT, previous, entry.enabled,
            f"{category.value} category {'enabled' if enabled else 'disabled'}",
        )
        self.events.emit("category-toggled", category, entry.enabled)
        return self.validate()

    def apply_preset(self, preset: WeightPreset) -> WeightValidationResult:
        """Replace all weights with a preset; thresholds are kept."""
        previous = self._weights.preset
        fresh = build_preset_config(preset, self._weights.validation_mode)
        self._weights.signal_weights = fresh.signal_weights
        self._weights.category_weights = fresh.category_weights
        self._weights.preset = preset
        self._weights.name = fresh.name
        self._record(
            WeightChangeType.PRESET_APPLIED, previous.value, preset.value,
            f"Applied preset {preset.value}", mark_custom=False,
        )
        logger.info(f"Applied weight preset {preset.value}")
        self.events.emit("preset-applied", preset)
        return self.validate()

    def set_thresholds(
        self,
        low: Optional[float] = None,
        medium: Optional[float] = None,
        high: Optional[float] = None,
        critical: Optional[float] = None,
    ) -> WeightValidationResult:
        """Update suspicion thresholds; they must stay ordered low < medium < high < critical."""
        updated = dict(self._weights.thresholds)
        for key, value in (("low", low), ("medium", medium), ("high", high), ("critical", critical)):
            if value is not None:
                updated[key] = float(value)

        errors = [
            f"Threshold '{k}' must be between 0 and 100, got {v}"
            for k, v in updated.items() if not 0.0 <= v <= 100.0
        ]
        errors.extend(_threshold_order_errors(updated))
        if errors:
            return self._invalid(errors)

        previous = dict(self._weights.thresholds)
        self._weights.thresholds = updated
        self._record(
            WeightChangeType.THRESHOLD, previous, dict(updated),
            "Updated suspicion thresholds", mark_custom=False,
        )
        self.events.emit("thresholds-changed", dict(updated))
        return self.validate()

    def set_flag_thresholds(
        self,
        flag_threshold: Optional[float] = None,
        insider_threshold: Optional[float] = None,
    ) -> None:
        previous = {
            "flag_threshold": self._weights.flag_threshold,
            "insider_threshold": self._weights.insider_threshold,
        }
        if flag_threshold is not None:
            self._weights.flag_threshold = max(0.0, min(100.0, float(flag_threshold)))
        if insider_threshold is not None:
            self._weights.insider_threshold = max(0.0, min(100.0, float(insider_threshold)))
        current = {
            "flag_threshold": self._weights.flag_threshold,
            "insider_threshold": self._weights.insider_threshold,
        }
        self._record(
            WeightChangeType.THRESHOLD, previous, current,
            "Updated flag thresholds", mark_custom=False,
        )
        self.events.emit("flag-thresholds-changed", self._weights.flag_threshold, self._weights.insider_threshold)

    def set_validation_mode(self, mode: WeightValidationMode) -> WeightValidationResult:
        self._weights.validation_mode = mode
        self.events.emit("validation-mode-changed", mode)
        return self.validate()

    def reset(self) -> WeightValidationResult:
        """Restore the DEFAULT preset and default thresholds."""
        previous = self._weights.preset
        self._weights = build_preset_config(WeightPreset.DEFAULT, self._weights.validation_mode)
        self._record(
            WeightChangeType.RESET, previous.value, WeightPreset.DEFAULT.value,
            "Reset to default configuration", mark_custom=False,
        )
        logger.info("Weight configuration reset to defaults")
        self.events.emit("config-reset")
        return self.validate()

    # ------------------------------------------------------------------
    # Validation and analysis
    # ------------------------------------------------------------------

    def validate(self) -> WeightValidationResult:
        """
        Validate the current configuration.

        STRICT requires the raw enabled weights to sum to 1.0; NORMALIZE and
        NONE only fail on a zero sum. Threshold order is always checked.
        """
        errors = []
        warnings = []
        mode = self._weights.validation_mode

        categories = self._weights.category_weights
        enabled_signals = [
            sw for sw in self._weights.signal_weights.values()
            if sw.enabled and categories[sw.category].enabled
        ]
        enabled_categories = [cw for cw in categories.values() if cw.enabled]
        signal_sum = sum(sw.weight for sw in enabled_signals)
        category_sum = sum(cw.weight for cw in enabled_categories)

        if signal_sum <= 0:
            errors.append("No enabled signal has a positive weight")
        elif mode == WeightValidationMode.STRICT and abs(signal_sum - 1.0) > STRICT_TOLERANCE:
            errors.append(f"Signal weights sum to {signal_sum:.4f}, expected 1.0")

        if category_sum <= 0:
            errors.append("No enabled category has a positive weight")
        elif mode == WeightValidationMode.STRICT and abs(category_sum - 1.0) > STRICT_TOLERANCE:
            errors.append(f"Category weights sum to {category_sum:.4f}, expected 1.0")

        errors.extend(_threshold_order_errors(self._weights.thresholds))

        for sw in self._weights.signal_weights.values():
            if not sw.enabled:
                warnings.append(f"Signal '{sw.source.value}' is disabled")
            elif sw.weight == 0:
                warnings.append(f"Signal '{sw.source.value}' is enabled with zero weight")
        for cw in categories.values():
            if not cw.enabled:
                warnings.append(f"Category '{cw.category.value}' is disabled")

        return WeightValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            signal_weight_sum=signal_sum,
            category_weight_sum=category_sum,
            normalized_weights=self.get_effective_weights(),
        )

    def analyze_weight_impact(self) -> WeightImpactAnalysis:
        """Rank signals by effective weight and assess how balanced they are."""
        effective = self.get_effective_weights()
        ranked = sorted(effective.items(), key=lambda item: item[1], reverse=True)

        category_impact = {category: 0.0 for category in SignalCategory}
        for source, weight in effective.items():
            category_impact[SIGNAL_CATEGORY_MAP[source]] += weight

        disabled = [s for s, sw in self._weights.signal_weights.items() if not sw.enabled]
        zero_weight = [s for s, sw in self._weights.signal_weights.items() if sw.enabled and sw.weight == 0]

        values = np.array(list(effective.values()), dtype=float)
        positive = values[values > 0]
        std = float(np.std(values)) if values.size else 0.0
        ratio = float(positive.max() / positive.min()) if positive.size else 1.0

        if std < 0.03 and ratio < 2:
            assessment = "balanced"
        elif std < 0.08 and ratio < 5:
            assessment = "skewed"
        else:
            assessment = "extreme"

        return WeightImpactAnalysis(
            most_impactful_signals=[
                {
                    "source": source,
                    "name": SIGNAL_NAMES[source],
                    "category": SIGNAL_CATEGORY_MAP[source],
                    "effective_weight": weight,
                }
                for source, weight in ranked[:5]
            ],
            category_impact=category_impact,
            disabled_signals=disabled,
            zero_weight_signals=zero_weight,
            balance_std=std,
            balance_ratio=ratio,
            balance_assessment=assessment,
        )

    # ------------------------------------------------------------------
    # History and summary
    # ------------------------------------------------------------------

    def get_history(self, limit: Optional[int] = None) -> list[WeightChange]:
        history = list(self._history)
        if limit is not None:
            history = history[-limit:]
        return copy.deepcopy(history)

    def get_recent_history(self, count: int = 10) -> list[WeightChange]:
        """Most recent changes, newest first."""
        return copy.deepcopy(list(reversed(self._history))[:count])

    def clear_history(self) -> None:
        self._history.clear()

    def get_summary(self) -> dict:
        signals = self._weights.signal_weights
        categories = self._weights.category_weights
        return {
            "config_name": self._weights.name,
            "current_preset": self._weights.preset.value,
            "active_signals": sum(1 for sw in signals.values() if sw.enabled),
            "total_signals": len(signals),
            "active_categories": sum(1 for cw in categories.values() if cw.enabled),
            "total_categories": len(categories),
            "validation_mode": self._weights.validation_mode.value,
            "is_valid": self.validate().is_valid,
            "last_modified": self._weights.last_modified.isoformat(),
            "history_count": len(self._history),
        }

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_config(self) -> str:
        """Serialize the configuration to versioned JSON."""
        return json.dumps(
            {
                "version": CONFIG_VERSION,
                "exported_at": utc_now().isoformat(),
                "config": self._weights.to_dict(),
            },
            indent=2,
        )

    def import_config(self, payload: str) -> WeightValidationResult:
        """
        Replace the configuration from export_config() JSON.

        An invalid payload leaves the configuration unchanged.
        """
        try:
            data = json.loads(payload)
            if not isinstance(data, dict):
                raise ValueError("Configuration must be a JSON object")
            imported = _parse_config(data.get("config", data))
        except (ValueError, TypeError) as e:
            return self._invalid([f"Invalid configuration: {e}"])

        if data.get("version") not in (None, CONFIG_VERSION):
            logger.warning(f"Importing weight config version {data.get('version')}, expected {CONFIG_VERSION}")

        previous = self._weights.preset
        self._weights = imported
        self._record(
            WeightChangeType.BULK_UPDATE, previous.value, imported.preset.value,
            f"Imported configuration '{imported.name}'", mark_custom=False,
        )
        self.events.emit("config-imported", copy.deepcopy(imported))
        return self.validate()

    def save_to_file(self, path: Optional[str] = None) -> str:
        """
        Write export_config() JSON to a file.

        Args:
            path: Target file. Defaults to SETTINGS_PATH.

        Returns:
            Path to the written file.
        """
        filepath = Path(path or self.config.SETTINGS_PATH)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, "w", encoding="utf-8") as f:
            f.write(self.export_config())
        logger.debug(f"Saved weight configuration to {filepath}")
        return str(filepath)

    def load_from_file(self, path: Optional[str] = None) -> WeightValidationResult:
        filepath = Path(path or self.config.SETTINGS_PATH)
        if not filepath.exists():
            return self._invalid([f"Configuration file not found: {filepath}"])
        with open(filepath, "r", encoding="utf-8") as f:
            payload = f.read()
        result = self.import_config(payload)
        if result.is_valid:
            logger.info(f"Loaded weight configuration from {filepath}")
        return result


# ============================================================================
# Shared instance
# ============================================================================

_shared = SharedInstance(lambda: SignalWeightConfigurator(WeightConfiguratorConfig.from_settings()))


def create_signal_weight_configurator(
    config: Optional[WeightConfiguratorConfig] = None,
) -> SignalWeightConfigurator:
    return SignalWeightConfigurator(config)


def get_shared_signal_weight_configurator() -> SignalWeightConfigurator:
    return _shared.get()


def set_shared_signal_weight_configurator(configurator: SignalWeightConfigurator) -> None:
    _shared.set(configurator)


def reset_shared_signal_weight_configurator() -> None:
    _shared.reset()
