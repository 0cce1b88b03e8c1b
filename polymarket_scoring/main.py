"""
Command-line entry point for Polymarket Scoring.

Usage:
    # List the built-in weight presets
    python -m polymarket_scoring.main --presets

    # Analyze the balance of a saved weight configuration
    python -m polymarket_scoring.main --weights weights.json

    # Calibration report for an exported calibrator file
    python -m polymarket_scoring.main --calibration calibrator.json
    python -m polymarket_scoring.main --calibration calibrator.json --json
"""

import argparse
import json
import logging
import sys

from .calibrator import CalibratorConfig, HistoricalScoreCalibrator
from .config import settings
from .utils import json_dumps_safe
from .weight_configurator import SignalWeightConfigurator, WeightConfiguratorConfig

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure root logging from settings."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def print_presets() -> None:
    """Print the built-in weight presets."""
    print("\n" + "=" * 60)
    print("Signal Weight Presets")
    print("=" * 60)
    for preset in SignalWeightConfigurator.get_available_presets():
        print(f"\n  {preset['preset']}")
        print(f"    {preset['description']}")
        top = sorted(preset["signal_weights"].items(), key=lambda kv: kv[1], reverse=True)[:3]
        print("    Top signals: " + ", ".join(f"{name} {weight:.2f}" for name, weight in top))
    print()


def print_weight_impact(path: str) -> int:
    """Load a weight configuration file and print its impact analysis."""
    configurator = SignalWeightConfigurator(WeightConfiguratorConfig(AUTO_SAVE=False))
    result = configurator.load_from_file(path)
    if not result.is_valid:
        for error in result.errors:
            print(f"  ERROR: {error}")
        return 1

    impact = configurator.analyze_weight_impact()
    print("\n" + "=" * 60)
    print(f"Weight Impact: {path}")
    print("=" * 60)
    print("\nMost impactful signals:")
    print("-" * 60)
    for signal in impact.most_impactful_signals:
        print(f"  {signal['name']:<28} {signal['effective_weight'] * 100:6.2f}%")

    print("\nCategory impact:")
    print("-" * 60)
    for category, share in impact.category_impact.items():
        print(f"  {category.value:<28} {share * 100:6.2f}%")

    if impact.disabled_signals:
        print("\nDisabled: " + ", ".join(s.value for s in impact.disabled_signals))
    print(f"\nBalance: {impact.balance_assessment} "
          f"(std {impact.balance_std:.3f}, ratio {impact.balance_ratio:.2f})")
    for warning in result.warnings:
        print(f"  WARNING: {warning}")
    print()
    return 0


def print_calibration_report(path: str, as_json: bool = False) -> int:
    """Import exported calibrator data and print a calibration report."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    calibrator = HistoricalScoreCalibrator(CalibratorConfig.from_settings())
    try:
        count = calibrator.import_data(data)
    except ValueError as e:
        print(f"  ERROR: {e}")
        return 1

    result = calibrator.calculate_calibration()
    if as_json:
        print(json_dumps_safe(result.to_dict(), indent=2))
        return 0

    metrics = result.metrics
    print("\n" + "=" * 60)
    print(f"Calibration Report: {path}")
    print("=" * 60)
    print(f"  Outcomes imported:  {count:,}")
    print(f"  Known outcomes:     {metrics.known_outcome_samples:,}")
    print(f"  Quality:            {metrics.quality.value}")
    print(f"  Brier score:        {metrics.brier_score:.4f}")
    print(f"  AUC-ROC:            {metrics.auc_roc:.3f}")
    print(f"  Precision / Recall: {metrics.precision:.3f} / {metrics.recall:.3f}")
    print(f"  Optimized threshold: {result.optimized_threshold:.0f}")

    if metrics.reliability_curve:
        print("\nReliability curve:")
        print("-" * 60)
        for bucket in metrics.reliability_curve:
            if bucket.sample_count:
                print(f"  {bucket.bucket.value:>7}  n={bucket.sample_count:<6} "
                      f"actual={bucket.actual_positive_rate * 100:5.1f}%")

    if result.recommendations:
        print("\nRecommendations:")
        print("-" * 60)
        for rec in result.recommendations:
            print(f"  [{rec.priority}] {rec.description}")
    print()
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Polymarket Scoring - suspicious wallet scoring tools"
    )
    parser.add_argument(
        "--presets",
        action="store_true",
        help="List the built-in signal weight presets and exit"
    )
    parser.add_argument(
        "--weights",
        metavar="FILE",
        help="Analyze the impact of a saved weight configuration"
    )
    parser.add_argument(
        "--calibration",
        metavar="FILE",
        help="Print a calibration report for exported calibrator data"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the calibration report as JSON"
    )
    args = parser.parse_args()

    configure_logging()

    if args.presets:
        print_presets()
        return 0
    if args.weights:
        return print_weight_impact(args.weights)
    if args.calibration:
        return print_calibration_report(args.calibration, as_json=args.json)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
