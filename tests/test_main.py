"""
Tests for the command-line entry point.
"""

import json
import sys

import pytest

from polymarket_scoring.calibrator import HistoricalScoreCalibrator, OutcomeType
from polymarket_scoring.composite import SignalSource
from polymarket_scoring.main import main, print_calibration_report, print_weight_impact
from polymarket_scoring.weight_configurator import SignalWeightConfigurator


@pytest.fixture
def weights_file(tmp_path):
    configurator = SignalWeightConfigurator()
    configurator.set_signal_enabled(SignalSource.SYBIL, False)
    return configurator.save_to_file(str(tmp_path / "weights.json"))


@pytest.fixture
def calibration_file(tmp_path):
    calibrator = HistoricalScoreCalibrator()
    for i in range(60):
        outcome = OutcomeType.TRUE_POSITIVE if i % 4 else OutcomeType.FALSE_POSITIVE
        calibrator.record_outcome("0x" + f"{i:040d}", 75, outcome)
    path = tmp_path / "calibration.json"
    path.write_text(json.dumps(calibrator.export_data()), encoding="utf-8")
    return str(path)


class TestReports:
    """Tests for the report printers."""

    def test_weight_impact(self, weights_file, capsys):
        assert print_weight_impact(weights_file) == 0
        output = capsys.readouterr().out
        assert "Most impactful signals" in output
        assert "Disabled: sybil" in output

    def test_weight_impact_missing_file(self, tmp_path, capsys):
        assert print_weight_impact(str(tmp_path / "missing.json")) == 1
        assert "ERROR" in capsys.readouterr().out

    def test_calibration_report(self, calibration_file, capsys):
        assert print_calibration_report(calibration_file) == 0
        output = capsys.readouterr().out
        assert "Outcomes imported:  60" in output
        assert "70-80" in output

    def test_calibration_report_json(self, calibration_file, capsys):
        assert print_calibration_report(calibration_file, as_json=True) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["metrics"]["total_samples"] == 60
        assert "score_adjustment_curve" in report

    def test_calibration_report_bad_data(self, tmp_path, capsys):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"outcomes": "nope"}), encoding="utf-8")
        assert print_calibration_report(str(path)) == 1


class TestMain:
    """Tests for argument handling."""

    def test_presets(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["polymarket-scoring", "--presets"])
        assert main() == 0
        assert "conservative" in capsys.readouterr().out

    def test_weights_flag(self, monkeypatch, weights_file):
        monkeypatch.setattr(sys, "argv", ["polymarket-scoring", "--weights", weights_file])
        assert main() == 0

    def test_no_arguments_prints_help(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["polymarket-scoring"])
        assert main() == 0
        assert "usage" in capsys.readouterr().out.lower()
