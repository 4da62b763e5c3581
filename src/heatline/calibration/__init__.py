"""Calibration backtester for the temperature derivation method."""

from heatline.calibration.backtest import (
    CALIBRATION_METHODS,
    CalibrationDay,
    CalibrationRunner,
    compute_predicted_high,
    evaluate_calibration_days,
)

__all__ = [
    "CALIBRATION_METHODS",
    "CalibrationDay",
    "CalibrationRunner",
    "compute_predicted_high",
    "evaluate_calibration_days",
]
