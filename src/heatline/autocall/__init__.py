"""Autonomous verification-call decisions."""

from heatline.autocall.engine import AutoCallEngine, build_decision_key
from heatline.autocall.windows import MultiWindowPolicy, PeakTwoHourPolicy, get_policy

__all__ = ["AutoCallEngine", "MultiWindowPolicy", "PeakTwoHourPolicy", "build_decision_key", "get_policy"]
