"""Station health and freshness checks."""

from heatline.quality.checks import StationHealthChecker, run_health_checks
from heatline.quality.freshness import compute_poll_freshness, is_data_stale

__all__ = ["StationHealthChecker", "run_health_checks", "compute_poll_freshness", "is_data_stale"]
