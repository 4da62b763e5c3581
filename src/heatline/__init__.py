"""Heatline: canonical station temperature and forecast-driven verification calls."""

__version__ = "0.1.0"
