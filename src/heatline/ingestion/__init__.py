"""Data ingestion from station report feeds and the hourly forecast."""

from heatline.ingestion.forecast import ForecastClient
from heatline.ingestion.poller import WeatherPoller
from heatline.ingestion.weather import IemArchiveClient, WeatherClient

__all__ = ["WeatherClient", "IemArchiveClient", "ForecastClient", "WeatherPoller"]
