from climate_insight.errors import ErrorCode, InsightError, ValidationError
from climate_insight.indicators import Indicator, TimeRange
from climate_insight.models import AlertRule, DataPoint, ForecastSeries, Reliability
from climate_insight.service import ClimateInsightService
from climate_insight.settings import DataMode, Settings

__all__ = [
    "AlertRule",
    "ClimateInsightService",
    "DataMode",
    "DataPoint",
    "ErrorCode",
    "ForecastSeries",
    "Indicator",
    "InsightError",
    "Reliability",
    "Settings",
    "TimeRange",
    "ValidationError",
]
