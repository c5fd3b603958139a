from __future__ import annotations

from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class Indicator(str, Enum):
    CO2 = "co2"
    AVG_TEMPERATURE = "avg_temperature"
    GDP = "gdp"
    RENEWABLE_ADOPTION = "renewable_adoption"


class TimeRange(str, Enum):
    ONE_YEAR = "1y"
    FIVE_YEARS = "5y"
    TEN_YEARS = "10y"

    @property
    def months(self) -> int:
        return _HORIZON_MONTHS[self]


_HORIZON_MONTHS: Dict[TimeRange, int] = {
    TimeRange.ONE_YEAR: 12,
    TimeRange.FIVE_YEARS: 60,
    TimeRange.TEN_YEARS: 120,
}


@dataclass(frozen=True)
class IndicatorProfile:
    label: str
    unit: str
    source: str
    base_value: float
    # Fractional random move per live tick.
    volatility: float
    # Drift per live tick, scaled by 0.001.
    tick_trend: float
    # Drift per month for synthetic forecast series.
    forecast_step: float
    recommendation: str


_PROFILES: Dict[Indicator, IndicatorProfile] = {
    Indicator.CO2: IndicatorProfile(
        label="CO₂ Concentration",
        unit="ppm",
        source="NOAA Global Monitoring Laboratory",
        base_value=415.0,
        volatility=0.002,
        tick_trend=0.5,
        forecast_step=2.5,
        recommendation="Implement carbon pricing and invest in clean technology",
    ),
    Indicator.AVG_TEMPERATURE: IndicatorProfile(
        label="Average Temperature",
        unit="°C",
        source="NASA GISS Temperature Data",
        base_value=14.8,
        volatility=0.01,
        tick_trend=0.3,
        forecast_step=0.15,
        recommendation="Enhance climate adaptation infrastructure",
    ),
    Indicator.GDP: IndicatorProfile(
        label="GDP per Capita",
        unit="USD",
        source="World Bank Global Economic Data",
        base_value=52000.0,
        volatility=0.005,
        tick_trend=0.2,
        forecast_step=1200.0,
        recommendation="Develop green economic transition strategies",
    ),
    Indicator.RENEWABLE_ADOPTION: IndicatorProfile(
        label="Renewable Energy Adoption",
        unit="%",
        source="International Energy Agency",
        base_value=28.0,
        volatility=0.003,
        tick_trend=1.0,
        forecast_step=2.0,
        recommendation="Accelerate renewable energy deployment",
    ),
}


def _check_complete() -> None:
    missing = [member.value for member in Indicator if member not in _PROFILES]
    if missing:
        raise RuntimeError(f"Indicator profiles missing for: {', '.join(missing)}")
    missing_ranges = [member.value for member in TimeRange if member not in _HORIZON_MONTHS]
    if missing_ranges:
        raise RuntimeError(f"Horizon missing for time ranges: {', '.join(missing_ranges)}")


_check_complete()

_NUMERIC_FIELDS = {"base_value", "volatility", "tick_trend", "forecast_step"}
_PROFILE_FIELDS = {f.name for f in fields(IndicatorProfile)}


class IndicatorCatalog:
    """Per-indicator parameters, optionally overridden from configuration."""

    def __init__(self, overrides: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self._profiles: Dict[Indicator, IndicatorProfile] = dict(_PROFILES)
        for name, values in (overrides or {}).items():
            indicator = Indicator(name)
            unknown = set(values) - _PROFILE_FIELDS
            if unknown:
                raise ValueError(
                    f"Unknown profile fields for {name}: {', '.join(sorted(unknown))}"
                )
            cleaned = {
                key: float(value) if key in _NUMERIC_FIELDS else str(value)
                for key, value in values.items()
            }
            self._profiles[indicator] = replace(self._profiles[indicator], **cleaned)

    def profile(self, indicator: Indicator) -> IndicatorProfile:
        return self._profiles[Indicator(indicator)]

    def label(self, indicator: Indicator) -> str:
        return self.profile(indicator).label

    def unit(self, indicator: Indicator) -> str:
        return self.profile(indicator).unit

    def source(self, indicator: Indicator) -> str:
        return self.profile(indicator).source

    def base_value(self, indicator: Indicator) -> float:
        return self.profile(indicator).base_value

    def volatility(self, indicator: Indicator) -> float:
        return self.profile(indicator).volatility

    def tick_trend(self, indicator: Indicator) -> float:
        return self.profile(indicator).tick_trend

    def forecast_step(self, indicator: Indicator) -> float:
        return self.profile(indicator).forecast_step

    def recommendation(self, indicator: Indicator) -> str:
        return self.profile(indicator).recommendation


DEFAULT_CATALOG = IndicatorCatalog()


def indicator_options() -> Dict[str, str]:
    return {member.value: DEFAULT_CATALOG.label(member) for member in Indicator}
