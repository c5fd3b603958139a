from __future__ import annotations

import random
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from climate_insight.indicators import DEFAULT_CATALOG, Indicator, IndicatorCatalog, TimeRange
from climate_insight.models import (
    SOURCE_DEMO,
    DataPoint,
    ForecastPoint,
    ForecastSeries,
    ForecastSummary,
    Narrative,
    Reliability,
    SimilarityResult,
    StructuredTable,
    normalize_region,
    trend_direction,
)

# Relative width of the synthetic confidence band.
CONFIDENCE_BAND = 0.1
# Peak-to-peak noise on synthetic forecast values, relative to the base value.
FORECAST_NOISE = 0.1

_PEER_REGIONS = [
    ("California", "USA"),
    ("British Columbia", "Canada"),
    ("Bavaria", "Germany"),
    ("Victoria", "Australia"),
    ("Catalonia", "Spain"),
    ("Hokkaido", "Japan"),
]

_TABLE_ROWS = [
    {"metric": "Emission Intensity", "value": "0.21 kgCO2/USD", "trend": "down"},
    {"metric": "Renewable Share", "value": "31%", "trend": "up"},
    {"metric": "Heat Stress Days", "value": "18/yr", "trend": "up"},
]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyntheticDataProducer:
    """
    Deterministic-shape, randomly-valued stand-in for the remote backend.

    Output matches the remote contracts exactly; only ``source`` and
    ``reliability`` tell the two paths apart.
    """

    def __init__(
        self,
        catalog: IndicatorCatalog = DEFAULT_CATALOG,
        seed: Optional[int] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.catalog = catalog
        self._rng = random.Random(seed)
        self._clock = clock

    def monthly_timestamps(self, periods: int) -> List[datetime]:
        end = pd.Timestamp(self._clock()).normalize().replace(day=1)
        if end.tzinfo is None:
            end = end.tz_localize("UTC")
        index = pd.date_range(end=end, periods=periods, freq="MS")
        return [ts.to_pydatetime() for ts in index]

    def forecast(
        self,
        indicator: Indicator,
        region: str,
        time_range: TimeRange,
        source: str = SOURCE_DEMO,
        reliability: Reliability = Reliability.MEDIUM,
    ) -> ForecastSeries:
        indicator = Indicator(indicator)
        time_range = TimeRange(time_range)
        base = self.catalog.base_value(indicator)
        step = self.catalog.forecast_step(indicator)

        points: List[ForecastPoint] = []
        for i, ts in enumerate(self.monthly_timestamps(time_range.months)):
            raw = base + i * step + (self._rng.random() - 0.5) * abs(base) * FORECAST_NOISE
            band = abs(raw) * CONFIDENCE_BAND
            points.append(
                ForecastPoint(
                    timestamp=ts,
                    value=round(raw, 2),
                    confidence_low=round(raw - band, 2),
                    confidence_high=round(raw + band, 2),
                )
            )

        trend = trend_direction(points[0].value, points[-1].value)
        summary = ForecastSummary(
            trend=trend,
            narrative=self.impact_message(indicator, region, trend.value),
            recommendation=self.catalog.recommendation(indicator),
            accuracy_score=round(0.85 + self._rng.random() * 0.1, 3),
        )
        return ForecastSeries(
            indicator=indicator,
            region=region,
            time_range=time_range,
            points=tuple(points),
            summary=summary,
            source=source,
            reliability=reliability,
        )

    def next_data_point(
        self,
        indicator: Indicator,
        region: str,
        previous: Optional[float] = None,
        source: str = SOURCE_DEMO,
        reliability: Reliability = Reliability.MEDIUM,
    ) -> DataPoint:
        indicator = Indicator(indicator)
        last = previous if previous is not None else self.catalog.base_value(indicator)
        random_change = (self._rng.random() - 0.5) * self.catalog.volatility(indicator)
        trend_change = self.catalog.tick_trend(indicator) * 0.001
        new_value = last + last * (trend_change + random_change)
        change = new_value - last
        change_percent = (change / last) * 100 if last else 0.0
        return DataPoint(
            timestamp=self._clock(),
            indicator=indicator,
            region=region,
            value=round(new_value, 2),
            change=round(change, 3),
            change_percent=round(change_percent, 2),
            source=source,
            reliability=reliability,
        )

    def impact_message(self, indicator: Indicator, region: str, trend: str = "changing") -> str:
        label = self.catalog.label(indicator)
        return (
            f"Analysis for {region} shows {trend} {label.lower()} patterns "
            "requiring strategic response."
        )

    def narrative(
        self,
        indicator: Indicator,
        region: str,
        source: str = SOURCE_DEMO,
        reliability: Reliability = Reliability.MEDIUM,
    ) -> Narrative:
        indicator = Indicator(indicator)
        label = self.catalog.label(indicator)
        text = (
            f"Executive Summary for {region} - {label} Analysis\n\n"
            "Key Findings:\n"
            f"- Trend Analysis: {self.impact_message(indicator, region)}\n"
            "- Regional Impact: Significant implications for local climate adaptation strategies\n"
            f"- Primary Data Source: {self.catalog.source(indicator)}\n\n"
            f"Strategic Recommendation: {self.catalog.recommendation(indicator)}."
        )
        return Narrative(text=text, source=source, reliability=reliability)

    def similar_regions(
        self,
        indicator: Indicator,
        region: str,
        source: str = SOURCE_DEMO,
        reliability: Reliability = Reliability.MEDIUM,
        limit: int = 5,
    ) -> List[SimilarityResult]:
        indicator = Indicator(indicator)
        target = normalize_region(region)
        peers = [
            (name, country)
            for name, country in _PEER_REGIONS
            if target not in (normalize_region(name), normalize_region(country))
        ][:limit]
        label = self.catalog.label(indicator)
        results = []
        for index, (name, country) in enumerate(peers):
            results.append(
                SimilarityResult(
                    region=f"{name}, {country}",
                    country=country,
                    similarity_score=round(0.9 - index * 0.1, 2),
                    matching_patterns=(f"{label} trends", "Economic indicators"),
                    key_metrics={"similarity": float(85 - index * 5)},
                    recommendations=f"Monitor {label.lower()} trends closely",
                    data_points=120,
                    source=source,
                    reliability=reliability,
                )
            )
        return results

    def table(
        self,
        prompt: str,
        columns: Sequence[str] = (),
        source: str = SOURCE_DEMO,
        reliability: Reliability = Reliability.MEDIUM,
    ) -> StructuredTable:
        cols: Tuple[str, ...] = tuple(columns) or tuple(_TABLE_ROWS[0].keys())
        rows: Tuple[Dict[str, object], ...] = tuple(
            {column: row.get(column) for column in cols} for row in _TABLE_ROWS
        )
        return StructuredTable(columns=cols, rows=rows, source=source, reliability=reliability)
