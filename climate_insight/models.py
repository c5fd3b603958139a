from __future__ import annotations

import hashlib
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd

from climate_insight.indicators import Indicator, TimeRange


class OperationKind(str, Enum):
    FORECAST = "forecast"
    NARRATIVE = "narrative"
    STRUCTURED_TABLE = "structured_table"
    SIMILARITY = "similarity"
    LATEST = "latest"


class Reliability(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TrendDirection(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


SOURCE_DEMO = "synthetic-demo"
SOURCE_FALLBACK = "synthetic-fallback"
STABLE_TOLERANCE = 0.001


def _hash_text(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_region(region: str) -> str:
    return " ".join(region.split()).casefold()


def topic_key(indicator: Indicator, region: str) -> str:
    return f"{Indicator(indicator).value}:{normalize_region(region)}"


@dataclass(frozen=True)
class RequestKey:
    operation: OperationKind
    indicator: Optional[Indicator] = None
    region: Optional[str] = None
    time_range: Optional[TimeRange] = None
    # Free-text parts (prompt, columns); hashed in the cache key.
    extra: Tuple[Tuple[str, str], ...] = ()

    @property
    def cache_key(self) -> str:
        parts: Dict[str, str] = {}
        if self.indicator is not None:
            parts["indicator"] = Indicator(self.indicator).value
        if self.region is not None:
            parts["region"] = normalize_region(self.region)
        if self.time_range is not None:
            parts["time_range"] = TimeRange(self.time_range).value
        for name, value in self.extra:
            parts[name] = _hash_text(value)[:16]
        body = "|".join(f"{name}={parts[name]}" for name in sorted(parts))
        return f"{OperationKind(self.operation).value}|{body}" if body else self.operation.value

    def __str__(self) -> str:
        return self.cache_key


def trend_direction(first: float, last: float) -> TrendDirection:
    delta = last - first
    if abs(delta) <= abs(first) * STABLE_TOLERANCE:
        return TrendDirection.STABLE
    return TrendDirection.INCREASING if delta > 0 else TrendDirection.DECREASING


@dataclass(frozen=True)
class DataPoint:
    timestamp: datetime
    indicator: Indicator
    region: str
    value: float
    change: float
    change_percent: float
    source: str
    reliability: Reliability

    @property
    def topic(self) -> str:
        return topic_key(self.indicator, self.region)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        payload["indicator"] = self.indicator.value
        payload["reliability"] = self.reliability.value
        return payload


@dataclass(frozen=True)
class ForecastPoint:
    timestamp: datetime
    value: float
    confidence_low: Optional[float] = None
    confidence_high: Optional[float] = None

    def bounds_hold(self) -> bool:
        if self.confidence_low is not None and self.confidence_low > self.value:
            return False
        if self.confidence_high is not None and self.value > self.confidence_high:
            return False
        return True


@dataclass(frozen=True)
class ForecastSummary:
    trend: TrendDirection
    narrative: str
    recommendation: str
    accuracy_score: float


@dataclass(frozen=True)
class ForecastSeries:
    indicator: Indicator
    region: str
    time_range: TimeRange
    points: Tuple[ForecastPoint, ...]
    summary: ForecastSummary
    source: str
    reliability: Reliability

    @property
    def is_synthetic(self) -> bool:
        return self.source in (SOURCE_DEMO, SOURCE_FALLBACK)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    "timestamp": p.timestamp,
                    "value": p.value,
                    "confidence_low": p.confidence_low,
                    "confidence_high": p.confidence_high,
                }
                for p in self.points
            ],
            columns=["timestamp", "value", "confidence_low", "confidence_high"],
        )


@dataclass(frozen=True)
class Narrative:
    text: str
    source: str
    reliability: Reliability

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class StructuredTable:
    columns: Tuple[str, ...]
    rows: Tuple[Dict[str, Any], ...]
    source: str
    reliability: Reliability

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(list(self.rows), columns=list(self.columns) or None)


@dataclass(frozen=True)
class SimilarityResult:
    region: str
    country: str
    similarity_score: float
    matching_patterns: Tuple[str, ...]
    key_metrics: Dict[str, float]
    recommendations: str
    data_points: int
    source: str
    reliability: Reliability


class ThresholdKind(str, Enum):
    ABSOLUTE = "absolute"
    PERCENTAGE = "percentage"


class AlertDirection(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    BOTH = "both"


@dataclass(frozen=True)
class AlertRule:
    threshold: float
    kind: ThresholdKind = ThresholdKind.PERCENTAGE
    direction: AlertDirection = AlertDirection.BOTH

    def __post_init__(self) -> None:
        if self.threshold < 0:
            raise ValueError("Alert threshold must be non-negative.")
        object.__setattr__(self, "kind", ThresholdKind(self.kind))
        object.__setattr__(self, "direction", AlertDirection(self.direction))


Listener = Callable[[DataPoint], Any]


@dataclass(eq=False)
class Subscription:
    topic: str
    listener: Listener
    created_at: float = field(default_factory=time.time)
    active: bool = True


def points_ascending(points: List[ForecastPoint]) -> bool:
    return all(a.timestamp < b.timestamp for a, b in zip(points, points[1:]))
