from __future__ import annotations

import asyncio
import logging
import math
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from climate_insight.cache import ResultCache
from climate_insight.errors import (
    BackendUnavailableError,
    ErrorReporter,
    RemoteFailureError,
    ResponseShapeError,
    RetryCancelledError,
)
from climate_insight.indicators import Indicator, TimeRange
from climate_insight.models import (
    SOURCE_DEMO,
    SOURCE_FALLBACK,
    DataPoint,
    ForecastPoint,
    ForecastSeries,
    ForecastSummary,
    Narrative,
    OperationKind,
    Reliability,
    RequestKey,
    SimilarityResult,
    StructuredTable,
    points_ascending,
    trend_direction,
)
from climate_insight.remote import RemoteBackend, extract_json
from climate_insight.retry import CancelToken, RetryPolicy
from climate_insight.settings import DataMode, Settings
from climate_insight.synthetic import SyntheticDataProducer
from climate_insight.validation import ValidationGate, ensure_valid

LOGGER = logging.getLogger(__name__)

DEFAULT_ACCURACY = 0.87
MAX_SIMILAR_REGIONS = 5

_TIMESTAMP_KEYS = ("forecast_timestamp", "timestamp", "ts")
_VALUE_KEYS = ("forecast_value", "value")
_LOW_KEYS = ("confidence_lower_bound", "confidence_low")
_HIGH_KEYS = ("confidence_upper_bound", "confidence_high")
_NARRATIVE_KEYS = ("text", "narrative", "insight", "summary")
_LATEST_KEYS = ("value", "latest_value")

# Produces a synthetic stand-in for one request, given (source, reliability).
Fallback = Callable[[str, Reliability], Any]


def _first_present(row: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in row and row[key] is not None:
            return row[key]
    return None


def _rows_from(raw: Any) -> List[Any]:
    if isinstance(raw, str):
        try:
            raw = extract_json(raw)
        except ValueError as exc:
            raise ResponseShapeError(f"Response is not JSON: {exc}")
    if isinstance(raw, Mapping) and isinstance(raw.get("rows"), list):
        return list(raw["rows"])
    if isinstance(raw, list):
        return raw
    raise ResponseShapeError(f"Unexpected response type: {type(raw).__name__}")


def _forecast_record(row: Any) -> Dict[str, Any]:
    if not isinstance(row, Mapping):
        raise ResponseShapeError(f"Forecast row is not an object: {row!r}")
    if "f" in row:
        cells = [cell.get("v") if isinstance(cell, Mapping) else cell for cell in row["f"]]
        cells = (cells + [None] * 4)[:4]
        return dict(zip(("timestamp", "value", "confidence_low", "confidence_high"), cells))
    return {
        "timestamp": _first_present(row, _TIMESTAMP_KEYS),
        "value": _first_present(row, _VALUE_KEYS),
        "confidence_low": _first_present(row, _LOW_KEYS),
        "confidence_high": _first_present(row, _HIGH_KEYS),
    }


def _optional_float(value: Any) -> Optional[float]:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    return float(value)


def parse_forecast_points(raw: Any) -> List[ForecastPoint]:
    rows = _rows_from(raw)
    if not rows:
        raise ResponseShapeError("Forecast response has no rows.")
    df = pd.DataFrame([_forecast_record(row) for row in rows])
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True, errors="coerce")
    for column in ("value", "confidence_low", "confidence_high"):
        df[column] = pd.to_numeric(df[column], errors="coerce")
    if df["timestamp"].isna().any() or df["value"].isna().any():
        raise ResponseShapeError("Forecast rows are missing a timestamp or value.")

    points = [
        ForecastPoint(
            timestamp=row.timestamp.to_pydatetime(),
            value=float(row.value),
            confidence_low=_optional_float(row.confidence_low),
            confidence_high=_optional_float(row.confidence_high),
        )
        for row in df.itertuples(index=False)
    ]
    if not points_ascending(points):
        raise ResponseShapeError("Forecast timestamps are not strictly ascending.")
    broken = [p for p in points if not p.bounds_hold()]
    if broken:
        raise ResponseShapeError(
            f"{len(broken)} forecast point(s) fall outside their confidence bounds."
        )
    return points


def parse_narrative_text(raw: Any) -> str:
    text: Any = raw
    if isinstance(raw, Mapping):
        text = _first_present(raw, _NARRATIVE_KEYS)
    if not isinstance(text, str) or not text.strip():
        raise ResponseShapeError("Narrative response has no text.")
    return text.strip()


def parse_table_rows(raw: Any, columns: Sequence[str]) -> Tuple[Tuple[str, ...], Tuple[Dict[str, Any], ...]]:
    rows = _rows_from(raw)
    if not all(isinstance(row, Mapping) for row in rows):
        raise ResponseShapeError("Table rows must be objects.")
    if columns:
        cols = tuple(columns)
    else:
        seen: Dict[str, None] = {}
        for row in rows:
            for name in row:
                seen.setdefault(str(name), None)
        cols = tuple(seen)
    projected = tuple({column: row.get(column) for column in cols} for row in rows)
    return cols, projected


def _similarity_record(row: Any, source: str) -> SimilarityResult:
    if not isinstance(row, Mapping) or not row.get("region"):
        raise ResponseShapeError(f"Similarity row has no region: {row!r}")
    try:
        score = float(row.get("similarity_score"))
    except (TypeError, ValueError):
        raise ResponseShapeError(f"Similarity row has no numeric score: {row!r}")
    if not 0.0 <= score <= 1.0:
        raise ResponseShapeError(f"Similarity score out of range: {score}")
    region = str(row["region"])
    country = row.get("country") or (region.rsplit(",", 1)[-1].strip() if "," in region else "")
    patterns = row.get("matching_patterns") or ()
    if isinstance(patterns, str):
        patterns = (patterns,)
    metrics = row.get("key_metrics") or {}
    if not isinstance(metrics, Mapping):
        raise ResponseShapeError("Similarity key_metrics must be an object.")
    try:
        key_metrics = {str(k): float(v) for k, v in metrics.items()}
        data_points = int(row.get("data_points") or 0)
    except (TypeError, ValueError) as exc:
        raise ResponseShapeError(f"Similarity row has non-numeric metrics: {exc}")
    return SimilarityResult(
        region=region,
        country=str(country),
        similarity_score=round(score, 3),
        matching_patterns=tuple(str(p) for p in patterns),
        key_metrics=key_metrics,
        recommendations=str(row.get("recommendations") or ""),
        data_points=data_points,
        source=source,
        reliability=Reliability.HIGH,
    )


def parse_latest_value(raw: Any) -> float:
    value: Any = raw
    if isinstance(raw, str):
        try:
            value = float(raw.strip())
        except ValueError:
            try:
                value = extract_json(raw)
            except ValueError as exc:
                raise ResponseShapeError(f"Latest-value response is not JSON: {exc}")
    if isinstance(value, list) and value:
        value = value[0]
    if isinstance(value, Mapping):
        value = _first_present(value, _LATEST_KEYS)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise ResponseShapeError(f"Latest-value response has no number: {raw!r}")
    return float(value)


class _KeyedLocks:
    """Per-key asyncio locks so concurrent identical requests share one remote call."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._counts: Dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
            self._counts[key] = 0
        self._counts[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._counts[key] -= 1
            if self._counts[key] <= 0:
                self._locks.pop(key, None)
                self._counts.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class RemoteDataGateway:
    """
    Single boundary for logical data requests.

    Every operation validates its input, then serves from cache, the demo
    producer, or the retried remote call. Anything other than a validation
    failure or an explicit cancellation degrades to a synthetic result marked
    ``synthetic-fallback`` with low reliability.
    """

    def __init__(
        self,
        settings: Settings,
        producer: SyntheticDataProducer,
        backend: Optional[RemoteBackend] = None,
        *,
        retry: Optional[RetryPolicy] = None,
        reporter: Optional[ErrorReporter] = None,
        validator: Optional[ValidationGate] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.settings = settings
        self.producer = producer
        self.catalog = producer.catalog
        self.backend = backend
        self.retry = retry or RetryPolicy(settings.max_retries, settings.retry_base_delay_s)
        self.reporter = reporter if reporter is not None else ErrorReporter()
        self.validator = validator or ValidationGate()
        self._now = now
        self.caches: Dict[OperationKind, ResultCache] = {
            kind: ResultCache(settings.ttl_for(kind), clock=clock, name=kind.value)
            for kind in OperationKind
            if kind is not OperationKind.LATEST
        }
        self._flights = _KeyedLocks()

    @property
    def demo_mode(self) -> bool:
        return self.settings.mode is DataMode.DEMO or self.backend is None

    def clear_caches(self) -> None:
        for cache in self.caches.values():
            cache.clear()

    async def get_forecast(
        self,
        indicator: Any,
        region: Any,
        time_range: Any,
        cancel_token: Optional[CancelToken] = None,
    ) -> ForecastSeries:
        request = ensure_valid(
            self.validator.validate_forecast(
                {"indicator": indicator, "region": region, "timeRange": time_range}
            ),
            operation=OperationKind.FORECAST.value,
        )
        key = RequestKey(
            OperationKind.FORECAST, request.indicator, request.region, request.time_range
        )
        payload = {
            "indicator": self.catalog.label(request.indicator),
            "region": request.region,
            "horizon": request.time_range.months,
        }

        def parse(raw: Any) -> ForecastSeries:
            return self._series_from_points(
                request.indicator, request.region, request.time_range, parse_forecast_points(raw), raw
            )

        def fallback(source: str, reliability: Reliability) -> ForecastSeries:
            return self.producer.forecast(
                request.indicator, request.region, request.time_range, source, reliability
            )

        return await self._resolve(key, payload, parse, fallback, cancel_token)

    async def get_narrative_insight(
        self, indicator: Any, region: Any, cancel_token: Optional[CancelToken] = None
    ) -> Narrative:
        request = ensure_valid(
            self.validator.validate_insight({"indicator": indicator, "region": region}),
            operation=OperationKind.NARRATIVE.value,
        )
        key = RequestKey(OperationKind.NARRATIVE, request.indicator, request.region)
        payload = {"indicator": self.catalog.label(request.indicator), "region": request.region}
        source = self.catalog.source(request.indicator)

        def parse(raw: Any) -> Narrative:
            return Narrative(parse_narrative_text(raw), source, Reliability.HIGH)

        def fallback(source: str, reliability: Reliability) -> Narrative:
            return self.producer.narrative(request.indicator, request.region, source, reliability)

        return await self._resolve(key, payload, parse, fallback, cancel_token)

    async def get_structured_table(
        self,
        prompt: Any,
        columns: Optional[Sequence[str]] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> StructuredTable:
        request = ensure_valid(
            self.validator.validate_table({"prompt": prompt, "columns": columns}),
            operation=OperationKind.STRUCTURED_TABLE.value,
        )
        key = RequestKey(
            OperationKind.STRUCTURED_TABLE,
            extra=(("prompt", request.prompt), ("columns", "\x1f".join(request.columns))),
        )
        payload = {"prompt": request.prompt, "columns": list(request.columns)}

        def parse(raw: Any) -> StructuredTable:
            cols, rows = parse_table_rows(raw, request.columns)
            return StructuredTable(cols, rows, "snowflake-cortex", Reliability.HIGH)

        def fallback(source: str, reliability: Reliability) -> StructuredTable:
            return self.producer.table(request.prompt, request.columns, source, reliability)

        return await self._resolve(key, payload, parse, fallback, cancel_token)

    async def get_similar_regions(
        self, indicator: Any, region: Any, cancel_token: Optional[CancelToken] = None
    ) -> List[SimilarityResult]:
        request = ensure_valid(
            self.validator.validate_insight({"indicator": indicator, "region": region}),
            operation=OperationKind.SIMILARITY.value,
        )
        key = RequestKey(OperationKind.SIMILARITY, request.indicator, request.region)
        payload = {"indicator": self.catalog.label(request.indicator), "region": request.region}
        source = self.catalog.source(request.indicator)

        def parse(raw: Any) -> List[SimilarityResult]:
            results = [_similarity_record(row, source) for row in _rows_from(raw)]
            return results[:MAX_SIMILAR_REGIONS]

        def fallback(source: str, reliability: Reliability) -> List[SimilarityResult]:
            return self.producer.similar_regions(
                request.indicator, request.region, source, reliability, limit=MAX_SIMILAR_REGIONS
            )

        results = await self._resolve(key, payload, parse, fallback, cancel_token)
        return list(results)

    async def get_latest_data_point(
        self,
        indicator: Any,
        region: Any,
        previous_value: Optional[float] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> DataPoint:
        request = ensure_valid(
            self.validator.validate_insight({"indicator": indicator, "region": region}),
            operation=OperationKind.LATEST.value,
        )
        key = RequestKey(OperationKind.LATEST, request.indicator, request.region)
        payload = {"indicator": self.catalog.label(request.indicator), "region": request.region}

        def parse(raw: Any) -> DataPoint:
            value = parse_latest_value(raw)
            change = 0.0 if previous_value is None else value - previous_value
            percent = (change / previous_value) * 100 if previous_value else 0.0
            return DataPoint(
                timestamp=self._now(),
                indicator=request.indicator,
                region=request.region,
                value=round(value, 2),
                change=round(change, 3),
                change_percent=round(percent, 2),
                source=self.catalog.source(request.indicator),
                reliability=Reliability.HIGH,
            )

        def fallback(source: str, reliability: Reliability) -> DataPoint:
            return self.producer.next_data_point(
                request.indicator, request.region, previous_value, source, reliability
            )

        return await self._resolve(key, payload, parse, fallback, cancel_token)

    def _series_from_points(
        self,
        indicator: Indicator,
        region: str,
        time_range: TimeRange,
        points: List[ForecastPoint],
        raw: Any,
    ) -> ForecastSeries:
        trend = trend_direction(points[0].value, points[-1].value)
        accuracy = DEFAULT_ACCURACY
        if isinstance(raw, Mapping) and raw.get("accuracy_score") is not None:
            try:
                accuracy = float(raw["accuracy_score"])
            except (TypeError, ValueError):
                raise ResponseShapeError("accuracy_score is not numeric.")
            if not 0.0 <= accuracy <= 1.0:
                raise ResponseShapeError(f"accuracy_score out of range: {accuracy}")
        summary = ForecastSummary(
            trend=trend,
            narrative=self.producer.impact_message(indicator, region, trend.value),
            recommendation=self.catalog.recommendation(indicator),
            accuracy_score=accuracy,
        )
        return ForecastSeries(
            indicator=indicator,
            region=region,
            time_range=time_range,
            points=tuple(points),
            summary=summary,
            source=self.catalog.source(indicator),
            reliability=Reliability.HIGH,
        )

    async def _resolve(
        self,
        key: RequestKey,
        payload: Mapping[str, Any],
        parse: Callable[[Any], Any],
        fallback: Fallback,
        cancel_token: Optional[CancelToken],
    ) -> Any:
        cache_key = key.cache_key
        cache = self.caches.get(key.operation)
        if cache is not None:
            cached = cache.get(cache_key)
            if cached is not None:
                return cached

        async with self._flights.acquire(cache_key):
            # A concurrent identical request may have filled the cache meanwhile.
            if cache is not None:
                cached = cache.get(cache_key)
                if cached is not None:
                    return cached
            if self.demo_mode:
                result = fallback(SOURCE_DEMO, Reliability.MEDIUM)
            else:
                result = await self._fetch_or_fallback(key, payload, parse, fallback, cancel_token)
            if cache is not None:
                cache.set(cache_key, result)
            return result

    async def _fetch_or_fallback(
        self,
        key: RequestKey,
        payload: Mapping[str, Any],
        parse: Callable[[Any], Any],
        fallback: Fallback,
        cancel_token: Optional[CancelToken],
    ) -> Any:
        cache_key = key.cache_key
        call = self._remote_call(key.operation, payload, parse)
        try:
            return await self.retry.with_retry(call, cache_key, cancel_token=cancel_token)
        except RetryCancelledError as exc:
            self.reporter.handle(exc, operation=key.operation.value)
            raise
        except Exception as exc:
            self.reporter.handle(exc, operation=key.operation.value, request=cache_key)
        LOGGER.info("Serving synthetic fallback for %s", cache_key)
        return fallback(SOURCE_FALLBACK, Reliability.LOW)

    def _remote_call(
        self, kind: OperationKind, payload: Mapping[str, Any], parse: Callable[[Any], Any]
    ) -> Callable[[], Awaitable[Any]]:
        timeout = self.settings.remote_timeout_s

        async def call() -> Any:
            if self.backend is None:
                raise BackendUnavailableError(f"No remote backend configured for {kind.value}")
            try:
                raw = await asyncio.wait_for(self.backend.invoke_remote(kind, payload), timeout)
            except asyncio.TimeoutError:
                raise RemoteFailureError(
                    f"Remote {kind.value} call timed out after {timeout}s",
                    context={"operation": kind.value},
                )
            return parse(raw)

        return call
