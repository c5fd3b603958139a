import asyncio
import json

import pytest

from climate_insight.errors import (
    BackendUnavailableError,
    ErrorCode,
    RetryCancelledError,
    ValidationError,
)
from climate_insight.gateway import parse_narrative_text
from climate_insight.indicators import DEFAULT_CATALOG, Indicator
from climate_insight.models import (
    SOURCE_DEMO,
    SOURCE_FALLBACK,
    OperationKind,
    Reliability,
    TrendDirection,
)
from climate_insight.retry import CancelToken
from climate_insight.settings import DataMode

from conftest import (
    FailingBackend,
    ManualClock,
    RecordingSleep,
    ScriptedBackend,
    drain,
    make_gateway,
)

FLAT_ROWS = [
    {"forecast_timestamp": "2024-01-01", "forecast_value": 410.0,
     "confidence_lower_bound": 405.0, "confidence_upper_bound": 415.0},
    {"forecast_timestamp": "2024-02-01", "forecast_value": 411.5,
     "confidence_lower_bound": 406.0, "confidence_upper_bound": 417.0},
    {"forecast_timestamp": "2024-03-01", "forecast_value": 413.0,
     "confidence_lower_bound": 407.0, "confidence_upper_bound": 419.0},
]


def _codes(gateway):
    return [e.code for e in gateway.reporter.error_log()]


def test_end_to_end_fallback_when_remote_always_fails():
    sleep = RecordingSleep()
    backend = FailingBackend()
    gateway = make_gateway(backend, sleep=sleep, max_retries=3, retry_base_delay_s=1.0)

    series = asyncio.run(gateway.get_forecast("co2", "Germany", "5y"))

    assert len(series.points) == 60
    timestamps = [p.timestamp for p in series.points]
    assert all(a < b for a, b in zip(timestamps, timestamps[1:]))
    for a, b in zip(timestamps, timestamps[1:]):
        assert (b.year * 12 + b.month) - (a.year * 12 + a.month) == 1
        assert b.day == 1
    assert series.source == SOURCE_FALLBACK
    assert series.reliability is Reliability.LOW
    assert series.is_synthetic
    assert all(p.bounds_hold() for p in series.points)

    bound = sum(1.0 * 2 ** i for i in range(0, 4))
    assert sum(sleep.delays) <= bound
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert len(backend.calls) == 4
    assert ErrorCode.RETRY_EXHAUSTED in _codes(gateway)
    assert gateway.retry.in_flight == {}


def test_validation_failure_is_raised_before_remote_call():
    backend = FailingBackend()
    gateway = make_gateway(backend)
    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(gateway.get_forecast("co3", "Germany", "5y"))
    assert [f.field for f in excinfo.value.failures] == ["indicator"]
    assert backend.calls == []


def test_remote_forecast_parsed_from_prose_wrapped_json():
    text = "Here is the forecast:\n" + json.dumps(FLAT_ROWS) + "\nLet me know."
    backend = ScriptedBackend(text)
    gateway = make_gateway(backend)

    series = asyncio.run(gateway.get_forecast("co2", "Germany", "1y"))

    assert [p.value for p in series.points] == [410.0, 411.5, 413.0]
    assert series.points[0].confidence_low == 405.0
    assert series.reliability is Reliability.HIGH
    assert series.source == DEFAULT_CATALOG.source(Indicator.CO2)
    assert series.summary.trend is TrendDirection.INCREASING
    assert 0.0 <= series.summary.accuracy_score <= 1.0
    kind, payload = backend.calls[0]
    assert kind is OperationKind.FORECAST
    assert payload["horizon"] == 12


def test_remote_forecast_positional_row_shape():
    rows = [
        {"f": [{"v": "2024-01-01"}, {"v": "14.8"}, {"v": "14.0"}, {"v": "15.5"}]},
        {"f": [{"v": "2024-02-01"}, {"v": "14.8"}, {"v": None}, {"v": None}]},
    ]
    backend = ScriptedBackend({"rows": rows, "accuracy_score": 0.93})
    gateway = make_gateway(backend)

    series = asyncio.run(gateway.get_forecast("avg_temperature", "Spain", "1y"))

    assert [p.value for p in series.points] == [14.8, 14.8]
    assert series.points[1].confidence_low is None
    assert series.summary.trend is TrendDirection.STABLE
    assert series.summary.accuracy_score == 0.93


def test_bounds_violation_falls_back_without_retry():
    rows = [dict(FLAT_ROWS[0], confidence_upper_bound=400.0)]
    sleep = RecordingSleep()
    backend = ScriptedBackend(rows)
    gateway = make_gateway(backend, sleep=sleep)

    series = asyncio.run(gateway.get_forecast("co2", "Germany", "1y"))

    assert series.source == SOURCE_FALLBACK
    assert len(backend.calls) == 1
    assert sleep.delays == []
    assert ErrorCode.RESPONSE_INVALID in _codes(gateway)


def test_unordered_timestamps_fall_back():
    backend = ScriptedBackend(list(reversed(FLAT_ROWS)))
    gateway = make_gateway(backend)
    series = asyncio.run(gateway.get_forecast("co2", "Germany", "1y"))
    assert series.reliability is Reliability.LOW


def test_backend_unavailable_falls_back_immediately():
    sleep = RecordingSleep()
    backend = ScriptedBackend(BackendUnavailableError("no credentials"))
    gateway = make_gateway(backend, sleep=sleep)

    narrative = asyncio.run(gateway.get_narrative_insight("gdp", "Japan"))

    assert narrative.source == SOURCE_FALLBACK
    assert "Japan" in narrative.text
    assert sleep.delays == []
    assert ErrorCode.BACKEND_UNAVAILABLE in _codes(gateway)


def test_transient_failure_then_success_is_not_degraded():
    sleep = RecordingSleep()
    backend = ScriptedBackend(RuntimeError("blip"), {"text": "  Emissions keep rising.  "})
    gateway = make_gateway(backend, sleep=sleep)

    narrative = asyncio.run(gateway.get_narrative_insight("co2", "Germany"))

    assert narrative.text == "Emissions keep rising."
    assert narrative.reliability is Reliability.HIGH
    assert sleep.delays == [1.0]


def test_results_are_cached_per_normalised_request():
    backend = ScriptedBackend(FLAT_ROWS)
    gateway = make_gateway(backend)

    async def scenario():
        first = await gateway.get_forecast("co2", "Germany", "1y")
        second = await gateway.get_forecast("co2", "  germany ", "1y")
        return first, second

    first, second = asyncio.run(scenario())
    assert second is first
    assert len(backend.calls) == 1


def test_cache_expires_after_ttl():
    clock = ManualClock()
    backend = ScriptedBackend(FLAT_ROWS)
    gateway = make_gateway(backend, clock=clock, cache_ttl_s=300)

    async def scenario():
        await gateway.get_forecast("co2", "Germany", "1y")
        clock.now += 299
        await gateway.get_forecast("co2", "Germany", "1y")
        assert len(backend.calls) == 1
        clock.now += 2
        await gateway.get_forecast("co2", "Germany", "1y")

    asyncio.run(scenario())
    assert len(backend.calls) == 2


def test_concurrent_identical_requests_share_one_remote_call():
    backend = ScriptedBackend(FLAT_ROWS)
    gateway = make_gateway(backend)

    async def scenario():
        return await asyncio.gather(
            gateway.get_forecast("co2", "Germany", "1y"),
            gateway.get_forecast("co2", "Germany", "1y"),
            gateway.get_forecast("co2", "Germany", "1y"),
        )

    results = asyncio.run(scenario())
    assert len(backend.calls) == 1
    assert results[1] is results[0] and results[2] is results[0]


def test_demo_mode_never_calls_backend():
    backend = FailingBackend()
    gateway = make_gateway(backend, mode=DataMode.DEMO)

    series = asyncio.run(gateway.get_forecast("renewable_adoption", "Kenya", "10y"))

    assert len(series.points) == 120
    assert series.source == SOURCE_DEMO
    assert series.reliability is Reliability.MEDIUM
    assert backend.calls == []
    assert gateway.demo_mode


def test_structured_table_projects_requested_columns():
    rows = [{"state": "Bavaria", "co2": 5.1, "extra": "x"}, {"state": "Saxony"}]
    backend = ScriptedBackend(json.dumps(rows))
    gateway = make_gateway(backend)

    table = asyncio.run(
        gateway.get_structured_table("Compare emissions by German state", ["state", "co2"])
    )

    assert table.columns == ("state", "co2")
    assert table.rows == ({"state": "Bavaria", "co2": 5.1}, {"state": "Saxony", "co2": None})
    assert list(table.to_frame().columns) == ["state", "co2"]
    assert backend.calls[0][1]["columns"] == ["state", "co2"]


def test_structured_table_without_columns_keeps_response_keys():
    backend = ScriptedBackend([{"a": 1, "b": 2}, {"b": 3, "c": 4}])
    gateway = make_gateway(backend)
    table = asyncio.run(gateway.get_structured_table("List three useful metrics"))
    assert table.columns == ("a", "b", "c")


def test_similar_regions_parsed_and_limited():
    rows = [
        {"region": f"Region {i}, Country {i}", "similarity_score": 0.9 - i * 0.05,
         "matching_patterns": ["Heat"], "key_metrics": {"overlap": 80 - i}}
        for i in range(7)
    ]
    backend = ScriptedBackend(rows)
    gateway = make_gateway(backend)

    results = asyncio.run(gateway.get_similar_regions("avg_temperature", "Spain"))

    assert len(results) == 5
    assert results[0].country == "Country 0"
    assert results[0].matching_patterns == ("Heat",)
    assert results[0].key_metrics == {"overlap": 80.0}
    assert all(r.reliability is Reliability.HIGH for r in results)


def test_similarity_score_out_of_range_falls_back():
    backend = ScriptedBackend([{"region": "Bavaria, Germany", "similarity_score": 1.7}])
    gateway = make_gateway(backend)
    results = asyncio.run(gateway.get_similar_regions("co2", "California"))
    assert results
    assert all(r.source == SOURCE_FALLBACK for r in results)
    assert all("California" not in r.region for r in results)


def test_latest_data_point_computes_change_and_is_not_cached():
    backend = ScriptedBackend('{"value": 420.0}')
    gateway = make_gateway(backend)

    async def scenario():
        first = await gateway.get_latest_data_point("co2", "Germany", previous_value=400.0)
        second = await gateway.get_latest_data_point("co2", "Germany")
        return first, second

    first, second = asyncio.run(scenario())
    assert first.value == 420.0
    assert first.change == 20.0
    assert first.change_percent == 5.0
    assert first.reliability is Reliability.HIGH
    assert second.change == 0.0
    assert len(backend.calls) == 2


def test_remote_timeout_counts_as_failure():
    class HangingBackend:
        async def invoke_remote(self, kind, payload):
            await asyncio.Event().wait()

    gateway = make_gateway(HangingBackend(), max_retries=0, remote_timeout_s=0.01)
    point = asyncio.run(gateway.get_latest_data_point("gdp", "Japan"))
    assert point.source == SOURCE_FALLBACK
    assert ErrorCode.RETRY_EXHAUSTED in _codes(gateway)


def test_cancel_token_propagates_and_clears_retry_state():
    clock = ManualClock()
    gateway = make_gateway(FailingBackend(), sleep=clock.sleep)
    token = CancelToken()

    async def scenario():
        task = asyncio.ensure_future(gateway.get_forecast("co2", "Germany", "5y", token))
        await drain()
        token.cancel()
        with pytest.raises(RetryCancelledError):
            await task

    asyncio.run(scenario())
    assert gateway.retry.in_flight == {}
    assert len(gateway.caches[OperationKind.FORECAST]) == 0
    assert ErrorCode.RETRY_CANCELLED in _codes(gateway)


def test_remote_call_without_backend_is_unavailable():
    gateway = make_gateway(None)
    call = gateway._remote_call(OperationKind.NARRATIVE, {}, parse_narrative_text)
    with pytest.raises(BackendUnavailableError):
        asyncio.run(call())
