import plotly.graph_objects as go

from climate_insight.indicators import Indicator, TimeRange
from climate_insight.viz import build_forecast_chart, build_live_chart, build_similarity_chart

from conftest import make_producer


def test_forecast_chart_has_band_and_line():
    series = make_producer().forecast(Indicator.CO2, "Germany", TimeRange.ONE_YEAR)
    fig = build_forecast_chart(series)
    assert isinstance(fig, go.Figure)
    assert len(fig.data) == 2
    assert fig.data[0].fill == "toself"
    assert len(fig.data[1].y) == 12


def test_similarity_chart():
    results = make_producer().similar_regions(Indicator.GDP, "Japan")
    fig = build_similarity_chart(results)
    assert len(fig.data) == 1
    assert fig.data[0].orientation == "h"
    assert len(build_similarity_chart([]).data) == 0


def test_live_chart():
    producer = make_producer()
    points = [producer.next_data_point(Indicator.CO2, "Germany") for _ in range(3)]
    assert len(build_live_chart(points).data) == 1
    assert len(build_live_chart([]).data) == 0
