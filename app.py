import asyncio
import time
from typing import List

import pandas as pd
import streamlit as st

from climate_insight.alerts import rule_matches
from climate_insight.errors import ValidationError
from climate_insight.indicators import DEFAULT_CATALOG, Indicator, TimeRange, indicator_options
from climate_insight.logging_utils import configure_logging
from climate_insight.models import DataPoint, Reliability
from climate_insight.service import ClimateInsightService
from climate_insight.settings import Settings
from climate_insight.viz import build_forecast_chart, build_live_chart, build_similarity_chart

st.set_page_config(page_title="Climate Insight Dashboard", layout="wide")

LIVE_HISTORY_LIMIT = 50


@st.cache_resource
def get_service() -> ClimateInsightService:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    return ClimateInsightService.create(settings)


def _show_validation(exc: ValidationError) -> None:
    for failure in exc.failures:
        st.error(f"{failure.field}: {failure.message}")


def _degraded_banner(reliability: Reliability, source: str) -> None:
    if reliability is Reliability.LOW:
        st.warning(
            "The climate data service did not respond; showing synthetic fallback data "
            f"(source: {source})."
        )
    elif reliability is Reliability.MEDIUM:
        st.caption(f"Demo mode: synthetic data (source: {source})")


try:
    service = get_service()
except RuntimeError as exc:
    st.error(f"Configuration error: {exc}")
    st.stop()

st.title("Climate Insight Dashboard")

with st.sidebar:
    st.header("Controls")
    options = indicator_options()
    indicator = st.selectbox(
        "Indicator",
        options=list(options.keys()),
        format_func=lambda value: options[value],
    )
    region = st.text_input("Region", value="Germany")
    time_range = st.radio(
        "Time range",
        options=[member.value for member in TimeRange],
        index=1,
        horizontal=True,
    )
    st.caption(f"Data source: {DEFAULT_CATALOG.source(Indicator(indicator))}")
    with st.expander("Service status", expanded=False):
        st.json(service.analytics())

request = {"indicator": indicator, "region": region, "timeRange": time_range}

forecast_tab, insight_tab, similar_tab, live_tab, table_tab = st.tabs(
    ["Forecast", "Executive Insight", "Similar Regions", "Live Reading", "Ask for a Table"]
)

with forecast_tab:
    query_start = time.time()
    try:
        with st.spinner("Generating forecast..."):
            series = asyncio.run(service.fetch_forecast(request))
    except ValidationError as exc:
        _show_validation(exc)
    else:
        _degraded_banner(series.reliability, series.source)
        st.plotly_chart(build_forecast_chart(series), use_container_width=True)
        trend_col, accuracy_col, points_col = st.columns(3)
        trend_col.metric("Trend", series.summary.trend.value.title())
        accuracy_col.metric("Accuracy", f"{round(series.summary.accuracy_score * 100)}%")
        points_col.metric("Months", len(series.points))
        st.write(series.summary.narrative)
        st.info(f"Recommendation: {series.summary.recommendation}")
        with st.expander("Forecast data", expanded=False):
            st.dataframe(series.to_frame())
    finally:
        st.caption(f"Query time: {time.time() - query_start:.2f}s")

with insight_tab:
    try:
        with st.spinner("Writing executive summary..."):
            narrative = asyncio.run(service.fetch_narrative(request))
    except ValidationError as exc:
        _show_validation(exc)
    else:
        _degraded_banner(narrative.reliability, narrative.source)
        st.markdown(narrative.text)

with similar_tab:
    try:
        results = asyncio.run(service.fetch_similar_regions(request))
    except ValidationError as exc:
        _show_validation(exc)
    else:
        if not results:
            st.info("No similar regions found.")
        else:
            _degraded_banner(results[0].reliability, results[0].source)
            st.plotly_chart(build_similarity_chart(results), use_container_width=True)
            st.dataframe(
                pd.DataFrame(
                    [
                        {
                            "region": r.region,
                            "similarity": r.similarity_score,
                            "patterns": ", ".join(r.matching_patterns),
                            "recommendations": r.recommendations,
                        }
                        for r in results
                    ]
                )
            )

with live_tab:
    history_key = f"live:{indicator}:{region.strip().casefold()}"
    history: List[DataPoint] = st.session_state.setdefault(history_key, [])
    threshold = st.number_input("Alert threshold (% change)", min_value=0.0, value=5.0, step=0.5)
    direction = st.selectbox("Alert direction", options=["both", "increase", "decrease"])
    if st.button("Fetch latest reading"):
        try:
            rule = service.set_alert(indicator, region, {"threshold": threshold, "direction": direction})
            point = asyncio.run(service.latest_reading(indicator, region))
        except ValidationError as exc:
            _show_validation(exc)
        else:
            if rule_matches(rule, point):
                st.warning(f"Alert: {point.change_percent}% change crossed the {threshold}% threshold.")
            history.append(point)
            del history[:-LIVE_HISTORY_LIMIT]
    if history:
        latest = history[-1]
        _degraded_banner(latest.reliability, latest.source)
        st.metric(
            DEFAULT_CATALOG.label(latest.indicator),
            f"{latest.value} {DEFAULT_CATALOG.unit(latest.indicator)}",
            f"{latest.change_percent}%",
        )
        st.plotly_chart(build_live_chart(history), use_container_width=True)
    else:
        st.info("Fetch a reading to start the live series.")

with table_tab:
    prompt = st.text_area("Question", value="Compare emission intensity across EU member states.")
    columns_raw = st.text_input("Columns (comma separated, optional)", value="")
    if st.button("Build table"):
        columns = [c.strip() for c in columns_raw.split(",") if c.strip()] or None
        try:
            table = asyncio.run(service.fetch_structured_table(prompt, columns))
        except ValidationError as exc:
            _show_validation(exc)
        else:
            _degraded_banner(table.reliability, table.source)
            st.dataframe(table.to_frame())

errors = service.error_log()
if errors:
    with st.expander(f"Recent errors ({len(errors)})", expanded=False):
        st.dataframe(pd.DataFrame(errors)[["timestamp", "code", "severity", "message"]].tail(20))
