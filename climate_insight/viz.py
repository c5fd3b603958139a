from __future__ import annotations

from typing import Sequence

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

from climate_insight.indicators import DEFAULT_CATALOG, IndicatorCatalog
from climate_insight.models import DataPoint, ForecastSeries, Reliability, SimilarityResult

_BAND_COLOR = "rgba(31, 119, 180, 0.18)"
_LINE_COLORS = {
    Reliability.HIGH: "#1f77b4",
    Reliability.MEDIUM: "#2ca02c",
    Reliability.LOW: "#d62728",
}


def build_forecast_chart(series: ForecastSeries, catalog: IndicatorCatalog = DEFAULT_CATALOG) -> go.Figure:
    df = series.to_frame()
    if df.empty:
        return go.Figure()
    unit = catalog.unit(series.indicator)
    fig = go.Figure()
    bounded = df.dropna(subset=["confidence_low", "confidence_high"])
    if not bounded.empty:
        fig.add_trace(
            go.Scatter(
                x=pd.concat([bounded["timestamp"], bounded["timestamp"][::-1]]),
                y=pd.concat([bounded["confidence_high"], bounded["confidence_low"][::-1]]),
                fill="toself",
                fillcolor=_BAND_COLOR,
                line={"color": "rgba(0,0,0,0)"},
                hoverinfo="skip",
                name="Confidence band",
            )
        )
    fig.add_trace(
        go.Scatter(
            x=df["timestamp"],
            y=df["value"],
            mode="lines+markers",
            line={"color": _LINE_COLORS.get(series.reliability, "#1f77b4"), "width": 2},
            marker={"size": 4},
            name=catalog.label(series.indicator),
            hovertemplate=f"%{{x|%b %Y}}<br>%{{y:.2f}} {unit}<extra></extra>",
        )
    )
    fig.update_yaxes(title=unit)
    fig.update_xaxes(title="Month")
    fig.update_layout(
        title=f"{catalog.label(series.indicator)} forecast for {series.region}",
        legend_title_text=f"Source: {series.source}",
        margin={"r": 0, "t": 40, "l": 0, "b": 0},
    )
    return fig


def build_similarity_chart(results: Sequence[SimilarityResult]) -> go.Figure:
    if not results:
        return go.Figure()
    df = pd.DataFrame(
        {
            "region": [r.region for r in results],
            "similarity_score": [r.similarity_score for r in results],
            "recommendations": [r.recommendations for r in results],
        }
    ).sort_values("similarity_score")
    fig = px.bar(
        df,
        x="similarity_score",
        y="region",
        orientation="h",
        color="similarity_score",
        color_continuous_scale="Blues",
        range_x=[0, 1],
        hover_data={"recommendations": True, "similarity_score": ":.2f"},
    )
    fig.update_xaxes(title="Similarity")
    fig.update_yaxes(title="")
    fig.update_layout(margin={"r": 0, "t": 20, "l": 0, "b": 0}, coloraxis_showscale=False)
    return fig


def build_live_chart(points: Sequence[DataPoint]) -> go.Figure:
    if not points:
        return go.Figure()
    df = pd.DataFrame([p.to_dict() for p in points])
    df["timestamp"] = pd.to_datetime(df["timestamp"])
    return px.line(
        df,
        x="timestamp",
        y="value",
        markers=True,
        hover_data={"change": True, "change_percent": True, "source": True},
    )
