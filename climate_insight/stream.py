"""
Push-based live readings.

An update stream is an async iterator of DataPoints covering any topic; the
subscription manager routes each point to the listeners of its topic and
keeps polling as the fallback whenever the stream is down.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Mapping, Optional, Protocol

import pandas as pd
import requests

from climate_insight.errors import ErrorCategory, RemoteFailureError, ResponseShapeError
from climate_insight.indicators import Indicator
from climate_insight.models import DataPoint, Reliability

LOGGER = logging.getLogger(__name__)


class UpdateStream(Protocol):
    def events(self) -> AsyncIterator[DataPoint]:
        ...


def point_from_message(message: Mapping[str, Any]) -> DataPoint:
    try:
        timestamp = pd.to_datetime(message["timestamp"], utc=True).to_pydatetime()
        change_percent = message.get("change_percent", message.get("changePercent"))
        return DataPoint(
            timestamp=timestamp,
            indicator=Indicator(message["indicator"]),
            region=str(message["region"]).strip(),
            value=float(message["value"]),
            change=float(message.get("change", 0.0)),
            change_percent=float(change_percent if change_percent is not None else 0.0),
            source=str(message.get("source") or "stream"),
            reliability=Reliability(message.get("reliability", Reliability.HIGH.value)),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ResponseShapeError(f"Malformed stream message: {exc}") from exc


class HttpLineStream:
    """Newline-delimited JSON (or ``data:`` event lines) over a long-lived HTTP response."""

    def __init__(self, url: str, timeout_s: float = 30.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout_s = timeout_s
        self._session = session or requests.Session()

    def _open(self) -> requests.Response:
        try:
            response = self._session.get(self.url, stream=True, timeout=self.timeout_s)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise RemoteFailureError(
                f"Stream connection failed: {exc}", category=ErrorCategory.NETWORK
            ) from exc
        return response

    async def events(self) -> AsyncIterator[DataPoint]:
        response = await asyncio.to_thread(self._open)
        LOGGER.info("Stream connected url=%s", self.url)
        try:
            lines = response.iter_lines(decode_unicode=True)
            while True:
                try:
                    line = await asyncio.to_thread(next, lines, None)
                except requests.RequestException as exc:
                    raise RemoteFailureError(
                        f"Stream read failed: {exc}", category=ErrorCategory.NETWORK
                    ) from exc
                if line is None:
                    return
                line = line.strip()
                if line.startswith("data:"):
                    line = line[len("data:"):].strip()
                if not line or line.startswith(":"):
                    continue
                try:
                    yield point_from_message(json.loads(line))
                except (ValueError, ResponseShapeError) as exc:
                    LOGGER.warning("Skipping stream message: %s", exc)
        finally:
            response.close()
