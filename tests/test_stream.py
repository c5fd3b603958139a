import asyncio
import json

import pytest
import requests

from climate_insight.errors import RemoteFailureError, ResponseShapeError
from climate_insight.indicators import Indicator
from climate_insight.models import Reliability
from climate_insight.stream import HttpLineStream, point_from_message

MESSAGE = {
    "timestamp": "2024-06-15T12:30:00Z",
    "indicator": "co2",
    "region": "Germany",
    "value": 421.3,
    "change": 0.4,
    "changePercent": 0.09,
    "source": "NOAA",
    "reliability": "high",
}


class FakeResponse:
    def __init__(self, lines):
        self.lines = lines
        self.closed = False

    def raise_for_status(self):
        return None

    def iter_lines(self, decode_unicode=False):
        return iter(self.lines)

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def get(self, url, stream, timeout):
        self.requests.append((url, stream, timeout))
        if self.error is not None:
            raise self.error
        return self.response


async def _collect(stream):
    return [point async for point in stream.events()]


def test_point_from_message_accepts_camel_case():
    point = point_from_message(MESSAGE)
    assert point.indicator is Indicator.CO2
    assert point.change_percent == 0.09
    assert point.reliability is Reliability.HIGH
    assert point.timestamp.year == 2024
    assert point.topic == "co2:germany"


def test_point_from_message_rejects_bad_shapes():
    with pytest.raises(ResponseShapeError):
        point_from_message({"indicator": "co2", "region": "Germany"})
    with pytest.raises(ResponseShapeError):
        point_from_message({**MESSAGE, "indicator": "sea_level"})


def test_line_stream_skips_noise_and_closes_response():
    response = FakeResponse(
        [
            "data: " + json.dumps(MESSAGE),
            "",
            ": keep-alive",
            "not json",
            json.dumps({**MESSAGE, "value": 422.0}),
        ]
    )
    session = FakeSession(response)
    stream = HttpLineStream("https://feeds.example.com/live", timeout_s=5.0, session=session)

    points = asyncio.run(_collect(stream))

    assert [p.value for p in points] == [421.3, 422.0]
    assert session.requests == [("https://feeds.example.com/live", True, 5.0)]
    assert response.closed


def test_line_stream_connection_failure_is_remote_failure():
    session = FakeSession(error=requests.exceptions.ConnectionError("refused"))
    stream = HttpLineStream("https://feeds.example.com/live", session=session)
    with pytest.raises(RemoteFailureError):
        asyncio.run(_collect(stream))
