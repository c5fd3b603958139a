import asyncio
from datetime import datetime, timezone
from typing import Any, List, Optional

import pytest

from climate_insight.gateway import RemoteDataGateway
from climate_insight.indicators import Indicator
from climate_insight.models import DataPoint, Reliability
from climate_insight.retry import RetryPolicy
from climate_insight.settings import DataMode, Settings
from climate_insight.synthetic import SyntheticDataProducer

FIXED_NOW = datetime(2024, 6, 15, 12, 30, tzinfo=timezone.utc)


async def drain(rounds: int = 25) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualClock:
    """Simulated time: ``sleep`` parks until ``advance`` moves past its deadline."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []
        self._sleepers: List[list] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append([self.now + delay, future])
        await future

    @property
    def pending(self) -> int:
        return sum(1 for _, future in self._sleepers if not future.done())

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            await drain()
            due = [entry for entry in self._sleepers if entry[0] <= target and not entry[1].done()]
            if not due:
                break
            entry = min(due, key=lambda item: item[0])
            self.now = entry[0]
            self._sleepers.remove(entry)
            entry[1].set_result(None)
        self._sleepers = [entry for entry in self._sleepers if not entry[1].done()]
        self.now = target
        await drain()


class RecordingSleep:
    """Returns immediately and remembers every requested delay."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ScriptedBackend:
    """Replays responses in order; the last one repeats. Exceptions are raised."""

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.calls: List[tuple] = []

    async def invoke_remote(self, kind, payload):
        self.calls.append((kind, dict(payload)))
        await asyncio.sleep(0)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, BaseException):
            raise item
        return item


class FailingBackend(ScriptedBackend):
    def __init__(self):
        super().__init__(RuntimeError("remote down"))


class FakeFeed:
    """Stands in for the gateway's latest-reading call in subscription tests."""

    def __init__(self, start: float = 100.0):
        self.value = start
        self.previous_values: List[Optional[float]] = []
        self.failures: List[BaseException] = []

    async def __call__(self, indicator, region, previous):
        self.previous_values.append(previous)
        if self.failures:
            raise self.failures.pop(0)
        self.value += 1.0
        return DataPoint(
            timestamp=FIXED_NOW,
            indicator=Indicator(indicator),
            region=region,
            value=self.value,
            change=1.0,
            change_percent=1.0,
            source="test-feed",
            reliability=Reliability.HIGH,
        )

    @property
    def calls(self) -> int:
        return len(self.previous_values)


def make_point(change: float, change_percent: float, region: str = "Germany") -> DataPoint:
    return DataPoint(
        timestamp=FIXED_NOW,
        indicator=Indicator.CO2,
        region=region,
        value=420.0,
        change=change,
        change_percent=change_percent,
        source="test",
        reliability=Reliability.HIGH,
    )


def make_producer(seed: int = 7) -> SyntheticDataProducer:
    return SyntheticDataProducer(seed=seed, clock=lambda: FIXED_NOW)


def make_gateway(
    backend=None,
    *,
    mode: DataMode = DataMode.REMOTE,
    sleep=None,
    clock=None,
    **overrides: Any,
) -> RemoteDataGateway:
    settings = Settings(mode=mode, **overrides)
    retry = RetryPolicy(
        settings.max_retries, settings.retry_base_delay_s, sleep=sleep or RecordingSleep()
    )
    kwargs = {"retry": retry, "now": lambda: FIXED_NOW}
    if clock is not None:
        kwargs["clock"] = clock
    return RemoteDataGateway(settings, make_producer(), backend, **kwargs)


@pytest.fixture
def clean_env(monkeypatch):
    import os

    for name in list(os.environ):
        if name.startswith("CLIMATE_") or name.startswith("SNOWFLAKE_"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch
