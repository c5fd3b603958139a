from __future__ import annotations

import asyncio
import inspect
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Set

from climate_insight.alerts import AlertEvaluator
from climate_insight.errors import (
    ErrorCategory,
    ErrorCode,
    ErrorReporter,
    ErrorSeverity,
    InsightError,
)
from climate_insight.indicators import Indicator
from climate_insight.models import DataPoint, Listener, Subscription, topic_key
from climate_insight.stream import UpdateStream

LOGGER = logging.getLogger(__name__)

Fetch = Callable[[Indicator, str, Optional[float]], Awaitable[DataPoint]]
Sleep = Callable[[float], Awaitable[None]]
ErrorListener = Callable[[InsightError], None]

STREAM_MAX_DELAY = 30.0


@dataclass
class _TopicState:
    indicator: Indicator
    region: str
    subscriptions: List[Subscription] = field(default_factory=list)
    task: Optional[asyncio.Task] = None
    deliveries: Set[asyncio.Task] = field(default_factory=set)
    last_value: Optional[float] = None
    ticks: int = 0
    streamed: int = 0


class SubscriptionManager:
    """
    Per-topic listener lists with one refresh task per active topic.

    A topic's task exists exactly while at least one listener is registered.
    Ticks run on a fixed cadence measured from the first fetch; async
    listeners are delivered as tracked tasks so a slow one never holds up the
    next tick. Each update runs the alert check, then reaches every listener
    still registered. Listener failures are reported and never stop delivery
    to the others.

    With an ``UpdateStream`` configured, pushed readings go through the same
    delivery path; a dropped stream reconnects with capped exponential backoff
    and polling keeps running throughout.
    """

    def __init__(
        self,
        fetch: Fetch,
        evaluator: Optional[AlertEvaluator] = None,
        poll_interval: float = 30.0,
        reporter: Optional[ErrorReporter] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        stream: Optional[UpdateStream] = None,
        stream_retries: int = 3,
        stream_base_delay: float = 1.0,
    ):
        self._fetch = fetch
        self._evaluator = evaluator
        self.poll_interval = poll_interval
        self._reporter = reporter if reporter is not None else ErrorReporter()
        self._sleep = sleep
        self._clock = clock
        self._topics: Dict[str, _TopicState] = {}
        self._error_listeners: List[ErrorListener] = []
        self._stream = stream
        self.stream_retries = stream_retries
        self.stream_base_delay = stream_base_delay
        self._stream_task: Optional[asyncio.Task] = None

    def subscribe(self, indicator: Indicator, region: str, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; must be called from a running event loop."""
        loop = asyncio.get_running_loop()
        indicator = Indicator(indicator)
        topic = topic_key(indicator, region)
        state = self._topics.get(topic)
        if state is None:
            state = _TopicState(indicator=indicator, region=region.strip())
            self._topics[topic] = state
            state.task = loop.create_task(
                self._run(topic, state), name=f"refresh:{topic}"
            )
            LOGGER.info("Started refresh loop topic=%s interval=%ss", topic, self.poll_interval)
        if self._stream is not None and self._stream_task is None:
            self._stream_task = loop.create_task(self._run_stream(), name="update-stream")

        subscription = Subscription(topic=topic, listener=listener)
        state.subscriptions.append(subscription)

        def unsubscribe() -> None:
            self._remove(subscription)

        return unsubscribe

    def on_error(self, callback: ErrorListener) -> Callable[[], None]:
        """Register ``callback`` for refresh and stream failures."""
        self._error_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._error_listeners:
                self._error_listeners.remove(callback)

        return unsubscribe

    def _remove(self, subscription: Subscription) -> None:
        if not subscription.active:
            return
        subscription.active = False
        state = self._topics.get(subscription.topic)
        if state is None or subscription not in state.subscriptions:
            return
        state.subscriptions.remove(subscription)
        if state.subscriptions:
            return
        del self._topics[subscription.topic]
        for task in self._tasks_of(state):
            task.cancel()
        LOGGER.info("Stopped refresh loop topic=%s", subscription.topic)
        if not self._topics and self._stream_task is not None:
            self._stream_task.cancel()
            self._stream_task = None

    @staticmethod
    def _tasks_of(state: _TopicState) -> List[asyncio.Task]:
        tasks = list(state.deliveries)
        if state.task is not None:
            tasks.append(state.task)
        return tasks

    def is_active(self, indicator: Indicator, region: str) -> bool:
        return topic_key(indicator, region) in self._topics

    def active_topics(self) -> List[str]:
        return sorted(self._topics)

    def listener_count(self, topic: str) -> int:
        state = self._topics.get(topic)
        return len(state.subscriptions) if state else 0

    def last_value(self, topic: str) -> Optional[float]:
        state = self._topics.get(topic)
        return state.last_value if state else None

    @property
    def streaming(self) -> bool:
        return self._stream_task is not None and not self._stream_task.done()

    def status(self) -> Dict[str, Dict[str, object]]:
        return {
            topic: {
                "listeners": len(state.subscriptions),
                "ticks": state.ticks,
                "streamed": state.streamed,
                "pending_deliveries": len(state.deliveries),
                "last_value": state.last_value,
            }
            for topic, state in sorted(self._topics.items())
        }

    async def close(self) -> None:
        states = list(self._topics.values())
        self._topics.clear()
        self._error_listeners.clear()
        tasks = []
        for state in states:
            for subscription in state.subscriptions:
                subscription.active = False
            state.subscriptions.clear()
            tasks.extend(self._tasks_of(state))
        if self._stream_task is not None:
            tasks.append(self._stream_task)
            self._stream_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, topic: str, state: _TopicState) -> None:
        start = self._clock()
        ticks = 0
        try:
            while True:
                await self._tick(topic, state)
                ticks += 1
                now = self._clock()
                deadline = start + ticks * self.poll_interval
                if self.poll_interval > 0 and deadline < now:
                    skipped = int((now - start) // self.poll_interval) + 1 - ticks
                    ticks += skipped
                    deadline = start + ticks * self.poll_interval
                    LOGGER.warning("Refresh overran topic=%s skipped=%d", topic, skipped)
                await self._sleep(deadline - now)
        except asyncio.CancelledError:
            LOGGER.debug("Refresh loop cancelled topic=%s", topic)
            raise

    async def _tick(self, topic: str, state: _TopicState) -> None:
        try:
            point = await self._fetch(state.indicator, state.region, state.last_value)
        except Exception as exc:
            error = self._reporter.report(
                ErrorCode.SUBSCRIPTION_FETCH_FAILURE,
                f"Refresh failed for {topic}",
                severity=ErrorSeverity.MEDIUM,
                category=ErrorCategory.SUBSCRIPTION,
                cause=exc,
                topic=topic,
            )
            self._emit_error(error)
            return
        state.ticks += 1
        self._deliver(topic, state, point)

    def _deliver(self, topic: str, state: _TopicState, point: DataPoint) -> None:
        state.last_value = point.value

        if self._evaluator is not None:
            try:
                self._evaluator.evaluate(point)
            except Exception as exc:
                self._reporter.report(
                    ErrorCode.ALERT_FAILURE,
                    f"Alert evaluation failed for {topic}",
                    severity=ErrorSeverity.LOW,
                    category=ErrorCategory.SUBSCRIPTION,
                    cause=exc,
                    topic=topic,
                )

        for subscription in list(state.subscriptions):
            if not subscription.active:
                continue
            try:
                outcome = subscription.listener(point)
            except Exception as exc:
                self._listener_failed(topic, exc)
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                state.deliveries.add(task)
                task.add_done_callback(partial(self._delivery_done, topic, state))

    def _delivery_done(self, topic: str, state: _TopicState, task: asyncio.Task) -> None:
        state.deliveries.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._listener_failed(topic, exc)

    def _listener_failed(self, topic: str, exc: BaseException) -> None:
        self._reporter.report(
            ErrorCode.SUBSCRIPTION_CALLBACK_FAILURE,
            f"Listener failed for {topic}",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.SUBSCRIPTION,
            cause=exc,
            topic=topic,
        )

    def _emit_error(self, error: InsightError) -> None:
        for callback in list(self._error_listeners):
            try:
                callback(error)
            except Exception:
                LOGGER.exception("Error listener failed code=%s", error.code.value)

    async def _run_stream(self) -> None:
        stream = self._stream
        if stream is None:
            return
        reconnects = 0
        try:
            while True:
                try:
                    async with aclosing(stream.events()) as events:
                        async for point in events:
                            reconnects = 0
                            self._on_stream_point(point)
                    LOGGER.info("Update stream closed")
                except Exception as exc:
                    error = self._reporter.report(
                        ErrorCode.STREAM_FAILURE,
                        "Real-time connection error",
                        severity=ErrorSeverity.MEDIUM,
                        category=ErrorCategory.NETWORK,
                        cause=exc,
                    )
                    self._emit_error(error)
                if reconnects >= self.stream_retries:
                    LOGGER.warning(
                        "Update stream gave up after %d reconnects; polling continues", reconnects
                    )
                    return
                reconnects += 1
                delay = min(self.stream_base_delay * 2 ** reconnects, STREAM_MAX_DELAY)
                LOGGER.info(
                    "Reconnecting update stream attempt=%d/%d delay=%.1fs",
                    reconnects,
                    self.stream_retries,
                    delay,
                )
                await self._sleep(delay)
        except asyncio.CancelledError:
            LOGGER.debug("Update stream cancelled")
            raise

    def _on_stream_point(self, point: DataPoint) -> None:
        state = self._topics.get(point.topic)
        if state is None:
            return
        state.streamed += 1
        self._deliver(point.topic, state, point)
