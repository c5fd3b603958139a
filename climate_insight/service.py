from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from climate_insight.alerts import AlertEvaluator
from climate_insight.errors import ErrorReporter, InsightError
from climate_insight.gateway import RemoteDataGateway
from climate_insight.indicators import IndicatorCatalog
from climate_insight.models import (
    AlertRule,
    DataPoint,
    ForecastSeries,
    Listener,
    Narrative,
    SimilarityResult,
    StructuredTable,
    topic_key,
)
from climate_insight.notify import Notifier, build_notifier
from climate_insight.remote import CortexBackend, RemoteBackend
from climate_insight.retry import CancelToken, RetryPolicy
from climate_insight.settings import DataMode, Settings
from climate_insight.stream import HttpLineStream, UpdateStream
from climate_insight.subscriptions import SubscriptionManager
from climate_insight.synthetic import SyntheticDataProducer
from climate_insight.validation import ValidationGate, ensure_valid

LOGGER = logging.getLogger(__name__)


def _time_range_of(request: Mapping[str, Any]) -> Any:
    if "timeRange" in request:
        return request["timeRange"]
    return request.get("time_range")


def _coerce_rule(rule: Union[AlertRule, Mapping[str, Any]]) -> AlertRule:
    if isinstance(rule, AlertRule):
        return rule
    kind = rule.get("kind") or rule.get("type") or "percentage"
    return AlertRule(
        threshold=float(rule["threshold"]),
        kind=kind,
        direction=rule.get("direction", "both"),
    )


class ClimateInsightService:
    """One isolated instance of the data-access layer; build with ``create``."""

    def __init__(
        self,
        settings: Settings,
        gateway: RemoteDataGateway,
        subscriptions: SubscriptionManager,
        alerts: AlertEvaluator,
        reporter: ErrorReporter,
        notifier: Optional[Notifier] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.subscriptions = subscriptions
        self.alerts = alerts
        self.reporter = reporter
        self.notifier = notifier
        self.validator = gateway.validator
        self._last_values: Dict[str, float] = {}
        self._disposed = False

    @classmethod
    def create(
        cls,
        settings: Optional[Settings] = None,
        backend: Optional[RemoteBackend] = None,
        notifier: Optional[Notifier] = None,
        producer: Optional[SyntheticDataProducer] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Optional[Callable[[], float]] = None,
        stream: Optional[UpdateStream] = None,
    ) -> "ClimateInsightService":
        settings = settings or Settings.from_env()
        sleep = sleep or asyncio.sleep
        clock = clock or time.monotonic
        reporter = ErrorReporter()
        if producer is None:
            catalog = IndicatorCatalog(settings.synthetic_overrides)
            producer = SyntheticDataProducer(catalog, seed=settings.synthetic_seed)
        if backend is None and settings.mode is DataMode.REMOTE:
            backend = CortexBackend(settings.cortex_model)
        if notifier is None:
            notifier = build_notifier(settings.notifications_enabled, settings.alert_webhook_url)
        if stream is None and settings.stream_url:
            stream = HttpLineStream(settings.stream_url)

        gateway = RemoteDataGateway(
            settings,
            producer,
            backend,
            retry=RetryPolicy(settings.max_retries, settings.retry_base_delay_s, sleep=sleep),
            reporter=reporter,
            validator=ValidationGate(),
            clock=clock,
        )
        alerts = AlertEvaluator(notifier, reporter)
        subscriptions = SubscriptionManager(
            gateway.get_latest_data_point,
            alerts,
            poll_interval=settings.poll_interval_s,
            reporter=reporter,
            sleep=sleep,
            clock=clock,
            stream=stream,
            stream_retries=settings.stream_retries,
        )
        LOGGER.info(
            "Climate insight service created mode=%s session=%s", settings.mode.value, reporter.session_id
        )
        return cls(settings, gateway, subscriptions, alerts, reporter, notifier)

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        await self.subscriptions.close()
        self.gateway.clear_caches()
        self.alerts.clear()
        self._last_values.clear()
        LOGGER.info("Climate insight service disposed session=%s", self.reporter.session_id)

    async def __aenter__(self) -> "ClimateInsightService":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.dispose()

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def fetch_forecast(
        self, request: Mapping[str, Any], cancel_token: Optional[CancelToken] = None
    ) -> ForecastSeries:
        return await self.gateway.get_forecast(
            request.get("indicator"), request.get("region"), _time_range_of(request), cancel_token
        )

    async def fetch_narrative(
        self, request: Mapping[str, Any], cancel_token: Optional[CancelToken] = None
    ) -> Narrative:
        return await self.gateway.get_narrative_insight(
            request.get("indicator"), request.get("region"), cancel_token
        )

    async def fetch_similar_regions(
        self, request: Mapping[str, Any], cancel_token: Optional[CancelToken] = None
    ) -> List[SimilarityResult]:
        return await self.gateway.get_similar_regions(
            request.get("indicator"), request.get("region"), cancel_token
        )

    async def fetch_structured_table(
        self,
        prompt: str,
        columns: Optional[Sequence[str]] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> StructuredTable:
        return await self.gateway.get_structured_table(prompt, columns, cancel_token)

    async def latest_reading(self, indicator: Any, region: Any) -> DataPoint:
        """One on-demand reading; continues the topic's series and runs its alert rule."""
        request = ensure_valid(
            self.validator.validate_insight({"indicator": indicator, "region": region}),
            operation="latest_reading",
        )
        topic = topic_key(request.indicator, request.region)
        previous = self.subscriptions.last_value(topic)
        if previous is None:
            previous = self._last_values.get(topic)
        point = await self.gateway.get_latest_data_point(request.indicator, request.region, previous)
        self._last_values[topic] = point.value
        self.alerts.evaluate(point)
        return point

    def subscribe(self, indicator: Any, region: Any, on_update: Listener) -> Callable[[], None]:
        request = ensure_valid(
            self.validator.validate_insight({"indicator": indicator, "region": region}),
            operation="subscribe",
        )
        return self.subscriptions.subscribe(request.indicator, request.region, on_update)

    def on_error(self, callback: Callable[[InsightError], None]) -> Callable[[], None]:
        return self.subscriptions.on_error(callback)

    def set_alert(self, indicator: Any, region: Any, rule: Union[AlertRule, Mapping[str, Any]]) -> AlertRule:
        request = ensure_valid(
            self.validator.validate_insight({"indicator": indicator, "region": region}),
            operation="set_alert",
        )
        alert = _coerce_rule(rule)
        self.alerts.set_rule(topic_key(request.indicator, request.region), alert)
        return alert

    def remove_alert(self, indicator: Any, region: Any) -> None:
        request = ensure_valid(
            self.validator.validate_insight({"indicator": indicator, "region": region}),
            operation="remove_alert",
        )
        self.alerts.remove_rule(topic_key(request.indicator, request.region))

    def analytics(self) -> Dict[str, Any]:
        return {
            "mode": self.settings.mode.value,
            "demo": self.gateway.demo_mode,
            "session_id": self.reporter.session_id,
            "caches": {kind.value: cache.stats() for kind, cache in self.gateway.caches.items()},
            "active_topics": self.subscriptions.active_topics(),
            "streaming": self.subscriptions.streaming,
            "subscriptions": self.subscriptions.status(),
            "alert_rules": len(self.alerts),
            "retries_in_flight": len(self.gateway.retry.in_flight),
            "error_count": len(self.reporter),
        }

    def error_log(self) -> List[Dict[str, Any]]:
        return [error.to_dict() for error in self.reporter.error_log()]
