from __future__ import annotations

import logging
from typing import Dict, Optional

from climate_insight.errors import ErrorCategory, ErrorCode, ErrorReporter, ErrorSeverity
from climate_insight.models import AlertDirection, AlertRule, DataPoint, ThresholdKind
from climate_insight.notify import Notifier

LOGGER = logging.getLogger(__name__)


def rule_matches(rule: AlertRule, point: DataPoint) -> bool:
    if rule.kind is ThresholdKind.ABSOLUTE:
        magnitude = abs(point.change)
    else:
        magnitude = abs(point.change_percent)
    if magnitude < rule.threshold:
        return False
    if rule.direction is AlertDirection.BOTH:
        return True
    if rule.direction is AlertDirection.INCREASE:
        return point.change > 0
    return point.change < 0


class AlertEvaluator:
    """At most one threshold rule per topic; evaluation notifies on a match."""

    def __init__(self, notifier: Optional[Notifier] = None, reporter: Optional[ErrorReporter] = None):
        self._notifier = notifier
        self._reporter = reporter if reporter is not None else ErrorReporter()
        self._rules: Dict[str, AlertRule] = {}

    def set_rule(self, topic: str, rule: AlertRule) -> None:
        self._rules[topic] = rule

    def remove_rule(self, topic: str) -> None:
        self._rules.pop(topic, None)

    def rule_for(self, topic: str) -> Optional[AlertRule]:
        return self._rules.get(topic)

    def clear(self) -> None:
        self._rules.clear()

    def __len__(self) -> int:
        return len(self._rules)

    def evaluate(self, point: DataPoint) -> bool:
        rule = self._rules.get(point.topic)
        if rule is None:
            return False
        if not rule_matches(rule, point):
            return False
        self._trigger(point, rule)
        return True

    def _trigger(self, point: DataPoint, rule: AlertRule) -> None:
        LOGGER.warning(
            "Climate alert topic=%s change=%s change_percent=%s threshold=%s kind=%s direction=%s",
            point.topic,
            point.change,
            point.change_percent,
            rule.threshold,
            rule.kind.value,
            rule.direction.value,
            extra={
                "topic": point.topic,
                "change": point.change,
                "change_percent": point.change_percent,
                "threshold": rule.threshold,
            },
        )
        if self._notifier is None:
            return
        title = f"Climate Alert: {point.indicator.value}"
        body = f"{point.region}: {point.change_percent}% change detected (threshold {rule.threshold})"
        try:
            self._notifier.notify(title, body)
        except Exception as exc:
            self._reporter.report(
                ErrorCode.ALERT_FAILURE,
                f"Alert notification failed for {point.topic}",
                severity=ErrorSeverity.LOW,
                category=ErrorCategory.SUBSCRIPTION,
                cause=exc,
                topic=point.topic,
            )
