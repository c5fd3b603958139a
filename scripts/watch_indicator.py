import argparse
import asyncio
import sys

from climate_insight.errors import ValidationError
from climate_insight.indicators import Indicator
from climate_insight.logging_utils import configure_logging
from climate_insight.models import AlertDirection, AlertRule, DataPoint, ThresholdKind
from climate_insight.service import ClimateInsightService
from climate_insight.settings import Settings


def _print_status(message: str) -> None:
    print(message, flush=True)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Watch a climate indicator and alert on large moves.")
    parser.add_argument("indicator", choices=[member.value for member in Indicator], help="Indicator to watch.")
    parser.add_argument("region", type=str, help="Region name, e.g. Germany.")
    parser.add_argument("--threshold", type=float, default=None, help="Alert threshold; omit for no alert.")
    parser.add_argument(
        "--kind",
        choices=[member.value for member in ThresholdKind],
        default=ThresholdKind.PERCENTAGE.value,
        help="Compare the threshold against absolute or percentage change.",
    )
    parser.add_argument(
        "--direction",
        choices=[member.value for member in AlertDirection],
        default=AlertDirection.BOTH.value,
        help="Only alert on moves in this direction.",
    )
    parser.add_argument("--interval", type=float, default=None, help="Poll interval in seconds.")
    parser.add_argument("--ticks", type=int, default=0, help="Stop after this many readings (0 = forever).")
    parser.add_argument("--debug", action="store_true", help="Enable verbose logging.")
    return parser.parse_args()


def _format_point(point: DataPoint) -> str:
    return (
        f"{point.timestamp:%Y-%m-%d %H:%M:%S} {point.indicator.value} {point.region}: "
        f"{point.value} ({point.change:+} / {point.change_percent:+}%) "
        f"[{point.source}, {point.reliability.value}]"
    )


async def watch(args: argparse.Namespace) -> int:
    settings = Settings.from_env()
    if args.interval is not None:
        settings.poll_interval_s = args.interval
    service = ClimateInsightService.create(settings)
    done = asyncio.Event()
    seen = 0

    def on_update(point: DataPoint) -> None:
        nonlocal seen
        seen += 1
        _print_status(_format_point(point))
        if args.ticks and seen >= args.ticks:
            done.set()

    service.on_error(lambda error: _print_status(f"[{error.code.value}] {error.user_message}"))

    try:
        if args.threshold is not None:
            service.set_alert(
                args.indicator,
                args.region,
                AlertRule(threshold=args.threshold, kind=args.kind, direction=args.direction),
            )
        unsubscribe = service.subscribe(args.indicator, args.region, on_update)
    except ValidationError as exc:
        for failure in exc.failures:
            _print_status(f"{failure.field}: {failure.message}")
        await service.dispose()
        return 2

    try:
        await done.wait()
    finally:
        unsubscribe()
        await service.dispose()
    return 0


def main() -> None:
    args = parse_args()
    configure_logging("DEBUG" if args.debug else "INFO")
    try:
        code = asyncio.run(watch(args))
    except KeyboardInterrupt:
        _print_status("Stopped.")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
