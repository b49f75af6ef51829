"""
Cadence expressions.

Two forms are accepted:
  - crontab, 5 fields, evaluated in the reference timezone ("0 0 * * *")
  - fixed interval, "every 15 minutes" / "every 2 hours" / "every 30 seconds"

Intervals are anchored at a fixed instant so the fire times do not depend on
when the process started.
"""
from __future__ import annotations

import re
from datetime import datetime, timedelta, tzinfo
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from gameloop.core.clock import ensure_aware
from gameloop.core.errors import SchedulerConfigError

_INTERVAL_RE = re.compile(
    r"^every\s+(?P<count>\d+)\s*(?P<unit>s|sec|secs|seconds?|m|min|mins|minutes?|h|hours?)$",
    re.IGNORECASE,
)
_UNIT_KWARG = {"s": "seconds", "m": "minutes", "h": "hours"}
_INTERVAL_ANCHOR = datetime(2000, 1, 1)
_TICK = timedelta(microseconds=1)


def resolve_timezone(name: Optional[str]) -> tzinfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise SchedulerConfigError(f"Unknown timezone: {name!r}") from exc


class Cadence:
    """A parsed cadence expression bound to a timezone."""

    def __init__(self, expression: str, trigger: BaseTrigger, tz: tzinfo):
        self.expression = expression
        self.trigger = trigger
        self.tz = tz

    def next_fire_after(self, now: datetime) -> datetime:
        """First fire time strictly after `now`. Missed fires are never replayed."""
        moment = ensure_aware(now).astimezone(self.tz) + _TICK
        fire = self.trigger.get_next_fire_time(None, moment)
        if fire is None:
            raise SchedulerConfigError(f"Cadence {self.expression!r} never fires again")
        return fire

    def __repr__(self) -> str:
        return f"Cadence({self.expression!r}, tz={self.tz})"


def parse_cadence(expression: str, tz: Union[tzinfo, str, None] = None) -> Cadence:
    """Parse an expression or raise SchedulerConfigError."""
    zone = tz if isinstance(tz, tzinfo) else resolve_timezone(tz)
    text = (expression or "").strip()
    if not text:
        raise SchedulerConfigError("Cadence expression is empty")

    match = _INTERVAL_RE.match(text)
    if match:
        count = int(match.group("count"))
        if count <= 0:
            raise SchedulerConfigError(f"Cadence interval must be positive: {text!r}")
        unit = _UNIT_KWARG[match.group("unit")[0].lower()]
        trigger = IntervalTrigger(
            **{unit: count},
            start_date=_INTERVAL_ANCHOR.replace(tzinfo=zone),
            timezone=zone,
        )
        return Cadence(text, trigger, zone)

    if len(text.split()) != 5:
        raise SchedulerConfigError(f"Invalid cadence expression: {text!r}")
    try:
        trigger = CronTrigger.from_crontab(text, timezone=zone)
    except ValueError as exc:
        raise SchedulerConfigError(f"Invalid cadence expression: {text!r}: {exc}") from exc
    return Cadence(text, trigger, zone)
