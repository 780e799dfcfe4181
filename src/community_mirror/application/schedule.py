"""Schedule specs deciding when sync cycles run.

Accepted forms:

- ``@every <duration>`` with durations such as ``90s``, ``15m``, ``1h30m``
- ``@hourly``, ``@daily`` (``@midnight``), ``@weekly``, ``@monthly``
- five-field cron expressions ``minute hour day-of-month month day-of-week``

Cron expressions are evaluated in UTC.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Optional

from community_mirror.domain.errors import ConfigurationError

DESCRIPTORS = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 * *",
}

MONTH_NAMES = {
    name: i + 1
    for i, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"]
    )
}
DAY_NAMES = {name: i for i, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}

DURATION_PART = re.compile(r"(\d+)(h|m|s)")
UNIT_SECONDS = {"h": 3600, "m": 60, "s": 1}

# give up looking for a matching instant after this long (e.g. "0 0 30 2 *")
SEARCH_HORIZON = timedelta(days=366 * 5)


def parse_duration(text: str) -> timedelta:
    text = text.strip().lower()
    position = 0
    seconds = 0
    for match in DURATION_PART.finditer(text):
        if match.start() != position:
            break
        seconds += int(match.group(1)) * UNIT_SECONDS[match.group(2)]
        position = match.end()
    if not text or position != len(text):
        raise ConfigurationError(f"Malformed duration {text!r}")
    if seconds <= 0:
        raise ConfigurationError(f"Duration must be positive, got {text!r}")
    return timedelta(seconds=seconds)


def _parse_value(token: str, names: dict, low: int, high: int) -> int:
    token = token.lower()
    if token in names:
        return names[token]
    if not token.isdigit():
        raise ValueError(f"bad value {token!r}")
    value = int(token)
    if not low <= value <= high:
        raise ValueError(f"{value} outside {low}-{high}")
    return value


def _parse_field(text: str, low: int, high: int, names: Optional[dict] = None) -> FrozenSet[int]:
    names = names or {}
    values = set()
    for part in text.split(","):
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"bad step {step_text!r}")
            step = int(step_text)
        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start = _parse_value(start_text, names, low, high)
            end = _parse_value(end_text, names, low, high)
            if start > end:
                raise ValueError(f"empty range {part!r}")
        else:
            start = _parse_value(part, names, low, high)
            end = high if step > 1 else start
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    days_restricted: bool
    weekdays_restricted: bool

    @classmethod
    def parse(cls, text: str) -> "CronExpression":
        parts = text.split()
        if len(parts) != 5:
            raise ConfigurationError(f"Cron spec needs 5 fields, got {len(parts)}: {text!r}")
        minute, hour, day, month, weekday = parts
        try:
            weekdays = _parse_field(weekday, 0, 7, DAY_NAMES)
            return cls(
                minutes=_parse_field(minute, 0, 59),
                hours=_parse_field(hour, 0, 23),
                days=_parse_field(day, 1, 31),
                months=_parse_field(month, 1, 12, MONTH_NAMES),
                weekdays=frozenset(d % 7 for d in weekdays),
                days_restricted=day != "*",
                weekdays_restricted=weekday != "*",
            )
        except ValueError as e:
            raise ConfigurationError(f"Malformed cron spec {text!r}: {e}") from e

    def _day_matches(self, moment: datetime) -> bool:
        day_ok = moment.day in self.days
        weekday_ok = (moment.weekday() + 1) % 7 in self.weekdays
        if self.days_restricted and self.weekdays_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def next_after(self, moment: datetime) -> datetime:
        candidate = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        horizon = moment + SEARCH_HORIZON
        while candidate <= horizon:
            if candidate.month not in self.months:
                year = candidate.year + candidate.month // 12
                month = candidate.month % 12 + 1
                candidate = candidate.replace(year=year, month=month, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(candidate):
                candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if candidate.hour not in self.hours:
                candidate = (candidate + timedelta(hours=1)).replace(minute=0)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate
        raise ConfigurationError("Cron spec never fires")


@dataclass(frozen=True)
class Schedule:
    """Parsed schedule spec."""

    spec: str
    interval: Optional[timedelta] = None
    cron: Optional[CronExpression] = None

    @classmethod
    def parse(cls, spec: str) -> "Schedule":
        """
        Parse a schedule spec.

        Raises:
            ConfigurationError: If the spec is empty or malformed.
        """
        if not spec or not spec.strip():
            raise ConfigurationError("Empty schedule spec")
        text = spec.strip()
        lowered = text.lower()
        if lowered.startswith("@every"):
            return cls(spec=text, interval=parse_duration(text[len("@every"):]))
        if lowered.startswith("@"):
            if lowered not in DESCRIPTORS:
                raise ConfigurationError(f"Unknown schedule descriptor {text!r}")
            return cls(spec=text, cron=CronExpression.parse(DESCRIPTORS[lowered]))
        return cls(spec=text, cron=CronExpression.parse(text))

    def next_after(self, moment: Optional[datetime] = None) -> datetime:
        """The first run strictly after ``moment`` (defaults to now, UTC)."""
        if moment is None:
            moment = datetime.now(timezone.utc)
        if self.interval is not None:
            return moment + self.interval
        return self.cron.next_after(moment)
