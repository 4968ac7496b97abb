"""
Temporal primitives: time instances (UTC milliseconds since epoch),
time intervals and regular time steps.
"""
import dataclasses
import datetime as dt
import enum
from typing import Iterator, Optional, Tuple, Union

import dateutil.parser
from dateutil.relativedelta import relativedelta
from openeo.util import rfc3339

_EPOCH = dt.datetime(1970, 1, 1)


class TimeIntervalException(ValueError):
    pass


def now_utc() -> dt.datetime:
    """
    Current timezone-aware (UTC) datetime
    to be used instead of deprecated naive datetime.utcnow()
    """
    return dt.datetime.now(tz=dt.timezone.utc)


def to_naive_utc(d: dt.datetime) -> dt.datetime:
    if d.tzinfo is not None:
        d = d.astimezone(dt.timezone.utc).replace(tzinfo=None)
    return d


def datetime_to_millis(d: Union[dt.date, dt.datetime]) -> int:
    """Convert (naive UTC or timezone aware) datetime to milliseconds since epoch."""
    if not isinstance(d, dt.datetime):
        d = dt.datetime.combine(d, dt.time())
    delta = to_naive_utc(d) - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 1000 + delta.microseconds // 1000


def millis_to_datetime(millis: int) -> dt.datetime:
    """Convert milliseconds since epoch to naive UTC datetime."""
    return _EPOCH + dt.timedelta(milliseconds=millis)


def parse_instant(value: Union[str, int, dt.datetime]) -> int:
    """
    Parse a time instant (ISO 8601 string, datetime or milliseconds since epoch)
    to milliseconds since epoch. Strings without timezone are interpreted as UTC.
    """
    if isinstance(value, bool):
        raise TimeIntervalException(f"Invalid time instant {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, dt.datetime):
        return datetime_to_millis(value)
    if isinstance(value, str):
        try:
            return datetime_to_millis(dateutil.parser.isoparse(value.strip()))
        except (ValueError, OverflowError) as e:
            raise TimeIntervalException(f"Invalid time instant {value!r}: {e}") from e
    raise TimeIntervalException(f"Invalid time instant {value!r}")


def format_instant(millis: int) -> str:
    """Format milliseconds since epoch as RFC 3339 UTC string."""
    d = millis_to_datetime(millis)
    if d.microsecond:
        return d.strftime("%Y-%m-%dT%H:%M:%S.") + f"{d.microsecond // 1000:03d}Z"
    return rfc3339.datetime(d)


MIN_INSTANT = datetime_to_millis(dt.datetime(1, 1, 1))
MAX_INSTANT = datetime_to_millis(dt.datetime(9999, 12, 31, 23, 59, 59, 999000))


@dataclasses.dataclass(frozen=True)
class TimeInterval:
    """
    Time interval `[start, end)` in milliseconds since epoch (UTC).

    `start == end` is a legal, instantaneous interval (snapshot).
    """

    start: int
    end: int

    def __post_init__(self):
        for v in (self.start, self.end):
            if not isinstance(v, int) or isinstance(v, bool):
                raise TimeIntervalException(f"Invalid time instant {v!r}")
        if self.start > self.end:
            raise TimeIntervalException(
                f"Start time {format_instant(self.start)} is after end time {format_instant(self.end)}"
            )

    @classmethod
    def unbounded(cls) -> "TimeInterval":
        """Interval covering all representable time (default validity of timeless data)."""
        return cls(start=MIN_INSTANT, end=MAX_INSTANT)

    @classmethod
    def instant(cls, t: Union[str, int, dt.datetime]) -> "TimeInterval":
        t = parse_instant(t)
        return cls(start=t, end=t)

    @classmethod
    def from_values(
        cls, start: Union[str, int, dt.datetime], end: Union[str, int, dt.datetime, None] = None
    ) -> "TimeInterval":
        start = parse_instant(start)
        end = start if end is None else parse_instant(end)
        return cls(start=start, end=end)

    @classmethod
    def parse(cls, value: Union[str, list, tuple, dict, "TimeInterval"]) -> "TimeInterval":
        """
        Parse time interval from a single ISO 8601 instant, a "start/end" string,
        a (start, end) pair or a `{"start":..., "end":...}` mapping.
        """
        if isinstance(value, TimeInterval):
            return value
        if isinstance(value, str):
            if "/" in value:
                start, end = value.split("/", 1)
                return cls.from_values(start, end)
            return cls.instant(value)
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return cls.from_values(*value)
        if isinstance(value, dict) and "start" in value:
            return cls.from_values(value["start"], value.get("end"))
        raise TimeIntervalException(f"Invalid time interval {value!r}")

    def is_instant(self) -> bool:
        return self.start == self.end

    def contains_instant(self, t: int) -> bool:
        if self.is_instant():
            return t == self.start
        return self.start <= t < self.end

    def intersects(self, other: "TimeInterval") -> bool:
        """
        Half-open intersection test. Instants intersect intervals that contain them
        and equal instants.
        """
        if self.is_instant():
            return other.contains_instant(self.start)
        if other.is_instant():
            return self.contains_instant(other.start)
        return self.start < other.end and other.start < self.end

    def intersection(self, other: "TimeInterval") -> Optional["TimeInterval"]:
        if not self.intersects(other):
            return None
        return TimeInterval(start=max(self.start, other.start), end=min(self.end, other.end))

    def union(self, other: "TimeInterval") -> "TimeInterval":
        return TimeInterval(start=min(self.start, other.start), end=max(self.end, other.end))

    def duration_millis(self) -> int:
        return self.end - self.start

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end}

    def to_iso_tuple(self) -> Tuple[str, str]:
        return (format_instant(self.start), format_instant(self.end))

    def __str__(self):
        return "/".join(self.to_iso_tuple())


class TimeGranularity(enum.Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    MONTHS = "months"
    YEARS = "years"


_FIXED_GRANULARITY_SECONDS = {
    TimeGranularity.SECONDS: 1,
    TimeGranularity.MINUTES: 60,
    TimeGranularity.HOURS: 3600,
    TimeGranularity.DAYS: 86400,
}


def _months_between(start: dt.datetime, end: dt.datetime) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


@dataclasses.dataclass(frozen=True)
class TimeStep:
    """Regular time step, e.g. "every 3 months", used to enumerate time slices."""

    granularity: TimeGranularity
    step: int

    def __post_init__(self):
        if not isinstance(self.step, int) or self.step < 0:
            raise TimeIntervalException(f"Invalid time step {self.step!r}")

    @classmethod
    def from_dict(cls, d: dict) -> "TimeStep":
        try:
            return cls(granularity=TimeGranularity(d["granularity"].lower()), step=int(d["step"]))
        except (KeyError, ValueError, AttributeError) as e:
            raise TimeIntervalException(f"Invalid time step {d!r}") from e

    def to_dict(self) -> dict:
        return {"granularity": self.granularity.value, "step": self.step}

    def _delta(self, factor: int = 1) -> relativedelta:
        return relativedelta(**{self.granularity.value: self.step * factor})

    def add(self, t: int, times: int = 1) -> int:
        """Shift time instant (milliseconds) with given number of steps."""
        return datetime_to_millis(millis_to_datetime(t) + self._delta(factor=times))

    def num_steps_in_interval(self, interval: TimeInterval) -> int:
        """
        Number of whole steps after the interval start that still start inside the interval.
        A step that would start exactly at the (exclusive) interval end is not counted.
        """
        if interval.is_instant() or self.step == 0:
            return 0
        start = millis_to_datetime(interval.start)
        end = millis_to_datetime(interval.end)
        if self.granularity in _FIXED_GRANULARITY_SECONDS:
            step_millis = _FIXED_GRANULARITY_SECONDS[self.granularity] * self.step * 1000
            steps, remainder = divmod(interval.duration_millis(), step_millis)
            if not remainder:
                steps -= 1
            return max(0, steps)
        if self.granularity == TimeGranularity.MONTHS:
            steps = _months_between(start, end) // self.step
        else:
            steps = (end.year - start.year) // self.step
        # Day of month/time of day can put the last candidate step at or after the end
        if start + self._delta(factor=steps) >= end:
            steps -= 1
        return max(0, steps)

    def snap_relative(self, reference: int, t: int) -> int:
        """
        Snap time instant `t` to the start of the step (counted from `reference`)
        that contains it.
        """
        if self.step == 0:
            return reference
        ref = millis_to_datetime(reference)
        if self.granularity in _FIXED_GRANULARITY_SECONDS:
            step_millis = _FIXED_GRANULARITY_SECONDS[self.granularity] * self.step * 1000
            return reference + ((t - reference) // step_millis) * step_millis
        to_snap = millis_to_datetime(t)
        if self.granularity == TimeGranularity.MONTHS:
            steps = _months_between(ref, to_snap) // self.step
        else:
            steps = (to_snap.year - ref.year) // self.step
        snapped = ref + self._delta(factor=steps)
        if snapped > to_snap:
            # Day of month/time of day of the reference comes after the instant to snap
            snapped = ref + self._delta(factor=steps - 1)
        return datetime_to_millis(snapped)

    def slices(self, reference: int, interval: TimeInterval) -> Iterator[TimeInterval]:
        """Time slices of this step (anchored at `reference`) that intersect the given interval."""
        if self.step == 0:
            yield TimeInterval(start=reference, end=reference)
            return
        start = self.snap_relative(reference, interval.start)
        while True:
            end = self.add(start)
            current = TimeInterval(start=start, end=end)
            if not current.intersects(interval):
                break
            yield current
            start = end
