"""Fixed-width time bucket assignment.

Buckets are anchored to the top of the hour for widths below one hour and to the start of
the UTC day for widths of one hour and more. The bucket of a timestamp is a pure function
of the timestamp and the bucket width.

Example:
    >>> bucket_of("2024-01-01T10:07:30Z", 5)
    DateTime(2024, 1, 1, 10, 5, 0, tzinfo=Timezone('UTC'))
    >>> parse_interval("1h")
    60
"""

import re
from typing import Any, Optional, Union

from iotstore.utils.datetimeutil import DateTime, to_datetime

MINUTE_BUCKET_WIDTHS: tuple[int, ...] = (1, 2, 3, 4, 5, 6, 10, 12, 15, 20, 30)
HOUR_BUCKET_WIDTHS: tuple[int, ...] = (60, 120, 180, 240, 360, 480, 720)
DAY_BUCKET_WIDTH: int = 24 * 60

# Query intervals offered to dashboards.
QUERY_INTERVALS: dict[str, int] = {
    "1m": 1,
    "5m": 5,
    "15m": 15,
    "30m": 30,
    "1h": 60,
    "3h": 180,
    "6h": 360,
    "12h": 720,
    "1d": DAY_BUCKET_WIDTH,
}

_INTERVAL_RE = re.compile(r"^\s*(\d+)\s*([mhd])\s*$", re.IGNORECASE)
_INTERVAL_UNIT_MINUTES = {"m": 1, "h": 60, "d": DAY_BUCKET_WIDTH}


def validate_bucket_width(width_minutes: Any) -> int:
    """Validate a bucket width in minutes.

    Args:
        width_minutes (int): Bucket width in minutes.

    Returns:
        int: The validated width.

    Raises:
        ValueError: If the width does not evenly tile an hour or a day.
    """
    if isinstance(width_minutes, bool) or not isinstance(width_minutes, int):
        raise ValueError(f"Bucket width must be an integer number of minutes: {width_minutes!r}")
    if (
        width_minutes not in MINUTE_BUCKET_WIDTHS
        and width_minutes not in HOUR_BUCKET_WIDTHS
        and width_minutes != DAY_BUCKET_WIDTH
    ):
        raise ValueError(
            f"Unsupported bucket width {width_minutes} min; expected a divisor of 60 min, "
            f"a divisor of 24 h or one day."
        )
    return width_minutes


def bucket_of(timestamp: Any, width_minutes: int = 5) -> DateTime:
    """Floor a timestamp to the start of its bucket.

    Minute `m` of an hour maps to `floor(m / width) * width` for widths below one hour.
    Hour widths are floored from the start of the UTC day.

    Args:
        timestamp: Any date input understood by `to_datetime`.
        width_minutes (int): Bucket width in minutes.

    Returns:
        DateTime: Start of the bucket in UTC.

    Raises:
        ValueError: If the width is unsupported or the timestamp can not be converted.
    """
    width = validate_bucket_width(width_minutes)
    dt = to_datetime(timestamp, in_timezone="UTC")
    if width < 60:
        return dt.start_of("hour").add(minutes=(dt.minute // width) * width)
    hours = width // 60
    return dt.start_of("day").add(hours=(dt.hour // hours) * hours)


def bucket_end(bucket_start: Any, width_minutes: int = 5) -> DateTime:
    """Exclusive end of the bucket starting at `bucket_start`."""
    width = validate_bucket_width(width_minutes)
    return to_datetime(bucket_start, in_timezone="UTC").add(minutes=width)


def parse_interval(interval: Optional[Union[str, int]]) -> Optional[int]:
    """Convert an interval string to a bucket width in minutes.

    Args:
        interval: Interval string like "5m", "1h" or "1d", a width in minutes,
            or `None`/"auto" for no explicit interval.

    Returns:
        Optional[int]: Width in minutes, or None if no explicit interval is requested.

    Raises:
        ValueError: If the interval can not be parsed or is no supported bucket width.
    """
    if interval is None:
        return None
    if isinstance(interval, int) and not isinstance(interval, bool):
        return validate_bucket_width(interval)
    if not isinstance(interval, str):
        raise ValueError(f"Unsupported interval type: {type(interval)}")
    if interval.strip().lower() in ("", "auto"):
        return None
    if interval in QUERY_INTERVALS:
        return QUERY_INTERVALS[interval]
    match = _INTERVAL_RE.match(interval)
    if match is None:
        raise ValueError(f"Invalid interval '{interval}'")
    value, unit = match.groups()
    return validate_bucket_width(int(value) * _INTERVAL_UNIT_MINUTES[unit.lower()])
