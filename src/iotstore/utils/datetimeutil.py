"""Utility functions for date-time conversion tasks.

Functions:
----------
- to_datetime: Converts various date or time inputs to a timezone-aware `DateTime`
  object or formatted string.
- to_duration: Converts various time delta inputs to a `Duration` object.
- utc_now: Current time as timezone-aware UTC `DateTime`.

Example usage:
--------------

    # Date-time conversion
    >>> date_str = "2024-10-15T10:07:00Z"
    >>> date_obj = to_datetime(date_str)
    >>> print(date_obj)  # Output: DateTime for '2024-10-15T10:07:00+00:00'

    # Time delta conversion
    >>> to_duration("2 days 5 hours")
"""

import re
from datetime import date, datetime, timedelta
from typing import Any, List, Literal, Optional, Tuple, Union, overload

import pendulum
from loguru import logger
from pendulum import DateTime, Duration
from pendulum.tz.timezone import Timezone

__all__ = ["DateTime", "Duration", "to_datetime", "to_duration", "utc_now"]


def utc_now() -> DateTime:
    """Return the current time as timezone-aware UTC DateTime."""
    return pendulum.now("UTC")


@overload
def to_datetime(
    date_input: Optional[Any] = None,
    as_string: Literal[False] | None = None,
    in_timezone: Optional[Union[str, Timezone]] = None,
) -> DateTime: ...


@overload
def to_datetime(
    date_input: Optional[Any] = None,
    as_string: str | Literal[True] = True,
    in_timezone: Optional[Union[str, Timezone]] = None,
) -> str: ...


def to_datetime(
    date_input: Optional[Any] = None,
    as_string: Optional[Union[str, bool]] = None,
    in_timezone: Optional[Union[str, Timezone]] = None,
) -> Union[DateTime, str]:
    """Convert a date input into a Pendulum DateTime object or a formatted string.

    Telemetry timestamps are handled in UTC. Date strings and naive datetimes without
    explicit timezone information are interpreted as UTC.

    Args:
        date_input (Optional[Any]): The date input to convert. Supported types include:
            - `str`: An ISO 8601 date string (e.g., "2024-10-13T10:07:00Z").
            - `pendulum.DateTime`: A Pendulum DateTime object.
            - `datetime.datetime`: A standard Python datetime object.
            - `datetime.date`: A date object, converted to the start of the day.
            - `int` or `float`: A Unix timestamp, interpreted as seconds since the epoch (UTC).
            - `None`: Defaults to the current date and time.

        as_string (Optional[Union[str, bool]]): Determines the output format:
            - `True`: Returns the datetime in ISO 8601 string format.
            - `str`: A custom date format string for the output (e.g., "YYYY-MM-DD HH:mm:ss").
            - `False` or `None` (default): Returns a `pendulum.DateTime` object.

        in_timezone (Optional[Union[str, Timezone]]): Target timezone for the result.
            Defaults to UTC.

    Returns:
        pendulum.DateTime or str: A timezone-aware DateTime or its string representation.

    Raises:
        ValueError: If `date_input` is not a valid or supported type, or if the date string
            cannot be parsed.

    Examples:
        >>> to_datetime("2024-10-13T15:30:00", as_string=True)
        '2024-10-13T15:30:00Z'

        >>> to_datetime(1698784800, as_string="YYYY-MM-DD HH:mm:ss")
        '2023-10-31 20:40:00'
    """
    if in_timezone is None:
        in_timezone = pendulum.timezone("UTC")
    elif not isinstance(in_timezone, Timezone):
        in_timezone = pendulum.timezone(in_timezone)

    if isinstance(date_input, DateTime):
        dt = date_input
    elif isinstance(date_input, str):
        try:
            dt = pendulum.parse(date_input, tz="UTC")
        except (pendulum.parsing.exceptions.ParserError, ValueError) as e:
            raise ValueError(f"Date string {date_input} does not match any known formats.") from e
        if not isinstance(dt, DateTime):
            raise ValueError(f"Date string {date_input} does not denote a date and time.")
    elif date_input is None:
        dt = pendulum.now(in_timezone)
    elif isinstance(date_input, datetime):
        dt = pendulum.instance(date_input, tz="UTC")
    elif isinstance(date_input, date):
        dt = pendulum.datetime(date_input.year, date_input.month, date_input.day, tz="UTC")
    elif isinstance(date_input, (int, float)) and not isinstance(date_input, bool):
        dt = pendulum.from_timestamp(date_input, tz="UTC")
    else:
        error_msg = f"Unsupported date input type: {type(date_input)}"
        logger.error(error_msg)
        raise ValueError(error_msg)

    dt = dt.in_timezone(in_timezone)

    if isinstance(as_string, str):
        return dt.format(as_string)
    if isinstance(as_string, bool) and as_string is True:
        return dt.to_iso8601_string()

    return dt


def to_duration(
    input_value: Union[timedelta, str, int, float, Tuple[int, int, int, int], List[int]],
) -> Duration:
    """Converts various input types into a Duration object using pendulum.

    Args:
        input_value (Union[timedelta, str, int, float, tuple, list]): Input to be converted
            into a duration:
            - str: A duration string like "2 days", "5 hours", "30 minutes", or a combination.
            - int/float: Number representing seconds.
            - tuple/list: A tuple or list in the format (days, hours, minutes, seconds).

    Returns:
        Duration: A duration object corresponding to the input value.

    Raises:
        ValueError: If the input format is not supported.

    Examples:
        >>> to_duration("2 days 5 hours")
        Duration(days=2, hours=5)

        >>> to_duration(3600)
        Duration(hours=1)
    """
    if isinstance(input_value, Duration):
        return input_value

    if isinstance(input_value, timedelta):
        return pendulum.duration(seconds=input_value.total_seconds())

    if isinstance(input_value, (int, float)) and not isinstance(input_value, bool):
        return pendulum.duration(seconds=input_value)

    elif isinstance(input_value, (tuple, list)):
        # (days, hours, minutes, seconds)
        if len(input_value) == 4:
            days, hours, minutes, seconds = input_value
            return pendulum.duration(days=days, hours=hours, minutes=minutes, seconds=seconds)
        else:
            error_msg = f"Expected a tuple or list of length 4, got {len(input_value)}"
            logger.error(error_msg)
            raise ValueError(error_msg)

    elif isinstance(input_value, str):
        total_seconds = 0
        time_units = {
            "day": 86400,  # 24 * 60 * 60
            "hour": 3600,
            "minute": 60,
            "second": 1,
        }

        # Match time components like '2 days', '5 hours', etc.
        matches = re.findall(r"(\d+)\s*(days?|hours?|minutes?|seconds?)", input_value)

        if not matches:
            error_msg = f"Invalid time string format '{input_value}'"
            logger.error(error_msg)
            raise ValueError(error_msg)

        for value, unit in matches:
            unit = unit.lower().rstrip("s")
            total_seconds += int(value) * time_units[unit]

        return pendulum.duration(seconds=total_seconds)

    else:
        error_msg = f"Unsupported input type: {type(input_value)}"
        logger.error(error_msg)
        raise ValueError(error_msg)
