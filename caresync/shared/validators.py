"""Shared validation utilities"""

import re
from typing import Union

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def validate_time_string(value: str) -> str:
    """
    Validate a clinic-local wall-clock time.

    Args:
        value: Time string, zero-padded 24h "HH:MM"

    Returns:
        The same string, stripped

    Raises:
        ValueError: If the value is not a valid HH:MM time
    """
    if not isinstance(value, str) or not TIME_PATTERN.match(value.strip()):
        raise ValueError(f"Invalid time '{value}', expected HH:MM (24h)")
    return value.strip()


def time_to_minutes(value: str) -> int:
    """Minutes since midnight for an HH:MM string"""
    hours, minutes = validate_time_string(value).split(":")
    return int(hours) * 60 + int(minutes)


def minutes_to_time(total: int) -> str:
    if total < 0 or total >= 24 * 60:
        raise ValueError(f"{total} minutes is outside a single day")
    return f"{total // 60:02d}:{total % 60:02d}"


def intervals_overlap(start_a: str, end_a: str, start_b: str, end_b: str) -> bool:
    """Half-open [start, end) overlap check for two HH:MM intervals"""
    return time_to_minutes(start_a) < time_to_minutes(end_b) and time_to_minutes(start_b) < time_to_minutes(end_a)


def parse_weekday(value: Union[int, str]) -> int:
    """
    Normalize a weekday to Python's convention (Monday=0 ... Sunday=6).

    Accepts an integer, a numeric string, a full day name or a three-letter
    abbreviation ("mon", "Tuesday").

    Raises:
        ValueError: If the weekday cannot be understood
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid weekday '{value}'")
    if isinstance(value, int):
        weekday = value
    elif isinstance(value, str) and value.strip().isdigit():
        weekday = int(value.strip())
    elif isinstance(value, str):
        name = value.strip().lower()
        for index, day in enumerate(WEEKDAY_NAMES):
            if name == day or (len(name) == 3 and day.startswith(name)):
                return index
        raise ValueError(f"Invalid weekday '{value}'")
    else:
        raise ValueError(f"Invalid weekday '{value}'")

    if weekday < 0 or weekday > 6:
        raise ValueError(f"Weekday must be between 0 (Monday) and 6 (Sunday), got {weekday}")
    return weekday
