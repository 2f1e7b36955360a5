import pytest

from caresync.shared.validators import (
    intervals_overlap,
    minutes_to_time,
    parse_weekday,
    time_to_minutes,
    validate_time_string,
)


@pytest.mark.parametrize("value", ["00:00", "09:30", "23:59", " 14:05 "])
def test_validate_time_string_accepts_zero_padded_times(value: str) -> None:
    assert validate_time_string(value) == value.strip()


@pytest.mark.parametrize("value", ["9:30", "24:00", "12:60", "noon", "", None, 930])
def test_validate_time_string_rejects_malformed_times(value) -> None:
    with pytest.raises(ValueError):
        validate_time_string(value)


def test_minutes_round_trip_through_strings() -> None:
    assert time_to_minutes("10:45") == 645
    assert minutes_to_time(645) == "10:45"


def test_minutes_to_time_rejects_values_outside_one_day() -> None:
    with pytest.raises(ValueError):
        minutes_to_time(24 * 60)


@pytest.mark.parametrize(
    ("a", "b", "expected"),
    [
        (("09:00", "09:30"), ("09:30", "10:00"), False),
        (("09:00", "10:00"), ("09:30", "10:30"), True),
        (("09:00", "12:00"), ("10:00", "11:00"), True),
        (("14:00", "15:00"), ("09:00", "10:00"), False),
    ],
)
def test_intervals_overlap_is_half_open(a, b, expected) -> None:
    assert intervals_overlap(*a, *b) is expected
    assert intervals_overlap(*b, *a) is expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [(0, 0), (6, 6), ("2", 2), ("monday", 0), ("Tue", 1), ("SUNDAY", 6), (" fri ", 4)],
)
def test_parse_weekday_uses_monday_as_zero(value, expected: int) -> None:
    assert parse_weekday(value) == expected


@pytest.mark.parametrize("value", [7, -1, "8", "someday", "mo", True, None])
def test_parse_weekday_rejects_unknown_values(value) -> None:
    with pytest.raises(ValueError):
        parse_weekday(value)
