from datetime import date, datetime

from scheduling.timemath import (
    combine,
    format_minutes,
    generate_times,
    intervals_overlap,
    is_valid_time_format,
    parse_time,
    weekday_name,
)


def test_parse_and_format_are_inverse():
    assert parse_time("09:30") == 570
    assert format_minutes(570) == "09:30"
    assert format_minutes(parse_time("7:05")) == "07:05"


def test_time_format_validation():
    assert is_valid_time_format("00:00")
    assert is_valid_time_format("23:59")
    assert is_valid_time_format("9:00")
    assert not is_valid_time_format("24:00")
    assert not is_valid_time_format("12:60")
    assert not is_valid_time_format("noon")


def test_combine_builds_absolute_timestamp():
    assert combine(date(2030, 1, 7), "14:15") == datetime(2030, 1, 7, 14, 15)
    assert combine(datetime(2030, 1, 7, 23, 59), "08:00") == datetime(2030, 1, 7, 8, 0)


def test_weekday_name():
    assert weekday_name(date(2030, 1, 7)) == "monday"
    assert weekday_name(date(2030, 1, 13)) == "sunday"


def test_touching_intervals_do_not_overlap():
    assert not intervals_overlap(540, 570, 570, 600)
    assert intervals_overlap(540, 571, 570, 600)


def test_overlap_is_symmetric():
    pairs = [((540, 600), (570, 630)), ((540, 600), (600, 660)), ((540, 720), (600, 630))]
    for (s1, e1), (s2, e2) in pairs:
        assert intervals_overlap(s1, e1, s2, e2) == intervals_overlap(s2, e2, s1, e1)


def test_generate_times_keeps_only_full_intervals():
    assert generate_times("09:00", "10:00") == ["09:00", "09:30"]
    assert generate_times("09:00", "10:15") == ["09:00", "09:30"]
    assert generate_times("09:00", "09:20") == []
    assert generate_times("09:00", "10:00", interval=0) == []
