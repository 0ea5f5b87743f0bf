import time

import pytest

from chronotheus.series import (
    append_compare,
    append_percent,
    append_with_command,
    build_last_month_average,
    contains_string,
    copy_metric,
    dedupe_series,
    filter_by_timeframe,
    index_by_signature,
    parse_time,
    proxy_timeframes,
    signature,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("1600000000", 1600000000),
        ("2020-09-13T12:26:40Z", 1600000000),
        ("2020-09-13T13:26:40+01:00", 1600000000),
    ],
)
def test_parse_time_exact(value, expected):
    assert parse_time(value) == expected


@pytest.mark.parametrize("value", ["", "bogus"])
def test_parse_time_falls_back_to_now(value):
    now = int(time.time())
    assert abs(parse_time(value) - now) <= 2


def test_proxy_timeframes():
    assert proxy_timeframes() == ["current", "7days", "14days", "21days", "28days"]


def test_copy_metric_is_independent():
    original = {"a": "1"}
    dup = copy_metric(original)
    dup["b"] = "2"
    assert original == {"a": "1"}
    assert dup == {"a": "1", "b": "2"}


def test_signature_ignores_synthetic_and_sorts():
    m = {"b": "two", "a": "one", "chrono_timeframe": "7days", "_command": "x"}
    assert signature(m) == '{"a":"one","b":"two"}'
    assert m["chrono_timeframe"] == "7days"


def test_dedupe_series_keeps_all_entries():
    s1 = {"metric": {"a": "1"}}
    s2 = {"metric": {"a": "1"}}
    s3 = {"metric": {"a": "2"}}
    out = dedupe_series([s1, s2, s3])
    assert len(out) == 3
    assert sorted(map(id, out)) == sorted(map(id, [s1, s2, s3]))


def test_dedupe_series_groups_same_signature_together():
    a1 = {"metric": {"a": "1", "chrono_timeframe": "current"}}
    b = {"metric": {"a": "2"}}
    a2 = {"metric": {"a": "1", "chrono_timeframe": "7days"}}
    out = dedupe_series([a1, b, a2])
    assert out == [a1, a2, b]


def test_dedupe_series_empty():
    assert dedupe_series([]) == []


def test_build_last_month_average_vector():
    series = [
        {
            "metric": {"a": "1", "chrono_timeframe": tf},
            "value": [120, str((i + 1) * 10)],
        }
        for i, tf in enumerate(proxy_timeframes()[1:])
    ]
    result = build_last_month_average(series, False)
    assert len(result) == 1
    assert result[0]["value"] == [120, "25"]
    assert result[0]["metric"] == {"a": "1", "chrono_timeframe": "lastMonthAverage"}


def test_build_last_month_average_skips_current():
    series = [
        {"metric": {"a": "1", "chrono_timeframe": "current"}, "value": [120, "999"]},
    ]
    assert build_last_month_average(series, False) == []


def test_build_last_month_average_range():
    series = [
        {"metric": {"a": "1", "chrono_timeframe": "7days"}, "values": [[60, "4"], [120, "8"]]},
        {"metric": {"a": "1", "chrono_timeframe": "14days"}, "values": [[60, "4"], [120, "8"]]},
    ]
    result = build_last_month_average(series, True)
    assert result == [
        {
            "metric": {"a": "1", "chrono_timeframe": "lastMonthAverage"},
            "values": [[60, "2"], [120, "4"]],
        }
    ]


def test_contains_string():
    arr = ["foo", "bar"]
    assert contains_string(arr, "bar")
    assert not contains_string(arr, "baz")
    assert not contains_string([1, 2], "1")


def test_filter_by_timeframe():
    data = [
        {"metric": {"chrono_timeframe": "current"}, "v": 1},
        {"metric": {"chrono_timeframe": "7days"}, "v": 2},
    ]
    out = filter_by_timeframe(data, "7days")
    assert len(out) == 1
    assert out[0]["metric"]["chrono_timeframe"] == "7days"


def test_index_by_signature():
    all_series = [
        {"metric": {"a": "1", "chrono_timeframe": "current"}, "v": 1},
        {"metric": {"a": "1", "chrono_timeframe": "7days"}, "v": 2},
    ]
    avg = [{"metric": {"a": "1", "chrono_timeframe": "lastMonthAverage"}, "v": 3}]
    cur, a = index_by_signature(all_series, avg)
    assert len(cur) == 1 and len(a) == 1
    assert cur['{"a":"1"}']["v"] == 1
    assert a['{"a":"1"}']["v"] == 3


def _maps(current, average):
    cur = {"test": {"metric": {"a": "1"}, "value": [100.0, current]}}
    avg = {"test": {"metric": {"a": "1"}, "value": [100.0, average]}}
    return cur, avg


@pytest.mark.parametrize("current, average, expected", [(150, 100, 50), (80, 100, -20)])
def test_append_compare(current, average, expected):
    cur, avg = _maps(str(current), str(average))
    result = append_compare(None, cur, avg, "", False)
    assert len(result) == 1
    assert float(result[0]["value"][1]) == expected
    assert result[0]["metric"]["chrono_timeframe"] == "compareAgainstLast28"


@pytest.mark.parametrize("current, average, expected", [(150, 100, 50), (80, 100, -20)])
def test_append_percent(current, average, expected):
    cur, avg = _maps(str(current), str(average))
    result = append_percent(None, cur, avg, "", False)
    assert len(result) == 1
    assert float(result[0]["value"][1]) == expected
    assert result[0]["metric"]["chrono_timeframe"] == "percentCompareAgainstLast28"


def test_append_percent_zero_average():
    cur, avg = _maps("150", "0")
    result = append_percent(None, cur, avg, "", False)
    assert result[0]["value"][1] == "0"


def test_append_compare_sets_command_and_skips_unmatched():
    cur = {
        "x": {"metric": {"a": "1"}, "value": [100, "150"]},
        "y": {"metric": {"a": "2"}, "value": [100, "1"]},
    }
    avg = {"x": {"metric": {"a": "1"}, "value": [100, "100"]}}
    result = append_compare(None, cur, avg, "DONT_REMOVE_UNUSED_HISTORICS", False)
    assert len(result) == 1
    assert result[0]["metric"]["_command"] == "DONT_REMOVE_UNUSED_HISTORICS"


def test_append_compare_range_missing_average_is_zero():
    cur = {"s": {"metric": {"a": "1"}, "values": [[60, "10"], [120, "7"]]}}
    avg = {"s": {"metric": {"a": "1"}, "values": [[60, "4"]]}}
    result = append_compare(None, cur, avg, "", True)
    assert result[0]["values"] == [[60, "6"], [120, "7"]]


def test_append_keeps_base():
    base = [{"metric": {"a": "0"}, "value": [1, "1"]}]
    cur, avg = _maps("150", "100")
    result = append_compare(base, cur, avg, "", False)
    assert result[0] is base[0]
    assert len(result) == 2


def test_append_with_command_labels_averages():
    avg = [{"metric": {"a": "1"}, "value": [60, "2"]}]
    result = append_with_command([], avg, "DONT_REMOVE_UNUSED_HISTORICS")
    assert result == avg
    assert result[0]["metric"]["_command"] == "DONT_REMOVE_UNUSED_HISTORICS"


def test_append_with_command_without_command():
    avg = [{"metric": {"a": "1"}, "value": [60, "2"]}]
    result = append_with_command(None, avg, "")
    assert "_command" not in result[0]["metric"]
    assert len(result) == 1