"""Time-window series manipulation: signatures, averages and comparisons."""

from __future__ import annotations

import calendar
import json
import math
import re
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

Series = dict[str, Any]

TIMEFRAME_LABEL = "chrono_timeframe"
COMMAND_LABEL = "_command"

_INT_RE = re.compile(r"[+-]?\d+")
_RFC3339_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})"
)
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def proxy_timeframes() -> list[str]:
    """Names of the raw time windows, newest first."""
    return ["current", "7days", "14days", "21days", "28days"]


def _parse_rfc3339(value: str) -> Optional[int]:
    match = _RFC3339_RE.fullmatch(value)
    if not match:
        return None
    year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
    zone = match.group(8)
    if zone == "Z":
        offset = 0
    else:
        sign = -1 if zone[0] == "-" else 1
        zh, zm = int(zone[1:3]), int(zone[4:6])
        if zh > 23 or zm > 59:
            return None
        offset = sign * (zh * 3600 + zm * 60)
    try:
        moment = datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
    except ValueError:
        return None
    return calendar.timegm(moment.utctimetuple()) - offset


def parse_time(value: str) -> int:
    """Unix seconds from an integer string or RFC 3339 time; now when neither."""
    if _INT_RE.fullmatch(value):
        number = int(value)
        if _INT64_MIN <= number <= _INT64_MAX:
            return number
    parsed = _parse_rfc3339(value)
    if parsed is not None:
        return parsed
    return int(time.time())


def copy_metric(metric: dict[str, Any]) -> dict[str, Any]:
    """Shallow copy of a label set."""
    return dict(metric)


def signature(metric: dict[str, Any]) -> str:
    """Canonical JSON of a label set, ignoring the proxy's own labels."""
    labels = {k: v for k, v in metric.items() if k not in (TIMEFRAME_LABEL, COMMAND_LABEL)}
    return json.dumps(labels, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def contains_string(items: Iterable[Any], value: str) -> bool:
    """True when one of the items is the string value."""
    return any(isinstance(item, str) and item == value for item in items)


def dedupe_series(series: list[Series]) -> list[Series]:
    """Regroup series so that those sharing a signature sit together."""
    if not series:
        return series
    groups: dict[str, list[Series]] = {}
    for entry in series:
        groups.setdefault(signature(entry["metric"]), []).append(entry)
    return [entry for group in groups.values() for entry in group]


def _timestamp(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    result = float(value)
    return result if math.isfinite(result) else None


def _parse_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str) or value != value.strip() or "_" in value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _format_g(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "-0" if math.copysign(1.0, value) < 0 else "0"
    sign, digit_tuple, exponent = Decimal(repr(value)).as_tuple()
    digits = "".join(str(d) for d in digit_tuple)
    point = len(digits) + exponent
    digits = digits.rstrip("0") or "0"
    prefix = "-" if sign else ""
    exp = point - 1
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if len(digits) > 1 else "")
        return f"{prefix}{mantissa}e{'-' if exp < 0 else '+'}{abs(exp):02d}"
    if point <= 0:
        return f"{prefix}0.{'0' * -point}{digits}"
    if point >= len(digits):
        return f"{prefix}{digits}{'0' * (point - len(digits))}"
    return f"{prefix}{digits[:point]}.{digits[point:]}"


def _minute(ts: float) -> int:
    whole = int(ts)
    bucket = abs(whole) // 60 * 60
    return -bucket if whole < 0 else bucket


def build_last_month_average(series_list: list[Series], is_range: bool) -> list[Series]:
    """Average the historical windows of each series, bucketed by minute."""
    windows = len(proxy_timeframes()) - 1
    if windows < 1:
        return []
    groups: dict[str, list[Series]] = {}
    for entry in series_list:
        metric = entry["metric"]
        if metric.get(TIMEFRAME_LABEL) == "current":
            continue
        groups.setdefault(signature(metric), []).append(entry)

    out: list[Series] = []
    for sig, group in groups.items():
        sums: dict[int, float] = {}
        for entry in group:
            points = entry["values"] if is_range else [entry["value"]]
            for ts_raw, raw in points:
                ts = _timestamp(ts_raw)
                value = _parse_float(raw)
                if ts is None or value is None:
                    continue
                bucket = _minute(ts)
                sums[bucket] = sums.get(bucket, 0.0) + value
        points_out = [[m, _format_g(sums[m] / windows)] for m in sorted(sums)]
        if not points_out:
            continue
        metric = json.loads(sig)
        metric[TIMEFRAME_LABEL] = "lastMonthAverage"
        if is_range:
            out.append({"metric": metric, "values": points_out})
        else:
            out.append({"metric": metric, "value": points_out[-1]})
    return out


def index_by_signature(
    series: list[Series], averages: list[Series]
) -> tuple[dict[str, Series], dict[str, Series]]:
    """Index current-window series and average series by signature."""
    current = {
        signature(entry["metric"]): entry
        for entry in series
        if entry["metric"].get(TIMEFRAME_LABEL) == "current"
    }
    average = {signature(entry["metric"]): entry for entry in averages}
    return current, average


def _average_by_timestamp(points: Iterable[Any]) -> dict[int, float]:
    lookup: dict[int, float] = {}
    for ts_raw, raw in points:
        ts = _timestamp(ts_raw)
        if ts is None:
            continue
        lookup[int(ts)] = _parse_float(raw) or 0.0
    return lookup


def _percent(current: float, average: float) -> float:
    return (current - average) / average * 100 if average != 0 else 0.0


def _append_synthetic(
    base: Optional[list[Series]],
    current: dict[str, Series],
    averages: dict[str, Series],
    command: str,
    is_range: bool,
    timeframe: str,
    combine,
) -> list[Series]:
    out = list(base or [])
    for sig, cur in current.items():
        avg = averages.get(sig)
        if avg is None:
            continue
        metric = copy_metric(cur["metric"])
        metric[TIMEFRAME_LABEL] = timeframe
        if command:
            metric[COMMAND_LABEL] = command

        if not is_range:
            cur_ts, cur_raw = cur["value"]
            vc = _parse_float(cur_raw) or 0.0
            va = _parse_float(avg["value"][1]) or 0.0
            out.append({"metric": metric, "value": [cur_ts, _format_g(combine(vc, va))]})
            continue

        lookup = _average_by_timestamp(avg["values"])
        values_out = []
        for ts_raw, raw in cur["values"]:
            ts = _timestamp(ts_raw)
            if ts is None:
                continue
            whole = int(ts)
            vc = _parse_float(raw) or 0.0
            values_out.append([whole, _format_g(combine(vc, lookup.get(whole, 0.0)))])
        out.append({"metric": metric, "values": values_out})
    return out


def append_compare(
    base: Optional[list[Series]],
    current: dict[str, Series],
    averages: dict[str, Series],
    command: str,
    is_range: bool,
) -> list[Series]:
    """Append series of current minus average for every matching signature."""
    return _append_synthetic(
        base, current, averages, command, is_range,
        "compareAgainstLast28", lambda c, a: c - a,
    )


def append_percent(
    base: Optional[list[Series]],
    current: dict[str, Series],
    averages: dict[str, Series],
    command: str,
    is_range: bool,
) -> list[Series]:
    """Append series of the percentage change of current against average."""
    return _append_synthetic(
        base, current, averages, command, is_range,
        "percentCompareAgainstLast28", _percent,
    )


def filter_by_timeframe(series: list[Series], timeframe: str) -> list[Series]:
    """Keep only the series labelled with the given timeframe."""
    return [entry for entry in series if entry["metric"].get(TIMEFRAME_LABEL) == timeframe]


def append_with_command(
    base: Optional[list[Series]], averages: list[Series], command: str
) -> list[Series]:
    """Append the averages, labelling each with the command when one is set."""
    out = list(base or [])
    for entry in averages:
        if command:
            entry["metric"][COMMAND_LABEL] = command
        out.append(entry)
    return out


# Guards against accidental use of naive datetimes in callers.
_ = timedelta