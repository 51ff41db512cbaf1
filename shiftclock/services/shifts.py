from __future__ import annotations
import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from ..core.tokens import to_datetime

def parse_hhmm(raw: Any) -> Tuple[int, int] | None:
    """
    Parse loose clock strings into (hours, minutes):
      "03:00", "3:00", "22:15"
      "3.00" -> (3, 0), "3.05" -> (3, 5), "10.5" -> (10, 30)
      "7" -> (7, 0)
    """
    if not raw or not isinstance(raw, str):
        return None
    s = raw.strip()

    if ":" in s:
        parts = s.split(":")
        try:
            h, m = int(parts[0]), int(parts[1])
        except (ValueError, IndexError):
            return None
        return h, m

    if "." in s:
        h_raw, m_raw = s.split(".", 1)
        try:
            h = int(h_raw)
        except ValueError:
            return None
        if m_raw == "":
            m = 0
        elif re.fullmatch(r"\d{2}", m_raw):
            m = int(m_raw)
        else:
            try:
                m = round(float("0." + m_raw) * 60)
            except ValueError:
                return None
        if m < 0 or m >= 60:
            return None
        return h, m

    try:
        return int(float(s)), 0
    except ValueError:
        return None

def diff_hours(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600

def _parse_date(s: str) -> date:
    return datetime.strptime(s, "%Y-%m-%d").date()

def _at(day: date, hhmm: str) -> datetime:
    h, m = (int(x) for x in hhmm.split(":")[:2])
    return datetime(day.year, day.month, day.day) + timedelta(hours=h, minutes=m)

def compute_worked_hours_for_shift(shift: Mapping[str, Any] | None) -> float | None:
    """
    Worked hours (2 decimals) from the best data on the record:
      1. checkInTimestamp / checkOutTimestamp
      2. eventDate (+ endDate) with checkedInTime / checkedOutTime, overnight aware
      3. bare checkedInTime / checkedOutTime clock strings
    """
    if not shift:
        return None

    start_ts = to_datetime(shift.get("checkInTimestamp"))
    end_ts = to_datetime(shift.get("checkOutTimestamp"))
    if start_ts is not None and end_ts is not None:
        hours = diff_hours(start_ts, end_ts)
        if hours >= 0:
            return round(hours, 2)

    event_date = shift.get("eventDate")
    end_date = shift.get("endDate")
    checked_in = shift.get("checkedInTime")
    checked_out = shift.get("checkedOutTime")
    overnight = shift.get("overnight") is True

    if event_date and checked_in and checked_out:
        try:
            day = _parse_date(event_date)
            start = _at(day, checked_in)
            explicit_end = bool(end_date) and end_date != event_date
            end = _at(_parse_date(end_date) if explicit_end else day, checked_out)
            if (overnight or end <= start) and not explicit_end:
                end = _at(day + timedelta(days=1), checked_out)
            minutes = int((end - start).total_seconds() // 60)
            if minutes >= 0:
                return round(minutes / 60, 2)
        except (TypeError, ValueError):
            pass  # fall through to bare clock strings

    start_p = parse_hhmm(checked_in)
    end_p = parse_hhmm(checked_out)
    if start_p and end_p:
        start_min = start_p[0] * 60 + start_p[1]
        end_min = end_p[0] * 60 + end_p[1]
        if overnight and end_min < start_min:
            end_min += 24 * 60
        if end_min - start_min >= 0:
            return round((end_min - start_min) / 60, 2)

    return None

def derive_shift_status(shift: Mapping[str, Any] | None) -> str:
    shift = shift or {}
    has_in = bool(shift.get("checkedInTime")) or bool(shift.get("checkInTimestamp"))
    has_out = bool(shift.get("checkedOutTime")) or bool(shift.get("checkOutTimestamp"))
    if has_in and has_out:
        return "completed"
    if has_in:
        return "in_progress"
    return "scheduled"

def rate_for_date(date_str: str, history: Sequence[Mapping[str, Any]], fallback: float) -> float:
    """Latest rate whose effectiveFrom <= date_str; history must be sorted ascending."""
    chosen = None
    for entry in history or []:
        rate = entry.get("rate")
        effective = entry.get("effectiveFrom")
        if not effective or not isinstance(rate, (int, float)):
            continue
        if effective <= date_str:
            chosen = rate
        else:
            break
    return chosen if chosen is not None else fallback

def split_weekly_overtime(
    day_hours: Iterable[Tuple[str, float]],
    *,
    threshold_hours: float = 40,
    multiplier: float = 1.5,
    hourly_wage: float = 0.0,
    wage_history: Sequence[Mapping[str, Any]] = (),
) -> List[Dict[str, Any]]:
    """
    Walk the days in order and move every hour past the weekly threshold into overtime.
    The threshold resets at the start of each Monday-based week.
    day_hours: (YYYY-MM-DD, worked hours) pairs, one per day.
    """
    out: List[Dict[str, Any]] = []
    week = None
    regular_so_far = 0.0
    for day, hours in sorted(day_hours):
        iso_year, iso_week, _ = _parse_date(day).isocalendar()
        if (iso_year, iso_week) != week:
            week = (iso_year, iso_week)
            regular_so_far = 0.0
        capacity = max(threshold_hours - regular_so_far, 0.0)
        regular = min(hours, capacity) if hours > 0 else 0.0
        overtime = hours - regular if hours > 0 else 0.0
        regular_so_far += regular
        wage = rate_for_date(day, wage_history, hourly_wage)
        out.append({
            "date": day,
            "total_hours": round(hours, 2),
            "regular_hours": round(regular, 2),
            "overtime_hours": round(overtime, 2),
            "overtime_applied": overtime > 0,
            "hourly_wage": wage,
            "day_earnings": round(regular * wage + overtime * wage * multiplier, 2),
        })
    return out
