from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, NamedTuple, Optional, Union
from zoneinfo import ZoneInfo

from .errors import InvalidInputError


ONE_DAY = timedelta(days=1)


class StreakResult(NamedTuple):
    current_streak: int
    longest_streak: int


def reference_today(tz: Union[ZoneInfo, timezone], now: Optional[datetime] = None) -> date:
    """Calendar day in the reference timezone.

    Call once per logical operation and pass the result down; re-reading the
    clock mid-computation can straddle midnight and skew both streaks.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(tz).date()


def parse_completion_date(
    raw: Any,
    tz: Union[ZoneInfo, timezone],
    field: str = "date",
) -> date:
    """Turn a YYYY-MM-DD string, ISO-8601 datetime or date into a calendar day.

    Aware datetimes are moved into the reference timezone before the day is
    taken, naive ones are read as already local.
    """
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, date):
        return raw
    elif isinstance(raw, str):
        candidate = raw.strip()
        if not candidate:
            raise InvalidInputError(field, "must be an ISO-8601 date")
        try:
            return date.fromisoformat(candidate)
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
        except ValueError as exc:
            raise InvalidInputError(field, "must be an ISO-8601 date") from exc
    else:
        raise InvalidInputError(field, "must be an ISO-8601 date")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(tz)
    return parsed.date()


def normalize_completed_dates(rows: Iterable[Any]) -> set[date]:
    """Collect the completed calendar days from accessor rows.

    Accepts plain dates or mapping rows with ``completion_date`` and an
    optional ``completed`` flag; rows marked not completed are dropped.
    """
    dates: set[date] = set()
    for row in rows:
        if isinstance(row, (date, datetime)):
            raw_date, completed = row, True
        else:
            raw_date = row.get("completion_date")
            completed = row.get("completed", True)
        if not completed:
            continue
        if isinstance(raw_date, datetime):
            raw_date = raw_date.date()
        if isinstance(raw_date, date):
            dates.add(raw_date)
    return dates


def calculate_current_streak(completed: set[date], today: date) -> int:
    if today in completed:
        cursor = today
    elif today - ONE_DAY in completed:
        # grace day: today not marked yet, streak stands as of yesterday
        cursor = today - ONE_DAY
    else:
        return 0

    streak = 0
    while cursor in completed:
        streak += 1
        cursor -= ONE_DAY
    return streak


def calculate_longest_streak(completed: Iterable[date]) -> int:
    longest = 0
    run = 0
    previous: Optional[date] = None
    for day in sorted(completed):
        if previous is not None and day - previous == ONE_DAY:
            run += 1
        else:
            run = 1
        previous = day
        if run > longest:
            longest = run
    return longest


def compute_streaks(completed_dates: Iterable[date], today: date) -> StreakResult:
    completed = set(completed_dates)
    if not completed:
        return StreakResult(0, 0)
    return StreakResult(
        current_streak=calculate_current_streak(completed, today),
        longest_streak=calculate_longest_streak(completed),
    )
