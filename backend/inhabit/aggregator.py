"""Pure composition of habit rows, recent completions and derived filters.

Nothing here touches the database; ``habit_service`` feeds it fetched rows.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Iterable, Mapping, Optional

from .errors import InvalidInputError
from .schemas import CompletionRecord, HabitView
from .streak_logic import compute_streaks


SORT_FIELDS = ("title", "current_streak", "created_at")
SORT_ORDERS = ("asc", "desc")
FILTER_KEYS = ("category", "is_archived", "completed_today")


@dataclass(frozen=True)
class RecentWindow:
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


def recent_window(today: date, days: int, max_days: Optional[int] = None) -> RecentWindow:
    if days < 1:
        raise InvalidInputError("days", "must be a positive integer")
    if max_days is not None and days > max_days:
        raise InvalidInputError("days", f"must be at most {max_days}")
    return RecentWindow(start=today - timedelta(days=days - 1), end=today)


@dataclass(frozen=True)
class FilterSpec:
    category: Optional[str] = None
    is_archived: Optional[bool] = None
    completed_today: Optional[bool] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "FilterSpec":
        unknown = sorted(set(raw) - set(FILTER_KEYS))
        if unknown:
            raise InvalidInputError(unknown[0], "unknown filter key")
        category = raw.get("category")
        if category is not None and not isinstance(category, str):
            raise InvalidInputError("category", "must be a string")
        for key in ("is_archived", "completed_today"):
            value = raw.get(key)
            if value is not None and not isinstance(value, bool):
                raise InvalidInputError(key, "must be a boolean")
        return cls(
            category=category or None,
            is_archived=raw.get("is_archived"),
            completed_today=raw.get("completed_today"),
        )

    def is_empty(self) -> bool:
        return self.category is None and self.is_archived is None and self.completed_today is None


@dataclass(frozen=True)
class SortSpec:
    by: str = "created_at"
    order: str = "desc"

    @classmethod
    def parse(cls, by: Optional[str], order: Optional[str]) -> "SortSpec":
        by = (by or "created_at").strip()
        order = (order or "desc").strip().lower()
        if by not in SORT_FIELDS:
            raise InvalidInputError("sort_by", f"must be one of {', '.join(SORT_FIELDS)}")
        if order not in SORT_ORDERS:
            raise InvalidInputError("sort_order", "must be asc or desc")
        return cls(by=by, order=order)


def attach_recent_completions(
    habits: Iterable[Mapping[str, Any]],
    completions: Iterable[Mapping[str, Any]],
) -> list[dict[str, Any]]:
    by_habit: dict[str, list[dict[str, Any]]] = {}
    for completion in completions:
        by_habit.setdefault(str(completion["habit_id"]), []).append(dict(completion))

    return [
        {**habit, "recent_completions": by_habit.get(str(habit["id"]), [])}
        for habit in habits
    ]


def refresh_streaks(
    habits: Iterable[Mapping[str, Any]],
    completed_by_habit: Mapping[str, Iterable[date]],
    today: date,
) -> list[dict[str, Any]]:
    """Replace cached streak pairs with values computed for ``today``.

    The cached columns are only as fresh as the last write; after a day
    rolls over without a toggle they overstate ``current_streak``.
    """
    refreshed = []
    for habit in habits:
        streaks = compute_streaks(completed_by_habit.get(str(habit["id"]), ()), today)
        refreshed.append(
            {
                **habit,
                "current_streak": streaks.current_streak,
                "longest_streak": streaks.longest_streak,
            }
        )
    return refreshed


def is_completed_today(habit: Mapping[str, Any], today: date) -> bool:
    for completion in habit.get("recent_completions") or []:
        if completion["completion_date"] == today:
            return bool(completion["completed"])
    return False


def apply_filters(
    habits: Iterable[Mapping[str, Any]],
    filter_spec: FilterSpec,
    today: date,
    window: Optional[RecentWindow] = None,
) -> list[Mapping[str, Any]]:
    """Keep habits matching every active filter (logical AND), order preserved.

    ``completed_today`` is judged from the already fetched recent window, so
    that window has to cover ``today``.
    """
    if filter_spec.completed_today is not None and (window is None or not window.contains(today)):
        raise InvalidInputError("days", "recent window must include today")

    def _matches(habit: Mapping[str, Any]) -> bool:
        if filter_spec.category is not None and habit.get("category") != filter_spec.category:
            return False
        if filter_spec.is_archived is not None and bool(habit.get("is_archived")) != filter_spec.is_archived:
            return False
        if filter_spec.completed_today is not None:
            return is_completed_today(habit, today) == filter_spec.completed_today
        return True

    return [habit for habit in habits if _matches(habit)]


def _sort_key(by: str):
    if by == "title":
        return lambda habit: habit.get("title") or ""
    if by == "current_streak":
        return lambda habit: int(habit.get("current_streak") or 0)
    return lambda habit: habit["created_at"]


def apply_sort(habits: Iterable[Mapping[str, Any]], sort_spec: SortSpec) -> list[Mapping[str, Any]]:
    # sorted() is stable in both directions; ties keep their incoming order
    return sorted(habits, key=_sort_key(sort_spec.by), reverse=sort_spec.order == "desc")


def completion_record(completion: Mapping[str, Any]) -> CompletionRecord:
    return CompletionRecord(
        habitId=completion["habit_id"],
        date=completion["completion_date"].isoformat(),
        completed=bool(completion["completed"]),
        updatedAt=completion.get("updated_at"),
    )


def build_habit_view(habit: Mapping[str, Any], today: date) -> HabitView:
    return HabitView(
        id=habit["id"],
        title=habit["title"],
        description=habit.get("description"),
        category=habit.get("category"),
        isArchived=bool(habit.get("is_archived")),
        currentStreak=int(habit.get("current_streak") or 0),
        longestStreak=int(habit.get("longest_streak") or 0),
        createdAt=habit["created_at"],
        completedToday=is_completed_today(habit, today),
        recentCompletions=[completion_record(c) for c in habit.get("recent_completions") or []],
    )
