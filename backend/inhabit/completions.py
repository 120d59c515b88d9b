"""asyncpg accessor for per-day completion marks and cached streaks.

Every function takes an open connection; callers own transactions.
"""

from datetime import date
from typing import Any, Optional

import asyncpg

from .db import SchemaCapabilities, execute_named, fetch_named, fetchrow_named
from .streak_logic import normalize_completed_dates


def _completion_row(row: Any) -> dict[str, Any]:
    row_dict = dict(row)
    return {
        "habit_id": row_dict["habit_id"],
        "completion_date": row_dict["completion_date"],
        "completed": bool(row_dict["completed"]),
        "updated_at": row_dict.get("updated_at"),
    }


async def fetch_completed_dates(conn: asyncpg.Connection, habit_id: Any) -> set[date]:
    rows = await fetch_named(
        conn,
        "completions.completed_dates",
        """
        SELECT completion_date
        FROM habit_completions
        WHERE habit_id = $1::uuid
          AND completed = TRUE
        """,
        str(habit_id),
    )
    return normalize_completed_dates(dict(row) for row in rows)


async def upsert_completion(
    conn: asyncpg.Connection,
    habit_id: Any,
    user_id: Any,
    completion_date: date,
    completed: bool,
    *,
    capabilities: SchemaCapabilities,
) -> dict[str, Any]:
    if capabilities.completion_timestamps:
        query = """
            INSERT INTO habit_completions (habit_id, user_id, completion_date, completed)
            VALUES ($1::uuid, $2::uuid, $3::date, $4)
            ON CONFLICT (habit_id, completion_date)
            DO UPDATE SET
                completed = EXCLUDED.completed,
                updated_at = NOW()
            RETURNING habit_id, completion_date, completed, updated_at
        """
    else:
        query = """
            INSERT INTO habit_completions (habit_id, user_id, completion_date, completed)
            VALUES ($1::uuid, $2::uuid, $3::date, $4)
            ON CONFLICT (habit_id, completion_date)
            DO UPDATE SET completed = EXCLUDED.completed
            RETURNING habit_id, completion_date, completed
        """
    row = await fetchrow_named(
        conn,
        "completions.upsert",
        query,
        str(habit_id),
        str(user_id),
        completion_date,
        bool(completed),
    )
    return _completion_row(row)


async def persist_streaks(conn: asyncpg.Connection, habit_id: Any, current: int, longest: int) -> None:
    await execute_named(
        conn,
        "habits.persist_streaks",
        """
        UPDATE habits
        SET current_streak = $2,
            longest_streak = $3,
            updated_at = NOW()
        WHERE id = $1::uuid
        """,
        str(habit_id),
        int(current),
        int(longest),
    )


async def fetch_completed_dates_by_habit(conn: asyncpg.Connection, user_id: Any) -> dict[str, set[date]]:
    """Every completed day of every habit the user owns, keyed by str(habit_id)."""
    rows = await fetch_named(
        conn,
        "completions.completed_dates_for_user",
        """
        SELECT habit_id, completion_date
        FROM habit_completions
        WHERE user_id = $1::uuid
          AND completed = TRUE
        """,
        str(user_id),
    )
    by_habit: dict[str, set[date]] = {}
    for row in rows:
        row_dict = dict(row)
        by_habit.setdefault(str(row_dict["habit_id"]), set()).update(normalize_completed_dates([row_dict]))
    return by_habit


def _completion_columns(capabilities: SchemaCapabilities) -> str:
    if capabilities.completion_timestamps:
        return "habit_id, completion_date, completed, updated_at"
    return "habit_id, completion_date, completed"


async def fetch_recent_completions(
    conn: asyncpg.Connection,
    user_id: Any,
    window_start: date,
    window_end: date,
    habit_id: Optional[Any] = None,
    *,
    capabilities: SchemaCapabilities,
) -> list[dict[str, Any]]:
    """Completion records inside the closed window, newest first."""
    columns = _completion_columns(capabilities)
    if habit_id is None:
        rows = await fetch_named(
            conn,
            "completions.window_for_user",
            f"""
            SELECT {columns}
            FROM habit_completions
            WHERE user_id = $1::uuid
              AND completion_date >= $2::date
              AND completion_date <= $3::date
            ORDER BY completion_date DESC
            """,
            str(user_id),
            window_start,
            window_end,
        )
    else:
        rows = await fetch_named(
            conn,
            "completions.window_for_habit",
            f"""
            SELECT {columns}
            FROM habit_completions
            WHERE habit_id = $1::uuid
              AND user_id = $2::uuid
              AND completion_date >= $3::date
              AND completion_date <= $4::date
            ORDER BY completion_date DESC
            """,
            str(habit_id),
            str(user_id),
            window_start,
            window_end,
        )
    return [_completion_row(row) for row in rows]
