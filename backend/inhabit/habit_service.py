import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

import asyncpg

from .aggregator import (
    FilterSpec,
    RecentWindow,
    SortSpec,
    apply_filters,
    apply_sort,
    attach_recent_completions,
    refresh_streaks,
)
from .completions import (
    fetch_completed_dates,
    fetch_completed_dates_by_habit,
    fetch_recent_completions,
    persist_streaks,
    upsert_completion,
)
from .db import SchemaCapabilities, execute_named, fetch_named, fetchrow_named
from .errors import InvalidInputError, NotFoundError
from .observability import log_ctx, log_ctx_json
from .schemas import HabitCreateRequest, HabitUpdateRequest
from .streak_logic import StreakResult, compute_streaks


logger = logging.getLogger("inhabit-habits")


def _habit_columns(capabilities: SchemaCapabilities) -> str:
    metadata = (
        "category, is_archived"
        if capabilities.habit_categories
        else "NULL::varchar AS category, FALSE AS is_archived"
    )
    return f"id, user_id, title, description, {metadata}, current_streak, longest_streak, created_at"


async def fetch_user_habits(
    conn: asyncpg.Connection,
    user_id: Any,
    capabilities: SchemaCapabilities,
) -> list[dict[str, Any]]:
    rows = await fetch_named(
        conn,
        "habits.for_user",
        f"""
        SELECT {_habit_columns(capabilities)}
        FROM habits
        WHERE user_id = $1::uuid
        ORDER BY created_at DESC
        """,
        str(user_id),
    )
    return [dict(row) for row in rows]


async def fetch_habit(
    conn: asyncpg.Connection,
    habit_id: Any,
    user_id: Any,
    capabilities: SchemaCapabilities,
    *,
    for_update: bool = False,
) -> dict[str, Any]:
    lock_clause = "FOR UPDATE" if for_update else ""
    row = await fetchrow_named(
        conn,
        "habits.lock" if for_update else "habits.one",
        f"""
        SELECT {_habit_columns(capabilities)}
        FROM habits
        WHERE id = $1::uuid
          AND user_id = $2::uuid
        {lock_clause}
        """,
        str(habit_id),
        str(user_id),
    )
    if row is None:
        raise NotFoundError("habit", habit_id)
    return dict(row)


async def create_habit(
    conn: asyncpg.Connection,
    user_id: Any,
    payload: HabitCreateRequest,
    capabilities: SchemaCapabilities,
) -> dict[str, Any]:
    if capabilities.habit_categories:
        row = await fetchrow_named(
            conn,
            "habits.create",
            f"""
            INSERT INTO habits (user_id, title, description, category, is_archived)
            VALUES ($1::uuid, $2, $3, $4, FALSE)
            RETURNING {_habit_columns(capabilities)}
            """,
            str(user_id),
            payload.title,
            payload.description,
            payload.category,
        )
    else:
        if payload.category is not None:
            raise InvalidInputError("category", "categories are not available on this schema version")
        row = await fetchrow_named(
            conn,
            "habits.create",
            f"""
            INSERT INTO habits (user_id, title, description)
            VALUES ($1::uuid, $2, $3)
            RETURNING {_habit_columns(capabilities)}
            """,
            str(user_id),
            payload.title,
            payload.description,
        )
    habit = dict(row)
    logger.info(
        "HABIT_CREATED context=%s",
        log_ctx_json(log_ctx(user_id=user_id, habit_id=habit["id"])),
    )
    return habit


async def _recompute_and_persist(conn: asyncpg.Connection, habit_id: Any, today: date) -> StreakResult:
    # toggles can land on any past date, so only a full rescan is exact
    completed_dates = await fetch_completed_dates(conn, habit_id)
    streaks = compute_streaks(completed_dates, today)
    await persist_streaks(conn, habit_id, streaks.current_streak, streaks.longest_streak)
    return streaks


async def toggle_completion(
    conn: asyncpg.Connection,
    habit_id: Any,
    user_id: Any,
    completion_date: date,
    completed: bool,
    today: date,
    capabilities: SchemaCapabilities,
) -> tuple[dict[str, Any], StreakResult]:
    """Upsert one day's mark and recompute the habit's cached streaks.

    The habit row stays locked for the whole transaction, so concurrent
    toggles on one habit serialise and the last recompute sees every
    committed mark. On any failure both the mark and the streaks roll back.
    """
    async with conn.transaction():
        await fetch_habit(conn, habit_id, user_id, capabilities, for_update=True)
        completion = await upsert_completion(
            conn,
            habit_id,
            user_id,
            completion_date,
            completed,
            capabilities=capabilities,
        )
        streaks = await _recompute_and_persist(conn, habit_id, today)

    logger.info(
        "HABIT_COMPLETION_TOGGLED context=%s",
        log_ctx_json(
            log_ctx(
                user_id=user_id,
                habit_id=habit_id,
                extra={
                    "completion_date": completion_date.isoformat(),
                    "completed": bool(completed),
                    "current_streak": streaks.current_streak,
                    "longest_streak": streaks.longest_streak,
                },
            )
        ),
    )
    return completion, streaks


async def recalculate_streaks(
    conn: asyncpg.Connection,
    habit_id: Any,
    user_id: Any,
    today: date,
    capabilities: SchemaCapabilities,
) -> tuple[StreakResult, StreakResult]:
    """Recompute cached streaks from full history; returns (previous, fresh)."""
    async with conn.transaction():
        habit = await fetch_habit(conn, habit_id, user_id, capabilities, for_update=True)
        previous = StreakResult(int(habit["current_streak"] or 0), int(habit["longest_streak"] or 0))
        fresh = await _recompute_and_persist(conn, habit_id, today)

    if previous != fresh:
        # cached pair drifted (e.g. a day rolled over or a racing write); fresh values win
        logger.warning(
            "STREAK_CACHE_DIVERGED context=%s",
            log_ctx_json(
                log_ctx(
                    user_id=user_id,
                    habit_id=habit_id,
                    extra={
                        "cached_current": previous.current_streak,
                        "cached_longest": previous.longest_streak,
                        "fresh_current": fresh.current_streak,
                        "fresh_longest": fresh.longest_streak,
                    },
                )
            ),
        )
    return previous, fresh


async def list_habits(
    conn: asyncpg.Connection,
    user_id: Any,
    filter_spec: FilterSpec,
    sort_spec: SortSpec,
    window: RecentWindow,
    today: date,
    capabilities: SchemaCapabilities,
) -> list[dict[str, Any]]:
    if filter_spec.category is not None and not capabilities.habit_categories:
        raise InvalidInputError("category", "categories are not available on this schema version")
    if not window.contains(today):
        raise InvalidInputError("days", "recent window must include today")

    habits = await fetch_user_habits(conn, user_id, capabilities)
    if not habits:
        return []

    completions = await fetch_recent_completions(
        conn, user_id, window.start, window.end, capabilities=capabilities
    )
    completed_by_habit = await fetch_completed_dates_by_habit(conn, user_id)
    habits = refresh_streaks(habits, completed_by_habit, today)
    habits = attach_recent_completions(habits, completions)
    habits = apply_filters(habits, filter_spec, today, window)
    return apply_sort(habits, sort_spec)


async def get_habit(
    conn: asyncpg.Connection,
    habit_id: Any,
    user_id: Any,
    window: RecentWindow,
    today: date,
    capabilities: SchemaCapabilities,
) -> dict[str, Any]:
    habit = await fetch_habit(conn, habit_id, user_id, capabilities)
    completions = await fetch_recent_completions(
        conn, user_id, window.start, window.end, habit_id=habit_id, capabilities=capabilities
    )
    completed_dates = await fetch_completed_dates(conn, habit_id)
    habit = refresh_streaks([habit], {str(habit["id"]): completed_dates}, today)[0]
    return attach_recent_completions([habit], completions)[0]


async def update_habit(
    conn: asyncpg.Connection,
    habit_id: Any,
    user_id: Any,
    payload: HabitUpdateRequest,
    capabilities: SchemaCapabilities,
) -> dict[str, Any]:
    """Apply the fields present in ``payload``; absent fields stay untouched."""
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise InvalidInputError("body", "no updatable fields provided")
    if not capabilities.habit_categories:
        for field in ("category", "is_archived"):
            if field in changes:
                raise InvalidInputError(field, "not available on this schema version")

    # column names come from the request model, never from raw input
    assignments = [f"{column} = ${index}" for index, column in enumerate(changes, start=3)]
    row = await fetchrow_named(
        conn,
        "habits.update",
        f"""
        UPDATE habits
        SET {", ".join(assignments)},
            updated_at = NOW()
        WHERE id = $1::uuid
          AND user_id = $2::uuid
        RETURNING {_habit_columns(capabilities)}
        """,
        str(habit_id),
        str(user_id),
        *changes.values(),
    )
    if row is None:
        raise NotFoundError("habit", habit_id)

    logger.info(
        "HABIT_UPDATED context=%s",
        log_ctx_json(log_ctx(user_id=user_id, habit_id=habit_id, extra={"fields": sorted(changes)})),
    )
    return dict(row)


async def delete_habit(
    conn: asyncpg.Connection,
    habit_id: Any,
    user_id: Any,
    capabilities: SchemaCapabilities,
) -> None:
    async with conn.transaction():
        await fetch_habit(conn, habit_id, user_id, capabilities, for_update=True)
        await execute_named(
            conn,
            "habits.delete.completions",
            "DELETE FROM habit_completions WHERE habit_id = $1::uuid",
            str(habit_id),
        )
        await execute_named(
            conn,
            "habits.delete.row",
            "DELETE FROM habits WHERE id = $1::uuid AND user_id = $2::uuid",
            str(habit_id),
            str(user_id),
        )

    logger.info(
        "HABIT_DELETED context=%s",
        log_ctx_json(log_ctx(user_id=user_id, habit_id=habit_id)),
    )


async def completion_history(
    conn: asyncpg.Connection,
    habit_id: Any,
    user_id: Any,
    start_date: date,
    end_date: date,
    capabilities: SchemaCapabilities,
    *,
    max_days: Optional[int] = None,
) -> list[dict[str, Any]]:
    if start_date > end_date:
        raise InvalidInputError("start_date", "must not be after end_date")
    if max_days is not None and (end_date - start_date).days + 1 > max_days:
        raise InvalidInputError("start_date", f"range must be at most {max_days} days")

    await fetch_habit(conn, habit_id, user_id, capabilities)
    return await fetch_recent_completions(
        conn, user_id, start_date, end_date, habit_id=habit_id, capabilities=capabilities
    )


@dataclass
class RecalculationSummary:
    total_scanned: int = 0
    diverged: int = 0
    failed: int = 0


async def recalculate_all_streaks(
    conn: asyncpg.Connection,
    today: date,
    capabilities: SchemaCapabilities,
    *,
    job_run_id: str = "",
) -> RecalculationSummary:
    """Sweep every habit and overwrite its cached streaks with fresh values.

    Heals caches left stale by day rollover or racing writes. One habit
    failing is logged and counted; the sweep carries on.
    """
    summary = RecalculationSummary()
    rows = await fetch_named(
        conn,
        "habits.all_ids",
        "SELECT id, user_id FROM habits ORDER BY created_at ASC",
    )
    for row in rows:
        summary.total_scanned += 1
        try:
            previous, fresh = await recalculate_streaks(conn, row["id"], row["user_id"], today, capabilities)
        except (asyncpg.PostgresError, NotFoundError) as exc:
            summary.failed += 1
            logger.error(
                "STREAK_RECALCULATE_FAILED job_run_id=%s habit_id=%s error=%s",
                job_run_id,
                row["id"],
                exc,
            )
            continue
        if previous != fresh:
            summary.diverged += 1
    return summary
