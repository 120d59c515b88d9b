from datetime import date, timedelta
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from . import habit_service
from .aggregator import FilterSpec, SortSpec, build_habit_view, completion_record, recent_window
from .config import settings
from .db import SchemaCapabilities, get_capabilities, get_db
from .deps import get_current_user
from .schemas import (
    CompletionHistoryResponse,
    CompletionPeriod,
    DeleteHabitResponse,
    HabitCreateRequest,
    HabitFilters,
    HabitListResponse,
    HabitResponse,
    HabitSort,
    HabitUpdateRequest,
    RecalculateStreaksResponse,
    StreakResponse,
    ToggleCompletionRequest,
    ToggleCompletionResponse,
)
from .streak_logic import StreakResult, parse_completion_date, reference_today


router = APIRouter(prefix="/v1/habits", tags=["Habits"])


def get_reference_today() -> date:
    """Resolved once per request; every computation in the request shares it."""
    return reference_today(settings.get_streak_timezone())


def _streak_response(streaks: StreakResult) -> StreakResponse:
    return StreakResponse(currentStreak=streaks.current_streak, longestStreak=streaks.longest_streak)


def _optional_date(raw: Optional[str], field: str) -> Optional[date]:
    if raw is None:
        return None
    return parse_completion_date(raw, settings.get_streak_timezone(), field=field)


@router.get("", response_model=HabitListResponse)
async def list_habits(
    days: Optional[int] = Query(default=None),
    category: Optional[str] = Query(default=None),
    is_archived: Optional[bool] = Query(default=None),
    completed_today: Optional[bool] = Query(default=None),
    sort_by: Optional[str] = Query(default=None),
    sort_order: Optional[str] = Query(default=None),
    user=Depends(get_current_user),
    conn=Depends(get_db),
    today: date = Depends(get_reference_today),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    window = recent_window(
        today,
        settings.get_recent_days_default() if days is None else days,
        max_days=settings.get_recent_days_max(),
    )
    filter_spec = FilterSpec.from_mapping(
        {
            "category": category,
            "is_archived": is_archived,
            "completed_today": completed_today,
        }
    )
    sort_spec = SortSpec.parse(sort_by, sort_order)

    habits = await habit_service.list_habits(
        conn,
        user["id"],
        filter_spec,
        sort_spec,
        window,
        today,
        capabilities,
    )
    return HabitListResponse(
        habits=[build_habit_view(habit, today) for habit in habits],
        count=len(habits),
        today=today.isoformat(),
        windowStart=window.start.isoformat(),
        windowEnd=window.end.isoformat(),
        filters=HabitFilters(
            category=filter_spec.category,
            isArchived=filter_spec.is_archived,
            completedToday=filter_spec.completed_today,
        ),
        sort=HabitSort(by=sort_spec.by, order=sort_spec.order),
    )


@router.post("", response_model=HabitResponse, status_code=201)
async def create_habit(
    payload: HabitCreateRequest,
    user=Depends(get_current_user),
    conn=Depends(get_db),
    today: date = Depends(get_reference_today),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    habit = await habit_service.create_habit(conn, user["id"], payload, capabilities)
    return HabitResponse(habit=build_habit_view(habit, today))


@router.get("/{habit_id}", response_model=HabitResponse)
async def get_habit(
    habit_id: UUID,
    days: Optional[int] = Query(default=None),
    user=Depends(get_current_user),
    conn=Depends(get_db),
    today: date = Depends(get_reference_today),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    window = recent_window(
        today,
        settings.get_recent_days_default() if days is None else days,
        max_days=settings.get_recent_days_max(),
    )
    habit = await habit_service.get_habit(conn, habit_id, user["id"], window, today, capabilities)
    return HabitResponse(habit=build_habit_view(habit, today))


@router.put("/{habit_id}", response_model=HabitResponse)
async def update_habit(
    habit_id: UUID,
    payload: HabitUpdateRequest,
    user=Depends(get_current_user),
    conn=Depends(get_db),
    today: date = Depends(get_reference_today),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    await habit_service.update_habit(conn, habit_id, user["id"], payload, capabilities)
    window = recent_window(today, settings.get_recent_days_default(), max_days=settings.get_recent_days_max())
    habit = await habit_service.get_habit(conn, habit_id, user["id"], window, today, capabilities)
    return HabitResponse(habit=build_habit_view(habit, today))


@router.delete("/{habit_id}", response_model=DeleteHabitResponse)
async def delete_habit(
    habit_id: UUID,
    user=Depends(get_current_user),
    conn=Depends(get_db),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    await habit_service.delete_habit(conn, habit_id, user["id"], capabilities)
    return DeleteHabitResponse(deleted=True, habitId=habit_id)


@router.post("/{habit_id}/toggle", response_model=ToggleCompletionResponse)
async def toggle_completion(
    habit_id: UUID,
    payload: ToggleCompletionRequest,
    user=Depends(get_current_user),
    conn=Depends(get_db),
    today: date = Depends(get_reference_today),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    completion_date = parse_completion_date(payload.date, settings.get_streak_timezone())
    completion, streaks = await habit_service.toggle_completion(
        conn,
        habit_id,
        user["id"],
        completion_date,
        payload.completed,
        today,
        capabilities,
    )
    return ToggleCompletionResponse(
        completion=completion_record(completion),
        streaks=_streak_response(streaks),
    )


@router.get("/{habit_id}/completions", response_model=CompletionHistoryResponse)
async def get_completion_history(
    habit_id: UUID,
    start_date_raw: Optional[str] = Query(default=None, alias="start_date"),
    end_date_raw: Optional[str] = Query(default=None, alias="end_date"),
    user=Depends(get_current_user),
    conn=Depends(get_db),
    today: date = Depends(get_reference_today),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    end_date = _optional_date(end_date_raw, "end_date") or today
    # default range is end_date plus the HISTORY_DAYS_DEFAULT days before it (31 days
    # for the default of 30); get_history_days_max leaves room for that extra day
    start_date = _optional_date(start_date_raw, "start_date") or (
        end_date - timedelta(days=settings.get_history_days_default())
    )

    completions = await habit_service.completion_history(
        conn,
        habit_id,
        user["id"],
        start_date,
        end_date,
        capabilities,
        max_days=settings.get_history_days_max(),
    )
    return CompletionHistoryResponse(
        completions=[completion_record(c) for c in completions],
        period=CompletionPeriod(startDate=start_date.isoformat(), endDate=end_date.isoformat()),
    )


@router.post("/{habit_id}/streaks/recalculate", response_model=RecalculateStreaksResponse)
async def recalculate_streaks(
    habit_id: UUID,
    user=Depends(get_current_user),
    conn=Depends(get_db),
    today: date = Depends(get_reference_today),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    previous, fresh = await habit_service.recalculate_streaks(conn, habit_id, user["id"], today, capabilities)
    return RecalculateStreaksResponse(
        streaks=_streak_response(fresh),
        previous=_streak_response(previous),
        diverged=previous != fresh,
    )
