from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, StrictBool, field_validator


class HabitCreateRequest(BaseModel):
    title: str = Field(..., max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    category: Optional[str] = Field(default=None, max_length=100)

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title is required")
        return value

    @field_validator("description", "category")
    @classmethod
    def _strip_optional(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class HabitUpdateRequest(BaseModel):
    # only fields the client sends are written; an explicit null clears description/category
    title: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    category: Optional[str] = Field(default=None, max_length=100)
    is_archived: Optional[StrictBool] = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: Optional[str]) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("title must not be empty")
        return value

    @field_validator("description", "category")
    @classmethod
    def _strip_optional(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("is_archived")
    @classmethod
    def _archived_not_null(cls, value: Optional[bool]) -> bool:
        if value is None:
            raise ValueError("is_archived must be a boolean")
        return value


class DeleteHabitResponse(BaseModel):
    deleted: bool
    habitId: UUID


class ToggleCompletionRequest(BaseModel):
    # parsed into a calendar day by the router so the reference timezone applies
    date: str = Field(..., min_length=1, max_length=64)
    completed: StrictBool


class CompletionRecord(BaseModel):
    habitId: UUID
    date: str  # YYYY-MM-DD
    completed: bool
    updatedAt: Optional[datetime] = None


class HabitView(BaseModel):
    id: UUID
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    isArchived: bool = False
    currentStreak: int = Field(..., ge=0)
    longestStreak: int = Field(..., ge=0)
    createdAt: datetime
    completedToday: bool = False
    recentCompletions: List[CompletionRecord] = Field(default_factory=list)


class HabitFilters(BaseModel):
    category: Optional[str] = None
    isArchived: Optional[bool] = None
    completedToday: Optional[bool] = None


class HabitSort(BaseModel):
    by: Literal["title", "current_streak", "created_at"]
    order: Literal["asc", "desc"]


class HabitListResponse(BaseModel):
    habits: List[HabitView]
    count: int = Field(..., ge=0)
    today: str
    windowStart: str
    windowEnd: str
    filters: HabitFilters
    sort: HabitSort


class HabitResponse(BaseModel):
    habit: HabitView


class ToggleCompletionResponse(BaseModel):
    completion: CompletionRecord
    streaks: "StreakResponse"


class StreakResponse(BaseModel):
    currentStreak: int = Field(..., ge=0)
    longestStreak: int = Field(..., ge=0)


class RecalculateStreaksResponse(BaseModel):
    streaks: StreakResponse
    previous: StreakResponse
    diverged: bool


class CompletionPeriod(BaseModel):
    startDate: str
    endDate: str


class CompletionHistoryResponse(BaseModel):
    completions: List[CompletionRecord]
    period: CompletionPeriod


ToggleCompletionResponse.model_rebuild()
