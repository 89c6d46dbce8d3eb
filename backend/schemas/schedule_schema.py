# schemas/schedule_schema.py
from pydantic import BaseModel, Field, field_validator
from typing import Literal, Optional
from datetime import date, time

RepeatType = Literal["none", "daily", "weekly", "monthly", "yearly"]


class ScheduleCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    schedule_date: date
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    location: Optional[str] = Field(None, max_length=200)
    is_all_day: bool = False
    notes: Optional[str] = None
    reminder_minutes: Optional[int] = Field(None, gt=0)
    repeat_type: RepeatType = "none"
    repeat_end_date: Optional[date] = None
    color: Optional[str] = None
    is_important: bool = False
    category: Optional[str] = None
    is_ai_generated: bool = False

    @field_validator("end_time")
    @classmethod
    def _end_after_start(cls, v, info):
        start = info.data.get("start_time")
        if v and start and v < start:
            raise ValueError("end_time must be after start_time")
        return v
