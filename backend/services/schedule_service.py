# services/schedule_service.py
import calendar
import logging
from datetime import date
from typing import List, Optional

from sqlalchemy.orm import Session

from models.schedule import Schedule
from schemas.schedule_schema import ScheduleCreate

logger = logging.getLogger(__name__)

DEFAULT_COLOR = "#4AC4CF"
DEFAULT_CATEGORY = "기타"


def create(db: Session, owner_id: str, payload: ScheduleCreate) -> Schedule:
    ev = Schedule(
        owner_id=owner_id,
        title=payload.title,
        schedule_date=payload.schedule_date,
        start_time=payload.start_time,
        end_time=payload.end_time,
        location=payload.location,
        is_all_day=payload.is_all_day,
        notes=payload.notes,
        reminder_minutes=payload.reminder_minutes,
        repeat_type=payload.repeat_type,
        repeat_end_date=payload.repeat_end_date,
        color=payload.color or DEFAULT_COLOR,
        is_important=payload.is_important,
        category=payload.category or DEFAULT_CATEGORY,
        is_ai_generated=payload.is_ai_generated,
    )
    db.add(ev); db.commit(); db.refresh(ev)
    logger.info("schedule created owner=%s id=%s date=%s", owner_id, ev.id, ev.schedule_date)
    return ev

def get_list(
    db: Session,
    owner_id: str,
    date_from: date,
    date_to: date,
) -> List[Schedule]:
    return (
        db.query(Schedule)
        .filter(
            Schedule.owner_id == owner_id,
            Schedule.is_deleted.is_(False),
            Schedule.schedule_date >= date_from,
            Schedule.schedule_date <= date_to,
        )
        .order_by(
            Schedule.schedule_date.asc(),
            Schedule.is_all_day.desc(),
            Schedule.start_time.asc(),
            Schedule.created_at.asc(),
        )
        .all()
    )

def get_by_month(db: Session, owner_id: str, year: int, month: int) -> List[Schedule]:
    last_day = calendar.monthrange(year, month)[1]
    return get_list(db, owner_id, date(year, month, 1), date(year, month, last_day))

def get(db: Session, schedule_id: str) -> Optional[Schedule]:
    ev = db.get(Schedule, schedule_id)
    if ev is None or ev.is_deleted:
        return None
    return ev

def delete(db: Session, owner_id: str, schedule_id: str) -> Schedule:
    ev = get(db, schedule_id)
    if not ev: raise ValueError("NOT_FOUND")
    if ev.owner_id != owner_id: raise PermissionError("FORBIDDEN")
    ev.is_deleted = True
    db.commit(); db.refresh(ev)
    logger.info("schedule deleted owner=%s id=%s", owner_id, schedule_id)
    return ev
