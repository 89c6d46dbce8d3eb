# models/schedule.py
import uuid

from sqlalchemy import Boolean, Column, Date, DateTime, Integer, String, Text, Time

from models.base import Base, utcnow


class Schedule(Base):
    __tablename__ = "schedules"
    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(64), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    schedule_date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    location = Column(String(200), nullable=True)
    is_all_day = Column(Boolean, default=False, nullable=False)
    notes = Column(Text, nullable=True)
    reminder_minutes = Column(Integer, nullable=True)  # 몇 분 전 알림, None이면 알림 없음
    repeat_type = Column(String(20), default="none", nullable=False)  # none/daily/weekly/monthly/yearly
    repeat_end_date = Column(Date, nullable=True)
    color = Column(String(20), default="#4AC4CF", nullable=False)
    is_important = Column(Boolean, default=False, nullable=False)
    category = Column(String(50), default="기타", nullable=False)
    is_ai_generated = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)  # 논리 삭제
