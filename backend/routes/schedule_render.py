# routes/schedule_render.py
# 렌더/ 서식(도구 결과 문자열)

from typing import List

from models.schedule import Schedule
from routes.schedule_time import _fmt_hhmm

REPEAT_TEXT = {
    "daily": "매일 반복",
    "weekly": "매주 반복",
    "monthly": "매월 반복",
    "yearly": "매년 반복",
}

def _time_range(e: Schedule, missing: str = "미정") -> str:
    if e.is_all_day:
        return "종일"
    return f"{_fmt_hhmm(e.start_time) or missing} - {_fmt_hhmm(e.end_time) or missing}"

def _line(e: Schedule) -> str:
    """
    목록 한 줄: "[2025-07-15] 팀 회의 14:00 - 15:00 @ 회의실"
    """

    line = f"[{e.schedule_date.isoformat()}] {e.title} {_time_range(e)}"
    if e.location and e.location.strip():
        line += f" @ {e.location}"
    return line

def _short_line(e: Schedule) -> str:
    # 삭제 확인/후보 목록용: 시작 시각만 보여 준다
    when = "종일" if e.is_all_day else (_fmt_hhmm(e.start_time) or "시간 미정")
    return f"[{e.schedule_date.isoformat()}] {e.title} {when}"

def _numbered(items: List[str]) -> str:
    return "\n".join(f"{i}. {s}" for i, s in enumerate(items, 1))

def render_created(e: Schedule) -> str:
    extras = ""
    if e.location:
        extras += f", 장소: {e.location}"
    if e.reminder_minutes:
        extras += f", {e.reminder_minutes}분 전 알림"
    if e.repeat_type in REPEAT_TEXT:
        extras += f", {REPEAT_TEXT[e.repeat_type]}"
    return (
        "✅ 일정이 생성되었습니다.\n"
        f"📅 제목: {e.title}\n"
        f"📆 날짜: {e.schedule_date.isoformat()}\n"
        f"⏰ 시간: {_time_range(e)}{extras}"
    )

def render_month(year: int, month: int, items: List[Schedule]) -> str:
    if not items:
        return f"📅 {year}년 {month}월에는 일정이 없습니다."
    head = f"📅 {year}년 {month}월 일정은 모두 {len(items)}개입니다.\n\n"
    return head + _numbered([_line(e) for e in items])

def render_deleted(e: Schedule) -> str:
    return f"✅ 일정을 삭제했습니다: {_short_line(e)}"

def render_candidates(keyword: str, items: List[Schedule]) -> str:
    return (
        f"'{keyword}'이(가) 포함된 일정이 {len(items)}개 있습니다.\n\n"
        + _numbered([_short_line(e) for e in items])
        + "\n\n삭제할 일정의 번호를 알려 주세요. 예: '1번 삭제'"
    )
