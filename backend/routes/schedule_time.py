# routes/schedule_time.py
# 시간 / 날짜 파싱 / 정규식

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional, Tuple

KST = timezone(timedelta(hours=9))
WEEKDAY_KO = ["월", "화", "수", "목", "금", "토", "일"]

HHMM_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# 모델이 '값 없음'을 이런 문자열로 보내는 경우가 있다
_BLANK_TOKENS = {"null", "none"}

def _now_kst_iso() -> str:
    """
    현재 시각을 KST ISO 8601 문자열로 반환한다.

    :return: +09:00 오프셋을 포함한 ISO 문자열
    :rtype: str
    """

    return datetime.now(KST).isoformat()

def _today_kst() -> date:
    return datetime.now(KST).date()

def _friendly_today() -> str:
    """
    KST 기준 '오늘'을 사람이 읽기 쉬운 형식으로 반환한다.
    예: "2025-08-25 (월) 13:20

    :return: "YYYY-MM-DD (요일) HH:MM" 형태 문자열
    :rtype: str
    """

    n = datetime.now(KST)
    return f"{n.strftime('%Y-%m-%d')} ({WEEKDAY_KO[n.weekday()]}) {n.strftime('%H:%M')}"

def _is_blank(v: Any) -> bool:
    """None / 빈 문자열 / 'null' / 'none' 을 모두 '값 없음'으로 본다."""
    if v is None:
        return True
    s = str(v).strip()
    return not s or s.lower() in _BLANK_TOKENS

def _parse_hhmm(s: str) -> Optional[Tuple[int, int]]:
    """
    'HH:MM' 형식을 (hour, minute) 튜플로 파싱한다.

    :param s: 시각 문자열
    :type s: str
    :return: (시, 분) 또는 None
    :rtype: Optional[Tuple[int, int]]
    """

    m = HHMM_RE.match(s.strip())
    return (int(m.group(1)), int(m.group(2))) if m else None

def _parse_time(s: Optional[str]) -> Optional[time]:
    # 형식이 틀리면 ValueError
    if _is_blank(s):
        return None
    hm = _parse_hhmm(str(s))
    if hm is None:
        raise ValueError(f"invalid time: {s}")
    return time(hm[0], hm[1])

def _parse_date(s: Optional[str]) -> date:
    """
    'YYYY-MM-DD' 문자열을 date로 파싱한다. 달력에 없는 날짜(2025-02-30 등)도 실패로 본다.

    :raises ValueError: 형식이 틀리거나 존재하지 않는 날짜일 때
    """

    v = (s or "").strip()
    if not DATE_RE.match(v):
        raise ValueError(f"invalid date: {s}")
    return date.fromisoformat(v)

def _next_month(year: int, month: int) -> Tuple[int, int]:
    return (year + 1, 1) if month == 12 else (year, month + 1)

def _fmt_hhmm(t: Optional[time]) -> Optional[str]:
    return t.strftime("%H:%M") if t else None
