# routes/schedule_spec.py
# 툴 스펙 / 시스템 프롬프트

from schemas.tool_schema import TOOL_NAMES

ALLOWED_TOOLS = TOOL_NAMES

_CREATE_SCHEDULE = {
    "type": "function",
    "function": {
        "name": "create_schedule",
        "description": (
            "새 일정을 생성한다.\n"
            "- 사용자가 '일정 추가', '일정 잡아줘', '~ 등록해줘' 등 일정을 만들려는 의도를 보이면 호출한다.\n"
            "- date는 YYYY-MM-DD, 시간은 HH:MM(24시간제).\n"
            "- 구체적인 시간이 없으면 is_all_day=true, 있으면 false."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "일정 제목(필수)"},
                "date": {"type": "string", "description": "일정 날짜, YYYY-MM-DD(필수)"},
                "start_time": {"type": "string", "description": "시작 시각 HH:MM, 없으면 빈 문자열"},
                "end_time": {"type": "string", "description": "종료 시각 HH:MM, 없으면 빈 문자열"},
                "location": {"type": "string", "description": "장소, 없으면 빈 문자열"},
                "is_all_day": {"type": "boolean", "description": "종일 일정 여부"},
                "notes": {"type": "string", "description": "메모, 없으면 빈 문자열"},
                "reminder_minutes": {"type": "integer", "description": "몇 분 전에 알릴지, 알림이 없으면 0"},
                "repeat_type": {
                    "type": "string",
                    "enum": ["none", "daily", "weekly", "monthly", "yearly"],
                    "description": "반복 유형(기본 none)",
                },
                "repeat_end_date": {"type": "string", "description": "반복 종료일 YYYY-MM-DD, 없으면 빈 문자열"},
                "color": {"type": "string", "description": "색상(#RRGGBB), 없으면 빈 문자열"},
                "is_important": {"type": "boolean", "description": "중요 일정 여부"},
                "category": {
                    "type": "string",
                    "description": "분류: 업무/학습/운동/건강/생활/사교/가족/출장/개인/기타 중 하나",
                },
            },
            "required": ["title", "date"],
            "additionalProperties": False,
        },
    },
}

TOOLS_SPEC = [
    _CREATE_SCHEDULE,
    {
        "type": "function",
        "function": {
            "name": "query_schedules",
            "description": (
                "지정한 달의 일정 목록을 조회한다.\n"
                "- '일정 보여줘', '이번 달 뭐 있어?' 등 조회 의도일 때 호출한다.\n"
                "- 결과는 서버가 번호 목록으로 만들어 돌려준다."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "year": {"type": "integer", "description": "연도, 예: 2025"},
                    "month": {"type": "integer", "description": "월(1-12)"},
                },
                "required": ["year", "month"],
                "additionalProperties": False,
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "delete_schedule",
            "description": (
                "제목 키워드로 일정을 삭제한다.\n"
                "- 이번 달(없으면 다음 달) 일정 중 제목에 키워드가 들어간 일정을 찾는다.\n"
                "- 하나만 찾으면 바로 삭제한다.\n"
                "- 여러 개면 삭제하지 않고 번호 목록을 돌려준다. 그 목록을 사용자에게 보여 주고 번호를 물어본다."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "keyword": {"type": "string", "description": "삭제할 일정 제목의 키워드, 예: 헬스, 회의"},
                },
                "required": ["keyword"],
                "additionalProperties": False,
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "delete_schedule_by_index",
            "description": (
                "delete_schedule이 여러 후보를 돌려준 뒤 사용자가 '1번 삭제'처럼 번호를 고르면 호출한다.\n"
                "- keyword는 직전 delete_schedule 호출과 같은 값을 쓴다.\n"
                "- index는 1부터 시작한다."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "keyword": {"type": "string", "description": "직전 삭제 요청의 키워드"},
                    "index": {"type": "integer", "description": "삭제할 일정 번호(1부터)"},
                },
                "required": ["keyword", "index"],
                "additionalProperties": False,
            },
        },
    },
]

# 빠른 일정 추가(세션 없이 한 번만 처리) 흐름에서는 생성 도구만 쓴다
QUICK_TOOLS_SPEC = [_CREATE_SCHEDULE]
QUICK_ALLOWED_TOOLS = frozenset({"create_schedule"})


SYSTEM_POLICY_TEMPLATE = """
You are ScheduleBot. 로그인한 사용자의 일정만 처리합니다.

- 한국어로 답변합니다.
- 현재 시각: {TODAY_FRIENDLY} (ISO: {NOW_ISO}), 모든 시간은 Asia/Seoul(KST) 기준입니다.
- "내일", "다음 주 화요일", "이번 달" 같은 표현은 현재 시각을 기준으로 직접 계산해서 도구 인자에 넣으세요.
- 사용자에게는 ISO 형식을 노출하지 않습니다.

[핵심 원칙]
- 일정 생성 → create_schedule, 조회 → query_schedules, 삭제 → delete_schedule 을 호출합니다.
- delete_schedule 결과에 번호 목록이 오면 아무것도 삭제되지 않은 상태입니다. 목록을 그대로 보여 주고 번호를 물어보세요.
- 사용자가 번호를 고르면 같은 keyword로 delete_schedule_by_index 를 호출합니다.
- 일정과 관련된 내용은 **절대로 자체 판단으로 결과를 지어내지 말고** 반드시 도구 결과를 근거로 답합니다.

[응답 규칙]
- **"잠시만 기다려 주세요", "처리 중입니다" 등의 진행 상황 멘트는 절대 사용하지 마세요**
- **작업이 완료되면 결과만 간결하게 알려주세요**
- 도구가 오류 문구를 돌려주면 그 이유를 사용자에게 자연스럽게 설명하세요.
""".strip()


QUICK_POLICY_TEMPLATE = """
You are ScheduleBot. 사용자가 보낸 한 문장(또는 화면에서 인식한 텍스트)에서 일정을 뽑아 바로 생성합니다.

- 한국어로 답변합니다.
- 현재 시각: {TODAY_FRIENDLY} (ISO: {NOW_ISO}), 모든 시간은 Asia/Seoul(KST) 기준입니다.
- 이전 대화는 없습니다. 되묻지 말고, 제목과 날짜를 추론할 수 있으면 create_schedule 을 바로 호출하세요.
- 날짜를 전혀 알 수 없을 때만 생성하지 않고 이유를 짧게 알려 주세요.
- 생성 결과를 한두 문장으로 요약해서 답합니다.
""".strip()
