# schemas/tool_schema.py
# 모델이 호출할 수 있는 도구의 인자 스키마.
# 도구 이름(name)을 판별자로 쓰는 닫힌 유니온이므로, 실행 가능한 도구 목록은 여기에 있는 것이 전부다.
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _ToolCallBase(BaseModel):
    # 모델이 스펙에 없는 인자를 덧붙여도 무시한다
    model_config = ConfigDict(extra="ignore", frozen=True)


class CreateScheduleCall(_ToolCallBase):
    name: Literal["create_schedule"] = "create_schedule"
    title: Optional[str] = None
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    location: Optional[str] = None
    is_all_day: Optional[bool] = None
    notes: Optional[str] = None
    reminder_minutes: Optional[int] = None
    repeat_type: Optional[str] = None
    repeat_end_date: Optional[str] = None
    color: Optional[str] = None
    is_important: Optional[bool] = None
    category: Optional[str] = None


class QuerySchedulesCall(_ToolCallBase):
    name: Literal["query_schedules"] = "query_schedules"
    year: int
    month: int


class DeleteScheduleCall(_ToolCallBase):
    name: Literal["delete_schedule"] = "delete_schedule"
    keyword: Optional[str] = None


class DeleteScheduleByIndexCall(_ToolCallBase):
    name: Literal["delete_schedule_by_index"] = "delete_schedule_by_index"
    keyword: str
    index: int


ToolCall = Annotated[
    Union[CreateScheduleCall, QuerySchedulesCall, DeleteScheduleCall, DeleteScheduleByIndexCall],
    Field(discriminator="name"),
]

TOOL_NAMES = frozenset({
    "create_schedule",
    "query_schedules",
    "delete_schedule",
    "delete_schedule_by_index",
})

_TOOL_CALL_ADAPTER: TypeAdapter = TypeAdapter(ToolCall)


def parse_tool_call(function_name: str, args: Dict[str, Any]) -> ToolCall:
    """
    도구 이름과 인자(JSON dict)를 해당 도구의 호출 객체로 변환한다.

    :param function_name: 도구 이름
    :type function_name: str
    :param args: 모델이 보낸 인자
    :type args: Dict[str, Any]
    :raises pydantic.ValidationError: 알 수 없는 도구이거나 인자 타입이 맞지 않을 때
    :return: 검증된 도구 호출 객체
    """

    payload = dict(args or {})
    payload["name"] = function_name
    return _TOOL_CALL_ADAPTER.validate_python(payload)
