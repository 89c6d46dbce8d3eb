# 일정 도구 디스패처. LLM이 도구(tool)를 호출하면 여기의 핸들러들이 실제 일정 저장소(schedule_service)를 호출함.
import logging
from datetime import date
from typing import Any, Callable, Dict, FrozenSet, List

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.schedule import Schedule
from routes.chat_context import ContextRegistry, TurnContext, bound_turn
from routes.schedule_render import (
    render_candidates,
    render_created,
    render_deleted,
    render_month,
)
from routes.schedule_spec import ALLOWED_TOOLS
from routes.schedule_state import DisambiguationStore
from routes.schedule_time import (
    _is_blank,
    _next_month,
    _parse_date,
    _parse_time,
    _today_kst,
)
from schemas.schedule_schema import ScheduleCreate
from schemas.tool_schema import (
    CreateScheduleCall,
    DeleteScheduleByIndexCall,
    DeleteScheduleCall,
    QuerySchedulesCall,
    parse_tool_call,
)
from services import schedule_service

logger = logging.getLogger(__name__)

REPEAT_TYPES = {"none", "daily", "weekly", "monthly", "yearly"}

MSG_NO_CALLER = "사용자 정보를 확인할 수 없습니다. 다시 로그인한 뒤 시도해 주세요."
MSG_SAVE_FAILED = "일정을 저장하지 못했습니다. 잠시 후 다시 시도해 주세요."
MSG_GONE = "선택한 일정이 이미 삭제되었거나 찾을 수 없습니다. 일정을 다시 조회해 주세요."
MSG_INTERNAL = "일정 처리 중 오류가 발생했습니다."

ToolHandler = Callable[[str, Dict[str, Any]], str]


class ToolValidationError(ValueError):
    """도구 인자가 잘못된 경우. 메시지는 그대로 모델에게 전달된다."""


class IndexOutOfRange(ToolValidationError):
    pass


def _not_found(keyword: str) -> str:
    return f"'{keyword}'이(가) 포함된 일정을 찾지 못했습니다."


class ScheduleToolDispatcher:
    """
    모델의 도구 호출을 일정 저장소 작업으로 바꿔 실행한다.

    - 도구 결과는 항상 문자열이며, 검증 오류도 예외 대신 안내 문구로 돌려준다.
    - 호출자 ID는 턴 시작 시 넘겨받은 TurnContext에서만 얻는다.
    - 스트림 이벤트는 보내지 않는다(토큰 전달은 턴 워커의 몫).

    :param session_factory: DB 세션 팩토리(sessionmaker)
    :param registry: sessionId -> callerId 레지스트리
    :param disambiguation: 키워드 삭제 후보 저장소
    :param today_fn: '오늘'(KST) 계산 함수, 테스트에서 고정 날짜를 주입한다
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        registry: ContextRegistry,
        disambiguation: DisambiguationStore,
        today_fn: Callable[[], date] = _today_kst,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._disambiguation = disambiguation
        self._today_fn = today_fn

    def create_tool_handler(self, ctx: TurnContext, allowed_tools: FrozenSet[str] = ALLOWED_TOOLS) -> ToolHandler:
        """
        턴별 도구 핸들러 팩토리.
        LLM이 호출하는 function tool 이름에 따라 해당 핸들러로 라우팅함.

        :param ctx: 이번 턴의 호출자/세션 정보
        :type ctx: TurnContext
        :param allowed_tools: 이번 턴에 허용된 도구 이름
        :return: (function_name, args) -> 결과 문자열 형태의 Callable
        :rtype: Callable[[str, Dict[str, Any]], str]
        """

        def handle_tool(function_name: str, args: Dict[str, Any]) -> str:
            """
            LLM의 개별 도구 호출을 실제 핸들러로 연결함

            :param function_name: 도구(함수) 이름 (예: "create_schedule")
            :type function_name: str
            :param args: 도구 인수(JSON)
            :type args: Dict[str, Any]
            :return: 모델에게 돌려줄 결과 문자열
            :rtype: str
            """
            with bound_turn(ctx):
                if function_name not in allowed_tools:
                    logger.warning("[TOOL] unknown function: %s", function_name)
                    return f"알 수 없는 도구입니다: {function_name}"

                if self._registry.resolve(ctx.session_id) != ctx.caller_id:
                    logger.error("[TOOL] %s refused: session %s is not bound to caller %s",
                                 function_name, ctx.session_id, ctx.caller_id)
                    return MSG_NO_CALLER

                try:
                    call = parse_tool_call(function_name, args)
                except ValidationError as e:
                    logger.info("[TOOL] %s invalid args: %s", function_name, e.errors())
                    return f"도구 인자가 올바르지 않습니다: {_first_error(e)}"

                logger.debug("[TOOL] %s args=%s", function_name, args)
                try:
                    if isinstance(call, CreateScheduleCall):
                        return self.create(ctx, call)
                    elif isinstance(call, QuerySchedulesCall):
                        return self.query(ctx, call)
                    elif isinstance(call, DeleteScheduleCall):
                        return self.delete(ctx, call)
                    elif isinstance(call, DeleteScheduleByIndexCall):
                        return self.delete_by_index(ctx, call)
                    return f"알 수 없는 도구입니다: {function_name}"
                except ToolValidationError as e:
                    logger.info("[TOOL] %s rejected: %s", function_name, e)
                    return str(e)
                except Exception as e:
                    logger.exception("Error in tool handler %s: %s", function_name, e)
                    return MSG_INTERNAL

        return handle_tool

    # 개별 도구 핸들러들(LLM이 호출함)
    def create(self, ctx: TurnContext, call: CreateScheduleCall) -> str:
        """
        일정 생성

        1. 제목/날짜 필수 검사, 날짜는 YYYY-MM-DD, 시간은 HH:MM
        2. 시작/종료 시각이 모두 없으면 종일 일정으로 본다
        3. 저장 후 이 세션의 삭제 후보 상태를 비운다

        :raises ToolValidationError: 필수 값이 없거나 형식이 틀린 경우
        :return: 생성 확인 문구
        :rtype: str
        """
        if _is_blank(call.title):
            raise ToolValidationError("일정 제목이 필요합니다. 어떤 일정인지 알려 주세요.")
        if _is_blank(call.date):
            raise ToolValidationError("일정 날짜가 필요합니다. 날짜를 YYYY-MM-DD 형식으로 알려 주세요.")

        try:
            schedule_date = _parse_date(call.date)
        except ValueError:
            raise ToolValidationError(
                f"날짜 형식이 올바르지 않습니다: {call.date}. YYYY-MM-DD 형식으로 입력해 주세요."
            )
        try:
            start_time = _parse_time(call.start_time)
            end_time = _parse_time(call.end_time)
        except ValueError:
            raise ToolValidationError("시간 형식이 올바르지 않습니다. HH:MM(24시간제) 형식으로 입력해 주세요.")

        repeat_end_date = None
        if not _is_blank(call.repeat_end_date):
            try:
                repeat_end_date = _parse_date(call.repeat_end_date)
            except ValueError:
                raise ToolValidationError(
                    f"반복 종료일 형식이 올바르지 않습니다: {call.repeat_end_date}. YYYY-MM-DD 형식으로 입력해 주세요."
                )

        repeat_type = "none" if _is_blank(call.repeat_type) else str(call.repeat_type).strip().lower()
        if repeat_type not in REPEAT_TYPES:
            raise ToolValidationError("반복 유형은 none/daily/weekly/monthly/yearly 중 하나여야 합니다.")

        is_all_day = call.is_all_day
        if is_all_day is None:
            is_all_day = start_time is None and end_time is None
        if is_all_day:
            start_time = end_time = None
        if start_time and end_time and end_time < start_time:
            raise ToolValidationError("종료 시각이 시작 시각보다 빠릅니다. 시간을 다시 확인해 주세요.")

        try:
            payload = ScheduleCreate(
                title=call.title.strip(),
                schedule_date=schedule_date,
                start_time=start_time,
                end_time=end_time,
                location=None if _is_blank(call.location) else call.location.strip(),
                is_all_day=is_all_day,
                notes=None if _is_blank(call.notes) else call.notes,
                reminder_minutes=call.reminder_minutes if (call.reminder_minutes or 0) > 0 else None,
                repeat_type=repeat_type,
                repeat_end_date=repeat_end_date,
                color=None if _is_blank(call.color) else call.color.strip(),
                is_important=bool(call.is_important),
                category=None if _is_blank(call.category) else call.category.strip(),
                is_ai_generated=True,
            )
        except ValidationError as e:
            raise ToolValidationError(f"일정 정보가 올바르지 않습니다: {_first_error(e)}")

        with self._session_factory() as db:
            try:
                ev = schedule_service.create(db, ctx.caller_id, payload)
            except SQLAlchemyError as e:
                logger.error("[TOOL] create_schedule failed: %s", e)
                return MSG_SAVE_FAILED
            result = render_created(ev)

        self._disambiguation.clear_session(ctx.session_id)
        return result

    def query(self, ctx: TurnContext, call: QuerySchedulesCall) -> str:
        """
        지정한 달의 일정 목록 조회

        :raises ToolValidationError: 월이 1~12 범위를 벗어난 경우
        """
        if not 1 <= call.month <= 12:
            raise ToolValidationError("월은 1부터 12 사이여야 합니다.")
        if not 1 <= call.year <= 9999:
            raise ToolValidationError("연도가 올바르지 않습니다.")

        with self._session_factory() as db:
            items = schedule_service.get_by_month(db, ctx.caller_id, call.year, call.month)
            return render_month(call.year, call.month, items)

    def delete(self, ctx: TurnContext, call: DeleteScheduleCall) -> str:
        """
        키워드로 일정 삭제

        - 이번 달(비어 있으면 다음 달) 일정 중 제목에 키워드가 들어간 것을 찾는다.
        - 0개: 실패 안내
        - 1개: 바로 삭제, 세션의 후보 상태 정리
        - 여러 개: 삭제하지 않고 번호 목록 반환, 후보 ID를 순서대로 기록

        :raises ToolValidationError: 키워드가 비어 있는 경우
        """
        keyword = _require_keyword(call.keyword)

        with self._session_factory() as db:
            matches = self._search(db, ctx.caller_id, keyword)
            if not matches:
                return _not_found(keyword)

            if len(matches) == 1:
                result = self._delete_one(db, ctx, matches[0].id)
                if result is not None:
                    self._disambiguation.clear_session(ctx.session_id)
                    return result
                return MSG_GONE

            self._disambiguation.record(ctx.session_id, keyword, [e.id for e in matches])
            return render_candidates(keyword, matches)

    def delete_by_index(self, ctx: TurnContext, call: DeleteScheduleByIndexCall) -> str:
        """
        번호로 일정 삭제(delete_schedule 이 여러 후보를 돌려준 다음 단계)

        기록된 후보 ID 목록이 있으면 그 목록에서 고르고, 없을 때만 검색을 다시 수행한다.

        :raises IndexOutOfRange: 번호가 1~후보 수 범위를 벗어난 경우
        """
        keyword = _require_keyword(call.keyword)
        pending = self._disambiguation.get(ctx.session_id, keyword)

        with self._session_factory() as db:
            if pending is not None:
                candidate_ids = list(pending.candidate_ids)
            else:
                logger.info("[TOOL] no pending candidates session=%s keyword=%s, searching again",
                            ctx.session_id, keyword)
                candidate_ids = [e.id for e in self._search(db, ctx.caller_id, keyword)]
                if not candidate_ids:
                    return _not_found(keyword)

            if not 1 <= call.index <= len(candidate_ids):
                raise IndexOutOfRange(
                    f"번호가 올바르지 않습니다. 1부터 {len(candidate_ids)} 사이의 숫자를 입력해 주세요."
                )

            result = self._delete_one(db, ctx, candidate_ids[call.index - 1])
            if result is None:
                return MSG_GONE

        self._disambiguation.discard(ctx.session_id, keyword)
        return result

    # 헬퍼
    def _search(self, db: Session, owner_id: str, keyword: str) -> List[Schedule]:
        """
        이번 달 일정에서 제목에 keyword가 들어간 일정을 찾는다.
        이번 달에 일정이 하나도 없으면 다음 달을 본다.
        """
        today = self._today_fn()
        items = schedule_service.get_by_month(db, owner_id, today.year, today.month)
        if not items:
            y, m = _next_month(today.year, today.month)
            items = schedule_service.get_by_month(db, owner_id, y, m)
        return [e for e in items if keyword in (e.title or "")]

    def _delete_one(self, db: Session, ctx: TurnContext, schedule_id: str):
        """삭제에 성공하면 확인 문구, 대상이 사라졌으면 None"""
        try:
            ev = schedule_service.delete(db, ctx.caller_id, schedule_id)
        except (ValueError, PermissionError) as e:
            logger.info("[TOOL] delete target unavailable id=%s: %s", schedule_id, e)
            return None
        return render_deleted(ev)


def _require_keyword(keyword) -> str:
    if _is_blank(keyword):
        raise ToolValidationError("삭제할 일정의 키워드가 필요합니다.")
    return str(keyword).strip()


def _first_error(e: ValidationError) -> str:
    errors = e.errors()
    if not errors:
        return str(e)
    err = errors[0]
    loc = ".".join(str(p) for p in err.get("loc", ()) if p != "name")
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))
