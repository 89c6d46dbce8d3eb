# routes/chat_turn.py
# AI 대화 턴 처리(세션 확인 -> 컨텍스트 바인딩 -> 모델/도구 실행 -> 저장 -> 정리)
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from config import CHAT_WORKERS, MAX_TOOL_ITERATIONS, STREAM_TIMEOUT_SECONDS
from models.chat import ChatMessage, ChatSession
from routes.chat_context import ContextRegistry, TurnContext, bound_turn
from routes.chat_stream import TurnStream
from routes.schedule import ScheduleToolDispatcher
from routes.schedule_openai import (
    ModelCallError,
    MultiStepToolExecutor,
    OpenAIChatClient,
    TurnCancelled,
)
from routes.schedule_spec import (
    ALLOWED_TOOLS,
    QUICK_ALLOWED_TOOLS,
    QUICK_POLICY_TEMPLATE,
    QUICK_TOOLS_SPEC,
    SYSTEM_POLICY_TEMPLATE,
    TOOLS_SPEC,
)
from routes.schedule_state import DisambiguationStore
from routes.schedule_time import _friendly_today, _now_kst_iso, _today_kst
from schemas.chat_schema import (
    ChatHistoryOut,
    ChatMessageOut,
    ChatSessionOut,
    HistoryMessageOut,
)
from services import chat_store
from services.chat_memory import ChatMemoryCache

logger = logging.getLogger(__name__)

QUICK_SESSION_PREFIX = "quick-schedule-"
DEFAULT_TITLE = "새 대화"
PREVIEW_LENGTH = 50

MSG_MODEL_UNAVAILABLE = "AI 서비스를 일시적으로 사용할 수 없습니다. 잠시 후 다시 시도해 주세요."
MSG_TURN_FAILED = "메시지 처리 중 오류가 발생했습니다. 잠시 후 다시 시도해 주세요."


class ModelUnavailable(RuntimeError):
    """모델 호출이 실패해 턴을 끝낼 수 없음(블로킹 호출용)"""


def _epoch_ms(dt: Optional[datetime]) -> int:
    # DB에는 naive UTC로 저장된다
    if dt is None:
        return 0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _truncate(text: str, limit: int = PREVIEW_LENGTH) -> str:
    if not text or len(text) <= limit:
        return text or ""
    return text[:limit] + "..."


def _require(value: Optional[str], what: str) -> str:
    v = (value or "").strip()
    if not v:
        raise ValueError(f"{what}이(가) 비어 있습니다.")
    return v


class ChatTurnService:
    """
    AI 대화 세션/턴 서비스.

    스트리밍 턴은 워커 스레드 풀에서 실행되며, 호출자/세션 정보는 TurnContext 값으로 직접 넘긴다.

    :param session_factory: DB 세션 팩토리(sessionmaker)
    :param client: 스트리밍 모델 클라이언트(기본 OpenAIChatClient)
    :param today_fn: '오늘'(KST) 계산 함수
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: Optional[OpenAIChatClient] = None,
        memory: Optional[ChatMemoryCache] = None,
        registry: Optional[ContextRegistry] = None,
        disambiguation: Optional[DisambiguationStore] = None,
        today_fn: Callable = _today_kst,
        workers: int = CHAT_WORKERS,
        stream_timeout: float = STREAM_TIMEOUT_SECONDS,
        max_iterations: int = MAX_TOOL_ITERATIONS,
    ):
        self.session_factory = session_factory
        self.client = client or OpenAIChatClient()
        self.memory = memory or ChatMemoryCache(session_factory)
        self.registry = registry or ContextRegistry()
        self.disambiguation = disambiguation or DisambiguationStore()
        self.dispatcher = ScheduleToolDispatcher(session_factory, self.registry, self.disambiguation, today_fn)
        self.stream_timeout = stream_timeout
        self.max_iterations = max_iterations
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="chat-turn")

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)

    # 세션 관리
    def create_session(self, caller_id: str, title: Optional[str] = None) -> ChatSessionOut:
        caller_id = _require(caller_id, "사용자 ID")
        with self.session_factory() as db:
            s = chat_store.create_session(db, caller_id, title)
            return self._session_out(s, "")

    def list_sessions(self, caller_id: str) -> List[ChatSessionOut]:
        caller_id = _require(caller_id, "사용자 ID")
        with self.session_factory() as db:
            out = []
            for s in chat_store.list_sessions(db, caller_id):
                last = chat_store.last_message(db, s.id)
                out.append(self._session_out(s, _truncate(last.content) if last else ""))
            return out

    def get_history(self, caller_id: str, session_id: str) -> ChatHistoryOut:
        """
        세션의 전체 대화 기록(순번 순서)

        :raises SessionNotFound: 세션이 없거나 접근 권한이 없을 때
        """
        caller_id = _require(caller_id, "사용자 ID")
        session_id = _require(session_id, "세션 ID")
        with self.session_factory() as db:
            rows = chat_store.list_messages(db, session_id, caller_id)
            return ChatHistoryOut(messages=[
                HistoryMessageOut(id=str(m.id), content=m.content, role=m.role, timestamp=_epoch_ms(m.created_at))
                for m in rows
            ])

    def delete_session(self, caller_id: str, session_id: str) -> None:
        caller_id = _require(caller_id, "사용자 ID")
        session_id = _require(session_id, "세션 ID")
        with self.session_factory() as db:
            chat_store.soft_delete(db, session_id, caller_id)
        self.memory.invalidate(session_id)
        self.disambiguation.clear_session(session_id)

    # 턴
    def send_message(
        self,
        caller_id: str,
        session_id: Optional[str],
        message: str,
        title: Optional[str] = None,
    ) -> ChatMessageOut:
        """
        블로킹 방식으로 한 턴을 처리하고 저장된 AI 답변을 돌려준다.

        :raises ValueError: 입력이 비어 있을 때(모델 호출 전)
        :raises SessionNotFound: 다른 사용자의 세션이거나 삭제된 세션일 때(모델 호출 전)
        :raises ModelUnavailable: 모델 호출 실패, 이 턴의 메시지는 저장되지 않는다
        """
        ctx, message = self._prepare_turn(caller_id, session_id, message, title)
        try:
            ai_msg, _, _ = self._run_turn(ctx, message)
        except (ModelCallError, TurnCancelled) as e:
            logger.error("[CHAT] turn failed session=%s: %s", ctx.session_id, e)
            raise ModelUnavailable(MSG_MODEL_UNAVAILABLE) from e
        finally:
            self._release(ctx)
        return ChatMessageOut(
            session_id=ctx.session_id,
            message_id=ai_msg.id,
            message=ai_msg.content,
            timestamp=_epoch_ms(ai_msg.created_at),
        )

    def start_stream(
        self,
        caller_id: str,
        session_id: Optional[str],
        message: str,
        title: Optional[str] = None,
    ) -> TurnStream:
        """
        스트리밍 턴을 시작한다. 입력 검증과 세션 권한 확인은 호출 스레드에서 바로 끝내고,
        모델 호출은 워커 스레드에서 실행한다.

        :raises ValueError: 입력이 비어 있을 때
        :raises SessionNotFound: 다른 사용자의 세션이거나 삭제된 세션일 때
        :return: 이벤트를 꺼내 쓸 스트림
        :rtype: TurnStream
        """
        ctx, message = self._prepare_turn(caller_id, session_id, message, title)
        return self._submit(ctx, message)

    def start_quick_stream(self, caller_id: str, text: str) -> TurnStream:
        """
        세션 없이 한 번만 처리하는 빠른 일정 추가. 생성 도구만 쓰고 대화는 저장하지 않는다.
        """
        caller_id = _require(caller_id, "사용자 ID")
        text = _require(text, "메시지")
        ctx = TurnContext(caller_id=caller_id, session_id=QUICK_SESSION_PREFIX + caller_id, stateless=True)
        # 매번 독립된 한 번짜리 대화가 되도록 이전 기록을 지운다
        self.memory.invalidate(ctx.session_id)
        return self._submit(ctx, text)

    # 내부
    def _prepare_turn(
        self,
        caller_id: str,
        session_id: Optional[str],
        message: str,
        title: Optional[str],
    ) -> Tuple[TurnContext, str]:
        caller_id = _require(caller_id, "사용자 ID")
        message = _require(message, "메시지")
        with self.session_factory() as db:
            if not (session_id or "").strip():
                session = chat_store.create_session(db, caller_id, title)
            else:
                session = chat_store.get_session(db, session_id.strip(), caller_id)
                chat_store.set_title_if_missing(db, session, title)
            sid = session.id
        return TurnContext(caller_id=caller_id, session_id=sid), message

    def _submit(self, ctx: TurnContext, message: str) -> TurnStream:
        stream = TurnStream(timeout=self.stream_timeout, label=ctx.session_id)
        try:
            self._pool.submit(self._stream_worker, ctx, message, stream)
        except RuntimeError:
            self._release(ctx)
            raise
        return stream

    def _stream_worker(self, ctx: TurnContext, message: str, stream: TurnStream) -> None:
        with bound_turn(ctx):
            try:
                ai_msg, _, tokens = self._run_turn(ctx, message, stream)
            except TurnCancelled:
                logger.info("[CHAT] turn cancelled by consumer session=%s", ctx.session_id)
            except ModelCallError as e:
                logger.error("[CHAT] model call failed session=%s: %s", ctx.session_id, e)
                stream.fail(MSG_MODEL_UNAVAILABLE)
            except Exception:
                logger.exception("[CHAT] turn failed session=%s", ctx.session_id)
                stream.fail(MSG_TURN_FAILED)
            else:
                stream.complete(
                    session_id=None if ctx.stateless else ctx.session_id,
                    message_id=ai_msg.id if ai_msg is not None else None,
                    tokens_used=tokens,
                )
            finally:
                self._release(ctx)

    def _run_turn(
        self,
        ctx: TurnContext,
        message: str,
        stream: Optional[TurnStream] = None,
    ) -> Tuple[Optional[ChatMessage], str, int]:
        """
        모델/도구 루프를 끝까지 실행한 뒤, 상태가 있는 턴이면 (사용자 메시지, AI 답변)을 한 번에 저장한다.

        레지스트리 등록은 이 함수 안에서만 유지된다(종료 이벤트를 보내기 전에 해제).

        :return: (저장된 AI 메시지 또는 None, 답변 텍스트, 사용 토큰 수)
        """
        token = self.registry.bind(ctx.session_id, ctx.caller_id)
        try:
            return self._execute_and_save(ctx, message, stream)
        finally:
            self.registry.unbind(ctx.session_id, token)

    def _execute_and_save(
        self,
        ctx: TurnContext,
        message: str,
        stream: Optional[TurnStream],
    ) -> Tuple[Optional[ChatMessage], str, int]:
        cancel_event = stream.cancel_event if stream is not None else None
        with bound_turn(ctx):
            executor = MultiStepToolExecutor(
                self.dispatcher.create_tool_handler(
                    ctx, QUICK_ALLOWED_TOOLS if ctx.stateless else ALLOWED_TOOLS
                ),
                self.client,
                tools=QUICK_TOOLS_SPEC if ctx.stateless else TOOLS_SPEC,
                max_iterations=self.max_iterations,
            )
            reply, tokens = executor.execute_stream(
                self._build_messages(ctx, message),
                on_token=stream.push_partial if stream is not None else None,
                cancel_event=cancel_event,
            )
            if ctx.stateless:
                return None, reply, tokens

            # 응답을 다 받은 뒤 채널이 닫혔다면(타임아웃) 저장하지 않는다
            if cancel_event is not None and cancel_event.is_set():
                raise TurnCancelled()
            with self.session_factory() as db:
                user_msg, ai_msg = chat_store.append_turn(
                    db, ctx.session_id, ctx.caller_id, message, reply, tokens
                )
            self.memory.record_turn(ctx.session_id, [user_msg, ai_msg])
            logger.info("[CHAT] turn saved session=%s seq=%d,%d tokens=%d",
                        ctx.session_id, user_msg.sequence_num, ai_msg.sequence_num, tokens)
            return ai_msg, reply, tokens

    def _build_messages(self, ctx: TurnContext, message: str) -> List[Dict[str, str]]:
        template = QUICK_POLICY_TEMPLATE if ctx.stateless else SYSTEM_POLICY_TEMPLATE
        system = template.format(NOW_ISO=_now_kst_iso(), TODAY_FRIENDLY=_friendly_today())
        history = [] if ctx.stateless else self.memory.load(ctx.session_id)
        return [{"role": "system", "content": system}, *history, {"role": "user", "content": message}]

    def _release(self, ctx: TurnContext) -> None:
        if ctx.stateless:
            self.memory.invalidate(ctx.session_id)

    @staticmethod
    def _session_out(s: ChatSession, last_message: str) -> ChatSessionOut:
        return ChatSessionOut(
            id=s.id,
            title=s.title or DEFAULT_TITLE,
            last_message=last_message,
            timestamp=_epoch_ms(s.last_message_at or s.created_at),
        )
