# routes/chat_context.py
# 사용자 / 세션 컨텍스트 전파
#
# 모델의 스트리밍 콜백과 도구 호출은 요청을 받은 스레드가 아닌 워커 스레드에서 실행된다.
# 그래서 (1) 턴 동안 sessionId -> callerId 매핑을 레지스트리에 등록해 두고,
# (2) 모든 후속 작업에 TurnContext 값을 직접 넘기며,
# (3) 로그 등 주변 코드가 참고할 수 있도록 contextvar에도 다시 심어 준다(bound_turn).
import contextvars
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnContext:
    """한 턴 동안 유지되는 호출자/세션 정보"""

    caller_id: str
    session_id: str
    stateless: bool = False


class ContextRegistry:
    """
    sessionId -> callerId 매핑(스레드 안전).

    bind 는 턴마다 새 토큰을 돌려준다. unbind 에 토큰을 넘기면 그 턴이 등록한 값일 때만 지운다.
    앞 턴의 늦은 정리는 같은 세션의 다음 턴 등록을 지우지 않는다.
    """

    def __init__(self):
        self._bindings: Dict[str, Tuple[str, object]] = {}
        self._lock = threading.Lock()

    def bind(self, session_id: str, caller_id: str) -> object:
        token = object()
        with self._lock:
            prev = self._bindings.get(session_id)
            self._bindings[session_id] = (caller_id, token)
        if prev is not None and prev[0] != caller_id:
            logger.warning("[CTX] session %s rebound %s -> %s", session_id, prev[0], caller_id)
        return token

    def resolve(self, session_id: str) -> Optional[str]:
        with self._lock:
            entry = self._bindings.get(session_id)
        return entry[0] if entry is not None else None

    def unbind(self, session_id: str, token: Optional[object] = None) -> bool:
        """
        :param token: bind 가 돌려준 값. 없으면 무조건 지운다
        :return: 실제로 지웠으면 True
        """
        with self._lock:
            entry = self._bindings.get(session_id)
            if entry is None:
                return False
            if token is not None and entry[1] is not token:
                logger.debug("[CTX] session %s already rebound, keep newer binding", session_id)
                return False
            del self._bindings[session_id]
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._bindings)


_CURRENT_TURN: contextvars.ContextVar[Optional[TurnContext]] = contextvars.ContextVar(
    "current_turn", default=None
)


def current_turn() -> Optional[TurnContext]:
    return _CURRENT_TURN.get()


@contextmanager
def bound_turn(ctx: TurnContext) -> Iterator[TurnContext]:
    """
    현재 실행 컨텍스트에 TurnContext를 심고, 블록을 벗어나면 원래 값으로 되돌린다.
    워커 스레드의 콜백은 작업 전에 반드시 이 블록 안에서 실행한다.
    """

    token = _CURRENT_TURN.set(ctx)
    try:
        yield ctx
    finally:
        _CURRENT_TURN.reset(token)


class TurnContextFilter(logging.Filter):
    """로그 레코드에 session_id / caller_id 를 붙인다(턴 밖이면 '-')."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _CURRENT_TURN.get()
        record.session_id = ctx.session_id if ctx else "-"
        record.caller_id = ctx.caller_id if ctx else "-"
        return True
