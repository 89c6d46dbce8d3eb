# services/chat_memory.py
# 세션별 대화 기록 메모리 캐시
# - 처음 접근할 때 DB에서 한 번만 읽어오고(replay), 그 뒤로는 캐시가 모델이 보는 유일한 기록이다.
# - 캐시 변경은 항상 DB 저장 결과로부터 만들어진다(write-through). 프로세스가 재시작되면 DB replay로 복구한다.
import logging
import threading
from typing import Callable, Dict, Iterable, List, Tuple

from sqlalchemy.orm import Session

from config import HISTORY_WINDOW
from models.chat import ChatMessage, ROLE_ASSISTANT, ROLE_USER
from services import chat_store

logger = logging.getLogger(__name__)

# (role, content)
Turn = Tuple[str, str]

_REPLAYED_ROLES = (ROLE_USER, ROLE_ASSISTANT)


class ChatMemoryCache:
    """
    sessionId -> 대화 기록(튜플) 캐시.

    값은 항상 통째로 교체되며 제자리 수정은 하지 않는다.

    :param session_factory: DB 세션 팩토리(sessionmaker)
    :param max_messages: 모델에게 넘길 최근 메시지 수
    """

    def __init__(self, session_factory: Callable[[], Session], max_messages: int = HISTORY_WINDOW):
        self._session_factory = session_factory
        self._max_messages = max_messages
        self._entries: Dict[str, Tuple[Turn, ...]] = {}
        self._lock = threading.Lock()

    def _hydrate(self, session_id: str) -> Tuple[Turn, ...]:
        with self._session_factory() as db:
            rows = chat_store.replay_messages(db, session_id)
            return tuple((m.role, m.content) for m in rows if m.role in _REPLAYED_ROLES)

    def load(self, session_id: str) -> List[Dict[str, str]]:
        """
        세션의 대화 기록을 OpenAI 메시지 형식으로 반환한다.
        캐시에 없으면 DB에서 한 번 읽어와 캐시에 넣는다.

        :param session_id: 세션 ID
        :type session_id: str
        :return: [{"role": ..., "content": ...}, ...] (최근 max_messages개 이내, 사용자 메시지부터 시작)
        :rtype: List[Dict[str, str]]
        """

        with self._lock:
            turns = self._entries.get(session_id)
        if turns is None:
            hydrated = self._hydrate(session_id)
            with self._lock:
                # 동시에 먼저 채운 쪽이 있으면 그 값을 쓴다
                turns = self._entries.setdefault(session_id, hydrated)
            logger.info("[MEMORY] hydrated session=%s messages=%d", session_id, len(turns))

        window = turns[-self._max_messages:] if self._max_messages > 0 else turns
        # 잘린 창이 답변으로 시작하면 짝 없는 답변은 뺀다
        if len(window) < len(turns) and window and window[0][0] == ROLE_ASSISTANT:
            window = window[1:]
        return [{"role": role, "content": content} for role, content in window]

    def record_turn(self, session_id: str, messages: Iterable[ChatMessage]) -> bool:
        """
        DB에 저장된 메시지를 캐시에 반영한다.
        캐시에 항목이 없으면 아무것도 하지 않는다(다음 load에서 DB로부터 다시 채운다).

        :return: 캐시가 갱신되었으면 True
        :rtype: bool
        """

        added = tuple((m.role, m.content) for m in messages if m.role in _REPLAYED_ROLES)
        with self._lock:
            current = self._entries.get(session_id)
            if current is None:
                return False
            self._entries[session_id] = current + added
        logger.debug("[MEMORY] recorded session=%s added=%d", session_id, len(added))
        return True

    def invalidate(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)
        logger.debug("[MEMORY] invalidated session=%s", session_id)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def is_cached(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._entries
