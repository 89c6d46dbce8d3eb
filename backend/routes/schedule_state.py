# routes/schedule_state.py
# 세션 / 삭제 후보 상태
#
# 키워드 삭제에서 후보가 여러 개 나오면, 사용자가 번호로 고를 때까지 후보 목록을 잠시 보관한다.
# - 키: (sessionId, keyword)
# - 값: 화면에 보여 준 순서 그대로의 일정 ID 목록
# 프로세스 메모리에만 있으므로 재시작하면 사라진다.

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence, Tuple

from config import PENDING_DELETE_TTL_SECONDS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingDelete:
    keyword: str
    candidate_ids: Tuple[str, ...]
    created_at: float


class DisambiguationStore:
    """
    (sessionId, keyword) -> PendingDelete 저장소(스레드 안전).

    :param ttl_seconds: 후보 보관 시간(초)
    :param clock: 테스트용 시계 주입
    """

    def __init__(self, ttl_seconds: float = PENDING_DELETE_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._items: Dict[Tuple[str, str], PendingDelete] = {}
        self._lock = threading.Lock()

    def record(self, session_id: str, keyword: str, candidate_ids: Sequence[str]) -> PendingDelete:
        pending = PendingDelete(keyword=keyword, candidate_ids=tuple(candidate_ids), created_at=self._clock())
        with self._lock:
            self._items[(session_id, keyword)] = pending
        logger.debug("[STATE] pending delete session=%s keyword=%s candidates=%d",
                     session_id, keyword, len(pending.candidate_ids))
        return pending

    def get(self, session_id: str, keyword: str) -> Optional[PendingDelete]:
        key = (session_id, keyword)
        with self._lock:
            pending = self._items.get(key)
            if pending is None:
                return None
            if self._clock() - pending.created_at > self._ttl:
                self._items.pop(key, None)
                logger.debug("[STATE] pending delete expired session=%s keyword=%s", session_id, keyword)
                return None
            return pending

    def discard(self, session_id: str, keyword: str) -> None:
        with self._lock:
            self._items.pop((session_id, keyword), None)

    def clear_session(self, session_id: str) -> None:
        """세션의 모든 삭제 후보를 지운다."""
        with self._lock:
            for key in [k for k in self._items if k[0] == session_id]:
                self._items.pop(key, None)

    def has_pending(self, session_id: str) -> bool:
        with self._lock:
            return any(k[0] == session_id for k in self._items)
