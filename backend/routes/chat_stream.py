# routes/chat_stream.py
# 턴 단위 스트리밍 채널(SSE)
#
# 상태: STARTED -> (STREAMING)* -> COMPLETED | FAILED
#       종료 이벤트 전에 강제로 닫히면(타임아웃, 클라이언트 연결 종료) CLOSED
# 종료 이벤트(done=true)는 정확히 한 번만 나간다. 종료 이후의 push는 버린다.
import json
import logging
import queue
import threading
import time
from enum import Enum
from typing import Iterator, Optional, Union

from config import STREAM_TIMEOUT_SECONDS
from schemas.chat_schema import DoneEvent, ErrorEvent, PartialEvent

logger = logging.getLogger(__name__)

StreamEvent = Union[PartialEvent, DoneEvent, ErrorEvent]

MSG_TIMEOUT = "응답 시간이 초과되었습니다. 잠시 후 다시 시도해 주세요."

_CLOSED = object()


class TurnState(str, Enum):
    STARTED = "started"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CLOSED = "closed"


_FINAL_STATES = {TurnState.COMPLETED, TurnState.FAILED, TurnState.CLOSED}


def encode_sse(event: StreamEvent) -> str:
    """이벤트 하나를 `data: <json>\\n\\n` 형태로 인코딩한다."""
    payload = event.model_dump(exclude_none=True)
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class TurnStream:
    """
    생산자(턴 워커 스레드)와 소비자(HTTP 응답) 사이의 이벤트 채널.

    - 생산자: push_partial / complete / fail
    - 소비자: events() 또는 sse()
    - cancel_event: 소비자가 먼저 떠나거나 시간이 초과되면 설정된다. 모델 루프는 조각마다 이 값을 확인한다.

    :param timeout: 종료 이벤트를 기다리는 최대 시간(초)
    :param label: 로그용 이름(보통 sessionId)
    """

    def __init__(self, timeout: float = STREAM_TIMEOUT_SECONDS, label: str = "-"):
        self.timeout = timeout
        self.label = label
        self.cancel_event = threading.Event()
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._lock = threading.Lock()
        self._state = TurnState.STARTED

    @property
    def state(self) -> TurnState:
        with self._lock:
            return self._state

    @property
    def is_finished(self) -> bool:
        with self._lock:
            return self._state in _FINAL_STATES

    def _emit(self, event: StreamEvent, next_state: TurnState) -> bool:
        with self._lock:
            if self._state in _FINAL_STATES:
                logger.debug("[STREAM] %s dropped event after %s", self.label, self._state.value)
                return False
            self._state = next_state
            self._queue.put(event)
            return True

    # 생산자
    def push_partial(self, token: str) -> bool:
        if not token:
            return False
        return self._emit(PartialEvent(content=token), TurnState.STREAMING)

    def complete(self, session_id: Optional[str] = None, message_id: Optional[int] = None,
                 tokens_used: int = 0) -> bool:
        ok = self._emit(
            DoneEvent(sessionId=session_id, messageId=message_id, tokensUsed=tokens_used),
            TurnState.COMPLETED,
        )
        if ok:
            logger.info("[STREAM] %s completed tokens=%d", self.label, tokens_used)
        return ok

    def fail(self, error: str) -> bool:
        ok = self._emit(ErrorEvent(error=error), TurnState.FAILED)
        if ok:
            logger.info("[STREAM] %s failed: %s", self.label, error)
        return ok

    def close(self, reason: str = "closed") -> bool:
        """
        종료 이벤트 없이 채널을 닫고 모델 루프에 취소를 알린다.

        :return: 이번 호출로 닫혔으면 True(이미 끝난 스트림이면 False)
        """
        with self._lock:
            if self._state in _FINAL_STATES:
                return False
            self._state = TurnState.CLOSED
            self.cancel_event.set()
            self._queue.put(_CLOSED)
        logger.warning("[STREAM] %s closed before completion: %s", self.label, reason)
        return True

    # 소비자
    def events(self) -> Iterator[StreamEvent]:
        """
        종료 이벤트가 나올 때까지 이벤트를 순서대로 내보낸다.
        timeout 안에 끝나지 않으면 오류 이벤트 하나를 내보내고 닫는다.
        중간에 소비를 멈추면(제너레이터 close) 채널을 닫고 취소를 알린다.
        """
        deadline = time.monotonic() + self.timeout
        try:
            while True:
                remaining = deadline - time.monotonic()
                try:
                    item = self._queue.get(timeout=max(remaining, 0.0)) if remaining > 0 else self._queue.get_nowait()
                except queue.Empty:
                    if self.close("timeout"):
                        yield ErrorEvent(error=MSG_TIMEOUT)
                    else:
                        # 타임아웃 직전에 생산자가 먼저 끝냈다면 이미 큐에 든 종료 이벤트까지 내보낸다
                        yield from self._drain()
                    return
                if item is _CLOSED:
                    return
                yield item
                if item.done:
                    return
        finally:
            self.close("consumer gone")

    def _drain(self) -> Iterator[StreamEvent]:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is _CLOSED:
                return
            yield item
            if item.done:
                return

    def sse(self) -> Iterator[str]:
        for event in self.events():
            yield encode_sse(event)
