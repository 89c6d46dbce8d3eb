# AI 대화 라우터. 세션 관리 + 메시지 전송(블로킹/SSE 스트리밍) + 빠른 일정 추가
import logging
import threading
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import StreamingResponse

from routes.chat_turn import ChatTurnService, ModelUnavailable
from schemas.chat_schema import (
    ChatHistoryOut,
    ChatMessageIn,
    ChatMessageOut,
    ChatSessionOut,
    CreateSessionIn,
    QuickScheduleIn,
)
from services.chat_store import SessionNotFound

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ai/chat", tags=["ai-chat"])

# SSE 응답 헤더(프록시 버퍼링 방지)
SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

_service: Optional[ChatTurnService] = None
_service_lock = threading.Lock()


def get_chat_service() -> ChatTurnService:
    """프로세스 전역 ChatTurnService(처음 호출 시 생성)"""
    global _service
    with _service_lock:
        if _service is None:
            from database import SessionLocal
            _service = ChatTurnService(SessionLocal)
        return _service


def shutdown_chat_service() -> None:
    global _service
    with _service_lock:
        if _service is not None:
            _service.shutdown()
            _service = None


def get_caller_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """
    요청 헤더에서 호출자 ID를 꺼낸다(인증 게이트웨이가 검증한 값).

    :raises HTTPException: 헤더가 없으면 401
    """
    caller = (x_user_id or "").strip()
    if not caller:
        raise HTTPException(status_code=401, detail="로그인이 필요합니다.")
    return caller


def _to_http(e: Exception) -> HTTPException:
    if isinstance(e, SessionNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ModelUnavailable):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


@router.get("/sessions", response_model=List[ChatSessionOut])
def list_sessions(caller_id: str = Depends(get_caller_id), service: ChatTurnService = Depends(get_chat_service)):
    return service.list_sessions(caller_id)


@router.post("/sessions", response_model=ChatSessionOut)
def create_session(
    body: Optional[CreateSessionIn] = None,
    caller_id: str = Depends(get_caller_id),
    service: ChatTurnService = Depends(get_chat_service),
):
    return service.create_session(caller_id, body.title if body else None)


@router.delete("/sessions/{session_id}")
def delete_session(
    session_id: str,
    caller_id: str = Depends(get_caller_id),
    service: ChatTurnService = Depends(get_chat_service),
):
    try:
        service.delete_session(caller_id, session_id)
    except (SessionNotFound, ValueError) as e:
        raise _to_http(e)
    return {"ok": True}


@router.get("/history/{session_id}", response_model=ChatHistoryOut)
def get_history(
    session_id: str,
    caller_id: str = Depends(get_caller_id),
    service: ChatTurnService = Depends(get_chat_service),
):
    try:
        return service.get_history(caller_id, session_id)
    except (SessionNotFound, ValueError) as e:
        raise _to_http(e)


@router.post("/message", response_model=ChatMessageOut)
def send_message(
    body: ChatMessageIn,
    caller_id: str = Depends(get_caller_id),
    service: ChatTurnService = Depends(get_chat_service),
):
    """
    블로킹 방식 메시지 전송. 모델 응답이 끝난 뒤 저장된 AI 답변을 돌려준다.
    """
    try:
        return service.send_message(caller_id, body.session_id, body.message, body.title)
    except (SessionNotFound, ModelUnavailable, ValueError) as e:
        raise _to_http(e)


@router.post("/message/stream")
def send_message_stream(
    body: ChatMessageIn,
    caller_id: str = Depends(get_caller_id),
    service: ChatTurnService = Depends(get_chat_service),
):
    """
    SSE 스트리밍 메시지 전송.

    - 부분 이벤트: {"content": "...", "done": false}
    - 완료 이벤트: {"content": "", "done": true, "sessionId": ..., "messageId": ..., "tokensUsed": ...}
    - 오류 이벤트: {"error": "...", "done": true}
    """
    try:
        stream = service.start_stream(caller_id, body.session_id, body.message, body.title)
    except (SessionNotFound, ValueError) as e:
        raise _to_http(e)
    return StreamingResponse(stream.sse(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/quick-schedule/stream")
def quick_schedule_stream(
    body: QuickScheduleIn,
    caller_id: str = Depends(get_caller_id),
    service: ChatTurnService = Depends(get_chat_service),
):
    """
    빠른 일정 추가(세션/기록 없이 한 번만 처리). 완료 이벤트에는 tokensUsed만 들어간다.
    """
    try:
        stream = service.start_quick_stream(caller_id, body.text)
    except ValueError as e:
        raise _to_http(e)
    return StreamingResponse(stream.sse(), media_type="text/event-stream", headers=SSE_HEADERS)
