# schemas/chat_schema.py
# AI 대화 API 입출력 + 스트리밍 이벤트 스키마
from pydantic import BaseModel, Field
from typing import List, Literal, Optional


class ChatMessageIn(BaseModel):
    """
    /ai/chat/message, /ai/chat/message/stream 입력 스키마
    """
    message: str = Field(min_length=1, max_length=4000)
    session_id: Optional[str] = None
    title: Optional[str] = Field(None, max_length=200)


class QuickScheduleIn(BaseModel):
    """
    /ai/chat/quick-schedule/stream 입력 스키마(세션 없이 한 번만 처리)
    """
    text: str = Field(min_length=1, max_length=4000)


class CreateSessionIn(BaseModel):
    title: Optional[str] = Field(None, max_length=200)


class ChatSessionOut(BaseModel):
    id: str
    title: str
    last_message: str
    timestamp: int  # epoch millis


class ChatMessageOut(BaseModel):
    session_id: str
    message_id: int
    message: str
    timestamp: int


class HistoryMessageOut(BaseModel):
    id: str
    content: str
    role: str
    timestamp: int


class ChatHistoryOut(BaseModel):
    messages: List[HistoryMessageOut]


# 스트리밍 푸시 이벤트. 필드명은 클라이언트 규약(camelCase)을 그대로 따른다.
class PartialEvent(BaseModel):
    content: str
    done: Literal[False] = False


class DoneEvent(BaseModel):
    content: str = ""
    done: Literal[True] = True
    sessionId: Optional[str] = None
    messageId: Optional[int] = None
    tokensUsed: int = 0


class ErrorEvent(BaseModel):
    error: str
    done: Literal[True] = True
