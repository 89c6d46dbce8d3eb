# models/chat.py
# AI 대화 세션 / 메시지 테이블
import uuid

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint,
)

from models.base import Base, utcnow

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"

STATUS_ACTIVE = "active"
STATUS_CLOSED = "closed"


class ChatSession(Base):
    __tablename__ = "chat_sessions"
    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(64), nullable=False, index=True)
    title = Column(String(200), nullable=True)  # 첫 대화 전까지는 비어 있을 수 있음
    status = Column(String(16), default=STATUS_ACTIVE, nullable=False)
    message_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    last_message_at = Column(DateTime, nullable=True)
    is_deleted = Column(Boolean, default=False, nullable=False)  # 논리 삭제, 물리 삭제는 하지 않음


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (
        UniqueConstraint("session_id", "sequence_num", name="uq_chat_messages_session_seq"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), ForeignKey("chat_sessions.id"), nullable=False, index=True)
    owner_id = Column(String(64), nullable=False)  # 세션 격리 검사용 중복 컬럼
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    sequence_num = Column(Integer, nullable=False)  # 세션 내 1부터 빈틈없이 증가
    tokens_used = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
