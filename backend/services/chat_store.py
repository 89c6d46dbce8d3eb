# services/chat_store.py
# 대화 세션 / 메시지 영속화
# - 메시지 순번(sequence_num)은 세션마다 1부터 빈틈없이 증가한다.
# - 메시지 추가와 세션 카운터(message_count, last_message_at) 갱신은 하나의 트랜잭션으로 처리한다.
import logging
import threading
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from models.base import utcnow
from models.chat import (
    ChatMessage, ChatSession, ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER, STATUS_CLOSED,
)

logger = logging.getLogger(__name__)

VALID_ROLES = {ROLE_USER, ROLE_ASSISTANT, ROLE_SYSTEM}

# 세션별 append 직렬화용 락(같은 프로세스 안에서 순번 충돌 방지)
_APPEND_LOCKS: Dict[str, threading.Lock] = {}
_APPEND_LOCKS_GUARD = threading.Lock()


class SessionNotFound(LookupError):
    """세션이 없거나, 다른 사용자의 세션이거나, 이미 삭제된 경우"""


def _session_lock(session_id: str) -> threading.Lock:
    with _APPEND_LOCKS_GUARD:
        lock = _APPEND_LOCKS.get(session_id)
        if lock is None:
            lock = threading.Lock()
            _APPEND_LOCKS[session_id] = lock
        return lock


def create_session(db: Session, owner_id: str, title: Optional[str] = None) -> ChatSession:
    """
    새 대화 세션을 만든다.

    :param db: DB 세션
    :param owner_id: 세션 소유자 ID
    :type owner_id: str
    :param title: 세션 제목(없으면 None으로 둔다)
    :type title: Optional[str]
    :return: 저장된 세션
    :rtype: ChatSession
    """

    s = ChatSession(owner_id=owner_id, title=(title or "").strip() or None)
    db.add(s); db.commit(); db.refresh(s)
    logger.info("chat session created owner=%s session=%s", owner_id, s.id)
    return s


def get_session(db: Session, session_id: str, owner_id: str) -> ChatSession:
    """
    소유자 기준으로 세션을 조회한다. 삭제된 세션은 찾지 않는다.

    :raises SessionNotFound: 세션이 없거나 접근 권한이 없을 때
    """

    s = (
        db.query(ChatSession)
        .filter(
            ChatSession.id == session_id,
            ChatSession.owner_id == owner_id,
            ChatSession.is_deleted.is_(False),
        )
        .first()
    )
    if s is None:
        raise SessionNotFound("세션이 존재하지 않거나 접근 권한이 없습니다.")
    return s


def list_sessions(db: Session, owner_id: str) -> List[ChatSession]:
    sessions = (
        db.query(ChatSession)
        .filter(ChatSession.owner_id == owner_id, ChatSession.is_deleted.is_(False))
        .all()
    )
    # 마지막 메시지 시각(없으면 생성 시각) 기준 최신순
    return sorted(sessions, key=lambda s: s.last_message_at or s.created_at, reverse=True)


def set_title_if_missing(db: Session, session: ChatSession, title: Optional[str]) -> ChatSession:
    """제목이 비어 있는 세션에만 제목을 채운다."""
    t = (title or "").strip()
    if t and not (session.title or "").strip():
        session.title = t
        db.commit(); db.refresh(session)
        logger.info("chat session titled session=%s title=%s", session.id, t)
    return session


def _next_sequence(db: Session, session_id: str) -> int:
    current = (
        db.query(func.max(ChatMessage.sequence_num))
        .filter(ChatMessage.session_id == session_id)
        .scalar()
    )
    return (current or 0) + 1


def _append_rows(
    db: Session,
    session_id: str,
    owner_id: str,
    rows: List[Tuple[str, str, Optional[int]]],
) -> List[ChatMessage]:
    """
    (role, content, tokens_used) 목록을 순서대로 추가하고 세션 카운터를 갱신한다.
    전부 성공하거나 전부 롤백된다.
    """

    for role, _, _ in rows:
        if role not in VALID_ROLES:
            raise ValueError(f"invalid role: {role}")

    # 없는 세션이나 삭제된 세션에는 락을 만들지 않는다
    get_session(db, session_id, owner_id)
    with _session_lock(session_id):
        try:
            session = get_session(db, session_id, owner_id)
            seq = _next_sequence(db, session_id)
            now = utcnow()
            created: List[ChatMessage] = []
            for role, content, tokens_used in rows:
                msg = ChatMessage(
                    session_id=session_id,
                    owner_id=owner_id,
                    role=role,
                    content=content,
                    sequence_num=seq,
                    tokens_used=tokens_used,
                    created_at=now,
                )
                db.add(msg)
                created.append(msg)
                seq += 1
            session.message_count = (session.message_count or 0) + len(rows)
            session.last_message_at = now
            db.commit()
        except Exception:
            db.rollback()
            raise
        for msg in created:
            db.refresh(msg)
        return created


def append_message(
    db: Session,
    session_id: str,
    owner_id: str,
    role: str,
    content: str,
    tokens_used: Optional[int] = None,
) -> ChatMessage:
    """
    세션에 메시지 하나를 추가한다. 다음 순번은 같은 세션의 다른 append와 겹치지 않게 부여된다.

    :raises SessionNotFound: 세션이 없거나 접근 권한이 없을 때
    :return: 저장된 메시지
    :rtype: ChatMessage
    """

    return _append_rows(db, session_id, owner_id, [(role, content, tokens_used)])[0]


def append_turn(
    db: Session,
    session_id: str,
    owner_id: str,
    user_content: str,
    assistant_content: str,
    tokens_used: Optional[int] = None,
) -> Tuple[ChatMessage, ChatMessage]:
    """
    한 턴(사용자 메시지 + AI 답변)을 하나의 트랜잭션으로 저장한다.
    모델 호출이 완전히 끝난 뒤에만 호출한다.

    :return: (user 메시지, assistant 메시지)
    :rtype: Tuple[ChatMessage, ChatMessage]
    """

    user_msg, ai_msg = _append_rows(db, session_id, owner_id, [
        (ROLE_USER, user_content, None),
        (ROLE_ASSISTANT, assistant_content, tokens_used),
    ])
    return user_msg, ai_msg


def list_messages(db: Session, session_id: str, owner_id: str) -> List[ChatMessage]:
    """
    소유자 검증 후 세션의 메시지를 순번 순서로 반환한다.

    :raises SessionNotFound: 세션이 없거나 접근 권한이 없을 때
    """

    get_session(db, session_id, owner_id)
    return (
        db.query(ChatMessage)
        .filter(ChatMessage.session_id == session_id, ChatMessage.owner_id == owner_id)
        .order_by(ChatMessage.sequence_num.asc())
        .all()
    )


def replay_messages(db: Session, session_id: str) -> List[ChatMessage]:
    # 권한 검사는 호출 측(턴 시작 시점)에서 이미 끝났다고 가정한다
    return (
        db.query(ChatMessage)
        .filter(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.sequence_num.asc())
        .all()
    )


def last_message(db: Session, session_id: str) -> Optional[ChatMessage]:
    return (
        db.query(ChatMessage)
        .filter(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.sequence_num.desc())
        .first()
    )


def soft_delete(db: Session, session_id: str, owner_id: str) -> None:
    """
    세션을 논리 삭제하고 closed 상태로 바꾼다. 메시지는 그대로 남는다.

    :raises SessionNotFound: 세션이 없거나 접근 권한이 없을 때
    """

    s = get_session(db, session_id, owner_id)
    s.is_deleted = True
    s.status = STATUS_CLOSED
    db.commit()
    # 삭제된 세션에는 더 이상 append 하지 않는다
    with _APPEND_LOCKS_GUARD:
        _APPEND_LOCKS.pop(session_id, None)
    logger.info("chat session deleted owner=%s session=%s", owner_id, session_id)
