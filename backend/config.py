# config.py
# 환경 변수 설정 모음. 모든 모듈은 여기서 값을 가져다 쓴다.
import os
from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./app.db")
WEB_ORIGIN = os.getenv("WEB_ORIGIN", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

###############################################
# OPENAI_API_KEY : OPENAPI API 인증키          #
# OPENAI_BASE : OPENAI API 엔드포인트 기본 URL   #
# OPENAI_MODEL : 사용할 모델 이름                #
##############################################
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE = os.getenv("OPENAI_BASE", "https://api.openai.com/v1")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TIMEOUT_SECONDS = _env_float("OPENAI_TIMEOUT_SECONDS", 120.0)
LLM_TEMPERATURE = _env_float("LLM_TEMPERATURE", 0.2)

# 한 턴에서 허용하는 모델 호출 횟수(도구 호출 연쇄 포함)
MAX_TOOL_ITERATIONS = _env_int("MAX_TOOL_ITERATIONS", 10)
# 모델에게 보여줄 최근 대화 수
HISTORY_WINDOW = _env_int("HISTORY_WINDOW", 20)
# 종료 이벤트가 없으면 이 시간이 지난 뒤 스트림을 강제로 닫는다
STREAM_TIMEOUT_SECONDS = _env_float("STREAM_TIMEOUT_SECONDS", 180.0)
CHAT_WORKERS = _env_int("CHAT_WORKERS", 8)
# 삭제 후보(번호 선택 대기) 보관 시간
PENDING_DELETE_TTL_SECONDS = _env_float("PENDING_DELETE_TTL_SECONDS", 600.0)
