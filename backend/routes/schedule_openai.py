# routes/schedule_openai.py
# OpenAI 호출 - 스트리밍 + 다중 도구 호출 지원

import json
import logging
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import requests

from config import (
    LLM_TEMPERATURE,
    MAX_TOOL_ITERATIONS,
    OPENAI_API_KEY,
    OPENAI_BASE,
    OPENAI_MODEL,
    OPENAI_TIMEOUT_SECONDS,
)
from routes.schedule_spec import TOOLS_SPEC

logger = logging.getLogger(__name__)

MSG_TOO_MANY_STEPS = "작업이 복잡해서 완료하지 못했습니다. 단계별로 나누어 요청해 주세요."


class ModelCallError(RuntimeError):
    """모델 호출 실패(키 미설정, 네트워크 오류, HTTP 오류, 응답 파싱 실패)"""


class TurnCancelled(Exception):
    """클라이언트 연결 종료/타임아웃으로 턴이 취소됨"""


class OpenAIChatClient:
    """
    OpenAI Chat Completions API(스트리밍) 클라이언트.

    :param api_key: API 인증키
    :param base_url: API 엔드포인트 기본 URL
    :param model: 사용할 모델 이름
    """

    def __init__(
        self,
        api_key: str = OPENAI_API_KEY,
        base_url: str = OPENAI_BASE,
        model: str = OPENAI_MODEL,
        temperature: float = LLM_TEMPERATURE,
        timeout: float = OPENAI_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self._http = requests.Session()

    def stream_chat(self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None) -> Iterator[Dict[str, Any]]:
        """
        모델을 스트리밍 모드로 호출하고, SSE `data:` 줄을 하나씩 JSON으로 파싱해 돌려준다.

        :param messages: LLM에 전달할 대화 히스토리(시스템/유저/어시스턴트/툴 메시지 포함)
        :type messages: List[Dict[str, Any]]
        :param tools: OpenAI function 형식 도구 목록
        :raises ModelCallError: 키 미설정 또는 API 호출 실패 시
        :return: chat.completion.chunk 딕셔너리 이터레이터
        :rtype: Iterator[Dict[str, Any]]
        """
        if not self.api_key:
            raise ModelCallError("OPENAI_API_KEY not set")

        last_user = next((m for m in reversed(messages) if m.get("role") == "user"), {})
        logger.debug("[LLM] req: model=%s messages=%d user='%s...'", self.model, len(messages),
                     (last_user.get("content") or "")[:80].replace("\n", " "))

        body: Dict[str, Any] = {
            "model": self.model,
            "temperature": self.temperature,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"

        try:
            r = self._http.post(
                f"{self.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=body,
                stream=True,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("[LLM] request failed: %s", e)
            raise ModelCallError("LLM call failed") from e

        with r:
            if not r.ok:
                logger.error("OpenAI API error: %s %s", r.status_code, r.text[:500])
                raise ModelCallError(f"LLM call failed ({r.status_code})")
            try:
                # text/event-stream 응답은 charset이 없는 경우가 많아 줄 단위로 직접 UTF-8 디코딩한다
                for raw in r.iter_lines():
                    try:
                        line = raw.decode("utf-8")
                    except UnicodeDecodeError as e:
                        raise ModelCallError("LLM stream parse failed") from e
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        yield json.loads(data)
                    except json.JSONDecodeError as e:
                        raise ModelCallError("LLM stream parse failed") from e
            except requests.RequestException as e:
                logger.error("[LLM] stream interrupted: %s", e)
                raise ModelCallError("LLM stream interrupted") from e


def _merge_tool_call_delta(acc: Dict[int, Dict[str, Any]], delta: Dict[str, Any]) -> None:
    # 스트리밍에서는 tool_calls가 index 기준 조각으로 나뉘어 온다
    idx = delta.get("index", 0)
    slot = acc.setdefault(idx, {"id": None, "type": "function", "function": {"name": "", "arguments": ""}})
    if delta.get("id"):
        slot["id"] = delta["id"]
    fn = delta.get("function") or {}
    if fn.get("name"):
        slot["function"]["name"] += fn["name"]
    if fn.get("arguments"):
        slot["function"]["arguments"] += fn["arguments"]


class MultiStepToolExecutor:
    """
    복합 작업을 위한 '다단계 도구 실행기' 클래스.

    모델이 필요하다고 판단한 '도구(function tool)'들을 실제로 호출하고,
    그 결과를 다시 대화 히스토리에 추가하여 연쇄적인 처리(예: A 삭제 -> B 생성)를 한 번의 사용자 요청으로 수행할 수 있게 도움

    :param tool_handler: 실제 도구를 실행하는 콜백 함수. (function_name, args) -> str
    :type tool_handler: Callable[[str, Dict[str, Any]], str]
    :param client: 스트리밍 모델 클라이언트(stream_chat 제공)
    :param tools: 모델에게 알려줄 도구 스펙
    :param max_iterations: 모델 호출 최대 횟수(무한 루프 방지)
    """

    def __init__(
        self,
        tool_handler: Callable[[str, Dict[str, Any]], str],
        client: OpenAIChatClient,
        tools: Optional[List[Dict[str, Any]]] = None,
        max_iterations: int = MAX_TOOL_ITERATIONS,
    ):
        self.tool_handler = tool_handler
        self.client = client
        self.tools = TOOLS_SPEC if tools is None else tools
        self.max_iterations = max_iterations
        self.conversation_history: List[Dict[str, Any]] = []  # LLM에게 보낼 대화 히스토리

    def execute_stream(
        self,
        messages: List[Dict[str, Any]],
        on_token: Optional[Callable[[str], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[str, int]:
        """
        스트리밍 방식으로 여러 도구를 순차 실행 :
        1) 현재 히스토리를 LLM에 전달하고, 내용 토큰은 on_token으로 바로 흘려보냄
        2) 응답에 포함된 tool_calls 조각을 모아 실제로 실행
        3) 결과를 히스토리에 'tool' 역할로 추가
        4) 도구 호출이 없는 응답이 오면 종료

        :param messages: LLM에 전달할 전체 대화 히스토리
        :type messages: List[Dict[str, Any]]
        :param on_token: 내용 토큰 콜백
        :param cancel_event: 설정되면 다음 조각에서 중단
        :raises TurnCancelled: cancel_event가 설정된 경우
        :raises ModelCallError: 모델 호출 실패 시
        :return: (최종 응답 텍스트, 사용 토큰 수)
        :rtype: Tuple[str, int]
        """
        self.conversation_history = list(messages)
        reply_parts: List[str] = []
        chunk_count = 0
        completion_tokens: Optional[int] = None

        for iteration in range(1, self.max_iterations + 1):
            content_parts: List[str] = []
            tool_acc: Dict[int, Dict[str, Any]] = {}

            for chunk in self.client.stream_chat(self.conversation_history, self.tools):
                _check_cancel(cancel_event)
                usage = chunk.get("usage") or {}
                if usage.get("completion_tokens") is not None:
                    completion_tokens = (completion_tokens or 0) + int(usage["completion_tokens"])

                for choice in chunk.get("choices") or []:
                    delta = choice.get("delta") or {}
                    token = delta.get("content")
                    if token:
                        chunk_count += 1
                        content_parts.append(token)
                        if on_token is not None:
                            on_token(token)
                    for tc in delta.get("tool_calls") or []:
                        _merge_tool_call_delta(tool_acc, tc)
            _check_cancel(cancel_event)

            content = "".join(content_parts)
            reply_parts.append(content)
            tool_calls = [tool_acc[i] for i in sorted(tool_acc)]
            logger.debug("[LLM] res: iteration=%d tool_calls=%d content='%s...'",
                         iteration, len(tool_calls), content[:80].replace("\n", " "))

            if not tool_calls:
                reply = self._sanitize_reply("".join(reply_parts))
                return reply, completion_tokens if completion_tokens is not None else chunk_count

            for i, tc in enumerate(tool_calls):
                if not tc.get("id"):
                    tc["id"] = f"call_{iteration}_{i}"

            self.conversation_history.append({
                "role": "assistant",
                "content": content or None,
                "tool_calls": tool_calls,
            })
            for tc in tool_calls:
                result = self._execute_single_tool(tc)
                self.conversation_history.append({
                    "tool_call_id": tc["id"],
                    "role": "tool",
                    "name": tc["function"]["name"],
                    "content": result,
                })

        # 최대 반복 횟수 초과
        logger.warning("Max iterations (%d) exceeded", self.max_iterations)
        if on_token is not None:
            on_token(MSG_TOO_MANY_STEPS)
        reply_parts.append(MSG_TOO_MANY_STEPS)
        chunk_count += 1
        reply = self._sanitize_reply("".join(reply_parts))
        return reply, completion_tokens if completion_tokens is not None else chunk_count

    def _execute_single_tool(self, tool_call: Dict[str, Any]) -> str:
        """
        모델이 요청한 단일 도구 호출을 실제로 실행함.

        :param tool_call: 모델 응답의 tool_calls 중 하나(함수명/인자 포함)
        :type tool_call: Dict[str, Any]
        :return: 도구 실행 결과 문자열
        :rtype: str
        """
        function_name = tool_call["function"]["name"]
        raw_args = tool_call["function"].get("arguments") or "{}"
        try:
            args = json.loads(raw_args) if isinstance(raw_args, str) else raw_args
        except json.JSONDecodeError:
            logger.warning("[TOOL] %s sent malformed arguments: %s", function_name, raw_args[:140])
            return "도구 인자(JSON)를 해석할 수 없습니다. 다시 시도해 주세요."
        if not isinstance(args, dict):
            return "도구 인자(JSON)를 해석할 수 없습니다. 다시 시도해 주세요."

        result = self.tool_handler(function_name, args)
        logger.debug("Tool %s executed", function_name)
        return result

    def _sanitize_reply(self, text: str) -> str:
        return text.strip()


def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise TurnCancelled()
