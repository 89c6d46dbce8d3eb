"""Tests for the streaming chat completions client and the multi-step tool loop."""

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from llm_fakes import FakeChatClient, text_chunks, tool_call_chunks, usage_chunk
from routes.schedule_openai import (
    MSG_TOO_MANY_STEPS,
    ModelCallError,
    MultiStepToolExecutor,
    OpenAIChatClient,
    TurnCancelled,
)


class StubCompletions:
    """Local chat completions endpoint that replays a canned response."""

    def __init__(self):
        self.status = 200
        self.body = b""
        self.content_type = "text/event-stream"
        self.requests = []

    def sse(self, *payloads):
        lines = []
        for p in payloads:
            lines.append(p if isinstance(p, str) else "data: " + json.dumps(p, ensure_ascii=False))
            lines.append("")
        self.body = "\n".join(lines).encode("utf-8")


@pytest.fixture
def stub():
    state = StubCompletions()

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            length = int(self.headers.get("Content-Length") or 0)
            state.requests.append({
                "path": self.path,
                "auth": self.headers.get("Authorization"),
                "body": json.loads(self.rfile.read(length) or b"{}"),
            })
            self.send_response(state.status)
            self.send_header("Content-Type", state.content_type)
            self.end_headers()
            self.wfile.write(state.body)

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    state.url = f"http://127.0.0.1:{server.server_address[1]}/v1"
    yield state
    server.shutdown()
    server.server_close()


def _client(url, api_key="test-key"):
    return OpenAIChatClient(api_key=api_key, base_url=url, model="gpt-test", temperature=0.2, timeout=5)


def test_stream_chat_parses_data_lines(stub):
    stub.sse(
        ": keep-alive",
        {"choices": [{"index": 0, "delta": {"content": "안녕"}}]},
        "event: ignored",
        {"choices": [{"index": 0, "delta": {"content": "하세요"}}]},
        "data: [DONE]",
        {"choices": [{"index": 0, "delta": {"content": "after done"}}]},
    )

    chunks = list(_client(stub.url).stream_chat([{"role": "user", "content": "안녕"}]))

    assert [c["choices"][0]["delta"]["content"] for c in chunks] == ["안녕", "하세요"]


def test_stream_chat_request_body(stub):
    stub.sse("data: [DONE]")
    tools = [{"type": "function", "function": {"name": "query_schedules", "parameters": {}}}]

    list(_client(stub.url).stream_chat([{"role": "user", "content": "일정"}], tools))

    sent = stub.requests[0]
    assert sent["path"] == "/v1/chat/completions"
    assert sent["auth"] == "Bearer test-key"
    assert sent["body"]["stream"] is True
    assert sent["body"]["stream_options"] == {"include_usage": True}
    assert sent["body"]["tools"] == tools
    assert sent["body"]["tool_choice"] == "auto"


def test_stream_chat_decodes_utf8_without_charset(stub):
    # "녕" is EB 85 95; a latin-1 decode would turn 0x85 into a line break
    stub.content_type = "text/event-stream"
    stub.sse({"choices": [{"index": 0, "delta": {"content": "안녕하세요, 일정 등록 완료"}}]}, "data: [DONE]")

    chunks = list(_client(stub.url).stream_chat([{"role": "user", "content": "x"}]))

    assert chunks[0]["choices"][0]["delta"]["content"] == "안녕하세요, 일정 등록 완료"


def test_stream_chat_http_error(stub):
    stub.status = 500
    stub.content_type = "application/json"
    stub.body = b'{"error": {"message": "boom"}}'

    with pytest.raises(ModelCallError, match="500"):
        list(_client(stub.url).stream_chat([{"role": "user", "content": "x"}]))


def test_stream_chat_malformed_json(stub):
    stub.sse("data: {not json")

    with pytest.raises(ModelCallError):
        list(_client(stub.url).stream_chat([{"role": "user", "content": "x"}]))


def test_stream_chat_without_key_never_calls_out(stub):
    with pytest.raises(ModelCallError):
        list(_client(stub.url, api_key="").stream_chat([{"role": "user", "content": "x"}]))

    assert stub.requests == []


def test_stream_chat_connection_refused():
    client = _client("http://127.0.0.1:1/v1")

    with pytest.raises(ModelCallError):
        list(client.stream_chat([{"role": "user", "content": "x"}]))


def test_executor_prefers_reported_usage():
    executor = MultiStepToolExecutor(lambda name, args: "", FakeChatClient(text_chunks("답변입니다") + [usage_chunk(7)]))

    reply, tokens = executor.execute_stream([{"role": "user", "content": "x"}])

    assert (reply, tokens) == ("답변입니다", 7)


def test_executor_stops_after_max_iterations():
    calls = []
    client = FakeChatClient(*[tool_call_chunks("query_schedules", {"year": 2025, "month": 7}) for _ in range(2)])
    executor = MultiStepToolExecutor(
        lambda name, args: calls.append((name, args)) or "일정 없음",
        client,
        max_iterations=2,
    )
    tokens_seen = []

    reply, tokens = executor.execute_stream([{"role": "user", "content": "x"}], on_token=tokens_seen.append)

    assert reply == MSG_TOO_MANY_STEPS
    assert tokens_seen == [MSG_TOO_MANY_STEPS]
    assert tokens == 1
    assert len(client.calls) == 2
    assert calls == [("query_schedules", {"year": 2025, "month": 7})] * 2


def test_executor_reports_malformed_tool_arguments():
    broken = [{"choices": [{"index": 0, "delta": {"tool_calls": [
        {"index": 0, "id": "call_x", "type": "function",
         "function": {"name": "create_schedule", "arguments": "{oops"}},
    ]}}]}]
    client = FakeChatClient(broken, text_chunks("다시 알려 주세요"))
    executor = MultiStepToolExecutor(lambda name, args: pytest.fail("handler must not run"), client)

    reply, _ = executor.execute_stream([{"role": "user", "content": "x"}])

    assert reply == "다시 알려 주세요"
    tool_msg = client.calls[1]["messages"][-1]
    assert tool_msg["role"] == "tool" and tool_msg["tool_call_id"] == "call_x"
    assert "JSON" in tool_msg["content"]


def test_executor_honours_cancel_token():
    cancel = threading.Event()
    cancel.set()
    executor = MultiStepToolExecutor(lambda name, args: "", FakeChatClient(text_chunks("답변")))

    with pytest.raises(TurnCancelled):
        executor.execute_stream([{"role": "user", "content": "x"}], cancel_event=cancel)
