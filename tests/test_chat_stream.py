"""Tests for the per-turn streaming channel."""

import json
import queue
import threading

from routes.chat_stream import MSG_TIMEOUT, TurnState, TurnStream, encode_sse
from schemas.chat_schema import DoneEvent, ErrorEvent, PartialEvent


def test_partials_then_single_completion():
    stream = TurnStream(timeout=2)

    assert stream.state is TurnState.STARTED
    stream.push_partial("안녕")
    stream.push_partial("하세요")
    assert stream.state is TurnState.STREAMING
    assert stream.complete(session_id="s1", message_id=7, tokens_used=2)

    events = list(stream.events())

    assert [e.content for e in events[:-1]] == ["안녕", "하세요"]
    assert events[-1] == DoneEvent(sessionId="s1", messageId=7, tokensUsed=2)
    assert sum(1 for e in events if e.done) == 1
    assert stream.state is TurnState.COMPLETED


def test_pushes_after_terminal_are_dropped():
    stream = TurnStream(timeout=2)
    stream.complete(tokens_used=0)

    assert stream.push_partial("late") is False
    assert stream.fail("late error") is False
    assert stream.complete() is False
    assert stream.close() is False

    assert len(list(stream.events())) == 1


def test_failure_is_terminal():
    stream = TurnStream(timeout=2)
    stream.push_partial("부분")
    stream.fail("모델 오류")

    events = list(stream.events())

    assert events == [PartialEvent(content="부분"), ErrorEvent(error="모델 오류")]
    assert stream.state is TurnState.FAILED


def test_empty_partials_are_ignored():
    stream = TurnStream(timeout=2)
    assert stream.push_partial("") is False
    assert stream.state is TurnState.STARTED


def test_events_follow_producer_thread():
    stream = TurnStream(timeout=5)

    def produce():
        for token in ["a", "b", "c"]:
            stream.push_partial(token)
        stream.complete(session_id="s1", message_id=1, tokens_used=3)

    t = threading.Thread(target=produce)
    t.start()
    events = list(stream.events())
    t.join()

    assert "".join(e.content for e in events) == "abc"
    assert events[-1].done is True


def test_timeout_closes_channel_and_cancels():
    stream = TurnStream(timeout=0.05)

    events = list(stream.events())

    assert events == [ErrorEvent(error=MSG_TIMEOUT)]
    assert stream.state is TurnState.CLOSED
    assert stream.cancel_event.is_set()
    assert stream.complete() is False


def test_consumer_leaving_early_cancels_turn():
    stream = TurnStream(timeout=5)
    stream.push_partial("첫 토큰")

    gen = stream.events()
    assert next(gen).content == "첫 토큰"
    gen.close()

    assert stream.state is TurnState.CLOSED
    assert stream.cancel_event.is_set()
    assert stream.push_partial("more") is False


def test_sse_encoding():
    partial = encode_sse(PartialEvent(content="일정"))
    done = encode_sse(DoneEvent(tokensUsed=3))

    assert partial == 'data: {"content": "일정", "done": false}\n\n'
    assert json.loads(done[len("data: "):]) == {"content": "", "done": True, "tokensUsed": 3}


def test_sse_stream_frames():
    stream = TurnStream(timeout=2)
    stream.push_partial("x")
    stream.fail("boom")

    frames = list(stream.sse())

    assert frames == [
        'data: {"content": "x", "done": false}\n\n',
        'data: {"error": "boom", "done": true}\n\n',
    ]


class _FinishesWhileWaiting(queue.Queue):
    """첫 대기 중에 생산자가 끝내고, 대기는 시간 초과로 끝나는 큐"""

    def __init__(self, stream):
        super().__init__()
        self.stream = stream
        self.raced = False

    def get(self, block=True, timeout=None):
        if not self.raced:
            self.raced = True
            self.stream.complete(session_id="s1", message_id=1, tokens_used=1)
            raise queue.Empty
        return super().get(block, timeout)


def test_completion_racing_timeout_still_delivers_done():
    stream = TurnStream(timeout=5)
    stream._queue = _FinishesWhileWaiting(stream)

    events = list(stream.events())

    assert events == [DoneEvent(sessionId="s1", messageId=1, tokensUsed=1)]
    assert stream.state is TurnState.COMPLETED
