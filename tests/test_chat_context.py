"""Tests for caller/session context propagation."""

import logging
from concurrent.futures import ThreadPoolExecutor

from routes.chat_context import (
    ContextRegistry,
    TurnContext,
    TurnContextFilter,
    bound_turn,
    current_turn,
)


def test_bind_resolve_unbind():
    registry = ContextRegistry()

    registry.bind("s1", "u1")
    registry.bind("s1", "u1")
    assert registry.resolve("s1") == "u1"
    assert len(registry) == 1

    registry.unbind("s1")
    registry.unbind("s1")
    assert registry.resolve("s1") is None
    assert len(registry) == 0


def test_unbind_unknown_session_is_noop():
    registry = ContextRegistry()
    registry.unbind("never-bound")
    assert len(registry) == 0


def test_sessions_do_not_interfere_across_threads():
    registry = ContextRegistry()

    def turn(n):
        sid, caller = f"s{n}", f"u{n}"
        registry.bind(sid, caller)
        seen = registry.resolve(sid)
        registry.unbind(sid)
        return seen == caller

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(turn, range(50)))

    assert all(results)
    assert len(registry) == 0


def test_rebind_replaces_caller():
    registry = ContextRegistry()
    registry.bind("s1", "u1")
    registry.bind("s1", "u2")
    assert registry.resolve("s1") == "u2"


def test_bound_turn_sets_and_resets():
    ctx = TurnContext(caller_id="u1", session_id="s1")
    assert current_turn() is None

    with bound_turn(ctx):
        assert current_turn() == ctx
        inner = TurnContext(caller_id="u2", session_id="s2", stateless=True)
        with bound_turn(inner):
            assert current_turn() == inner
        assert current_turn() == ctx

    assert current_turn() is None


def test_bound_turn_reestablishes_context_on_worker_thread():
    ctx = TurnContext(caller_id="u1", session_id="s1")

    def continuation(turn):
        before = current_turn()
        with bound_turn(turn):
            during = current_turn()
        return before, during

    with bound_turn(ctx):
        with ThreadPoolExecutor(max_workers=1) as pool:
            before, during = pool.submit(continuation, ctx).result()

    assert before is None
    assert during == ctx


def test_filter_stamps_log_records():
    f = TurnContextFilter()
    record = logging.LogRecord("t", logging.INFO, __file__, 1, "msg", None, None)

    assert f.filter(record)
    assert (record.session_id, record.caller_id) == ("-", "-")

    with bound_turn(TurnContext(caller_id="u1", session_id="s1")):
        f.filter(record)
    assert (record.session_id, record.caller_id) == ("s1", "u1")


def test_stale_unbind_keeps_newer_binding():
    registry = ContextRegistry()
    first = registry.bind("s1", "u1")
    second = registry.bind("s1", "u1")

    assert registry.unbind("s1", first) is False
    assert registry.resolve("s1") == "u1"

    assert registry.unbind("s1", second) is True
    assert registry.resolve("s1") is None
