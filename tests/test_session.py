import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from crkd.context import CancelToken
from crkd.errors import ProviderError, RequestCancelledError
from crkd.models import TurnOptions, TurnResult
from crkd.session import InteractiveSession, SessionState


@pytest.fixture(autouse=True)
def quiet_display():
    with patch("crkd.session.display") as display:
        yield display


def _agent(execute=None):
    agent = MagicMock()
    agent.context = SimpleNamespace(cancel_token=CancelToken(), aclose=AsyncMock())
    agent.execute = AsyncMock(side_effect=execute or (lambda message, options: TurnResult(response="ok")))
    return agent


def _lines(*lines):
    queue = list(lines)

    async def read_line():
        return queue.pop(0) if queue else None

    return read_line


def _session(agent, read_line, **kwargs):
    return InteractiveSession(agent, TurnOptions(stream=False, **kwargs), read_line)

# ---------------------------------------------------------------------------
# Exit paths
# ---------------------------------------------------------------------------

async def test_exit_keyword(quiet_display):
    agent = _agent()
    session = _session(agent, _lines("EXIT"))

    assert await session.run() == 0
    agent.execute.assert_not_called()
    quiet_display.goodbye.assert_called_once()
    agent.context.aclose.assert_awaited_once()
    assert session.state == SessionState.CLOSED

async def test_end_of_input():
    agent = _agent()
    assert await _session(agent, _lines()).run() == 0
    agent.context.aclose.assert_awaited_once()

async def test_messages_then_exit():
    agent = _agent()
    session = _session(agent, _lines("fix the bug", "   ", "add a test", "exit"))

    assert await session.run() == 0
    assert [c.args[0] for c in agent.execute.await_args_list] == ["fix the bug", "add a test"]
    assert session.last_result == TurnResult(response="ok")

async def test_initial_message_runs_first():
    agent = _agent()
    session = InteractiveSession(
        agent, TurnOptions(stream=False), _lines("exit"), initial_message="start here"
    )
    assert await session.run() == 0
    assert [c.args[0] for c in agent.execute.await_args_list] == ["start here"]

async def test_idle_timeout(quiet_display):
    async def never():
        await asyncio.sleep(10)

    agent = _agent()
    session = _session(agent, never, timeout=0.05)

    assert await session.run() == 1
    quiet_display.timed_out.assert_called_once_with(0.05)
    agent.context.aclose.assert_awaited_once()

async def test_cleanup_is_idempotent():
    agent = _agent()
    session = _session(agent, _lines())
    await session.cleanup()
    await session.cleanup()
    agent.context.aclose.assert_awaited_once()

# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

async def test_cancel_resubmits_same_input(quiet_display):
    calls = []
    session = None

    async def execute(message, options):
        calls.append(message)
        if len(calls) == 1:
            session.cancel()
            await asyncio.sleep(10)
        return TurnResult(response="done")

    agent = _agent(execute)
    session = _session(agent, _lines("fix the bug", "exit"))

    assert await session.run() == 0
    assert calls == ["fix the bug", "fix the bug"]
    assert session.cancellations == 1
    assert session.last_result == TurnResult(response="done")
    quiet_display.cancelled.assert_called_once()

async def test_request_cancelled_error_counts_as_cancel():
    calls = []

    async def execute(message, options):
        calls.append(message)
        if len(calls) == 1:
            raise RequestCancelledError("Request cancelled")
        return TurnResult(response="done")

    session = _session(_agent(execute), _lines("go", "exit"))
    assert await session.run() == 0
    assert calls == ["go", "go"]
    assert session.cancellations == 1

def test_cancel_ignored_while_awaiting_input():
    agent = _agent()
    session = _session(agent, _lines())
    session.state = SessionState.AWAITING_INPUT
    session.cancel()
    assert agent.context.cancel_token.cancelled is False

async def test_token_is_reset_for_each_turn():
    agent = _agent()
    agent.context.cancel_token.cancel()
    session = _session(agent, _lines("go", "exit"))

    assert await session.run() == 0
    assert session.cancellations == 0
    agent.execute.assert_awaited_once()

# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

async def test_provider_error_does_not_end_session(quiet_display):
    async def execute(message, options):
        raise ProviderError("Model call to x failed: 502")

    agent = _agent(execute)
    session = _session(agent, _lines("first", "second", "exit"))

    assert await session.run() == 0
    assert agent.execute.await_count == 2
    quiet_display.error.assert_called_with("Model call to x failed: 502")
