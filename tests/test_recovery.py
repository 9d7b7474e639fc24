"""Tests for structural session recovery."""

import asyncio
from unittest.mock import MagicMock

import pytest

from resilience.events import SessionEvent, make_event
from resilience.healing.recovery import (
    CANCELLED_TOOL_RESULT,
    RECOVERY_RESUME_TEXT,
    SessionRecovery,
    tool_call_ids,
)
from resilience.transcript.parts import MessageInfo, ThinkingPart, message_from_api

from conftest import prompt_texts, toast_titles

MODEL = {"providerID": "anthropic", "modelID": "claude-x"}
TOOL_RESULT_ERROR = {"data": {"message": "messages.1: `tool_use` ids were found without `tool_result` blocks"}}
ORDER_ERROR = {"data": {"message": "messages.1.content.0.type: Expected `thinking` or `redacted_thinking`, but found `text`"}}
DISABLED_ERROR = {"data": {"message": "When thinking is disabled, an assistant message cannot contain thinking"}}


def _info(error, message_id="msg_002"):
    return {"id": message_id, "sessionID": "ses_1", "role": "assistant", "error": error, **MODEL}


@pytest.fixture
def listener():
    return MagicMock()


@pytest.fixture
def recovery(store, client, listener):
    return SessionRecovery(store, client, listeners=[listener])


@pytest.fixture
def session(transcript):
    transcript.message("msg_001", "user", agent="build", **MODEL)
    transcript.text("msg_001", "prt_001", "fix the tests")
    transcript.message("msg_002", "assistant", **MODEL)
    return transcript


# ============ Tool Result Missing Tests ============

@pytest.mark.asyncio
async def test_tool_result_missing(recovery, client, listener):
    failed = message_from_api(
        {
            "info": _info(TOOL_RESULT_ERROR),
            "parts": [
                {"id": "toolu_1", "type": "tool_use", "name": "bash", "input": {"command": "ls"}},
                {"id": "toolu_2", "type": "tool_use", "name": "read", "input": {}},
            ],
        }
    )
    client.messages.return_value = [failed]

    event = SessionEvent.from_host(make_event("message.updated", info=_info(TOOL_RESULT_ERROR)))
    await recovery.handle_event(event)

    client.abort.assert_awaited_once_with("ses_1")
    sent = client.prompt.await_args.args[1]
    assert sent == [
        {"type": "tool_result", "tool_use_id": "toolu_1", "content": CANCELLED_TOOL_RESULT},
        {"type": "tool_result", "tool_use_id": "toolu_2", "content": CANCELLED_TOOL_RESULT},
    ]
    assert toast_titles(client) == ["Tool Crash Recovery"]
    listener.mark_recovering.assert_called_once_with("ses_1")
    listener.mark_recovery_complete.assert_called_once_with("ses_1")


def test_tool_call_ids_host_format():
    msg = message_from_api(
        {
            "info": {"id": "msg_1", "role": "assistant"},
            "parts": [{"id": "prt_1", "type": "tool", "callID": "call_7", "tool": "bash", "state": {}}],
        }
    )
    assert tool_call_ids(msg.parts) == ["call_7"]


# ============ Thinking Tests ============

@pytest.mark.asyncio
async def test_thinking_block_order(recovery, session, store, client):
    session.text("msg_002", "prt_002", "answer without thinking")
    client.messages.return_value = store.read_messages("ses_1")

    assert await recovery.handle_session_recovery(MessageInfo.from_dict(_info(ORDER_ERROR))) is True

    parts = store.read_parts("msg_002")
    assert isinstance(parts[0], ThinkingPart)
    assert toast_titles(client) == ["Thinking Block Recovery"]
    assert prompt_texts(client) == [RECOVERY_RESUME_TEXT]
    assert client.prompt.await_args.kwargs == {"agent": "build", "model": MODEL}


@pytest.mark.asyncio
async def test_thinking_disabled(recovery, session, store, client):
    session.thinking("msg_002", "prt_002")
    session.text("msg_002", "prt_003", "answer")
    client.messages.return_value = store.read_messages("ses_1")

    assert await recovery.handle_session_recovery(MessageInfo.from_dict(_info(DISABLED_ERROR))) is True

    assert [p.id for p in store.read_parts("msg_002")] == ["prt_003"]
    assert prompt_texts(client) == [RECOVERY_RESUME_TEXT]


@pytest.mark.asyncio
async def test_nothing_to_repair_does_not_resume(recovery, session, store, client, listener):
    session.thinking("msg_002", "prt_002")
    client.messages.return_value = store.read_messages("ses_1")

    assert await recovery.handle_session_recovery(MessageInfo.from_dict(_info(ORDER_ERROR))) is False
    client.prompt.assert_not_awaited()
    listener.mark_recovery_complete.assert_called_once_with("ses_1")


# ============ Guard Tests ============

@pytest.mark.asyncio
async def test_non_structural_errors_are_left_alone(recovery, client, listener):
    info = MessageInfo.from_dict(_info({"data": {"message": "prompt is too long"}}))
    assert await recovery.handle_session_recovery(info) is False
    client.abort.assert_not_awaited()
    listener.mark_recovering.assert_not_called()


@pytest.mark.asyncio
async def test_failed_message_not_found(recovery, client, listener):
    client.messages.return_value = []
    assert await recovery.handle_session_recovery(MessageInfo.from_dict(_info(TOOL_RESULT_ERROR))) is False
    client.prompt.assert_not_awaited()
    listener.mark_recovery_complete.assert_called_once_with("ses_1")


@pytest.mark.asyncio
async def test_abort_failure_does_not_stop_recovery(recovery, session, store, client):
    client.abort.side_effect = RuntimeError("no such session")
    session.thinking("msg_002", "prt_002")
    session.text("msg_002", "prt_003", "answer")
    client.messages.return_value = store.read_messages("ses_1")

    assert await recovery.handle_session_recovery(MessageInfo.from_dict(_info(DISABLED_ERROR))) is True


@pytest.mark.asyncio
async def test_concurrent_recovery_for_same_message_runs_once(recovery, session, store, client):
    async def slow_abort(session_id):
        await asyncio.sleep(0.01)

    client.abort.side_effect = slow_abort
    session.text("msg_002", "prt_002", "answer")
    client.messages.return_value = store.read_messages("ses_1")
    info = MessageInfo.from_dict(_info(ORDER_ERROR))

    results = await asyncio.gather(recovery.handle_session_recovery(info), recovery.handle_session_recovery(info))
    assert sorted(results) == [False, True]
    assert client.abort.await_count == 1


def test_is_recoverable_error(recovery):
    assert recovery.is_recoverable_error(TOOL_RESULT_ERROR)
    assert not recovery.is_recoverable_error("prompt is too long")
