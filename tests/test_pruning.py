"""Tests for the pruning strategies and engine."""

import pytest

from resilience.events import SESSION_DELETED, SessionEvent
from resilience.pruning.deduplication import execute_deduplication
from resilience.pruning.executor import PruningEngine
from resilience.pruning.purge_errors import execute_purge_errors
from resilience.pruning.state import (
    PRUNED_MARKER,
    PruningConfig,
    PruningState,
    count_turns,
    is_protected_by_turn,
    tool_signature,
)
from resilience.pruning.supersede import execute_supersede_writes
from resilience.transcript.parts import MessageInfo, PersistedMessage, StepStartPart, ToolPart, ToolState

from conftest import toast_titles


def _turn(n, *calls):
    """One assistant message = one turn; calls are (call_id, tool, input[, status])."""
    parts = [StepStartPart(id=f"prt_{n:03d}_0", message_id=f"msg_{n:03d}")]
    for i, call in enumerate(calls, start=1):
        call_id, tool, tool_input, *rest = call
        status = rest[0] if rest else "completed"
        state = ToolState(status=status, input=tool_input, output="out" * 10 if status == "completed" else None)
        parts.append(ToolPart(id=f"prt_{n:03d}_{i}", message_id=f"msg_{n:03d}", call_id=call_id, tool=tool, state=state))
    return PersistedMessage(info=MessageInfo(id=f"msg_{n:03d}", session_id="ses_1", role="assistant"), parts=parts)


def _run(strategy, messages, cfg):
    state = PruningState(current_turn=count_turns(messages))
    count, _ = strategy(messages, state, cfg)
    return count, state


READ_A = {"filePath": "a.py"}


# ============ Helper Tests ============

def test_signature_ignores_key_order():
    assert tool_signature("read", {"b": 1, "a": {"d": 2, "c": 3}}) == tool_signature(
        "read", {"a": {"c": 3, "d": 2}, "b": 1}
    )
    assert tool_signature("read", READ_A) != tool_signature("grep", READ_A)


def test_turn_protection_window():
    cfg = PruningConfig(protected_turns=3)
    assert is_protected_by_turn(4, 6, cfg)
    assert not is_protected_by_turn(3, 6, cfg)
    assert not is_protected_by_turn(6, 6, PruningConfig(turn_protection=False))


# ============ Deduplication Tests ============

def test_dedup_marks_all_but_last():
    messages = [
        _turn(1, ("c1", "read", READ_A)),
        _turn(2, ("c2", "read", READ_A)),
        _turn(3, ("c3", "read", READ_A)),
        _turn(4),
        _turn(5),
        _turn(6),
    ]
    count, state = _run(execute_deduplication, messages, PruningConfig(protected_turns=3))
    assert count == 2
    assert state.tool_ids_to_prune == {"c1", "c2"}


def test_dedup_skips_protected_window():
    messages = [_turn(1), _turn(2, ("c1", "read", READ_A)), _turn(3, ("c2", "read", READ_A))]
    count, state = _run(execute_deduplication, messages, PruningConfig(protected_turns=3))
    assert count == 0
    assert not state.tool_ids_to_prune


def test_dedup_skips_protected_tools():
    todo = {"todos": [{"id": "1"}]}
    messages = [_turn(1, ("c1", "todowrite", todo)), _turn(2, ("c2", "todowrite", todo)), _turn(3), _turn(4)]
    count, _ = _run(execute_deduplication, messages, PruningConfig(protected_turns=1))
    assert count == 0


def test_dedup_custom_protected_tools():
    messages = [_turn(1, ("c1", "bash", {"cmd": "ls"})), _turn(2, ("c2", "bash", {"cmd": "ls"})), _turn(3)]
    cfg = PruningConfig(protected_tools={"bash"}, protected_turns=1)
    count, _ = _run(execute_deduplication, messages, cfg)
    assert count == 0


# ============ Purge Errors Tests ============

def test_purge_errors_threshold():
    """Marked iff current - call turn >= threshold."""
    messages = [
        _turn(1, ("old", "bash", {"cmd": "x"}, "error")),
        _turn(2, ("young", "bash", {"cmd": "y"}, "error")),
        _turn(3, ("fine", "bash", {"cmd": "z"})),
        _turn(4),
        _turn(5),
        _turn(6),
    ]
    count, state = _run(execute_purge_errors, messages, PruningConfig(protected_turns=3, purge_error_turns=5))
    assert count == 1
    assert state.tool_ids_to_prune == {"old"}
    assert state.errored_tools["old"].error_age == 5


def test_purge_errors_respects_protected_tools():
    messages = [_turn(1, ("t1", "task", {"prompt": "p"}, "error"))] + [_turn(n) for n in range(2, 10)]
    count, _ = _run(execute_purge_errors, messages, PruningConfig(protected_turns=1, purge_error_turns=2))
    assert count == 0


# ============ Supersede Tests ============

def _write_read_history():
    return [
        _turn(1, ("w1", "write", {"filePath": "a.py", "content": "1"})),
        _turn(2, ("w2", "edit", {"filePath": "a.py", "oldString": "1", "newString": "2"})),
        _turn(3, ("r1", "read", {"filePath": "a.py"})),
        _turn(4, ("w3", "write", {"filePath": "b.py", "content": "b"})),
        _turn(5),
        _turn(6),
        _turn(7),
    ]


def test_supersede_conservative_keeps_last_write():
    count, state = _run(execute_supersede_writes, _write_read_history(), PruningConfig(protected_turns=2))
    assert count == 1
    assert state.tool_ids_to_prune == {"w1"}
    assert [op.call_id for op in state.file_operations["a.py"]] == ["w1", "w2"]


def test_supersede_aggressive():
    cfg = PruningConfig(protected_turns=2, supersede_aggressive=True)
    count, state = _run(execute_supersede_writes, _write_read_history(), cfg)
    assert count == 2
    assert state.tool_ids_to_prune == {"w1", "w2"}


# ============ Engine Tests ============

@pytest.fixture
def engine(store, client):
    return PruningEngine(store, client, PruningConfig(protected_turns=2, notification="minimal"))


def _write_duplicate_session(transcript):
    for n in range(1, 6):
        message_id = transcript.message(f"msg_{n:03d}", "assistant")
        transcript.step(message_id, f"prt_{n:03d}_0")
        if n <= 3:
            transcript.tool(message_id, f"prt_{n:03d}_1", f"call_{n}", "read", READ_A, output="x" * 4000)


@pytest.mark.asyncio
async def test_engine_marks_and_notifies(engine, transcript, client):
    _write_duplicate_session(transcript)

    assert await engine.execute_pruning("ses_1") == 2
    assert engine.is_pruned("ses_1", "call_1")
    assert engine.is_pruned("ses_1", "call_2")
    assert not engine.is_pruned("ses_1", "call_3")
    assert engine.get_state("ses_1").current_turn == 5
    assert toast_titles(client) == ["Dynamic Context Pruning"]
    assert "Pruned 2 tool outputs" in client.show_toast.await_args.args[1]

    # Marks are only counted once
    assert await engine.execute_pruning("ses_1") == 0
    assert client.show_toast.await_count == 1


@pytest.mark.asyncio
async def test_engine_never_touches_store(engine, store, transcript):
    _write_duplicate_session(transcript)
    before = store.read_messages("ses_1")
    await engine.execute_pruning("ses_1")
    assert store.read_messages("ses_1") == before


@pytest.mark.asyncio
async def test_engine_single_mode(engine, transcript):
    _write_duplicate_session(transcript)
    assert await engine.execute_pruning("ses_1", "purge") == 0
    assert await engine.execute_pruning("ses_1", "dedup") == 2


@pytest.mark.asyncio
async def test_engine_rejects_unknown_mode(engine):
    with pytest.raises(ValueError):
        await engine.execute_pruning("ses_1", "everything")


@pytest.mark.asyncio
async def test_filter_pruned(engine, store, transcript):
    _write_duplicate_session(transcript)
    await engine.execute_pruning("ses_1")

    messages = store.read_messages("ses_1")
    filtered = engine.filter_pruned("ses_1", messages)
    outputs = [p.state.output for m in filtered for p in m.parts if isinstance(p, ToolPart)]
    assert outputs == [PRUNED_MARKER, PRUNED_MARKER, "x" * 4000]
    # Input list is not modified
    assert messages[0].parts[1].state.output == "x" * 4000


@pytest.mark.asyncio
async def test_engine_notification_off(store, transcript, client):
    _write_duplicate_session(transcript)
    engine = PruningEngine(store, client, PruningConfig(protected_turns=2, notification="off"))
    assert await engine.execute_pruning("ses_1") == 2
    client.show_toast.assert_not_awaited()


@pytest.mark.asyncio
async def test_session_deleted_clears_marks(engine, transcript):
    _write_duplicate_session(transcript)
    await engine.execute_pruning("ses_1")
    await engine.handle_event(SessionEvent(SESSION_DELETED, "ses_1"))
    assert not engine.is_pruned("ses_1", "call_1")
