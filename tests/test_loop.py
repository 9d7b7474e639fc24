"""Tests for the bounded self-loop and its state file."""

import pytest

from resilience.continuation.loop import BoundedLoop, build_loop_prompt, completion_pattern
from resilience.continuation.loop_storage import (
    LoopState,
    clear_state,
    increment_iteration,
    read_state,
    state_path,
    write_state,
)
from resilience.events import SessionEvent, make_event

from conftest import prompt_texts, toast_titles


def _idle(session_id="ses_1", **properties):
    return SessionEvent.from_host(make_event("session.idle", sessionID=session_id, **properties))


@pytest.fixture
def project(tmp_path):
    return tmp_path / "project"


@pytest.fixture
def loop(store, client, project):
    return BoundedLoop(store, client, directory=project, recovery_window_s=60)


# ============ Storage Tests ============

def test_state_file_keeps_prompt_verbatim(project):
    prompt = "Port the parser.\n---\nKeep {braces} and: colons"
    state = LoopState(True, 1, 5, "DONE", LoopState.now(), prompt, "ses_1")
    assert write_state(project, state)
    assert state_path(project).name == "loop-state.md"

    loaded = read_state(project)
    assert loaded == state


def test_increment_and_clear(project):
    write_state(project, LoopState(True, 1, 5, "DONE", LoopState.now(), "task", "ses_1"))
    assert increment_iteration(project).iteration == 2
    assert read_state(project).iteration == 2

    assert clear_state(project) is True
    assert read_state(project) is None
    assert clear_state(project) is True
    assert increment_iteration(project) is None


def test_malformed_state_file(project):
    path = state_path(project)
    path.parent.mkdir(parents=True)
    path.write_text("no front matter here")
    assert read_state(project) is None

    path.write_text("---\nactive: [unclosed\n---\ntask\n")
    assert read_state(project) is None


# ============ Prompt Tests ============

def test_completion_pattern():
    pattern = completion_pattern("DONE")
    assert pattern.search("all good <promise>DONE</promise>")
    assert pattern.search("<PROMISE>\n  done \n</PROMISE>")
    assert not pattern.search("DONE")
    assert not pattern.search("<promise>NOT DONE</promise>")


def test_build_loop_prompt_embeds_task():
    state = LoopState(True, 2, 5, "SHIPPED", LoopState.now(), "Render {\"a\": 1} as {name}", "ses_1")
    prompt = build_loop_prompt(state)
    assert prompt.startswith("[SELF-LOOP - ITERATION 2/5]")
    assert "<promise>SHIPPED</promise>" in prompt
    assert prompt.endswith("Original task:\nRender {\"a\": 1} as {name}")


# ============ Control Tests ============

def test_start_defaults(loop):
    assert loop.start("ses_1", "Port the parser") is True
    state = loop.get_state()
    assert state.active is True
    assert state.iteration == 1
    assert state.max_iterations == 100
    assert state.completion_promise == "DONE"
    assert state.session_id == "ses_1"


def test_cancel_only_by_owner(loop):
    loop.start("ses_1", "task")
    assert loop.cancel("ses_other") is False
    assert loop.get_state() is not None
    assert loop.cancel("ses_1") is True
    assert loop.get_state() is None


# ============ Idle Cycle Tests ============

@pytest.mark.asyncio
async def test_iterates_until_max_then_stops(loop, client):
    loop.start("ses_1", "Port the parser", max_iterations=3)

    await loop.handle_event(_idle())
    await loop.handle_event(_idle())
    assert loop.get_state().iteration == 3

    await loop.handle_event(_idle())
    assert loop.get_state() is None

    texts = prompt_texts(client)
    assert len(texts) == 2
    assert texts[0].startswith("[SELF-LOOP - ITERATION 2/3]")
    assert texts[1].startswith("[SELF-LOOP - ITERATION 3/3]")
    assert all(text.endswith("Original task:\nPort the parser") for text in texts)
    assert toast_titles(client)[-1] == "Self-Loop Stopped"


@pytest.mark.asyncio
async def test_completion_marker_clears_without_prompt(loop, client, transcript):
    loop.start("ses_1", "task", max_iterations=5, completion_promise="SHIPPED")
    transcript.message("msg_001", "assistant")
    transcript.text("msg_001", "prt_001", "Everything passes. <promise>SHIPPED</promise>")

    await loop.handle_event(_idle())

    assert loop.get_state() is None
    client.prompt.assert_not_awaited()
    assert toast_titles(client) == ["Self-Loop Complete!"]


@pytest.mark.asyncio
async def test_marker_in_user_text_does_not_count(loop, client, transcript):
    loop.start("ses_1", "Print <promise>DONE</promise> when finished", max_iterations=5)
    transcript.message("msg_001", "user")
    transcript.text("msg_001", "prt_001", "Print <promise>DONE</promise> when finished")

    await loop.handle_event(_idle())
    client.prompt.assert_awaited_once()


@pytest.mark.asyncio
async def test_completion_marker_in_transcript_file(loop, client, tmp_path):
    loop.start("ses_1", "task", max_iterations=5)
    transcript_file = tmp_path / "transcript.jsonl"
    transcript_file.write_text('{"role":"assistant","text":"<promise>done</promise>"}\n')

    await loop.handle_event(_idle(transcriptPath=str(transcript_file)))

    assert loop.get_state() is None
    client.prompt.assert_not_awaited()


@pytest.mark.asyncio
async def test_other_session_idle_is_ignored(loop, client):
    loop.start("ses_1", "task", max_iterations=5)
    await loop.handle_event(_idle("ses_2"))
    assert loop.get_state().iteration == 1
    client.prompt.assert_not_awaited()


@pytest.mark.asyncio
async def test_error_before_idle_skips_cycle(loop, client):
    loop.start("ses_1", "task", max_iterations=5)
    await loop.handle_event(SessionEvent.from_host(make_event("session.error", sessionID="ses_1", error="boom")))
    await loop.handle_event(_idle())

    assert loop.get_state().iteration == 1
    client.prompt.assert_not_awaited()


@pytest.mark.asyncio
async def test_recovery_window_expires(store, client, project):
    loop = BoundedLoop(store, client, directory=project, recovery_window_s=0)
    loop.start("ses_1", "task", max_iterations=5)
    await loop.handle_event(SessionEvent.from_host(make_event("session.error", sessionID="ses_1", error="boom")))
    await loop.handle_event(_idle())

    client.prompt.assert_awaited_once()


@pytest.mark.asyncio
async def test_mark_recovering_suppresses(loop, client):
    loop.start("ses_1", "task", max_iterations=5)
    loop.mark_recovering("ses_1")
    await loop.handle_event(_idle())
    client.prompt.assert_not_awaited()

    loop.mark_recovery_complete("ses_1")
    await loop.handle_event(_idle())
    client.prompt.assert_awaited_once()


@pytest.mark.asyncio
async def test_owner_deleted_clears_state(loop):
    loop.start("ses_1", "task")
    await loop.handle_event(SessionEvent.from_host(make_event("session.deleted", info={"id": "ses_2"})))
    assert loop.get_state() is not None
    await loop.handle_event(SessionEvent.from_host(make_event("session.deleted", info={"id": "ses_1"})))
    assert loop.get_state() is None


@pytest.mark.asyncio
async def test_prompt_failure_keeps_state(loop, client):
    client.prompt.side_effect = RuntimeError("host gone")
    loop.start("ses_1", "task", max_iterations=5)
    await loop.handle_event(_idle())
    assert loop.get_state().iteration == 2


@pytest.mark.asyncio
async def test_max_two_sends_one_prompt_then_clears(loop, client):
    """Iteration starts at 1, so max_iterations=2 leaves room for one continuation."""
    loop.start("ses_1", "task", max_iterations=2)

    await loop.handle_event(_idle())
    assert loop.get_state().iteration == 2
    await loop.handle_event(_idle())

    assert loop.get_state() is None
    texts = prompt_texts(client)
    assert len(texts) == 1
    assert texts[0].startswith("[SELF-LOOP - ITERATION 2/2]")
    assert toast_titles(client)[-1] == "Self-Loop Stopped"


@pytest.mark.asyncio
async def test_marker_from_before_start_is_ignored(loop, client, transcript):
    """A promise printed by an earlier loop in the same session does not end a new one."""
    transcript.message("msg_002", "assistant")
    transcript.text("msg_002", "prt_002", "All green. <promise>DONE</promise>")
    loop.start("ses_1", "New task", max_iterations=3)
    assert loop.get_state().after_message_id == "msg_002"

    transcript.message("msg_004", "assistant")
    transcript.text("msg_004", "prt_004", "working on it")
    await loop.handle_event(_idle())

    assert loop.get_state().iteration == 2
    client.prompt.assert_awaited_once()

    transcript.message("msg_006", "assistant")
    transcript.text("msg_006", "prt_006", "<promise>DONE</promise>")
    await loop.handle_event(_idle())
    assert loop.get_state() is None
