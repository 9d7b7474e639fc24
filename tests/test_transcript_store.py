"""Tests for the file-backed transcript store."""

import json

import pytest

from resilience.errors import TranscriptError
from resilience.transcript.parts import (
    MessageInfo,
    StepStartPart,
    TextPart,
    ThinkingPart,
    ToolPart,
    UnknownPart,
)
from resilience.transcript.store import id_between


# ============ Reading Tests ============

def test_read_messages_in_order(store, transcript):
    """Messages and parts come back sorted by id regardless of write order."""
    transcript.message("msg_002", "assistant")
    transcript.message("msg_001", "user")
    transcript.text("msg_001", "prt_001", "hello")
    transcript.tool("msg_002", "prt_003", "call_1", "read", {"filePath": "a.py"})
    transcript.step("msg_002", "prt_002")

    messages = store.read_messages("ses_1")
    assert [m.id for m in messages] == ["msg_001", "msg_002"]
    assert [m.role for m in messages] == ["user", "assistant"]
    assert isinstance(messages[1].parts[0], StepStartPart)
    tool = messages[1].parts[1]
    assert isinstance(tool, ToolPart)
    assert tool.call_id == "call_1"
    assert tool.state.input == {"filePath": "a.py"}


def test_nested_session_layout(store):
    """Sessions stored one level below a project directory are found."""
    path = store.message_root / "project_a" / "ses_9" / "msg_001.json"
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"id": "msg_001", "role": "user"}))

    infos = store.read_message_infos("ses_9")
    assert len(infos) == 1
    assert infos[0].session_id == "ses_9"


def test_missing_session_is_empty(store):
    assert store.read_messages("ses_none") == []
    assert store.find_last_assistant("ses_none") is None


def test_unreadable_files_are_skipped(store, transcript):
    transcript.message("msg_001", "user")
    bad = store.message_root / "ses_1" / "msg_002.json"
    bad.write_text("{not json")

    assert [m.id for m in store.read_messages("ses_1")] == ["msg_001"]


def test_part_types(store, transcript):
    transcript.message("msg_001", "assistant")
    transcript.part("msg_001", "prt_001", "reasoning", text="thoughts")
    transcript.part("msg_001", "prt_002", "snapshot", snapshot="abc")

    parts = store.read_parts("msg_001")
    assert isinstance(parts[0], ThinkingPart)
    assert parts[0].type == "reasoning"
    assert parts[0].text == "thoughts"
    assert isinstance(parts[1], UnknownPart)
    assert parts[1].type == "snapshot"


def test_model_read_from_nested_model_field(store, transcript):
    transcript.message("msg_001", "user", agent="build", model={"providerID": "anthropic", "modelID": "claude-x"})
    info = store.read_message_infos("ses_1")[0]
    assert info.provider_id == "anthropic"
    assert info.model_id == "claude-x"


# ============ Writing Tests ============

def test_write_part_keeps_unknown_fields(store, transcript):
    """Rewriting a part preserves host fields the store does not model."""
    transcript.message("msg_001", "assistant")
    transcript.part("msg_001", "prt_001", "text", text="", time={"start": 1})

    part = store.read_parts("msg_001")[0]
    part.text = "filled"
    store.write_part(part)

    with open(store.part_path("msg_001", "prt_001")) as f:
        data = json.load(f)
    assert data["text"] == "filled"
    assert data["time"] == {"start": 1}
    assert data["type"] == "text"


def test_write_part_requires_message_id(store):
    with pytest.raises(TranscriptError):
        store.write_part(TextPart(id="prt_1", text="x"))


def test_write_message_and_delete_part(store, transcript):
    store.write_message(MessageInfo(id="msg_001", session_id="ses_2", role="user"))
    assert store.read_message("ses_2", "msg_001").role == "user"

    transcript.text("msg_001", "prt_001", "hi")
    assert store.part_exists("msg_001", "prt_001")
    assert store.delete_part("msg_001", "prt_001") is True
    assert store.delete_part("msg_001", "prt_001") is False


# ============ Lookup Tests ============

def test_find_last_assistant(store, transcript):
    transcript.message("msg_001", "user")
    transcript.message("msg_002", "assistant", providerID="anthropic", modelID="claude-x")
    transcript.message("msg_003", "user")

    last = store.find_last_assistant("ses_1")
    assert last.id == "msg_002"
    assert last.info.model_id == "claude-x"


def test_find_nearest_message_with_fields(store, transcript):
    """Complete agent+model records are preferred over partial ones."""
    transcript.message("msg_001", "user", agent="build", providerID="anthropic", modelID="claude-x")
    transcript.message("msg_002", "user", agent="build")
    transcript.message("msg_003", "assistant")

    assert store.find_nearest_message_with_fields("ses_1").id == "msg_001"


def test_find_nearest_message_partial_fallback(store, transcript):
    transcript.message("msg_001", "user")
    transcript.message("msg_002", "user", agent="build")

    assert store.find_nearest_message_with_fields("ses_1").id == "msg_002"


# ============ id_between Tests ============

@pytest.mark.parametrize(
    "lo,hi",
    [
        ("prt_001", "prt_002"),
        (None, "prt_001"),
        ("prt_001", "prt_0015"),
        ("prt_009", "prt_010"),
        (None, "prt_a"),
    ],
)
def test_id_between_sorts_inside_bounds(lo, hi):
    new_id = id_between(lo, hi, "text")
    assert new_id < hi
    if lo is not None:
        assert lo < new_id


def test_id_between_open_upper_bound():
    assert id_between("prt_005", None, "text") > "prt_005"
    assert id_between(None, None, "text") == "prt~text"
