"""Shared fixtures: on-disk transcript builder, fake conversation client, registry reset."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from resilience.session_registry import reset_registry
from resilience.transcript.store import TranscriptStore


class TranscriptBuilder:
    """Writes message/part JSON in the host layout, the way the host would."""

    def __init__(self, store: TranscriptStore, session_id: str = "ses_1"):
        self.store = store
        self.session_id = session_id

    def _dump(self, path: Path, data: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data), encoding="utf-8")

    def message(self, message_id: str, role: str, session_id: str | None = None, **info) -> str:
        session_id = session_id or self.session_id
        data = {"id": message_id, "sessionID": session_id, "role": role, **info}
        self._dump(self.store.message_root / session_id / f"{message_id}.json", data)
        return message_id

    def part(self, message_id: str, part_id: str, part_type: str, **fields) -> str:
        data = {"id": part_id, "messageID": message_id, "sessionID": self.session_id, "type": part_type, **fields}
        self._dump(self.store.part_root / message_id / f"{part_id}.json", data)
        return part_id

    def text(self, message_id: str, part_id: str, text: str) -> str:
        return self.part(message_id, part_id, "text", text=text)

    def thinking(self, message_id: str, part_id: str, text: str = "hmm") -> str:
        return self.part(message_id, part_id, "thinking", thinking=text)

    def step(self, message_id: str, part_id: str) -> str:
        return self.part(message_id, part_id, "step-start")

    def tool(
        self,
        message_id: str,
        part_id: str,
        call_id: str,
        tool: str,
        tool_input: dict | None = None,
        status: str = "completed",
        output: str | None = "ok",
        error: str | None = None,
    ) -> str:
        state = {"status": status, "input": tool_input or {}}
        if output is not None and status == "completed":
            state["output"] = output
        if error is not None:
            state["error"] = error
        return self.part(message_id, part_id, "tool", callID=call_id, tool=tool, state=state)


def make_client(todos=None, messages=None):
    """MagicMock shaped like a ConversationClient with async methods."""
    client = MagicMock()
    client.prompt = AsyncMock(return_value=None)
    client.abort = AsyncMock(return_value=None)
    client.messages = AsyncMock(return_value=messages or [])
    client.todos = AsyncMock(return_value=todos or [])
    client.summarize = AsyncMock(return_value=None)
    client.get_session = AsyncMock(return_value={})
    client.create_session = AsyncMock(return_value={})
    client.show_toast = AsyncMock(return_value=None)
    return client


def toast_titles(client) -> list[str]:
    return [call.args[0] for call in client.show_toast.await_args_list]


def prompt_texts(client) -> list[str]:
    return [call.args[1][0].get("text", "") for call in client.prompt.await_args_list]


@pytest.fixture(autouse=True)
def fresh_registry():
    reset_registry()
    yield
    reset_registry()


@pytest.fixture
def store(tmp_path):
    return TranscriptStore(tmp_path / "storage")


@pytest.fixture
def transcript(store):
    return TranscriptBuilder(store)


@pytest.fixture
def client():
    return make_client()
