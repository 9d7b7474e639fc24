"""Typed transcript model: message info, parts, and their JSON mapping.

Parts form a closed set of dataclasses (``Part``). Repair and pruning code
dispatches on the concrete class; any part type the host adds later is kept
as ``UnknownPart`` and written back untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

THINKING_TYPES = ("thinking", "reasoning", "redacted_thinking")
META_TYPES = ("step-start", "step-finish")
TOOL_TYPES = ("tool", "tool_use", "tool_result")

TOOL_STATUS_PENDING = "pending"
TOOL_STATUS_RUNNING = "running"
TOOL_STATUS_COMPLETED = "completed"
TOOL_STATUS_ERROR = "error"


@dataclass
class BasePart:
    """Fields shared by every stored part."""

    id: str
    message_id: str = ""
    session_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    TYPE: ClassVar[str] = ""

    @property
    def type(self) -> str:
        return self.TYPE

    def _base_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update({"id": self.id, "messageID": self.message_id, "sessionID": self.session_id, "type": self.type})
        return data


@dataclass
class TextPart(BasePart):
    text: str = ""
    synthetic: bool = False

    TYPE: ClassVar[str] = "text"

    @property
    def is_empty(self) -> bool:
        return not self.text or not self.text.strip()

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data["text"] = self.text
        if self.synthetic:
            data["synthetic"] = True
        return data


@dataclass
class ThinkingPart(BasePart):
    text: str = ""
    synthetic: bool = False
    part_type: str = "thinking"

    TYPE: ClassVar[str] = "thinking"

    @property
    def type(self) -> str:
        return self.part_type

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data["thinking" if self.part_type == "thinking" else "text"] = self.text
        if self.synthetic:
            data["synthetic"] = True
        return data


@dataclass
class ToolUsePart(BasePart):
    """Provider-format tool call; ``id`` doubles as the tool_use id."""

    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)

    TYPE: ClassVar[str] = "tool_use"

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data.update({"name": self.name, "input": self.input})
        return data


@dataclass
class ToolResultPart(BasePart):
    tool_use_id: str = ""
    content: Any = ""

    TYPE: ClassVar[str] = "tool_result"

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data.update({"tool_use_id": self.tool_use_id, "content": self.content})
        return data


@dataclass
class ToolState:
    status: str = TOOL_STATUS_PENDING
    input: dict[str, Any] = field(default_factory=dict)
    output: str | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update({"status": self.status, "input": self.input})
        if self.output is not None:
            data["output"] = self.output
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> "ToolState":
        data = dict(data or {})
        raw_input = data.pop("input", None)
        return cls(
            status=data.pop("status", TOOL_STATUS_PENDING),
            input=raw_input if isinstance(raw_input, dict) else {},
            output=data.pop("output", None),
            error=data.pop("error", None),
            extra=data,
        )


@dataclass
class ToolPart(BasePart):
    """Host-format tool call carrying its own execution state."""

    call_id: str = ""
    tool: str = ""
    state: ToolState = field(default_factory=ToolState)

    TYPE: ClassVar[str] = "tool"

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data.update({"callID": self.call_id, "tool": self.tool, "state": self.state.to_dict()})
        return data


@dataclass
class StepStartPart(BasePart):
    """Turn boundary marker."""

    TYPE: ClassVar[str] = "step-start"

    def to_dict(self) -> dict[str, Any]:
        return self._base_dict()


@dataclass
class UnknownPart(BasePart):
    part_type: str = ""

    @property
    def type(self) -> str:
        return self.part_type

    def to_dict(self) -> dict[str, Any]:
        return self._base_dict()


Part = Union[TextPart, ThinkingPart, ToolUsePart, ToolResultPart, ToolPart, StepStartPart, UnknownPart]


def part_from_dict(data: dict[str, Any]) -> Part:
    """Build a typed part from its stored JSON form."""
    data = dict(data)
    part_type = data.pop("type", "")
    common = {
        "id": str(data.pop("id", "")),
        "message_id": data.pop("messageID", ""),
        "session_id": data.pop("sessionID", ""),
    }

    if part_type == "text":
        return TextPart(
            text=data.pop("text", "") or "",
            synthetic=bool(data.pop("synthetic", False)),
            extra=data,
            **common,
        )
    if part_type in THINKING_TYPES:
        text = data.pop("thinking", None)
        if text is None:
            text = data.pop("text", "")
        return ThinkingPart(
            text=text or "",
            synthetic=bool(data.pop("synthetic", False)),
            part_type=part_type,
            extra=data,
            **common,
        )
    if part_type == "tool_use":
        raw_input = data.pop("input", None)
        return ToolUsePart(
            name=data.pop("name", ""),
            input=raw_input if isinstance(raw_input, dict) else {},
            extra=data,
            **common,
        )
    if part_type == "tool_result":
        tool_use_id = data.pop("tool_use_id", None) or data.pop("toolUseId", "")
        return ToolResultPart(tool_use_id=tool_use_id, content=data.pop("content", ""), extra=data, **common)
    if part_type == "tool":
        return ToolPart(
            call_id=data.pop("callID", ""),
            tool=data.pop("tool", ""),
            state=ToolState.from_dict(data.pop("state", None)),
            extra=data,
            **common,
        )
    if part_type == "step-start":
        return StepStartPart(extra=data, **common)
    return UnknownPart(part_type=part_type, extra=data, **common)


def part_has_content(part: Part) -> bool:
    """True for parts that count as message content for the provider."""
    if isinstance(part, TextPart):
        return not part.is_empty
    return isinstance(part, (ToolPart, ToolUsePart, ToolResultPart))


def is_tool_part(part: Part) -> bool:
    return part.type in TOOL_TYPES


def is_thinking_part(part: Part) -> bool:
    return isinstance(part, ThinkingPart)


@dataclass
class MessageInfo:
    """Stored message header.

    Attributes:
        id: Message id (monotonic, so sorting by id is chronological)
        session_id: Owning session
        role: "user" or "assistant"
        parent_id: Id of the user message an assistant message answers
        error: Provider error attached to a failed assistant message
        agent: Agent name that produced / will answer the message
        provider_id: Provider of the model used
        model_id: Model used
        summary: True when the message is a compaction summary
        tools: Tool permission map sent with the message (``{"write": False}``)

    """

    id: str
    session_id: str = ""
    role: str = ""
    parent_id: str | None = None
    error: Any = None
    agent: str | None = None
    provider_id: str | None = None
    model_id: str | None = None
    summary: bool = False
    tools: dict[str, bool] | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MessageInfo":
        model = data.get("model") if isinstance(data.get("model"), dict) else {}
        tools = data.get("tools")
        return cls(
            id=str(data.get("id", "")),
            session_id=data.get("sessionID", ""),
            role=data.get("role", ""),
            parent_id=data.get("parentID"),
            error=data.get("error"),
            agent=data.get("agent") or data.get("mode"),
            provider_id=data.get("providerID") or model.get("providerID"),
            model_id=data.get("modelID") or model.get("modelID"),
            summary=data.get("summary") is True,
            tools=tools if isinstance(tools, dict) else None,
            raw=dict(data),
        )


@dataclass
class PersistedMessage:
    info: MessageInfo
    parts: list[Part] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.info.id

    @property
    def role(self) -> str:
        return self.info.role

    def has_content(self) -> bool:
        return any(part_has_content(p) for p in self.parts)

    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart) and p.text)


def message_from_api(data: dict[str, Any]) -> PersistedMessage:
    """Build a message from the conversation API shape ``{info, parts}``."""
    info = MessageInfo.from_dict(data.get("info") or {})
    parts = [part_from_dict(p) for p in data.get("parts") or [] if isinstance(p, dict)]
    return PersistedMessage(info=info, parts=parts)
