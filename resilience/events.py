"""Typed view of the host's session lifecycle events.

The host delivers ``{"type": ..., "properties": {...}}`` dicts whose shape
differs per event type; ``SessionEvent`` resolves the session id, role and
error once so components don't each dig through the property bag.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

SESSION_CREATED = "session.created"
SESSION_DELETED = "session.deleted"
SESSION_ERROR = "session.error"
SESSION_IDLE = "session.idle"
MESSAGE_UPDATED = "message.updated"
MESSAGE_PART_UPDATED = "message.part.updated"
TOOL_EXECUTE_BEFORE = "tool.execute.before"
TOOL_EXECUTE_AFTER = "tool.execute.after"

# Events that show the session is producing or receiving content
ACTIVITY_EVENTS = frozenset({MESSAGE_UPDATED, MESSAGE_PART_UPDATED, TOOL_EXECUTE_BEFORE, TOOL_EXECUTE_AFTER})


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


@dataclass
class SessionEvent:
    """One lifecycle event.

    Attributes:
        type: Event type (``session.idle``, ``message.updated``, ...)
        session_id: Session the event belongs to (None if not resolvable)
        properties: Raw property bag as delivered by the host

    """

    type: str
    session_id: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def info(self) -> dict[str, Any]:
        return _as_dict(self.properties.get("info"))

    @property
    def part(self) -> dict[str, Any]:
        return _as_dict(self.properties.get("part"))

    @property
    def role(self) -> str | None:
        return self.info.get("role")

    @property
    def error(self) -> Any:
        if self.type == MESSAGE_UPDATED:
            return self.info.get("error")
        return self.properties.get("error")

    @property
    def message_id(self) -> str | None:
        if self.type == MESSAGE_UPDATED:
            return self.info.get("id")
        if self.type == MESSAGE_PART_UPDATED:
            return self.part.get("messageID")
        return self.properties.get("messageID")

    @property
    def parent_id(self) -> str | None:
        return self.info.get("parentID")

    @property
    def provider_id(self) -> str | None:
        model = _as_dict(self.info.get("model"))
        return self.info.get("providerID") or model.get("providerID")

    @property
    def model_id(self) -> str | None:
        model = _as_dict(self.info.get("model"))
        return self.info.get("modelID") or model.get("modelID")

    @property
    def is_summary(self) -> bool:
        return self.info.get("summary") is True

    @property
    def transcript_path(self) -> str | None:
        path = self.properties.get("transcriptPath")
        return path if isinstance(path, str) and path else None

    @classmethod
    def from_host(cls, event: Any) -> "SessionEvent | None":
        """Parse a host event dict; None for anything without a type."""
        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            return None
        props = _as_dict(event.get("properties"))
        info = _as_dict(props.get("info"))
        part = _as_dict(props.get("part"))
        event_type = event["type"]

        if event_type in (SESSION_CREATED, SESSION_DELETED):
            session_id = info.get("id") or props.get("sessionID")
        elif event_type == MESSAGE_UPDATED:
            session_id = info.get("sessionID") or props.get("sessionID")
        elif event_type == MESSAGE_PART_UPDATED:
            session_id = part.get("sessionID") or props.get("sessionID")
        else:
            session_id = props.get("sessionID")

        return cls(type=event_type, session_id=session_id, properties=props)


def make_event(event_type: str, **properties: Any) -> dict[str, Any]:
    """Build a host-shaped event dict (used by the CLI and tests)."""
    return {"type": event_type, "properties": properties}
