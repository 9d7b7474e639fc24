"""Persisted transcript: typed parts, file store and repair operations."""

from resilience.transcript.parts import (
    MessageInfo,
    Part,
    PersistedMessage,
    StepStartPart,
    TextPart,
    ThinkingPart,
    ToolPart,
    ToolResultPart,
    ToolState,
    ToolUsePart,
    UnknownPart,
    part_from_dict,
)
from resilience.transcript.repair import (
    PLACEHOLDER_TEXT,
    TRUNCATED_MARKER,
    TranscriptRepair,
    sanitize_empty_messages,
)
from resilience.transcript.store import TranscriptStore

__all__ = [
    "MessageInfo",
    "Part",
    "PersistedMessage",
    "StepStartPart",
    "TextPart",
    "ThinkingPart",
    "ToolPart",
    "ToolResultPart",
    "ToolState",
    "ToolUsePart",
    "UnknownPart",
    "part_from_dict",
    "PLACEHOLDER_TEXT",
    "TRUNCATED_MARKER",
    "TranscriptRepair",
    "TranscriptStore",
    "sanitize_empty_messages",
]
