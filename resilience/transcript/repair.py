"""Scans and idempotent repairs over the stored transcript.

Finders return message ids; mutations return True only when something was
written. Calling a mutation twice never changes the result of the first call,
and parts other than the target are never reordered or removed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace

from resilience.transcript.parts import (
    TOOL_STATUS_COMPLETED,
    TOOL_STATUS_PENDING,
    TOOL_STATUS_RUNNING,
    Part,
    PersistedMessage,
    TextPart,
    ThinkingPart,
    ToolPart,
    ToolResultPart,
    ToolUsePart,
    is_thinking_part,
    is_tool_part,
)
from resilience.transcript.store import TranscriptStore, id_between

logger = logging.getLogger(__name__)

PLACEHOLDER_TEXT = "[user interrupted]"
TRUNCATED_MARKER = "[Tool output truncated to recover context space]"

# Rough chars-per-token ratio used for size estimates
CHARS_PER_TOKEN = 4


@dataclass
class ToolOutputRef:
    """Location and size of one completed tool output."""

    message_id: str
    part_id: str
    tool: str
    size: int


def estimate_tokens(text: str) -> int:
    return len(text) // CHARS_PER_TOKEN


def _part_size(part: Part) -> int:
    if isinstance(part, (TextPart, ThinkingPart)):
        return len(part.text)
    if isinstance(part, ToolPart):
        return len(str(part.state.input)) + len(part.state.output or "")
    if isinstance(part, ToolUsePart):
        return len(str(part.input))
    if isinstance(part, ToolResultPart):
        return len(str(part.content))
    return 0


class TranscriptRepair:
    """Repair operations bound to one transcript store.

    Example:
        repair = TranscriptRepair(store)
        for message_id in repair.find_empty_messages("ses_1"):
            repair.inject_text_part("ses_1", message_id, PLACEHOLDER_TEXT)

    """

    def __init__(self, store: TranscriptStore):
        self.store = store

    # ------------------------------------------------------------------
    # Finders
    # ------------------------------------------------------------------

    def find_messages_with_empty_text_parts(self, session_id: str) -> list[str]:
        return [
            msg.id
            for msg in self.store.read_messages(session_id)
            if any(isinstance(p, TextPart) and p.is_empty for p in msg.parts)
        ]

    def find_messages_with_thinking_blocks(self, session_id: str) -> list[str]:
        return [
            msg.id
            for msg in self.store.read_messages(session_id)
            if msg.role == "assistant" and any(is_thinking_part(p) for p in msg.parts)
        ]

    def find_messages_with_thinking_only(self, session_id: str) -> list[str]:
        """Assistant messages whose only parts are thinking blocks."""
        result = []
        for msg in self.store.read_messages(session_id):
            if msg.role != "assistant" or not msg.parts:
                continue
            has_thinking = any(is_thinking_part(p) for p in msg.parts)
            if has_thinking and not msg.has_content():
                result.append(msg.id)
        return result

    def find_messages_with_orphan_thinking(self, session_id: str) -> list[str]:
        """Assistant messages whose first part is not a thinking block."""
        return [
            msg.id
            for msg in self.store.read_messages(session_id)
            if msg.role == "assistant" and msg.parts and not is_thinking_part(msg.parts[0])
        ]

    def find_empty_messages(self, session_id: str) -> list[str]:
        return [msg.id for msg in self.store.read_messages(session_id) if not msg.has_content()]

    def find_empty_message_by_index(self, session_id: str, index: int) -> str | None:
        """Empty message at a provider ordinal (tolerates an off-by-one)."""
        messages = self.store.read_messages(session_id)
        for candidate in (index, index - 1):
            if 0 <= candidate < len(messages) and not messages[candidate].has_content():
                return messages[candidate].id
        return None

    def find_message_by_index_needing_thinking(self, session_id: str, index: int) -> str | None:
        messages = self.store.read_messages(session_id)
        if not 0 <= index < len(messages):
            return None
        msg = messages[index]
        if msg.role != "assistant":
            return None
        if msg.parts and is_thinking_part(msg.parts[0]):
            return None
        return msg.id

    def find_tool_use_ids_without_result(self, session_id: str) -> list[str]:
        """Tool-call ids lacking a paired result, oldest first."""
        messages = self.store.read_messages(session_id)
        answered = {
            p.tool_use_id for msg in messages for p in msg.parts if isinstance(p, ToolResultPart)
        }
        missing = []
        for msg in messages:
            for part in msg.parts:
                if isinstance(part, ToolUsePart) and part.id not in answered:
                    missing.append(part.id)
                elif isinstance(part, ToolPart) and part.state.status in (TOOL_STATUS_PENDING, TOOL_STATUS_RUNNING):
                    if part.call_id not in answered:
                        missing.append(part.call_id)
        return missing

    def find_largest_tool_outputs(self, session_id: str, limit: int | None = None) -> list[ToolOutputRef]:
        """Completed, not yet truncated tool outputs, largest first."""
        refs = []
        for msg in self.store.read_messages(session_id):
            for part in msg.parts:
                if not isinstance(part, ToolPart) or part.state.status != TOOL_STATUS_COMPLETED:
                    continue
                output = part.state.output or ""
                if not output or output == TRUNCATED_MARKER:
                    continue
                refs.append(ToolOutputRef(msg.id, part.id, part.tool, len(output)))
        refs.sort(key=lambda ref: ref.size, reverse=True)
        return refs[:limit] if limit is not None else refs

    def estimate_session_tokens(self, session_id: str) -> int:
        total = sum(_part_size(p) for msg in self.store.read_messages(session_id) for p in msg.parts)
        return total // CHARS_PER_TOKEN

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def replace_empty_text_parts(self, message_id: str, text: str = PLACEHOLDER_TEXT) -> bool:
        """Fill every empty text part of a message with ``text``."""
        changed = False
        for part in self.store.read_parts(message_id):
            if isinstance(part, TextPart) and part.is_empty:
                self.store.write_part(replace(part, text=text, synthetic=True))
                changed = True
        if not changed:
            logger.debug("[repair] No empty text parts in %s", message_id)
        return changed

    def inject_text_part(self, session_id: str, message_id: str, text: str = PLACEHOLDER_TEXT) -> bool:
        """Add a synthetic text part before the first tool part (else at the end).

        No-op when the message already has non-empty text.
        """
        parts = self.store.read_parts(message_id)
        if any(isinstance(p, TextPart) and not p.is_empty for p in parts):
            logger.debug("[repair] %s already has text", message_id)
            return False

        tool_index = next((i for i, p in enumerate(parts) if is_tool_part(p)), None)
        if tool_index is None:
            lo = parts[-1].id if parts else None
            hi = None
        else:
            lo = parts[tool_index - 1].id if tool_index > 0 else None
            hi = parts[tool_index].id

        part = TextPart(
            id=id_between(lo, hi, "text"),
            message_id=message_id,
            session_id=session_id,
            text=text,
            synthetic=True,
        )
        self.store.write_part(part)
        logger.info("[repair] Injected text part into %s", message_id)
        return True

    def prepend_thinking_part(self, session_id: str, message_id: str) -> bool:
        """Make a thinking block the first part of a message."""
        parts = self.store.read_parts(message_id)
        if parts and is_thinking_part(parts[0]):
            return False
        part = ThinkingPart(
            id=id_between(None, parts[0].id if parts else None, "thinking"),
            message_id=message_id,
            session_id=session_id,
            synthetic=True,
        )
        self.store.write_part(part)
        logger.info("[repair] Prepended thinking part to %s", message_id)
        return True

    def strip_thinking_parts(self, message_id: str) -> bool:
        removed = 0
        for part in self.store.read_parts(message_id):
            if is_thinking_part(part) and self.store.delete_part(message_id, part.id):
                removed += 1
        if removed:
            logger.info("[repair] Stripped %d thinking part(s) from %s", removed, message_id)
        return removed > 0

    def fill_message(self, session_id: str, message_id: str, text: str = PLACEHOLDER_TEXT) -> bool:
        """Fill empty text parts, or inject one if the message has none."""
        if self.replace_empty_text_parts(message_id, text):
            return True
        return self.inject_text_part(session_id, message_id, text)

    def repair_empty_content(self, session_id: str, message_index: int | None = None) -> bool:
        """Give empty messages placeholder text.

        Empty text parts and thinking-only messages are always filled. If
        ``message_index`` resolves to an empty message only that one is
        targeted, else every empty message gets a placeholder.

        Returns:
            True if anything was written

        """
        fixed = False
        for message_id in self.find_messages_with_empty_text_parts(session_id):
            fixed = self.replace_empty_text_parts(message_id) or fixed
        for message_id in self.find_messages_with_thinking_only(session_id):
            fixed = self.inject_text_part(session_id, message_id) or fixed

        if message_index is not None:
            target = self.find_empty_message_by_index(session_id, message_index)
            if target and self.fill_message(session_id, target):
                return True

        for message_id in self.find_empty_messages(session_id):
            fixed = self.fill_message(session_id, message_id) or fixed
        return fixed

    def truncate_tool_output(self, message_id: str, part_id: str) -> bool:
        """Replace a completed tool output with the truncation marker."""
        part = next((p for p in self.store.read_parts(message_id) if p.id == part_id), None)
        if not isinstance(part, ToolPart):
            logger.debug("[repair] Tool part %s/%s not found", message_id, part_id)
            return False
        if part.state.status != TOOL_STATUS_COMPLETED or part.state.output == TRUNCATED_MARKER:
            return False

        extra = dict(part.state.extra)
        timing = dict(extra.get("time") or {})
        timing["compacted"] = int(time.time() * 1000)
        extra["time"] = timing
        state = replace(part.state, output=TRUNCATED_MARKER, extra=extra)
        self.store.write_part(replace(part, state=state))
        return True


def sanitize_empty_messages(
    messages: list[PersistedMessage],
    placeholder: str = PLACEHOLDER_TEXT,
) -> list[PersistedMessage]:
    """Fill empty non-user messages with a placeholder before building a request.

    Pure: the input list and its messages are left untouched. The final
    assistant message is skipped since it may still be streaming.
    """
    result = []
    last_index = len(messages) - 1
    for i, msg in enumerate(messages):
        if msg.role == "user" or msg.has_content() or (i == last_index and msg.role == "assistant"):
            result.append(msg)
            continue

        parts = list(msg.parts)
        empty_index = next((j for j, p in enumerate(parts) if isinstance(p, TextPart)), None)
        if empty_index is not None:
            parts[empty_index] = replace(parts[empty_index], text=placeholder, synthetic=True)
        else:
            parts.append(
                TextPart(
                    id=id_between(parts[-1].id if parts else None, None, "text"),
                    message_id=msg.id,
                    session_id=msg.info.session_id,
                    text=placeholder,
                    synthetic=True,
                )
            )
        result.append(PersistedMessage(info=msg.info, parts=parts))
    return result
