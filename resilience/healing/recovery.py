"""Session recovery for structurally invalid transcripts.

Handles provider errors caused by the transcript shape rather than its size:
- tool_result_missing: answer dangling tool calls with cancelled results
- thinking_block_order: prepend a thinking block where one is required
- thinking_disabled_violation: strip thinking blocks and resume

The session is aborted first, repaired, then resumed. Continuation nudges are
suppressed for the whole repair via ``mark_recovering``/``mark_recovery_complete``.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from resilience.client import ConversationClient, model_ref, notify, text_part
from resilience.events import MESSAGE_UPDATED, SessionEvent
from resilience.healing.classifier import ErrorClassifier, ParsedRecoveryError, RecoveryErrorKind
from resilience.transcript.parts import MessageInfo, Part, PersistedMessage, ToolPart, ToolUsePart
from resilience.transcript.repair import TranscriptRepair
from resilience.transcript.store import TranscriptStore

logger = logging.getLogger(__name__)

RECOVERY_RESUME_TEXT = "[session recovered - continuing previous task]"
CANCELLED_TOOL_RESULT = "Operation cancelled by user (ESC pressed)"

TOAST_TITLES = {
    RecoveryErrorKind.TOOL_RESULT_MISSING: "Tool Crash Recovery",
    RecoveryErrorKind.THINKING_BLOCK_ORDER: "Thinking Block Recovery",
    RecoveryErrorKind.THINKING_DISABLED_VIOLATION: "Thinking Strip Recovery",
}
TOAST_MESSAGES = {
    RecoveryErrorKind.TOOL_RESULT_MISSING: "Injecting cancelled tool results...",
    RecoveryErrorKind.THINKING_BLOCK_ORDER: "Fixing message structure...",
    RecoveryErrorKind.THINKING_DISABLED_VIOLATION: "Stripping thinking blocks...",
}


class RecoveryListener(Protocol):
    def mark_recovering(self, session_id: str) -> None: ...

    def mark_recovery_complete(self, session_id: str) -> None: ...


def tool_call_ids(parts: list[Part]) -> list[str]:
    """Tool-call ids of a message (provider format first, host format as fallback)."""
    ids = [p.id for p in parts if isinstance(p, ToolUsePart) and p.id]
    if not ids:
        ids = [p.call_id for p in parts if isinstance(p, ToolPart) and p.call_id]
    return ids


def _last_user(messages: list[PersistedMessage]) -> PersistedMessage | None:
    for msg in reversed(messages):
        if msg.role == "user":
            return msg
    return None


class SessionRecovery:
    """Repairs a session after a structural provider error.

    Example:
        recovery = SessionRecovery(store, client, listeners=[todo_scheduler])
        await recovery.handle_event(event)  # message.updated with error

    """

    def __init__(
        self,
        store: TranscriptStore,
        client: ConversationClient,
        classifier: ErrorClassifier | None = None,
        listeners: list[RecoveryListener] | None = None,
    ):
        self.store = store
        self.repair = TranscriptRepair(store)
        self.client = client
        self.classifier = classifier or ErrorClassifier()
        self.listeners = list(listeners or [])
        self._processing: set[str] = set()

    def add_listener(self, listener: RecoveryListener) -> None:
        self.listeners.append(listener)

    def is_recoverable_error(self, error: Any) -> bool:
        parsed = self.classifier.classify(error)
        return bool(parsed and parsed.is_structural)

    async def handle_event(self, event: SessionEvent) -> None:
        if event.type == MESSAGE_UPDATED and event.role == "assistant" and event.error:
            await self.handle_session_recovery(MessageInfo.from_dict(event.info))

    async def handle_session_recovery(self, info: MessageInfo) -> bool:
        """Run the repair for a failed assistant message.

        Returns:
            True if the transcript was repaired (and the session resumed)

        """
        if info.role != "assistant" or not info.error:
            return False
        parsed = self.classifier.classify(info.error, info.provider_id, info.model_id)
        if parsed is None or not parsed.is_structural:
            return False

        session_id = info.session_id
        message_id = info.id
        if not session_id or not message_id or message_id in self._processing:
            return False
        self._processing.add(message_id)

        try:
            for listener in self.listeners:
                listener.mark_recovering(session_id)

            try:
                await self.client.abort(session_id)
            except Exception as e:
                logger.debug("[recovery] Abort failed for %s: %s", session_id, e)

            messages = await self.client.messages(session_id)
            failed = next((m for m in messages if m.id == message_id), None)
            if failed is None:
                logger.warning("[recovery] Failed message %s not found in %s", message_id, session_id)
                return False

            await notify(self.client, TOAST_TITLES[parsed.kind], TOAST_MESSAGES[parsed.kind], "warning")

            if parsed.kind == RecoveryErrorKind.TOOL_RESULT_MISSING:
                return await self._recover_tool_result_missing(session_id, failed)

            if parsed.kind == RecoveryErrorKind.THINKING_BLOCK_ORDER:
                success = self._recover_thinking_block_order(session_id, parsed)
            else:
                success = self._recover_thinking_disabled(session_id)
            if success:
                await self._resume(session_id, _last_user(messages))
            return success
        except Exception:
            logger.exception("[recovery] Recovery failed for %s", session_id)
            return False
        finally:
            self._processing.discard(message_id)
            for listener in self.listeners:
                listener.mark_recovery_complete(session_id)

    async def _recover_tool_result_missing(self, session_id: str, failed: PersistedMessage) -> bool:
        parts = failed.parts or self.store.read_parts(failed.id)
        ids = tool_call_ids(parts)
        if not ids:
            return False
        results = [{"type": "tool_result", "tool_use_id": call_id, "content": CANCELLED_TOOL_RESULT} for call_id in ids]
        try:
            await self.client.prompt(session_id, results)
        except Exception as e:
            logger.warning("[recovery] Could not send cancelled tool results for %s: %s", session_id, e)
            return False
        logger.info("[recovery] Answered %d dangling tool call(s) in %s", len(ids), session_id)
        return True

    def _recover_thinking_block_order(self, session_id: str, parsed: ParsedRecoveryError) -> bool:
        if parsed.message_index is not None:
            target = self.repair.find_message_by_index_needing_thinking(session_id, parsed.message_index)
            if target:
                return self.repair.prepend_thinking_part(session_id, target)

        success = False
        for message_id in self.repair.find_messages_with_orphan_thinking(session_id):
            success = self.repair.prepend_thinking_part(session_id, message_id) or success
        return success

    def _recover_thinking_disabled(self, session_id: str) -> bool:
        success = False
        for message_id in self.repair.find_messages_with_thinking_blocks(session_id):
            success = self.repair.strip_thinking_parts(message_id) or success
        return success

    async def _resume(self, session_id: str, last_user: PersistedMessage | None) -> bool:
        agent = last_user.info.agent if last_user else None
        model = model_ref(last_user.info.provider_id, last_user.info.model_id) if last_user else None
        try:
            await self.client.prompt(session_id, [text_part(RECOVERY_RESUME_TEXT)], agent=agent, model=model)
        except Exception as e:
            logger.warning("[recovery] Resume failed for %s: %s", session_id, e)
            return False
        return True
