"""Dynamic context pruning engine.

Runs the pruning strategies over a session's stored transcript and keeps the
resulting marks in memory:
- Deduplication: identical tool calls, keep the last
- Supersede writes: writes followed by a later read of the same file
- Purge errors: errored calls older than a turn threshold

The transcript itself is never modified; renderers consult ``is_pruned`` or
``filter_pruned`` when building the next request.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from resilience.client import ConversationClient, notify
from resilience.events import SESSION_DELETED, SessionEvent
from resilience.pruning.deduplication import execute_deduplication
from resilience.pruning.purge_errors import execute_purge_errors
from resilience.pruning.state import (
    PRUNED_MARKER,
    PruningConfig,
    PruningResult,
    PruningState,
    count_turns,
)
from resilience.pruning.supersede import execute_supersede_writes
from resilience.transcript.parts import PersistedMessage, ToolPart
from resilience.transcript.store import TranscriptStore

logger = logging.getLogger(__name__)

PRUNING_MODES = ("all", "dedup", "supersede", "purge")


class PruningEngine:
    """Marks tool calls whose output can be dropped from the next request.

    Example:
        engine = PruningEngine(store, client)
        marked = await engine.execute_pruning("ses_1")
        visible = engine.filter_pruned("ses_1", store.read_messages("ses_1"))

    """

    def __init__(
        self,
        store: TranscriptStore,
        client: ConversationClient | None = None,
        config: PruningConfig | None = None,
    ):
        self.store = store
        self.client = client
        self.config = config or PruningConfig()
        self._states: dict[str, PruningState] = {}

    def get_state(self, session_id: str) -> PruningState:
        if session_id not in self._states:
            self._states[session_id] = PruningState()
        return self._states[session_id]

    def is_pruned(self, session_id: str, call_id: str) -> bool:
        state = self._states.get(session_id)
        return bool(state and call_id in state.tool_ids_to_prune)

    def clear(self, session_id: str) -> None:
        self._states.pop(session_id, None)

    async def execute_pruning(self, session_id: str, mode: str = "all") -> int:
        """Run strategies for ``mode`` and return how many calls were newly marked.

        Args:
            session_id: Session to scan
            mode: "all", "dedup", "supersede" or "purge"

        Returns:
            Number of call ids added to the session's marks by this run

        """
        if mode not in PRUNING_MODES:
            raise ValueError(f"Unknown pruning mode: {mode!r} (expected one of {', '.join(PRUNING_MODES)})")

        messages = self.store.read_messages(session_id)
        state = self.get_state(session_id)
        state.current_turn = count_turns(messages)
        before = len(state.tool_ids_to_prune)
        result = PruningResult()
        cfg = self.config

        logger.info("[pruning] Starting %s pass for %s at turn %d", mode, session_id, state.current_turn)

        if mode in ("all", "dedup") and cfg.deduplication_enabled:
            result.deduplication, saved = execute_deduplication(messages, state, cfg)
            result.tokens_saved += saved
        if mode in ("all", "supersede") and cfg.supersede_enabled:
            result.supersede_writes, saved = execute_supersede_writes(messages, state, cfg)
            result.tokens_saved += saved
        if mode in ("all", "purge") and cfg.purge_errors_enabled:
            result.purge_errors, saved = execute_purge_errors(messages, state, cfg)
            result.tokens_saved += saved

        result.items_pruned = len(state.tool_ids_to_prune) - before
        state.last_result = result
        logger.info(
            "[pruning] Done for %s: %d new mark(s), ~%d tokens (dedup=%d supersede=%d purge=%d)",
            session_id,
            result.items_pruned,
            result.tokens_saved,
            result.deduplication,
            result.supersede_writes,
            result.purge_errors,
        )

        if result.items_pruned > 0:
            await self._notify(result)
        return result.items_pruned

    def filter_pruned(self, session_id: str, messages: list[PersistedMessage]) -> list[PersistedMessage]:
        """Copy of ``messages`` with pruned tool outputs replaced by a marker.

        Tool parts stay in place so call/result pairing is preserved.
        """
        state = self._states.get(session_id)
        if not state or not state.tool_ids_to_prune:
            return list(messages)

        filtered = []
        for msg in messages:
            parts = []
            for part in msg.parts:
                if isinstance(part, ToolPart) and part.call_id in state.tool_ids_to_prune:
                    part = replace(part, state=replace(part.state, output=PRUNED_MARKER))
                parts.append(part)
            filtered.append(PersistedMessage(info=msg.info, parts=parts))
        return filtered

    async def handle_event(self, event: SessionEvent) -> None:
        if event.type == SESSION_DELETED and event.session_id:
            self.clear(event.session_id)

    async def _notify(self, result: PruningResult) -> None:
        if self.client is None or self.config.notification == "off":
            return
        message = f"Pruned {result.items_pruned} tool outputs (~{round(result.tokens_saved / 1000)}k tokens)"
        if self.config.notification == "detailed":
            message += (
                f". Dedup: {result.deduplication}, Supersede: {result.supersede_writes}, "
                f"Purge: {result.purge_errors}"
            )
        await notify(self.client, "Dynamic Context Pruning", message, "success", 3000)
