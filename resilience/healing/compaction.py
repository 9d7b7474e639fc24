"""Compaction orchestrator for context-window failures.

Per-session state machine ``idle -> pending -> compacting -> idle``:
- A classified token-limit / empty-content error marks the session pending
- ``session.idle`` (or the debounced ``session.error`` path) runs compaction
- Recovery escalates from cheapest to most expensive: empty-content repair,
  optional pruning, tool-output truncation, summarization with the current
  model, then summarization with each fallback model
- Exhaustion surfaces a toast and resets the session to idle

At most one compaction runs per session; a run re-checks that its state record
is still current after every await, so ``session.deleted`` mid-run stops it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from resilience import config
from resilience.client import ConversationClient, model_ref, notify, text_part
from resilience.events import MESSAGE_UPDATED, SESSION_DELETED, SESSION_ERROR, SESSION_IDLE, SessionEvent
from resilience.healing.classifier import COMPACTION_KINDS, ErrorClassifier, ParsedRecoveryError, RecoveryErrorKind
from resilience.healing.recovery import RecoveryListener
from resilience.pruning.executor import PruningEngine
from resilience.transcript.repair import CHARS_PER_TOKEN, TranscriptRepair
from resilience.transcript.store import TranscriptStore

logger = logging.getLogger(__name__)

RESUME_TEXT = "Continue"


@dataclass
class CompactionState:
    """Per-session compaction record."""

    pending: bool = False
    compacting: bool = False
    last_error: ParsedRecoveryError | None = None
    retry_count: int = 0
    fallback_index: int = 0
    truncate_attempts: int = 0
    empty_content_attempts: int = 0


class CompactionOrchestrator:
    """Recovers sessions that overflowed the model context window.

    Example:
        orchestrator = CompactionOrchestrator(store, client)
        await orchestrator.handle_event(event)  # from the dispatcher
        await orchestrator.execute_compaction("ses_1", ("anthropic", "claude-opus-4-5"))

    """

    def __init__(
        self,
        store: TranscriptStore,
        client: ConversationClient,
        pruning: PruningEngine | None = None,
        classifier: ErrorClassifier | None = None,
        fallback_models: list[tuple[str, str]] | None = None,
        debounce_ms: int = config.COMPACT_DEBOUNCE_MS,
        retry_delay_ms: int = config.COMPACT_RETRY_DELAY_MS,
        max_retries: int = config.MAX_COMPACT_RETRIES,
        max_truncate_attempts: int = config.MAX_TRUNCATE_ATTEMPTS,
        max_empty_content_attempts: int = config.MAX_EMPTY_CONTENT_ATTEMPTS,
        target_ratio: float = config.TRUNCATE_TARGET_RATIO,
        listeners: list[RecoveryListener] | None = None,
    ):
        self.store = store
        self.repair = TranscriptRepair(store)
        self.client = client
        self.pruning = pruning
        self.classifier = classifier or ErrorClassifier()
        self.fallback_models = list(config.COMPACT_FALLBACK_MODELS if fallback_models is None else fallback_models)
        self.debounce_ms = debounce_ms
        self.retry_delay_ms = retry_delay_ms
        self.max_retries = max_retries
        self.max_truncate_attempts = max_truncate_attempts
        self.max_empty_content_attempts = max_empty_content_attempts
        self.target_ratio = target_ratio
        self.listeners = list(listeners or [])
        self._states: dict[str, CompactionState] = {}
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_state(self, session_id: str) -> CompactionState | None:
        return self._states.get(session_id)

    def _ensure_state(self, session_id: str) -> CompactionState:
        if session_id not in self._states:
            self._states[session_id] = CompactionState()
        return self._states[session_id]

    def _is_current(self, session_id: str, state: CompactionState) -> bool:
        return self._states.get(session_id) is state

    def clear(self, session_id: str) -> None:
        self._states.pop(session_id, None)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def handle_event(self, event: SessionEvent) -> None:
        session_id = event.session_id
        if not session_id:
            return

        if event.type == SESSION_DELETED:
            self.clear(session_id)
        elif event.type == SESSION_ERROR:
            await self._on_session_error(session_id, event)
        elif event.type == MESSAGE_UPDATED:
            if event.role == "assistant" and event.error:
                self._record_error(session_id, event.error, event.provider_id, event.model_id)
        elif event.type == SESSION_IDLE:
            await self._on_idle(session_id)

    def _record_error(
        self,
        session_id: str,
        error,
        provider_id: str | None,
        model_id: str | None,
    ) -> ParsedRecoveryError | None:
        parsed = self.classifier.classify(error, provider_id, model_id)
        if parsed is None or parsed.kind not in COMPACTION_KINDS:
            return None
        state = self._ensure_state(session_id)
        state.pending = True
        state.last_error = parsed
        logger.info("[compaction] %s pending (%s)", session_id, parsed.kind.value)
        return parsed

    async def _on_session_error(self, session_id: str, event: SessionEvent) -> None:
        last = self.store.find_last_assistant(session_id)
        provider_id = last.info.provider_id if last else None
        model_id = last.info.model_id if last else None

        parsed = self._record_error(session_id, event.error, provider_id, model_id)
        if parsed is None:
            return
        state = self._states[session_id]
        if state.compacting:
            logger.debug("[compaction] %s already compacting, error recorded for next cycle", session_id)
            return

        await notify(self.client, "Context Limit Hit", "Truncating large tool outputs and recovering...", "warning")
        hint = (parsed.provider_id or provider_id, parsed.model_id or model_id)
        task = asyncio.create_task(self.execute_compaction(session_id, hint))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _on_idle(self, session_id: str) -> None:
        state = self._states.get(session_id)
        if state is None or not state.pending or state.compacting:
            return

        last = self.store.find_last_assistant(session_id)
        if last is not None and last.info.summary:
            logger.info("[compaction] %s last message is a summary, clearing pending", session_id)
            state.pending = False
            return

        error = state.last_error
        provider_id = (error.provider_id if error else None) or (last.info.provider_id if last else None)
        model_id = (error.model_id if error else None) or (last.info.model_id if last else None)

        await notify(self.client, "Auto Compact", "Token limit exceeded. Attempting recovery...", "warning")
        await self.execute_compaction(session_id, (provider_id, model_id))

    # ------------------------------------------------------------------
    # Procedure
    # ------------------------------------------------------------------

    async def execute_compaction(
        self,
        session_id: str,
        model_hint: tuple[str | None, str | None] | None = None,
    ) -> None:
        """Run the recovery procedure once; no-op if one is already running."""
        state = self._ensure_state(session_id)
        if state.compacting:
            return
        state.compacting = True
        # Continuation schedulers stay quiet until the run settles
        for listener in self.listeners:
            listener.mark_recovering(session_id)
        try:
            await asyncio.sleep(self.debounce_ms / 1000)
            if not self._is_current(session_id, state):
                return
            await self._run(session_id, state, model_hint or (None, None))
        except Exception:
            logger.exception("[compaction] Unexpected failure for %s", session_id)
            if self._is_current(session_id, state):
                self.clear(session_id)
        finally:
            state.compacting = False
            for listener in self.listeners:
                listener.mark_recovery_complete(session_id)

    async def _run(self, session_id: str, state: CompactionState, model_hint: tuple[str | None, str | None]) -> None:
        error = state.last_error
        provider_id, model_id = model_hint
        if error is not None:
            provider_id = provider_id or error.provider_id
            model_id = model_id or error.model_id
        if not provider_id or not model_id:
            last = self.store.find_last_assistant(session_id)
            if last is not None:
                provider_id = provider_id or last.info.provider_id
                model_id = model_id or last.info.model_id

        if error is not None and error.kind == RecoveryErrorKind.NON_EMPTY_CONTENT_VIOLATION:
            await self._recover_empty_content(session_id, state, error)
            return

        if self.pruning is not None:
            try:
                await self.pruning.execute_pruning(session_id, "all")
            except Exception as e:
                logger.warning("[compaction] Pruning pass failed for %s: %s", session_id, e)

        if await self._truncate(session_id, state, error):
            return
        if not self._is_current(session_id, state):
            return

        if await self._summarize_with_retries(session_id, state, provider_id, model_id):
            return
        if not self._is_current(session_id, state):
            return

        if await self._summarize_with_fallbacks(session_id, state, provider_id, model_id):
            return
        if not self._is_current(session_id, state):
            return

        logger.error("[compaction] All compaction attempts exhausted for %s", session_id)
        await notify(
            self.client,
            "Auto Compact Failed",
            "All recovery attempts failed. Please start a new session.",
            "error",
            5000,
        )
        self.clear(session_id)

    async def _recover_empty_content(
        self,
        session_id: str,
        state: CompactionState,
        error: ParsedRecoveryError,
    ) -> None:
        if state.empty_content_attempts >= self.max_empty_content_attempts:
            await notify(
                self.client,
                "Recovery Failed",
                "Max recovery attempts reached. Please start a new session.",
                "error",
                5000,
            )
            self.clear(session_id)
            return

        state.empty_content_attempts += 1
        fixed = self.repair.repair_empty_content(session_id, error.message_index)
        if not fixed:
            logger.warning("[compaction] No empty message found to repair in %s", session_id)
            await notify(self.client, "Recovery Failed", "Could not locate the empty message.", "error")
            state.pending = False
            return

        await notify(self.client, "Session Repaired", "Fixed empty messages, resuming...", "success")
        state.pending = False
        state.last_error = None
        await self._resume(session_id)

    async def _truncate(self, session_id: str, state: CompactionState, error: ParsedRecoveryError | None) -> bool:
        """Truncate largest tool outputs; True when the session was resumed."""
        if state.truncate_attempts >= self.max_truncate_attempts:
            return False

        overflow_chars = 0
        if error is not None and error.current_tokens and error.max_tokens:
            target_tokens = int(error.max_tokens * self.target_ratio)
            overflow_chars = max(error.current_tokens - target_tokens, 0) * CHARS_PER_TOKEN

        truncated = 0
        for ref in self.repair.find_largest_tool_outputs(session_id):
            if state.truncate_attempts >= self.max_truncate_attempts:
                break
            if truncated and overflow_chars <= 0:
                break
            if self.repair.truncate_tool_output(ref.message_id, ref.part_id):
                state.truncate_attempts += 1
                truncated += 1
                overflow_chars -= ref.size
                logger.info("[compaction] Truncated %s output (%d chars) in %s", ref.tool, ref.size, session_id)

        if not truncated:
            return False

        await notify(self.client, "Truncating Tool Outputs", f"Truncated {truncated} tool output(s), resuming...", "info")
        if not self._is_current(session_id, state):
            return True
        state.pending = False
        state.last_error = None
        state.retry_count = 0
        state.fallback_index = 0
        await self._resume(session_id)
        return True

    async def _summarize_with_retries(
        self,
        session_id: str,
        state: CompactionState,
        provider_id: str | None,
        model_id: str | None,
    ) -> bool:
        if not provider_id or not model_id:
            logger.warning("[compaction] No model known for %s, skipping summarize", session_id)
            return False

        while state.retry_count < self.max_retries:
            state.retry_count += 1
            if await self._summarize(session_id, state, provider_id, model_id):
                return True
            if not self._is_current(session_id, state):
                return False
            if state.retry_count < self.max_retries:
                await asyncio.sleep(self.retry_delay_ms / 1000)
                if not self._is_current(session_id, state):
                    return False
        return False

    async def _summarize_with_fallbacks(
        self,
        session_id: str,
        state: CompactionState,
        provider_id: str | None,
        model_id: str | None,
    ) -> bool:
        while state.fallback_index < len(self.fallback_models):
            fallback = self.fallback_models[state.fallback_index]
            state.fallback_index += 1
            if fallback == (provider_id, model_id):
                continue
            await notify(self.client, "Model Fallback", f"Compacting with {fallback[0]}/{fallback[1]}...", "info")
            if await self._summarize(session_id, state, *fallback):
                return True
            if not self._is_current(session_id, state):
                return False
        return False

    async def _summarize(self, session_id: str, state: CompactionState, provider_id: str, model_id: str) -> bool:
        try:
            await self.client.summarize(session_id, provider_id, model_id)
        except Exception as e:
            logger.warning("[compaction] Summarize with %s/%s failed for %s: %s", provider_id, model_id, session_id, e)
            return False
        logger.info("[compaction] Summarized %s with %s/%s", session_id, provider_id, model_id)
        if self._is_current(session_id, state):
            self.clear(session_id)
        await notify(self.client, "Compaction Complete", "Conversation summarized.", "success")
        return True

    async def _resume(self, session_id: str) -> None:
        info = self.store.find_nearest_message_with_fields(session_id)
        agent = info.agent if info else None
        model = model_ref(info.provider_id, info.model_id) if info else None
        try:
            await self.client.prompt(session_id, [text_part(RESUME_TEXT)], agent=agent, model=model)
        except Exception as e:
            logger.warning("[compaction] Resume prompt failed for %s: %s", session_id, e)
