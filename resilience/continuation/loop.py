"""Bounded self-loop: re-prompt a session until it prints its completion promise.

``start`` records the task; every ``session.idle`` of the owning session either
finishes the loop (promise found), stops it (iteration limit reached), or sends
the next iteration prompt with the original task embedded verbatim.
"""

from __future__ import annotations

import logging
import os
import re
import time
from pathlib import Path

from resilience import config
from resilience.client import ConversationClient, notify, text_part
from resilience.continuation.loop_storage import (
    LoopState,
    clear_state,
    increment_iteration,
    read_state,
    write_state,
)
from resilience.events import SESSION_DELETED, SESSION_ERROR, SESSION_IDLE, SessionEvent
from resilience.transcript.parts import TextPart
from resilience.transcript.store import TranscriptStore

logger = logging.getLogger(__name__)

LOOP_CONTINUATION_PROMPT = """[SELF-LOOP - ITERATION {iteration}/{max_iterations}]

Your previous attempt did not output the completion promise. Continue working on the task.

IMPORTANT:
- Review your progress so far
- Continue from where you left off
- When FULLY complete, output: <promise>{promise}</promise>
- Do not stop until the task is truly done

Original task:
{prompt}"""


def completion_pattern(promise: str) -> re.Pattern:
    return re.compile(rf"<promise>\s*{re.escape(promise)}\s*</promise>", re.IGNORECASE | re.DOTALL)


def build_loop_prompt(state: LoopState) -> str:
    # str.format would choke on braces inside the task text
    header, _, _ = LOOP_CONTINUATION_PROMPT.partition("{prompt}")
    header = (
        header.replace("{iteration}", str(state.iteration))
        .replace("{max_iterations}", str(state.max_iterations))
        .replace("{promise}", state.completion_promise)
    )
    return header + state.prompt


class BoundedLoop:
    """Iteration-bounded self-loop for one session at a time.

    Example:
        loop = BoundedLoop(store, client, directory="/work/project")
        loop.start("ses_1", "Port the parser", max_iterations=10)
        await loop.handle_event(idle_event)

    """

    def __init__(
        self,
        store: TranscriptStore,
        client: ConversationClient,
        directory: str | os.PathLike | None = None,
        state_dir: str | None = None,
        default_max_iterations: int = config.LOOP_DEFAULT_MAX_ITERATIONS,
        default_promise: str = config.LOOP_DEFAULT_PROMISE,
        recovery_window_s: float = config.LOOP_RECOVERY_WINDOW_S,
    ):
        self.store = store
        self.client = client
        self.directory = Path(directory or os.getcwd())
        self.state_dir = state_dir
        self.default_max_iterations = default_max_iterations
        self.default_promise = default_promise
        self.recovery_window_s = recovery_window_s
        self._recovering_until: dict[str, float] = {}
        self._recovering: set[str] = set()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(
        self,
        session_id: str,
        prompt: str,
        max_iterations: int | None = None,
        completion_promise: str | None = None,
    ) -> bool:
        existing = self.store.read_messages(session_id)
        state = LoopState(
            active=True,
            iteration=1,
            max_iterations=max_iterations or self.default_max_iterations,
            completion_promise=completion_promise or self.default_promise,
            started_at=LoopState.now(),
            prompt=prompt,
            session_id=session_id,
            after_message_id=existing[-1].id if existing else None,
        )
        if not write_state(self.directory, state, self.state_dir):
            return False
        logger.info(
            "[loop] Started for %s (max %d, promise %r)",
            session_id,
            state.max_iterations,
            state.completion_promise,
        )
        return True

    def cancel(self, session_id: str) -> bool:
        """Cancel the loop; only the owning session may cancel it."""
        state = self.get_state()
        if state is None or state.session_id != session_id:
            return False
        if not clear_state(self.directory, self.state_dir):
            return False
        logger.info("[loop] Cancelled for %s at iteration %d", session_id, state.iteration)
        return True

    def get_state(self) -> LoopState | None:
        return read_state(self.directory, self.state_dir)

    def mark_recovering(self, session_id: str) -> None:
        self._recovering.add(session_id)

    def mark_recovery_complete(self, session_id: str) -> None:
        self._recovering.discard(session_id)

    def is_recovering(self, session_id: str) -> bool:
        if session_id in self._recovering:
            return True
        until = self._recovering_until.get(session_id)
        if until is None:
            return False
        if time.monotonic() >= until:
            del self._recovering_until[session_id]
            return False
        return True

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def handle_event(self, event: SessionEvent) -> None:
        session_id = event.session_id
        if not session_id:
            return

        if event.type == SESSION_IDLE:
            await self._on_idle(session_id, event.transcript_path)
        elif event.type == SESSION_ERROR:
            self._recovering_until[session_id] = time.monotonic() + self.recovery_window_s
        elif event.type == SESSION_DELETED:
            state = self.get_state()
            if state is not None and state.session_id == session_id:
                clear_state(self.directory, self.state_dir)
                logger.info("[loop] %s deleted, loop cleared", session_id)
            self._recovering_until.pop(session_id, None)
            self._recovering.discard(session_id)

    def detect_completion(
        self,
        session_id: str,
        promise: str,
        transcript_path: str | None = None,
        after_message_id: str | None = None,
    ) -> bool:
        """Search assistant text (and the host transcript file, if any) for the promise.

        Messages with ids up to ``after_message_id`` predate the loop and are skipped.
        """
        pattern = completion_pattern(promise)
        for msg in self.store.read_messages(session_id):
            if msg.role != "assistant":
                continue
            if after_message_id and msg.id <= after_message_id:
                continue
            if any(isinstance(p, TextPart) and pattern.search(p.text) for p in msg.parts):
                return True

        if transcript_path:
            try:
                content = Path(transcript_path).read_text(encoding="utf-8")
            except OSError as e:
                logger.debug("[loop] Cannot read transcript %s: %s", transcript_path, e)
                return False
            return bool(pattern.search(content))
        return False

    async def _on_idle(self, session_id: str, transcript_path: str | None) -> None:
        if self.is_recovering(session_id):
            logger.debug("[loop] Skipped %s: in recovery", session_id)
            return

        state = self.get_state()
        if state is None or not state.active:
            return
        if state.session_id and state.session_id != session_id:
            return

        if self.detect_completion(session_id, state.completion_promise, transcript_path, state.after_message_id):
            logger.info("[loop] Completion detected for %s at iteration %d", session_id, state.iteration)
            clear_state(self.directory, self.state_dir)
            await notify(
                self.client,
                "Self-Loop Complete!",
                f"Task completed after {state.iteration} iteration(s)",
                "success",
                5000,
            )
            return

        if state.iteration >= state.max_iterations:
            logger.info("[loop] Max iterations (%d) reached for %s", state.max_iterations, session_id)
            clear_state(self.directory, self.state_dir)
            await notify(
                self.client,
                "Self-Loop Stopped",
                f"Max iterations ({state.max_iterations}) reached without completion",
                "warning",
                5000,
            )
            return

        new_state = increment_iteration(self.directory, self.state_dir)
        if new_state is None:
            logger.warning("[loop] Failed to increment iteration for %s", session_id)
            return

        logger.info("[loop] Continuing %s: iteration %d/%d", session_id, new_state.iteration, new_state.max_iterations)
        await notify(
            self.client,
            "Self-Loop",
            f"Iteration {new_state.iteration}/{new_state.max_iterations}",
            "info",
            2000,
        )
        try:
            await self.client.prompt(session_id, [text_part(build_loop_prompt(new_state))])
        except Exception as e:
            logger.warning("[loop] Failed to send continuation for %s: %s", session_id, e)
