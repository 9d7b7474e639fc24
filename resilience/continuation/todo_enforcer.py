"""Idle-nudge scheduler: resume a session that went idle with open todos.

On ``session.idle`` for a tracked session with incomplete todos, a short
countdown starts (with a toast per tick). Activity during the countdown
cancels it; when it expires unperturbed the todo list, write permission and
agent kind are re-validated and one continuation prompt is sent.

Every countdown captures the session's version counter; cancelling bumps the
counter, so a countdown that wakes up after cancellation does nothing.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any

from resilience import config
from resilience.client import BackgroundTasks, ConversationClient, model_ref, notify, text_part
from resilience.events import (
    MESSAGE_PART_UPDATED,
    MESSAGE_UPDATED,
    SESSION_DELETED,
    SESSION_ERROR,
    SESSION_IDLE,
    TOOL_EXECUTE_AFTER,
    TOOL_EXECUTE_BEFORE,
    SessionEvent,
)
from resilience.healing.classifier import is_abort_error
from resilience.session_registry import SessionRegistry, get_registry
from resilience.transcript.store import TranscriptStore

logger = logging.getLogger(__name__)

CONTINUATION_PROMPT = """[SYSTEM REMINDER - TODO CONTINUATION]

Incomplete tasks remain in your todo list. Continue working on the next pending task.

- Proceed without asking for permission
- Mark each task complete when finished
- Do not stop until all tasks are done"""

TERMINAL_TODO_STATUSES = ("completed", "cancelled")
PLANNING_AGENTS = ("plan", "planner")
TOAST_DURATION_MS = 900


def incomplete_count(todos: list[dict[str, Any]]) -> int:
    return sum(1 for todo in todos if todo.get("status") not in TERMINAL_TODO_STATUSES)


def build_continuation_prompt(todos: list[dict[str, Any]]) -> str:
    remaining = incomplete_count(todos)
    done = len(todos) - remaining
    return f"{CONTINUATION_PROMPT}\n\n[Status: {done}/{len(todos)} completed, {remaining} remaining]"


@dataclass
class CountdownState:
    """Per-session countdown record."""

    version: int = 0
    recovering: bool = False
    last_event_was_abort_error: bool = False
    countdown_started_at: float | None = None
    timer: asyncio.Task | None = None


class TodoContinuationScheduler:
    """Nudges idle sessions that still have incomplete todos.

    Example:
        scheduler = TodoContinuationScheduler(store, client)
        await scheduler.handle_event(event)
        scheduler.mark_recovering("ses_1")  # while a repair runs

    """

    def __init__(
        self,
        store: TranscriptStore,
        client: ConversationClient,
        registry: SessionRegistry | None = None,
        background_tasks: BackgroundTasks | None = None,
        countdown_seconds: float = config.COUNTDOWN_SECONDS,
        grace_ms: int = config.COUNTDOWN_GRACE_MS,
        tick_interval: float = 1.0,
    ):
        self.store = store
        self.client = client
        self.registry = registry or get_registry()
        self.background_tasks = background_tasks
        self.countdown_seconds = countdown_seconds
        self.grace_ms = grace_ms
        self.tick_interval = tick_interval
        self._sessions: dict[str, CountdownState] = {}

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_state(self, session_id: str) -> CountdownState:
        if session_id not in self._sessions:
            self._sessions[session_id] = CountdownState()
        return self._sessions[session_id]

    def is_counting_down(self, session_id: str) -> bool:
        state = self._sessions.get(session_id)
        return bool(state and state.timer is not None)

    def cancel_countdown(self, session_id: str) -> None:
        state = self._sessions.get(session_id)
        if state is None:
            return
        state.version += 1
        if state.timer is not None and state.timer is not asyncio.current_task():
            state.timer.cancel()
        state.timer = None
        state.countdown_started_at = None

    def cleanup(self, session_id: str) -> None:
        self.cancel_countdown(session_id)
        self._sessions.pop(session_id, None)

    def mark_recovering(self, session_id: str) -> None:
        self.get_state(session_id).recovering = True
        self.cancel_countdown(session_id)
        logger.info("[todo-continuation] %s marked as recovering", session_id)

    def mark_recovery_complete(self, session_id: str) -> None:
        state = self._sessions.get(session_id)
        if state is not None:
            state.recovering = False
            logger.info("[todo-continuation] %s recovery complete", session_id)

    def _has_running_background_tasks(self, session_id: str) -> bool:
        if self.background_tasks is None:
            return False
        return self.background_tasks.has_running_tasks(session_id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def handle_event(self, event: SessionEvent) -> None:
        session_id = event.session_id
        if not session_id:
            return

        if event.type == SESSION_ERROR:
            state = self.get_state(session_id)
            state.last_event_was_abort_error = is_abort_error(event.error)
            self.cancel_countdown(session_id)
            logger.debug("[todo-continuation] session.error %s (abort=%s)", session_id, state.last_event_was_abort_error)
        elif event.type == SESSION_IDLE:
            await self._on_idle(session_id)
        elif event.type == MESSAGE_UPDATED:
            self._on_message(session_id, event.role)
        elif event.type == MESSAGE_PART_UPDATED:
            self._clear_abort(session_id)
            if event.role == "assistant":
                self.cancel_countdown(session_id)
        elif event.type in (TOOL_EXECUTE_BEFORE, TOOL_EXECUTE_AFTER):
            self._clear_abort(session_id)
            self.cancel_countdown(session_id)
        elif event.type == SESSION_DELETED:
            self.cleanup(session_id)
            logger.debug("[todo-continuation] %s deleted, cleaned up", session_id)

    def _clear_abort(self, session_id: str) -> None:
        state = self._sessions.get(session_id)
        if state is not None:
            state.last_event_was_abort_error = False

    def _on_message(self, session_id: str, role: str | None) -> None:
        self._clear_abort(session_id)
        state = self._sessions.get(session_id)
        if role == "user":
            if state is not None and state.countdown_started_at is not None:
                elapsed_ms = (time.monotonic() - state.countdown_started_at) * 1000
                if elapsed_ms < self.grace_ms:
                    logger.debug("[todo-continuation] Ignoring user message in grace period (%dms)", elapsed_ms)
                    return
            self.cancel_countdown(session_id)
        elif role == "assistant":
            self.cancel_countdown(session_id)

    async def _on_idle(self, session_id: str) -> None:
        if not self.registry.is_tracked(session_id):
            logger.debug("[todo-continuation] Skipped %s: not main or sub-task session", session_id)
            return

        state = self.get_state(session_id)
        if state.recovering:
            logger.debug("[todo-continuation] Skipped %s: in recovery", session_id)
            return
        if state.last_event_was_abort_error:
            state.last_event_was_abort_error = False
            logger.info("[todo-continuation] Skipped %s: abort error immediately before idle", session_id)
            return
        if self._has_running_background_tasks(session_id):
            logger.debug("[todo-continuation] Skipped %s: background tasks running", session_id)
            return

        try:
            todos = await self.client.todos(session_id)
        except Exception as e:
            logger.warning("[todo-continuation] Todo fetch failed for %s: %s", session_id, e)
            return

        remaining = incomplete_count(todos)
        if remaining == 0:
            logger.debug("[todo-continuation] %s: no incomplete todos", session_id)
            return
        if self._sessions.get(session_id) is not state or state.recovering:
            return

        self.start_countdown(session_id, remaining)

    # ------------------------------------------------------------------
    # Countdown
    # ------------------------------------------------------------------

    def start_countdown(self, session_id: str, remaining: int) -> None:
        self.cancel_countdown(session_id)
        state = self.get_state(session_id)
        state.countdown_started_at = time.monotonic()
        state.timer = asyncio.create_task(self._countdown(session_id, state, state.version, remaining))
        logger.info(
            "[todo-continuation] Countdown started for %s (%ss, %d remaining)",
            session_id,
            self.countdown_seconds,
            remaining,
        )

    def _is_stale(self, session_id: str, state: CountdownState, version: int) -> bool:
        return self._sessions.get(session_id) is not state or state.version != version

    async def _countdown(self, session_id: str, state: CountdownState, version: int, remaining: int) -> None:
        left = self.countdown_seconds
        while left > 0:
            await notify(
                self.client,
                "Todo Continuation",
                f"Resuming in {math.ceil(left)}s... ({remaining} tasks remaining)",
                "warning",
                TOAST_DURATION_MS,
            )
            step = min(self.tick_interval, left)
            await asyncio.sleep(step)
            if self._is_stale(session_id, state, version):
                return
            left -= step

        state.timer = None
        state.countdown_started_at = None
        await self._inject_continuation(session_id, state, version)

    async def _inject_continuation(self, session_id: str, state: CountdownState, version: int) -> bool:
        """Re-validate and send the continuation prompt; True if it was sent."""
        if state.recovering:
            logger.debug("[todo-continuation] Skipped injection for %s: in recovery", session_id)
            return False
        if self._has_running_background_tasks(session_id):
            logger.debug("[todo-continuation] Skipped injection for %s: background tasks running", session_id)
            return False

        try:
            todos = await self.client.todos(session_id)
        except Exception as e:
            logger.warning("[todo-continuation] Todo fetch failed for %s: %s", session_id, e)
            return False
        if self._is_stale(session_id, state, version) or state.recovering:
            return False
        if incomplete_count(todos) == 0:
            logger.debug("[todo-continuation] Skipped injection for %s: todos complete", session_id)
            return False

        previous = self.store.find_nearest_message_with_fields(session_id)
        tools = previous.tools if previous else None
        if tools and (tools.get("write") is False or tools.get("edit") is False):
            logger.info("[todo-continuation] Skipped %s: agent lacks write permission", session_id)
            return False

        agent = previous.agent if previous else None
        if agent and agent.lower() in PLANNING_AGENTS:
            logger.info("[todo-continuation] Skipped %s: planning agent %s", session_id, agent)
            return False

        model = model_ref(previous.provider_id, previous.model_id) if previous else None
        try:
            await self.client.prompt(session_id, [text_part(build_continuation_prompt(todos))], agent=agent, model=model)
        except Exception as e:
            logger.warning("[todo-continuation] Injection failed for %s: %s", session_id, e)
            return False
        logger.info("[todo-continuation] Continuation injected into %s", session_id)
        return True
