"""Fan-out of host lifecycle events to the resilience components.

The dispatcher is the only entry point the host calls. It parses each raw
event once, keeps the session registry current, and hands the typed event to
every component in order. A failing component is logged and skipped; the
host never sees an exception from here.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Protocol

from resilience.client import BackgroundTasks, ConversationClient
from resilience.continuation.loop import BoundedLoop
from resilience.continuation.todo_enforcer import TodoContinuationScheduler
from resilience.events import SESSION_CREATED, SESSION_DELETED, SessionEvent
from resilience.healing.compaction import CompactionOrchestrator
from resilience.healing.recovery import SessionRecovery
from resilience.pruning.executor import PruningEngine
from resilience.session_registry import SessionRegistry, get_registry
from resilience.transcript.store import TranscriptStore

logger = logging.getLogger(__name__)


class EventHandler(Protocol):
    async def handle_event(self, event: SessionEvent) -> None: ...


class ResilienceDispatcher:
    """Routes host events to recovery, compaction, pruning and continuation.

    Example:
        dispatcher = ResilienceDispatcher.create(client, storage_dir, directory="/work")
        await dispatcher.dispatch({"type": "session.idle", "properties": {"sessionID": "ses_1"}})

    """

    def __init__(self, handlers: dict[str, EventHandler], registry: SessionRegistry | None = None):
        self.handlers = dict(handlers)
        self.registry = registry or get_registry()

    def component(self, name: str) -> EventHandler:
        return self.handlers[name]

    @classmethod
    def create(
        cls,
        client: ConversationClient,
        storage_dir: str | os.PathLike | None = None,
        directory: str | os.PathLike | None = None,
        background_tasks: BackgroundTasks | None = None,
        registry: SessionRegistry | None = None,
    ) -> "ResilienceDispatcher":
        """Wire the standard component set around one store and client."""
        store = TranscriptStore(storage_dir)
        registry = registry or get_registry()
        pruning = PruningEngine(store, client)
        todo = TodoContinuationScheduler(store, client, registry=registry, background_tasks=background_tasks)
        loop = BoundedLoop(store, client, directory=directory)
        recovery = SessionRecovery(store, client, listeners=[todo, loop])
        compaction = CompactionOrchestrator(store, client, pruning=pruning, listeners=[todo, loop])
        handlers = {
            "recovery": recovery,
            "compaction": compaction,
            "pruning": pruning,
            "todo": todo,
            "loop": loop,
        }
        return cls(handlers, registry=registry)

    def _track_sessions(self, event: SessionEvent) -> None:
        if event.type == SESSION_CREATED and event.session_id:
            if event.parent_id:
                self.registry.register_subtask_session(event.session_id)
            elif self.registry.main_session_id is None:
                self.registry.set_main_session(event.session_id)
        elif event.type == SESSION_DELETED and event.session_id:
            self.registry.unregister_session(event.session_id)

    async def dispatch(self, raw_event: Any) -> None:
        """Deliver one host event to every component."""
        event = SessionEvent.from_host(raw_event)
        if event is None:
            logger.debug("[dispatcher] Ignoring malformed event: %r", raw_event)
            return

        self._track_sessions(event)
        for name, handler in self.handlers.items():
            try:
                await handler.handle_event(event)
            except Exception:
                logger.exception("[dispatcher] %s failed on %s", name, event.type)
