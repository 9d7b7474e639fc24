"""Which sessions the continuation schedulers may act on.

The primary session is the first top-level session the host creates;
sub-task sessions are registered explicitly by whoever spawns them.
A process-wide instance is available through ``get_registry()``.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Tracks the primary session and registered sub-task sessions.

    Example:
        registry = SessionRegistry()
        registry.set_main_session("ses_main")
        registry.register_subtask_session("ses_child")
        registry.is_tracked("ses_other")  # False

    """

    def __init__(self):
        self.main_session_id: str | None = None
        self.subtask_sessions: set[str] = set()

    def set_main_session(self, session_id: str | None) -> None:
        self.main_session_id = session_id
        logger.info("[sessions] Main session: %s", session_id)

    def register_subtask_session(self, session_id: str) -> None:
        self.subtask_sessions.add(session_id)

    def unregister_session(self, session_id: str) -> None:
        self.subtask_sessions.discard(session_id)
        if self.main_session_id == session_id:
            self.main_session_id = None

    def is_tracked(self, session_id: str) -> bool:
        """True for the main session, a sub-task session, or any session if no main is known."""
        if self.main_session_id is None:
            return True
        return session_id == self.main_session_id or session_id in self.subtask_sessions


# Global singleton instance
_registry: SessionRegistry | None = None


def get_registry() -> SessionRegistry:
    global _registry
    if _registry is None:
        _registry = SessionRegistry()
    return _registry


def reset_registry() -> None:
    """Drop the global registry (used by tests)."""
    global _registry
    _registry = None
