"""Continuation schedulers that keep an idle session moving.

- TodoContinuationScheduler: countdown nudge while todos remain open
- BoundedLoop: re-prompt until a completion promise appears, bounded by iterations
"""

from resilience.continuation.loop import BoundedLoop, build_loop_prompt, completion_pattern
from resilience.continuation.loop_storage import LoopState, clear_state, read_state, write_state
from resilience.continuation.todo_enforcer import (
    CONTINUATION_PROMPT,
    CountdownState,
    TodoContinuationScheduler,
    build_continuation_prompt,
    incomplete_count,
)

__all__ = [
    "BoundedLoop",
    "build_loop_prompt",
    "completion_pattern",
    "LoopState",
    "clear_state",
    "read_state",
    "write_state",
    "CONTINUATION_PROMPT",
    "CountdownState",
    "TodoContinuationScheduler",
    "build_continuation_prompt",
    "incomplete_count",
]
