"""Context pruning: mark tool calls whose outputs no longer earn their tokens."""

from resilience.pruning.executor import PRUNING_MODES, PruningEngine
from resilience.pruning.state import (
    DEFAULT_PROTECTED_TOOLS,
    PRUNED_MARKER,
    PruningConfig,
    PruningResult,
    PruningState,
    tool_signature,
)

__all__ = [
    "DEFAULT_PROTECTED_TOOLS",
    "PRUNED_MARKER",
    "PRUNING_MODES",
    "PruningConfig",
    "PruningEngine",
    "PruningResult",
    "PruningState",
    "tool_signature",
]
