"""Pruning of tool calls that errored several turns ago."""

from __future__ import annotations

import json
import logging

from resilience.pruning.state import (
    ErroredToolCall,
    PruningConfig,
    PruningState,
    estimate_tokens,
    is_protected_by_turn,
    iter_tool_calls,
)
from resilience.transcript.parts import TOOL_STATUS_ERROR, PersistedMessage

logger = logging.getLogger(__name__)


def execute_purge_errors(
    messages: list[PersistedMessage],
    state: PruningState,
    cfg: PruningConfig,
) -> tuple[int, int]:
    """Mark errored calls at least ``purge_error_turns`` turns old.

    Returns:
        Tuple of (calls marked, estimated tokens saved)

    """
    protected = cfg.all_protected_tools
    pruned = 0
    tokens_saved = 0

    for turn, part in iter_tool_calls(messages):
        if part.tool in protected or part.call_id in state.tool_ids_to_prune:
            continue
        if part.state.status != TOOL_STATUS_ERROR:
            continue
        if is_protected_by_turn(turn, state.current_turn, cfg):
            continue

        age = state.current_turn - turn
        if age < cfg.purge_error_turns:
            continue

        state.tool_ids_to_prune.add(part.call_id)
        state.errored_tools[part.call_id] = ErroredToolCall(part.call_id, part.tool, turn, age)
        pruned += 1
        tokens_saved += estimate_tokens(json.dumps(part.state.input, default=str))
        logger.debug("[pruning] old error %s (%s), age %d", part.call_id, part.tool, age)

    logger.info("[pruning] purge-errors marked %d call(s) at turn %d", pruned, state.current_turn)
    return pruned, tokens_saved
