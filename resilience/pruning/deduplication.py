"""Duplicate tool-call pruning.

Calls with the same tool and canonical input are duplicates; every
occurrence except the last one is marked.
"""

from __future__ import annotations

import logging

from resilience.pruning.state import (
    PruningConfig,
    PruningState,
    ToolCallSignature,
    estimate_tokens,
    is_protected_by_turn,
    iter_tool_calls,
    tool_signature,
)
from resilience.transcript.parts import PersistedMessage

logger = logging.getLogger(__name__)


def execute_deduplication(
    messages: list[PersistedMessage],
    state: PruningState,
    cfg: PruningConfig,
) -> tuple[int, int]:
    """Mark all but the last call of each signature.

    Returns:
        Tuple of (calls marked, estimated tokens saved)

    """
    protected = cfg.all_protected_tools
    outputs: dict[str, str] = {}
    signatures: dict[str, list[ToolCallSignature]] = {}

    for turn, part in iter_tool_calls(messages):
        if part.tool in protected or part.call_id in state.tool_ids_to_prune:
            continue
        signature = tool_signature(part.tool, part.state.input)
        call = ToolCallSignature(part.tool, signature, part.call_id, turn)
        signatures.setdefault(signature, []).append(call)
        outputs[part.call_id] = part.state.output or ""

    state.tool_signatures = signatures

    pruned = 0
    tokens_saved = 0
    for signature, calls in signatures.items():
        for call in calls[:-1]:
            if is_protected_by_turn(call.turn, state.current_turn, cfg):
                logger.debug("[pruning] dedup skipping protected turn %d for %s", call.turn, call.call_id)
                continue
            state.tool_ids_to_prune.add(call.call_id)
            pruned += 1
            tokens_saved += estimate_tokens(outputs.get(call.call_id, ""))
            logger.debug("[pruning] duplicate %s (%s) %s", call.call_id, call.tool, signature[:100])

    logger.info("[pruning] dedup marked %d call(s), %d unique signature(s)", pruned, len(signatures))
    return pruned, tokens_saved
