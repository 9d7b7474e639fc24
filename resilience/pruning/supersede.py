"""Pruning of file writes superseded by a later read of the same file.

Conservative mode keeps the final write to each file; aggressive mode
prunes any write that a later-turn read has superseded.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from resilience.pruning.state import (
    FileOperation,
    PruningConfig,
    PruningState,
    estimate_tokens,
    is_protected_by_turn,
    iter_tool_calls,
)
from resilience.transcript.parts import PersistedMessage

logger = logging.getLogger(__name__)

WRITE_TOOLS = ("write", "edit")
READ_TOOLS = ("read",)


def extract_file_path(tool: str, tool_input: Any) -> str | None:
    if tool not in WRITE_TOOLS + READ_TOOLS or not isinstance(tool_input, dict):
        return None
    path = tool_input.get("filePath")
    return path if isinstance(path, str) and path else None


def execute_supersede_writes(
    messages: list[PersistedMessage],
    state: PruningState,
    cfg: PruningConfig,
) -> tuple[int, int]:
    """Mark superseded writes.

    Returns:
        Tuple of (calls marked, estimated tokens saved)

    """
    protected = cfg.all_protected_tools
    writes: dict[str, list[FileOperation]] = {}
    reads: dict[str, list[int]] = {}
    inputs: dict[str, Any] = {}

    for turn, part in iter_tool_calls(messages):
        if part.tool in protected or part.call_id in state.tool_ids_to_prune:
            continue
        path = extract_file_path(part.tool, part.state.input)
        if not path:
            continue
        if part.tool in WRITE_TOOLS:
            writes.setdefault(path, []).append(FileOperation(part.call_id, part.tool, path, turn))
            inputs[part.call_id] = part.state.input
        else:
            reads.setdefault(path, []).append(turn)

    for path, ops in writes.items():
        state.file_operations.setdefault(path, [])
        known = {op.call_id for op in state.file_operations[path]}
        state.file_operations[path].extend(op for op in ops if op.call_id not in known)

    pruned = 0
    tokens_saved = 0
    for path, ops in writes.items():
        candidates = ops if cfg.supersede_aggressive else ops[:-1]
        read_turns = reads.get(path, [])
        for op in candidates:
            if is_protected_by_turn(op.turn, state.current_turn, cfg):
                continue
            if not any(read_turn > op.turn for read_turn in read_turns):
                continue
            state.tool_ids_to_prune.add(op.call_id)
            pruned += 1
            tokens_saved += estimate_tokens(json.dumps(inputs.get(op.call_id), default=str))
            logger.debug("[pruning] superseded %s %s (turn %d)", op.tool, path, op.turn)

    mode = "aggressive" if cfg.supersede_aggressive else "conservative"
    logger.info("[pruning] supersede (%s) marked %d call(s) across %d file(s)", mode, pruned, len(writes))
    return pruned, tokens_saved
