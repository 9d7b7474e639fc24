"""Pruning state, configuration and shared helpers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from resilience import config
from resilience.transcript.parts import PersistedMessage, StepStartPart, ToolPart

DEFAULT_PROTECTED_TOOLS = frozenset(
    {
        "task",
        "todowrite",
        "todoread",
        "lsp_rename",
        "lsp_code_action_resolve",
        "session_read",
        "session_write",
        "session_search",
    }
)

PRUNED_MARKER = "[Output removed to save context - information superseded or no longer needed]"


@dataclass
class ToolCallSignature:
    tool: str
    signature: str
    call_id: str
    turn: int


@dataclass
class ErroredToolCall:
    call_id: str
    tool: str
    turn: int
    error_age: int


@dataclass
class FileOperation:
    call_id: str
    tool: str
    file_path: str
    turn: int


@dataclass
class PruningResult:
    """Outcome of one pruning run."""

    items_pruned: int = 0
    tokens_saved: int = 0
    deduplication: int = 0
    supersede_writes: int = 0
    purge_errors: int = 0


@dataclass
class PruningState:
    """Per-session pruning marks.

    Marks are call ids only; the stored transcript is never modified.
    """

    tool_ids_to_prune: set[str] = field(default_factory=set)
    current_turn: int = 0
    tool_signatures: dict[str, list[ToolCallSignature]] = field(default_factory=dict)
    errored_tools: dict[str, ErroredToolCall] = field(default_factory=dict)
    file_operations: dict[str, list[FileOperation]] = field(default_factory=dict)
    last_result: PruningResult | None = None


@dataclass
class PruningConfig:
    """Pruning knobs (defaults come from RESILIENCE_PRUNE_* env vars)."""

    protected_tools: set[str] = field(default_factory=lambda: set(config.PRUNE_PROTECTED_TOOLS))
    turn_protection: bool = config.PRUNE_TURN_PROTECTION
    protected_turns: int = config.PRUNE_PROTECTED_TURNS
    purge_error_turns: int = config.PRUNE_PURGE_ERROR_TURNS
    notification: str = config.PRUNE_NOTIFICATION
    supersede_aggressive: bool = False
    deduplication_enabled: bool = True
    supersede_enabled: bool = True
    purge_errors_enabled: bool = True

    @property
    def all_protected_tools(self) -> set[str]:
        return set(DEFAULT_PROTECTED_TOOLS) | self.protected_tools


def is_protected_by_turn(call_turn: int, current_turn: int, cfg: PruningConfig) -> bool:
    """A call inside the most recent ``protected_turns`` turns is never pruned."""
    if not cfg.turn_protection:
        return False
    return current_turn - call_turn < cfg.protected_turns


def count_turns(messages: list[PersistedMessage]) -> int:
    return sum(1 for msg in messages for part in msg.parts if isinstance(part, StepStartPart))


def iter_tool_calls(messages: list[PersistedMessage]):
    """Yield ``(turn, ToolPart)`` front to back; step-start advances the turn."""
    turn = 0
    for msg in messages:
        for part in msg.parts:
            if isinstance(part, StepStartPart):
                turn += 1
            elif isinstance(part, ToolPart) and part.call_id and part.tool:
                yield turn, part


def _sort_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _sort_value(value[key]) for key in sorted(value)}
    if isinstance(value, list):
        return [_sort_value(item) for item in value]
    return value


def tool_signature(tool: str, tool_input: Any) -> str:
    """Canonical ``tool::json`` signature with keys sorted at every depth."""
    canonical = json.dumps(_sort_value(tool_input), separators=(",", ":"), ensure_ascii=False, default=str)
    return f"{tool}::{canonical}"


def estimate_tokens(text: str) -> int:
    return round(len(text) / 4)
