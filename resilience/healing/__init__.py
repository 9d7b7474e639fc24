"""Self-healing for provider failures.

This package turns provider errors into recovery actions:
- Error classification (token limit, empty content, structural transcript errors)
- Model context registry (fallback window sizes)
- Compaction orchestration (truncate -> summarize -> model fallback)
- Session recovery (tool results, thinking block order, thinking strip)

Architecture:
    ErrorClassifier -> determines recovery kind
    CompactionOrchestrator -> size-class failures
    SessionRecovery -> structural failures
"""

from resilience.healing.classifier import (
    ErrorClassifier,
    ParsedRecoveryError,
    RecoveryErrorKind,
    classify,
    is_abort_error,
)
from resilience.healing.compaction import CompactionOrchestrator, CompactionState
from resilience.healing.model_registry import get_model_info, get_model_max_tokens, register_model
from resilience.healing.recovery import SessionRecovery

__all__ = [
    "ErrorClassifier",
    "ParsedRecoveryError",
    "RecoveryErrorKind",
    "classify",
    "is_abort_error",
    "CompactionOrchestrator",
    "CompactionState",
    "get_model_info",
    "get_model_max_tokens",
    "register_model",
    "SessionRecovery",
]
