"""Resilience layer for long-running agent sessions.

This package keeps a persisted conversation healthy and moving:
- Error classification for provider failures (token limits, malformed
  thinking order, orphaned tool calls, empty content)
- Transcript repair operations over the on-disk message log
- Compaction orchestration with truncation, summarization and model fallback
- Context pruning (duplicate, errored and superseded tool calls)
- Continuation schedulers (idle todo nudge, bounded self-loop)
"""

from resilience.config import VERSION

__all__ = ["VERSION"]
