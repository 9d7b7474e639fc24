"""Persistence for the bounded self-loop state.

The state lives in ``<directory>/.resilience/loop-state.md``: YAML front matter
holding the counters, followed by the original task prompt verbatim.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

import yaml

from resilience.config import LOOP_STATE_DIR

logger = logging.getLogger(__name__)

STATE_FILE = "loop-state.md"
FRONT_MATTER_DELIMITER = "---"


@dataclass
class LoopState:
    active: bool
    iteration: int
    max_iterations: int
    completion_promise: str
    started_at: str
    prompt: str
    session_id: str | None = None
    # Newest message when the loop started; completion is only searched after it
    after_message_id: str | None = None

    @staticmethod
    def now() -> str:
        return datetime.now(timezone.utc).isoformat()


def state_path(directory: str | Path, state_dir: str | None = None) -> Path:
    return Path(directory) / (state_dir or LOOP_STATE_DIR) / STATE_FILE


def read_state(directory: str | Path, state_dir: str | None = None) -> LoopState | None:
    path = state_path(directory, state_dir)
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("[loop] Cannot read %s: %s", path, e)
        return None

    if not content.startswith(FRONT_MATTER_DELIMITER):
        logger.warning("[loop] %s has no front matter", path)
        return None
    _, _, rest = content.partition(FRONT_MATTER_DELIMITER + "\n")
    header, sep, body = rest.partition("\n" + FRONT_MATTER_DELIMITER + "\n")
    if not sep:
        logger.warning("[loop] %s front matter is not terminated", path)
        return None

    try:
        meta = yaml.safe_load(header) or {}
    except yaml.YAMLError as e:
        logger.warning("[loop] Invalid front matter in %s: %s", path, e)
        return None
    if not isinstance(meta, dict):
        return None

    try:
        return LoopState(
            active=bool(meta.get("active", False)),
            iteration=int(meta.get("iteration", 1)),
            max_iterations=int(meta.get("max_iterations", 1)),
            completion_promise=str(meta.get("completion_promise", "")),
            started_at=str(meta.get("started_at", "")),
            prompt=body.strip("\n"),
            session_id=meta.get("session_id"),
            after_message_id=meta.get("after_message_id"),
        )
    except (TypeError, ValueError) as e:
        logger.warning("[loop] Invalid loop state in %s: %s", path, e)
        return None


def write_state(directory: str | Path, state: LoopState, state_dir: str | None = None) -> bool:
    path = state_path(directory, state_dir)
    meta = asdict(state)
    prompt = meta.pop("prompt")
    header = yaml.safe_dump(meta, sort_keys=False, allow_unicode=True)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{FRONT_MATTER_DELIMITER}\n{header}{FRONT_MATTER_DELIMITER}\n{prompt}\n", encoding="utf-8")
    except OSError as e:
        logger.error("[loop] Cannot write %s: %s", path, e)
        return False
    return True


def clear_state(directory: str | Path, state_dir: str | None = None) -> bool:
    path = state_path(directory, state_dir)
    try:
        path.unlink()
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.error("[loop] Cannot remove %s: %s", path, e)
        return False
    return True


def increment_iteration(directory: str | Path, state_dir: str | None = None) -> LoopState | None:
    state = read_state(directory, state_dir)
    if state is None:
        return None
    state.iteration += 1
    return state if write_state(directory, state, state_dir) else None
