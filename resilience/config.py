import logging
import os

from dotenv import load_dotenv

load_dotenv()

# Project root: directory containing resilience/ package (works from any cwd)
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
LOG_FILE = os.getenv("RESILIENCE_LOG_FILE", os.path.join(PROJECT_ROOT, "logs", "resilience.log"))


def _default_storage_dir() -> str:
    """Host transcript storage root (XDG data dir, same as the host uses)."""
    xdg_data = os.getenv("XDG_DATA_HOME") or os.path.join(os.path.expanduser("~"), ".local", "share")
    return os.path.join(xdg_data, "opencode", "storage")


# Persisted transcript location (message/<session>/..., part/<message>/...)
STORAGE_DIR = os.getenv("RESILIENCE_STORAGE_DIR", "") or _default_storage_dir()

# Host conversation API (HTTP server exposed by the host runtime)
HOST_BASE_URL = os.getenv("RESILIENCE_HOST_URL", "http://127.0.0.1:4096")
HOST_TIMEOUT = float(os.getenv("RESILIENCE_HOST_TIMEOUT", "30"))

# Compaction orchestrator
COMPACT_DEBOUNCE_MS = int(os.getenv("RESILIENCE_COMPACT_DEBOUNCE_MS", "300"))
COMPACT_RETRY_DELAY_MS = int(os.getenv("RESILIENCE_COMPACT_RETRY_DELAY_MS", "2000"))
MAX_COMPACT_RETRIES = int(os.getenv("RESILIENCE_MAX_COMPACT_RETRIES", "2"))
MAX_TRUNCATE_ATTEMPTS = int(os.getenv("RESILIENCE_MAX_TRUNCATE_ATTEMPTS", "20"))
MAX_EMPTY_CONTENT_ATTEMPTS = int(os.getenv("RESILIENCE_MAX_EMPTY_CONTENT_ATTEMPTS", "3"))
# Keep total tokens at this fraction of the model window after truncation
TRUNCATE_TARGET_RATIO = float(os.getenv("RESILIENCE_TRUNCATE_TARGET_RATIO", "0.5"))


def _parse_model_chain(chain_str: str) -> list[tuple[str, str]]:
    """Parse comma-separated provider/model list into (provider, model) pairs."""
    if not chain_str:
        return []
    pairs = []
    for item in chain_str.split(","):
        item = item.strip()
        if "/" not in item:
            continue
        provider, model = item.split("/", 1)
        if provider and model:
            pairs.append((provider.strip(), model.strip()))
    return pairs


# Example: RESILIENCE_COMPACT_FALLBACK_MODELS=anthropic/claude-sonnet-4-5,openai/gpt-4o
COMPACT_FALLBACK_MODELS = _parse_model_chain(os.getenv("RESILIENCE_COMPACT_FALLBACK_MODELS", ""))

# Pruning engine
PRUNE_PURGE_ERROR_TURNS = int(os.getenv("RESILIENCE_PRUNE_PURGE_ERROR_TURNS", "5"))
PRUNE_TURN_PROTECTION = os.getenv("RESILIENCE_PRUNE_TURN_PROTECTION", "true").lower() in ("true", "1", "yes")
PRUNE_PROTECTED_TURNS = int(os.getenv("RESILIENCE_PRUNE_PROTECTED_TURNS", "3"))
PRUNE_NOTIFICATION = os.getenv("RESILIENCE_PRUNE_NOTIFICATION", "minimal")  # off | minimal | detailed
PRUNE_PROTECTED_TOOLS = {
    name.strip() for name in os.getenv("RESILIENCE_PRUNE_PROTECTED_TOOLS", "").split(",") if name.strip()
}

# Continuation schedulers
COUNTDOWN_SECONDS = int(os.getenv("RESILIENCE_COUNTDOWN_SECONDS", "2"))
COUNTDOWN_GRACE_MS = int(os.getenv("RESILIENCE_COUNTDOWN_GRACE_MS", "500"))
LOOP_DEFAULT_MAX_ITERATIONS = int(os.getenv("RESILIENCE_LOOP_MAX_ITERATIONS", "100"))
LOOP_DEFAULT_PROMISE = os.getenv("RESILIENCE_LOOP_PROMISE", "DONE")
LOOP_RECOVERY_WINDOW_S = float(os.getenv("RESILIENCE_LOOP_RECOVERY_WINDOW_S", "5"))
LOOP_STATE_DIR = os.getenv("RESILIENCE_LOOP_STATE_DIR", ".resilience")


# Read version from VERSION file
def _get_version() -> str:
    version_file = os.path.join(PROJECT_ROOT, "VERSION")
    try:
        with open(version_file, "r") as f:
            return f.read().strip()
    except FileNotFoundError:
        return "0.0.0"  # Fallback if VERSION file doesn't exist


VERSION = _get_version()


def setup_logging(level: int = logging.INFO) -> None:
    os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)
    logging.basicConfig(
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        level=level,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(LOG_FILE, encoding="utf-8"),
        ],
    )
