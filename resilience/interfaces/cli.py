"""CLI for inspecting and repairing stored sessions offline."""

import argparse
import asyncio
import json
import logging
import os

from resilience.config import (
    COMPACT_FALLBACK_MODELS,
    HOST_BASE_URL,
    LOG_FILE,
    STORAGE_DIR,
    VERSION,
    setup_logging,
)
from resilience.continuation.loop import BoundedLoop
from resilience.healing.classifier import classify
from resilience.pruning.executor import PRUNING_MODES, PruningEngine
from resilience.transcript.repair import TranscriptRepair
from resilience.transcript.store import TranscriptStore

logger = logging.getLogger(__name__)

REPAIR_KINDS = ("empty", "thinking-order", "strip-thinking")


def _builtin_status() -> str:
    fallback = ", ".join(f"{p}/{m}" for p, m in COMPACT_FALLBACK_MODELS) or "none"
    return (
        f"Resilience layer v{VERSION}\n"
        f"Storage: {STORAGE_DIR}\n"
        f"Host API: {HOST_BASE_URL}\n"
        f"Fallback models: {fallback}\n\n"
        "Usage: python -m resilience classify|prune|repair|loop|status|logs"
    )


def _classify(text: str, provider: str | None, model: str | None) -> None:
    error = text
    if text.lstrip().startswith("{"):
        try:
            error = json.loads(text)
        except ValueError:
            pass
    parsed = classify(error, provider, model)
    if parsed is None:
        print("Not a recoverable error.")
        return
    print(f"kind: {parsed.kind.value}")
    print(f"current_tokens: {parsed.current_tokens}")
    print(f"max_tokens: {parsed.max_tokens}")
    if parsed.message_index is not None:
        print(f"message_index: {parsed.message_index}")
    if parsed.request_id:
        print(f"request_id: {parsed.request_id}")
    print(f"error_type: {parsed.error_type}")


async def _prune(session_id: str, mode: str, storage: str | None) -> None:
    store = TranscriptStore(storage)
    engine = PruningEngine(store)
    count = await engine.execute_pruning(session_id, mode)
    state = engine.get_state(session_id)
    print(f"Turns: {state.current_turn}")
    print(f"Marked {count} tool call(s) for pruning ({mode}).")
    for call_id in sorted(state.tool_ids_to_prune):
        print(f"  - {call_id}")


def _repair(session_id: str, kind: str, storage: str | None, dry_run: bool) -> None:
    store = TranscriptStore(storage)
    repair = TranscriptRepair(store)

    if kind == "empty":
        targets = sorted(set(repair.find_empty_messages(session_id)) | set(repair.find_messages_with_empty_text_parts(session_id)))
    elif kind == "thinking-order":
        targets = repair.find_messages_with_orphan_thinking(session_id)
    else:
        targets = repair.find_messages_with_thinking_blocks(session_id)

    if not targets:
        print("Nothing to repair.")
        return
    print(f"{len(targets)} message(s) need '{kind}' repair:")
    for message_id in targets:
        print(f"  - {message_id}")
    if dry_run:
        return

    if kind == "empty":
        fixed = repair.repair_empty_content(session_id)
    elif kind == "thinking-order":
        fixed = any([repair.prepend_thinking_part(session_id, message_id) for message_id in targets])
    else:
        fixed = any([repair.strip_thinking_parts(message_id) for message_id in targets])
    print("Repaired." if fixed else "No changes written.")


def _loop(args) -> None:
    loop = BoundedLoop(TranscriptStore(args.storage), client=None, directory=args.dir)
    if args.loop_cmd == "start":
        ok = loop.start(args.session_id, args.prompt, max_iterations=args.max, completion_promise=args.promise)
        print("Loop started." if ok else "Failed to write loop state.")
    elif args.loop_cmd == "cancel":
        print("Loop cancelled." if loop.cancel(args.session_id) else "No loop owned by this session.")
    else:
        state = loop.get_state()
        if state is None:
            print("No active loop.")
            return
        print(f"session: {state.session_id}")
        print(f"iteration: {state.iteration}/{state.max_iterations}")
        print(f"promise: {state.completion_promise}")
        print(f"started_at: {state.started_at}")
        print(f"prompt:\n{state.prompt}")


def _show_logs(n: int) -> None:
    try:
        with open(LOG_FILE) as f:
            lines = f.readlines()
    except FileNotFoundError:
        print(f"Log file not found: {LOG_FILE}")
        return
    tail = lines[-n:] if len(lines) > n else lines
    print(f"--- last {len(tail)} of {len(lines)} log entries ---")
    print("".join(tail), end="")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="python -m resilience",
        description=f"Session resilience layer v{VERSION}: classify, prune and repair agent sessions",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    classify_parser = sub.add_parser("classify", help="Classify a provider error (text or JSON)")
    classify_parser.add_argument("error", help="Error message or JSON payload")
    classify_parser.add_argument("--provider", help="Provider id for registry fallback")
    classify_parser.add_argument("--model", help="Model id for registry fallback")

    prune_parser = sub.add_parser("prune", help="Dry-run pruning marks for a stored session")
    prune_parser.add_argument("session_id", help="Session ID")
    prune_parser.add_argument("--mode", choices=PRUNING_MODES, default="all", help="Pruning strategy")
    prune_parser.add_argument("--storage", help="Storage root (default: host storage dir)")

    repair_parser = sub.add_parser("repair", help="Repair a stored session transcript")
    repair_parser.add_argument("session_id", help="Session ID")
    repair_parser.add_argument("--kind", choices=REPAIR_KINDS, default="empty", help="Repair to apply")
    repair_parser.add_argument("--storage", help="Storage root (default: host storage dir)")
    repair_parser.add_argument("--dry-run", action="store_true", help="Only list affected messages")

    loop_parser = sub.add_parser("loop", help="Bounded self-loop state")
    loop_parser.add_argument("--dir", default=os.getcwd(), help="Project directory holding loop state")
    loop_parser.add_argument("--storage", help="Storage root (default: host storage dir)")
    loop_sub = loop_parser.add_subparsers(dest="loop_cmd")
    loop_start = loop_sub.add_parser("start", help="Start a loop for a session")
    loop_start.add_argument("session_id", help="Session ID")
    loop_start.add_argument("prompt", help="Task prompt")
    loop_start.add_argument("--max", type=int, help="Max iterations")
    loop_start.add_argument("--promise", help="Completion promise text")
    loop_cancel = loop_sub.add_parser("cancel", help="Cancel the loop")
    loop_cancel.add_argument("session_id", help="Owning session ID")
    loop_sub.add_parser("status", help="Show loop state")

    sub.add_parser("status", help="Show configuration")

    logs_parser = sub.add_parser("logs", help="Show log tail")
    logs_parser.add_argument("n", type=int, nargs="?", default=30, help="Number of lines")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    if args.command not in ("status", "logs"):
        setup_logging(logging.DEBUG if args.verbose else logging.WARNING)

    if args.command == "classify":
        _classify(args.error, args.provider, args.model)
    elif args.command == "prune":
        asyncio.run(_prune(args.session_id, args.mode, args.storage))
    elif args.command == "repair":
        _repair(args.session_id, args.kind, args.storage, args.dry_run)
    elif args.command == "loop":
        if args.loop_cmd is None:
            loop_parser.print_help()
        else:
            _loop(args)
    elif args.command == "status":
        print(_builtin_status())
    elif args.command == "logs":
        _show_logs(args.n)
    else:
        parser.print_help()
