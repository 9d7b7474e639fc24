"""File-backed transcript store in the host's on-disk layout.

Layout under the storage root:
- message/<session_id>/<message_id>.json  (message info)
- message/<project>/<session_id>/...       (nested variant, one level deep)
- part/<message_id>/<part_id>.json         (one part per file)

Ids are monotonic, so sorting file names gives chronological order.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from resilience.config import STORAGE_DIR
from resilience.errors import TranscriptError
from resilience.transcript.parts import MessageInfo, Part, PersistedMessage, part_from_dict

logger = logging.getLogger(__name__)


def id_between(lo: str | None, hi: str | None, tag: str) -> str:
    """Build an id that sorts strictly between ``lo`` and ``hi``.

    Either bound may be None (open interval). Used to place injected parts at
    an exact position without renaming existing parts.
    """
    if hi is None:
        return f"{lo or 'prt'}~{tag}"

    floor = lo or ""
    i = 0
    while i < len(floor) and i < len(hi) and floor[i] == hi[i]:
        i += 1
    if i < len(floor):
        # floor[i] < hi[i], so any extension of floor stays below hi
        return f"{floor}~{tag}"

    # floor is a prefix of hi: step down at the deepest position we can
    for j in range(len(hi) - 1, i - 1, -1):
        if hi[j] > "0":
            return f"{hi[:j]}0_{tag}"
    if len(hi) - 1 > len(floor):
        return hi[:-1]
    raise TranscriptError(hi, f"no id fits between {lo!r} and {hi!r}")


class TranscriptStore:
    """Reads and writes the persisted message/part log.

    Example:
        store = TranscriptStore("/path/to/storage")
        for msg in store.read_messages("ses_123"):
            print(msg.role, len(msg.parts))

    """

    def __init__(self, storage_dir: str | os.PathLike | None = None):
        self.root = Path(storage_dir or STORAGE_DIR)
        self.message_root = self.root / "message"
        self.part_root = self.root / "part"

    # ------------------------------------------------------------------
    # Low-level JSON access
    # ------------------------------------------------------------------

    @staticmethod
    def _read_json(path: Path) -> dict[str, Any] | None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("[store] Skipping unreadable %s: %s", path, e)
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _write_json(path: Path, data: dict[str, Any]) -> None:
        """Write atomically (temp file + replace) so readers never see half a part."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp, path)
        except OSError as e:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise TranscriptError(str(path), str(e)) from e

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def message_dir(self, session_id: str) -> Path | None:
        """Directory holding a session's message files, or None."""
        direct = self.message_root / session_id
        if direct.is_dir():
            return direct
        if not self.message_root.is_dir():
            return None
        for project in sorted(self.message_root.iterdir()):
            nested = project / session_id
            if project.is_dir() and nested.is_dir():
                return nested
        return None

    def read_message_infos(self, session_id: str) -> list[MessageInfo]:
        directory = self.message_dir(session_id)
        if directory is None:
            return []
        infos = []
        for path in sorted(directory.glob("*.json")):
            data = self._read_json(path)
            if data is None:
                continue
            data.setdefault("id", path.stem)
            data.setdefault("sessionID", session_id)
            infos.append(MessageInfo.from_dict(data))
        infos.sort(key=lambda info: info.id)
        return infos

    def read_parts(self, message_id: str) -> list[Part]:
        """Parts of one message, ordered by part id."""
        directory = self.part_root / message_id
        if not directory.is_dir():
            return []
        parts = []
        for path in sorted(directory.glob("*.json")):
            data = self._read_json(path)
            if data is None:
                continue
            data.setdefault("id", path.stem)
            data.setdefault("messageID", message_id)
            parts.append(part_from_dict(data))
        parts.sort(key=lambda p: p.id)
        return parts

    def read_messages(self, session_id: str) -> list[PersistedMessage]:
        """All messages of a session with their parts, oldest first."""
        return [
            PersistedMessage(info=info, parts=self.read_parts(info.id))
            for info in self.read_message_infos(session_id)
        ]

    def read_message(self, session_id: str, message_id: str) -> PersistedMessage | None:
        directory = self.message_dir(session_id)
        if directory is None:
            return None
        data = self._read_json(directory / f"{message_id}.json")
        if data is None:
            return None
        data.setdefault("id", message_id)
        data.setdefault("sessionID", session_id)
        return PersistedMessage(info=MessageInfo.from_dict(data), parts=self.read_parts(message_id))

    def write_message(self, info: MessageInfo) -> None:
        directory = self.message_dir(info.session_id) or self.message_root / info.session_id
        data = dict(info.raw)
        data.update({"id": info.id, "sessionID": info.session_id, "role": info.role})
        self._write_json(directory / f"{info.id}.json", data)

    def find_last_assistant(self, session_id: str) -> PersistedMessage | None:
        for info in reversed(self.read_message_infos(session_id)):
            if info.role == "assistant":
                return PersistedMessage(info=info, parts=self.read_parts(info.id))
        return None

    def find_nearest_message_with_fields(self, session_id: str) -> MessageInfo | None:
        """Most recent message carrying an agent or model (for re-prompting)."""
        infos = self.read_message_infos(session_id)
        for info in reversed(infos):
            if info.agent and info.provider_id and info.model_id:
                return info
        for info in reversed(infos):
            if info.agent or (info.provider_id and info.model_id):
                return info
        return None

    # ------------------------------------------------------------------
    # Parts
    # ------------------------------------------------------------------

    def part_path(self, message_id: str, part_id: str) -> Path:
        return self.part_root / message_id / f"{part_id}.json"

    def write_part(self, part: Part) -> None:
        if not part.message_id:
            raise TranscriptError(part.id, "part has no message id")
        self._write_json(self.part_path(part.message_id, part.id), part.to_dict())

    def delete_part(self, message_id: str, part_id: str) -> bool:
        path = self.part_path(message_id, part_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def part_exists(self, message_id: str, part_id: str) -> bool:
        return self.part_path(message_id, part_id).exists()
