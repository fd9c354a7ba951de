"""
Execution history for fieldkit.

Keeps a bounded record of finished sessions in history.jsonl (one
HistoryEntry per line, oldest first on disk). Reads return newest first.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from fieldkit.core.catalog.models import FailureReason, SessionResult, ToolState

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 50


class HistoryEntry(BaseModel):
    """Compact record of one finished session."""

    session_id: str
    tool_id: str
    version: str | None = None
    state: ToolState
    exit_code: int | None = None
    reason: FailureReason | None = None
    detail: str | None = None
    args: list[str] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime
    duration_ms: int = 0
    output_lines: int = 0

    @classmethod
    def from_result(cls, result: SessionResult, version: str | None = None) -> "HistoryEntry":
        return cls(
            session_id=result.session_id,
            tool_id=result.tool_id,
            version=version,
            state=result.state,
            exit_code=result.exit_code,
            reason=result.reason,
            detail=result.detail,
            args=result.args,
            started_at=result.started_at,
            finished_at=result.finished_at,
            duration_ms=result.duration_ms,
            output_lines=len(result.output),
        )


class HistoryStore:
    """
    Append-only JSONL history, pruned to the newest ``max_entries``.

    Example:
        >>> store = HistoryStore(Path("history.jsonl"), max_entries=50)
        >>> store.append(HistoryEntry.from_result(result, version="1.2.0"))
        >>> [entry.tool_id for entry in store.recent(5)]
    """

    def __init__(self, path: Path, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        """
        Initialize the history store.

        Args:
            path: Path of the history.jsonl file (created on first append)
            max_entries: Number of sessions kept on disk
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.path = Path(path)
        self.max_entries = max_entries
        self._lock = threading.Lock()

    def append(self, entry: HistoryEntry) -> None:
        """
        Record a finished session.

        Raises:
            OSError: If the history file cannot be written
        """
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(entry.model_dump_json())
                f.write("\n")
            self._prune()

    def recent(self, count: int | None = None) -> list[HistoryEntry]:
        """Return up to ``count`` entries, newest first."""
        with self._lock:
            entries = self._read()
        entries.reverse()
        return entries if count is None else entries[:count]

    def for_tool(self, tool_id: str, count: int | None = None) -> list[HistoryEntry]:
        entries = [entry for entry in self.recent() if entry.tool_id == tool_id]
        return entries if count is None else entries[:count]

    def clear(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)

    def _read(self) -> list[HistoryEntry]:
        if not self.path.exists():
            return []

        entries: list[HistoryEntry] = []
        with self.path.open(encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(HistoryEntry.model_validate(json.loads(line)))
                except (json.JSONDecodeError, PydanticValidationError) as e:
                    logger.warning(f"Skipping unreadable history line {line_number}: {e}")
        return entries

    def _prune(self) -> None:
        entries = self._read()
        if len(entries) <= self.max_entries:
            return

        kept = entries[-self.max_entries :]
        with self.path.open("w", encoding="utf-8") as f:
            for entry in kept:
                f.write(entry.model_dump_json())
                f.write("\n")
        logger.debug(f"Pruned history to {len(kept)} entries")
