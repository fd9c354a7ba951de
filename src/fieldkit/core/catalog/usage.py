"""
Usage statistics for fieldkit tools.

Every finished session is folded into per-tool counters kept in
usage.json under the data directory. The counters are never pruned, so
they outlive the bounded session history.

Example:
    store = UsageStore(config.usage_file)
    store.record(result, tool_name="Reindex")

    for usage in store.top(5):
        print(f"{usage.tool_id}: {usage.runs} runs, {usage.success_rate():.0f}% ok")
"""

import json
import logging
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from fieldkit.core.catalog.models import SessionResult

logger = logging.getLogger(__name__)


class ToolUsage(BaseModel):
    """
    Execution statistics for one tool.

    Attributes:
        tool_id: Tool the counters belong to
        tool_name: Display name at the time of the last run
        runs: Finished sessions
        successes: Sessions that ended Completed
        failures: Sessions that ended Failed
        total_duration_ms: Summed session durations
        min_duration_ms: Shortest session
        max_duration_ms: Longest session
        failure_reasons: Failed sessions per reason code
        first_run_at: Start of the first recorded session
        last_run_at: Start of the most recent session
    """

    tool_id: str = Field(..., min_length=1)
    tool_name: str = Field(default="")
    runs: int = Field(default=0, ge=0)
    successes: int = Field(default=0, ge=0)
    failures: int = Field(default=0, ge=0)
    total_duration_ms: int = Field(default=0, ge=0)
    min_duration_ms: int | None = None
    max_duration_ms: int | None = None
    failure_reasons: dict[str, int] = Field(default_factory=dict)
    first_run_at: datetime | None = None
    last_run_at: datetime | None = None

    @field_validator("first_run_at", "last_run_at", mode="before")
    @classmethod
    def normalize_timestamps(cls, v: datetime | str | None) -> datetime | None:
        if isinstance(v, str):
            v = datetime.fromisoformat(v)
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def avg_duration_ms(self) -> float:
        if self.runs == 0:
            return 0.0
        return self.total_duration_ms / self.runs

    def success_rate(self) -> float:
        """Percentage of runs that completed (0.0 with no runs)."""
        if self.runs == 0:
            return 0.0
        return (self.successes / self.runs) * 100

    def record(self, result: SessionResult) -> None:
        """Fold one finished session into the counters."""
        self.runs += 1
        if result.success:
            self.successes += 1
        else:
            self.failures += 1
            if result.reason is not None:
                key = result.reason.value
                self.failure_reasons[key] = self.failure_reasons.get(key, 0) + 1

        self.total_duration_ms += result.duration_ms
        if self.min_duration_ms is None or result.duration_ms < self.min_duration_ms:
            self.min_duration_ms = result.duration_ms
        if self.max_duration_ms is None or result.duration_ms > self.max_duration_ms:
            self.max_duration_ms = result.duration_ms

        if self.first_run_at is None:
            self.first_run_at = result.started_at
        self.last_run_at = result.started_at


class UsageSummary(BaseModel):
    """Totals over every tool."""

    tools: int = 0
    runs: int = 0
    successes: int = 0
    failures: int = 0
    total_duration_ms: int = 0

    def success_rate(self) -> float:
        if self.runs == 0:
            return 0.0
        return (self.successes / self.runs) * 100


class UsageStore:
    """
    Per-tool usage counters in a single JSON file.

    Writes go to a temp file in the same directory and are then renamed
    over usage.json, so a crash never leaves a half-written file.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> dict[str, ToolUsage]:
        """
        Load all counters.

        A missing file is empty; an unreadable one is logged and treated as
        empty (the next record starts it over).
        """
        if not self.path.exists():
            return {}
        try:
            with self.path.open(encoding="utf-8") as f:
                data = json.load(f)
            return {
                tool_id: ToolUsage.model_validate(usage) for tool_id, usage in data.items()
            }
        except (OSError, json.JSONDecodeError, AttributeError, PydanticValidationError) as e:
            logger.warning(f"Ignoring unreadable usage file {self.path}: {e}")
            return {}

    def save(self, usage: dict[str, ToolUsage]) -> Path:
        """
        Write all counters atomically.

        Raises:
            OSError: If the file cannot be written
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {tool_id: item.model_dump(mode="json") for tool_id, item in usage.items()}

        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=self.path.parent,
            delete=False,
            suffix=".tmp",
        ) as tmp:
            json.dump(data, tmp, indent=2)
            tmp_path = Path(tmp.name)
        tmp_path.replace(self.path)
        return self.path

    def record(self, result: SessionResult, tool_name: str = "") -> ToolUsage:
        """
        Record a finished session and save.

        Raises:
            OSError: If the counters cannot be saved
        """
        with self._lock:
            usage = self.load()
            item = usage.get(result.tool_id)
            if item is None:
                item = usage[result.tool_id] = ToolUsage(tool_id=result.tool_id)
            if tool_name:
                item.tool_name = tool_name
            item.record(result)
            self.save(usage)
            return item

    def get(self, tool_id: str) -> ToolUsage | None:
        with self._lock:
            return self.load().get(tool_id)

    def top(self, count: int | None = None) -> list[ToolUsage]:
        """Most-run tools first; ties go to the most recently run."""
        with self._lock:
            items = list(self.load().values())
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        items.sort(key=lambda u: (u.runs, u.last_run_at or epoch), reverse=True)
        return items if count is None else items[:count]

    def summary(self) -> UsageSummary:
        with self._lock:
            items = list(self.load().values())
        return UsageSummary(
            tools=len(items),
            runs=sum(u.runs for u in items),
            successes=sum(u.successes for u in items),
            failures=sum(u.failures for u in items),
            total_duration_ms=sum(u.total_duration_ms for u in items),
        )

    def clear(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)
