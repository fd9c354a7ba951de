"""Tests for the JSONL session history store."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from fieldkit.core.catalog.history import HistoryEntry, HistoryStore
from fieldkit.core.catalog.models import (
    FailureReason,
    OutputLine,
    OutputStream,
    SessionResult,
    ToolState,
)


def _entry(tool_id: str, n: int = 0, state: ToolState = ToolState.COMPLETED) -> HistoryEntry:
    started = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc) + timedelta(minutes=n)
    return HistoryEntry(
        session_id=f"s{n}",
        tool_id=tool_id,
        state=state,
        exit_code=0 if state == ToolState.COMPLETED else 1,
        started_at=started,
        finished_at=started + timedelta(seconds=5),
        duration_ms=5000,
    )


@pytest.fixture
def store(tmp_path: Path) -> HistoryStore:
    return HistoryStore(tmp_path / "history.jsonl", max_entries=3)


class TestHistoryEntry:
    def test_from_result(self) -> None:
        now = datetime.now(timezone.utc)
        result = SessionResult(
            session_id="abc",
            tool_id="reindex",
            state=ToolState.FAILED,
            exit_code=3,
            reason=FailureReason.NON_ZERO_EXIT,
            detail="Process exited with code 3",
            args=["--all"],
            started_at=now,
            finished_at=now,
            duration_ms=120,
            output=(
                OutputLine(stream=OutputStream.STDOUT, timestamp=1.0, text="a"),
                OutputLine(stream=OutputStream.STDERR, timestamp=2.0, text="b"),
            ),
        )

        entry = HistoryEntry.from_result(result, version="2.0")

        assert entry.version == "2.0"
        assert entry.reason == FailureReason.NON_ZERO_EXIT
        assert entry.args == ["--all"]
        assert entry.output_lines == 2


class TestHistoryStore:
    """Test suite for HistoryStore."""

    def test_empty(self, store: HistoryStore) -> None:
        assert store.recent() == []
        assert not store.path.exists()

    def test_append_writes_one_json_line(self, store: HistoryStore) -> None:
        store.append(_entry("a"))

        lines = store.path.read_text().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["tool_id"] == "a"

    def test_recent_is_newest_first(self, store: HistoryStore) -> None:
        for n, tool_id in enumerate(["a", "b", "c"]):
            store.append(_entry(tool_id, n))

        assert [e.tool_id for e in store.recent()] == ["c", "b", "a"]
        assert [e.tool_id for e in store.recent(2)] == ["c", "b"]

    def test_prunes_to_max_entries(self, store: HistoryStore) -> None:
        for n in range(5):
            store.append(_entry("a", n))

        assert [e.session_id for e in store.recent()] == ["s4", "s3", "s2"]
        assert len(store.path.read_text().splitlines()) == 3

    def test_for_tool(self, store: HistoryStore) -> None:
        store.append(_entry("a", 0))
        store.append(_entry("b", 1))
        store.append(_entry("a", 2, state=ToolState.FAILED))

        entries = store.for_tool("a")
        assert [e.session_id for e in entries] == ["s2", "s0"]
        assert entries[0].state == ToolState.FAILED
        assert len(store.for_tool("a", 1)) == 1

    def test_skips_unreadable_lines(self, store: HistoryStore, caplog) -> None:
        store.append(_entry("a", 0))
        with store.path.open("a") as f:
            f.write("{not json\n")
        store.append(_entry("b", 1))

        assert [e.tool_id for e in store.recent()] == ["b", "a"]
        assert "Skipping unreadable history line" in caplog.text

    def test_clear(self, store: HistoryStore) -> None:
        store.append(_entry("a"))
        store.clear()
        store.clear()
        assert store.recent() == []

    def test_rejects_zero_max_entries(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="at least 1"):
            HistoryStore(tmp_path / "h.jsonl", max_entries=0)
