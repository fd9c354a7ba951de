"""Tests for usage statistics."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from fieldkit.core.catalog.models import FailureReason, SessionResult, ToolState
from fieldkit.core.catalog.usage import ToolUsage, UsageStore

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def result(
    tool_id: str,
    state: ToolState = ToolState.COMPLETED,
    *,
    duration_ms: int = 100,
    minutes: int = 0,
    reason: FailureReason | None = None,
) -> SessionResult:
    started = START + timedelta(minutes=minutes)
    return SessionResult(
        session_id=f"{tool_id}-{minutes}",
        tool_id=tool_id,
        state=state,
        exit_code=0 if state == ToolState.COMPLETED else 1,
        reason=reason,
        started_at=started,
        finished_at=started + timedelta(milliseconds=duration_ms),
        duration_ms=duration_ms,
    )


@pytest.fixture
def store(tmp_path: Path) -> UsageStore:
    return UsageStore(tmp_path / "data" / "usage.json")


class TestToolUsage:
    """Test suite for per-tool counters."""

    def test_empty(self) -> None:
        usage = ToolUsage(tool_id="a")
        assert usage.avg_duration_ms == 0.0
        assert usage.success_rate() == 0.0

    def test_record(self) -> None:
        usage = ToolUsage(tool_id="a")
        usage.record(result("a", duration_ms=300))
        usage.record(result("a", ToolState.FAILED, duration_ms=100, minutes=5,
                            reason=FailureReason.TIMEOUT))

        assert (usage.runs, usage.successes, usage.failures) == (2, 1, 1)
        assert usage.success_rate() == 50.0
        assert usage.avg_duration_ms == 200.0
        assert (usage.min_duration_ms, usage.max_duration_ms) == (100, 300)
        assert usage.failure_reasons == {"timeout": 1}
        assert usage.first_run_at == START
        assert usage.last_run_at == START + timedelta(minutes=5)


class TestUsageStore:
    """Test suite for the usage file."""

    def test_missing_file_is_empty(self, store) -> None:
        assert store.load() == {}
        assert store.top() == []
        assert store.summary().runs == 0

    def test_record_persists(self, store) -> None:
        store.record(result("a"), tool_name="Alpha")
        store.record(result("a", minutes=1))

        reloaded = UsageStore(store.path).get("a")
        assert reloaded.runs == 2
        assert reloaded.tool_name == "Alpha"
        assert not list(store.path.parent.glob("*.tmp"))

    def test_top_orders_by_runs_then_recency(self, store) -> None:
        store.record(result("a", minutes=0))
        store.record(result("b", minutes=1))
        store.record(result("c", minutes=2))
        store.record(result("c", minutes=3))

        assert [u.tool_id for u in store.top()] == ["c", "b", "a"]
        assert [u.tool_id for u in store.top(2)] == ["c", "b"]

    def test_summary(self, store) -> None:
        store.record(result("a", duration_ms=100))
        store.record(result("b", ToolState.FAILED, duration_ms=50,
                            reason=FailureReason.NON_ZERO_EXIT))

        summary = store.summary()
        assert (summary.tools, summary.runs, summary.successes, summary.failures) == (2, 2, 1, 1)
        assert summary.total_duration_ms == 150
        assert summary.success_rate() == 50.0

    def test_corrupt_file_starts_over(self, store) -> None:
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json", encoding="utf-8")
        assert store.load() == {}

        store.record(result("a"))
        assert json.loads(store.path.read_text(encoding="utf-8"))["a"]["runs"] == 1

    def test_clear(self, store) -> None:
        store.record(result("a"))
        store.clear()
        assert not store.path.exists()
        store.clear()
