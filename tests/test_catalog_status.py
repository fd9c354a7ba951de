"""Tests for the tool lifecycle tracker."""

from datetime import datetime, timezone

import pytest

from fieldkit.core.catalog.events import EventBus, StatusChangedEvent
from fieldkit.core.catalog.exceptions import IllegalTransitionError
from fieldkit.core.catalog.models import FailureReason, SessionResult, ToolState
from fieldkit.core.catalog.status import StatusEvent, ToolStatusTracker


def _result(tool_id: str, state: ToolState, **kwargs) -> SessionResult:
    now = datetime.now(timezone.utc)
    return SessionResult(
        session_id="s1", tool_id=tool_id, state=state, started_at=now, finished_at=now, **kwargs
    )


@pytest.fixture
def events() -> list[StatusChangedEvent]:
    return []


@pytest.fixture
def tracker(events) -> ToolStatusTracker:
    bus = EventBus()
    bus.subscribe(events.append)
    return ToolStatusTracker(bus)


class TestReconcile:
    """Test suite for manifest/cache reconciliation."""

    def test_new_tool_without_cache_is_available(self, tracker) -> None:
        status = tracker.reconcile("a", cached=False, stale=False, offline=False)
        assert status.state == ToolState.AVAILABLE

    def test_cached_and_stale(self, tracker) -> None:
        assert tracker.reconcile("a", cached=True, stale=False, offline=False).state == ToolState.CACHED
        assert tracker.reconcile("a", cached=True, stale=True, offline=False).state == ToolState.STALE

    def test_offline_without_cache(self, tracker) -> None:
        status = tracker.reconcile("a", cached=False, stale=False, offline=True)
        assert status.state == ToolState.UNAVAILABLE_OFFLINE

    def test_offline_with_cache_stays_cached(self, tracker) -> None:
        status = tracker.reconcile("a", cached=True, stale=False, offline=True)
        assert status.state == ToolState.CACHED

    def test_corrupt_entry_drops_back_to_available(self, tracker) -> None:
        tracker.reconcile("a", cached=True, stale=False, offline=False)
        assert tracker.reconcile("a", cached=False, stale=False, offline=False).state == ToolState.AVAILABLE

    def test_refuses_running_tool(self, tracker) -> None:
        tracker.reconcile("a", cached=True, stale=False, offline=False)
        tracker.mark_running("a")
        with pytest.raises(IllegalTransitionError):
            tracker.reconcile("a", cached=False, stale=False, offline=True)
        assert tracker.state("a") == ToolState.RUNNING


class TestRunLifecycle:
    """Test suite for download, run and acknowledge transitions."""

    def test_full_cycle(self, tracker) -> None:
        tracker.reconcile("a", cached=False, stale=False, offline=False)
        tracker.mark_cached("a")
        tracker.mark_running("a")
        result = _result("a", ToolState.COMPLETED, exit_code=0)
        status = tracker.mark_finished(result)

        assert status.state == ToolState.COMPLETED
        assert status.last_result == result

        status = tracker.acknowledge("a", ToolState.CACHED)
        assert status.state == ToolState.CACHED
        assert status.last_result == result

    def test_failure_records_reason(self, tracker) -> None:
        tracker.reconcile("a", cached=True, stale=False, offline=False)
        tracker.mark_running("a")
        status = tracker.mark_finished(
            _result(
                "a",
                ToolState.FAILED,
                exit_code=3,
                reason=FailureReason.NON_ZERO_EXIT,
                detail="Process exited with code 3",
            )
        )
        assert status.state == ToolState.FAILED
        assert status.reason == FailureReason.NON_ZERO_EXIT
        assert status.detail == "Process exited with code 3"

    def test_run_requires_payload(self, tracker) -> None:
        tracker.reconcile("a", cached=False, stale=False, offline=False)
        with pytest.raises(IllegalTransitionError) as exc_info:
            tracker.mark_running("a")
        assert exc_info.value.current == "available"
        assert exc_info.value.event == "started"

    def test_run_allowed_from_stale(self, tracker) -> None:
        tracker.reconcile("a", cached=True, stale=True, offline=False)
        assert tracker.mark_running("a").state == ToolState.RUNNING

    def test_download_failure_skips_running(self, tracker) -> None:
        tracker.reconcile("a", cached=False, stale=False, offline=False)
        status = tracker.mark_download_failed("a", "HTTP 404")
        assert status.state == ToolState.FAILED
        assert status.reason == FailureReason.DOWNLOAD_FAILED
        assert tracker.acknowledge("a", ToolState.AVAILABLE).state == ToolState.AVAILABLE

    def test_preflight_failure_skips_running(self, tracker) -> None:
        tracker.reconcile("a", cached=True, stale=False, offline=False)
        status = tracker.mark_preflight_failed("a", "Administrator privileges required")
        assert status.state == ToolState.FAILED
        assert status.reason == FailureReason.PREFLIGHT_FAILED
        assert status.last_result is None
        assert tracker.acknowledge("a", ToolState.CACHED).state == ToolState.CACHED

    def test_preflight_requires_payload(self, tracker) -> None:
        tracker.reconcile("a", cached=False, stale=False, offline=False)
        with pytest.raises(IllegalTransitionError):
            tracker.mark_preflight_failed("a", "missing")

    def test_cannot_run_twice(self, tracker) -> None:
        tracker.reconcile("a", cached=True, stale=False, offline=False)
        tracker.mark_running("a")
        with pytest.raises(IllegalTransitionError):
            tracker.mark_running("a")

    def test_finish_requires_running(self, tracker) -> None:
        tracker.reconcile("a", cached=True, stale=False, offline=False)
        with pytest.raises(IllegalTransitionError):
            tracker.mark_finished(_result("a", ToolState.COMPLETED, exit_code=0))

    def test_acknowledge_requires_result(self, tracker) -> None:
        tracker.reconcile("a", cached=True, stale=False, offline=False)
        with pytest.raises(IllegalTransitionError):
            tracker.acknowledge("a", ToolState.CACHED)

    def test_acknowledge_rejects_bad_target(self, tracker) -> None:
        tracker.reconcile("a", cached=True, stale=False, offline=False)
        tracker.mark_running("a")
        tracker.mark_finished(_result("a", ToolState.COMPLETED, exit_code=0))
        with pytest.raises(ValueError, match="Invalid acknowledge target"):
            tracker.acknowledge("a", ToolState.RUNNING)

    def test_pending_result_not_overwritten_by_reconcile(self, tracker) -> None:
        tracker.reconcile("a", cached=True, stale=False, offline=False)
        tracker.mark_running("a")
        tracker.mark_finished(_result("a", ToolState.COMPLETED, exit_code=0))
        with pytest.raises(IllegalTransitionError):
            tracker.apply("a", StatusEvent.VERSION_CHANGED)
        assert tracker.state("a") == ToolState.COMPLETED

    def test_unknown_tool_cannot_download(self, tracker) -> None:
        with pytest.raises(IllegalTransitionError):
            tracker.mark_cached("never-seen")

    def test_mark_offline(self, tracker) -> None:
        tracker.reconcile("a", cached=False, stale=False, offline=False)
        assert tracker.mark_offline("a").state == ToolState.UNAVAILABLE_OFFLINE


class TestEvents:
    """Test suite for status event publication."""

    def test_every_change_is_published(self, tracker, events) -> None:
        tracker.reconcile("a", cached=False, stale=False, offline=False)
        tracker.mark_cached("a")
        tracker.mark_running("a")

        assert [(e.previous, e.current) for e in events] == [
            (None, ToolState.AVAILABLE),
            (ToolState.AVAILABLE, ToolState.CACHED),
            (ToolState.CACHED, ToolState.RUNNING),
        ]

    def test_no_event_for_unchanged_state(self, tracker, events) -> None:
        tracker.reconcile("a", cached=True, stale=False, offline=False)
        tracker.reconcile("a", cached=True, stale=False, offline=False)
        assert len(events) == 1

    def test_failure_event_carries_reason(self, tracker, events) -> None:
        tracker.reconcile("a", cached=False, stale=False, offline=False)
        tracker.mark_download_failed("a", "unreachable")
        assert events[-1].reason == FailureReason.DOWNLOAD_FAILED
        assert events[-1].detail == "unreachable"

    def test_subscriber_may_read_tracker(self) -> None:
        bus = EventBus()
        tracker = ToolStatusTracker(bus)
        seen = []
        bus.subscribe(lambda event: seen.append(tracker.state(event.tool_id)))

        tracker.reconcile("a", cached=False, stale=False, offline=False)
        assert seen == [ToolState.AVAILABLE]


class TestForget:
    def test_forget_idle(self, tracker) -> None:
        tracker.reconcile("a", cached=False, stale=False, offline=False)
        tracker.forget("a")
        assert tracker.get("a") is None
        assert "a" not in tracker.all()

    def test_forget_running_refused(self, tracker) -> None:
        tracker.reconcile("a", cached=True, stale=False, offline=False)
        tracker.mark_running("a")
        with pytest.raises(IllegalTransitionError):
            tracker.forget("a")

    def test_forget_unknown_is_noop(self, tracker) -> None:
        tracker.forget("nothing")
