"""
Per-tool lifecycle state machine.

The tracker is the single source of truth for whether a tool is known,
cached, stale, running or finished. Every change goes through ``apply``,
which checks the transition table and rejects anything not listed.

Transition table:

    event            from                                          to
    ---------------  --------------------------------------------  --------------------
    DISCOVERED       (none) / idle                                 AVAILABLE
    CACHE_VERIFIED   (none) / idle                                 CACHED
    VERSION_CHANGED  (none) / idle                                 STALE
    WENT_OFFLINE     (none) / idle                                 UNAVAILABLE_OFFLINE
    DOWNLOADED       AVAILABLE, CACHED, STALE, UNAVAILABLE_OFFLINE CACHED
    DOWNLOAD_FAILED  AVAILABLE, CACHED, STALE, UNAVAILABLE_OFFLINE FAILED
    PREFLIGHT_FAILED CACHED, STALE                                 FAILED
    STARTED          CACHED, STALE                                 RUNNING
    EXITED_OK        RUNNING                                       COMPLETED
    FAILED           RUNNING                                       FAILED
    ACKNOWLEDGED     COMPLETED, FAILED                             AVAILABLE, CACHED or STALE

"idle" is AVAILABLE, CACHED, STALE or UNAVAILABLE_OFFLINE. The first four
rows are reconciliation: they restate what the manifest and the cache
say about a tool that has no session and no pending result.

Status changes are published on the event bus after the tracker lock is
released, so a subscriber may safely read the tracker.
"""

import logging
import threading
from datetime import datetime, timezone
from enum import Enum

from fieldkit.core.catalog.events import EventBus, StatusChangedEvent
from fieldkit.core.catalog.exceptions import IllegalTransitionError
from fieldkit.core.catalog.models import (
    FailureReason,
    SessionResult,
    ToolState,
    ToolStatus,
)

logger = logging.getLogger(__name__)


class StatusEvent(str, Enum):
    """Events that drive lifecycle transitions."""

    DISCOVERED = "discovered"
    CACHE_VERIFIED = "cache_verified"
    VERSION_CHANGED = "version_changed"
    WENT_OFFLINE = "went_offline"
    DOWNLOADED = "downloaded"
    DOWNLOAD_FAILED = "download_failed"
    PREFLIGHT_FAILED = "preflight_failed"
    STARTED = "started"
    EXITED_OK = "exited_ok"
    FAILED = "failed"
    ACKNOWLEDGED = "acknowledged"


_IDLE: frozenset[ToolState | None] = frozenset(
    {
        None,
        ToolState.AVAILABLE,
        ToolState.CACHED,
        ToolState.STALE,
        ToolState.UNAVAILABLE_OFFLINE,
    }
)
_KNOWN_IDLE: frozenset[ToolState | None] = _IDLE - {None}

# event -> (allowed from-states, target; None means chosen by the caller)
TRANSITIONS: dict[StatusEvent, tuple[frozenset[ToolState | None], ToolState | None]] = {
    StatusEvent.DISCOVERED: (_IDLE, ToolState.AVAILABLE),
    StatusEvent.CACHE_VERIFIED: (_IDLE, ToolState.CACHED),
    StatusEvent.VERSION_CHANGED: (_IDLE, ToolState.STALE),
    StatusEvent.WENT_OFFLINE: (_IDLE, ToolState.UNAVAILABLE_OFFLINE),
    StatusEvent.DOWNLOADED: (_KNOWN_IDLE, ToolState.CACHED),
    StatusEvent.DOWNLOAD_FAILED: (_KNOWN_IDLE, ToolState.FAILED),
    StatusEvent.PREFLIGHT_FAILED: (frozenset({ToolState.CACHED, ToolState.STALE}), ToolState.FAILED),
    StatusEvent.STARTED: (frozenset({ToolState.CACHED, ToolState.STALE}), ToolState.RUNNING),
    StatusEvent.EXITED_OK: (frozenset({ToolState.RUNNING}), ToolState.COMPLETED),
    StatusEvent.FAILED: (frozenset({ToolState.RUNNING}), ToolState.FAILED),
    StatusEvent.ACKNOWLEDGED: (frozenset({ToolState.COMPLETED, ToolState.FAILED}), None),
}

_ACKNOWLEDGE_TARGETS = frozenset({ToolState.AVAILABLE, ToolState.CACHED, ToolState.STALE})


class ToolStatusTracker:
    """
    Lifecycle state per tool id.

    Thread-safe. Ordering of transitions for a single tool is the
    caller's responsibility (the engine holds a per-tool lock across a
    whole run); the tracker only guarantees each transition is legal.
    """

    def __init__(self, events: EventBus | None = None) -> None:
        self._events = events
        self._statuses: dict[str, ToolStatus] = {}
        self._lock = threading.Lock()

    def get(self, tool_id: str) -> ToolStatus | None:
        with self._lock:
            return self._statuses.get(tool_id)

    def state(self, tool_id: str) -> ToolState | None:
        status = self.get(tool_id)
        return status.state if status is not None else None

    def all(self) -> dict[str, ToolStatus]:
        with self._lock:
            return dict(self._statuses)

    def apply(
        self,
        tool_id: str,
        event: StatusEvent,
        *,
        target: ToolState | None = None,
        result: SessionResult | None = None,
        reason: FailureReason | None = None,
        detail: str | None = None,
    ) -> ToolStatus:
        """
        Apply a lifecycle event.

        Args:
            tool_id: Tool to transition
            event: What happened
            target: Destination for ACKNOWLEDGED (AVAILABLE, CACHED or STALE)
            result: Session result for terminal transitions
            reason: Failure reason for the failing events
            detail: Human-readable detail

        Returns:
            The new ToolStatus

        Raises:
            IllegalTransitionError: If the event is not allowed from the current state
            ValueError: If ACKNOWLEDGED is given an invalid target
        """
        allowed, fixed_target = TRANSITIONS[event]

        if event == StatusEvent.ACKNOWLEDGED:
            if target not in _ACKNOWLEDGE_TARGETS:
                raise ValueError(f"Invalid acknowledge target: {target}")
            new_state = target
        else:
            new_state = fixed_target
        assert new_state is not None

        with self._lock:
            current = self._statuses.get(tool_id)
            previous = current.state if current is not None else None
            if previous not in allowed:
                raise IllegalTransitionError(tool_id, previous.value if previous else None, event.value)

            is_failure = new_state == ToolState.FAILED
            status = ToolStatus(
                tool_id=tool_id,
                state=new_state,
                updated_at=datetime.now(timezone.utc),
                reason=reason if is_failure else None,
                detail=detail if is_failure else None,
                last_result=result if result is not None else (
                    current.last_result if current is not None else None
                ),
            )
            self._statuses[tool_id] = status

        if previous != new_state or result is not None:
            logger.debug(
                f"{tool_id}: {previous.value if previous else '-'} -> {new_state.value} "
                f"({event.value})"
            )
            if self._events is not None:
                self._events.publish(
                    StatusChangedEvent(
                        tool_id=tool_id,
                        previous=previous,
                        current=new_state,
                        reason=status.reason,
                        detail=status.detail,
                    )
                )
        return status

    def reconcile(self, tool_id: str, *, cached: bool, stale: bool, offline: bool) -> ToolStatus:
        """
        Restate an idle tool from manifest and cache facts.

        Args:
            tool_id: Tool id from the active manifest
            cached: Whether a verified cache entry exists
            stale: Whether that entry's version differs from the manifest
            offline: Whether the manifest source was unreachable
        """
        if cached:
            event = StatusEvent.VERSION_CHANGED if stale else StatusEvent.CACHE_VERIFIED
        elif offline:
            event = StatusEvent.WENT_OFFLINE
        else:
            event = StatusEvent.DISCOVERED
        return self.apply(tool_id, event)

    def mark_cached(self, tool_id: str) -> ToolStatus:
        return self.apply(tool_id, StatusEvent.DOWNLOADED)

    def mark_download_failed(self, tool_id: str, detail: str) -> ToolStatus:
        return self.apply(
            tool_id,
            StatusEvent.DOWNLOAD_FAILED,
            reason=FailureReason.DOWNLOAD_FAILED,
            detail=detail,
        )

    def mark_preflight_failed(self, tool_id: str, detail: str) -> ToolStatus:
        return self.apply(
            tool_id,
            StatusEvent.PREFLIGHT_FAILED,
            reason=FailureReason.PREFLIGHT_FAILED,
            detail=detail,
        )

    def mark_offline(self, tool_id: str) -> ToolStatus:
        return self.apply(tool_id, StatusEvent.WENT_OFFLINE)

    def mark_running(self, tool_id: str) -> ToolStatus:
        return self.apply(tool_id, StatusEvent.STARTED)

    def mark_finished(self, result: SessionResult) -> ToolStatus:
        """Record the terminal result of a session."""
        if result.state == ToolState.COMPLETED:
            return self.apply(result.tool_id, StatusEvent.EXITED_OK, result=result)
        return self.apply(
            result.tool_id,
            StatusEvent.FAILED,
            result=result,
            reason=result.reason,
            detail=result.detail,
        )

    def acknowledge(self, tool_id: str, target: ToolState) -> ToolStatus:
        return self.apply(tool_id, StatusEvent.ACKNOWLEDGED, target=target)

    def forget(self, tool_id: str) -> None:
        """
        Drop an idle tool (removed from the manifest).

        Raises:
            IllegalTransitionError: If the tool is running or has a pending result
        """
        with self._lock:
            current = self._statuses.get(tool_id)
            if current is None:
                return
            if not current.state.is_idle:
                raise IllegalTransitionError(tool_id, current.state.value, "forget")
            del self._statuses[tool_id]
