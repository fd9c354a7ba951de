"""
Event delivery from the engine to the presentation layer.

Subscribers register a callback and receive every status change and
every captured output line. Callbacks run synchronously on the thread
that published the event, in publish order, so they should hand work
off quickly (e.g. schedule a UI update) rather than block.

Example:
    >>> bus = EventBus()
    >>> def on_event(event: CatalogEvent) -> None:
    ...     if isinstance(event, StatusChangedEvent):
    ...         print(f"{event.tool_id}: {event.current.value}")
    >>> unsubscribe = bus.subscribe(on_event)
    >>> unsubscribe()
"""

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Union

from pydantic import BaseModel, ConfigDict, Field

from fieldkit.core.catalog.models import FailureReason, OutputLine, ToolState

logger = logging.getLogger(__name__)


class StatusChangedEvent(BaseModel):
    """A tool moved from one lifecycle state to another."""

    tool_id: str
    previous: ToolState | None
    current: ToolState
    reason: FailureReason | None = None
    detail: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


class OutputLineEvent(BaseModel):
    """A running session produced a line of output."""

    tool_id: str
    session_id: str
    line: OutputLine

    model_config = ConfigDict(frozen=True)


CatalogEvent = Union[StatusChangedEvent, OutputLineEvent]
EventCallback = Callable[[CatalogEvent], None]


class EventBus:
    """
    Fan-out of catalog events to subscribers.

    A failing subscriber is logged and skipped; it never interrupts the
    engine or other subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: list[EventCallback] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """
        Register a callback.

        Returns:
            A function that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: CatalogEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Event subscriber failed on {type(event).__name__}")

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
