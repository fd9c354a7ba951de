"""
Catalog - remote tool catalog synchronization and execution.

Fetches the tool manifest, keeps tool payloads cached locally, tracks
each tool's lifecycle and runs payloads as supervised child processes.
"""

from fieldkit.core.catalog.cache import CacheStore
from fieldkit.core.catalog.engine import CatalogEngine
from fieldkit.core.catalog.events import (
    CatalogEvent,
    EventBus,
    OutputLineEvent,
    StatusChangedEvent,
)
from fieldkit.core.catalog.exceptions import (
    CacheCorruptionError,
    CacheError,
    CacheWriteError,
    CatalogError,
    ExecutionError,
    IllegalTransitionError,
    NetworkError,
    NonZeroExitError,
    ProcessLaunchError,
    ProcessTimeoutError,
    ToolBusyError,
    ToolNotFoundError,
    ValidationError,
)
from fieldkit.core.catalog.executor import ExecutionSession, Executor
from fieldkit.core.catalog.history import HistoryEntry, HistoryStore
from fieldkit.core.catalog.manifest import ManifestRepository
from fieldkit.core.catalog.models import (
    CacheEntry,
    CacheStats,
    CatalogSnapshot,
    Category,
    FailureReason,
    Manifest,
    ManifestDiff,
    ModuleDescriptor,
    OutputLine,
    OutputStream,
    SessionResult,
    ToolDescriptor,
    ToolState,
    ToolStatus,
    ToolView,
)
from fieldkit.core.catalog.status import StatusEvent, ToolStatusTracker

__all__ = [
    # Models
    "Category",
    "ToolDescriptor",
    "ModuleDescriptor",
    "Manifest",
    "ManifestDiff",
    "CacheEntry",
    "CacheStats",
    "ToolState",
    "FailureReason",
    "OutputStream",
    "OutputLine",
    "SessionResult",
    "ToolStatus",
    "ToolView",
    "CatalogSnapshot",
    # Components
    "ManifestRepository",
    "CacheStore",
    "ToolStatusTracker",
    "StatusEvent",
    "Executor",
    "ExecutionSession",
    "HistoryStore",
    "HistoryEntry",
    "CatalogEngine",
    # Events
    "EventBus",
    "CatalogEvent",
    "StatusChangedEvent",
    "OutputLineEvent",
    # Errors
    "CatalogError",
    "NetworkError",
    "ValidationError",
    "CacheError",
    "CacheCorruptionError",
    "CacheWriteError",
    "ExecutionError",
    "ProcessLaunchError",
    "ProcessTimeoutError",
    "NonZeroExitError",
    "IllegalTransitionError",
    "ToolNotFoundError",
    "ToolBusyError",
]
