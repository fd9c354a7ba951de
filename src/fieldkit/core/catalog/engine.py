"""
Catalog engine: the composition root for fieldkit.

Coordinates the manifest repository, payload cache, lifecycle tracker,
executor and history store behind a small async command API. Blocking
work (downloads, cache hashing, file writes) runs in worker threads via
``asyncio.to_thread``; process supervision is awaited on the event loop.

Example:
    config = load_config()
    engine = CatalogEngine(config)
    unsubscribe = engine.subscribe(print)

    snapshot = await engine.refresh()
    for warning in snapshot.warnings:
        print(warning)

    result = await engine.run("reindex", params={"Database": "Prod", "DryRun": True})
    print(result.state, result.exit_code)
    await engine.acknowledge_result("reindex")
"""

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone

import httpx

from fieldkit.core.catalog.cache import CacheStore, payload_file_name
from fieldkit.core.catalog.events import EventBus, EventCallback
from fieldkit.core.catalog.exceptions import (
    CacheWriteError,
    NetworkError,
    PreflightError,
    ProcessLaunchError,
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
    Manifest,
    ManifestDiff,
    SessionResult,
    ToolDescriptor,
    ToolState,
    ToolStatus,
    ToolView,
)
from fieldkit.core.catalog.parameters import resolve_arguments
from fieldkit.core.catalog.preflight import PreflightReport, run_preflight
from fieldkit.core.catalog.status import ToolStatusTracker
from fieldkit.core.catalog.usage import ToolUsage, UsageStore, UsageSummary
from fieldkit.core.config.models import FieldkitConfig

logger = logging.getLogger(__name__)


class CatalogEngine:
    """
    Fetches the catalog, keeps payloads cached and runs tools.

    One run per tool id at a time; different tools run concurrently.
    Collaborators default to ones built from ``config`` and can be
    injected for tests.
    """

    def __init__(
        self,
        config: FieldkitConfig | None = None,
        *,
        repository: ManifestRepository | None = None,
        cache: CacheStore | None = None,
        module_cache: CacheStore | None = None,
        tracker: ToolStatusTracker | None = None,
        events: EventBus | None = None,
        executor: Executor | None = None,
        history: HistoryStore | None = None,
        usage: UsageStore | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """
        Initialize the engine.

        The last-known manifest (if any) becomes the active catalog
        immediately, so an offline start still lists tools.

        Args:
            config: Engine configuration (defaults to FieldkitConfig())
            repository: Manifest source access
            cache: Tool payload cache
            module_cache: Shared-module cache
            tracker: Lifecycle tracker
            events: Event bus for status and output events
            executor: Payload executor
            history: Session history (None with history disabled in config)
            usage: Usage counters (None with usage_stats disabled in config)
            client: httpx client for the default repository
        """
        self.config = config or FieldkitConfig()
        self.events = events or EventBus()
        self.repository = repository or ManifestRepository(
            self.config.manifest_source,
            state_file=self.config.manifest_file,
            network=self.config.network,
            client=client,
        )
        self.cache = cache or CacheStore(self.config.cache_dir)
        self.module_cache = module_cache or CacheStore(self.config.modules_dir)
        self.tracker = tracker or ToolStatusTracker(self.events)
        self.executor = executor or Executor(
            self.tracker,
            execution=self.config.execution,
            modules_path=self.module_cache.root,
            events=self.events,
        )
        if history is None and self.config.history.enabled:
            history = HistoryStore(self.config.history_file, self.config.history.max_entries)
        self.history = history
        if usage is None and self.config.history.usage_stats:
            usage = UsageStore(self.config.usage_file)
        self.usage = usage

        self._manifest: Manifest | None = self.repository.load_last_known()
        self._offline = False
        self._entries: dict[str, CacheEntry] = {}
        self._tool_locks: dict[str, asyncio.Lock] = {}
        self._active: set[str] = set()
        self._refresh_lock = asyncio.Lock()

    @property
    def manifest(self) -> Manifest | None:
        """The active manifest (replaced wholesale on refresh)."""
        return self._manifest

    @property
    def offline(self) -> bool:
        """Whether the last refresh could not reach the manifest source."""
        return self._offline

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register for status-change and output-line events; returns the unsubscribe function."""
        return self.events.subscribe(callback)

    async def refresh(self, *, fetch: bool = True) -> CatalogSnapshot:
        """
        Fetch the manifest and reconcile every tool's state with the cache.

        A NetworkError keeps the active manifest and marks uncached tools
        UnavailableOffline; a ValidationError keeps the active manifest.
        Both are reported as snapshot warnings rather than raised.

        Args:
            fetch: If False, only reconcile the active manifest with the cache

        Returns:
            Immutable snapshot of the catalog after the refresh
        """
        async with self._refresh_lock:
            warnings: list[str] = []
            fetched = False
            offline = False
            diff: ManifestDiff | None = None

            if fetch:
                try:
                    manifest = await asyncio.to_thread(self.repository.fetch)
                except NetworkError as e:
                    offline = True
                    message = f"Manifest source unreachable, using last-known catalog: {e}"
                    logger.warning(message)
                    warnings.append(message)
                except ValidationError as e:
                    message = f"Manifest rejected, keeping previous catalog: {e}"
                    logger.warning(message)
                    warnings.append(message)
                else:
                    diff = self.repository.diff(self._manifest, manifest)
                    self._manifest = manifest
                    fetched = True
                    if diff.has_changes:
                        logger.info(
                            f"Catalog changed: {len(diff.added)} added, {len(diff.removed)} removed, "
                            f"{len(diff.version_changed)} updated"
                        )
                    try:
                        await asyncio.to_thread(self.repository.save_last_known, manifest)
                    except OSError as e:
                        message = f"Could not save manifest for offline use: {e}"
                        logger.warning(message)
                        warnings.append(message)

            if fetch:
                self._offline = offline
            manifest = self._manifest
            if manifest is None:
                if not warnings:
                    warnings.append("No manifest available")
                return self._build_snapshot(fetched=fetched, warnings=warnings, diff=diff)

            if fetched:
                await self._drop_removed_tools(manifest)

            for descriptor in manifest.tools:
                await self._reconcile(descriptor)

            if fetched:
                warnings.extend(await self._sync_modules(manifest))

            return self._build_snapshot(fetched=fetched, warnings=warnings, diff=diff)

    def snapshot(self) -> CatalogSnapshot:
        """Snapshot of the current state without fetching or touching the cache."""
        return self._build_snapshot(fetched=False, warnings=[], diff=None)

    async def run(
        self,
        tool_id: str,
        args: Sequence[str] = (),
        *,
        params: Mapping[str, object] | None = None,
        timeout: float | None = None,
    ) -> SessionResult:
        """
        Run a tool, downloading its payload first if it is not Cached.

        An unacknowledged result from a previous run is acknowledged
        implicitly. Non-zero exits, cancellation and timeouts are returned
        as a Failed result, not raised.

        Args:
            tool_id: Tool to run
            args: Arguments passed to the payload unmodified, after the parameters
            params: Values for the tool's declared parameters
            timeout: Time bound in seconds (defaults to the configured one)

        Returns:
            The terminal SessionResult

        Raises:
            ToolNotFoundError: If the tool is not in the active manifest
            ToolBusyError: If the tool is already running
            ParameterError: If a parameter value is rejected (nothing is changed)
            NetworkError: If the payload could not be downloaded
            CacheWriteError: If the payload could not be cached
            PreflightError: If a pre-flight check failed; the tool is
                Failed with reason ``preflight_failed``
            ProcessLaunchError: If the payload could not be started
        """
        descriptor = self._require_tool(tool_id)
        if tool_id in self._active:
            raise ToolBusyError(tool_id)
        run_args = [
            *resolve_arguments(descriptor, params, prefix=self.config.execution.parameter_prefix),
            *args,
        ]

        self._active.add(tool_id)
        launched = False
        try:
            async with self._tool_lock(tool_id):
                entry = await self._prepare(descriptor)
                if self.config.execution.preflight:
                    await self._check_preflight(descriptor)
                launched = True
                try:
                    session = await self._execute(tool_id, entry, run_args, timeout)
                except ProcessLaunchError:
                    status = self.tracker.get(tool_id)
                    if status is not None and status.last_result is not None:
                        await self._record_session(status.last_result, descriptor)
                    raise

                assert session.result is not None
                await self._record_session(session.result, descriptor)
                return session.result
        finally:
            # Once launched, _execute has released the flag and a newer run may hold it
            if not launched:
                self._active.discard(tool_id)

    async def download(self, tool_id: str) -> ToolStatus:
        """
        Make sure the current payload of a tool (and its modules) is cached.

        Raises:
            ToolNotFoundError: If the tool is not in the active manifest
            ToolBusyError: If the tool is being run
            NetworkError: If the payload could not be downloaded
            CacheWriteError: If the payload could not be cached
        """
        descriptor = self._require_tool(tool_id)
        if tool_id in self._active:
            raise ToolBusyError(tool_id)

        async with self._tool_lock(tool_id):
            await self._prepare(descriptor)
            status = self.tracker.get(tool_id)
            assert status is not None
            return status

    async def cancel(self, tool_id: str) -> SessionResult | None:
        """
        Cancel the running session for ``tool_id``.

        Returns once the process tree is gone and the tool has left
        Running: Failed (reason ``cancelled``), or Completed if the payload
        had already exited and only its output was still draining. The
        tool accepts acknowledge_result and a new run straight away.

        Returns:
            The terminal SessionResult, or None if the tool was not running
        """
        return await self.executor.cancel(tool_id)

    async def shutdown(self) -> list[SessionResult]:
        """Cancel every running session."""
        return await self.executor.cancel_all()

    async def acknowledge_result(self, tool_id: str) -> ToolStatus:
        """
        Clear a Completed/Failed result.

        The tool returns to Cached or Stale per cache freshness, or to
        Available when nothing is cached.

        Raises:
            ToolBusyError: If the tool is being run
            IllegalTransitionError: If the tool has no result to acknowledge
        """
        if tool_id in self._active:
            raise ToolBusyError(tool_id)
        async with self._tool_lock(tool_id):
            return await self._acknowledge(tool_id)

    def get_status(self, tool_id: str) -> ToolStatus | None:
        return self.tracker.get(tool_id)

    async def cache_stats(self) -> CacheStats:
        return await asyncio.to_thread(self.cache.stats)

    async def recent_history(
        self, tool_id: str | None = None, count: int | None = None
    ) -> list[HistoryEntry]:
        if self.history is None:
            return []
        if tool_id is None:
            return await asyncio.to_thread(self.history.recent, count)
        return await asyncio.to_thread(self.history.for_tool, tool_id, count)

    async def preflight(self, tool_id: str) -> PreflightReport:
        """
        Run the pre-flight checks for a tool without changing its state.

        Raises:
            ToolNotFoundError: If the tool is not in the active manifest
        """
        descriptor = self._require_tool(tool_id)
        return await asyncio.to_thread(self._preflight_report, descriptor)

    async def usage_stats(self, count: int | None = None) -> list[ToolUsage]:
        """Per-tool usage counters, most-run first."""
        if self.usage is None:
            return []
        return await asyncio.to_thread(self.usage.top, count)

    async def usage_summary(self) -> UsageSummary:
        if self.usage is None:
            return UsageSummary()
        return await asyncio.to_thread(self.usage.summary)

    def _require_tool(self, tool_id: str) -> ToolDescriptor:
        descriptor = self._manifest.get_tool(tool_id) if self._manifest else None
        if descriptor is None:
            raise ToolNotFoundError(tool_id)
        return descriptor

    def _tool_lock(self, tool_id: str) -> asyncio.Lock:
        lock = self._tool_locks.get(tool_id)
        if lock is None:
            lock = self._tool_locks[tool_id] = asyncio.Lock()
        return lock

    async def _reconcile(self, descriptor: ToolDescriptor) -> None:
        # Tools being run are reconciled by the run itself
        if descriptor.id in self._active:
            return
        async with self._tool_lock(descriptor.id):
            await self._reconcile_locked(descriptor)

    async def _reconcile_locked(self, descriptor: ToolDescriptor) -> None:
        state = self.tracker.state(descriptor.id)
        if state is not None and not state.is_idle:
            return

        entry = await asyncio.to_thread(self.cache.get, descriptor.id)
        self._remember(descriptor.id, entry)
        self.tracker.reconcile(
            descriptor.id,
            cached=entry is not None,
            stale=entry is not None and self.cache.is_stale(entry, descriptor),
            offline=self._offline,
        )

    async def _acknowledge(self, tool_id: str) -> ToolStatus:
        entry = await asyncio.to_thread(self.cache.get, tool_id)
        self._remember(tool_id, entry)
        descriptor = self._manifest.get_tool(tool_id) if self._manifest else None

        if entry is None:
            target = ToolState.AVAILABLE
        elif descriptor is not None and self.cache.is_stale(entry, descriptor):
            target = ToolState.STALE
        else:
            target = ToolState.CACHED

        status = self.tracker.acknowledge(tool_id, target)

        if descriptor is None:
            # Removed from the manifest while its result was pending
            self.tracker.forget(tool_id)
            await asyncio.to_thread(self.cache.evict, tool_id)
            self._entries.pop(tool_id, None)
        return status

    async def _prepare(self, descriptor: ToolDescriptor) -> CacheEntry:
        state = self.tracker.state(descriptor.id)
        if state is not None and state.is_terminal:
            await self._acknowledge(descriptor.id)
        elif state is None:
            await self._reconcile_locked(descriptor)

        entry = await self._ensure_payload(descriptor)
        if descriptor.dependencies:
            await self._ensure_modules(descriptor.dependencies)
        return entry

    async def _ensure_payload(self, descriptor: ToolDescriptor) -> CacheEntry:
        tool_id = descriptor.id
        entry = await asyncio.to_thread(self.cache.get, tool_id)
        if entry is not None and not self.cache.is_stale(entry, descriptor):
            self._remember(tool_id, entry)
            if self.tracker.state(tool_id) != ToolState.CACHED:
                self.tracker.reconcile(tool_id, cached=True, stale=False, offline=self._offline)
            return entry

        logger.info(f"Downloading {tool_id} v{descriptor.version}")
        try:
            data = await asyncio.to_thread(self.repository.fetch_payload, descriptor.payload_ref)
        except NetworkError as e:
            if self._offline and entry is None:
                # Source already known to be down and nothing to fall back on
                self.tracker.mark_offline(tool_id)
            else:
                self.tracker.mark_download_failed(tool_id, str(e))
            raise

        try:
            entry = await asyncio.to_thread(
                self.cache.put,
                tool_id,
                data,
                descriptor.version,
                file_name=payload_file_name(descriptor.payload_ref),
            )
        except CacheWriteError as e:
            self.tracker.mark_download_failed(tool_id, str(e))
            raise

        self._remember(tool_id, entry)
        self.tracker.mark_cached(tool_id)
        return entry

    async def _ensure_modules(self, module_ids: Sequence[str]) -> list[str]:
        """Download missing or stale shared modules; returns warnings."""
        if self._manifest is None:
            return []

        warnings: list[str] = []
        for module_id in module_ids:
            module = self._manifest.get_module(module_id)
            if module is None:
                message = f"Unknown shared module '{module_id}'"
                logger.warning(message)
                warnings.append(message)
                continue

            entry = await asyncio.to_thread(self.module_cache.get, module.id)
            if entry is not None and not self.module_cache.is_stale(entry, module):
                continue

            try:
                data = await asyncio.to_thread(self.repository.fetch_payload, module.payload_ref)
                await asyncio.to_thread(
                    self.module_cache.put,
                    module.id,
                    data,
                    module.version,
                    file_name=payload_file_name(module.payload_ref),
                )
                logger.info(f"Updated shared module {module.id} v{module.version}")
            except (NetworkError, CacheWriteError) as e:
                message = f"Shared module '{module.id}' not updated: {e}"
                logger.warning(message)
                warnings.append(message)
        return warnings

    async def _sync_modules(self, manifest: Manifest) -> list[str]:
        warnings = await self._ensure_modules([module.id for module in manifest.modules])

        known = [module.id for module in manifest.modules]
        for module_id in await asyncio.to_thread(self.module_cache.orphaned_ids, known):
            await asyncio.to_thread(self.module_cache.evict, module_id)
        return warnings

    async def _drop_removed_tools(self, manifest: Manifest) -> None:
        known = set(manifest.tool_ids())

        for tool_id, status in self.tracker.all().items():
            if tool_id in known or not status.state.is_idle or tool_id in self._active:
                continue
            self.tracker.forget(tool_id)
            self._entries.pop(tool_id, None)

        for tool_id in await asyncio.to_thread(self.cache.orphaned_ids, known):
            state = self.tracker.state(tool_id)
            if tool_id in self._active or (state is not None and not state.is_idle):
                # Evicted once its result is acknowledged
                continue
            await asyncio.to_thread(self.cache.evict, tool_id)

    async def _execute(
        self,
        tool_id: str,
        entry: CacheEntry,
        args: Sequence[str],
        timeout: float | None,
    ) -> ExecutionSession:
        try:
            return await self.executor.run(tool_id, entry.local_path, args, timeout=timeout)
        finally:
            # Busy only while the executor owns a session
            self._active.discard(tool_id)

    def _preflight_report(self, descriptor: ToolDescriptor) -> PreflightReport:
        return run_preflight(
            descriptor,
            manifest=self._manifest,
            cache=self.cache,
            module_cache=self.module_cache,
            interpreter=self.config.execution.interpreter,
        )

    async def _check_preflight(self, descriptor: ToolDescriptor) -> None:
        report = await asyncio.to_thread(self._preflight_report, descriptor)
        if report.passed:
            return
        failures = [f"{check.name}: {check.message}" for check in report.failures]
        logger.warning(f"{descriptor.id} not started: {'; '.join(failures)}")
        self.tracker.mark_preflight_failed(descriptor.id, "; ".join(failures))
        raise PreflightError(descriptor.id, failures)

    async def _record_session(self, result: SessionResult, descriptor: ToolDescriptor) -> None:
        if self.history is not None:
            try:
                await asyncio.to_thread(
                    self.history.append, HistoryEntry.from_result(result, version=descriptor.version)
                )
            except OSError as e:
                logger.warning(f"Could not record history for {result.tool_id}: {e}")
        if self.usage is not None:
            try:
                await asyncio.to_thread(self.usage.record, result, descriptor.name)
            except OSError as e:
                logger.warning(f"Could not update usage statistics for {result.tool_id}: {e}")

    def _remember(self, tool_id: str, entry: CacheEntry | None) -> None:
        if entry is None:
            self._entries.pop(tool_id, None)
        else:
            self._entries[tool_id] = entry

    def _build_snapshot(
        self,
        *,
        fetched: bool,
        warnings: list[str],
        diff: ManifestDiff | None,
    ) -> CatalogSnapshot:
        manifest = self._manifest
        if manifest is None:
            return CatalogSnapshot(
                taken_at=datetime.now(timezone.utc),
                fetched=fetched,
                offline=self._offline,
                warnings=warnings,
                diff=diff,
            )

        statuses = self.tracker.all()
        views = [
            ToolView(
                descriptor=descriptor,
                status=statuses[descriptor.id],
                cache_entry=self._entries.get(descriptor.id),
            )
            for descriptor in manifest.tools
            if descriptor.id in statuses
        ]
        return CatalogSnapshot(
            schema_version=manifest.schema_version,
            taken_at=datetime.now(timezone.utc),
            fetched=fetched,
            offline=self._offline,
            warnings=warnings,
            diff=diff,
            categories=manifest.categories,
            tools=views,
        )
