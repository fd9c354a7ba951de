"""
Supervised execution of tool payloads.

The Executor launches a cached payload as a child process and owns the
resulting ExecutionSession until it reaches a terminal state:

- The child runs in a scratch working directory unique to the session,
  in its own process group, with the shared-module cache path exported
  as FIELDKIT_MODULES_PATH. Arguments are passed through unmodified.
- stdout and stderr are read line by line as they are produced. Every
  line is appended to the session's output log and published as an
  OutputLineEvent before the next one is read.
- ``cancel`` and the optional timeout stop the whole process tree, wait
  for it to die (escalating to a forced kill after the grace period) and
  end the session as Failed with reason ``cancelled`` or ``timeout``.
  Once the exit has been observed the exit code decides the result,
  even if a stop is requested while the remaining output drains.
- Exit code 0 ends the session as Completed, anything else as Failed
  with the code recorded verbatim.
- The scratch directory and the process handle are released on every
  exit path before ``run`` returns or raises.

Example:
    executor = Executor(tracker, execution=config.execution, modules_path=config.modules_dir)
    session = await executor.run("reindex", entry.local_path, ["--dry-run"], timeout=600)
    print(session.result.state, session.result.exit_code)
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from fieldkit.core.catalog.events import EventBus, OutputLineEvent
from fieldkit.core.catalog.exceptions import (
    NonZeroExitError,
    ProcessLaunchError,
    ProcessTimeoutError,
    ToolBusyError,
)
from fieldkit.core.catalog.models import (
    FailureReason,
    OutputLine,
    OutputStream,
    SessionResult,
    ToolState,
)
from fieldkit.core.catalog.process import (
    IS_UNIX,
    is_process_running,
    kill_process_group,
    process_group_kwargs,
    terminate_process_tree,
)
from fieldkit.core.catalog.status import ToolStatusTracker
from fieldkit.core.config.models import ExecutionConfig

logger = logging.getLogger(__name__)

MODULES_PATH_ENV = "FIELDKIT_MODULES_PATH"
TOOL_ID_ENV = "FIELDKIT_TOOL_ID"
SESSION_ID_ENV = "FIELDKIT_SESSION_ID"

# How long to keep reading output after the leader exited before the
# rest of the process group is killed to release the pipes.
DRAIN_TIMEOUT_SECONDS = 2.0


@dataclass
class ExecutionSession:
    """
    One execution attempt of a tool payload.

    Mutable while running and owned by the Executor. Once terminal,
    ``result`` holds the immutable SessionResult and ``process`` is None.
    """

    tool_id: str
    session_id: str
    payload_path: Path
    args: list[str]
    started_at: datetime
    state: ToolState = ToolState.RUNNING
    exit_code: int | None = None
    output_log: list[OutputLine] = field(default_factory=list)
    scratch_dir: Path | None = None
    process: asyncio.subprocess.Process | None = None
    result: SessionResult | None = None
    stop_reason: FailureReason | None = None
    _started_monotonic: float = field(default_factory=time.monotonic)
    _stop_requested: asyncio.Event = field(default_factory=asyncio.Event)
    _done: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_terminal(self) -> bool:
        return self.result is not None

    def request_stop(self, reason: FailureReason) -> None:
        # The first reason wins: a timeout racing a cancel stays a timeout.
        if self.stop_reason is None:
            self.stop_reason = reason
        self._stop_requested.set()

    async def wait_closed(self) -> None:
        """Wait until the session is terminal and its resources are released."""
        await self._done.wait()


class Executor:
    """
    Runs payloads as supervised child processes.

    At most one session per tool id is active at a time; sessions for
    different tool ids run concurrently.
    """

    def __init__(
        self,
        tracker: ToolStatusTracker,
        *,
        execution: ExecutionConfig | None = None,
        modules_path: Path | None = None,
        events: EventBus | None = None,
    ) -> None:
        """
        Initialize the executor.

        Args:
            tracker: Lifecycle tracker that receives Running and terminal transitions
            execution: Interpreter, grace period, default timeout and environment settings
            modules_path: Shared-module cache directory exported to payloads
            events: Bus receiving OutputLineEvents
        """
        self.tracker = tracker
        self.config = execution or ExecutionConfig()
        self.modules_path = modules_path
        self.events = events
        self._sessions: dict[str, ExecutionSession] = {}

    def active_session(self, tool_id: str) -> ExecutionSession | None:
        return self._sessions.get(tool_id)

    def is_running(self, tool_id: str) -> bool:
        return tool_id in self._sessions

    def active_tool_ids(self) -> list[str]:
        return list(self._sessions)

    def build_command(self, payload_path: Path, args: Sequence[str]) -> list[str]:
        """Interpreter prefix (if configured), payload, then caller arguments."""
        return [*self.config.interpreter, str(payload_path), *args]

    def build_env(self, session: ExecutionSession) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.config.extra_env)
        if self.modules_path is not None:
            env[MODULES_PATH_ENV] = str(self.modules_path)
        env[TOOL_ID_ENV] = session.tool_id
        env[SESSION_ID_ENV] = session.session_id
        return env

    async def run(
        self,
        tool_id: str,
        payload_path: Path,
        args: Sequence[str] = (),
        *,
        timeout: float | None = None,
    ) -> ExecutionSession:
        """
        Run a payload to completion.

        The tracker moves the tool to Running before launch and to
        Completed or Failed when the session ends.

        Args:
            tool_id: Tool being run (must be Cached or Stale in the tracker)
            payload_path: Payload file to execute
            args: Command-line arguments, passed through unmodified
            timeout: Time bound in seconds (defaults to the configured one)

        Returns:
            The terminal ExecutionSession (``session.result`` is set)

        Raises:
            ToolBusyError: If the tool already has an active session
            ProcessLaunchError: If the payload is missing or cannot be started;
                the tool is Failed with reason ``launch_failed``
            IllegalTransitionError: If the tracker state does not allow a run
        """
        if tool_id in self._sessions:
            raise ToolBusyError(tool_id)

        if timeout is None:
            timeout = self.config.timeout_seconds

        session = ExecutionSession(
            tool_id=tool_id,
            session_id=uuid.uuid4().hex,
            payload_path=Path(payload_path),
            args=list(args),
            started_at=datetime.now(timezone.utc),
        )

        self.tracker.mark_running(tool_id)
        self._sessions[tool_id] = session
        logger.info(f"Starting {tool_id} (session {session.session_id[:8]})")

        try:
            try:
                session.scratch_dir = self._make_scratch_dir(tool_id)
                session.process = await self._launch(session)
            except ProcessLaunchError as e:
                logger.error(str(e))
                self._finish(session, ToolState.FAILED, reason=FailureReason.LAUNCH_FAILED,
                             detail=e.message)
                raise

            await self._supervise(session, timeout)
        finally:
            process = session.process
            if process is not None and is_process_running(process):
                # Only reached when the supervising task itself was cancelled
                await terminate_process_tree(process, self.config.grace_period_seconds)
            if not session.is_terminal:
                self._finish(
                    session,
                    ToolState.FAILED,
                    exit_code=process.returncode if process is not None else None,
                    reason=FailureReason.CANCELLED,
                    detail="Session interrupted",
                )
            self._release(session)

        return session

    async def cancel(
        self, tool_id: str, *, reason: FailureReason = FailureReason.CANCELLED
    ) -> SessionResult | None:
        """
        Stop the active session for ``tool_id`` and wait for it to end.

        Returns only after the process tree is gone (or the forced-kill
        wait ran out) and the tool has left Running.

        Returns:
            The terminal SessionResult, or None if nothing was running
        """
        session = self._sessions.get(tool_id)
        if session is None:
            return None

        logger.info(f"Cancelling {tool_id} (session {session.session_id[:8]})")
        session.request_stop(reason)
        await session.wait_closed()
        return session.result

    async def cancel_all(self) -> list[SessionResult]:
        results = await asyncio.gather(*(self.cancel(tool_id) for tool_id in self.active_tool_ids()))
        return [result for result in results if result is not None]

    def _make_scratch_dir(self, tool_id: str) -> Path:
        parent = self.config.scratch_directory
        try:
            if parent is not None:
                parent.mkdir(parents=True, exist_ok=True)
            return Path(tempfile.mkdtemp(prefix=f"fieldkit-{tool_id}-", dir=parent))
        except OSError as e:
            raise ProcessLaunchError(
                tool_id, f"Cannot create scratch directory: {e.strerror or e}"
            ) from e

    async def _launch(self, session: ExecutionSession) -> asyncio.subprocess.Process:
        payload = session.payload_path
        if not payload.is_file():
            raise ProcessLaunchError(session.tool_id, f"Payload not found: {payload}")
        if IS_UNIX and not self.config.interpreter and not os.access(payload, os.X_OK):
            raise ProcessLaunchError(session.tool_id, f"Payload is not executable: {payload}")

        command = self.build_command(payload, session.args)
        logger.debug(f"Running process: {' '.join(command)}")
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(session.scratch_dir),
                env=self.build_env(session),
                limit=self.config.max_line_bytes,
                **process_group_kwargs(),
            )
        except OSError as e:
            raise ProcessLaunchError(
                session.tool_id,
                f"Cannot start {command[0]}: {e.strerror or e}",
                command=command,
            ) from e

    async def _supervise(self, session: ExecutionSession, timeout: float | None) -> None:
        process = session.process
        assert process is not None and process.stdout is not None and process.stderr is not None

        readers = [
            asyncio.create_task(self._pump(session, process.stdout, OutputStream.STDOUT)),
            asyncio.create_task(self._pump(session, process.stderr, OutputStream.STDERR)),
        ]
        exited = asyncio.create_task(process.wait())
        stop = asyncio.create_task(session._stop_requested.wait())
        stop_reason: FailureReason | None = None

        try:
            done, _ = await asyncio.wait(
                {exited, stop}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if exited not in done:
                if stop not in done:
                    session.request_stop(FailureReason.TIMEOUT)
                stop_reason = session.stop_reason
                logger.info(
                    f"Stopping {session.tool_id} ({stop_reason.value if stop_reason else 'stop'})"
                )
                await terminate_process_tree(process, self.config.grace_period_seconds)

            await self._drain(process, readers)
        finally:
            for task in (*readers, exited, stop):
                if not task.done():
                    task.cancel()

        exit_code = process.returncode

        if stop_reason == FailureReason.TIMEOUT:
            detail = ProcessTimeoutError(session.tool_id, timeout or 0.0).message
            self._finish(session, ToolState.FAILED, exit_code=exit_code,
                         reason=FailureReason.TIMEOUT, detail=detail)
        elif stop_reason is not None:
            self._finish(session, ToolState.FAILED, exit_code=exit_code,
                         reason=stop_reason, detail="Cancelled by user")
        elif exit_code == 0:
            self._finish(session, ToolState.COMPLETED, exit_code=0)
        else:
            detail = NonZeroExitError(session.tool_id, exit_code if exit_code is not None else -1).message
            self._finish(session, ToolState.FAILED, exit_code=exit_code,
                         reason=FailureReason.NON_ZERO_EXIT, detail=detail)

    async def _drain(
        self, process: asyncio.subprocess.Process, readers: list[asyncio.Task[None]]
    ) -> None:
        _, pending = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT_SECONDS)
        if pending:
            # Something the payload started still holds the pipes open
            logger.debug(f"Output still open after exit of {process.pid}, killing process group")
            kill_process_group(process)
            _, pending = await asyncio.wait(pending, timeout=DRAIN_TIMEOUT_SECONDS)
            for task in pending:
                task.cancel()

    async def _pump(
        self,
        session: ExecutionSession,
        stream: asyncio.StreamReader,
        origin: OutputStream,
    ) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the reader limit; the reader discarded it
                text = f"<line longer than {self.config.max_line_bytes} bytes dropped>"
                self._append(session, origin, text)
                continue
            if not raw:
                return
            self._append(session, origin, raw.decode("utf-8", errors="replace").rstrip("\r\n"))

    def _append(self, session: ExecutionSession, origin: OutputStream, text: str) -> None:
        line = OutputLine(stream=origin, timestamp=time.monotonic(), text=text)
        session.output_log.append(line)
        if self.events is not None:
            self.events.publish(
                OutputLineEvent(tool_id=session.tool_id, session_id=session.session_id, line=line)
            )

    def _finish(
        self,
        session: ExecutionSession,
        state: ToolState,
        *,
        exit_code: int | None = None,
        reason: FailureReason | None = None,
        detail: str | None = None,
    ) -> None:
        finished_at = datetime.now(timezone.utc)
        result = SessionResult(
            session_id=session.session_id,
            tool_id=session.tool_id,
            state=state,
            exit_code=exit_code,
            reason=reason,
            detail=detail,
            args=session.args,
            started_at=session.started_at,
            finished_at=finished_at,
            duration_ms=int((time.monotonic() - session._started_monotonic) * 1000),
            output=tuple(session.output_log),
        )
        session.state = state
        session.exit_code = exit_code
        session.result = result
        self.tracker.mark_finished(result)

        logger.info(
            f"{session.tool_id} finished: {state.value} "
            f"(exit={exit_code}, reason={reason.value if reason else '-'}, "
            f"duration={result.duration_ms}ms)"
        )

    def _release(self, session: ExecutionSession) -> None:
        session.process = None
        if session.scratch_dir is not None:
            try:
                shutil.rmtree(session.scratch_dir)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to remove scratch directory {session.scratch_dir}: {e}")
        if self._sessions.get(session.tool_id) is session:
            del self._sessions[session.tool_id]
        session._done.set()
