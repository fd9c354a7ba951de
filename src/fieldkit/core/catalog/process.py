"""
Process-tree helpers for supervised payload execution.

Payloads are started in their own process group (a new session on Unix,
a new process group on Windows) so that cancellation reaches every
process the payload spawned, not just the immediate child.

Termination escalates:
1. Ask the whole group to stop (SIGTERM / terminate())
2. Wait up to the grace period
3. Force kill the group (SIGKILL / kill()) and wait for the exit
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from typing import Any

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"
IS_UNIX = not IS_WINDOWS

# Upper bound on waiting for a SIGKILLed process to be reaped.
KILL_WAIT_SECONDS = 5.0


def process_group_kwargs() -> dict[str, Any]:
    """Keyword arguments that start a child in its own process group."""
    if IS_UNIX:
        return {"start_new_session": True}
    return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}


def signal_process_group(process: asyncio.subprocess.Process, sig: int) -> bool:
    """
    Send ``sig`` to the process group led by ``process``.

    On Windows only the direct child can be signalled; child processes of
    the payload are not reached there.

    Returns:
        True if the signal was delivered to something
    """
    try:
        if IS_UNIX:
            # pgid == pid because of start_new_session
            os.killpg(process.pid, sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
        return True
    except (ProcessLookupError, PermissionError, OSError) as e:
        logger.debug(f"Signal {sig} to process group {process.pid} not delivered: {e}")
        return False


def kill_process_group(process: asyncio.subprocess.Process) -> bool:
    """Force-kill every process left in the group, even after the leader exited."""
    if IS_UNIX:
        return signal_process_group(process, signal.SIGKILL)
    if process.returncode is not None:
        return False
    try:
        process.kill()
        return True
    except (ProcessLookupError, OSError):
        return False


async def terminate_process_tree(
    process: asyncio.subprocess.Process,
    grace_period: float,
) -> int | None:
    """
    Stop a process tree, escalating to a forced kill after ``grace_period``.

    Blocks until the leader has actually exited (or the forced-kill wait
    runs out, which only happens if the OS cannot reap the process).

    Args:
        process: Leader of the process group
        grace_period: Seconds to wait between the polite and forced stop

    Returns:
        The leader's exit code, or None if it could not be confirmed dead
    """
    if process.returncode is not None:
        # Leader gone; sweep anything it left behind in the group
        kill_process_group(process)
        return process.returncode

    logger.debug(f"Terminating process group {process.pid}")
    signal_process_group(process, signal.SIGTERM)

    try:
        await asyncio.wait_for(process.wait(), timeout=grace_period)
        logger.debug(f"Process {process.pid} exited within grace period")
    except asyncio.TimeoutError:
        logger.info(
            f"Process {process.pid} still running after {grace_period}s, force killing"
        )

    # Force kill the group either way: the leader may be gone while
    # children it started are still alive.
    kill_process_group(process)

    if process.returncode is None:
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_WAIT_SECONDS)
        except asyncio.TimeoutError:
            logger.error(f"Process {process.pid} could not be confirmed dead")
            return None

    return process.returncode


def is_process_running(process: asyncio.subprocess.Process) -> bool:
    """
    Check if a process is still running.

    Returns:
        True if the process has not been reaped yet
    """
    return process.returncode is None
