"""
Pre-flight checks run before a tool is launched.

Each check reports whether one prerequisite holds and, when it does
not, what would fix it:

- elevation, for tools that must run as root or Administrator
- the interpreter that launches payloads is installed
- the shared modules the tool imports are cached
- the tool's own payload is cached

Example:
    report = run_preflight(
        descriptor,
        manifest=manifest,
        cache=cache,
        module_cache=module_cache,
        interpreter=["pwsh", "-File"],
    )
    for check in report.failures:
        print(f"{check.name}: {check.message}")
"""

import logging
import os
import shutil
from collections.abc import Sequence
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from fieldkit.core.catalog.cache import CacheStore
from fieldkit.core.catalog.models import Manifest, ToolDescriptor
from fieldkit.core.catalog.process import IS_WINDOWS

logger = logging.getLogger(__name__)


class PreflightAction(str, Enum):
    """What the user can do about a failed check."""

    NONE = "none"
    RESTART_ELEVATED = "restart_elevated"
    DOWNLOAD = "download"
    INSTALL_INTERPRETER = "install_interpreter"


class PreflightCheck(BaseModel):
    """Outcome of one prerequisite check."""

    name: str = Field(..., description="Short check name, e.g. 'Elevation'")
    passed: bool
    message: str = Field(default="")
    action: PreflightAction = Field(default=PreflightAction.NONE)

    model_config = ConfigDict(frozen=True)


class PreflightReport(BaseModel):
    """All checks run for one tool."""

    tool_id: str
    checks: list[PreflightCheck] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def failures(self) -> list[PreflightCheck]:
        return [check for check in self.checks if not check.passed]


def is_elevated() -> bool:
    """Whether this process runs as root (Unix) or Administrator (Windows)."""
    if not IS_WINDOWS:
        return os.geteuid() == 0
    import ctypes

    try:
        return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
    except (AttributeError, OSError) as e:
        logger.warning(f"Unable to determine administrator status: {e}")
        return False


def check_elevation() -> PreflightCheck:
    if is_elevated():
        return PreflightCheck(name="Elevation", passed=True, message="Running elevated")
    return PreflightCheck(
        name="Elevation",
        passed=False,
        message="This tool requires administrator privileges; restart fieldkit elevated",
        action=PreflightAction.RESTART_ELEVATED,
    )


def check_interpreter(interpreter: Sequence[str]) -> PreflightCheck:
    """Check the launch command prefix resolves to an executable."""
    if not interpreter:
        return PreflightCheck(name="Interpreter", passed=True, message="Payloads run directly")

    program = interpreter[0]
    found = shutil.which(program)
    if found is None and Path(program).is_file():
        found = program
    if found is None:
        return PreflightCheck(
            name="Interpreter",
            passed=False,
            message=f"'{program}' was not found on PATH",
            action=PreflightAction.INSTALL_INTERPRETER,
        )
    return PreflightCheck(name="Interpreter", passed=True, message=f"Using {found}")


def check_modules(
    descriptor: ToolDescriptor, manifest: Manifest | None, module_cache: CacheStore
) -> PreflightCheck:
    """
    Check every shared module the tool imports is cached.

    Dependencies the manifest does not list are skipped; refresh already
    reports them as warnings.
    """
    missing: list[str] = []
    for module_id in descriptor.dependencies:
        if manifest is None or manifest.get_module(module_id) is None:
            continue
        if module_cache.get(module_id) is None:
            missing.append(module_id)

    if missing:
        return PreflightCheck(
            name="Shared modules",
            passed=False,
            message=f"Missing {len(missing)} shared module(s): {', '.join(missing)}",
            action=PreflightAction.DOWNLOAD,
        )
    return PreflightCheck(
        name="Shared modules",
        passed=True,
        message=f"All {len(descriptor.dependencies)} shared module(s) available",
    )


def check_payload(descriptor: ToolDescriptor, cache: CacheStore) -> PreflightCheck:
    entry = cache.get(descriptor.id)
    if entry is None:
        return PreflightCheck(
            name="Payload",
            passed=False,
            message="Not cached; it is downloaded before the tool runs",
            action=PreflightAction.DOWNLOAD,
        )
    if cache.is_stale(entry, descriptor):
        # Still runnable: a run downloads the new version first
        return PreflightCheck(
            name="Payload",
            passed=True,
            message=f"Cached v{entry.version}, v{descriptor.version} is available",
        )
    return PreflightCheck(name="Payload", passed=True, message=f"Cached v{entry.version}")


def run_preflight(
    descriptor: ToolDescriptor,
    *,
    manifest: Manifest | None,
    cache: CacheStore,
    module_cache: CacheStore,
    interpreter: Sequence[str] = (),
) -> PreflightReport:
    """
    Run every check that applies to ``descriptor``.

    Blocking (reads and hashes cache entries); call it from a worker thread
    when on the event loop.
    """
    checks: list[PreflightCheck] = []
    if descriptor.requires_elevated_privilege:
        checks.append(check_elevation())
    checks.append(check_interpreter(interpreter))
    if descriptor.dependencies:
        checks.append(check_modules(descriptor, manifest, module_cache))
    checks.append(check_payload(descriptor, cache))

    report = PreflightReport(tool_id=descriptor.id, checks=checks)
    logger.info(
        f"Pre-flight checks for {descriptor.id}: "
        f"{len(checks) - len(report.failures)} passed, {len(report.failures)} failed"
    )
    return report
