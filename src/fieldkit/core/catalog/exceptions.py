"""
Custom exceptions for the tool catalog engine.

This module defines a hierarchy of exceptions for manifest handling,
the payload cache, the lifecycle tracker and tool execution, providing
structured error handling with context preservation.

Exception Hierarchy:
    CatalogError (base)
    ├── NetworkError (manifest or payload unreachable)
    ├── ValidationError (malformed or inconsistent manifest)
    │   └── ParameterError (tool parameter values rejected)
    ├── CacheError (payload cache errors)
    │   ├── CacheCorruptionError (hash mismatch, entry discarded)
    │   └── CacheWriteError (disk full, permission denied)
    ├── ExecutionError (session-scoped execution failures)
    │   ├── PreflightError (prerequisite check failed, nothing launched)
    │   ├── ProcessLaunchError (payload missing or not executable)
    │   ├── ProcessTimeoutError (run exceeded its time bound)
    │   └── NonZeroExitError (payload exited with a non-zero code)
    ├── IllegalTransitionError (rejected lifecycle transition)
    ├── ToolNotFoundError (tool id not in the manifest)
    └── ToolBusyError (tool already has an active session)

Example:
    >>> from fieldkit.core.catalog.exceptions import NetworkError
    >>> try:
    ...     raise NetworkError(
    ...         "https://example.com/manifest.json",
    ...         "Connection timeout",
    ...         timeout=30.0,
    ...     )
    ... except NetworkError as e:
    ...     print(f"Error from {e.source}: {e}")
    ...     print(f"Context: {e.context}")
"""


class CatalogError(Exception):
    """
    Base exception for all catalog engine errors.

    Attributes:
        message: Human-readable error message
        context: Optional dictionary of additional context
    """

    def __init__(self, message: str, **context: object) -> None:
        """
        Initialize a catalog error with message and context.

        Args:
            message: Human-readable error message
            **context: Additional context as keyword arguments
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Return string representation of the error."""
        return self.message


class NetworkError(CatalogError):
    """
    Exception for unreachable manifests or payloads.

    Raised when HTTP requests fail, connections time out, or a local
    manifest/payload path cannot be read. The original exception is
    preserved via ``__cause__``.

    Attributes:
        source: URL or path that could not be reached
    """

    def __init__(self, source: str, message: str, **context: object) -> None:
        super().__init__(message, source=source, **context)
        self.source = source

    def __str__(self) -> str:
        """Return string representation with the source."""
        return f"[{self.source}] {self.message}"


class ValidationError(CatalogError):
    """
    Exception for malformed or inconsistent manifests.

    Raised when a manifest fails to parse, misses required fields,
    contains duplicate ids, or references unknown categories.

    Attributes:
        problems: Every individual problem that was found
    """

    def __init__(self, message: str, problems: list[str] | None = None, **context: object) -> None:
        super().__init__(message, **context)
        self.problems = list(problems or [])

    def __str__(self) -> str:
        if not self.problems:
            return self.message
        return f"{self.message}: " + "; ".join(self.problems)


class ParameterError(ValidationError):
    """
    Exception for parameter values a tool does not accept.

    Raised before anything is downloaded or started. Every rejected
    value is listed in ``problems``.
    """

    def __init__(self, tool_id: str, problems: list[str], **context: object) -> None:
        super().__init__(f"Invalid parameters for '{tool_id}'", problems, tool_id=tool_id, **context)
        self.tool_id = tool_id


class CacheError(CatalogError):
    """Base exception for payload cache errors."""

    def __init__(self, tool_id: str, message: str, **context: object) -> None:
        super().__init__(message, tool_id=tool_id, **context)
        self.tool_id = tool_id

    def __str__(self) -> str:
        return f"Cache entry '{self.tool_id}': {self.message}"


class CacheCorruptionError(CacheError):
    """
    Exception for cache entries whose content no longer matches their hash.

    The corrupt entry is discarded by the store; callers normally only
    see this in logs, because ``CacheStore.get`` reports corruption as a miss.
    """


class CacheWriteError(CacheError):
    """Exception for failed cache writes (disk full, permission denied)."""


class ExecutionError(CatalogError):
    """
    Base exception for session-scoped execution failures.

    Execution errors end only the affected session. The engine surfaces
    them as the terminal ``Failed`` state with a reason code.

    Attributes:
        tool_id: The tool whose session failed
    """

    def __init__(self, tool_id: str, message: str, **context: object) -> None:
        super().__init__(message, tool_id=tool_id, **context)
        self.tool_id = tool_id

    def __str__(self) -> str:
        return f"Execution failed for '{self.tool_id}': {self.message}"


class PreflightError(ExecutionError):
    """
    Exception raised when a prerequisite check fails before launch.

    Attributes:
        failures: Messages of the checks that did not pass
    """

    def __init__(self, tool_id: str, failures: list[str], **context: object) -> None:
        super().__init__(tool_id, "Pre-flight checks failed: " + "; ".join(failures), **context)
        self.failures = list(failures)


class ProcessLaunchError(ExecutionError):
    """Exception raised when a payload is missing or cannot be started."""


class ProcessTimeoutError(ExecutionError):
    """Exception describing a session that exceeded its time bound."""

    def __init__(self, tool_id: str, timeout: float, **context: object) -> None:
        super().__init__(tool_id, f"Timed out after {timeout}s", timeout=timeout, **context)
        self.timeout = timeout


class NonZeroExitError(ExecutionError):
    """Exception describing a payload that exited with a non-zero code."""

    def __init__(self, tool_id: str, exit_code: int, **context: object) -> None:
        super().__init__(
            tool_id, f"Process exited with code {exit_code}", exit_code=exit_code, **context
        )
        self.exit_code = exit_code


class IllegalTransitionError(CatalogError):
    """
    Exception raised when a lifecycle transition is not allowed.

    The tracker rejects illegal transitions instead of coercing them.
    """

    def __init__(
        self, tool_id: str, current: object, event: object, **context: object
    ) -> None:
        message = f"Cannot apply '{event}' to tool '{tool_id}' in state '{current}'"
        super().__init__(message, tool_id=tool_id, current=current, event=event, **context)
        self.tool_id = tool_id
        self.current = current
        self.event = event


class ToolNotFoundError(CatalogError):
    """Exception raised when a tool id is not present in the manifest."""

    def __init__(self, tool_id: str, **context: object) -> None:
        super().__init__(f"Tool '{tool_id}' is not in the catalog", tool_id=tool_id, **context)
        self.tool_id = tool_id


class ToolBusyError(CatalogError):
    """Exception raised when a tool already has an active session."""

    def __init__(self, tool_id: str, **context: object) -> None:
        super().__init__(f"Tool '{tool_id}' is already running", tool_id=tool_id, **context)
        self.tool_id = tool_id


__all__ = [
    "CatalogError",
    "NetworkError",
    "ValidationError",
    "ParameterError",
    "CacheError",
    "CacheCorruptionError",
    "CacheWriteError",
    "ExecutionError",
    "PreflightError",
    "ProcessLaunchError",
    "ProcessTimeoutError",
    "NonZeroExitError",
    "IllegalTransitionError",
    "ToolNotFoundError",
    "ToolBusyError",
]
