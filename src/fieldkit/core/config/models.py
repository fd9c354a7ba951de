"""
Configuration data models for fieldkit.

These models define the structure of .fieldkit.json and
~/.config/fieldkit/config.json files, with validation via Pydantic.
The loaded FieldkitConfig is passed explicitly into the cache store,
manifest repository and executor; nothing reads machine configuration
in the middle of an operation.
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def get_default_data_dir() -> Path:
    """
    Get the default data directory.

    Returns:
        $XDG_DATA_HOME/fieldkit (defaults to ~/.local/share/fieldkit)
    """
    xdg_data_home = os.environ.get("XDG_DATA_HOME")
    if not xdg_data_home:
        xdg_data_home = os.path.expanduser("~/.local/share")
    return Path(xdg_data_home) / "fieldkit"


class NetworkConfig(BaseModel):
    """
    Manifest and payload download settings.
    """
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-request timeout in seconds"
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries for transient failures (5xx, timeouts, connection errors)"
    )
    base_delay: float = Field(
        default=1.0,
        gt=0,
        description="Initial backoff delay in seconds"
    )


class CacheConfig(BaseModel):
    """
    Payload cache locations.

    Both directories default to subdirectories of the data directory.
    """
    directory: Optional[Path] = Field(
        default=None,
        description="Tool payload cache directory (default: <data_dir>/cache)"
    )
    modules_directory: Optional[Path] = Field(
        default=None,
        description="Shared module cache directory (default: <data_dir>/modules)"
    )


class ExecutionConfig(BaseModel):
    """
    How payloads are launched and supervised.
    """
    timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Default per-run time bound; None means unbounded"
    )
    grace_period_seconds: float = Field(
        default=5.0,
        gt=0,
        description="How long a cancelled process may take to exit before it is killed"
    )
    interpreter: list[str] = Field(
        default_factory=list,
        description="Command prefix used to launch payloads, e.g. ['pwsh', '-File']"
    )
    scratch_directory: Optional[Path] = Field(
        default=None,
        description="Parent of per-session scratch directories (default: system temp)"
    )
    extra_env: dict[str, str] = Field(
        default_factory=dict,
        description="Additional environment variables passed to every payload"
    )
    max_line_bytes: int = Field(
        default=1024 * 1024,
        ge=1024,
        description="Longest output line read in one piece"
    )
    preflight: bool = Field(
        default=True,
        description="Run pre-flight checks before launching a payload"
    )
    parameter_prefix: str = Field(
        default="-",
        description="Prefix for tool parameter names on the command line ('-' for PowerShell)"
    )


class HistoryConfig(BaseModel):
    """
    Execution history retention.
    """
    enabled: bool = Field(
        default=True,
        description="Record finished sessions to history.jsonl"
    )
    max_entries: int = Field(
        default=50,
        ge=1,
        description="Keep at most this many sessions"
    )
    usage_stats: bool = Field(
        default=True,
        description="Keep per-tool usage counters in usage.json"
    )


class FieldkitConfig(BaseModel):
    """
    Top-level fieldkit configuration.

    Loaded from defaults, user config, project config, and env vars.

    Example:
        >>> config = FieldkitConfig(
        ...     manifest_source="https://example.com/toolkit/manifest.json",
        ...     execution=ExecutionConfig(interpreter=["pwsh", "-File"]),
        ... )
        >>> config.cache_dir.name
        'cache'
    """
    manifest_source: Optional[str] = Field(
        default=None,
        description="URL or path of the manifest document"
    )
    data_dir: Path = Field(
        default_factory=get_default_data_dir,
        description="Root for the cache, last-known manifest and history"
    )
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)

    model_config = ConfigDict(
        extra="allow",  # Allow extra fields for forward compatibility
        validate_assignment=True,
    )

    @property
    def cache_dir(self) -> Path:
        return self.cache.directory or self.data_dir / "cache"

    @property
    def modules_dir(self) -> Path:
        return self.cache.modules_directory or self.data_dir / "modules"

    @property
    def manifest_file(self) -> Path:
        """Where the last valid manifest is kept for offline starts."""
        return self.data_dir / "manifest.json"

    @property
    def history_file(self) -> Path:
        return self.data_dir / "history.jsonl"

    @property
    def usage_file(self) -> Path:
        return self.data_dir / "usage.json"
