"""
Catalog models for fieldkit.

Defines Pydantic models for the remote manifest (categories, tools,
shared modules), cached payload entries, lifecycle states, session
results and the immutable snapshot handed to the presentation layer.

Manifest documents use camelCase keys; the models accept both the
camelCase aliases and the snake_case field names.

Example:
    >>> from fieldkit.core.catalog.models import Manifest
    >>> manifest = Manifest.model_validate({
    ...     "schemaVersion": "1.0",
    ...     "categories": [{"id": "db", "name": "Database", "description": ""}],
    ...     "tools": [{
    ...         "id": "reindex",
    ...         "name": "Reindex",
    ...         "categoryId": "db",
    ...         "payloadRef": "tools/reindex.ps1",
    ...         "version": "1.2.0",
    ...     }],
    ... })
    >>> manifest.get_tool("reindex").payload_ref
    'tools/reindex.ps1'
"""

import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Tool and module ids double as cache directory names.
ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")
PARAMETER_NAME_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9_]*")


class ToolState(str, Enum):
    """Lifecycle state of a catalog tool."""

    AVAILABLE = "available"
    CACHED = "cached"
    STALE = "stale"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    UNAVAILABLE_OFFLINE = "unavailable_offline"

    @property
    def is_terminal(self) -> bool:
        """Whether a session result is waiting to be acknowledged."""
        return self in (ToolState.COMPLETED, ToolState.FAILED)

    @property
    def is_idle(self) -> bool:
        """Whether the tool has neither an active session nor a pending result."""
        return self not in (ToolState.RUNNING, ToolState.COMPLETED, ToolState.FAILED)


class FailureReason(str, Enum):
    """Machine-readable reason attached to a ``Failed`` state."""

    NON_ZERO_EXIT = "non_zero_exit"
    LAUNCH_FAILED = "launch_failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    DOWNLOAD_FAILED = "download_failed"
    PREFLIGHT_FAILED = "preflight_failed"


class OutputStream(str, Enum):
    """Origin of a captured output line."""

    STDOUT = "stdout"
    STDERR = "stderr"


def _coerce_version(v: object) -> object:
    # Manifests in the wild carry both "3" and 3.
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return str(v)
    return v


def _validate_id(v: object, kind: str) -> str:
    if not isinstance(v, str):
        raise ValueError(f"{kind} id must be a string")
    if not ID_PATTERN.fullmatch(v) or v in (".", ".."):
        raise ValueError(
            f"Invalid {kind} id: '{v}' (letters, digits, '.', '_', '-' allowed, "
            "must start with a letter or digit)"
        )
    return v


class ParameterType(str, Enum):
    """Value type of a tool parameter."""

    STRING = "string"
    INT = "int"
    BOOL = "bool"
    CHOICE = "choice"


# Spellings seen in published manifests
_PARAMETER_TYPE_ALIASES = {
    "str": "string",
    "integer": "int",
    "number": "int",
    "boolean": "bool",
    "switch": "bool",
}


class ToolParameter(BaseModel):
    """
    A named input a tool accepts.

    Attributes:
        name: Parameter name as the payload expects it (e.g. "Database")
        type: Value type; "choice" values must be one of ``choices``
        required: Whether a value must be supplied when no default exists
        description: What the parameter controls
        default: Value used when the caller supplies none
        choices: Allowed values for "choice" parameters
    """

    name: str = Field(..., description="Parameter name")
    type: ParameterType = Field(default=ParameterType.STRING)
    required: bool = Field(default=False)
    description: str = Field(default="")
    default: str | None = Field(default=None, alias="defaultValue")
    choices: list[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v: object) -> object:
        if isinstance(v, str) and not PARAMETER_NAME_PATTERN.fullmatch(v):
            raise ValueError(f"Invalid parameter name: '{v}'")
        return v

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.strip().lower()
            return _PARAMETER_TYPE_ALIASES.get(v, v)
        return v

    @field_validator("default", mode="before")
    @classmethod
    def normalize_default(cls, v: object) -> object:
        """Store defaults as strings; an empty default means none."""
        if v is None or v == "":
            return None
        if isinstance(v, bool):
            return "true" if v else "false"
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @model_validator(mode="after")
    def check_choices(self) -> "ToolParameter":
        if self.type == ParameterType.CHOICE and not self.choices:
            raise ValueError(f"Choice parameter '{self.name}' lists no choices")
        return self


class Category(BaseModel):
    """A named group of tools."""

    id: str = Field(..., min_length=1, description="Unique category identifier")
    name: str = Field(..., min_length=1, description="Human-readable category name")
    description: str = Field(default="", description="Short category description")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ToolDescriptor(BaseModel):
    """
    A tool as described by the manifest.

    Descriptors are created fresh on every manifest fetch and superseded
    wholesale when a new manifest arrives; compare them by value.

    Attributes:
        id: Unique tool identifier (also the cache directory name)
        name: Human-readable tool name
        category_id: Id of the category this tool belongs to
        payload_ref: Location of the payload, absolute or relative to the manifest
        version: Payload version; any change marks cached copies stale
        description: What the tool does
        requires_elevated_privilege: Whether the tool must run elevated
        requires_external_resource: Whether the tool needs e.g. a database
        documentation_ref: Optional documentation URI
        author: Tool author
        dependencies: Ids of shared modules the payload imports
        parameters: Named inputs the tool accepts
        last_updated: When the payload was last changed upstream
    """

    id: str = Field(..., description="Unique tool identifier")
    name: str = Field(..., min_length=1, description="Human-readable tool name")
    category_id: str = Field(..., alias="categoryId", min_length=1)
    payload_ref: str = Field(..., alias="payloadRef", min_length=1)
    version: str = Field(..., min_length=1, description="Monotonic or semantic version")
    description: str = Field(default="")
    requires_elevated_privilege: bool = Field(default=False, alias="requiresElevatedPrivilege")
    requires_external_resource: bool = Field(default=False, alias="requiresExternalResource")
    documentation_ref: str | None = Field(default=None, alias="documentationRef")
    author: str = Field(default="")
    dependencies: list[str] = Field(default_factory=list)
    parameters: list[ToolParameter] = Field(default_factory=list)
    last_updated: datetime | None = Field(default=None, alias="lastUpdated")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("id", mode="before")
    @classmethod
    def validate_id(cls, v: object) -> str:
        """Validate the id is safe to use as a directory name."""
        return _validate_id(v, "tool")

    @field_validator("version", mode="before")
    @classmethod
    def normalize_version(cls, v: object) -> object:
        """Accept numeric versions by converting them to strings."""
        return _coerce_version(v)

    @field_validator("documentation_ref", mode="before")
    @classmethod
    def empty_documentation_is_none(cls, v: object) -> object:
        """Treat an empty documentation reference as absent."""
        if v == "":
            return None
        return v

    @field_validator("parameters")
    @classmethod
    def unique_parameter_names(cls, v: list[ToolParameter]) -> list[ToolParameter]:
        # Names are matched case-insensitively, as PowerShell does
        seen: set[str] = set()
        for parameter in v:
            key = parameter.name.lower()
            if key in seen:
                raise ValueError(f"Duplicate parameter name: '{parameter.name}'")
            seen.add(key)
        return v

    def get_parameter(self, name: str) -> ToolParameter | None:
        """Return the parameter called ``name`` (case-insensitive), or None."""
        for parameter in self.parameters:
            if parameter.name.lower() == name.lower():
                return parameter
        return None


class ModuleDescriptor(BaseModel):
    """A shared helper module that payloads may import."""

    id: str = Field(..., description="Unique module identifier")
    name: str = Field(..., min_length=1)
    payload_ref: str = Field(..., alias="payloadRef", min_length=1)
    version: str = Field(..., min_length=1)
    description: str = Field(default="")
    author: str = Field(default="")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("id", mode="before")
    @classmethod
    def validate_id(cls, v: object) -> str:
        return _validate_id(v, "module")

    @field_validator("version", mode="before")
    @classmethod
    def normalize_version(cls, v: object) -> object:
        return _coerce_version(v)


class Manifest(BaseModel):
    """
    The authoritative description of all categories, tools and modules.

    Structural consistency (unique ids, category references) is checked by
    ``validate_manifest`` rather than here, so an inconsistent manifest can
    still be represented and reported on.
    """

    schema_version: str = Field(..., alias="schemaVersion", min_length=1)
    categories: list[Category] = Field(default_factory=list)
    tools: list[ToolDescriptor] = Field(default_factory=list)
    modules: list[ModuleDescriptor] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("schema_version", mode="before")
    @classmethod
    def normalize_schema_version(cls, v: object) -> object:
        return _coerce_version(v)

    def get_tool(self, tool_id: str) -> ToolDescriptor | None:
        """Return the descriptor for ``tool_id``, or None."""
        for tool in self.tools:
            if tool.id == tool_id:
                return tool
        return None

    def get_category(self, category_id: str) -> Category | None:
        for category in self.categories:
            if category.id == category_id:
                return category
        return None

    def get_module(self, module_id: str) -> ModuleDescriptor | None:
        for module in self.modules:
            if module.id == module_id:
                return module
        return None

    def tool_ids(self) -> list[str]:
        return [tool.id for tool in self.tools]


class ManifestDiff(BaseModel):
    """
    Comparison between the previous and current manifest.

    Attributes:
        added: Tool ids present only in the current manifest
        removed: Tool ids present only in the previous manifest
        version_changed: Tool ids present in both with different versions
    """

    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    version_changed: list[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.version_changed)


class CacheEntry(BaseModel):
    """
    A payload stored in the local cache.

    Attributes:
        tool_id: Tool (or module) the payload belongs to
        version: Version recorded when the payload was downloaded
        local_path: Path of the payload file on disk
        content_hash: SHA-256 (lowercase hex) of the payload bytes
        fetched_at: When the payload was written
        size_bytes: Size of the payload file
    """

    tool_id: str
    version: str
    local_path: Path
    content_hash: str
    fetched_at: datetime
    size_bytes: int = 0

    model_config = ConfigDict(frozen=True)

    @field_validator("fetched_at", mode="before")
    @classmethod
    def normalize_fetched_at(cls, v: datetime | str) -> datetime:
        """
        Normalize fetched_at to a timezone-aware datetime.

        Raises:
            ValueError: If the timestamp cannot be parsed
        """
        if isinstance(v, str):
            try:
                v = datetime.fromisoformat(v)
            except ValueError as e:
                raise ValueError(f"Invalid 'fetched_at' timestamp format: {v}") from e
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class CacheStats(BaseModel):
    """Summary of the cache directory contents."""

    total_entries: int = 0
    total_bytes: int = 0
    tool_ids: list[str] = Field(default_factory=list)


class OutputLine(BaseModel):
    """One captured line of payload output."""

    stream: OutputStream
    timestamp: float = Field(..., description="time.monotonic() when the line was read")
    text: str

    model_config = ConfigDict(frozen=True)


class SessionResult(BaseModel):
    """
    Immutable outcome of one execution attempt.

    Produced by the Executor at the terminal transition and handed to the
    tracker, which keeps it until the caller acknowledges it.
    """

    session_id: str
    tool_id: str
    state: ToolState
    exit_code: int | None = None
    reason: FailureReason | None = None
    detail: str | None = None
    args: list[str] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime
    duration_ms: int = 0
    output: tuple[OutputLine, ...] = ()

    model_config = ConfigDict(frozen=True)

    @property
    def success(self) -> bool:
        return self.state == ToolState.COMPLETED

    def text(self, stream: OutputStream | None = None) -> str:
        """Join captured lines, optionally for a single stream."""
        return "\n".join(
            line.text for line in self.output if stream is None or line.stream == stream
        )


class ToolStatus(BaseModel):
    """Tracker record for one tool id."""

    tool_id: str
    state: ToolState
    updated_at: datetime
    reason: FailureReason | None = None
    detail: str | None = None
    last_result: SessionResult | None = None

    model_config = ConfigDict(frozen=True)


class ToolView(BaseModel):
    """A tool as shown to the presentation layer."""

    descriptor: ToolDescriptor
    status: ToolStatus
    cache_entry: CacheEntry | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def state(self) -> ToolState:
        return self.status.state


class CatalogSnapshot(BaseModel):
    """
    Immutable view of the catalog returned by ``CatalogEngine.refresh``.

    Attributes:
        schema_version: Schema version of the manifest in use (None if none known)
        taken_at: When the snapshot was built
        fetched: Whether a fresh manifest was adopted during this refresh
        offline: Whether the manifest source was unreachable
        warnings: Human-readable warnings (network fallback, rejected manifest)
        diff: Changes relative to the previously active manifest
        categories: Categories of the active manifest
        tools: Every tool of the active manifest with its status
    """

    schema_version: str | None = None
    taken_at: datetime
    fetched: bool = False
    offline: bool = False
    warnings: list[str] = Field(default_factory=list)
    diff: ManifestDiff | None = None
    categories: list[Category] = Field(default_factory=list)
    tools: list[ToolView] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    def get(self, tool_id: str) -> ToolView | None:
        for view in self.tools:
            if view.descriptor.id == tool_id:
                return view
        return None

    def state_of(self, tool_id: str) -> ToolState | None:
        view = self.get(tool_id)
        return view.state if view is not None else None

    def tools_in_category(self, category_id: str) -> list[ToolView]:
        return [view for view in self.tools if view.descriptor.category_id == category_id]
