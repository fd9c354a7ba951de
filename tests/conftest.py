"""
Pytest configuration and shared fixtures.

Provides fixtures for isolated config/data directories, sample manifests,
payload scripts written beside a file-based manifest, and engine
configuration that runs payloads with the current Python interpreter.
"""

import json
import sys
import textwrap
from pathlib import Path
from typing import Any

import pytest

from fieldkit.core.config import clear_cache
from fieldkit.core.config.models import (
    ExecutionConfig,
    FieldkitConfig,
    HistoryConfig,
    NetworkConfig,
)

# ==============================================================================
# Environment Isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep tests away from the real user config, data dir and FIELDKIT_* vars."""
    for var in (
        "FIELDKIT_MANIFEST_SOURCE",
        "FIELDKIT_DATA_DIR",
        "FIELDKIT_EXEC_TIMEOUT",
        "FIELDKIT_GRACE_PERIOD",
        "FIELDKIT_MAX_RETRIES",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg-data"))
    clear_cache()
    yield
    clear_cache()


# ==============================================================================
# Manifest Fixtures
# ==============================================================================


def make_tool(tool_id: str, version: str = "1", **overrides: Any) -> dict[str, Any]:
    """Build a manifest tool entry (camelCase, as published)."""
    tool = {
        "id": tool_id,
        "name": tool_id.replace("-", " ").title(),
        "categoryId": "maintenance",
        "payloadRef": f"tools/{tool_id}.py",
        "version": version,
        "description": f"{tool_id} tool",
        "requiresElevatedPrivilege": False,
        "requiresExternalResource": False,
        "author": "ops",
    }
    tool.update(overrides)
    return tool


def make_manifest(*tools: dict[str, Any], modules: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    return {
        "schemaVersion": "1.0",
        "categories": [
            {"id": "maintenance", "name": "Maintenance", "description": "Routine upkeep"},
            {"id": "database", "name": "Database", "description": "Database tasks"},
        ],
        "tools": list(tools),
        "modules": modules or [],
    }


@pytest.fixture
def tool_entry():
    """Factory for manifest tool entries."""
    return make_tool


@pytest.fixture
def manifest_doc():
    """Factory for manifest documents."""
    return make_manifest


@pytest.fixture
def sample_manifest_data() -> dict[str, Any]:
    """A small valid manifest document."""
    return make_manifest(
        make_tool("check-disk"),
        make_tool("reindex", version="2.1.0", categoryId="database", requiresExternalResource=True),
    )


class ToolServer:
    """
    A manifest directory on disk, standing in for a share drive.

    Payload scripts are written under tools/ and referenced relatively.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.manifest_path = root / "manifest.json"

    @property
    def source(self) -> str:
        return str(self.manifest_path)

    def publish(self, manifest: dict[str, Any]) -> None:
        self.manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")

    def add_payload(self, tool_id: str, script: str, folder: str = "tools") -> Path:
        path = self.root / folder / f"{tool_id}.py"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(script), encoding="utf-8")
        return path

    def take_offline(self) -> None:
        self.manifest_path.unlink(missing_ok=True)
        for payload in (self.root / "tools").glob("*.py"):
            payload.unlink()


@pytest.fixture
def tool_server(tmp_path) -> ToolServer:
    return ToolServer(tmp_path / "server")


# ==============================================================================
# Config Fixtures
# ==============================================================================


@pytest.fixture
def engine_config(tmp_path, tool_server) -> FieldkitConfig:
    """Config that runs payloads with this interpreter and never retries."""
    return FieldkitConfig(
        manifest_source=tool_server.source,
        data_dir=tmp_path / "data",
        network=NetworkConfig(max_retries=0, timeout_seconds=5.0),
        execution=ExecutionConfig(
            interpreter=[sys.executable],
            grace_period_seconds=2.0,
            scratch_directory=tmp_path / "scratch",
        ),
        history=HistoryConfig(max_entries=10),
    )
