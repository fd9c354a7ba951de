"""Tests for pre-flight checks."""

import sys
from pathlib import Path

import pytest

from fieldkit.core.catalog import preflight
from fieldkit.core.catalog.cache import CacheStore
from fieldkit.core.catalog.models import Manifest, ToolDescriptor
from fieldkit.core.catalog.preflight import (
    PreflightAction,
    check_interpreter,
    check_modules,
    check_payload,
    run_preflight,
)

from conftest import make_manifest, make_tool

COMMON = {"id": "common", "name": "Common", "payloadRef": "modules/common.py", "version": "1"}


@pytest.fixture
def cache(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def module_cache(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "modules")


def descriptor(tool_id: str = "reindex", **overrides) -> ToolDescriptor:
    return ToolDescriptor.model_validate(make_tool(tool_id, **overrides))


class TestChecks:
    """Test suite for the individual checks."""

    def test_elevation(self, monkeypatch) -> None:
        monkeypatch.setattr(preflight, "is_elevated", lambda: False)
        check = preflight.check_elevation()
        assert not check.passed
        assert check.action == PreflightAction.RESTART_ELEVATED

        monkeypatch.setattr(preflight, "is_elevated", lambda: True)
        assert preflight.check_elevation().passed

    def test_interpreter(self, tmp_path: Path) -> None:
        assert check_interpreter([sys.executable, "-u"]).passed
        assert check_interpreter([]).message == "Payloads run directly"

        missing = check_interpreter([str(tmp_path / "no-such-shell")])
        assert not missing.passed
        assert missing.action == PreflightAction.INSTALL_INTERPRETER

    def test_modules(self, module_cache) -> None:
        manifest = Manifest.model_validate(make_manifest(modules=[COMMON]))
        tool = descriptor(dependencies=["common", "unlisted"])

        check = check_modules(tool, manifest, module_cache)
        assert not check.passed
        assert check.message == "Missing 1 shared module(s): common"
        assert check.action == PreflightAction.DOWNLOAD

        module_cache.put("common", b"VALUE = 1\n", "1", file_name="common.py")
        assert check_modules(tool, manifest, module_cache).passed

    def test_payload(self, cache) -> None:
        tool = descriptor(version="2")
        check = check_payload(tool, cache)
        assert not check.passed
        assert check.action == PreflightAction.DOWNLOAD

        cache.put("reindex", b"print(1)\n", "1", file_name="reindex.py")
        stale = check_payload(tool, cache)
        assert stale.passed
        assert stale.message == "Cached v1, v2 is available"


class TestRunPreflight:
    """Test suite for the combined report."""

    def test_only_applicable_checks(self, cache, module_cache) -> None:
        report = run_preflight(
            descriptor(), manifest=None, cache=cache, module_cache=module_cache
        )
        assert [check.name for check in report.checks] == ["Interpreter", "Payload"]
        assert report.tool_id == "reindex"

    def test_all_checks(self, cache, module_cache, monkeypatch) -> None:
        monkeypatch.setattr(preflight, "is_elevated", lambda: False)
        manifest = Manifest.model_validate(make_manifest(modules=[COMMON]))
        cache.put("reindex", b"print(1)\n", "1", file_name="reindex.py")

        report = run_preflight(
            descriptor(requiresElevatedPrivilege=True, dependencies=["common"]),
            manifest=manifest,
            cache=cache,
            module_cache=module_cache,
            interpreter=[sys.executable],
        )

        assert [check.name for check in report.checks] == [
            "Elevation",
            "Interpreter",
            "Shared modules",
            "Payload",
        ]
        assert not report.passed
        assert [check.name for check in report.failures] == ["Elevation", "Shared modules"]
