"""Tests for tool parameter resolution."""

import pytest

from fieldkit.core.catalog.exceptions import ParameterError
from fieldkit.core.catalog.models import ToolDescriptor, ToolParameter
from fieldkit.core.catalog.parameters import coerce_value, parse_assignments, resolve_arguments


@pytest.fixture
def descriptor(tool_entry) -> ToolDescriptor:
    return ToolDescriptor.model_validate(
        tool_entry(
            "reindex",
            parameters=[
                {"name": "Database", "required": True},
                {"name": "Days", "type": "int", "defaultValue": 7},
                {"name": "Mode", "type": "choice", "choices": ["Fast", "Full"]},
                {"name": "DryRun", "type": "switch"},
            ],
        )
    )


class TestParseAssignments:
    def test_pairs(self) -> None:
        assert parse_assignments(["Database=Prod", "Filter=a=b", "Note="]) == {
            "Database": "Prod",
            "Filter": "a=b",
            "Note": "",
        }

    def test_bare_name_is_switch(self) -> None:
        assert parse_assignments(["DryRun"]) == {"DryRun": "true"}

    def test_empty_name(self) -> None:
        with pytest.raises(ValueError, match="expected NAME=VALUE"):
            parse_assignments(["=Prod"])


class TestCoerceValue:
    """Test suite for per-type value conversion."""

    @pytest.mark.parametrize(
        "value, expected",
        [(True, True), ("yes", True), ("ON", True), ("0", False), (False, False)],
    )
    def test_bool(self, value, expected) -> None:
        assert coerce_value(ToolParameter(name="Flag", type="bool"), value) is expected

    def test_bool_rejects_words(self) -> None:
        with pytest.raises(ValueError, match="expects true or false"):
            coerce_value(ToolParameter(name="Flag", type="bool"), "maybe")

    def test_int(self) -> None:
        parameter = ToolParameter(name="Days", type="int")
        assert coerce_value(parameter, 7) == "7"
        assert coerce_value(parameter, " -3 ") == "-3"
        with pytest.raises(ValueError, match="expects an integer"):
            coerce_value(parameter, "7.5")
        with pytest.raises(ValueError, match="expects an integer"):
            coerce_value(parameter, True)

    def test_choice_returns_declared_spelling(self) -> None:
        parameter = ToolParameter(name="Mode", type="choice", choices=["Fast", "Full"])
        assert coerce_value(parameter, "full") == "Full"
        with pytest.raises(ValueError, match="must be one of Fast, Full"):
            coerce_value(parameter, "Slow")

    def test_string_kept_verbatim(self) -> None:
        assert coerce_value(ToolParameter(name="Server"), "db 01") == "db 01"


class TestResolveArguments:
    """Test suite for building payload arguments."""

    def test_declared_order_and_defaults(self, descriptor) -> None:
        args = resolve_arguments(descriptor, {"dryrun": True, "mode": "fast", "Database": "Prod"})
        assert args == ["-Database", "Prod", "-Days", "7", "-Mode", "Fast", "-DryRun"]

    def test_false_switch_left_out(self, descriptor) -> None:
        args = resolve_arguments(descriptor, {"Database": "Prod", "DryRun": "false"})
        assert args == ["-Database", "Prod", "-Days", "7"]

    def test_prefix(self, descriptor) -> None:
        args = resolve_arguments(descriptor, {"Database": "Prod", "Days": 1}, prefix="--")
        assert args == ["--Database", "Prod", "--Days", "1"]

    def test_no_parameters_declared(self, tool_entry) -> None:
        plain = ToolDescriptor.model_validate(tool_entry("plain"))
        assert resolve_arguments(plain) == []
        with pytest.raises(ParameterError, match="unknown parameter 'Server'"):
            resolve_arguments(plain, {"Server": "db01"})

    def test_every_problem_reported(self, descriptor) -> None:
        with pytest.raises(ParameterError) as exc_info:
            resolve_arguments(
                descriptor, {"Days": "soon", "Mode": "Slow", "mode": "Fast", "Color": "red"}
            )

        assert exc_info.value.tool_id == "reindex"
        assert exc_info.value.problems == [
            "parameter 'Mode' given more than once",
            "unknown parameter 'Color'",
            "missing required parameter 'Database'",
            "parameter 'Days' expects an integer, got 'soon'",
            "parameter 'Mode' must be one of Fast, Full, got 'Slow'",
        ]
        assert str(exc_info.value).startswith("Invalid parameters for 'reindex': ")
