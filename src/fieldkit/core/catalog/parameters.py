"""
Tool parameter resolution.

Turns caller-supplied parameter values into payload arguments, in the
order the manifest declares the parameters:

    -Database Prod -Days 7 -DryRun

Values are checked against the declared type before anything is
downloaded or started. Booleans become a bare switch when true and are
left out when false. Declared defaults fill in missing values.
"""

from collections.abc import Mapping, Sequence

from fieldkit.core.catalog.exceptions import ParameterError
from fieldkit.core.catalog.models import ParameterType, ToolDescriptor, ToolParameter

_TRUE = frozenset({"true", "1", "yes", "on"})
_FALSE = frozenset({"false", "0", "no", "off"})


def parse_assignments(items: Sequence[str]) -> dict[str, str]:
    """
    Parse ``NAME=VALUE`` pairs as given on the command line.

    A bare ``NAME`` means ``NAME=true``, for switches.

    Raises:
        ValueError: If an item has an empty name
    """
    values: dict[str, str] = {}
    for item in items:
        name, sep, value = item.partition("=")
        name = name.strip()
        if not name:
            raise ValueError(f"Invalid parameter '{item}', expected NAME=VALUE")
        values[name] = value if sep else "true"
    return values


def coerce_value(parameter: ToolParameter, value: object) -> str | bool:
    """
    Convert one value to the parameter's type.

    Returns a bool for BOOL parameters and a string otherwise.

    Raises:
        ValueError: If the value does not fit the type
    """
    name = parameter.name
    if parameter.type == ParameterType.BOOL:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"parameter '{name}' expects true or false, got '{value}'")

    if parameter.type == ParameterType.INT:
        if isinstance(value, bool):
            raise ValueError(f"parameter '{name}' expects an integer, got '{value}'")
        if isinstance(value, int):
            return str(value)
        try:
            return str(int(str(value).strip()))
        except ValueError:
            raise ValueError(f"parameter '{name}' expects an integer, got '{value}'") from None

    text = str(value)
    if parameter.type == ParameterType.CHOICE:
        for choice in parameter.choices:
            if choice.lower() == text.lower():
                return choice
        raise ValueError(
            f"parameter '{name}' must be one of {', '.join(parameter.choices)}, got '{value}'"
        )
    return text


def resolve_arguments(
    descriptor: ToolDescriptor,
    values: Mapping[str, object] | None = None,
    *,
    prefix: str = "-",
) -> list[str]:
    """
    Build payload arguments from parameter values.

    Args:
        descriptor: Tool whose declared parameters are used
        values: Parameter values keyed by name (case-insensitive)
        prefix: Prepended to each parameter name ("-" for PowerShell)

    Returns:
        Arguments for the declared parameters that have a value

    Raises:
        ParameterError: Listing every unknown, missing or invalid value
    """
    problems: list[str] = []
    supplied: dict[str, object] = {}

    for name, value in (values or {}).items():
        parameter = descriptor.get_parameter(name)
        if parameter is None:
            problems.append(f"unknown parameter '{name}'")
        elif parameter.name in supplied:
            problems.append(f"parameter '{parameter.name}' given more than once")
        else:
            supplied[parameter.name] = value

    arguments: list[str] = []
    for parameter in descriptor.parameters:
        value = supplied.get(parameter.name, parameter.default)
        if value is None:
            if parameter.required:
                problems.append(f"missing required parameter '{parameter.name}'")
            continue
        try:
            coerced = coerce_value(parameter, value)
        except ValueError as e:
            problems.append(str(e))
            continue

        flag = f"{prefix}{parameter.name}"
        if isinstance(coerced, bool):
            if coerced:
                arguments.append(flag)
        else:
            arguments.extend([flag, coerced])

    if problems:
        raise ParameterError(descriptor.id, problems)
    return arguments
