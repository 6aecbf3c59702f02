"""Per-run snapshot of parameters, trigger context and variables.

The snapshot is built once when a run is created and is read-only from then
on. Every expression evaluated for the run is evaluated against it.
"""

import logging
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from types import MappingProxyType
from typing import Any, Mapping

from pipewright.core.constants import (
    BUILD_REASON_VAR,
    REQUESTED_FOR_VAR,
    SOURCE_BRANCH_NAME_VAR,
    SOURCE_BRANCH_VAR,
    ParameterType,
)
from pipewright.core.exceptions import ConfigurationError, ExpressionError
from pipewright.core.models import Parameter, Trigger, Variable
from pipewright.definition.expressions import (
    find_expressions,
    iter_references,
    parse_expression,
    render_value,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunSnapshot:
    """Immutable evaluation context for one run."""
    parameters: Mapping[str, Any] = field(default_factory=dict)
    variables: Mapping[str, Any] = field(default_factory=dict)
    trigger: Trigger = field(default_factory=Trigger)

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    def lookup(self, namespace: str, name: str) -> Any:
        source = self.parameters if namespace == "parameters" else self.variables
        if name not in source:
            raise ExpressionError(f"Unknown reference '{namespace}.{name}'")
        return source[name]

    def with_parameters(self, parameters: Mapping[str, Any]) -> "RunSnapshot":
        """Snapshot whose parameters are shadowed by `parameters` (template scope)."""
        return RunSnapshot(
            parameters={**self.parameters, **parameters},
            variables=self.variables,
            trigger=self.trigger,
        )

    def with_variables(self, variables: Mapping[str, Any]) -> "RunSnapshot":
        return RunSnapshot(
            parameters=self.parameters,
            variables={**self.variables, **variables},
            trigger=self.trigger,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "parameters": dict(self.parameters),
            "variables": dict(self.variables),
            "trigger": self.trigger.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunSnapshot":
        return cls(
            parameters=data.get("parameters", {}),
            variables=data.get("variables", {}),
            trigger=Trigger.from_dict(data.get("trigger", {})),
        )


# ============================================================================
# Parameters
# ============================================================================

def parse_parameters(data: Any, *, source: str) -> list[Parameter]:
    """Parse a `parameters:` declaration list.

    Accepts the list form (``- name: X, type: boolean, default: true``) and
    the short mapping form (``X: default``) used by small templates.

    Raises:
        ConfigurationError: If a declaration is malformed
    """
    if data is None:
        return []

    if isinstance(data, dict):
        data = [{"name": name, "default": default} for name, default in data.items()]

    if not isinstance(data, list):
        raise ConfigurationError(f"'parameters' in {source} must be a list")

    parameters: list[Parameter] = []
    seen: set[str] = set()
    for entry in data:
        if not isinstance(entry, dict) or "name" not in entry:
            raise ConfigurationError(f"Every parameter in {source} needs a 'name'")
        name = str(entry["name"])
        if name in seen:
            raise ConfigurationError(f"Duplicate parameter '{name}' in {source}")
        seen.add(name)

        try:
            param_type = ParameterType(str(entry.get("type", "string")).lower())
        except ValueError as e:
            choices = ", ".join(t.value for t in ParameterType)
            raise ConfigurationError(
                f"Parameter '{name}' in {source} has unknown type "
                f"{entry.get('type')!r} (expected one of: {choices})"
            ) from e

        parameter = Parameter(
            name=name,
            type=param_type,
            values=tuple(entry.get("values") or ()),
            display_name=entry.get("displayName", entry.get("display_name")),
        )
        if entry.get("default") is not None:
            parameter = Parameter(
                name=parameter.name,
                type=parameter.type,
                default=parameter.coerce(entry["default"]),
                values=parameter.values,
                display_name=parameter.display_name,
            )
        parameters.append(parameter)
    return parameters


def resolve_parameters(
    declared: list[Parameter],
    supplied: Mapping[str, Any],
    *,
    source: str = "pipeline",
) -> dict[str, Any]:
    """Coerce supplied parameter values and fill in defaults.

    Raises:
        ConfigurationError: On unknown, missing or invalid parameters
    """
    names = {p.name for p in declared}
    unknown = sorted(set(supplied) - names)
    if unknown:
        raise ConfigurationError(
            f"Unknown parameter(s) for {source}: {', '.join(unknown)}"
        )

    resolved: dict[str, Any] = {}
    for parameter in declared:
        if parameter.name in supplied:
            resolved[parameter.name] = parameter.coerce(supplied[parameter.name])
        elif parameter.default is not None:
            resolved[parameter.name] = parameter.default
        else:
            raise ConfigurationError(
                f"Missing value for required parameter '{parameter.name}' of {source}"
            )
    return resolved


# ============================================================================
# Variables
# ============================================================================

def trigger_variables(trigger: Trigger) -> dict[str, Any]:
    """Predefined variables describing what started the run."""
    return {
        BUILD_REASON_VAR: trigger.reason.value,
        SOURCE_BRANCH_VAR: trigger.source_branch,
        SOURCE_BRANCH_NAME_VAR: trigger.source_branch_name,
        REQUESTED_FOR_VAR: trigger.requested_for,
    }


def parse_variables(data: Any, *, source: str) -> list[Variable]:
    """Parse a `variables:` section (mapping, or list of name/value entries)."""
    if data is None:
        return []
    if isinstance(data, dict):
        return [Variable(name=str(k), value=v) for k, v in data.items()]
    if not isinstance(data, list):
        raise ConfigurationError(f"'variables' in {source} must be a mapping or a list")

    variables: list[Variable] = []
    for entry in data:
        if not isinstance(entry, dict) or "name" not in entry:
            raise ConfigurationError(
                f"Every variable in {source} needs a 'name' and a 'value'"
            )
        variables.append(Variable(name=str(entry["name"]), value=entry.get("value")))
    return variables


def _variable_dependencies(variable: Variable) -> list[tuple[str, str]]:
    if not isinstance(variable.value, str):
        return []
    refs: list[tuple[str, str]] = []
    for text in find_expressions(variable.value):
        for ref in iter_references(parse_expression(text)):
            refs.append((ref.namespace, ref.name))
    return refs


def compute_variables(variables: list[Variable], base: RunSnapshot) -> dict[str, Any]:
    """Evaluate pipeline variables in reference order.

    Variables may reference parameters, predefined variables and each other;
    declaration order does not matter.

    Raises:
        ConfigurationError: On a reference cycle or an undeclared reference
    """
    declared: dict[str, Variable] = {}
    for variable in variables:
        if variable.name in base.variables:
            raise ConfigurationError(
                f"Variable '{variable.name}' shadows a predefined variable"
            )
        # Later declarations of the same name win
        declared[variable.name] = variable

    sorter: TopologicalSorter = TopologicalSorter()
    for variable in declared.values():
        deps: list[str] = []
        for namespace, name in _variable_dependencies(variable):
            if namespace == "parameters":
                if name not in base.parameters:
                    raise ConfigurationError(
                        f"Variable '{variable.name}' references undeclared "
                        f"parameter '{name}'"
                    )
            elif name in declared:
                deps.append(name)
            elif name not in base.variables:
                raise ConfigurationError(
                    f"Variable '{variable.name}' references undeclared variable '{name}'"
                )
        sorter.add(variable.name, *deps)

    try:
        order = list(sorter.static_order())
    except CycleError as e:
        cycle = " -> ".join(e.args[1])
        raise ConfigurationError(f"Variable reference cycle: {cycle}") from e

    context = base
    values: dict[str, Any] = {}
    for name in order:
        value = render_value(declared[name].value, context)
        values[name] = value
        context = context.with_variables({name: value})
        logger.debug(f"Variable {name} = {value!r}")
    return values


def build_snapshot(
    parameters: list[Parameter],
    variables: list[Variable],
    trigger: Trigger,
) -> RunSnapshot:
    """Resolve parameters, trigger context and variables into a snapshot.

    Raises:
        ConfigurationError: If anything cannot be resolved
    """
    base = RunSnapshot(
        parameters=resolve_parameters(parameters, trigger.parameters),
        variables=trigger_variables(trigger),
        trigger=trigger,
    )
    return base.with_variables(compute_variables(variables, base))
